import dataclasses
import logging

import pytest

from digestor.errors import FetchError
from digestor.pipelines import content_fetch
from digestor.pipelines.content_fetch import fetch_html, insufficiency_reason, visible_text

LOGGER = logging.getLogger("test.fetch")

PARAGRAPH = "<p>" + "Readable words about a real topic. " * 20 + "</p>"
GOOD_HTML = f"<html><head><title>T</title></head><body><article>{PARAGRAPH}</article></body></html>"


def test_insufficiency_reasons(config):
    cfg = config.fetch
    assert insufficiency_reason(None, cfg) == "empty"
    assert insufficiency_reason("<html></html>", cfg) == "too_short"
    shell = '<html><body><div id="root"></div>' + "<!-- pad -->" * 50 + "</body></html>"
    assert insufficiency_reason(shell, cfg) == "app_shell"
    scripts = "<html><body>" + "<script>var x = 1;</script>" * 30 + "<p>tiny</p></body></html>"
    assert insufficiency_reason(scripts, cfg) == "too_little_text"
    bloated = "<html><body>" + '<div class="wrapper-with-long-class-name"></div>' * 400 + PARAGRAPH + "</body></html>"
    assert insufficiency_reason(bloated, cfg) == "low_text_density"
    assert insufficiency_reason(GOOD_HTML, cfg) is None


def test_visible_text_drops_scripts_and_tags():
    assert visible_text("<p>a</p><script>b</script><style>c</style>  <b>d</b>") == "a d"


def test_usable_static_markup_skips_rendering(config, monkeypatch):
    monkeypatch.setattr(content_fetch, "fetch_static", lambda url, cfg, logger: GOOD_HTML)

    def renderer(url, cfg, logger):
        raise AssertionError("renderer should not run")

    assert fetch_html("https://example.com", config.fetch, LOGGER, renderer) == GOOD_HTML


def test_thin_markup_falls_back_to_renderer(config, monkeypatch):
    monkeypatch.setattr(content_fetch, "fetch_static", lambda url, cfg, logger: "<html></html>")
    rendered = fetch_html("https://example.com", config.fetch, LOGGER, lambda url, cfg, logger: GOOD_HTML)
    assert rendered == GOOD_HTML


def test_render_failure_degrades_to_static(config, monkeypatch):
    monkeypatch.setattr(content_fetch, "fetch_static", lambda url, cfg, logger: "<html>thin</html>")

    def renderer(url, cfg, logger):
        raise FetchError("render_failed")

    assert fetch_html("https://example.com", config.fetch, LOGGER, renderer) == "<html>thin</html>"


def test_static_and_render_failures_raise(config, monkeypatch):
    def static(url, cfg, logger):
        raise FetchError("http_error 500")

    def renderer(url, cfg, logger):
        raise FetchError("render_failed")

    monkeypatch.setattr(content_fetch, "fetch_static", static)
    with pytest.raises(FetchError):
        fetch_html("https://example.com", config.fetch, LOGGER, renderer)


def test_render_disabled_returns_static_or_raises(config, monkeypatch):
    cfg = dataclasses.replace(config.fetch, render_enabled=False)
    monkeypatch.setattr(content_fetch, "fetch_static", lambda url, cfg, logger: "<html>thin</html>")
    assert fetch_html("https://example.com", cfg, LOGGER) == "<html>thin</html>"

    def static(url, cfg, logger):
        raise FetchError("http_error 404")

    monkeypatch.setattr(content_fetch, "fetch_static", static)
    with pytest.raises(FetchError, match="404"):
        fetch_html("https://example.com", cfg, LOGGER)
