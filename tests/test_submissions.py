from digestor.models import SOURCE_TWITCH, SOURCE_WEBPAGE, SOURCE_YOUTUBE, STATUS_QUEUED
from digestor.notifier import STAGE_QUEUED, Notifier
from digestor.pubsub import CHANNEL_NEW_DOCUMENT, CHANNEL_PROGRESS, LocalBroker
from digestor.storage import fail_document, get_document
from digestor.submissions import detect_source, submit_url


def _notifier():
    broker = LocalBroker()
    events = []
    broker.subscribe(CHANNEL_NEW_DOCUMENT, lambda payload: events.append(("new", payload["id"])))
    broker.subscribe(CHANNEL_PROGRESS, lambda payload: events.append(("progress", payload["stage"])))
    return Notifier(broker), events


def test_detect_source():
    assert detect_source("https://www.youtube.com/watch?v=dQw4w9WgXcQ") == SOURCE_YOUTUBE
    assert detect_source("https://m.youtube.com/watch?v=dQw4w9WgXcQ") == SOURCE_YOUTUBE
    assert detect_source("https://youtu.be/dQw4w9WgXcQ") == SOURCE_YOUTUBE
    assert detect_source("https://www.twitch.tv/runner") == SOURCE_TWITCH
    assert detect_source("https://notyoutube.com/watch") == SOURCE_WEBPAGE
    assert detect_source("https://example.com/a") == SOURCE_WEBPAGE


def test_new_submission_is_queued_and_announced(conn, config, cache, fake_redis):
    notifier, events = _notifier()
    document, existing = submit_url(conn, config, cache, notifier, "https://Example.com/a?utm_source=x#frag", "user-1")

    assert existing is False
    assert document.status == STATUS_QUEUED
    assert document.normalized_url == "https://example.com/a"
    assert document.owner_id == "user-1"
    assert get_document(conn, document.id) == document
    assert events == [("new", document.id), ("progress", STAGE_QUEUED)]
    assert cache.get_cached_url_document("https://example.com/a")["id"] == document.id
    assert cache.get_cached_document(document.id)["status"] == STATUS_QUEUED


def test_resubmission_reuses_document(conn, config, cache):
    notifier, events = _notifier()
    first, _ = submit_url(conn, config, cache, notifier, "https://example.com/a")
    second, existing = submit_url(conn, config, cache, notifier, "https://example.com/a?utm_campaign=y")
    assert existing is True
    assert second.id == first.id
    assert [kind for kind, _ in events].count("new") == 1


def test_reuse_without_cache_uses_database(conn, config, down_cache):
    notifier, _ = _notifier()
    first, _ = submit_url(conn, config, down_cache, notifier, "https://example.com/a")
    second, existing = submit_url(conn, config, down_cache, notifier, "https://example.com/a")
    assert existing is True
    assert second.id == first.id


def test_failed_document_is_not_reused(conn, config, cache):
    notifier, _ = _notifier()
    first, _ = submit_url(conn, config, cache, notifier, "https://example.com/a")
    fail_document(conn, first.id, "fetch_failed")
    second, existing = submit_url(conn, config, cache, notifier, "https://example.com/a")
    assert existing is False
    assert second.id != first.id


def test_stale_cache_entry_is_ignored(conn, config, cache):
    notifier, _ = _notifier()
    cache.cache_url_document("https://example.com/a", {"id": "ghost", "status": STATUS_QUEUED})
    document, existing = submit_url(conn, config, cache, notifier, "https://example.com/a")
    assert existing is False
    assert document.id != "ghost"
