import pytest

from digestor.extraction.standardize import (
    MODE_FLAT_RAW,
    MODE_FLAT_WITH_ROLES,
    MODE_STRUCTURED,
    sanitize_text,
    seconds_to_mins,
    standardize_result,
    standardize_video,
)


def test_sanitize_text_strips_markup_and_noise():
    raw = '<script>alert(1)</script>He said "hi" -- don\'t | **stop** [now] ♪'
    assert sanitize_text(raw) == "He said hi don't stop now"
    assert sanitize_text(None) == ""
    assert sanitize_text("a <!-- hidden --> b") == "a b"


def test_sanitize_text_keeps_inner_apostrophes():
    assert sanitize_text("it's 'quoted'") == "it's quoted"


def test_seconds_to_mins():
    assert seconds_to_mins(0) == "0.00"
    assert seconds_to_mins(65) == "1.05"
    assert seconds_to_mins(3599.9) == "59.59"


def test_post_with_comments_in_role_mode():
    post = {
        "title": "Ask: favourite editor?",
        "author": "sam",
        "created": "2024-02-01T10:00:00+00:00",
        "content": "Which editor do you use?",
        "comments": ["Vim, obviously.", "", "Emacs"],
    }
    result = standardize_result(post, "https://reddit.com/r/x", "reddit", MODE_FLAT_WITH_ROLES)
    assert result["source"] == "reddit"
    assert result["metadata"]["title"] == "Ask: favourite editor?"
    assert result["metadata"]["publishedAt"] == "2024-02-01T10:00:00+00:00"
    assert result["content"] == (
        "[TITLE] Ask: favourite editor? [AUTHOR] sam [PUBLISHED_AT] 2024-02-01T10:00:00+00:00 "
        "[POST] Which editor do you use? [COMMENT] Vim, obviously. [COMMENT] Emacs"
    )


def test_flat_raw_has_no_metadata():
    result = standardize_result([{"text": "one"}, {"text": "two"}], "https://x.example", mode=MODE_FLAT_RAW)
    assert result == {"source": "unknown", "content": "one two"}


def test_structured_mode_carries_both_flattenings():
    result = standardize_result({"type": "article", "content": "Body"}, "https://x.example")
    assert result["content"] == [{"type": "article", "text": "Body"}]
    assert result["metadata"]["title"] == "Untitled"
    assert result["metadata"]["url"] == "https://x.example"
    assert result["flattened"][MODE_FLAT_RAW] == "Body"
    assert result["flattened"][MODE_FLAT_WITH_ROLES].endswith("[ARTICLE] Body")


def test_empty_input_returns_none():
    assert standardize_result(None, "https://x.example") is None
    assert standardize_result([], "https://x.example") is None
    assert standardize_video({}, "https://x.example") is None


def test_unknown_mode_raises():
    with pytest.raises(ValueError):
        standardize_result({"text": "x"}, "https://x.example", mode="fancy")


def test_video_body_is_transcript_only():
    video = {
        "title": "Intro to Rust",
        "channel": "Ferris",
        "description": "Basics",
        "date": "2024-03-01",
        "transcript": [
            {"start": 0, "duration": 4.5, "text": "Hello"},
            {"start": 65, "duration": 10, "text": "Ownership"},
        ],
    }
    result = standardize_video(video, "https://youtu.be/abc", "youtube", MODE_FLAT_WITH_ROLES)
    assert result["metadata"]["channel"] == "Ferris"
    assert result["content"] == (
        "[TITLE] Intro to Rust [CHANNEL] Ferris [DESCRIPTION] Basics [PUBLISHED_AT] 2024-03-01 "
        "[TRANSCRIPT] [0.00-0.04] Hello [1.05-1.15] Ownership"
    )


def test_video_without_transcript_uses_role_tags():
    video = {"title": "Live now", "chat": [{"timestamp": "0:01", "author": "viewer", "text": "hi"}]}
    result = standardize_video(video, "https://twitch.tv/x", "twitch", MODE_FLAT_WITH_ROLES)
    assert "[TITLE] Live now" in result["content"]
    assert "[CHAT] [0:01] [viewer] hi" in result["content"]
