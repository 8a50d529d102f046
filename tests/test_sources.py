from digestor.errors import UpstreamError
from digestor.sources.twitch import HELIX_URL, TOKEN_URL, TwitchSource, parse_twitch_url
from digestor.sources.youtube import DATA_API_URL, YouTubeSource, extract_video_id

TRANSCRIPT = [
    {"start": 0.0, "duration": 3.0, "text": "Welcome back"},
    {"start": 61.0, "duration": 4.0, "text": "Today we cover ownership"},
]


def test_extract_video_id_variants():
    assert extract_video_id("https://www.youtube.com/watch?v=dQw4w9WgXcQ&t=10") == "dQw4w9WgXcQ"
    assert extract_video_id("https://youtu.be/dQw4w9WgXcQ?si=abc") == "dQw4w9WgXcQ"
    assert extract_video_id("https://www.youtube.com/shorts/dQw4w9WgXcQ") == "dQw4w9WgXcQ"
    assert extract_video_id("https://www.youtube.com/embed/dQw4w9WgXcQ") == "dQw4w9WgXcQ"
    assert extract_video_id("https://www.youtube.com/feed/trending") is None


def test_youtube_candidate_from_transcript_and_metadata(cache):
    calls = []

    def request(method, url, headers=None, timeout=None):
        calls.append(url)
        return {
            "items": [
                {
                    "snippet": {"title": "Rust Ownership", "channelTitle": "Ferris", "publishedAt": "2024-01-01"},
                    "statistics": {"viewCount": "1200"},
                    "contentDetails": {"duration": "PT10M"},
                }
            ]
        }

    source = YouTubeSource(cache=cache, api_key="key", request=request, transcript_fetcher=lambda video_id: TRANSCRIPT)
    candidate = source.extract("https://youtu.be/dQw4w9WgXcQ")

    assert candidate.source == "youtube"
    assert calls[0].startswith(DATA_API_URL)
    assert candidate.metadata["title"] == "Rust Ownership"
    assert candidate.metadata["views"] == 1200
    assert candidate.content.startswith("[TITLE] Rust Ownership [CHANNEL] Ferris")
    assert "[TRANSCRIPT] [0.00-0.03] Welcome back [1.01-1.05] Today we cover ownership" in candidate.content

    source.extract("https://youtu.be/dQw4w9WgXcQ")
    assert len(calls) == 1


def test_youtube_without_api_key_uses_transcript_only():
    def request(*args, **kwargs):
        raise AssertionError("no metadata request without a key")

    source = YouTubeSource(api_key="", request=request, transcript_fetcher=lambda video_id: TRANSCRIPT)
    candidate = source.extract("https://www.youtube.com/watch?v=dQw4w9WgXcQ")
    assert candidate.metadata["title"] == "Untitled Video"
    assert "Welcome back" in candidate.content


def test_youtube_returns_none_without_any_data():
    def request(*args, **kwargs):
        raise UpstreamError("quota", 403)

    source = YouTubeSource(api_key="key", request=request, transcript_fetcher=lambda video_id: [])
    assert source.extract("https://www.youtube.com/watch?v=dQw4w9WgXcQ") is None
    assert source.extract("https://www.youtube.com/feed/trending") is None


def test_parse_twitch_url():
    assert parse_twitch_url("https://www.twitch.tv/videos/123456") == ("vod", "123456")
    assert parse_twitch_url("https://www.twitch.tv/SomeStreamer") == ("channel", "somestreamer")
    assert parse_twitch_url("https://www.twitch.tv/directory/game/x") is None
    assert parse_twitch_url("https://www.twitch.tv/") is None


class HelixStub:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def __call__(self, method, url, headers=None, form=None, timeout=None):
        self.calls.append((method, url, headers, form))
        if url == TOKEN_URL:
            return {"access_token": "tok", "expires_in": 3600}
        for prefix, response in self.responses.items():
            if url.startswith(f"{HELIX_URL}/{prefix}"):
                return response
        return {"data": []}


def test_twitch_live_channel(cache):
    stub = HelixStub(
        {"streams": {"data": [{"title": "Speedrun", "user_name": "Runner", "game_name": "Celeste", "started_at": "2024-06-01T10:00:00Z"}]}}
    )
    source = TwitchSource(cache=cache, client_id="cid", client_secret="secret", request=stub)
    candidate = source.extract("https://www.twitch.tv/runner")
    assert candidate.source == "twitch"
    assert candidate.metadata["live"] is True
    assert "[STARTED_AT] 2024-06-01T10:00:00Z" in candidate.content
    token_call = stub.calls[0]
    assert token_call[3]["grant_type"] == "client_credentials"
    assert stub.calls[1][2] == {"Client-ID": "cid", "Authorization": "Bearer tok"}

    calls_before = len(stub.calls)
    source.extract("https://www.twitch.tv/runner")
    assert len(stub.calls) == calls_before


def test_twitch_offline_channel_falls_back_to_user():
    stub = HelixStub({"users": {"data": [{"display_name": "Runner", "description": "Speedruns daily"}]}})
    source = TwitchSource(client_id="cid", client_secret="secret", request=stub)
    candidate = source.extract("https://www.twitch.tv/runner")
    assert candidate.metadata["title"] == "Runner"
    assert "Speedruns daily" in candidate.content


def test_twitch_vod():
    stub = HelixStub({"videos": {"data": [{"title": "Past broadcast", "user_name": "Runner", "duration": "1h2m"}]}})
    candidate = TwitchSource(client_id="cid", client_secret="secret", request=stub).extract(
        "https://www.twitch.tv/videos/42"
    )
    assert candidate.metadata["title"] == "Past broadcast"
    assert stub.calls[1][1] == f"{HELIX_URL}/videos?id=42"


def test_twitch_unconfigured_or_failing_returns_none():
    assert TwitchSource(client_id="", client_secret="").extract("https://www.twitch.tv/runner") is None

    def failing(*args, **kwargs):
        raise UpstreamError("503", 503)

    assert TwitchSource(client_id="cid", client_secret="s", request=failing).extract("https://www.twitch.tv/runner") is None
