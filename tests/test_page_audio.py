"""Unit tests for the episode-page extractor, against canned pages served by a stand-in HTTP session."""
import asyncio
import json
import threading

import requests
from bs4 import BeautifulSoup

from conftest import make_settings
from podcast_analyzer.jobs.cancellation import CancellationRegistry
from podcast_analyzer.stages.base import StageContext
from podcast_analyzer.stages.page_audio import (
    PageAudioExtractor,
    audio_suffix,
    find_audio_url,
    page_metadata,
    parse_duration,
)

PAGE_URL = "https://www.xiaoyuzhoufm.com/episode/64f0c0ffee"
AUDIO_URL = "https://media.xyzcdn.net/abc/episode.m4a"

EPISODE_PAGE = f"""
<html><head>
<title>Episode page</title>
<meta property="og:title" content="第42期: Job pipelines">
<meta property="og:description" content="How background jobs report progress.">
<meta property="og:image" content="https://image.xyzcdn.net/cover.jpg@small">
<meta property="og:audio" content="{AUDIO_URL}">
</head><body>
<h1 class="title">第42期: Job pipelines</h1>
<div class="podcast-title">Pipeline Talk</div>
<div class="duration">45:30</div>
</body></html>
"""

# no meta tag; the audio link only lives in the server-rendered page state
NEXT_DATA_PAGE = """
<html><body><h1>Episode</h1>
<script id="__NEXT_DATA__" type="application/json">{data}</script>
</body></html>
""".format(data=json.dumps({
    "props": {"pageProps": {"episode": {
        "title": "State-only episode",
        "duration": 1234,
        "pubDate": "2024-05-01T00:00:00Z",
        "enclosure": {"url": "https://media.xyzcdn.net/state/episode.mp3"},
        "podcast": {"title": "State Show"},
    }}}
}))

NO_AUDIO_PAGE = "<html><head><title>Nothing here</title></head><body><p>Episode removed</p></body></html>"


class _Response:
    def __init__(self, text="", body=b"", status=200, headers=None, chunk_delay=0.0):
        self.text = text
        self.body = body
        self.status_code = status
        self.headers = headers or {}
        self.chunk_delay = chunk_delay

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error")

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self.body), chunk_size):
            if self.chunk_delay:
                threading.Event().wait(self.chunk_delay)
            yield self.body[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeHttp:
    """Serves canned responses by URL and records the URLs requested."""

    def __init__(self, routes):
        self.routes = routes
        self.requested = []

    def get(self, url, **kwargs):
        self.requested.append(url)
        resp = self.routes.get(url)
        if resp is None:
            raise requests.ConnectionError(f"no route to {url}")
        return resp


def _ctx(events=None, registry=None, job_id="job-1"):
    registry = registry or CancellationRegistry()
    registry.register(job_id)
    return StageContext(
        job_id=job_id,
        registry=registry,
        on_progress=(lambda p, s: events.append(p)) if events is not None else None,
    )


def _extractor(tmp_path, routes, **overrides):
    return PageAudioExtractor(make_settings(tmp_path, **overrides), http=FakeHttp(routes))


def test_parse_duration():
    assert parse_duration("45:30") == 2730
    assert parse_duration("1:02:03") == 3723
    assert parse_duration("about an hour") is None
    assert parse_duration(None) is None


def test_audio_suffix():
    assert audio_suffix(AUDIO_URL) == ".m4a"
    assert audio_suffix("https://cdn.example.org/stream?id=1") == ".mp3"


def test_find_audio_url_prefers_og_audio():
    soup = BeautifulSoup(EPISODE_PAGE, "html.parser")
    assert find_audio_url(soup, PAGE_URL) == AUDIO_URL


def test_find_audio_url_from_page_state_and_audio_tag():
    soup = BeautifulSoup(NEXT_DATA_PAGE, "html.parser")
    assert find_audio_url(soup, PAGE_URL) == "https://media.xyzcdn.net/state/episode.mp3"

    tag_page = BeautifulSoup('<audio controls><source src="/files/ep.mp3"></audio>', "html.parser")
    assert find_audio_url(tag_page, PAGE_URL) == "https://www.xiaoyuzhoufm.com/files/ep.mp3"

    assert find_audio_url(BeautifulSoup(NO_AUDIO_PAGE, "html.parser"), PAGE_URL) is None


def test_page_metadata_from_tags():
    meta = page_metadata(BeautifulSoup(EPISODE_PAGE, "html.parser"), PAGE_URL)
    assert meta["title"] == "第42期: Job pipelines"
    assert meta["author"] == "Pipeline Talk"
    assert meta["duration"] == 2730
    assert meta["thumbnail"] == "https://image.xyzcdn.net/cover.jpg"
    assert meta["webpage_url"] == PAGE_URL


def test_page_metadata_from_page_state():
    meta = page_metadata(BeautifulSoup(NEXT_DATA_PAGE, "html.parser"), PAGE_URL)
    assert meta["title"] == "State-only episode"
    assert meta["author"] == "State Show"
    assert meta["duration"] == 1234
    assert meta["upload_date"] == "2024-05-01T00:00:00Z"


def test_extract_downloads_audio_and_reports_progress(tmp_path):
    body = b"\0" * (600 * 1024)
    ex = _extractor(tmp_path, {
        PAGE_URL: _Response(text=EPISODE_PAGE),
        AUDIO_URL: _Response(body=body, headers={"Content-Length": str(len(body))}),
    })
    events = []
    result = asyncio.run(ex.extract(PAGE_URL, "Xiaoyuzhou", _ctx(events)))

    assert result.success, result.error
    assert result.data.audio_location == str(tmp_path / "audio" / "job-1" / "audio.m4a")
    assert result.data.file_size == len(body)
    assert result.data.metadata["title"] == "第42期: Job pipelines"
    assert events[0] == 0
    assert events[-1] == 100
    assert events == sorted(events)
    assert ex.http.requested == [PAGE_URL, AUDIO_URL]


def test_page_load_failure_is_reported(tmp_path):
    ex = _extractor(tmp_path, {PAGE_URL: _Response(status=503)})
    result = asyncio.run(ex.extract(PAGE_URL, "Xiaoyuzhou", _ctx()))
    assert not result.success
    assert result.error.startswith("Failed to load episode page")


def test_page_without_audio_fails(tmp_path):
    ex = _extractor(tmp_path, {PAGE_URL: _Response(text=NO_AUDIO_PAGE)})
    result = asyncio.run(ex.extract(PAGE_URL, "Xiaoyuzhou", _ctx()))
    assert not result.success
    assert result.error == "No audio source found on the episode page"
    assert ex.http.requested == [PAGE_URL]


def test_declared_size_above_limit_fails_without_keeping_a_file(tmp_path):
    ex = _extractor(tmp_path, {
        PAGE_URL: _Response(text=EPISODE_PAGE),
        AUDIO_URL: _Response(body=b"\0" * 10, headers={"Content-Length": str(3 * 1024 * 1024)}),
    }, max_download_mb=2)
    result = asyncio.run(ex.extract(PAGE_URL, "Xiaoyuzhou", _ctx()))
    assert not result.success
    assert result.error == "Media exceeds the 2 MB download limit"
    assert not (tmp_path / "audio" / "job-1" / "audio.m4a").exists()


def test_cancel_stops_download_and_removes_partial_file(tmp_path):
    body = b"\0" * (256 * 1024 * 40)
    ex = _extractor(tmp_path, {
        PAGE_URL: _Response(text=EPISODE_PAGE),
        AUDIO_URL: _Response(body=body, headers={"Content-Length": str(len(body))}, chunk_delay=0.05),
    })
    registry = CancellationRegistry()

    async def scenario():
        task = asyncio.create_task(ex.extract(PAGE_URL, "Xiaoyuzhou", _ctx(registry=registry)))
        await asyncio.sleep(0.4)
        registry.cancel("job-1")
        return await asyncio.wait_for(task, timeout=3)

    result = asyncio.run(scenario())
    assert result.was_cancelled
    # the worker thread notices the flag at its next chunk
    threading.Event().wait(0.2)
    assert not (tmp_path / "audio" / "job-1" / "audio.m4a").exists()
