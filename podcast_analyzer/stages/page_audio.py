"""Audio extraction for platforms yt-dlp cannot read (extractor type "browser"): find the audio URL in the episode page, then stream it to disk."""
import asyncio
import json
import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from podcast_analyzer.core.config import Settings, settings as default_settings
from podcast_analyzer.stages.base import ExtractionData, Extractor, StageContext, StageResult

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/124.0 Safari/537.36"
AUDIO_URL_RE = re.compile(r"https?://[^\s\"'<>\\]+?\.(?:mp3|m4a|aac|ogg|opus|wav)(?:\?[^\s\"'<>\\]*)?", re.I)
AUDIO_SUFFIXES = (".mp3", ".m4a", ".aac", ".ogg", ".opus", ".wav")

CHUNK_BYTES = 256 * 1024
POLL_SECONDS = 0.25

# Page lookup is the first few percent; the download takes the stage up to DOWNLOAD_END.
FOUND_PERCENT = 5.0
DOWNLOAD_END = 95.0


class DownloadTooLarge(Exception):
    pass


def parse_duration(text: Optional[str]) -> Optional[int]:
    """Seconds from "MM:SS" or "HH:MM:SS" text; None for anything else."""
    parts = (text or "").strip().split(":")
    if len(parts) not in (2, 3) or not all(p.strip().isdigit() for p in parts):
        return None
    seconds = 0
    for p in parts:
        seconds = seconds * 60 + int(p)
    return seconds


def _meta(soup: BeautifulSoup, prop: str) -> Optional[str]:
    tag = soup.find("meta", property=prop) or soup.find("meta", attrs={"name": prop})
    content = tag.get("content") if tag else None
    return content.strip() if content else None


def _next_data(soup: BeautifulSoup) -> Dict[str, Any]:
    """Server-rendered page state (Next.js __NEXT_DATA__), or {} when absent or unreadable."""
    script = soup.find("script", id="__NEXT_DATA__")
    if script is None or not script.string:
        return {}
    try:
        data = json.loads(script.string)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _episode_state(soup: BeautifulSoup) -> Dict[str, Any]:
    episode = _next_data(soup).get("props", {}).get("pageProps", {}).get("episode")
    return episode if isinstance(episode, dict) else {}


def find_audio_url(soup: BeautifulSoup, page_url: str) -> Optional[str]:
    """Audio URL of the episode: og:audio, then an <audio>/<source> src, then the page state, then any audio link in the markup."""
    candidates = [_meta(soup, "og:audio"), _meta(soup, "og:audio:url")]
    audio = soup.find("audio")
    if audio is not None:
        candidates.append(audio.get("src"))
        source = audio.find("source")
        if source is not None:
            candidates.append(source.get("src"))
    episode = _episode_state(soup)
    enclosure = episode.get("enclosure")
    if isinstance(enclosure, dict):
        candidates.append(enclosure.get("url"))
    media = episode.get("media")
    if isinstance(media, dict) and isinstance(media.get("source"), dict):
        candidates.append(media["source"].get("url"))

    for candidate in candidates:
        if not candidate:
            continue
        url = urljoin(page_url, candidate.strip())
        if urlparse(url).scheme in ("http", "https"):
            return url

    m = AUDIO_URL_RE.search(str(soup))
    return m.group(0) if m else None


def page_metadata(soup: BeautifulSoup, page_url: str) -> Dict[str, Any]:
    """Same keys as the yt-dlp metadata so the rest of the pipeline does not care which extractor ran."""
    episode = _episode_state(soup)
    podcast = episode.get("podcast") if isinstance(episode.get("podcast"), dict) else {}

    title = _meta(soup, "og:title") or episode.get("title")
    if not title:
        heading = soup.find("h1") or soup.find("title")
        title = heading.get_text(strip=True) if heading else None

    author = podcast.get("title") or _meta(soup, "author")
    if not author:
        tag = soup.select_one(".podcast-title, .podcast-name, .author")
        author = tag.get_text(strip=True) if tag else None

    duration = episode.get("duration")
    if not isinstance(duration, (int, float)):
        tag = soup.select_one(".duration, .time")
        duration = parse_duration(tag.get_text(strip=True)) if tag else None

    thumbnail = _meta(soup, "og:image")
    if thumbnail:
        thumbnail = re.sub(r"@small$", "", thumbnail)

    return {
        "title": title,
        "description": _meta(soup, "og:description") or episode.get("description"),
        "author": author,
        "duration": duration,
        "thumbnail": thumbnail,
        "upload_date": episode.get("pubDate"),
        "webpage_url": page_url,
        "chapters": None,
    }


def audio_suffix(audio_url: str) -> str:
    suffix = Path(urlparse(audio_url).path).suffix.lower()
    return suffix if suffix in AUDIO_SUFFIXES else ".mp3"


class _StopFlag:
    """Abort handle for the download thread: it checks the flag between chunks."""

    def __init__(self):
        self.event = threading.Event()

    def cancel(self) -> None:
        self.event.set()


class PageAudioExtractor(Extractor):
    """Reads the episode page over plain HTTP and downloads the audio file it points to.
    Why available: Some podcast hosts (Xiaoyuzhou) are not covered by yt-dlp but embed a direct audio link in the page."""

    def __init__(self, settings: Optional[Settings] = None, http: Optional[requests.Session] = None):
        self.settings = settings or default_settings
        if http is None:
            http = requests.Session()
            http.headers["User-Agent"] = USER_AGENT
        self.http = http

    async def extract(self, url: str, platform: str, ctx: StageContext) -> StageResult[ExtractionData]:
        if not ctx.emit(0, "Loading episode page"):
            return StageResult.cancelled()
        try:
            html = await asyncio.to_thread(self._fetch_page, url)
        except requests.RequestException as e:
            logger.warning("episode_page_failed", extra={"job_id": ctx.job_id, "url": url, "error": str(e)})
            return StageResult.fail(f"Failed to load episode page: {e}")

        soup = BeautifulSoup(html, "html.parser")
        audio_url = find_audio_url(soup, url)
        if audio_url is None:
            return StageResult.fail("No audio source found on the episode page")
        metadata = page_metadata(soup, url)
        if not ctx.emit(FOUND_PERCENT, "Found audio source"):
            return StageResult.cancelled()

        out_dir = Path(self.settings.audio_dir) / ctx.job_id
        out_dir.mkdir(parents=True, exist_ok=True)
        dest = out_dir / f"audio{audio_suffix(audio_url)}"

        progress = {"done": 0, "total": None}
        stop = _StopFlag()
        ctx.attach(stop)
        worker = asyncio.ensure_future(asyncio.to_thread(self._download, audio_url, dest, progress, stop.event))
        timeout = self.settings.extraction_timeout_seconds
        try:
            stopped = await asyncio.wait_for(self._watch(worker, progress, ctx), timeout=timeout)
        except asyncio.TimeoutError:
            return StageResult.fail(f"Extraction timed out after {timeout} seconds")
        except DownloadTooLarge:
            return StageResult.fail(f"Media exceeds the {self.settings.max_download_mb} MB download limit")
        except requests.RequestException as e:
            logger.warning("audio_download_failed", extra={"job_id": ctx.job_id, "error": str(e)})
            return StageResult.fail(f"Audio download failed: {e}")
        finally:
            ctx.detach()
            # timeout, cancellation or task teardown: the thread stops at its next chunk
            stop.cancel()

        if stopped or ctx.cancelled():
            return StageResult.cancelled()
        if not dest.is_file() or dest.stat().st_size == 0:
            return StageResult.fail("Audio file not found after extraction")

        data = ExtractionData(audio_location=str(dest), metadata=metadata, file_size=dest.stat().st_size)
        if not ctx.emit(100, "Audio extraction completed"):
            return StageResult.cancelled()
        return StageResult.ok(data)

    def _fetch_page(self, url: str) -> str:
        resp = self.http.get(url, timeout=20)
        resp.raise_for_status()
        return resp.text

    def _download(self, audio_url: str, dest: Path, progress: Dict[str, Any], stop: threading.Event) -> bool:
        """Blocking streamed download (runs in a worker thread). Returns False when stopped; partial files are removed."""
        limit = self.settings.max_download_mb * 1024 * 1024
        try:
            with self.http.get(audio_url, stream=True, timeout=(10, 60)) as resp:
                resp.raise_for_status()
                total = int(resp.headers.get("Content-Length") or 0) or None
                if total is not None and total > limit:
                    raise DownloadTooLarge()
                progress["total"] = total
                with open(dest, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=CHUNK_BYTES):
                        if stop.is_set():
                            break
                        if not chunk:
                            continue
                        fh.write(chunk)
                        progress["done"] += len(chunk)
                        if progress["done"] > limit:
                            raise DownloadTooLarge()
        except (DownloadTooLarge, requests.RequestException, OSError):
            dest.unlink(missing_ok=True)
            raise
        if stop.is_set():
            dest.unlink(missing_ok=True)
            return False
        return True

    async def _watch(self, worker: "asyncio.Future[bool]", progress: Dict[str, Any], ctx: StageContext) -> bool:
        """Emit download progress until the thread finishes. Returns True if the job was cancelled mid-way."""
        while True:
            done, _ = await asyncio.wait({worker}, timeout=POLL_SECONDS)
            received, total = progress["done"], progress["total"]
            mb = received / (1024 * 1024)
            if total:
                pct = FOUND_PERCENT + (DOWNLOAD_END - FOUND_PERCENT) * min(1.0, received / total)
                step = f"Downloading audio ({100 * received / total:.1f}%)"
            else:
                pct, step = FOUND_PERCENT, f"Downloading audio ({mb:.1f} MB)"
            if not ctx.emit(pct, step):
                return True
            if done:
                return not worker.result()
