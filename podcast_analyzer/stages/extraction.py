"""Audio extraction via yt-dlp run as an asyncio subprocess, with progress parsed from its --newline output."""
import asyncio
import json
import logging
import re
import shlex
import sys
from collections import deque
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from podcast_analyzer.core.config import Settings, settings as default_settings
from podcast_analyzer.stages.base import ExtractionData, Extractor, StageContext, StageResult
from podcast_analyzer.stages.page_audio import PageAudioExtractor
from podcast_analyzer.stages.platforms import platform_by_name

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = (".mp3", ".m4a", ".wav", ".opus", ".ogg", ".aac", ".flac", ".webm")

PERCENT_RE = re.compile(r"\[download\]\s+(\d+(?:\.\d+)?)%")
SPEED_RE = re.compile(r"at\s+([0-9.]+[KMG]?iB/s)")
ETA_RE = re.compile(r"ETA\s+(\d+:\d+(?::\d+)?)")
TOO_LARGE_MARKER = "larger than max-filesize"

# Download takes the stage up to this share; conversion reports the rest.
DOWNLOAD_SHARE = 85.0
CONVERT_PERCENT = 90.0


def parse_progress_line(line: str) -> Optional[Tuple[float, str]]:
    """Map one yt-dlp output line to (stage percent, step text), or None for lines that carry no progress.
    Why available: yt-dlp only reports progress as text; this is the single place that knows its format."""
    m = PERCENT_RE.search(line)
    if m:
        pct = float(m.group(1))
        step = f"Downloading audio ({pct:.1f}%)"
        speed = SPEED_RE.search(line)
        eta = ETA_RE.search(line)
        if speed:
            step += f" at {speed.group(1)}"
        if eta:
            step += f", ETA {eta.group(1)}"
        return min(pct, 100.0) * DOWNLOAD_SHARE / 100.0, step
    if "[ExtractAudio]" in line or "[ffmpeg]" in line:
        return CONVERT_PERCENT, "Converting audio"
    return None


def metadata_from_info(info: Dict[str, Any]) -> Dict[str, Any]:
    """Pick the media metadata we keep from a yt-dlp .info.json payload."""
    chapters = [
        {"title": c.get("title"), "start_time": c.get("start_time"), "end_time": c.get("end_time")}
        for c in (info.get("chapters") or [])
        if isinstance(c, dict)
    ]
    return {
        "title": info.get("title"),
        "description": info.get("description"),
        "author": info.get("uploader") or info.get("creator") or info.get("artist") or info.get("channel"),
        "duration": info.get("duration"),
        "thumbnail": info.get("thumbnail"),
        "upload_date": info.get("upload_date"),
        "webpage_url": info.get("webpage_url"),
        "chapters": chapters or None,
    }


def collect_output(out_dir: Path) -> Tuple[Optional[Path], Optional[Path]]:
    """Return (audio file, info.json) found in a job's output directory."""
    audio_path = None
    info_path = None
    for path in sorted(out_dir.iterdir()):
        if not path.is_file():
            continue
        if path.name.endswith(".info.json"):
            info_path = path
        elif path.suffix.lower() in AUDIO_EXTENSIONS and not path.name.endswith(".part"):
            audio_path = path
    return audio_path, info_path


class _ProcessHandle:
    """Abort handle for a running yt-dlp process."""

    def __init__(self, proc: asyncio.subprocess.Process):
        self.proc = proc

    def cancel(self) -> None:
        self._signal(self.proc.terminate)

    def kill(self) -> None:
        self._signal(self.proc.kill)

    def _signal(self, send) -> None:
        if self.proc.returncode is None:
            try:
                send()
            except ProcessLookupError:
                pass


class YtDlpExtractor(Extractor):
    """yt-dlp for every platform it supports; "browser" platforms are handed to the page extractor."""

    def __init__(self, settings: Optional[Settings] = None, page_extractor: Optional[Extractor] = None):
        self.settings = settings or default_settings
        self.page_extractor = page_extractor or PageAudioExtractor(self.settings)

    def build_command(self, url: str, output_template: str, platform: str) -> List[str]:
        if self.settings.ytdlp_command:
            base = shlex.split(self.settings.ytdlp_command)
        else:
            base = [sys.executable, "-m", "yt_dlp"]
        cmd = [
            *base,
            "--extract-audio",
            "--audio-format", "mp3",
            "--audio-quality", "48K",
            "--postprocessor-args", "ExtractAudio:-ac 1",
            "--output", output_template,
            "--write-info-json",
            "--no-playlist",
            "--newline",
            "--no-warnings",
            "--retries", "3",
            "--fragment-retries", "3",
            "--max-filesize", f"{self.settings.max_download_mb}M",
        ]
        if platform == "YouTube":
            cmd += ["--extractor-args", "youtube:player_client=android,web"]
        cmd.append(url)
        return cmd

    async def extract(self, url: str, platform: str, ctx: StageContext) -> StageResult[ExtractionData]:
        """Download the episode's audio into AUDIO_DIR/<job id>/ and return its location plus metadata.
        Checks for cancellation before spawning yt-dlp and after every progress line; the attached handle terminates the process."""
        if platform_by_name(platform).extractor_type == "browser":
            return await self.page_extractor.extract(url, platform, ctx)
        if not ctx.emit(0, "Starting audio extraction"):
            return StageResult.cancelled()

        out_dir = Path(self.settings.audio_dir) / ctx.job_id
        out_dir.mkdir(parents=True, exist_ok=True)
        cmd = self.build_command(url, str(out_dir / "audio.%(ext)s"), platform)

        if ctx.cancelled():
            return StageResult.cancelled()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return StageResult.fail(f"Failed to start yt-dlp: {e}")

        handle = _ProcessHandle(proc)
        ctx.attach(handle)
        tail: deque = deque(maxlen=20)
        timeout = self.settings.extraction_timeout_seconds
        try:
            stopped = await asyncio.wait_for(self._consume(proc, handle, ctx, tail), timeout=timeout)
        except asyncio.TimeoutError:
            handle.kill()
            await proc.wait()
            return StageResult.fail(f"Extraction timed out after {timeout} seconds")
        finally:
            ctx.detach()
            # task cancelled or session gone mid-download
            handle.kill()

        if stopped or ctx.cancelled():
            return StageResult.cancelled()

        output = "\n".join(tail)
        if TOO_LARGE_MARKER in output:
            return StageResult.fail(f"Media exceeds the {self.settings.max_download_mb} MB download limit")
        if proc.returncode != 0:
            logger.warning("ytdlp_failed", extra={"job_id": ctx.job_id, "returncode": proc.returncode})
            return StageResult.fail(f"yt-dlp failed with code {proc.returncode}: {output or 'Unknown error'}")

        audio_path, info_path = collect_output(out_dir)
        if audio_path is None:
            return StageResult.fail("Audio file not found after extraction")

        metadata: Dict[str, Any] = {}
        if info_path is not None:
            try:
                metadata = metadata_from_info(json.loads(info_path.read_text(encoding="utf-8")))
            except (OSError, ValueError):
                logger.warning("ytdlp_info_unreadable", extra={"job_id": ctx.job_id, "path": str(info_path)})

        data = ExtractionData(
            audio_location=str(audio_path),
            metadata=metadata,
            file_size=audio_path.stat().st_size,
        )
        if not ctx.emit(100, "Audio extraction completed"):
            return StageResult.cancelled()
        return StageResult.ok(data)

    async def _consume(
        self, proc: asyncio.subprocess.Process, handle: _ProcessHandle, ctx: StageContext, tail: deque
    ) -> bool:
        """Read yt-dlp output to EOF, emitting progress. Returns True if the job was cancelled mid-way."""
        assert proc.stdout is not None
        last = 0.0
        async for raw in proc.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            tail.append(line)
            parsed = parse_progress_line(line)
            if parsed is None:
                continue
            pct, step = parsed
            if pct < last:
                continue
            last = pct
            if not ctx.emit(pct, step):
                handle.cancel()
                await proc.wait()
                return True
        await proc.wait()
        return False
