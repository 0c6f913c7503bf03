"""Speech-to-text via the OpenAI audio transcription endpoint (Whisper, verbose_json)."""
import asyncio
import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional

from openai import OpenAIError

from podcast_analyzer.core.config import Settings, settings as default_settings
from podcast_analyzer.core.openai_client import get_openai_client
from podcast_analyzer.stages.base import (
    StageContext,
    StageResult,
    TaskAbortHandle,
    Transcriber,
    TranscriptionData,
)

logger = logging.getLogger(__name__)


def whisper_language(language: Optional[str]) -> Optional[str]:
    """Whisper takes ISO-639-1 codes; accept locale tags like "en-US" or "zh-CN" too."""
    if not (language or "").strip():
        return None
    return language.strip().split("-")[0].split("_")[0].lower()


def _segments(resp: Any) -> List[Dict[str, Any]]:
    out = []
    for seg in getattr(resp, "segments", None) or []:
        get = seg.get if isinstance(seg, dict) else (lambda k, s=seg: getattr(s, k, None))
        out.append({
            "start": get("start"),
            "end": get("end"),
            "text": (get("text") or "").strip(),
            "avg_logprob": get("avg_logprob"),
        })
    return out


def confidence_from_segments(segments: List[Dict[str, Any]]) -> Optional[float]:
    """Mean per-segment probability, exp(avg_logprob), clamped to [0, 1]. None when the backend gave no log-probs."""
    probs = [math.exp(s["avg_logprob"]) for s in segments if isinstance(s.get("avg_logprob"), (int, float))]
    if not probs:
        return None
    return round(max(0.0, min(1.0, sum(probs) / len(probs))), 3)


class WhisperTranscriber(Transcriber):
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    async def transcribe(
        self, audio_location: str, language: Optional[str], ctx: StageContext
    ) -> StageResult[TranscriptionData]:
        """Upload the audio file and return text, detected language, confidence and segments.
        Fails fast (no upload) when the file is missing or above MAX_AUDIO_MB."""
        if not ctx.emit(0, "Initializing transcription"):
            return StageResult.cancelled()

        path = Path(audio_location)
        if not path.is_file():
            return StageResult.fail(f"Audio file not found: {audio_location}")
        size_mb = path.stat().st_size / (1024 * 1024)
        limit = self.settings.max_audio_mb
        if size_mb > limit:
            return StageResult.fail(f"File too large: {size_mb:.1f}MB. Maximum supported size is {limit}MB.")

        if not ctx.emit(10, "Uploading audio for transcription"):
            return StageResult.cancelled()

        task = asyncio.create_task(self._request(path, whisper_language(language)))
        ctx.attach(TaskAbortHandle(task))
        timeout = self.settings.transcription_timeout_seconds
        try:
            resp = await asyncio.wait_for(task, timeout=timeout)
        except asyncio.CancelledError:
            if task.cancelled() and ctx.cancelled():
                return StageResult.cancelled()
            raise
        except asyncio.TimeoutError:
            return StageResult.fail(f"Transcription timed out after {timeout} seconds")
        except OpenAIError as e:
            logger.warning("transcription_request_failed", extra={"job_id": ctx.job_id, "error": str(e)})
            return StageResult.fail(f"Transcription request failed: {e}")
        finally:
            ctx.detach()

        if not ctx.emit(90, "Processing transcription"):
            return StageResult.cancelled()

        text = (getattr(resp, "text", None) or "").strip()
        if not text:
            return StageResult.fail("Transcription returned no text")
        segments = _segments(resp)
        data = TranscriptionData(
            text=text,
            language=getattr(resp, "language", None) or language,
            confidence=confidence_from_segments(segments),
            segments=segments or None,
        )
        if not ctx.emit(100, "Transcription completed"):
            return StageResult.cancelled()
        return StageResult.ok(data)

    async def _request(self, path: Path, language: Optional[str]):
        client = get_openai_client()
        kwargs: Dict[str, Any] = {
            "model": self.settings.transcription_model,
            "response_format": "verbose_json",
        }
        if language:
            kwargs["language"] = language
        with path.open("rb") as f:
            return await client.audio.transcriptions.create(file=f, **kwargs)
