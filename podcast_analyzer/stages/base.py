"""Uniform stage adapter contract shared by extraction, transcription and analysis."""
from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

from podcast_analyzer.jobs.cancellation import AbortHandle, CancellationRegistry

T = TypeVar("T")

CANCELLED = "cancelled"

# (percent 0-100 within the stage, human-readable step)
ProgressCallback = Callable[[float, str], None]


@dataclass
class StageResult(Generic[T]):
    """Tagged outcome of one adapter call. Expected failures travel here, never as exceptions."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> "StageResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> "StageResult[T]":
        return cls(success=False, error=error or "Unknown error")

    @classmethod
    def cancelled(cls) -> "StageResult[T]":
        return cls(success=False, error=CANCELLED)

    @property
    def was_cancelled(self) -> bool:
        return not self.success and self.error == CANCELLED


@dataclass
class StageContext:
    """Per-call registration an adapter receives before it starts: which job it serves, where to report progress,
    and where to look for cancellation."""

    job_id: str
    registry: CancellationRegistry
    on_progress: Optional[ProgressCallback] = None

    def cancelled(self) -> bool:
        return not self.registry.is_wanted(self.job_id)

    def emit(self, percent: float, step: str) -> bool:
        """Report progress, then check for cancellation. Returns True while the job is still wanted."""
        if self.on_progress is not None:
            self.on_progress(max(0.0, min(100.0, float(percent))), step)
        return not self.cancelled()

    def attach(self, handle: AbortHandle) -> None:
        self.registry.attach(self.job_id, handle)

    def detach(self) -> None:
        self.registry.detach(self.job_id)


class TaskAbortHandle:
    """Abort handle that cancels an in-flight request task."""

    def __init__(self, task: "asyncio.Task[Any]"):
        self.task = task

    def cancel(self) -> None:
        self.task.cancel()


@dataclass
class ExtractionData:
    audio_location: str
    metadata: Dict[str, Any]
    file_size: Optional[int] = None


@dataclass
class TranscriptionData:
    text: str
    language: Optional[str] = None
    confidence: Optional[float] = None
    segments: Optional[list] = None


class Extractor(ABC):
    @abstractmethod
    async def extract(self, url: str, platform: str, ctx: StageContext) -> StageResult[ExtractionData]:
        ...


class Transcriber(ABC):
    @abstractmethod
    async def transcribe(
        self, audio_location: str, language: Optional[str], ctx: StageContext
    ) -> StageResult[TranscriptionData]:
        ...


class Analyzer(ABC):
    """Four independent analysis calls plus question answering for chat."""

    @abstractmethod
    async def summarize(self, transcript: str, metadata: Dict[str, Any], ctx: StageContext) -> StageResult[dict]:
        ...

    @abstractmethod
    async def extract_topics(self, transcript: str, metadata: Dict[str, Any], ctx: StageContext) -> StageResult[dict]:
        ...

    @abstractmethod
    async def build_mindmap(self, transcript: str, metadata: Dict[str, Any], ctx: StageContext) -> StageResult[dict]:
        ...

    @abstractmethod
    async def derive_insights(self, transcript: str, metadata: Dict[str, Any], ctx: StageContext) -> StageResult[dict]:
        ...

    @abstractmethod
    async def answer_question(
        self,
        question: str,
        transcript: str,
        metadata: Dict[str, Any],
        history: list,
        summary: Optional[str] = None,
    ) -> StageResult[dict]:
        ...
