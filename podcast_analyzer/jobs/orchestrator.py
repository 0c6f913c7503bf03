"""Pipeline orchestrator: drives one session through extraction -> transcription -> analysis and records every transition in the store."""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from podcast_analyzer.core.config import Settings, settings as default_settings
from podcast_analyzer.jobs.cancellation import CancellationRegistry
from podcast_analyzer.jobs.progress import overall_progress, stage_bounds
from podcast_analyzer.jobs.session_store import JobStatus, SessionNotFound, SessionStore
from podcast_analyzer.stages.analysis import subtasks_for
from podcast_analyzer.stages.base import Analyzer, Extractor, StageContext, Transcriber

logger = logging.getLogger(__name__)

COMPLETED_STEP = "Processing completed successfully"
INTERNAL_ERROR = "Internal error while processing job"

STAGE_LABELS = {
    JobStatus.PENDING: "queue",
    JobStatus.EXTRACTING_AUDIO: "audio extraction",
    JobStatus.TRANSCRIBING: "transcription",
    JobStatus.ANALYZING: "analysis",
}


class _Stop(Exception):
    """Internal: the job was cancelled; unwind to the outer boundary."""


@dataclass
class _Run:
    """What one orchestrator run remembers between awaits: the session id and the last values it wrote."""

    session_id: str
    status: JobStatus
    progress: int


class PipelineOrchestrator:
    """Runs the stage sequence for a session. Holds only the session id while running; every read and write goes through the store.
    Why available: Single control-flow path per session so stage transitions are strictly sequential without locks.

    Failure policy:
      - extraction failure is fatal (Failed)
      - transcription failure is fatal only when analysis was requested, otherwise the job completes without a transcript
      - analysis sub-task failures are never fatal; whatever succeeded is kept
    """

    def __init__(
        self,
        store: SessionStore,
        registry: CancellationRegistry,
        extractor: Extractor,
        transcriber: Transcriber,
        analyzer: Analyzer,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.registry = registry
        self.extractor = extractor
        self.transcriber = transcriber
        self.analyzer = analyzer
        self.settings = settings or default_settings

    # -------------------------
    # Entry points (spawned as background tasks)
    # -------------------------

    async def run(self, session_id: str) -> None:
        """Full pipeline for a freshly created (Pending) session."""
        run = _Run(session_id, JobStatus.PENDING, 0)
        await self._guarded(run, self._pipeline(run))

    async def rerun_transcription(self, session_id: str, language: Optional[str] = None) -> None:
        """Transcription (then analysis, if the job asked for it) on a session prepared by prepare_transcription_rerun()."""
        run = _Run(session_id, JobStatus.TRANSCRIBING, stage_bounds(JobStatus.TRANSCRIBING)[0])
        await self._guarded(run, self._rerun_transcription(run, language))

    async def rerun_analysis(self, session_id: str, analysis_type: str = "comprehensive") -> None:
        """Analysis alone on a session prepared by prepare_analysis_rerun()."""
        run = _Run(session_id, JobStatus.ANALYZING, stage_bounds(JobStatus.ANALYZING)[0])
        await self._guarded(run, self._rerun_analysis(run, analysis_type))

    # -------------------------
    # Re-run preparation (synchronous, called by the HTTP handler before spawning)
    # -------------------------

    def prepare_transcription_rerun(self, session_id: str) -> None:
        """Clear transcript fields (and analysis, when it will be recomputed) and move the session to Transcribing at 60%."""
        session = self.store.get(session_id)
        changes: Dict[str, Any] = {
            "transcript": None,
            "transcript_language": None,
            "transcript_confidence": None,
            "transcript_segments": None,
        }
        if session.analyze_content:
            changes["analysis"] = None
        self.store.update(session_id, **changes)
        self.store.set_status(
            session_id, JobStatus.TRANSCRIBING, stage_bounds(JobStatus.TRANSCRIBING)[0], "Queued for transcription"
        )

    def prepare_analysis_rerun(self, session_id: str) -> None:
        """Clear all four analysis fields so stale and fresh results are never shown together, then move to Analyzing at 90%."""
        self.store.update(session_id, analysis=None)
        self.store.set_status(
            session_id, JobStatus.ANALYZING, stage_bounds(JobStatus.ANALYZING)[0], "Queued for analysis"
        )

    # -------------------------
    # Outer error boundary
    # -------------------------

    async def _guarded(self, run: _Run, body) -> None:
        sid = run.session_id
        timeout = self.settings.job_timeout_seconds
        try:
            await asyncio.wait_for(body, timeout=timeout)
        except _Stop:
            self._record_cancelled(run)
        except SessionNotFound:
            logger.warning("session_disappeared", extra={"session_id": sid})
        except asyncio.TimeoutError:
            logger.warning("job_timed_out", extra={"session_id": sid, "timeout": timeout})
            self._record_failed(run, f"Job timed out after {timeout} seconds")
        except Exception:
            logger.exception("pipeline_crashed", extra={"session_id": sid})
            self._record_failed(run, INTERNAL_ERROR)
        finally:
            self.registry.clear(sid)

    # -------------------------
    # Stage sequence
    # -------------------------

    async def _pipeline(self, run: _Run) -> None:
        session = self.store.get(run.session_id)
        self._enter(run, JobStatus.EXTRACTING_AUDIO, "Starting audio extraction")

        result = await self.extractor.extract(
            session.input_url, session.platform_tag, self._ctx(run, JobStatus.EXTRACTING_AUDIO)
        )
        self._check_wanted(run, result)
        if not result.success:
            logger.warning("extraction_failed", extra={"session_id": run.session_id, "error": result.error})
            self._record_failed(run, result.error)
            return

        data = result.data
        self.store.update(
            run.session_id,
            extraction_result={
                "audio_location": data.audio_location,
                "file_size": data.file_size,
                "metadata": data.metadata,
            },
        )
        self._report(run, stage_bounds(JobStatus.EXTRACTING_AUDIO)[1], "Audio extraction completed")

        if not session.transcribe_audio:
            self._complete(run)
            return
        await self._transcribe_then_analyze(run, session.language, session.analyze_content)

    async def _rerun_transcription(self, run: _Run, language: Optional[str]) -> None:
        session = self.store.get(run.session_id)
        await self._transcribe_then_analyze(run, language or session.language, session.analyze_content)

    async def _rerun_analysis(self, run: _Run, analysis_type: str) -> None:
        session = self.store.get(run.session_id)
        if not session.transcript:
            self._record_failed(run, "No transcript available for analysis")
            return
        await self._analyze(run, session.transcript, session.metadata, analysis_type)
        self._complete(run)

    async def _transcribe_then_analyze(self, run: _Run, language: Optional[str], analyze: bool) -> None:
        session = self.store.get(run.session_id)
        self._enter(run, JobStatus.TRANSCRIBING, "Starting transcription")

        result = await self.transcriber.transcribe(
            session.audio_location, language, self._ctx(run, JobStatus.TRANSCRIBING)
        )
        self._check_wanted(run, result)
        if not result.success:
            logger.warning("transcription_failed", extra={"session_id": run.session_id, "error": result.error})
            if analyze:
                self._record_failed(run, result.error)
            else:
                self._complete(run, f"Completed without transcript ({result.error})")
            return

        data = result.data
        self.store.update(
            run.session_id,
            transcript=data.text,
            transcript_language=data.language,
            transcript_confidence=data.confidence,
            transcript_segments=data.segments,
        )
        self._report(run, stage_bounds(JobStatus.TRANSCRIBING)[1], "Transcription completed")

        if analyze and data.text:
            await self._analyze(run, data.text, session.metadata, "comprehensive")
        self._complete(run)

    async def _analyze(self, run: _Run, transcript: str, metadata: Dict[str, Any], analysis_type: str) -> None:
        """Attempt each requested sub-task independently; a failing one leaves only its own field absent."""
        self._enter(run, JobStatus.ANALYZING, "Analyzing content")
        fields = subtasks_for(analysis_type)
        calls = {
            "summary": self.analyzer.summarize,
            "topics": self.analyzer.extract_topics,
            "mindmap": self.analyzer.build_mindmap,
            "insights": self.analyzer.derive_insights,
        }
        failed = []
        for i, field in enumerate(fields):
            span = (100 * i / len(fields), 100 * (i + 1) / len(fields))
            self._report(run, overall_progress(JobStatus.ANALYZING, span[0]), f"Generating {field}...")
            # each sub-task's own 0-100 lands in its slice of the analysis range
            ctx = self._ctx(run, JobStatus.ANALYZING, span)
            try:
                result = await calls[field](transcript, metadata, ctx)
            except SessionNotFound:
                raise
            except Exception:
                logger.exception("analysis_subtask_crashed", extra={"session_id": run.session_id, "field": field})
                failed.append(field)
                continue
            self._check_wanted(run, result)
            if not result.success:
                logger.warning(
                    "analysis_subtask_failed",
                    extra={"session_id": run.session_id, "field": field, "error": result.error},
                )
                failed.append(field)
                continue
            # no server-side merge: read the current bundle, add one field, write it back
            bundle = dict(self.store.get(run.session_id).analysis or {})
            bundle[field] = result.data
            self.store.update(run.session_id, analysis=bundle)

        if failed:
            logger.info("analysis_partial", extra={"session_id": run.session_id, "failed": failed})

    # -------------------------
    # Transitions
    # -------------------------

    def _check_wanted(self, run: _Run, result=None) -> None:
        if (result is not None and result.was_cancelled) or not self.registry.is_wanted(run.session_id):
            raise _Stop()

    def _enter(self, run: _Run, status: JobStatus, step: str) -> None:
        self._check_wanted(run)
        progress = stage_bounds(status)[0]
        self.store.set_status(run.session_id, status, progress, step)
        run.status, run.progress = status, progress
        logger.info("stage_started", extra={"session_id": run.session_id, "status": status.value})

    def _report(self, run: _Run, progress: int, step: str) -> None:
        """Write a progress update for the current stage; never lets progress go backwards within the run."""
        self._check_wanted(run)
        run.progress = max(run.progress, int(progress))
        self.store.set_status(run.session_id, run.status, run.progress, step)

    def _ctx(self, run: _Run, status: JobStatus, span: Tuple[float, float] = (0.0, 100.0)) -> StageContext:
        lo, hi = span

        def on_progress(percent: float, step: str) -> None:
            # after cancellation the handler owns the status; drop late events silently
            if not self.registry.is_wanted(run.session_id):
                return
            run.progress = max(run.progress, overall_progress(status, lo + (hi - lo) * percent / 100))
            self.store.set_status(run.session_id, status, run.progress, step)

        return StageContext(job_id=run.session_id, registry=self.registry, on_progress=on_progress)

    def _complete(self, run: _Run, step: str = COMPLETED_STEP) -> None:
        self._check_wanted(run)
        self.store.set_status(run.session_id, JobStatus.COMPLETED, 100, step)
        run.status, run.progress = JobStatus.COMPLETED, 100
        logger.info("job_completed", extra={"session_id": run.session_id})

    def _record_failed(self, run: _Run, message: Optional[str]) -> None:
        """Failed with the message verbatim; progress frozen at its current value. Leaves terminal sessions alone."""
        try:
            session = self.store.get(run.session_id)
            if session.is_terminal:
                return
            self.store.set_status(
                run.session_id, JobStatus.FAILED, session.progress, "Processing failed", error=message or INTERNAL_ERROR
            )
        except SessionNotFound:
            logger.warning("session_disappeared", extra={"session_id": run.session_id})
            return
        run.status = JobStatus.FAILED

    def _record_cancelled(self, run: _Run) -> None:
        """Idempotent: the DELETE handler usually wrote Cancelled already."""
        try:
            session = self.store.get(run.session_id)
            if session.status != JobStatus.CANCELLED:
                self.store.set_status(
                    run.session_id,
                    JobStatus.CANCELLED,
                    session.progress,
                    cancelled_step(run.status),
                )
        except SessionNotFound:
            return
        logger.info("job_cancelled", extra={"session_id": run.session_id, "during": run.status.value})


def cancelled_step(status: JobStatus) -> str:
    return f"Cancelled during {STAGE_LABELS.get(status, 'processing')}"
