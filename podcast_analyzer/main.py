import importlib.util
import logging
import shutil
from collections import OrderedDict
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse

from podcast_analyzer.core.config import Settings, settings as default_settings
from podcast_analyzer.guardrails.errors import as_http_500, as_http_503
from podcast_analyzer.guardrails.prompt_injection import detect_prompt_injection
from podcast_analyzer.guardrails.rate_limit import SimpleRateLimiter
from podcast_analyzer.jobs.cancellation import ActiveRuns, CancellationRegistry
from podcast_analyzer.jobs.orchestrator import PipelineOrchestrator, cancelled_step
from podcast_analyzer.jobs.session_store import JobStatus, Session, SessionNotFound, SessionStore
from podcast_analyzer.jobs.worker import JobLauncher
from podcast_analyzer.models.schemas import (
    AnalysisBundle,
    AnalyzeRequest,
    ChatRequest,
    ChatResponse,
    ChatTurn,
    EpisodeMetadata,
    HealthResponse,
    JobAcceptedResponse,
    JobStatusResponse,
    LimitsResponse,
    StartJobRequest,
    TranscribeRequest,
)
from podcast_analyzer.observability.middleware import RequestTimingMiddleware, get_request_id
from podcast_analyzer.stages.analysis import ANALYSIS_TYPES
from podcast_analyzer.stages.base import Analyzer, Extractor, Transcriber
from podcast_analyzer.stages.platforms import detect_platform, supported_platforms

logger = logging.getLogger(__name__)

APP_NAME = "Podcast Analyzer"

# Turns kept per session in chat memory (user + assistant messages).
CHAT_TURNS_KEPT = 20

AUDIO_MEDIA_TYPES = {
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".wav": "audio/wav",
    ".opus": "audio/ogg",
    ".ogg": "audio/ogg",
    ".aac": "audio/aac",
    ".flac": "audio/flac",
    ".webm": "audio/webm",
}

router = APIRouter()


def default_backends(settings: Settings):
    """Pick the three stage adapters for this process: canned mocks or the real yt-dlp / Whisper / chat-completion ones.
    Why available: Backend choice happens once at construction; nothing downstream branches on the mode."""
    if settings.use_mock_backends:
        from podcast_analyzer.stages.mock import MockAnalyzer, MockExtractor, MockTranscriber

        return MockExtractor(), MockTranscriber(), MockAnalyzer()

    from podcast_analyzer.stages.analysis import LLMAnalyzer
    from podcast_analyzer.stages.extraction import YtDlpExtractor
    from podcast_analyzer.stages.transcription import WhisperTranscriber

    return YtDlpExtractor(settings), WhisperTranscriber(settings), LLMAnalyzer(settings)


def create_app(
    settings: Optional[Settings] = None,
    extractor: Optional[Extractor] = None,
    transcriber: Optional[Transcriber] = None,
    analyzer: Optional[Analyzer] = None,
) -> FastAPI:
    """Build the API with its own store, registry and launcher; any adapter passed in replaces the configured default."""
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    if extractor is None or transcriber is None or analyzer is None:
        defaults = default_backends(settings)
        extractor = extractor or defaults[0]
        transcriber = transcriber or defaults[1]
        analyzer = analyzer or defaults[2]

    store = SessionStore()
    registry = CancellationRegistry()
    active = ActiveRuns()
    launcher = JobLauncher(active)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await launcher.shutdown()

    app = FastAPI(title=APP_NAME, lifespan=lifespan)
    app.add_middleware(RequestTimingMiddleware)

    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.active = active
    app.state.launcher = launcher
    app.state.analyzer = analyzer
    app.state.orchestrator = PipelineOrchestrator(store, registry, extractor, transcriber, analyzer, settings)
    app.state.rate_limiter = SimpleRateLimiter(
        max_requests=settings.rate_limit_requests, window_seconds=settings.rate_limit_window_seconds
    )
    # Short-term conversation memory per session, oldest evicted first
    app.state.chat_memory = OrderedDict()

    app.include_router(router)
    return app


# -------------------------
# Helpers
# -------------------------

def _checked(request: Request):
    """Apply the per-IP rate limit and return app.state."""
    state = request.app.state
    state.rate_limiter.check(request)
    return state


def _get_session(state, session_id: str) -> Session:
    try:
        return state.store.get(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Job not found")


def _snapshot(s: Session) -> JobStatusResponse:
    extraction = s.extraction_result or {}
    metadata = extraction.get("metadata")
    return JobStatusResponse(
        id=s.id,
        url=s.input_url,
        platform=s.platform_tag,
        status=s.status.value,
        progress=s.progress,
        current_step=s.current_step,
        error=s.error,
        transcribe_audio=s.transcribe_audio,
        analyze_content=s.analyze_content,
        language=s.language,
        audio_location=extraction.get("audio_location"),
        file_size=extraction.get("file_size"),
        metadata=EpisodeMetadata(**metadata) if metadata else None,
        transcript=s.transcript,
        transcript_language=s.transcript_language,
        transcript_confidence=s.transcript_confidence,
        transcript_segments=s.transcript_segments,
        analysis=AnalysisBundle(**s.analysis) if s.analysis else None,
        created_at=s.created_at,
        updated_at=s.updated_at,
    )


def _start_stage(state, session_id: str, prepare, coro_factory, name: str) -> None:
    """Take the session's run slot (409 if a stage is already running), reset its cancellation entry, prepare the
    session synchronously, then spawn the run."""
    if not state.active.try_acquire(session_id):
        raise HTTPException(status_code=409, detail="A stage is already running for this job")
    try:
        state.registry.register(session_id)
        prepare(session_id)
    except SessionNotFound:
        state.active.release(session_id)
        state.registry.clear(session_id)
        raise HTTPException(status_code=404, detail="Job not found")
    state.launcher.launch(session_id, coro_factory(), name=f"{name}-{session_id}")


def _save_chat_memory(state, session_id: str, history: List[dict]) -> None:
    memory = state.chat_memory
    memory[session_id] = history[-CHAT_TURNS_KEPT:]
    memory.move_to_end(session_id)
    while len(memory) > state.settings.chat_history_max:
        memory.popitem(last=False)


def _as_strings(values) -> List[str]:
    if not isinstance(values, list):
        return []
    return [v if isinstance(v, str) else str(v) for v in values if v]


def _summary_text(s: Session) -> Optional[str]:
    summary = (s.analysis or {}).get("summary")
    if isinstance(summary, dict):
        return summary.get("summary")
    return None


# -------------------------
# Root
# -------------------------

@router.get("/")
async def root():
    return {"app": APP_NAME, "docs": "/docs"}


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Status, backend mode and whether yt-dlp / ffmpeg can be found. Used by probes and the client sidebar.
    Why available: A real-mode process without ffmpeg accepts jobs that can only fail; this makes that visible up front."""
    state = request.app.state
    tools = {
        "yt-dlp": shutil.which("yt-dlp") is not None or importlib.util.find_spec("yt_dlp") is not None,
        "ffmpeg": shutil.which("ffmpeg") is not None,
    }
    return HealthResponse(
        status="ok",
        backends="mock" if state.settings.use_mock_backends else "real",
        tools=tools,
        active_jobs=state.launcher.pending(),
    )


@router.get("/limits", response_model=LimitsResponse)
async def limits(request: Request):
    state = _checked(request)
    s = state.settings
    return LimitsResponse(
        max_download_mb=s.max_download_mb,
        max_audio_mb=s.max_audio_mb,
        max_transcript_chars=s.max_transcript_chars,
        extraction_timeout_seconds=s.extraction_timeout_seconds,
        transcription_timeout_seconds=s.transcription_timeout_seconds,
        analysis_timeout_seconds=s.analysis_timeout_seconds,
        job_timeout_seconds=s.job_timeout_seconds,
        rate_limit_requests=s.rate_limit_requests,
        rate_limit_window_seconds=s.rate_limit_window_seconds,
    )


@router.get("/platforms")
async def platforms(request: Request):
    """Known platforms and how each is handled; any other http(s) host is tried as "Generic" through yt-dlp."""
    _checked(request)
    return {"platforms": [{"name": p.name, "extractorType": p.extractor_type} for p in supported_platforms()]}


# -------------------------
# Jobs
# -------------------------

@router.post("/jobs", response_model=JobAcceptedResponse)
async def start_job(req: StartJobRequest, request: Request):
    """Validate the URL, create a Pending session and spawn the pipeline; responds before any stage runs.
    Why available: Entry point of the job lifecycle; the client then polls GET /jobs/{id}."""
    state = _checked(request)
    if req.url is not None and not isinstance(req.url, str):
        raise HTTPException(status_code=400, detail="Invalid URL: expected a string")
    url = (req.url or "").strip()
    if not url:
        raise HTTPException(status_code=400, detail="url is required")
    platform = detect_platform(url)
    if platform is None:
        raise HTTPException(status_code=400, detail="Invalid URL: expected an http(s) link to an episode or video")

    session = state.store.create(
        url,
        platform.name,
        transcribe_audio=req.transcribe_audio,
        analyze_content=req.analyze_content,
        language=req.language,
    )
    state.registry.register(session.id)
    state.active.try_acquire(session.id)
    state.launcher.launch(session.id, state.orchestrator.run(session.id), name=f"pipeline-{session.id}")
    logger.info(
        "job_created",
        extra={"session_id": session.id, "platform": platform.name, "request_id": get_request_id(request)},
    )
    return JobAcceptedResponse(session_id=session.id, status=session.status.value)


@router.get("/jobs/{session_id}", response_model=JobStatusResponse, response_model_exclude_none=True)
async def job_status(session_id: str, request: Request):
    """Current snapshot: status, progress, step, error and whichever results exist so far."""
    state = _checked(request)
    return _snapshot(_get_session(state, session_id))


@router.delete("/jobs/{session_id}", response_model=JobAcceptedResponse)
async def cancel_job(session_id: str, request: Request):
    """Request cooperative cancellation. The session moves to Cancelled right away; the running stage stops at its next checkpoint.
    Why available: Lets users abandon a long download or transcription; a second DELETE (or one on a finished job) is 404."""
    state = _checked(request)
    session = _get_session(state, session_id)
    if session.is_terminal or not state.registry.cancel(session_id):
        raise HTTPException(status_code=404, detail="No active job to cancel")
    state.store.set_status(session_id, JobStatus.CANCELLED, session.progress, cancelled_step(session.status))
    logger.info("job_cancel_requested", extra={"session_id": session_id, "status": session.status.value})
    return JobAcceptedResponse(session_id=session_id, status=JobStatus.CANCELLED.value)


@router.post("/jobs/{session_id}/transcribe", response_model=JobAcceptedResponse)
async def transcribe_job(session_id: str, req: TranscribeRequest, request: Request):
    """Re-run transcription (and analysis, for jobs created with analyzeContent) on already extracted audio."""
    state = _checked(request)
    session = _get_session(state, session_id)
    if not session.audio_location:
        raise HTTPException(status_code=400, detail="Audio extraction has not completed for this job")

    orchestrator = state.orchestrator
    _start_stage(
        state,
        session_id,
        orchestrator.prepare_transcription_rerun,
        lambda: orchestrator.rerun_transcription(session_id, req.language),
        "transcribe",
    )
    return JobAcceptedResponse(session_id=session_id, status=JobStatus.TRANSCRIBING.value)


@router.post("/jobs/{session_id}/analyze", response_model=JobAcceptedResponse)
async def analyze_job(session_id: str, req: AnalyzeRequest, request: Request):
    """Re-run analysis on the existing transcript. All four analysis fields are cleared before the new run starts."""
    state = _checked(request)
    session = _get_session(state, session_id)
    if req.analysis_type not in ANALYSIS_TYPES:
        raise HTTPException(status_code=400, detail=f"analysisType must be one of: {', '.join(ANALYSIS_TYPES)}")
    if not session.transcript:
        raise HTTPException(status_code=400, detail="No transcript available for analysis")

    orchestrator = state.orchestrator
    _start_stage(
        state,
        session_id,
        orchestrator.prepare_analysis_rerun,
        lambda: orchestrator.rerun_analysis(session_id, req.analysis_type),
        "analyze",
    )
    return JobAcceptedResponse(session_id=session_id, status=JobStatus.ANALYZING.value)


@router.get("/jobs/{session_id}/audio")
async def job_audio(session_id: str, request: Request):
    """Serve the extracted audio file for in-browser playback."""
    state = _checked(request)
    session = _get_session(state, session_id)
    if not session.audio_location:
        raise HTTPException(status_code=404, detail="No audio file available for this job")
    path = Path(session.audio_location)
    if not path.is_file():
        raise HTTPException(status_code=404, detail="Audio file not found on disk")
    return FileResponse(
        path,
        media_type=AUDIO_MEDIA_TYPES.get(path.suffix.lower(), "audio/mpeg"),
        filename=path.name,
    )


# -------------------------
# Chat
# -------------------------

@router.post("/jobs/{session_id}/chat", response_model=ChatResponse)
async def chat(session_id: str, req: ChatRequest, request: Request):
    """Answer a question about the episode from its transcript, metadata and summary. Read-only: allowed while a stage runs.
    Why available: Follow-up Q&A on a finished transcript; history comes from the request or, when omitted, from server memory."""
    state = _checked(request)
    session = _get_session(state, session_id)

    hit, _ = detect_prompt_injection(req.message)
    if hit:
        raise HTTPException(status_code=400, detail="Message contains disallowed content.")
    if not session.transcript:
        raise HTTPException(status_code=400, detail="No transcript available for chat")
    if len(session.transcript) > state.settings.max_transcript_chars:
        raise HTTPException(status_code=400, detail="Transcript too long for chat")

    if req.history is not None:
        history = [t.model_dump() for t in req.history]
    else:
        history = list(state.chat_memory.get(session_id, []))

    try:
        result = await state.analyzer.answer_question(
            req.message, session.transcript, session.metadata, history, _summary_text(session)
        )
    except HTTPException:
        raise
    except Exception as e:
        raise as_http_500(e)
    if not result.success:
        raise as_http_503(result.error)

    data = result.data
    reply = str(data.get("answer") or "").strip()
    history = history + [{"role": "user", "content": req.message}, {"role": "assistant", "content": reply}]
    _save_chat_memory(state, session_id, history)

    confidence = data.get("confidence")
    return ChatResponse(
        session_id=session_id,
        reply=reply,
        confidence=confidence if isinstance(confidence, (int, float)) else None,
        sources=_as_strings(data.get("sources")),
        related_topics=_as_strings(data.get("relatedTopics")),
        history=[ChatTurn(**t) for t in history[-CHAT_TURNS_KEPT:]],
    )


app = create_app()
