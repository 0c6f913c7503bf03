"""In-memory session store: one record per submitted job (status, progress, step, error, accumulated stage results)."""
import copy
import time
import uuid
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    PENDING = "Pending"
    EXTRACTING_AUDIO = "ExtractingAudio"
    TRANSCRIBING = "Transcribing"
    ANALYZING = "Analyzing"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

ANALYSIS_KEYS = ("summary", "topics", "mindmap", "insights")

# Fields fixed at creation; update() refuses to touch them.
_IMMUTABLE_FIELDS = frozenset({"id", "input_url", "platform_tag", "created_at"})


class SessionNotFound(KeyError):
    """Raised when a session id is unknown (never created, or removed externally)."""

    def __init__(self, session_id: str):
        super().__init__(session_id)
        self.session_id = session_id

    def __str__(self) -> str:
        return f"Session not found: {self.session_id}"


@dataclass
class Session:
    """A single submitted job and everything the pipeline has produced for it so far.
    Why available: The store's copy is the single source of truth that pollers read through GET /jobs/{id}."""

    id: str
    input_url: str
    platform_tag: str
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    current_step: str = "Queued"
    error: Optional[str] = None
    transcribe_audio: bool = True
    analyze_content: bool = True
    language: Optional[str] = None
    extraction_result: Optional[Dict[str, Any]] = None  # audio_location, file_size, metadata
    transcript: Optional[str] = None
    transcript_language: Optional[str] = None
    transcript_confidence: Optional[float] = None
    transcript_segments: Optional[List[Dict[str, Any]]] = None
    analysis: Optional[Dict[str, Any]] = None  # summary / topics / mindmap / insights
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def audio_location(self) -> Optional[str]:
        if not self.extraction_result:
            return None
        return self.extraction_result.get("audio_location")

    @property
    def metadata(self) -> Dict[str, Any]:
        if not self.extraction_result:
            return {}
        return dict(self.extraction_result.get("metadata") or {})


_SESSION_FIELDS = frozenset(f.name for f in fields(Session))


class SessionStore:
    """Key-based CRUD over sessions. get() hands out deep copies so callers can never mutate the stored record in place.

    Every operation is a single dict access with no awaits, so on one event loop each call is atomic.
    """

    def __init__(self):
        self._sessions: Dict[str, Session] = {}

    def create(
        self,
        input_url: str,
        platform_tag: str,
        *,
        transcribe_audio: bool = True,
        analyze_content: bool = True,
        language: Optional[str] = None,
    ) -> Session:
        session = Session(
            id=str(uuid.uuid4()),
            input_url=input_url,
            platform_tag=platform_tag,
            transcribe_audio=transcribe_audio,
            analyze_content=analyze_content,
            language=language,
        )
        self._sessions[session.id] = session
        return copy.deepcopy(session)

    def get(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return copy.deepcopy(session)

    def exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    def update(self, session_id: str, **changes: Any) -> Session:
        """Merge the given top-level fields into the session. Nested dicts (analysis, extraction_result) are replaced whole, never merged:
        callers that add one analysis sub-field must get() the current value first and pass the full dict back."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)

        for name, value in changes.items():
            if name not in _SESSION_FIELDS:
                raise ValueError(f"Unknown session field: {name}")
            if name in _IMMUTABLE_FIELDS:
                raise ValueError(f"Session field is immutable: {name}")
            if name == "extraction_result" and session.extraction_result is not None and value is not None:
                raise ValueError("extraction_result is set once per session")

        for name, value in changes.items():
            setattr(session, name, copy.deepcopy(value))
        session.updated_at = time.time()
        return copy.deepcopy(session)

    def set_status(
        self,
        session_id: str,
        status: JobStatus,
        progress: int,
        current_step: str,
        error: Optional[str] = None,
    ) -> Session:
        """Advance the state machine: writes status, progress, step, and always overwrites error (None on non-failure transitions)."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        session.status = JobStatus(status)
        session.progress = max(0, min(100, int(progress)))
        session.current_step = current_step
        session.error = error
        session.updated_at = time.time()
        return copy.deepcopy(session)

    def delete(self, session_id: str) -> bool:
        """Housekeeping hook; the pipeline itself never deletes sessions."""
        return self._sessions.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._sessions)
