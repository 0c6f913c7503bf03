from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Wire models use camelCase on the JSON side; Python code may use either name."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -------------------------
# Requests
# -------------------------

class StartJobRequest(CamelModel):
    """Body for POST /jobs. Why available: Carries the episode URL and which optional stages to run after extraction."""

    # typed loosely so a non-string url is rejected by the handler as 400, not by validation as 422
    url: Any = Field("", description="Episode or video URL (http/https)")
    transcribe_audio: bool = Field(False, description="Run transcription after extraction")
    analyze_content: bool = Field(False, description="Run analysis after transcription (needs transcribeAudio)")
    language: Optional[str] = Field(None, description="Spoken language hint, e.g. en or en-US")


class TranscribeRequest(CamelModel):
    language: Optional[str] = None


class AnalyzeRequest(CamelModel):
    analysis_type: str = Field("comprehensive", description="comprehensive | summary | topics | mindmap | insights")


class ChatTurn(BaseModel):
    role: str = Field(..., pattern="^(user|assistant)$")
    content: str


class ChatRequest(CamelModel):
    """Body for POST /jobs/{id}/chat. Why available: A question about the episode plus optional client-held history (server memory is used when omitted)."""

    message: str = Field(..., min_length=1)
    history: Optional[List[ChatTurn]] = None


# -------------------------
# Responses
# -------------------------

class JobAcceptedResponse(CamelModel):
    session_id: str
    status: str


class Chapter(CamelModel):
    title: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None


class EpisodeMetadata(CamelModel):
    """What extraction learned about the episode. Why available: Shown by the client and fed to analysis prompts."""

    title: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    duration: Optional[float] = Field(None, description="Seconds")
    thumbnail: Optional[str] = None
    upload_date: Optional[str] = None
    webpage_url: Optional[str] = None
    chapters: Optional[List[Chapter]] = None


class TranscriptSegment(CamelModel):
    start: Optional[float] = None
    end: Optional[float] = None
    text: str = ""
    avg_logprob: Optional[float] = None


class AnalysisBundle(CamelModel):
    """The four analysis results; a sub-field is absent when its sub-task failed or has not finished yet."""

    summary: Optional[Dict[str, Any]] = None
    topics: Optional[Dict[str, Any]] = None
    mindmap: Optional[Dict[str, Any]] = None
    insights: Optional[Dict[str, Any]] = None


class JobStatusResponse(CamelModel):
    """Full session snapshot for GET /jobs/{id}. Fields are omitted from the JSON while unpopulated.
    Why available: The polling client renders everything from this one shape."""

    id: str
    url: str
    platform: str
    status: str
    progress: int = Field(..., ge=0, le=100)
    current_step: str
    error: Optional[str] = None
    transcribe_audio: bool
    analyze_content: bool
    language: Optional[str] = None
    audio_location: Optional[str] = None
    file_size: Optional[int] = None
    metadata: Optional[EpisodeMetadata] = None
    transcript: Optional[str] = None
    transcript_language: Optional[str] = None
    transcript_confidence: Optional[float] = None
    transcript_segments: Optional[List[TranscriptSegment]] = None
    analysis: Optional[AnalysisBundle] = None
    created_at: float
    updated_at: float


class ChatResponse(CamelModel):
    session_id: str
    reply: str
    confidence: Optional[float] = None
    sources: List[str] = Field(default_factory=list)
    related_topics: List[str] = Field(default_factory=list)
    history: List[ChatTurn] = Field(default_factory=list)


class LimitsResponse(CamelModel):
    """Current API limits. Why available: Lets the client show ceilings before a long job fails on one."""

    max_download_mb: int
    max_audio_mb: int
    max_transcript_chars: int
    extraction_timeout_seconds: int
    transcription_timeout_seconds: int
    analysis_timeout_seconds: int
    job_timeout_seconds: int
    rate_limit_requests: int
    rate_limit_window_seconds: int


class HealthResponse(CamelModel):
    status: str
    backends: str = Field(..., description="mock | real")
    tools: Dict[str, bool] = Field(default_factory=dict)
    active_jobs: int = 0
