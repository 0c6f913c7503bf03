import os
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    """Application settings loaded from environment: LLM/Whisper credentials and models, backend mode, audio storage, per-stage resource ceilings and timeouts.
    Why available: Single source of configuration so the HTTP surface, orchestrator and every stage adapter use the same limits."""
    openai_api_key: str = os.getenv("OPENAI_API_KEY", "")
    openai_base_url: str = os.getenv("OPENAI_BASE_URL", "")  # e.g. https://openrouter.ai/api/v1
    chat_model: str = os.getenv("CHAT_MODEL", "gpt-4o-mini")
    transcription_model: str = os.getenv("TRANSCRIPTION_MODEL", "whisper-1")
    prompt_version: str = os.getenv("PROMPT_VERSION", "v1")
    use_mock_backends: bool = _env_bool("USE_MOCK_BACKENDS")

    audio_dir: str = os.getenv("AUDIO_DIR", os.path.join(os.getcwd(), "data", "audio"))
    ytdlp_command: str = os.getenv("YTDLP_COMMAND", "")  # empty -> python -m yt_dlp

    max_download_mb: int = int(os.getenv("MAX_DOWNLOAD_MB", "500"))
    max_audio_mb: int = int(os.getenv("MAX_AUDIO_MB", "25"))  # Whisper upload limit
    max_transcript_chars: int = int(os.getenv("MAX_TRANSCRIPT_CHARS", "200000"))
    extraction_timeout_seconds: int = int(os.getenv("EXTRACTION_TIMEOUT_SECONDS", "600"))
    transcription_timeout_seconds: int = int(os.getenv("TRANSCRIPTION_TIMEOUT_SECONDS", "600"))
    analysis_timeout_seconds: int = int(os.getenv("ANALYSIS_TIMEOUT_SECONDS", "120"))
    job_timeout_seconds: int = int(os.getenv("JOB_TIMEOUT_SECONDS", "1800"))
    chat_history_max: int = int(os.getenv("CHAT_HISTORY_MAX", "200"))
    rate_limit_requests: int = int(os.getenv("RATE_LIMIT_REQUESTS", "120"))  # per client IP per window
    rate_limit_window_seconds: int = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    @field_validator(
        "max_download_mb",
        "max_audio_mb",
        "max_transcript_chars",
        "extraction_timeout_seconds",
        "transcription_timeout_seconds",
        "analysis_timeout_seconds",
        "job_timeout_seconds",
        "chat_history_max",
        "rate_limit_requests",
        "rate_limit_window_seconds",
    )
    @classmethod
    def must_be_positive(cls, v):
        """Ensure size ceilings, timeouts and history bounds are positive integers. Prevents invalid config from env."""
        if v <= 0:
            raise ValueError("must be > 0")
        return v


settings = Settings()
