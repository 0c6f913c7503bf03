"""Async OpenAI-compatible client for Whisper transcription and chat completions (api_key/base_url from config)."""
from typing import Any

from openai import AsyncOpenAI

from podcast_analyzer.core.config import settings

_openai_client: Any = None


def get_openai_client() -> AsyncOpenAI:
    """Return a singleton AsyncOpenAI client configured with api_key (and optional base_url) from settings.
    Why available: Single place to get the client so the transcription and analysis adapters share one connection pool and one config."""
    global _openai_client
    if _openai_client is None:
        kwargs = {"api_key": settings.openai_api_key}
        if settings.openai_base_url:
            kwargs["base_url"] = settings.openai_base_url
        _openai_client = AsyncOpenAI(**kwargs)
    return _openai_client
