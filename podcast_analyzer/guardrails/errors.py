import logging

from fastapi import HTTPException

logger = logging.getLogger(__name__)

LLM_UNAVAILABLE = "LLM service unavailable. Check OPENAI_API_KEY, OPENAI_BASE_URL and network."


def as_http_500(e: Exception) -> HTTPException:
    """Log the exception with traceback and return a generic 500 (no internal details leaked).
    Why available: Handlers re-raise HTTPException as-is and funnel everything else through here."""
    logger.exception("unhandled_request_error", exc_info=e)
    return HTTPException(status_code=500, detail="Internal server error")


def as_http_503(reason: str) -> HTTPException:
    logger.warning("llm_unavailable reason=%s", reason)
    return HTTPException(status_code=503, detail=LLM_UNAVAILABLE)
