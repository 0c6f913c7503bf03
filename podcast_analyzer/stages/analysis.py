import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from openai import OpenAIError

from podcast_analyzer.core.config import Settings, settings as default_settings
from podcast_analyzer.core.openai_client import get_openai_client
from podcast_analyzer.prompts.loader import get_system_prompt, get_user_prompt
from podcast_analyzer.stages.base import Analyzer, StageContext, StageResult, TaskAbortHandle
from podcast_analyzer.utils.retry import with_retry_async

logger = logging.getLogger(__name__)

# analysis field -> (prompt component, key the model's JSON must contain)
SUBTASKS = {
    "summary": ("summary", "summary"),
    "topics": ("topics", "topics"),
    "mindmap": ("mindmap", "centralTopic"),
    "insights": ("insights", "insights"),
}

ANALYSIS_TYPES = ("comprehensive", "summary", "topics", "mindmap", "insights")


def subtasks_for(analysis_type: str) -> List[str]:
    """Analysis fields to compute for a requested analysis type ("comprehensive" means all four)."""
    if analysis_type == "comprehensive":
        return list(SUBTASKS)
    if analysis_type in SUBTASKS:
        return [analysis_type]
    raise ValueError(f"Unknown analysis type: {analysis_type}")


def safe_json_loads(raw: str) -> Optional[Dict[str, Any]]:
    """Parse the LLM output as a JSON object. If parsing fails, tries the first {...} block; returns None when nothing parses.
    Why available: Makes analysis robust to models that wrap JSON in prose or code fences."""
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        data = json.loads(raw)
        return data if isinstance(data, dict) else None
    except ValueError:
        # fallback: try to extract the first {...} block
        start = raw.find("{")
        end = raw.rfind("}")
        if start != -1 and end != -1 and end > start:
            try:
                data = json.loads(raw[start : end + 1])
                return data if isinstance(data, dict) else None
            except ValueError:
                pass
    return None


def format_metadata(metadata: Optional[Dict[str, Any]]) -> str:
    metadata = metadata or {}
    duration = metadata.get("duration")
    minutes = f"{round(duration / 60)} minutes" if isinstance(duration, (int, float)) and duration > 0 else "Unknown"
    return "\n".join([
        f"- Title: {metadata.get('title') or 'Unknown'}",
        f"- Author: {metadata.get('author') or 'Unknown'}",
        f"- Duration: {minutes}",
    ])


class LLMAnalyzer(Analyzer):
    """Chat-completion backed analysis: one JSON prompt per sub-task, prompts loaded from prompts/<version>/*.yaml."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or default_settings

    async def summarize(self, transcript, metadata, ctx):
        return await self._run("summary", transcript, metadata, ctx)

    async def extract_topics(self, transcript, metadata, ctx):
        return await self._run("topics", transcript, metadata, ctx)

    async def build_mindmap(self, transcript, metadata, ctx):
        return await self._run("mindmap", transcript, metadata, ctx)

    async def derive_insights(self, transcript, metadata, ctx):
        return await self._run("insights", transcript, metadata, ctx)

    def _check_size(self, transcript: str) -> Optional[str]:
        limit = self.settings.max_transcript_chars
        if len(transcript or "") > limit:
            return f"Transcript too long for analysis: {len(transcript)} characters (limit {limit})"
        return None

    async def _complete(self, system_prompt: str, user_msg: str, temperature: float = 0.3) -> str:
        client = get_openai_client()
        resp = await asyncio.wait_for(
            with_retry_async(
                lambda: client.chat.completions.create(
                    model=self.settings.chat_model,
                    messages=[
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_msg},
                    ],
                    temperature=temperature,
                ),
                retry_on=(OpenAIError,),
            ),
            timeout=self.settings.analysis_timeout_seconds,
        )
        return resp.choices[0].message.content or ""

    async def _run(self, field: str, transcript: str, metadata: Dict[str, Any], ctx: StageContext) -> StageResult[dict]:
        """One sub-task: emit 0%, run the LLM request as an abortable task, emit 100% once the JSON is usable."""
        component, required_key = SUBTASKS[field]
        too_long = self._check_size(transcript)
        if too_long:
            return StageResult.fail(too_long)
        if not ctx.emit(0, f"Generating {field}"):
            return StageResult.cancelled()

        user_msg = (
            get_user_prompt(component)
            .replace("<<METADATA>>", format_metadata(metadata))
            .replace("<<TRANSCRIPT>>", transcript)
        )
        task = asyncio.create_task(self._complete(get_system_prompt(component), user_msg))
        ctx.attach(TaskAbortHandle(task))
        try:
            raw = await task
        except asyncio.CancelledError:
            if task.cancelled() and ctx.cancelled():
                return StageResult.cancelled()
            raise
        except asyncio.TimeoutError:
            return StageResult.fail(f"{field} timed out after {self.settings.analysis_timeout_seconds} seconds")
        except OpenAIError as e:
            logger.warning("analysis_request_failed", extra={"job_id": ctx.job_id, "field": field, "error": str(e)})
            return StageResult.fail(f"{field} request failed: {e}")
        finally:
            ctx.detach()

        data = safe_json_loads(raw)
        if data is None or required_key not in data:
            return StageResult.fail(f"{field}: model returned no usable JSON")
        if not ctx.emit(100, f"{field.capitalize()} ready"):
            return StageResult.cancelled()
        return StageResult.ok(data)

    async def answer_question(self, question, transcript, metadata, history, summary=None):
        too_long = self._check_size(transcript)
        if too_long:
            return StageResult.fail(too_long)

        turns = "\n".join(f"{m.get('role', 'user')}: {m.get('content', '')}" for m in (history or [])[-10:])
        user_msg = (
            get_user_prompt("chat")
            .replace("<<QUESTION>>", question if not turns else f"{turns}\nuser: {question}")
            .replace("<<METADATA>>", format_metadata(metadata))
            .replace("<<SUMMARY>>", summary or "(none)")
            .replace("<<TRANSCRIPT>>", transcript)
        )
        try:
            raw = await self._complete(get_system_prompt("chat"), user_msg, temperature=0.5)
        except asyncio.TimeoutError:
            return StageResult.fail("chat timed out")
        except OpenAIError as e:
            return StageResult.fail(f"chat request failed: {e}")

        if not raw.strip():
            return StageResult.fail("chat returned no answer")
        data = safe_json_loads(raw)
        if data is None or not data.get("answer"):
            # Model ignored the JSON instruction; keep its prose as the answer.
            data = {"answer": raw.strip(), "confidence": 0.6, "sources": [], "relatedTopics": []}
        return StageResult.ok(data)
