"""Deterministic stand-ins for the external backends (USE_MOCK_BACKENDS=true): no network, no yt-dlp, canned results."""
import asyncio
from typing import Any, Dict, Optional

from podcast_analyzer.stages.base import (
    Analyzer,
    ExtractionData,
    Extractor,
    StageContext,
    StageResult,
    Transcriber,
    TranscriptionData,
)

MOCK_TRANSCRIPT = (
    "Welcome back to the show. Today we talk about building reliable background job pipelines. "
    "Our guest explains why progress reporting matters, how to keep partial results when one step fails, "
    "and why cancellation should be cooperative rather than forced. "
    "We close with practical advice: keep state in one place and make every stage report its own outcome."
)


class MockExtractor(Extractor):
    def __init__(self, step_delay: float = 0.2):
        self.step_delay = step_delay

    async def extract(self, url: str, platform: str, ctx: StageContext) -> StageResult[ExtractionData]:
        for pct, step in ((0, "Starting audio extraction"), (25, "Downloading audio"), (50, "Downloading audio"),
                          (75, "Downloading audio"), (90, "Converting audio")):
            if not ctx.emit(pct, step):
                return StageResult.cancelled()
            await asyncio.sleep(self.step_delay)
        data = ExtractionData(
            audio_location=f"/mock/audio/{ctx.job_id}.mp3",
            metadata={
                "title": f"Mock {platform} episode",
                "description": f"Canned metadata for {url}",
                "author": f"Mock {platform} creator",
                "duration": 1800,
                "thumbnail": None,
                "upload_date": None,
                "webpage_url": url,
                "chapters": None,
            },
            file_size=25_600_000,
        )
        if not ctx.emit(100, "Audio extraction completed"):
            return StageResult.cancelled()
        return StageResult.ok(data)


class MockTranscriber(Transcriber):
    def __init__(self, step_delay: float = 0.2):
        self.step_delay = step_delay

    async def transcribe(self, audio_location: str, language: Optional[str], ctx: StageContext):
        for pct, step in ((0, "Initializing transcription"), (30, "Recognizing speech"), (70, "Recognizing speech")):
            if not ctx.emit(pct, step):
                return StageResult.cancelled()
            await asyncio.sleep(self.step_delay)
        data = TranscriptionData(text=MOCK_TRANSCRIPT, language=language or "en", confidence=0.92, segments=None)
        if not ctx.emit(100, "Transcription completed"):
            return StageResult.cancelled()
        return StageResult.ok(data)


class MockAnalyzer(Analyzer):
    def __init__(self, step_delay: float = 0.1):
        self.step_delay = step_delay

    async def _canned(self, ctx: Optional[StageContext], field: str, data: Dict[str, Any]) -> StageResult[dict]:
        if ctx is not None and not ctx.emit(0, f"Generating {field}"):
            return StageResult.cancelled()
        await asyncio.sleep(self.step_delay)
        if ctx is not None and not ctx.emit(100, f"{field.capitalize()} ready"):
            return StageResult.cancelled()
        return StageResult.ok(data)

    async def summarize(self, transcript, metadata, ctx):
        return await self._canned(ctx, "summary", {
            "summary": transcript[:200],
            "keyPoints": ["Report progress per stage", "Keep partial results", "Cancel cooperatively"],
            "readingTime": "1 minute",
            "confidence": 0.9,
        })

    async def extract_topics(self, transcript, metadata, ctx):
        return await self._canned(ctx, "topics", {
            "topics": [{"name": "Background jobs", "relevance": 0.9, "description": "Running long work outside requests"}],
            "categories": ["Technology"],
            "confidence": 0.85,
        })

    async def build_mindmap(self, transcript, metadata, ctx):
        return await self._canned(ctx, "mindmap", {
            "centralTopic": (metadata or {}).get("title") or "Job pipelines",
            "branches": [{"name": "Progress", "subtopics": ["Polling"], "connections": ["Cancellation"]}],
            "confidence": 0.8,
        })

    async def derive_insights(self, transcript, metadata, ctx):
        return await self._canned(ctx, "insights", {
            "insights": [{"title": "One source of truth", "description": "Pollers read one store", "impact": "high",
                          "category": "technical"}],
            "actionableAdvice": ["Make every stage return a tagged result"],
            "quotableQuotes": ["Keep state in one place."],
            "confidence": 0.8,
        })

    async def answer_question(self, question, transcript, metadata, history, summary=None):
        return await self._canned(None, "answer", {
            "answer": f"Based on the episode: {transcript[:120]}",
            "confidence": 0.7,
            "sources": [transcript[:80]],
            "relatedTopics": ["Background jobs"],
        })
