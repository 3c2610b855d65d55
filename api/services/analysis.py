import asyncio
import concurrent.futures
import logging
import threading
from numbers import Real
from typing import Any, Dict, List, Optional, Tuple

from lib.error_handler import MalformedResponseError, NotFoundError, PersistenceError
from lib.models import AnalysisResult, Reflection

logger = logging.getLogger(__name__)

ANALYSIS_SYSTEM_PROMPT = (
    "You analyze personal voice reflections. "
    "Only extract what is actually present in the transcript. "
    "Be grounded and non-judgmental."
)

ANALYSIS_SCHEMA = {
    "type": "object",
    "properties": {
        "emotional_tags": {"type": "array", "items": {"type": "string"}},
        "themes": {"type": "array", "items": {"type": "string"}},
        "key_insights": {"type": "array", "items": {"type": "string"}},
        "sentiment_score": {"type": "number"},
    },
    "required": ["emotional_tags", "themes", "key_insights", "sentiment_score"],
    "additionalProperties": False,
}


def build_analysis_prompt(transcript: str) -> str:
    return f"""
    Extract the following information from this reflection transcript.

    Transcript:
    "{transcript}"

    Guidelines:
    - emotional_tags: 2-4 emotion words (e.g. "hopeful", "anxious", "grateful", "frustrated", "peaceful")
    - themes: 1-3 life areas (e.g. "career", "relationships", "self-growth", "health", "family")
    - key_insights: 1-3 realizations or lessons, one sentence each
    - sentiment_score: -1.0 (very negative) to 1.0 (very positive)
    """


def _string_list(payload: Dict[str, Any], key: str) -> List[str]:
    value = payload.get(key)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise MalformedResponseError(f"Field {key} must be a list of strings")
    return [item.strip() for item in value if item.strip()]


def parse_analysis(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Validate the model's analysis JSON.

    Sentiment outside [-1.0, 1.0] is rejected rather than clamped.
    """
    score = payload.get('sentiment_score')
    if isinstance(score, bool) or not isinstance(score, Real):
        raise MalformedResponseError("Field sentiment_score must be a number")
    if not -1.0 <= float(score) <= 1.0:
        raise MalformedResponseError(f"sentiment_score {score} is outside [-1.0, 1.0]")

    return {
        'emotional_tags': _string_list(payload, 'emotional_tags'),
        'themes': _string_list(payload, 'themes'),
        'key_insights': _string_list(payload, 'key_insights'),
        'sentiment_score': float(score),
    }


def stored_analysis(reflection: Reflection) -> AnalysisResult:
    return AnalysisResult(
        emotional_tags=reflection.emotional_tags or [],
        themes=reflection.themes or [],
        key_insights=reflection.key_insights or [],
        sentiment_score=reflection.sentiment_score or 0.0,
        embedding=reflection.embedding or [],
    )


class AnalysisService:
    def __init__(self, openai_client, storage_service, vector_service=None):
        self.client = openai_client
        self.storage = storage_service
        self.vector = vector_service
        # Analyses in progress, shared by the request loop and the queue worker thread
        self._in_flight: Dict[str, concurrent.futures.Future] = {}
        self._in_flight_lock = threading.Lock()
        if vector_service is None:
            logger.warning("Analysis service running without vector index")

    async def analyze(self, reflection_id: str, user_id: Optional[str] = None) -> AnalysisResult:
        analysis, _ = await self.analyze_with_status(reflection_id, user_id)
        return analysis

    async def analyze_with_status(self, reflection_id: str,
                                  user_id: Optional[str] = None) -> Tuple[AnalysisResult, bool]:
        """Analyze a reflection once. Returns the analysis and whether it was already stored."""
        reflection = await self.storage.get_reflection(reflection_id, user_id)
        if reflection is None:
            raise NotFoundError(f"Reflection {reflection_id} not found", user_message="Reflection not found")

        if reflection.is_analyzed:
            logger.info(f"Reflection {reflection_id} already analyzed at {reflection.analyzed_at}")
            return stored_analysis(reflection), True

        with self._in_flight_lock:
            pending = self._in_flight.get(reflection_id)
            owner = pending is None
            if owner:
                pending = concurrent.futures.Future()
                # A running future cannot be cancelled by a waiter going away
                pending.set_running_or_notify_cancel()
                self._in_flight[reflection_id] = pending

        if not owner:
            logger.info(f"Reflection {reflection_id} is already being analyzed; waiting for it")
            return await asyncio.wrap_future(pending), True

        try:
            analysis, cached = await self._run_analysis(reflection)
        except BaseException as e:
            pending.set_exception(e)
            raise
        finally:
            with self._in_flight_lock:
                self._in_flight.pop(reflection_id, None)

        pending.set_result(analysis)
        return analysis, cached

    async def _run_analysis(self, reflection: Reflection) -> Tuple[AnalysisResult, bool]:
        reflection_id = reflection.id
        logger.info(f"Analyzing reflection {reflection_id}")
        payload = await self.client.generate_json(
            ANALYSIS_SYSTEM_PROMPT,
            build_analysis_prompt(reflection.transcript),
            schema_name="reflection_analysis",
            schema=ANALYSIS_SCHEMA,
        )
        fields = parse_analysis(payload)

        embedding = await self.client.embed(reflection.transcript)
        analysis = AnalysisResult(**fields, embedding=embedding)
        logger.info(f"Analysis for {reflection_id}: {analysis.summary()} ({len(embedding)}-d embedding)")

        analyzed_at = await self.storage.save_analysis(reflection_id, analysis)
        if analyzed_at is None:
            # Another worker stored its analysis first; that one stands
            current = await self.storage.get_reflection(reflection_id)
            if current is None:
                raise NotFoundError(f"Reflection {reflection_id} not found", user_message="Reflection not found")
            if not current.is_analyzed:
                raise PersistenceError(f"Analysis update for {reflection_id} was not applied")
            logger.info(f"Reflection {reflection_id} was analyzed concurrently; keeping stored analysis")
            return stored_analysis(current), True

        if self.vector:
            await self.vector.upsert_reflection(
                reflection_id,
                embedding,
                metadata={
                    'user_id': reflection.user_id,
                    'created_at': reflection.created_at.isoformat(),
                },
            )

        return analysis, False
