import logging
from typing import List, Optional, Tuple

from api.services.vector import VectorSearchUnavailable
from lib.error_handler import MalformedResponseError
from lib.models import GroundedAnswer, QueryResult, Reflection, ReflectionReference

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.5
TEXT_MATCH_SCORE = 0.8
TEXT_MATCH_REASON = "Text match found in reflection"
NO_REFLECTIONS_RESPONSE = (
    "You haven't recorded any reflections yet. "
    "Record a few thoughts and ask me again."
)

GROUNDED_SYSTEM_PROMPT = (
    "You are a gentle companion that helps a person listen back to their own past voice reflections. "
    "Your answer will be spoken aloud in the person's own voice, so write naturally, in the first person, "
    "with no lists, markdown or citations in the text. "
    "Only use what is present in the reflections you are given."
)

GROUNDED_SCHEMA = {
    "type": "object",
    "properties": {
        "response": {"type": "string"},
        "selectedReflectionIds": {"type": "array", "items": {"type": "string"}},
    },
    "required": ["response", "selectedReflectionIds"],
    "additionalProperties": False,
}


def relevance_reason(score: float) -> str:
    if score > 0.8:
        return "Highly relevant match"
    if score > 0.6:
        return "Moderately relevant match"
    return "Potentially relevant match"


def format_reflection_block(reflection: Reflection) -> str:
    """Format a reflection as a labeled block for the grounding prompt"""
    return "\n".join([
        f"[Reflection {reflection.id}]",
        f"Date: {reflection.created_at.strftime('%Y-%m-%d')}",
        f"Emotions: {', '.join(reflection.emotional_tags or []) or 'none'}",
        f"Themes: {', '.join(reflection.themes or []) or 'none'}",
        f"Transcript: {reflection.transcript}",
    ])


class RetrievalService:
    def __init__(self, openai_client, storage_service, vector_service=None,
                 max_reflections: int = 200, max_context_chars: int = 60000):
        self.client = openai_client
        self.storage = storage_service
        self.vector = vector_service
        self.max_reflections = max_reflections
        self.max_context_chars = max_context_chars

    # Strategy A: similarity search

    async def search_by_query(self, user_id: str, query_text: str, limit: int = 5) -> List[QueryResult]:
        embedding = await self.client.embed(query_text)

        if self.vector is not None:
            try:
                return await self._vector_search(user_id, embedding, limit)
            except VectorSearchUnavailable as e:
                logger.warning(f"Vector search unavailable, falling back to text search: {str(e)}")
        else:
            logger.warning("Vector service not available for search, using text search")

        reflections = await self.storage.text_search(user_id, query_text, limit)
        return [
            QueryResult(reflection=reflection, similarity_score=TEXT_MATCH_SCORE, relevance_reason=TEXT_MATCH_REASON)
            for reflection in reflections
        ]

    async def _vector_search(self, user_id: str, embedding: List[float], limit: int) -> List[QueryResult]:
        matches = await self.vector.search(embedding, user_id, limit)
        matches = sorted(
            [(reflection_id, score) for reflection_id, score in matches if score >= SIMILARITY_THRESHOLD],
            key=lambda match: match[1],
            reverse=True,
        )[:limit]
        if not matches:
            return []

        rows = await self.storage.get_reflections_by_ids(user_id, [reflection_id for reflection_id, _ in matches])
        by_id = {reflection.id: reflection for reflection in rows}

        results = []
        for reflection_id, score in matches:
            reflection = by_id.get(reflection_id)
            if reflection is None:
                logger.warning(f"Vector match {reflection_id} has no reflection row for user {user_id}")
                continue
            score = min(score, 1.0)
            results.append(QueryResult(
                reflection=reflection,
                similarity_score=score,
                relevance_reason=relevance_reason(score),
            ))
        return results

    # Strategy B: grounded generation over the whole history

    def _build_context(self, reflections: List[Reflection]) -> Tuple[List[Reflection], str]:
        """Keep the newest reflections that fit the context budget"""
        kept: List[Reflection] = []
        blocks: List[str] = []
        used = 0
        for reflection in reflections[:self.max_reflections]:
            block = format_reflection_block(reflection)
            if kept and used + len(block) > self.max_context_chars:
                break
            kept.append(reflection)
            blocks.append(block)
            used += len(block) + 2

        if len(kept) < len(reflections):
            logger.warning(f"Grounding context truncated to {len(kept)} of {len(reflections)} reflections")
        return kept, "\n\n".join(blocks)

    async def answer_from_all_reflections(self, user_id: str, query_text: str) -> GroundedAnswer:
        # One extra row tells us whether the cap truncated anything
        reflections = await self.storage.get_all_reflections(user_id, limit=self.max_reflections + 1)
        if not reflections:
            logger.info(f"No reflections for user {user_id}; skipping generation")
            return GroundedAnswer(response_text=NO_REFLECTIONS_RESPONSE)

        kept, context = self._build_context(reflections)
        prompt = (
            f"Here are my past reflections, newest first:\n\n{context}\n\n"
            f"My question: {query_text}\n\n"
            "Choose the 2-4 reflections most relevant to my question and answer in 2-4 spoken-style sentences. "
            "If none of them are relevant, say so kindly and return an empty selectedReflectionIds list."
        )

        payload = await self.client.generate_json(
            GROUNDED_SYSTEM_PROMPT,
            prompt,
            schema_name="grounded_answer",
            schema=GROUNDED_SCHEMA,
        )
        response_text = payload.get('response')
        selected_ids = payload.get('selectedReflectionIds')
        if not isinstance(response_text, str) or not response_text.strip():
            raise MalformedResponseError("Grounded answer is missing response text")
        if not isinstance(selected_ids, list):
            raise MalformedResponseError("Grounded answer is missing selectedReflectionIds")

        return GroundedAnswer(
            response_text=response_text.strip(),
            referenced_reflections=self._cite(kept, selected_ids),
        )

    def _cite(self, reflections: List[Reflection], selected_ids: List[Optional[str]]) -> List[ReflectionReference]:
        by_id = {reflection.id: reflection for reflection in reflections}
        references: List[ReflectionReference] = []
        seen = set()
        for reflection_id in selected_ids:
            reflection = by_id.get(reflection_id) if isinstance(reflection_id, str) else None
            if reflection is None:
                logger.warning(f"Model selected unknown reflection id: {reflection_id}")
                continue
            if reflection_id in seen:
                continue
            seen.add(reflection_id)
            references.append(ReflectionReference.from_reflection(reflection, citation_index=len(references) + 1))
        return references
