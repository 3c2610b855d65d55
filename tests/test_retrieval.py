import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from api.services.retrieval import (
    NO_REFLECTIONS_RESPONSE,
    TEXT_MATCH_REASON,
    RetrievalService,
    format_reflection_block,
    relevance_reason,
)
from api.services.vector import VectorSearchUnavailable
from lib.error_handler import MalformedResponseError
from conftest import TEST_USER_ID, make_analyzed_reflection, make_reflection


def _history(count):
    """Newest-first reflections r0..r{count-1}"""
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    return [
        make_analyzed_reflection(id=f"r{i}", created_at=start - timedelta(days=i), transcript=f"Reflection number {i}")
        for i in range(count)
    ]


@pytest.fixture
def vector_service():
    vector = MagicMock()
    vector.search = AsyncMock(return_value=[])
    return vector


@pytest.fixture
def retrieval(mock_openai_client, mock_storage_service, vector_service):
    return RetrievalService(mock_openai_client, mock_storage_service, vector_service)


@pytest.mark.parametrize("score, reason", [
    (0.95, "Highly relevant match"),
    (0.81, "Highly relevant match"),
    (0.8, "Moderately relevant match"),
    (0.61, "Moderately relevant match"),
    (0.6, "Potentially relevant match"),
    (0.5, "Potentially relevant match"),
])
def test_relevance_reason_buckets(score, reason):
    assert relevance_reason(score) == reason


@pytest.mark.asyncio
async def test_vector_search_filters_and_orders(retrieval, vector_service, mock_storage_service, mock_openai_client):
    vector_service.search.return_value = [('r1', 0.7), ('r2', 0.3), ('r3', 0.92), ('r4', 0.5)]
    mock_storage_service.get_reflections_by_ids.return_value = [
        make_reflection(id='r1'), make_reflection(id='r3'), make_reflection(id='r4'),
    ]

    results = await retrieval.search_by_query(TEST_USER_ID, "family", limit=5)

    mock_openai_client.embed.assert_awaited_once_with("family")
    vector_service.search.assert_awaited_once_with([0.1, 0.2, 0.3], TEST_USER_ID, 5)
    assert [r.reflection.id for r in results] == ['r3', 'r1', 'r4']
    assert [r.relevance_reason for r in results] == [
        "Highly relevant match", "Moderately relevant match", "Potentially relevant match",
    ]
    ids = mock_storage_service.get_reflections_by_ids.await_args.args[1]
    assert 'r2' not in ids


@pytest.mark.asyncio
async def test_vector_match_without_row_is_skipped(retrieval, vector_service, mock_storage_service):
    vector_service.search.return_value = [('r1', 0.9), ('gone', 0.85)]
    mock_storage_service.get_reflections_by_ids.return_value = [make_reflection(id='r1')]

    results = await retrieval.search_by_query(TEST_USER_ID, "family")

    assert [r.reflection.id for r in results] == ['r1']


@pytest.mark.asyncio
async def test_vector_scores_are_capped_at_one(retrieval, vector_service, mock_storage_service):
    vector_service.search.return_value = [('r1', 1.0000002)]
    mock_storage_service.get_reflections_by_ids.return_value = [make_reflection(id='r1')]

    results = await retrieval.search_by_query(TEST_USER_ID, "family")

    assert results[0].similarity_score == 1.0


@pytest.mark.asyncio
async def test_no_vector_matches_above_threshold(retrieval, vector_service, mock_storage_service):
    vector_service.search.return_value = [('r1', 0.2)]

    assert await retrieval.search_by_query(TEST_USER_ID, "family") == []
    mock_storage_service.get_reflections_by_ids.assert_not_awaited()
    mock_storage_service.text_search.assert_not_awaited()


@pytest.mark.asyncio
async def test_falls_back_to_text_search(retrieval, vector_service, mock_storage_service):
    vector_service.search.side_effect = VectorSearchUnavailable("index down")
    mock_storage_service.text_search.return_value = [make_reflection(id='r1'), make_reflection(id='r2')]

    results = await retrieval.search_by_query(TEST_USER_ID, "family", limit=3)

    mock_storage_service.text_search.assert_awaited_once_with(TEST_USER_ID, "family", 3)
    assert [r.similarity_score for r in results] == [0.8, 0.8]
    assert all(r.relevance_reason == TEXT_MATCH_REASON for r in results)


@pytest.mark.asyncio
async def test_text_search_without_vector_service(mock_openai_client, mock_storage_service):
    mock_storage_service.text_search.return_value = [make_reflection(id='r1')]
    service = RetrievalService(mock_openai_client, mock_storage_service)

    results = await service.search_by_query(TEST_USER_ID, "family")

    assert results[0].similarity_score == 0.8


@pytest.mark.asyncio
async def test_grounded_answer_cites_in_order(retrieval, mock_openai_client, mock_storage_service):
    mock_storage_service.get_all_reflections.return_value = _history(4)
    mock_openai_client.generate_json.return_value = {
        'response': "I keep coming back to my family. ",
        'selectedReflectionIds': ['r2', 'unknown', 'r0', 'r2'],
    }

    answer = await retrieval.answer_from_all_reflections(TEST_USER_ID, "What matters to me?")

    assert answer.response_text == "I keep coming back to my family."
    refs = answer.referenced_reflections
    assert [ref.id for ref in refs] == ['r2', 'r0']
    assert [ref.citation_index for ref in refs] == [1, 2]
    assert refs[0].to_public_dict()['citationIndex'] == 1

    system_prompt, prompt = mock_openai_client.generate_json.await_args.args
    assert "[Reflection r3]" in prompt
    assert "What matters to me?" in prompt
    assert mock_openai_client.generate_json.await_args.kwargs['schema_name'] == 'grounded_answer'


@pytest.mark.asyncio
async def test_grounded_answer_without_relevant_reflections(retrieval, mock_openai_client, mock_storage_service):
    mock_storage_service.get_all_reflections.return_value = _history(2)
    mock_openai_client.generate_json.return_value = {
        'response': "I haven't talked about that yet.",
        'selectedReflectionIds': [],
    }

    answer = await retrieval.answer_from_all_reflections(TEST_USER_ID, "Tell me about sailing")

    assert answer.referenced_reflections == []


@pytest.mark.asyncio
async def test_empty_history_skips_generation(retrieval, mock_openai_client, mock_storage_service):
    mock_storage_service.get_all_reflections.return_value = []

    answer = await retrieval.answer_from_all_reflections(TEST_USER_ID, "How am I doing?")

    assert answer.response_text == NO_REFLECTIONS_RESPONSE
    assert answer.referenced_reflections == []
    mock_openai_client.generate_json.assert_not_awaited()


@pytest.mark.asyncio
async def test_grounding_context_keeps_newest(mock_openai_client, mock_storage_service):
    history = _history(6)
    block_size = len(format_reflection_block(history[0]))
    service = RetrievalService(
        mock_openai_client, mock_storage_service,
        max_reflections=5, max_context_chars=block_size * 3 + 10,
    )
    mock_storage_service.get_all_reflections.return_value = history
    mock_openai_client.generate_json.return_value = {
        'response': "Something.",
        'selectedReflectionIds': ['r1', 'r4'],
    }

    answer = await service.answer_from_all_reflections(TEST_USER_ID, "question")

    assert mock_storage_service.get_all_reflections.await_args.kwargs['limit'] == 6
    prompt = mock_openai_client.generate_json.await_args.args[1]
    assert "[Reflection r0]" in prompt and "[Reflection r2]" in prompt
    assert "[Reflection r3]" not in prompt
    # r4 was never shown to the model
    assert [ref.id for ref in answer.referenced_reflections] == ['r1']


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [
    {'response': "", 'selectedReflectionIds': []},
    {'response': "Fine.", 'selectedReflectionIds': "r1"},
    {'selectedReflectionIds': []},
])
async def test_malformed_grounded_answer(retrieval, mock_openai_client, mock_storage_service, payload):
    mock_storage_service.get_all_reflections.return_value = _history(2)
    mock_openai_client.generate_json.return_value = payload

    with pytest.raises(MalformedResponseError):
        await retrieval.answer_from_all_reflections(TEST_USER_ID, "question")
