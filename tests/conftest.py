import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
import sys
from pathlib import Path

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from api.bootstrap import Services
from api.services.auth import AuthenticatedUser
from api.services.storage import StorageService
from lib.config import Settings
from lib.models import Reflection, VoiceProfile

TEST_USER_ID = "user-1"
AUTH_HEADERS = {'Authorization': 'Bearer test-token'}

QUERY_METHODS = ('select', 'insert', 'update', 'eq', 'is_', 'in_', 'or_', 'contains', 'order', 'range', 'limit')


def make_reflection(**overrides) -> Reflection:
    data = {
        'id': 'reflection-1',
        'user_id': TEST_USER_ID,
        'audio_url': 'https://storage.test/reflections/user-1/1.webm',
        'transcript': 'I am grateful for my family',
        'duration_seconds': 10,
        'created_at': datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    }
    data.update(overrides)
    return Reflection(**data)


def make_analyzed_reflection(**overrides) -> Reflection:
    data = {
        'emotional_tags': ['grateful', 'peaceful'],
        'themes': ['family'],
        'key_insights': ['Family is a source of strength'],
        'sentiment_score': 0.8,
        'embedding': [0.1, 0.2, 0.3],
        'analyzed_at': datetime(2024, 5, 1, 12, 1, tzinfo=timezone.utc),
        'analysis_version': 'v1',
    }
    data.update(overrides)
    return make_reflection(**data)


def make_query(data=None, count=None, error=None):
    """A PostgREST query builder mock whose filter methods chain"""
    query = MagicMock()
    for name in QUERY_METHODS:
        getattr(query, name).return_value = query
    if error is not None:
        query.execute.side_effect = error
    else:
        query.execute.return_value = MagicMock(data=data if data is not None else [], count=count)
    return query


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        environment='test',
        openai_api_key='test-openai',
        supabase_url='https://test.supabase.co',
        supabase_key='test-supabase',
        elevenlabs_api_key='test-elevenlabs',
    )


@pytest.fixture
def mock_openai_client():
    client = MagicMock()
    client.transcribe_audio = AsyncMock(return_value="I am grateful for my family")
    client.generate_json = AsyncMock()
    client.embed = AsyncMock(return_value=[0.1, 0.2, 0.3])
    return client


@pytest.fixture
def mock_storage_service():
    storage = MagicMock(spec=StorageService)
    storage.reflections_bucket = 'reflections'
    storage.voice_samples_bucket = 'voice-samples'
    storage.upload_object = AsyncMock(side_effect=lambda bucket, path, data, content_type: f"https://storage.test/{bucket}/{path}")
    storage.remove_object = AsyncMock(return_value=True)
    return storage


@pytest.fixture
def mock_services():
    auth = MagicMock()
    auth.get_user = AsyncMock(return_value=AuthenticatedUser(id=TEST_USER_ID, email='user@example.com'))

    storage = MagicMock(spec=StorageService)
    storage.reflections_bucket = 'reflections'
    storage.voice_samples_bucket = 'voice-samples'
    storage.ping = AsyncMock(return_value=True)

    voice = MagicMock()
    voice.get_active_profile = AsyncMock(return_value=VoiceProfile(user_id=TEST_USER_ID, voice_id='voice-abc'))
    voice.synthesize = AsyncMock(return_value=b'ID3-audio')

    return Services(
        auth=auth,
        storage=storage,
        audio=MagicMock(),
        analysis=MagicMock(),
        analysis_queue=MagicMock(),
        ingestion=MagicMock(),
        retrieval=MagicMock(),
        voice=voice,
        vector=None,
    )


@pytest.fixture
def test_client(settings, mock_services):
    from api.routes import create_app

    app = create_app(settings, mock_services)
    app.config['TESTING'] = True
    return app.test_client()
