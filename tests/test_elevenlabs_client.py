import pytest
from unittest.mock import patch

import aiohttp

from lib.elevenlabs_client import ElevenLabsClient
from lib.error_handler import ProviderError


class FakeResponse:
    def __init__(self, status=200, body=b"", payload=None):
        self.status = status
        self.body = body
        self.payload = payload or {}

    async def read(self):
        return self.body

    async def json(self):
        return self.payload

    async def text(self):
        return self.body.decode()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    """Records requests and replays a canned response"""

    def __init__(self, response=None, error=None):
        self.response = response or FakeResponse()
        self.error = error
        self.requests = []

    def _request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        if self.error:
            raise self.error
        return self.response

    def post(self, url, **kwargs):
        return self._request('POST', url, **kwargs)

    def get(self, url, **kwargs):
        return self._request('GET', url, **kwargs)

    def delete(self, url, **kwargs):
        return self._request('DELETE', url, **kwargs)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


@pytest.fixture
def client(settings):
    return ElevenLabsClient(settings)


def _patch_session(session):
    return patch('lib.elevenlabs_client.aiohttp.ClientSession', return_value=session)


@pytest.mark.asyncio
async def test_synthesize_speech(client):
    session = FakeSession(FakeResponse(body=b"ID3-audio"))

    with _patch_session(session):
        audio = await client.synthesize_speech("Hello there", 'voice-abc')

    assert audio == b"ID3-audio"
    method, url, kwargs = session.requests[0]
    assert method == 'POST'
    assert url == "https://api.elevenlabs.io/v1/text-to-speech/voice-abc"
    assert kwargs['headers']['xi-api-key'] == 'test-elevenlabs'
    assert kwargs['headers']['Accept'] == 'audio/mpeg'
    assert kwargs['json']['text'] == "Hello there"
    assert kwargs['json']['model_id'] == 'eleven_monolingual_v1'


@pytest.mark.asyncio
async def test_synthesize_error_status(client):
    session = FakeSession(FakeResponse(status=401, body=b'{"detail": "invalid api key"}'))

    with _patch_session(session), pytest.raises(ProviderError):
        await client.synthesize_speech("Hello", 'voice-abc')


@pytest.mark.asyncio
async def test_synthesize_empty_audio(client):
    with _patch_session(FakeSession(FakeResponse(body=b""))), pytest.raises(ProviderError):
        await client.synthesize_speech("Hello", 'voice-abc')


@pytest.mark.asyncio
async def test_synthesize_connection_error(client):
    session = FakeSession(error=aiohttp.ClientConnectionError("connection reset"))

    with _patch_session(session), pytest.raises(ProviderError):
        await client.synthesize_speech("Hello", 'voice-abc')


@pytest.mark.asyncio
async def test_create_voice_clone(client):
    session = FakeSession(FakeResponse(payload={'voice_id': 'voice-new'}))

    with _patch_session(session):
        voice_id = await client.create_voice_clone("Sam's Voice", [b"one", b"two", b"three"])

    assert voice_id == 'voice-new'
    method, url, kwargs = session.requests[0]
    assert url == "https://api.elevenlabs.io/v1/voices/add"
    assert isinstance(kwargs['data'], aiohttp.FormData)


@pytest.mark.asyncio
async def test_create_voice_clone_without_voice_id(client):
    with _patch_session(FakeSession(FakeResponse(payload={}))), pytest.raises(ProviderError):
        await client.create_voice_clone("Sam's Voice", [b"one", b"two", b"three"])


@pytest.mark.asyncio
async def test_delete_voice(client):
    session = FakeSession(FakeResponse())

    with _patch_session(session):
        await client.delete_voice('voice-abc')

    assert session.requests[0][:2] == ('DELETE', "https://api.elevenlabs.io/v1/voices/voice-abc")
