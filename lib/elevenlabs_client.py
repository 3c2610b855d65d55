import asyncio
import logging
from typing import Dict, List, Optional

import aiohttp

from lib.config import Settings
from lib.error_handler import ProviderError

logger = logging.getLogger(__name__)

# Rachel, a warm narrator voice used when no cloned voice is available
DEFAULT_NARRATOR_VOICE_ID = '21m00Tcm4TlvDq8ikWAM'


class ElevenLabsClient:
    def __init__(self, settings: Settings):
        self.api_key = settings.elevenlabs_api_key
        self.base_url = settings.elevenlabs_base_url.rstrip('/')
        self.tts_model = settings.elevenlabs_tts_model
        self.timeout = aiohttp.ClientTimeout(total=settings.provider_timeout_seconds)

    def _headers(self, accept: str = 'application/json') -> Dict[str, str]:
        return {'xi-api-key': self.api_key, 'Accept': accept}

    async def create_voice_clone(self, name: str, audio_files: List[bytes], description: Optional[str] = None) -> str:
        """Create an instant voice clone from audio samples and return its voice ID"""
        data = aiohttp.FormData()
        data.add_field('name', name)
        data.add_field('description', description or f"Voice profile for {name}")
        data.add_field('remove_background_noise', 'true')
        for index, audio in enumerate(audio_files):
            data.add_field('files', audio, filename=f"sample-{index}.webm", content_type='audio/webm')

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(f"{self.base_url}/v1/voices/add", data=data, headers=self._headers()) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"Voice cloning error: {error_text}")
                        raise ProviderError(f"Voice clone request returned {response.status}")
                    payload = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"Failed to create voice clone: {str(e)}")

        voice_id = payload.get('voice_id')
        if not voice_id:
            raise ProviderError("Voice clone response did not include a voice_id")
        logger.info(f"Voice clone created: {voice_id}")
        return voice_id

    async def synthesize_speech(self, text: str, voice_id: str) -> bytes:
        """Generate speech from text using a specific voice"""
        body = {
            'text': text,
            'model_id': self.tts_model,
            'voice_settings': {'stability': 0.5, 'similarity_boost': 0.75},
        }
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(
                    f"{self.base_url}/v1/text-to-speech/{voice_id}",
                    json=body,
                    headers=self._headers(accept='audio/mpeg'),
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        logger.error(f"Speech synthesis error for voice {voice_id}: {error_text}")
                        raise ProviderError(f"Text-to-speech request returned {response.status}")
                    audio = await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"Failed to synthesize speech: {str(e)}")

        if not audio:
            raise ProviderError("Text-to-speech returned no audio")
        logger.info(f"Synthesized {len(audio)} bytes with voice {voice_id}")
        return audio

    async def delete_voice(self, voice_id: str) -> None:
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.delete(f"{self.base_url}/v1/voices/{voice_id}", headers=self._headers()) as response:
                    if response.status != 200:
                        raise ProviderError(f"Voice deletion returned {response.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderError(f"Failed to delete voice: {str(e)}")
