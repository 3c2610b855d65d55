import asyncio
import logging
import time
from typing import List, Optional

from lib.elevenlabs_client import DEFAULT_NARRATOR_VOICE_ID
from lib.error_handler import ProviderError, ValidationError
from lib.models import VoiceProfile

logger = logging.getLogger(__name__)

MIN_VOICE_SAMPLES = 3
MAX_VOICE_SAMPLES = 5


class VoiceService:
    def __init__(self, elevenlabs_client, storage_service):
        self.client = elevenlabs_client
        self.storage = storage_service

    async def clone_voice(self, user_id: str, samples: List[bytes], display_name: Optional[str] = None) -> str:
        """Create the user's voice clone and make it their active profile"""
        samples = [sample for sample in samples if sample]
        if len(samples) < MIN_VOICE_SAMPLES:
            raise ValidationError(f"At least {MIN_VOICE_SAMPLES} voice samples required")

        sample_urls = await self._upload_samples(user_id, samples)
        if not sample_urls:
            logger.warning(f"No voice samples stored for user {user_id}; cloning from memory only")

        name = display_name or user_id
        voice_id = await self.client.create_voice_clone(
            f"{name}'s Voice",
            samples,
            description=f"Voice profile for {name}",
        )

        await self.storage.upsert_voice_profile(user_id, voice_id, sample_urls)
        logger.info(f"Voice profile active for user {user_id}: {voice_id}")
        return voice_id

    async def _upload_samples(self, user_id: str, samples: List[bytes]) -> List[str]:
        bucket = self.storage.voice_samples_bucket
        timestamp = int(time.time() * 1000)
        uploads = [
            self.storage.upload_object(
                bucket,
                f"{user_id}/samples/sample_{timestamp}_{index}.webm",
                sample,
                'audio/webm',
            )
            for index, sample in enumerate(samples)
        ]
        results = await asyncio.gather(*uploads, return_exceptions=True)

        sample_urls = []
        for index, result in enumerate(results):
            if isinstance(result, Exception):
                logger.error(f"Sample upload error for sample {index}: {str(result)}")
                continue
            sample_urls.append(result)
        return sample_urls

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> bytes:
        """Speak text in the given voice, falling back once to the default narrator"""
        if not text or not text.strip():
            raise ValidationError("Text to synthesize is empty")

        target_voice_id = voice_id or DEFAULT_NARRATOR_VOICE_ID
        try:
            return await self.client.synthesize_speech(text, target_voice_id)
        except Exception as e:
            if target_voice_id == DEFAULT_NARRATOR_VOICE_ID:
                if isinstance(e, ProviderError):
                    raise
                raise ProviderError(f"Failed to synthesize speech: {str(e)}")
            logger.error(f"Failed with custom voice {target_voice_id}, trying default narrator: {str(e)}")

        return await self.client.synthesize_speech(text, DEFAULT_NARRATOR_VOICE_ID)

    async def get_active_profile(self, user_id: str) -> Optional[VoiceProfile]:
        return await self.storage.get_active_voice_profile(user_id)

    async def deactivate_profile(self, user_id: str) -> Optional[VoiceProfile]:
        profile = await self.storage.get_active_voice_profile(user_id)
        if profile is None:
            return None

        await self.storage.deactivate_voice_profile(user_id)
        try:
            await self.client.delete_voice(profile.voice_id)
        except Exception as e:
            logger.error(f"Failed to delete voice {profile.voice_id} at provider: {str(e)}")
        return profile
