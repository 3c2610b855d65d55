import logging
import time
from typing import Any, Dict, Optional

from api.services.audio import DEFAULT_CONTENT_TYPE, get_extension_from_content_type
from lib.error_handler import PersistenceError, TranscriptionError, ValidationError

logger = logging.getLogger(__name__)


class IngestionService:
    def __init__(self, storage_service, audio_service, analysis_queue=None):
        self.storage = storage_service
        self.audio = audio_service
        self.analysis_queue = analysis_queue

    async def ingest(self, user_id: str, audio_data: bytes, content_type: Optional[str] = None,
                     duration_seconds: Optional[int] = None) -> Dict[str, Any]:
        """Store, transcribe and persist a recorded reflection.

        On transcription or insert failure the stored audio is removed, so no
        reflection row exists without its audio and vice versa.
        """
        if not audio_data:
            raise ValidationError("No audio file provided")
        if duration_seconds is not None and duration_seconds <= 0:
            duration_seconds = None

        content_type = content_type or DEFAULT_CONTENT_TYPE
        bucket = self.storage.reflections_bucket
        path = f"{user_id}/{int(time.time() * 1000)}.{get_extension_from_content_type(content_type)}"

        audio_url = await self.storage.upload_object(bucket, path, audio_data, content_type)

        try:
            transcript = await self.audio.transcribe(audio_data, content_type)
        except Exception as e:
            logger.error(f"Transcription error for {path}: {str(e)}")
            await self.storage.remove_object(bucket, path)
            if isinstance(e, TranscriptionError):
                raise
            raise TranscriptionError(f"Transcription failed: {str(e)}")

        try:
            reflection = await self.storage.insert_reflection(user_id, audio_url, transcript, duration_seconds)
        except Exception as e:
            logger.error(f"Database error for {path}: {str(e)}")
            await self.storage.remove_object(bucket, path)
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"Failed to save reflection: {str(e)}")

        self._schedule_analysis(reflection.id, user_id)

        return {
            'reflection_id': reflection.id,
            'transcript': transcript,
            'audio_url': audio_url,
        }

    def _schedule_analysis(self, reflection_id: str, user_id: str) -> None:
        if self.analysis_queue is None:
            logger.warning(f"No analysis queue configured; reflection {reflection_id} left unanalyzed")
            return
        try:
            self.analysis_queue.submit(reflection_id, user_id)
        except Exception as e:
            logger.error(f"Background analysis trigger failed: {str(e)}")
