import logging
from typing import Optional

from lib.error_handler import TranscriptionError, ValidationError

logger = logging.getLogger(__name__)

CONTENT_TYPE_EXTENSIONS = {
    'audio/webm': 'webm',
    'audio/ogg': 'ogg',
    'audio/mp3': 'mp3',
    'audio/mpeg': 'mp3',
    'audio/wav': 'wav',
    'audio/x-wav': 'wav',
    'audio/mp4': 'm4a',
    'audio/m4a': 'm4a',
    'audio/x-m4a': 'm4a',
    'audio/aac': 'aac',
}

DEFAULT_CONTENT_TYPE = 'audio/webm'


def get_extension_from_content_type(content_type: Optional[str]) -> str:
    """Convert content type to file extension"""
    if not content_type:
        return 'webm'

    # Browsers send e.g. "audio/webm;codecs=opus"
    base_type = content_type.split(';')[0].strip().lower()
    extension = CONTENT_TYPE_EXTENSIONS.get(base_type)
    if not extension:
        logger.warning(f"Unknown content type: {content_type}, defaulting to webm")
        return 'webm'
    return extension


class AudioService:
    def __init__(self, openai_client):
        self.client = openai_client

    async def transcribe(self, audio_data: bytes, content_type: Optional[str] = None,
                         allow_empty: bool = False) -> str:
        """Transcribe recorded audio. An empty transcript is an error unless allow_empty."""
        if not audio_data:
            raise ValidationError("No audio file provided")

        content_type = content_type or DEFAULT_CONTENT_TYPE
        extension = get_extension_from_content_type(content_type)
        logger.info(f"Transcribing {len(audio_data)} bytes of {content_type}")

        transcript = await self.client.transcribe_audio(
            audio_data,
            content_type.split(';')[0].strip(),
            filename=f"audio.{extension}",
        )
        if not transcript and not allow_empty:
            raise TranscriptionError("Transcription was empty", user_message="No speech was detected in the recording.")

        logger.info(f"Transcription complete: {transcript[:50]}...")
        return transcript
