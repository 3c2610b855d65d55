from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import ValidationError as SettingsValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class ConfigError(RuntimeError):
    """Raised at startup when required configuration is missing"""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "development"
    log_level: str = "INFO"

    # OpenAI settings
    openai_api_key: str
    transcription_model: str = "whisper-1"
    analysis_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"

    # Supabase settings
    supabase_url: str
    supabase_key: str
    reflections_bucket: str = "reflections"
    voice_samples_bucket: str = "voice-samples"

    # Pinecone settings (optional, text search is used without them)
    pinecone_api_key: Optional[str] = None
    pinecone_index: Optional[str] = None
    pinecone_host: Optional[str] = None

    # ElevenLabs settings
    elevenlabs_api_key: str
    elevenlabs_base_url: str = "https://api.elevenlabs.io"
    elevenlabs_tts_model: str = "eleven_monolingual_v1"

    provider_timeout_seconds: float = 30.0
    max_upload_mb: int = 25
    analysis_max_attempts: int = 3
    analysis_retry_delay_seconds: float = 2.0
    grounding_max_reflections: int = 200
    grounding_max_chars: int = 60000

    @property
    def vector_search_enabled(self) -> bool:
        return bool(self.pinecone_api_key and self.pinecone_index)


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()
    except SettingsValidationError as e:
        missing = ", ".join(str(err["loc"][0]).upper() for err in e.errors())
        raise ConfigError(f"Invalid or missing configuration: {missing}") from e
