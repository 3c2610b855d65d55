import logging
from dataclasses import dataclass
from typing import Optional

from supabase import create_client

from api.services.analysis import AnalysisService
from api.services.audio import AudioService
from api.services.auth import AuthService
from api.services.ingestion import IngestionService
from api.services.retrieval import RetrievalService
from api.services.storage import StorageService
from api.services.tasks import AnalysisQueue
from api.services.vector import VectorService
from api.services.voice import VoiceService
from lib.config import Settings
from lib.elevenlabs_client import ElevenLabsClient
from lib.openai_client import OpenAIClient

logger = logging.getLogger(__name__)


@dataclass
class Services:
    auth: AuthService
    storage: StorageService
    audio: AudioService
    analysis: AnalysisService
    analysis_queue: AnalysisQueue
    ingestion: IngestionService
    retrieval: RetrievalService
    voice: VoiceService
    vector: Optional[VectorService] = None


def build_services(settings: Settings) -> Services:
    """Construct every provider client and pipeline service once, at startup"""
    timeout = settings.provider_timeout_seconds

    logger.info("Initializing OpenAI client...")
    openai_client = OpenAIClient(settings)

    logger.info("Initializing Supabase client...")
    try:
        supabase = create_client(settings.supabase_url, settings.supabase_key)
    except Exception as e:
        logger.error(f"Error initializing Supabase client: {str(e)}")
        raise

    vector_service = None
    if settings.vector_search_enabled:
        try:
            vector_service = VectorService(
                api_key=settings.pinecone_api_key,
                index_name=settings.pinecone_index,
                host=settings.pinecone_host,
                timeout=timeout,
            )
            logger.info("Pinecone initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize Pinecone: {str(e)}")
    else:
        logger.warning("Pinecone not configured; similarity search will use text matching")

    storage_service = StorageService(
        supabase_client=supabase,
        reflections_bucket=settings.reflections_bucket,
        voice_samples_bucket=settings.voice_samples_bucket,
        timeout=timeout,
    )
    audio_service = AudioService(openai_client)
    analysis_service = AnalysisService(openai_client, storage_service, vector_service)
    analysis_queue = AnalysisQueue(
        analysis_service,
        max_attempts=settings.analysis_max_attempts,
        retry_delay=settings.analysis_retry_delay_seconds,
    )

    services = Services(
        auth=AuthService(supabase, timeout=timeout),
        storage=storage_service,
        audio=audio_service,
        analysis=analysis_service,
        analysis_queue=analysis_queue,
        ingestion=IngestionService(storage_service, audio_service, analysis_queue),
        retrieval=RetrievalService(
            openai_client,
            storage_service,
            vector_service,
            max_reflections=settings.grounding_max_reflections,
            max_context_chars=settings.grounding_max_chars,
        ),
        voice=VoiceService(ElevenLabsClient(settings), storage_service),
        vector=vector_service,
    )
    logger.info("All services initialized successfully")
    return services
