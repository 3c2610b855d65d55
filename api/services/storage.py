import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from lib.blocking import run_blocking
from lib.error_handler import PersistenceError
from lib.models import ANALYSIS_VERSION, AnalysisResult, Reflection, VoiceProfile

logger = logging.getLogger(__name__)

# Characters with meaning inside a PostgREST or=() filter
_FILTER_UNSAFE = re.compile(r'[,(){}"\\*%]')


class StorageService:
    def __init__(self, supabase_client, reflections_bucket: str = 'reflections',
                 voice_samples_bucket: str = 'voice-samples', timeout: float = 30.0):
        self.supabase = supabase_client
        self.reflections_bucket = reflections_bucket
        self.voice_samples_bucket = voice_samples_bucket
        self.timeout = timeout
        self.reflections_table = 'reflections'
        self.voice_profiles_table = 'voice_profiles'
        logger.info(f"Storage service initialized with buckets: {reflections_bucket}, {voice_samples_bucket}")

    async def _execute(self, query) -> Any:
        try:
            return await run_blocking(query.execute, timeout=self.timeout)
        except asyncio.TimeoutError:
            raise PersistenceError("Database request timed out")
        except Exception as e:
            raise PersistenceError(f"Supabase error: {str(e)}")

    # Object storage

    async def upload_object(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """Upload bytes to a storage bucket and return the object's public URL"""
        store = self.supabase.storage.from_(bucket)
        try:
            await run_blocking(
                store.upload,
                path,
                data,
                {'content-type': content_type, 'upsert': 'false'},
                timeout=self.timeout,
            )
            public_url = store.get_public_url(path)
        except asyncio.TimeoutError:
            raise PersistenceError(f"Upload of {path} timed out")
        except Exception as e:
            raise PersistenceError(f"Failed to upload {path}: {str(e)}")

        logger.info(f"Uploaded {len(data)} bytes to {bucket}/{path}")
        return public_url

    async def remove_object(self, bucket: str, path: str) -> bool:
        """Delete a stored object. Failures are logged and reported, not raised."""
        try:
            await run_blocking(self.supabase.storage.from_(bucket).remove, [path], timeout=self.timeout)
            logger.info(f"Removed {bucket}/{path}")
            return True
        except Exception as e:
            logger.error(f"Failed to remove {bucket}/{path}: {str(e)}")
            return False

    # Reflections

    async def insert_reflection(self, user_id: str, audio_url: str, transcript: str,
                                duration_seconds: Optional[int] = None) -> Reflection:
        data = {
            'user_id': user_id,
            'audio_url': audio_url,
            'transcript': transcript,
            'duration_seconds': duration_seconds,
        }
        logger.info(f"Storing reflection for user {user_id}")
        result = await self._execute(self.supabase.table(self.reflections_table).insert(data))
        if not result.data:
            raise PersistenceError("Insert returned no reflection row")
        return Reflection(**result.data[0])

    async def get_reflection(self, reflection_id: str, user_id: Optional[str] = None) -> Optional[Reflection]:
        query = self.supabase.table(self.reflections_table).select('*').eq('id', reflection_id)
        if user_id:
            query = query.eq('user_id', user_id)
        result = await self._execute(query.limit(1))
        return Reflection(**result.data[0]) if result.data else None

    async def save_analysis(self, reflection_id: str, analysis: AnalysisResult) -> Optional[datetime]:
        """Write every analysis field and analyzed_at in a single update.

        The update only applies while analyzed_at is still null. Returns None
        when no row matched, i.e. the reflection was analyzed concurrently or
        no longer exists.
        """
        analyzed_at = datetime.now(timezone.utc)
        update = {
            'emotional_tags': analysis.emotional_tags,
            'themes': analysis.themes,
            'key_insights': analysis.key_insights,
            'sentiment_score': analysis.sentiment_score,
            'embedding': analysis.embedding,
            'analysis_version': ANALYSIS_VERSION,
            'analyzed_at': analyzed_at.isoformat(),
        }
        result = await self._execute(
            self.supabase.table(self.reflections_table)
            .update(update)
            .eq('id', reflection_id)
            .is_('analyzed_at', 'null')
        )
        if not result.data:
            logger.warning(f"Analysis update matched no unanalyzed reflection {reflection_id}")
            return None
        return analyzed_at

    async def list_reflections(self, user_id: str, limit: int = 50, offset: int = 0,
                               theme: Optional[str] = None,
                               emotion: Optional[str] = None) -> Tuple[List[Reflection], int]:
        query = (
            self.supabase.table(self.reflections_table)
            .select('*', count='exact')
            .eq('user_id', user_id)
        )
        if theme:
            query = query.contains('themes', [theme])
        if emotion:
            query = query.contains('emotional_tags', [emotion])

        query = query.order('created_at', desc=True).range(offset, offset + limit - 1)
        result = await self._execute(query)
        reflections = [Reflection(**row) for row in result.data or []]
        return reflections, result.count or 0

    async def get_all_reflections(self, user_id: str, limit: Optional[int] = None) -> List[Reflection]:
        """Newest-first reflections for a user"""
        query = (
            self.supabase.table(self.reflections_table)
            .select('*')
            .eq('user_id', user_id)
            .order('created_at', desc=True)
        )
        if limit:
            query = query.limit(limit)
        result = await self._execute(query)
        return [Reflection(**row) for row in result.data or []]

    async def get_reflections_by_ids(self, user_id: str, reflection_ids: List[str]) -> List[Reflection]:
        if not reflection_ids:
            return []
        result = await self._execute(
            self.supabase.table(self.reflections_table)
            .select('*')
            .eq('user_id', user_id)
            .in_('id', reflection_ids)
        )
        return [Reflection(**row) for row in result.data or []]

    async def text_search(self, user_id: str, query_text: str, limit: int = 5) -> List[Reflection]:
        """Substring match on transcript, containment match on insights and themes"""
        term = _FILTER_UNSAFE.sub(' ', query_text).strip()
        if not term:
            return []

        result = await self._execute(
            self.supabase.table(self.reflections_table)
            .select('*')
            .eq('user_id', user_id)
            .or_(f"transcript.ilike.%{term}%,key_insights.cs.{{{term}}},themes.cs.{{{term}}}")
            .order('created_at', desc=True)
            .limit(limit)
        )
        return [Reflection(**row) for row in result.data or []]

    # Voice profiles

    async def get_active_voice_profile(self, user_id: str) -> Optional[VoiceProfile]:
        result = await self._execute(
            self.supabase.table(self.voice_profiles_table)
            .select('*')
            .eq('user_id', user_id)
            .eq('is_active', True)
            .limit(1)
        )
        return VoiceProfile.from_row(result.data[0]) if result.data else None

    async def upsert_voice_profile(self, user_id: str, voice_id: str, sample_urls: List[str]) -> VoiceProfile:
        """Update the user's existing profile in place, or create the first one"""
        existing = await self._execute(
            self.supabase.table(self.voice_profiles_table).select('id').eq('user_id', user_id).limit(1)
        )

        if existing.data:
            update: Dict[str, Any] = {
                'elevenlabs_voice_id': voice_id,
                'sample_audio_urls': sample_urls,
                'updated_at': datetime.now(timezone.utc).isoformat(),
                'is_active': True,
            }
            logger.info(f"Updating voice profile for user {user_id}")
            result = await self._execute(
                self.supabase.table(self.voice_profiles_table).update(update).eq('user_id', user_id)
            )
        else:
            logger.info(f"Creating voice profile for user {user_id}")
            result = await self._execute(
                self.supabase.table(self.voice_profiles_table).insert({
                    'user_id': user_id,
                    'elevenlabs_voice_id': voice_id,
                    'sample_audio_urls': sample_urls,
                    'is_active': True,
                })
            )

        if not result.data:
            raise PersistenceError(f"Voice profile write returned no row for user {user_id}")
        return VoiceProfile.from_row(result.data[0])

    async def deactivate_voice_profile(self, user_id: str) -> None:
        await self._execute(
            self.supabase.table(self.voice_profiles_table)
            .update({'is_active': False, 'updated_at': datetime.now(timezone.utc).isoformat()})
            .eq('user_id', user_id)
        )

    async def ping(self) -> bool:
        try:
            await self._execute(self.supabase.table(self.reflections_table).select('id').limit(1))
            return True
        except PersistenceError as e:
            logger.error(f"Storage health check failed: {e.message}")
            return False
