import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from pinecone import Pinecone

from lib.blocking import run_blocking

logger = logging.getLogger(__name__)


class VectorSearchUnavailable(Exception):
    """The vector index could not answer a query"""


class VectorService:
    def __init__(self, api_key: Optional[str] = None, index_name: Optional[str] = None,
                 host: Optional[str] = None, timeout: float = 30.0, index=None):
        self.timeout = timeout
        if index is not None:
            self.pinecone_index = index
            return

        try:
            logger.info(f"Initializing Pinecone for index: {index_name}")
            pc = Pinecone(api_key=api_key)
            self.pinecone_index = pc.Index(name=index_name, host=host or "")
        except Exception as e:
            logger.error(f"Failed to initialize Pinecone index: {str(e)}")
            logger.error(f"Index Name: {index_name}")
            raise

    async def upsert_reflection(self, reflection_id: str, embedding: List[float], metadata: Dict[str, Any]) -> bool:
        """Store a reflection's embedding, keyed by reflection id"""
        try:
            await run_blocking(
                self.pinecone_index.upsert,
                vectors=[{
                    'id': reflection_id,
                    'values': embedding,
                    'metadata': metadata,
                }],
                timeout=self.timeout,
            )
            return True
        except Exception as e:
            logger.error(f"Failed to store embedding for {reflection_id}: {str(e)}")
            return False

    async def search(self, embedding: List[float], user_id: str, limit: int = 5) -> List[Tuple[str, float]]:
        """Return (reflection_id, score) pairs for the user's nearest reflections"""
        try:
            results = await run_blocking(
                self.pinecone_index.query,
                vector=embedding,
                top_k=limit,
                include_metadata=False,
                filter={'user_id': {'$eq': user_id}},
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise VectorSearchUnavailable("Vector query timed out")
        except Exception as e:
            logger.error(f"Error searching vectors: {str(e)}")
            raise VectorSearchUnavailable(str(e))

        return [(match.id, float(match.score)) for match in results.matches]

    async def describe(self) -> Dict[str, Any]:
        stats = await run_blocking(self.pinecone_index.describe_index_stats, timeout=self.timeout)
        return {
            'dimension': stats.get('dimension'),
            'index_fullness': stats.get('index_fullness'),
            'total_vector_count': stats.get('total_vector_count'),
        }
