import asyncio

from pinecone import Pinecone, ServerlessSpec

from lib.config import get_settings
from lib.openai_client import OpenAIClient


def probe_dimension(settings) -> int:
    """Ask the embedding provider for a vector and read its length"""
    embedding = asyncio.run(OpenAIClient(settings).embed("dimension probe"))
    return len(embedding)


def init_pinecone():
    """Initialize Pinecone index for reflection vectors"""
    try:
        settings = get_settings()
        if not settings.vector_search_enabled:
            print("PINECONE_API_KEY and PINECONE_INDEX must be set.")
            return

        pc = Pinecone(api_key=settings.pinecone_api_key)
        index_name = settings.pinecone_index

        # Check if index already exists
        if index_name in pc.list_indexes().names():
            print(f"Index '{index_name}' already exists.")
            return

        dimension = probe_dimension(settings)
        print(f"Creating new Pinecone index '{index_name}' with dimension {dimension}...")
        pc.create_index(
            name=index_name,
            dimension=dimension,
            metric="cosine",
            spec=ServerlessSpec(
                cloud="aws",
                region="us-east-1"
            )
        )
        print("Index created successfully!")

    except Exception as e:
        print(f"Error initializing Pinecone: {str(e)}")
        raise


if __name__ == "__main__":
    init_pinecone()
