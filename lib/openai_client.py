import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

from lib.blocking import run_blocking
from lib.config import Settings
from lib.error_handler import MalformedResponseError, ProviderError, TranscriptionError

logger = logging.getLogger(__name__)


def extract_json_object(text: Optional[str]) -> Dict[str, Any]:
    """Return the first balanced JSON object found in text.

    Braces inside string literals are ignored. Raises MalformedResponseError
    when no object can be found or parsed.
    """
    if not text:
        raise MalformedResponseError("Empty response from language model")

    start = text.find('{')
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for pos in range(start, len(text)):
            char = text[pos]
            if in_string:
                if escaped:
                    escaped = False
                elif char == '\\':
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == '{':
                depth += 1
            elif char == '}':
                depth -= 1
                if depth == 0:
                    try:
                        parsed = json.loads(text[start:pos + 1])
                    except json.JSONDecodeError:
                        break
                    if isinstance(parsed, dict):
                        return parsed
                    break
        start = text.find('{', start + 1)

    raise MalformedResponseError(f"No valid JSON in response: {text[:100]}")


class OpenAIClient:
    def __init__(self, settings: Settings, client: Optional[OpenAI] = None):
        self.client = client or OpenAI(
            api_key=settings.openai_api_key,
            timeout=settings.provider_timeout_seconds,
        )
        self.transcription_model = settings.transcription_model
        self.analysis_model = settings.analysis_model
        self.embedding_model = settings.embedding_model
        self.timeout = settings.provider_timeout_seconds

    async def transcribe_audio(self, audio_data: bytes, mime_type: str, filename: str = "audio.webm") -> str:
        """
        Transcribe audio bytes using OpenAI Whisper API
        """
        try:
            transcript = await run_blocking(
                self.client.audio.transcriptions.create,
                model=self.transcription_model,
                file=(filename, audio_data, mime_type),
                response_format="text",
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise TranscriptionError("Transcription timed out")
        except Exception as e:
            raise TranscriptionError(f"Transcription failed: {str(e)}")

        return (transcript or "").strip()

    async def generate_json(
        self,
        system_prompt: str,
        prompt: str,
        schema_name: str,
        schema: Dict[str, Any],
    ) -> Dict[str, Any]:
        """
        Generate a schema-constrained JSON response and parse it
        """
        try:
            response = await run_blocking(
                self.client.chat.completions.create,
                model=self.analysis_model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
                response_format={
                    "type": "json_schema",
                    "json_schema": {"name": schema_name, "strict": True, "schema": schema},
                },
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderError("Response generation timed out")
        except Exception as e:
            raise ProviderError(f"Response generation failed: {str(e)}")

        if not response.choices:
            raise MalformedResponseError("No choices returned from language model")

        content = response.choices[0].message.content
        logger.info(f"Structured response received: {(content or '')[:50]}...")
        return extract_json_object(content)

    async def embed(self, text: str) -> List[float]:
        """Get embedding for text using OpenAI"""
        try:
            response = await run_blocking(
                self.client.embeddings.create,
                model=self.embedding_model,
                input=text,
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderError("Embedding generation timed out")
        except Exception as e:
            raise ProviderError(f"Embedding generation failed: {str(e)}")

        if not response.data:
            raise ProviderError("No embedding data returned from OpenAI")
        return list(response.data[0].embedding)
