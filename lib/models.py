import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

ANALYSIS_VERSION = "v1"


class Reflection(BaseModel):
    id: str
    user_id: str
    audio_url: str
    transcript: str
    duration_seconds: Optional[int] = None
    created_at: datetime

    # Analysis fields, populated together by the analysis pipeline
    emotional_tags: Optional[List[str]] = None
    themes: Optional[List[str]] = None
    key_insights: Optional[List[str]] = None
    sentiment_score: Optional[float] = None
    embedding: Optional[List[float]] = None
    analyzed_at: Optional[datetime] = None
    analysis_version: Optional[str] = None

    @field_validator('embedding', mode='before')
    @classmethod
    def _parse_embedding(cls, value):
        # pgvector columns come back from PostgREST as "[0.1,0.2,...]"
        if isinstance(value, str):
            return json.loads(value)
        return value

    @property
    def is_analyzed(self) -> bool:
        return self.analyzed_at is not None

    def to_public_dict(self) -> Dict[str, Any]:
        """Row as returned to API clients, without the raw embedding"""
        return self.model_dump(mode="json", exclude={"embedding"})


class AnalysisResult(BaseModel):
    emotional_tags: List[str]
    themes: List[str]
    key_insights: List[str]
    sentiment_score: float = Field(ge=-1.0, le=1.0)
    embedding: List[float] = Field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"embedding"})


class VoiceProfile(BaseModel):
    id: Optional[str] = None
    user_id: str
    voice_id: str
    sample_audio_urls: List[str] = Field(default_factory=list)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "VoiceProfile":
        return cls(
            id=row.get('id'),
            user_id=row['user_id'],
            voice_id=row['elevenlabs_voice_id'],
            sample_audio_urls=row.get('sample_audio_urls') or [],
            is_active=row.get('is_active', True),
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
        )


class QueryResult(BaseModel):
    reflection: Reflection
    similarity_score: float = Field(ge=0.0, le=1.0)
    relevance_reason: Optional[str] = None

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            'reflection': self.reflection.to_public_dict(),
            'similarity_score': self.similarity_score,
            'relevance_reason': self.relevance_reason,
        }


class ReflectionReference(BaseModel):
    id: str
    transcript: str
    audio_url: str
    created_at: datetime
    emotional_tags: List[str] = Field(default_factory=list)
    themes: List[str] = Field(default_factory=list)
    citation_index: int = Field(ge=1, serialization_alias="citationIndex")
    similarity_score: float = 1.0

    @classmethod
    def from_reflection(cls, reflection: Reflection, citation_index: int) -> "ReflectionReference":
        return cls(
            id=reflection.id,
            transcript=reflection.transcript,
            audio_url=reflection.audio_url,
            created_at=reflection.created_at,
            emotional_tags=reflection.emotional_tags or [],
            themes=reflection.themes or [],
            citation_index=citation_index,
        )

    def to_public_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class GroundedAnswer(BaseModel):
    response_text: str
    referenced_reflections: List[ReflectionReference] = Field(default_factory=list)
