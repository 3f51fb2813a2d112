from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from .taxonomy import FUNNEL_STAGES


class ProcessCallJob(BaseModel):
    call_id: str = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    account_id: Optional[str] = None
    has_transcript: bool = True
    user_id: Optional[str] = None


class TranscriptFetchJob(BaseModel):
    call_id: str = Field(min_length=1)
    organization_id: str = Field(min_length=1)
    account_id: Optional[str] = None
    recording_id: str = Field(min_length=1)
    linked_account_id: str = ""
    provider: str = "default"


class ChatHistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str = Field(min_length=1, max_length=8000)


def _validate_funnel_stages(value: Optional[List[str]]) -> Optional[List[str]]:
    if value is None:
        return None
    invalid = [stage for stage in value if stage not in FUNNEL_STAGES]
    if invalid:
        raise ValueError(f"unknown funnel stage(s): {', '.join(invalid)}")
    return value


class RAGQueryRequest(BaseModel):
    query: str = Field(min_length=3, max_length=1000)
    account_id: str = Field(min_length=1)
    organization_id: Optional[str] = None
    top_k: int = Field(default=8, ge=1, le=20)
    funnel_stages: Optional[List[str]] = None

    @field_validator("funnel_stages")
    @classmethod
    def validate_funnel_stages(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_funnel_stages(value)


class RAGChatRequest(BaseModel):
    query: str = Field(min_length=3, max_length=1000)
    account_id: Optional[str] = None
    organization_id: Optional[str] = None
    history: List[ChatHistoryMessage] = Field(default_factory=list, max_length=50)
    top_k: int = Field(default=8, ge=1, le=20)
    funnel_stages: Optional[List[str]] = None

    @field_validator("funnel_stages")
    @classmethod
    def validate_funnel_stages(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return _validate_funnel_stages(value)


class RAGSource(BaseModel):
    chunk_id: str
    call_id: str
    call_title: Optional[str] = None
    call_date: Optional[date] = None
    text: str
    speaker: Optional[str] = None
    relevance_score: float


class RAGResponse(BaseModel):
    answer: str
    sources: List[RAGSource]
    tokens_used: int


class RecordingWebhookPayload(BaseModel):
    event: str = Field(min_length=1, max_length=64)
    organization_id: str = Field(min_length=1)
    recording_id: str = Field(min_length=1)
    provider: str = Field(default="grain", min_length=1, max_length=32, pattern=r"^[a-z0-9_]+$")
    title: Optional[str] = None
    occurred_at: Optional[datetime] = None
    account_id: Optional[str] = None
    linked_account_id: Optional[str] = None
    transcript: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class DeadLetterReplayRequest(BaseModel):
    limit: int = Field(default=50, ge=1, le=200)
