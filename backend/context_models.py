"""Pydantic models for related-note lookups and context-grounded chat."""

from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RelatedNotesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(alias="owner_id", min_length=1)
    text: str
    exclude_note_id: Optional[str] = Field(default=None, alias="exclude_note_id")
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_results: Optional[int] = Field(default=None, alias="max_results", ge=1, le=50)
    recency_weight: Optional[float] = Field(default=None, alias="recency_weight", ge=0.0, le=1.0)


class RelatedNoteHitPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    note_id: str = Field(alias="note_id")
    chunk_index: int = Field(alias="chunk_index")
    excerpt: str
    similarity: float
    recency: float
    score: float
    updated_at: float = Field(alias="updated_at")
    topics: List[str] = Field(default_factory=list)


class RelatedNotesResponsePayload(BaseModel):
    results: List[RelatedNoteHitPayload] = Field(default_factory=list)


class ChatTurnPayload(BaseModel):
    role: str = Field(pattern=r"^(user|assistant|system)$")
    content: str


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(alias="owner_id", min_length=1)
    message: str = Field(min_length=1)
    page_context: Optional[str] = Field(default=None, alias="page_context")
    note_id: Optional[str] = Field(default=None, alias="note_id")
    history: List[ChatTurnPayload] = Field(default_factory=list)


class ContextExcerptPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: str
    text: str
    note_id: Optional[str] = Field(default=None, alias="note_id")
    chunk_index: Optional[int] = Field(default=None, alias="chunk_index")
    score: Optional[float] = None
    truncated: bool = False


class ChatResponsePayload(BaseModel):
    reply: str
    context: List[ContextExcerptPayload] = Field(default_factory=list)
    related: List[RelatedNoteHitPayload] = Field(default_factory=list)


class WarmupResponsePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    embedder_model: str = Field(alias="embedder_model")
    embedding_dim: int = Field(alias="embedding_dim")
    indexed_notes: int = Field(alias="indexed_notes")
