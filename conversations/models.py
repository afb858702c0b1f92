from __future__ import annotations

from datetime import datetime
from typing import List

from pydantic import BaseModel, Field


class Message(BaseModel):
    """
    A single conversation turn as stored in history.json.
    """
    role: str  # "user" | "assistant" | "system"
    content: str
    timestamp: datetime


class DocumentMeta(BaseModel):
    """
    Metadata about an uploaded document, stored in documents.json.

    content_cache holds the extracted text once it has been read; it is never
    written back to disk.
    """
    id: str
    name: str
    stored_path: str
    text_path: str
    size: int
    uploaded_at: datetime
    content_cache: str = Field(default="", exclude=True)


class PostMessageRequest(BaseModel):
    content: str


class SearchRequest(BaseModel):
    query: str
    top_k: int = 0  # 0 -> RETRIEVAL_TOP_K


class SearchHit(BaseModel):
    chunk_id: str
    document_id: str
    chunk_index: int
    content: str
    score: float


class SearchResponse(BaseModel):
    hits: List[SearchHit]
