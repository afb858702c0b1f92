from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence, runtime_checkable


@dataclass(frozen=True)
class Chunk:
    """
    One stored unit of document text.

    score is only populated on query results: 1 - cosine distance, so higher
    is more relevant.
    """
    id: str
    conversation_id: str
    document_id: str
    chunk_index: int
    content: str
    score: Optional[float] = None


@runtime_checkable
class VectorStore(Protocol):
    """
    Vector index abstraction, scoped by conversation.

    Every vector passed in must have exactly `dimension` components; the
    store rejects anything else before doing I/O.
    """

    dimension: int
    ann_index_ready: bool

    def ensure_schema(self) -> None: ...

    def upsert_document_chunks(
        self,
        conversation_id: str,
        document_id: str,
        contents: Sequence[str],
        vectors: Sequence[Sequence[float]],
        *,
        timeout: Optional[float] = None,
    ) -> int: ...

    def query_similar(
        self,
        conversation_id: str,
        query_vector: Sequence[float],
        limit: int,
        *,
        timeout: Optional[float] = None,
    ) -> List[Chunk]: ...

    def delete_conversation(self, conversation_id: str, *, timeout: Optional[float] = None) -> int: ...

    def close(self) -> None: ...
