from __future__ import annotations

import math
import threading
import uuid
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple

from core.errors import DimensionMismatchError, ValidationError
from providers.vectorstore import Chunk, VectorStore


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """
    1 - cos(a, b). A zero-norm side has no direction; treat it as unrelated
    (distance 1.0) rather than propagating NaN into the ordering.
    """
    dot = 0.0
    na = 0.0
    nb = 0.0
    for x, y in zip(a, b):
        dot += x * y
        na += x * x
        nb += y * y
    if na == 0.0 or nb == 0.0:
        return 1.0
    return 1.0 - dot / (math.sqrt(na) * math.sqrt(nb))


class InMemoryVectorStore(VectorStore):
    """
    Single-process VectorStore with exact (full scan) cosine search.

    Each document's chunk set is built off to the side and swapped in under a
    lock, which gives the same replace semantics as the Postgres transaction.
    """

    def __init__(self, dimension: int = 768):
        if dimension <= 0:
            raise ValidationError("dimension must be positive")
        self.dimension = int(dimension)
        self.ann_index_ready = False
        self._lock = threading.Lock()
        # (conversation_id, document_id) -> [(chunk, vector)]
        self._docs: Dict[Tuple[str, str], List[Tuple[Chunk, List[float]]]] = {}

    def ensure_schema(self) -> None:
        return

    def close(self) -> None:
        return

    def _check_dimension(self, vec: Sequence[float], what: str = "vector") -> None:
        if len(vec) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(vec), what=what)

    def upsert_document_chunks(
        self,
        conversation_id: str,
        document_id: str,
        contents: Sequence[str],
        vectors: Sequence[Sequence[float]],
        *,
        timeout: Optional[float] = None,
    ) -> int:
        if len(contents) != len(vectors):
            raise ValidationError(
                f"contents and vectors length mismatch: {len(contents)} contents, {len(vectors)} vectors"
            )
        for vec in vectors:
            self._check_dimension(vec)

        entries = [
            (
                Chunk(
                    id=str(uuid.uuid4()),
                    conversation_id=conversation_id,
                    document_id=document_id,
                    chunk_index=idx,
                    content=content,
                ),
                [float(x) for x in vec],
            )
            for idx, (content, vec) in enumerate(zip(contents, vectors))
        ]

        key = (conversation_id, document_id)
        with self._lock:
            if entries:
                self._docs[key] = entries
            else:
                self._docs.pop(key, None)
        return len(entries)

    def query_similar(
        self,
        conversation_id: str,
        query_vector: Sequence[float],
        limit: int,
        *,
        timeout: Optional[float] = None,
    ) -> List[Chunk]:
        self._check_dimension(query_vector, what="embedding")
        if int(limit) <= 0:
            raise ValidationError("limit must be positive")

        with self._lock:
            candidates = [
                entry
                for (conv, _doc), entries in self._docs.items()
                if conv == conversation_id
                for entry in entries
            ]

        scored = [(cosine_distance(vec, query_vector), chunk) for chunk, vec in candidates]
        # sort is stable: ties keep storage order
        scored.sort(key=lambda pair: pair[0])

        return [replace(chunk, score=1.0 - dist) for dist, chunk in scored[: int(limit)]]

    def delete_conversation(self, conversation_id: str, *, timeout: Optional[float] = None) -> int:
        deleted = 0
        with self._lock:
            for key in [k for k in self._docs if k[0] == conversation_id]:
                deleted += len(self._docs.pop(key))
        return deleted

    def count(self, conversation_id: Optional[str] = None) -> int:
        with self._lock:
            return sum(
                len(entries)
                for (conv, _doc), entries in self._docs.items()
                if conversation_id is None or conv == conversation_id
            )
