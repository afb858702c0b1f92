from __future__ import annotations

"""rag/ingestion_engine.py

Keeps a document's chunks in the vector store consistent with its current
text.

Design goals:
- Deterministic, testable logic.
- No provider resolution here (providers are passed in).
- One write per refresh: the store replaces the document's whole chunk set
  atomically, so a failed refresh leaves the previous index untouched.
"""

import logging
from typing import Callable, List, Optional, Sequence

from core.errors import DocumentRefreshError, ValidationError
from providers.embeddings import Embedder
from providers.vectorstore import VectorStore

log = logging.getLogger(__name__)

ChunkFn = Callable[[], Sequence[str]]
EmbedFn = Callable[[Sequence[str]], Sequence[Sequence[float]]]


def chunk_text(text: str, chunk_size: int = 1500, overlap: int = 250) -> List[str]:
    """
    Deterministic windowed char-chunking.

    Consecutive windows share `overlap` characters. Whitespace-only text
    yields no chunks.
    """
    t = (text or "").strip()
    if not t:
        return []

    chunk_size = max(200, int(chunk_size))
    overlap = max(0, min(int(overlap), chunk_size - 1))

    out: List[str] = []
    start = 0
    n = len(t)
    while start < n:
        end = min(n, start + chunk_size)
        piece = t[start:end].strip()
        if piece:
            out.append(piece)
        if end >= n:
            break
        start = max(0, end - overlap)

    return out


def refresh_document(
    vector: VectorStore,
    conversation_id: str,
    document_id: str,
    chunk_fn: Optional[ChunkFn],
    embed_fn: Optional[EmbedFn],
) -> int:
    """
    chunk -> embed -> replace, for one document.

    A document that produces no chunks still goes through the store with
    empty lists, which clears whatever an earlier version left behind.

    Returns the number of chunks now indexed for the document.
    """
    if chunk_fn is None or embed_fn is None:
        raise ValidationError("chunk function and embed function must be provided")

    try:
        contents = list(chunk_fn())
    except Exception as exc:
        raise DocumentRefreshError(f"chunk document {document_id}: {exc}", stage="chunk") from exc

    if not contents:
        log.info("document %s has no content; clearing its chunks", document_id)
        return vector.upsert_document_chunks(conversation_id, document_id, [], [])

    try:
        vectors = list(embed_fn(contents))
    except Exception as exc:
        raise DocumentRefreshError(f"embed document {document_id}: {exc}", stage="embed") from exc

    count = vector.upsert_document_chunks(conversation_id, document_id, contents, vectors)
    log.info("indexed document %s conversation=%s chunks=%s", document_id, conversation_id, count)
    return count


def index_document_text(
    *,
    vector: VectorStore,
    embedder: Embedder,
    conversation_id: str,
    document_id: str,
    text: str,
    chunk_size: int = 1500,
    overlap: int = 250,
) -> int:
    return refresh_document(
        vector,
        conversation_id,
        document_id,
        chunk_fn=lambda: chunk_text(text, chunk_size=chunk_size, overlap=overlap),
        embed_fn=embedder.embed_texts,
    )
