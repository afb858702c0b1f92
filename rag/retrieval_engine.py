from __future__ import annotations

import logging
from typing import Callable, List, Optional, Tuple

from core.errors import EmbeddingError, ValidationError, VectorStoreError
from providers.embeddings import Embedder
from providers.vectorstore import Chunk, VectorStore

log = logging.getLogger(__name__)


def effective_top_k(req_top_k: int, default_top_k: int, cap: int = 50) -> int:
    k = int(req_top_k or 0)
    if k <= 0:
        k = int(default_top_k or 0)
    if k <= 0:
        k = 6
    return min(k, cap)


def search_chunks(
    *,
    vector: VectorStore,
    embedder: Embedder,
    conversation_id: str,
    query: str,
    top_k: int,
) -> List[Chunk]:
    """
    Embed the query and return the conversation's closest chunks, most
    similar first. Errors propagate.
    """
    q = (query or "").strip()
    if not q:
        raise ValidationError("query must not be empty")

    embs = embedder.embed_texts([q])
    if len(embs) != 1:
        raise EmbeddingError(f"embed_texts returned {len(embs)} vectors for 1 query")
    return vector.query_similar(conversation_id, embs[0], top_k)


def retrieve_reference_texts(
    *,
    vector: Optional[VectorStore],
    embedder: Optional[Embedder],
    conversation_id: str,
    query: str,
    top_k: int,
    fallback_texts: Callable[[], List[str]],
) -> Tuple[List[str], str]:
    """
    Reference texts for a chat turn.

    Preferred source is the top-k chunks for the latest user message. When
    that isn't available (no store or embedder, an embedding/store failure,
    nothing indexed yet for the conversation) the full extracted text of
    every document is used instead, and the prompt budgets do the trimming.

    Returns (texts, source) where source is "chunks" or "documents".
    """
    reason = ""
    if vector is None or embedder is None:
        reason = "retrieval not configured"
    elif not (query or "").strip():
        reason = "empty query"
    else:
        try:
            hits = search_chunks(
                vector=vector,
                embedder=embedder,
                conversation_id=conversation_id,
                query=query,
                top_k=top_k,
            )
        except (EmbeddingError, VectorStoreError, ValidationError) as exc:
            reason = f"similarity retrieval failed: {exc}"
            log.warning("conversation=%s %s; using full document text", conversation_id, reason)
        else:
            if hits:
                log.debug(
                    "conversation=%s retrieved=%s top=%s",
                    conversation_id,
                    len(hits),
                    [(h.document_id, h.chunk_index, h.score) for h in hits[:3]],
                )
                return [h.content for h in hits], "chunks"
            reason = "no indexed chunks"

    log.debug("conversation=%s %s; using full document text", conversation_id, reason)
    return fallback_texts(), "documents"
