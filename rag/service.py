from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Tuple

from conversations.models import DocumentMeta, Message
from conversations.store import check_id
from core.errors import ValidationError
from providers.factory import Providers
from providers.vectorstore import Chunk
from rag.ingestion_engine import chunk_text, refresh_document
from rag.prompt_engine import build_chat_messages
from rag.retrieval_engine import effective_top_k, retrieve_reference_texts, search_chunks

log = logging.getLogger(__name__)


class DocumentNotFoundError(LookupError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def answer_message(providers: Providers, conversation_id: str, content: str) -> Message:
    """
    One chat turn: record the user message, ground a reply in the
    conversation's documents, record the reply and its transcript.
    """
    text = (content or "").strip()
    if not text:
        raise ValidationError("content must not be empty")

    conversations = providers.conversations
    s = providers.settings

    conversations.append_message(conversation_id, Message(role="user", content=text, timestamp=_now()))
    history = conversations.load_history(conversation_id)

    references, source = retrieve_reference_texts(
        vector=providers.vector,
        embedder=providers.embedder,
        conversation_id=conversation_id,
        query=text,
        top_k=s.vector.top_k,
        fallback_texts=lambda: conversations.load_document_texts(conversation_id),
    )
    messages = build_chat_messages(
        history,
        references,
        max_doc_chars=s.prompt.max_doc_chars,
        max_combined_chars=s.prompt.max_combined_chars,
    )
    log.debug(
        "conversation=%s references=%s source=%s messages=%s",
        conversation_id,
        len(references),
        source,
        len(messages),
    )

    reply = providers.llm.generate(messages)

    assistant = Message(role="assistant", content=reply, timestamp=_now())
    conversations.append_message(conversation_id, assistant)
    conversations.save_transcript(conversation_id, reply, assistant.timestamp)
    return assistant


def _refresh(providers: Providers, conversation_id: str, doc: DocumentMeta) -> int:
    s = providers.settings
    return refresh_document(
        providers.vector,
        conversation_id,
        doc.id,
        chunk_fn=lambda: chunk_text(
            providers.conversations.document_text(doc),
            chunk_size=s.chunking.chunk_size,
            overlap=s.chunking.overlap,
        ),
        embed_fn=providers.embedder.embed_texts,
    )


def upload_document(providers: Providers, conversation_id: str, filename: str, data: bytes) -> Tuple[DocumentMeta, int]:
    """
    Store an upload and index it.

    The document is kept even if indexing fails; chat turns then fall back to
    its full text and the index can be rebuilt with reindex_document.
    """
    doc = providers.conversations.save_document(conversation_id, filename, data)
    log.info("stored document %s (%s, %s bytes) conversation=%s", doc.id, doc.name, doc.size, conversation_id)
    return doc, _refresh(providers, conversation_id, doc)


def reindex_document(providers: Providers, conversation_id: str, document_id: str) -> int:
    doc = providers.conversations.get_document(conversation_id, document_id)
    if doc is None:
        raise DocumentNotFoundError(f"document {document_id} not found in conversation {conversation_id}")
    return _refresh(providers, conversation_id, doc)


def search_conversation(providers: Providers, conversation_id: str, query: str, top_k: int = 0) -> List[Chunk]:
    check_id(conversation_id, "conversation id")
    return search_chunks(
        vector=providers.vector,
        embedder=providers.embedder,
        conversation_id=conversation_id,
        query=query,
        top_k=effective_top_k(top_k, providers.settings.vector.top_k),
    )


def delete_conversation(providers: Providers, conversation_id: str) -> int:
    """
    Drop the conversation's chunks first, then its files. Both steps are
    idempotent, so a retry after a partial failure converges.
    """
    check_id(conversation_id, "conversation id")
    deleted = providers.vector.delete_conversation(conversation_id)
    providers.conversations.delete_conversation(conversation_id)
    log.info("deleted conversation %s (chunks=%s)", conversation_id, deleted)
    return deleted
