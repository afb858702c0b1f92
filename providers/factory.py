from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from conversations.store import ConversationStore
from core.settings import Settings, get_settings, validate_settings
from providers.embeddings import Embedder
from providers.impl.embed_ollama import OllamaEmbedder
from providers.impl.llm_ollama import OllamaChatClient
from providers.impl.vector_memory import InMemoryVectorStore
from providers.impl.vector_pgvector import PgVectorStore
from providers.llm import LLMProvider
from providers.vectorstore import VectorStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class Providers:
    """
    Central container for providers. Built once at startup and attached to
    app.state.providers.
    """
    settings: Settings
    conversations: ConversationStore
    vector: VectorStore
    embedder: Embedder
    llm: LLMProvider

    def close(self) -> None:
        for p in (self.vector, self.embedder, self.llm):
            close = getattr(p, "close", None)
            if callable(close):
                close()


def build_vector_store(settings: Settings) -> VectorStore:
    if settings.vector.provider == "memory":
        log.info("Vector store: in-memory (dimension=%s)", settings.embedding.dimension)
        return InMemoryVectorStore(dimension=settings.embedding.dimension)

    log.info(
        "Vector store: pgvector (dimension=%s, max_connections=%s, index=%s)",
        settings.embedding.dimension,
        settings.db.max_connections,
        settings.vector.index_kind,
    )
    return PgVectorStore(
        dsn=settings.db.url,
        dimension=settings.embedding.dimension,
        max_connections=settings.db.max_connections,
        index_kind=settings.vector.index_kind,
        ivfflat_lists=settings.vector.ivfflat_lists,
        statement_timeout_ms=settings.db.statement_timeout_ms,
    )


def build_providers(settings: Optional[Settings] = None) -> Providers:
    """
    Composition root. Configuration, connection and schema failures raise
    here, which aborts startup.
    """
    s = settings or get_settings()
    validate_settings(s)

    conversations = ConversationStore(s.server.data_dir)
    vector = build_vector_store(s)
    try:
        vector.ensure_schema()
    except Exception:
        vector.close()
        raise

    embedder = OllamaEmbedder(
        host=s.llm.host,
        model=s.embedding.model,
        dimension=s.embedding.dimension,
        timeout_seconds=s.embedding.timeout_seconds,
        max_workers=s.embedding.max_workers,
    )
    llm = OllamaChatClient(host=s.llm.host, model=s.llm.model, timeout_seconds=s.llm.timeout_seconds)

    return Providers(settings=s, conversations=conversations, vector=vector, embedder=embedder, llm=llm)
