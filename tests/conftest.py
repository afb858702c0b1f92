import sys
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]

# Ensure repo root is importable (flat layout: core/, providers/, rag/, ...)
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from conversations.store import ConversationStore  # noqa: E402
from core.errors import EmbeddingError  # noqa: E402
from core.settings import get_settings  # noqa: E402
from providers.factory import Providers  # noqa: E402
from providers.impl.vector_memory import InMemoryVectorStore  # noqa: E402
from providers.llm import ChatMessage  # noqa: E402

DIM = 4

SETTINGS_ENV = [
    "SERVER_ADDR",
    "DATA_DIR",
    "CORS_ORIGINS",
    "LOG_LEVEL",
    "OLLAMA_HOST",
    "OLLAMA_MODEL",
    "LLM_TIMEOUT_SECONDS",
    "EMBEDDING_MODEL",
    "EMBEDDING_DIMENSION",
    "EMBED_TIMEOUT_SECONDS",
    "EMBED_MAX_WORKERS",
    "VECTOR_STORE",
    "VECTOR_INDEX",
    "IVFFLAT_LISTS",
    "RETRIEVAL_TOP_K",
    "DATABASE_URL",
    "DATABASE_MAX_CONNECTIONS",
    "DB_STATEMENT_TIMEOUT_MS",
    "CHUNK_SIZE",
    "CHUNK_OVERLAP",
    "PROMPT_MAX_DOC_CHARS",
    "PROMPT_MAX_CONTEXT_CHARS",
]


def keyword_vector(text: str) -> List[float]:
    t = (text or "").lower()
    return [float(t.count("engine")), float(t.count("wing")), float(t.count("cabin")), 0.1]


class FakeEmbedder:
    """Deterministic keyword-count embeddings; set fail=True to simulate an outage."""

    def __init__(self, dimension: int = DIM):
        self.dimension = dimension
        self.calls: List[List[str]] = []
        self.fail = False

    def embed_texts(self, texts: Sequence[str], *, timeout: Optional[float] = None) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingError("ollama embeddings API returned status 500")
        return [keyword_vector(t) for t in texts]


class FakeLLM:
    def __init__(self, models: Optional[List[str]] = None):
        self.seen: List[List[ChatMessage]] = []
        self.models = models if models is not None else ["llama3.1:8b", "nomic-embed-text:latest"]

    def generate(self, messages: Sequence[ChatMessage], *, timeout: Optional[float] = None) -> str:
        self.seen.append(list(messages))
        return f"reply {len(self.seen)}"

    def list_models(self) -> List[str]:
        return list(self.models)


@pytest.fixture
def clean_env(monkeypatch):
    for name in SETTINGS_ENV:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


@pytest.fixture
def settings(clean_env, tmp_path):
    clean_env.setenv("DATA_DIR", str(tmp_path / "data"))
    clean_env.setenv("VECTOR_STORE", "memory")
    clean_env.setenv("EMBEDDING_DIMENSION", str(DIM))
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def memory_store():
    return InMemoryVectorStore(dimension=DIM)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def conversation_store(tmp_path):
    return ConversationStore(str(tmp_path / "data"))


@pytest.fixture
def providers(settings, memory_store, embedder, llm):
    return Providers(
        settings=settings,
        conversations=ConversationStore(settings.server.data_dir),
        vector=memory_store,
        embedder=embedder,
        llm=llm,
    )
