from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence

import httpx

from core.errors import EmbeddingDimensionError, EmbeddingError
from providers.embeddings import Embedder

log = logging.getLogger(__name__)


class OllamaEmbedder(Embedder):
    """
    Embeddings via Ollama's /api/embeddings.

    One request per text: the endpoint is single-input in many Ollama builds.
    Requests run sequentially unless max_workers > 1, in which case they fan
    out over a bounded thread pool; output order and fail-fast behaviour are
    the same either way.

    dimension == 0 disables the length check.
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "nomic-embed-text",
        dimension: int = 768,
        timeout_seconds: float = 90.0,
        max_workers: int = 1,
        client: Optional[httpx.Client] = None,
    ):
        self.host = (host or "").strip().rstrip("/")
        self.model = model
        self.dimension = max(0, int(dimension))
        self.timeout_seconds = float(timeout_seconds)
        self.max_workers = max(1, int(max_workers))
        self._client = client or httpx.Client(timeout=self.timeout_seconds)

    @property
    def url(self) -> str:
        return f"{self.host}/api/embeddings"

    def close(self) -> None:
        self._client.close()

    def embed_texts(self, texts: Sequence[str], *, timeout: Optional[float] = None) -> List[List[float]]:
        if not texts:
            return []

        if self.max_workers == 1 or len(texts) == 1:
            return [self._embed_one(t, timeout) for t in texts]

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(texts))) as pool:
            futures = [pool.submit(self._embed_one, t, timeout) for t in texts]
            out: List[List[float]] = []
            try:
                for fut in futures:
                    out.append(fut.result())
            except BaseException:
                for fut in futures:
                    fut.cancel()
                raise
            return out

    def _embed_one(self, text: str, timeout: Optional[float]) -> List[float]:
        payload = {"model": self.model, "prompt": text}
        request_timeout = self.timeout_seconds if timeout is None else float(timeout)

        try:
            r = self._client.post(self.url, json=payload, timeout=request_timeout)
        except httpx.HTTPError as exc:
            raise EmbeddingError(f"call ollama embeddings API: {exc}") from exc

        if r.status_code >= 400:
            body = (r.text or "").strip()
            raise EmbeddingError(
                f"ollama embeddings API returned status {r.status_code}" + (f": {body}" if body else "")
            )

        try:
            data = r.json()
        except ValueError as exc:
            raise EmbeddingError(f"decode ollama response: {exc}") from exc

        vec = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(vec, list):
            keys = list(data.keys()) if isinstance(data, dict) else []
            raise EmbeddingError(f"ollama embeddings response missing 'embedding' list. keys={keys}")

        try:
            out = [float(x) for x in vec]
        except (TypeError, ValueError) as exc:
            raise EmbeddingError(f"decode ollama response: non-numeric embedding value: {exc}") from exc

        if self.dimension > 0 and len(out) != self.dimension:
            raise EmbeddingDimensionError(self.dimension, len(out))

        return out
