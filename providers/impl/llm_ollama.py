from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import httpx

from core.errors import ChatGenerationError
from providers.llm import ChatMessage, LLMProvider

log = logging.getLogger(__name__)


class OllamaChatClient(LLMProvider):
    """
    Chat completion via Ollama's /api/chat (non-streaming).
    """

    def __init__(
        self,
        host: str = "http://localhost:11434",
        model: str = "llama3.1:8b",
        timeout_seconds: float = 60.0,
        client: Optional[httpx.Client] = None,
    ):
        self.host = (host or "").strip().rstrip("/")
        self.model = (model or "").strip()
        self.timeout_seconds = float(timeout_seconds)
        self._client = client or httpx.Client(timeout=self.timeout_seconds)

    def close(self) -> None:
        self._client.close()

    def generate(self, messages: Sequence[ChatMessage], *, timeout: Optional[float] = None) -> str:
        if not self.host:
            raise ChatGenerationError("ollama host must be configured")
        if not self.model:
            raise ChatGenerationError("ollama model must be configured")

        payload = {
            "model": self.model,
            "messages": [m.to_dict() for m in messages],
            "stream": False,
        }
        url = f"{self.host}/api/chat"
        log.debug("[LLM] chat endpoint=%s model=%s messages=%s", url, self.model, len(payload["messages"]))

        try:
            r = self._client.post(url, json=payload, timeout=self.timeout_seconds if timeout is None else float(timeout))
        except httpx.HTTPError as exc:
            raise ChatGenerationError(f"execute request: {exc}") from exc

        if r.status_code >= 400:
            body = (r.text or "").strip()
            if body:
                raise ChatGenerationError(f"ollama chat API error: {body}", status_code=r.status_code)
            raise ChatGenerationError(f"ollama chat API returned status {r.status_code}", status_code=r.status_code)

        try:
            data = r.json()
        except ValueError as exc:
            raise ChatGenerationError(f"decode response: {exc}") from exc

        if not isinstance(data, dict):
            raise ChatGenerationError("decode response: expected a JSON object")
        if data.get("error"):
            raise ChatGenerationError(f"ollama error: {data['error']}")

        message = data.get("message")
        if not isinstance(message, dict):
            return ""
        return str(message.get("content") or "")

    def list_models(self) -> List[str]:
        """Model names known to the Ollama server (/api/tags)."""
        try:
            r = self._client.get(f"{self.host}/api/tags", timeout=5.0)
            r.raise_for_status()
            data = r.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ChatGenerationError(f"list ollama models: {exc}") from exc
        return [m.get("name") for m in data.get("models", []) if isinstance(m, dict) and m.get("name")]
