from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter

from core.deps import ProvidersDep
from core.errors import ChatGenerationError

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
def health() -> Dict[str, str]:
    # Keep this super simple and always unauthenticated
    return {"status": "ok"}


@router.get("/health/llm")
def health_llm(providers: ProvidersDep) -> Dict[str, Any]:
    """
    Verifies:
      - Ollama is reachable
      - configured chat and embedding models exist in ollama tags
      - whether the ANN index is in place (otherwise queries full-scan)
    """
    s = providers.settings
    ann_ready = bool(getattr(providers.vector, "ann_index_ready", False))

    try:
        models = providers.llm.list_models()
    except ChatGenerationError as e:
        return {
            "ok": False,
            "llmReachable": False,
            "modelReady": False,
            "embeddingModelReady": False,
            "annIndexReady": ann_ready,
            "model": s.llm.model,
            "error": str(e),
        }

    def _has(name: str) -> bool:
        # ollama tags carry an explicit ":latest" when none was given
        return name in models or f"{name}:latest" in models

    return {
        "ok": True,
        "llmReachable": True,
        "modelReady": _has(s.llm.model),
        "embeddingModelReady": _has(s.embedding.model),
        "annIndexReady": ann_ready,
        "model": s.llm.model,
        "embeddingModel": s.embedding.model,
        "knownModels": models[:25],  # keep response bounded
    }
