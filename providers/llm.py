from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, runtime_checkable


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@runtime_checkable
class LLMProvider(Protocol):
    """
    Chat-completion abstraction: ordered messages in, one reply string out.
    """

    def generate(self, messages: Sequence[ChatMessage], *, timeout: Optional[float] = None) -> str: ...

    def list_models(self) -> List[str]: ...
