from __future__ import annotations

from typing import Iterable, List, Sequence

from conversations.models import Message
from providers.llm import ChatMessage

# Prompt assembly only. Keep provider calls OUT of here.

MAX_DOC_CHARACTERS = 8000
MAX_COMBINED_DOC_CHARACTERS = 24000

SYSTEM_PREAMBLE = "You are a helpful assistant. Answer the user's question using the conversation history"


def trim_to_limit(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit]


def select_references(
    references: Iterable[str],
    max_doc_chars: int = MAX_DOC_CHARACTERS,
    max_combined_chars: int = MAX_COMBINED_DOC_CHARACTERS,
) -> List[str]:
    """
    Greedy fill in the given order: each reference is truncated to
    max_doc_chars, empty ones are skipped, and the first one that would push
    the running total past max_combined_chars ends the selection. Nothing
    after that point is included, even if it would fit.
    """
    out: List[str] = []
    total = 0
    for text in references:
        trimmed = trim_to_limit(text or "", max_doc_chars)
        if not trimmed:
            continue
        if total + len(trimmed) > max_combined_chars:
            break
        out.append(trimmed)
        total += len(trimmed)
    return out


def render_system_prompt(references: Sequence[str]) -> str:
    if not references:
        return SYSTEM_PREAMBLE
    parts = [SYSTEM_PREAMBLE, " and the following reference documents.\n\n"]
    for i, doc in enumerate(references, start=1):
        parts.append(f"Document {i}:\n{doc}\n\n")
    return "".join(parts)


def build_chat_messages(
    history: Sequence[Message],
    references: Iterable[str],
    max_doc_chars: int = MAX_DOC_CHARACTERS,
    max_combined_chars: int = MAX_COMBINED_DOC_CHARACTERS,
) -> List[ChatMessage]:
    """
    One system message carrying the selected references, then the history
    verbatim.

    Budgets are in characters, not tokens. That bounds prompt size without a
    tokenizer dependency at the cost of precision: the same budget is a
    different token count for different text.
    """
    selected = select_references(references, max_doc_chars=max_doc_chars, max_combined_chars=max_combined_chars)

    messages = [ChatMessage(role="system", content=render_system_prompt(selected))]
    for msg in history:
        messages.append(ChatMessage(role=msg.role, content=msg.content))
    return messages
