from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, runtime_checkable


@runtime_checkable
class Embedder(Protocol):
    """
    Text -> fixed-dimension vectors.

    Output has the same length and order as the input. Any failure aborts the
    whole call; a partial list is never returned.
    """

    dimension: int

    def embed_texts(self, texts: Sequence[str], *, timeout: Optional[float] = None) -> List[List[float]]: ...
