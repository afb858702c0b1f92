from __future__ import annotations

from typing import Optional


class ConfigError(RuntimeError):
    """Settings that make startup impossible."""


# ---------------------------------------------------------------------
# Validation: rejected before any I/O
# ---------------------------------------------------------------------

class ValidationError(ValueError):
    pass


class DimensionMismatchError(ValidationError):
    """
    A vector whose length differs from the store's configured dimension.

    Attributes:
        expected: configured dimension
        actual: length of the offending vector
    """

    def __init__(self, expected: int, actual: int, what: str = "vector") -> None:
        super().__init__(f"{what} dimension mismatch: expected {expected} got {actual}")
        self.expected = expected
        self.actual = actual


class UnsupportedFileTypeError(ValidationError):
    def __init__(self, extension: str) -> None:
        super().__init__(f"unsupported file type: {extension or '(none)'}")
        self.extension = extension


class InvalidIdentifierError(ValidationError):
    pass


# ---------------------------------------------------------------------
# I/O failures: wrapped with operation context, never retried here
# ---------------------------------------------------------------------

class VectorStoreError(RuntimeError):
    pass


class EmbeddingError(RuntimeError):
    pass


class EmbeddingDimensionError(EmbeddingError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(f"embedding dimension mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class ChatGenerationError(RuntimeError):
    """
    Attributes:
        status_code: HTTP status returned by the chat endpoint, if any
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class DocumentRefreshError(RuntimeError):
    """
    A refresh aborted before reaching the store.

    Attributes:
        stage: "chunk" or "embed"
    """

    def __init__(self, message: str, stage: str) -> None:
        super().__init__(message)
        self.stage = stage
