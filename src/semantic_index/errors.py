"""Exception hierarchy for the semantic index.

Single-target operations (chunking or embedding one document, maintenance on
one index) raise these directly. The multi-index search path catches them,
logs, and reports them in aggregate counts instead.
"""

from typing import Any


class SemanticIndexError(Exception):
    """Base class for all semantic index errors.

    Attributes:
        message: Human-readable description
        context: Optional structured details for logging
    """

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{key}={value!r}" for key, value in sorted(self.context.items()))
        return f"{self.message} ({details})"


class ConfigurationError(SemanticIndexError, ValueError):
    """Invalid chunking options, index key, or backend configuration."""


class DimensionMismatch(SemanticIndexError, ValueError):
    """A vector's length disagrees with an index's fixed dimensionality."""

    def __init__(self, expected: int, actual: int, *, context: dict[str, Any] | None = None):
        super().__init__(f"Expected {expected} dimensions, got {actual}", context=context)
        self.expected = expected
        self.actual = actual


class IndexUnavailable(SemanticIndexError):
    """A vector index could not be opened, created, persisted or restored."""


class EmbeddingProviderError(SemanticIndexError):
    """The embedding provider failed or returned malformed data."""


class DocumentNotFound(SemanticIndexError, LookupError):
    """A service call named a document the record store does not know."""

    def __init__(self, document_id: int) -> None:
        super().__init__(f"Document {document_id} not found", context={"document_id": document_id})
        self.document_id = document_id
