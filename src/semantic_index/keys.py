"""Index keys and on-disk location resolution.

One index artifact exists per ``(model_name, dimensions, document_id?)``.
Model-scoped indexes are shared by every document embedded with that model;
document-scoped indexes can be deleted together with their document.
"""

import re
from dataclasses import dataclass
from pathlib import Path

from semantic_index.errors import ConfigurationError
from semantic_index.models import BackendKind, ModelKey

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")

_EXTENSIONS = {
    BackendKind.FLAT: "parquet",
    BackendKind.SQLITE: "db",
}


@dataclass(frozen=True)
class IndexKey:
    """Identity of one vector index.

    Attributes:
        model_name: Embedding model that produced the vectors
        dimensions: Fixed vector length of the index
        document_id: Owning document for document-scoped indexes, else None
    """

    model_name: str
    dimensions: int
    document_id: int | None = None

    def __post_init__(self) -> None:
        """Validate key fields."""
        if not isinstance(self.model_name, str) or not self.model_name.strip():
            raise ConfigurationError(f"model_name must be a non-empty string, got {self.model_name!r}")
        if isinstance(self.dimensions, bool) or not isinstance(self.dimensions, int):
            raise ConfigurationError(f"dimensions must be an integer, got {self.dimensions!r}")
        if self.dimensions <= 0:
            raise ConfigurationError(f"dimensions must be positive, got {self.dimensions}")
        if self.document_id is not None and self.document_id < 0:
            raise ConfigurationError(f"document_id must be non-negative, got {self.document_id}")

    @classmethod
    def for_document(cls, document_id: int, model: ModelKey) -> "IndexKey":
        return cls(model.model_name, model.dimensions, document_id)

    @property
    def model_key(self) -> ModelKey:
        return ModelKey(model_name=self.model_name, dimensions=self.dimensions)

    @property
    def is_document_scoped(self) -> bool:
        return self.document_id is not None

    def __str__(self) -> str:
        scope = f"doc={self.document_id}" if self.is_document_scoped else "model"
        return f"{self.model_name}/{self.dimensions}[{scope}]"


def sanitize_model_name(model_name: str) -> str:
    """Make a model name safe for use in a file name.

    Example:
        >>> sanitize_model_name("openai/text-embedding-3-small")
        'openai_text-embedding-3-small'
    """
    return _UNSAFE_NAME_CHARS.sub("_", model_name.strip())


def resolve_index_path(base_path: Path | str, key: IndexKey, backend: BackendKind | str) -> Path:
    """Map an index key to its deterministic artifact path.

    Args:
        base_path: Root directory for all index artifacts
        key: Index identity
        backend: Storage backend (selects the file extension)

    Returns:
        ``models/index_{model}_{dims}.{ext}`` for model-scoped keys, or
        ``documents/index_doc_{id}_{model}_{dims}.{ext}`` for document keys

    Example:
        >>> resolve_index_path("/data", IndexKey("m", 8, 3), "flat").as_posix()
        '/data/documents/index_doc_3_m_8.parquet'
    """
    try:
        extension = _EXTENSIONS[BackendKind(backend)]
    except ValueError as exc:
        raise ConfigurationError(f"Unknown index backend {backend!r}") from exc

    model = sanitize_model_name(key.model_name)
    if key.is_document_scoped:
        filename = f"index_doc_{key.document_id}_{model}_{key.dimensions}.{extension}"
        return Path(base_path) / "documents" / filename
    return Path(base_path) / "models" / f"index_{model}_{key.dimensions}.{extension}"
