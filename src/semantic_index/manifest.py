"""Index manifests: the identity record stored alongside every vector index.

A manifest pins the model, dimensionality and scope an artifact was created
for, so a load or restore can refuse an artifact that belongs to another key.
"""

from datetime import datetime, timezone

from pydantic import BaseModel, Field

from semantic_index.errors import DimensionMismatch, IndexUnavailable
from semantic_index.keys import IndexKey
from semantic_index.models import BackendKind

MANIFEST_FORMAT_VERSION = 1


class IndexManifest(BaseModel):
    """Identity of a persisted index artifact."""

    model_name: str
    dimensions: int = Field(gt=0)
    document_id: int | None = None
    backend_kind: BackendKind
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    format_version: int = MANIFEST_FORMAT_VERSION


def manifest_for(key: IndexKey, backend: BackendKind) -> IndexManifest:
    """Create a fresh manifest for a key."""
    return IndexManifest(
        model_name=key.model_name,
        dimensions=key.dimensions,
        document_id=key.document_id,
        backend_kind=backend,
    )


def parse_manifest(raw: str | bytes, source: str) -> IndexManifest:
    """Parse manifest JSON, raising IndexUnavailable when it is corrupt."""
    try:
        return IndexManifest.model_validate_json(raw)
    except ValueError as exc:
        raise IndexUnavailable(f"Corrupt index manifest in {source}", context={"error": str(exc)}) from exc


def check_manifest(manifest: IndexManifest, key: IndexKey, source: str) -> None:
    """Verify a stored manifest matches the key it is opened under.

    Raises:
        DimensionMismatch: If the stored dimensionality differs
        IndexUnavailable: If the artifact belongs to another model, scope, or
            a newer format
    """
    if manifest.format_version > MANIFEST_FORMAT_VERSION:
        raise IndexUnavailable(
            f"Index {source} uses format {manifest.format_version}, "
            f"newest supported is {MANIFEST_FORMAT_VERSION}"
        )
    if manifest.dimensions != key.dimensions:
        raise DimensionMismatch(key.dimensions, manifest.dimensions, context={"index": source})
    if manifest.model_name != key.model_name or manifest.document_id != key.document_id:
        raise IndexUnavailable(
            f"Index {source} belongs to {manifest.model_name!r} "
            f"(document {manifest.document_id}), not {key}"
        )
