"""Configuration management for the semantic index using Hydra.

All configuration is loaded from YAML files in conf/semantic_index/.
This module provides typed config objects and validation.
"""

from pathlib import Path

from hydra import compose, initialize_config_dir
from omegaconf import DictConfig, OmegaConf
from pydantic import BaseModel, Field

from semantic_index.chunking import ChunkingOptions
from semantic_index.embedding import EmbeddingConfig
from semantic_index.models import BackendKind


class IndexConfig(BaseModel):
    """Vector index configuration.

    Attributes:
        backend: Index backend ("flat" or "sqlite")
        base_path: Root directory for index artifacts
        max_open_indexes: Size of the open-handle pool
        lock_timeout_seconds: Wait for the cross-process write lock
    """

    backend: BackendKind = BackendKind.FLAT
    base_path: str = "data/vector_index"
    max_open_indexes: int = Field(default=20, ge=1, le=1000)
    lock_timeout_seconds: float = Field(default=30.0, gt=0.0)


class SearchConfig(BaseModel):
    """Multi-index search configuration.

    Attributes:
        default_limit: Results returned when a call gives no limit
        per_document_k: Hits requested per index (defaults to the limit)
        max_concurrency: Per-document searches in flight at once
        per_document_timeout_seconds: Timeout for one document's search
    """

    default_limit: int = Field(default=10, ge=1, le=1000)
    per_document_k: int | None = Field(default=None, ge=1)
    max_concurrency: int = Field(default=8, ge=1, le=256)
    per_document_timeout_seconds: float = Field(default=5.0, gt=0.0)


class StoreConfig(BaseModel):
    """Record store configuration."""

    path: str = "data/semantic_index.db"


class RemoteDefaultsConfig(BaseModel):
    """Remote chunking defaults service.

    Attributes:
        enabled: Whether to query the service at all
        base_url: Service root URL
        ttl_seconds: Cache lifetime of fetched defaults
        timeout_seconds: HTTP timeout
    """

    enabled: bool = False
    base_url: str | None = None
    ttl_seconds: float = Field(default=1800.0, gt=0.0)
    timeout_seconds: float = Field(default=5.0, gt=0.0)


class LoggingConfig(BaseModel):
    """Log sink configuration."""

    level: str = Field(default="INFO", pattern="^(TRACE|DEBUG|INFO|SUCCESS|WARNING|ERROR|CRITICAL)$")
    file: str | None = None


class SemanticIndexConfig(BaseModel):
    """Top-level configuration for the semantic index.

    Attributes:
        chunking: Default chunking options
        embedding: Embedding provider configuration
        index: Vector index configuration
        search: Multi-index search configuration
        store: Record store configuration
        remote_defaults: Remote chunking defaults service
        logging: Log sinks
    """

    chunking: ChunkingOptions = Field(default_factory=ChunkingOptions)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    remote_defaults: RemoteDefaultsConfig = Field(default_factory=RemoteDefaultsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(
    config_name: str = "default",
    config_path: str | Path | None = None,
    overrides: list[str] | None = None,
) -> SemanticIndexConfig:
    """Load semantic index configuration from Hydra YAML files.

    Args:
        config_name: Name of config file (without .yaml extension)
        config_path: Path to config directory (defaults to conf/semantic_index/)
        overrides: List of config overrides (e.g., ["index.backend=sqlite"])

    Returns:
        Validated configuration object

    Example:
        >>> config = load_config("default")
        >>> config.embedding.model
        'openai/text-embedding-3-small'

        >>> config = load_config("default", overrides=["index.backend=sqlite"])
        >>> config.index.backend
        <BackendKind.SQLITE: 'sqlite'>
    """
    if config_path is None:
        # Default to conf/semantic_index/ relative to repo root
        repo_root = Path(__file__).parent.parent.parent
        config_path = repo_root / "conf" / "semantic_index"

    config_path = Path(config_path).resolve()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Config directory not found: {config_path}\n" f"Create it with: mkdir -p {config_path}"
        )

    # Initialize Hydra with config directory
    with initialize_config_dir(
        config_dir=str(config_path), version_base=None, job_name="semantic_index"
    ):
        cfg: DictConfig = compose(config_name=config_name, overrides=overrides or [])

    # Convert OmegaConf to dict and validate with Pydantic
    config_dict = OmegaConf.to_container(cfg, resolve=True)
    return SemanticIndexConfig(**config_dict)  # type: ignore


def create_default_config() -> dict[str, dict[str, object]]:
    """Create a default configuration dictionary for bootstrapping.

    Returns:
        Dictionary suitable for writing to YAML
    """
    return {
        "chunking": {
            "target_tokens": 1000,
            "overlap_tokens": 200,
            "strategy": "sentence",
            "min_chunk_tokens": 100,
            "preserve_whitespace": True,
        },
        "embedding": {
            "model": "openai/text-embedding-3-small",
            "dimensions": 1536,
            "batch_size": 100,
            "max_retries": 3,
            "timeout_seconds": 30.0,
            "api_key": "${oc.env:OPENAI_API_KEY,null}",
            "base_url": None,
        },
        "index": {
            "backend": "flat",
            "base_path": "data/vector_index",
            "max_open_indexes": 20,
            "lock_timeout_seconds": 30.0,
        },
        "search": {
            "default_limit": 10,
            "per_document_k": None,
            "max_concurrency": 8,
            "per_document_timeout_seconds": 5.0,
        },
        "store": {"path": "data/semantic_index.db"},
        "remote_defaults": {
            "enabled": False,
            "base_url": None,
            "ttl_seconds": 1800.0,
            "timeout_seconds": 5.0,
        },
        "logging": {"level": "INFO", "file": None},
    }
