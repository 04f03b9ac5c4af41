"""Command-line interface for the semantic index.

Every command prints JSON on stdout and exits non-zero on index errors.

Examples:
    semantic-index add notes/protocol.md --file-type md
    semantic-index chunk 1 --strategy markdown
    semantic-index embed 1
    semantic-index search "protein aggregation" --limit 5
    semantic-index --override index.backend=sqlite stats --model openai/text-embedding-3-small \
        --dimensions 1536 --document-id 1
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from loguru import logger

from semantic_index.chunking import ChunkingStrategy, ContentType
from semantic_index.config import SemanticIndexConfig, load_config
from semantic_index.errors import SemanticIndexError
from semantic_index.keys import IndexKey
from semantic_index.log_setup import setup_logging
from semantic_index.models import Document, SearchOptions
from semantic_index.service import SemanticIndexService


def _add_key_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--model", required=True, help="Embedding model name")
    parser.add_argument("--dimensions", type=int, required=True, help="Vector dimensionality")
    parser.add_argument("--document-id", type=int, default=None, help="Document-scoped index")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="semantic-index", description="Semantic document index")
    parser.add_argument("--config-name", default="default", help="Config file name (no .yaml)")
    parser.add_argument("--config-path", default=None, help="Config directory")
    parser.add_argument(
        "--override", action="append", default=[], help="Hydra override, e.g. index.backend=sqlite"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    add_parser = subparsers.add_parser("add", help="Register a text file as a document")
    add_parser.add_argument("path", type=Path)
    add_parser.add_argument("--name", default=None)
    add_parser.add_argument(
        "--content-type", choices=[c.value for c in ContentType], default=ContentType.PLAIN.value
    )
    add_parser.add_argument("--file-type", default=None)

    chunk_parser = subparsers.add_parser("chunk", help="Chunk a document")
    chunk_parser.add_argument("document_id", type=int)
    chunk_parser.add_argument("--strategy", choices=[s.value for s in ChunkingStrategy])
    chunk_parser.add_argument("--target-tokens", type=int)
    chunk_parser.add_argument("--overlap-tokens", type=int)
    chunk_parser.add_argument("--min-chunk-tokens", type=int)

    embed_parser = subparsers.add_parser("embed", help="Embed a document's pending chunks")
    embed_parser.add_argument("document_id", type=int)

    search_parser = subparsers.add_parser("search", help="Search all embedded documents")
    search_parser.add_argument("query")
    search_parser.add_argument("--limit", type=int, default=None)
    search_parser.add_argument("--threshold", type=float, default=0.0)
    search_parser.add_argument("--document-type", action="append", dest="document_types")

    stats_parser = subparsers.add_parser("stats", help="Show index statistics")
    _add_key_arguments(stats_parser)

    backup_parser = subparsers.add_parser("backup", help="Back up an index")
    _add_key_arguments(backup_parser)
    backup_parser.add_argument("--path", type=Path, required=True)

    restore_parser = subparsers.add_parser("restore", help="Restore an index from a backup")
    _add_key_arguments(restore_parser)
    restore_parser.add_argument("--path", type=Path, required=True)

    reset_parser = subparsers.add_parser("reset", help="Remove every vector from an index")
    _add_key_arguments(reset_parser)

    return parser


async def run_command(args: argparse.Namespace, service: SemanticIndexService) -> dict[str, Any]:
    """Execute a parsed command and return its JSON-serialisable result."""
    if args.command == "add":
        document = service.store.add_document(
            Document(
                name=args.name or args.path.name,
                content_type=ContentType(args.content_type),
                file_type=args.file_type or args.path.suffix.lstrip(".") or None,
                metadata={"path": str(args.path.resolve())},
            )
        )
        return document.model_dump(mode="json")

    if args.command == "chunk":
        overrides = {
            "strategy": args.strategy,
            "target_tokens": args.target_tokens,
            "overlap_tokens": args.overlap_tokens,
            "min_chunk_tokens": args.min_chunk_tokens,
        }
        result = await service.chunk_document(
            args.document_id, {k: v for k, v in overrides.items() if v is not None}
        )
        return result.model_dump(mode="json")

    if args.command == "embed":
        return (await service.embed_document_chunks(args.document_id)).model_dump(mode="json")

    if args.command == "search":
        options = SearchOptions(
            limit=args.limit or service.search_config.default_limit,
            per_document_k=service.search_config.per_document_k,
            threshold=args.threshold,
            document_types=args.document_types,
        )
        return (await service.search(args.query, options)).model_dump(mode="json")

    key = IndexKey(args.model, args.dimensions, args.document_id)
    if args.command == "stats":
        return (await service.get_index_stats(key)).model_dump(mode="json")
    if args.command == "backup":
        return {"backup": str(await service.backup_index(key, args.path))}
    if args.command == "restore":
        await service.restore_index(key, args.path)
        return (await service.get_index_stats(key)).model_dump(mode="json")
    if args.command == "reset":
        await service.reset_index(key)
        return (await service.get_index_stats(key)).model_dump(mode="json")

    raise ValueError(f"Unhandled command: {args.command}")


async def _run(args: argparse.Namespace, config: SemanticIndexConfig) -> dict[str, Any]:
    service = SemanticIndexService.from_config(config)
    try:
        return await run_command(args, service)
    finally:
        await service.aclose()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv if argv is not None else sys.argv[1:])
    config = load_config(args.config_name, args.config_path, overrides=args.override)
    setup_logging("DEBUG" if args.verbose else config.logging.level, config.logging.file)

    try:
        result = asyncio.run(_run(args, config))
    except SemanticIndexError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1

    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
