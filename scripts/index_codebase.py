#!/usr/bin/env python3
"""Command-line tool for incrementally indexing a workspace."""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

# Add the parent directory to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from indexing.config import IndexerConfig
from indexing.incremental_indexer import IncrementalIndexer
from transport.errors import IndexingError


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # httpx logs every request at INFO
    logging.getLogger('httpx').setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Incrementally index a workspace into a vector collection"
    )
    parser.add_argument("directory", help="Workspace to index")
    parser.add_argument("--config", help="JSON configuration file")
    parser.add_argument("--storage-dir", help="Directory for snapshots and the local index")
    parser.add_argument("--storage-backend", choices=['remote', 'local', 'disabled'],
                        help="Where vectors are stored")
    parser.add_argument("--embedder", choices=['remote', 'local'], help="Embedding service to use")
    parser.add_argument("--batch-size", type=int, help="Chunks per delivery batch (max 100)")
    parser.add_argument("--concurrency", type=int, help="Batches in flight at once")
    parser.add_argument("--workers", type=int, help="Files chunked in parallel")
    parser.add_argument("--full", action="store_true", help="Ignore the snapshot and index everything")
    parser.add_argument("--search", metavar="QUERY", help="Search the collection after indexing")
    parser.add_argument("--top-k", type=int, default=5, help="Number of search results (default: 5)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    directory_path = Path(args.directory).resolve()
    if not directory_path.is_dir():
        logger.error(f"Not a directory: {directory_path}")
        return 1

    try:
        config = IndexerConfig.load(
            args.config,
            workspace=str(directory_path),
            storage_dir=args.storage_dir,
            storage_backend=args.storage_backend,
            embedder=args.embedder,
            batch_size=args.batch_size,
            max_concurrent_batches=args.concurrency,
            max_workers=args.workers,
        )
    except IndexingError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    indexer = IncrementalIndexer(config)
    try:
        logger.info(f"Indexing {directory_path} into collection {indexer.collection_name}")
        result = indexer.incremental_index(str(directory_path), force_full=args.full)
        print(json.dumps(result.to_dict(), indent=2, default=str))

        if args.search:
            for hit in indexer.search(args.search, args.top_k):
                print(f"{hit.score:.3f}  {hit.file_path}:{hit.start_line}-{hit.end_line}")

        if not result.success:
            logger.error(f"Indexing failed: {result.error}")
            return 1
        if result.partial:
            logger.warning(f"{result.files_failed} files and {result.chunks_failed} chunks failed")
            return 3
        return 0
    except KeyboardInterrupt:
        logger.info("Indexing interrupted by user")
        return 130
    except IndexingError as e:
        logger.error(f"Indexing aborted: {e}")
        return 2
    finally:
        indexer.close()


if __name__ == "__main__":
    sys.exit(main())
