#!/usr/bin/env python3
"""Example: Insert a directory of chunk files."""

import os
import sys

from kb_ingest import ingest, load_config
from kb_ingest.errors import ConfigurationError
from kb_ingest.logging_config import configure_logging


def main():
    # Configuration
    config_path = os.getenv("CONFIG", "config.toml")

    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Copy config.example.toml to config.toml or set CONFIG")
        sys.exit(2)

    configure_logging(config.logging.level)

    print("=" * 60)
    print("KB Ingest")
    print("=" * 60)
    print(f"Chunk root:      {config.paths.chunk_root}")
    print(f"Vector store:    {config.insert.vector_store.backend} / {config.insert.vector_store.collection}")
    print(f"Search index:    {config.insert.search_index.index_id}")
    print(f"Embedding model: {config.insert.embeddings.model}")
    print(f"Batch size:      {config.insert.batch_size}")
    print("=" * 60)
    print()

    try:
        report = ingest(config)
    except ConfigurationError as e:
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(2)

    print()
    print("=" * 60)
    print(f"Files completed: {report.files_completed}/{len(report.files)}")
    print(f"Chunks read:     {report.chunks_read}")
    print(f"Cache hits:      {report.cache_hits}")
    print(f"Embedded:        {report.embedded}")
    abandoned = report.abandoned_chunk_ids
    if abandoned:
        print(f"Abandoned:       {len(abandoned)} chunk(s)")
        for cid in abandoned[:10]:
            print(f"  - {cid}")
        if len(abandoned) > 10:
            print(f"  ... and {len(abandoned) - 10} more")
    print("=" * 60)
    sys.exit(0 if report.ok else 1)


if __name__ == "__main__":
    main()
