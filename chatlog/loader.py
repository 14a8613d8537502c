"""
Bulk-load webhook payload files into the message store.

Usage:
    python -m chatlog.loader DIRECTORY

Every *.json file in DIRECTORY is read and run through the ingestion
pipeline. A file that cannot be read or parsed is reported and skipped.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from chatlog.config import get_settings
from chatlog.conversations import ConversationAggregator
from chatlog.ingestion import IngestionPipeline, IngestionReport
from chatlog.logging_utils import setup_logging
from chatlog.storage import MessageStore, build_store

logger = logging.getLogger(__name__)


async def load_directory(directory: Path, store: MessageStore) -> IngestionReport:
    """
    Ingest every JSON file in a directory.

    Args:
        directory: Folder holding one webhook payload (or array of payloads) per file
        store: Destination store

    Returns:
        Counters accumulated over all files
    """
    pipeline = IngestionPipeline(store)
    files = sorted(directory.glob("*.json"))
    logger.info(f"Found {len(files)} JSON files to process in {directory}")

    total = IngestionReport()
    for path in files:
        try:
            body = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error reading file {path.name}: {e}")
            continue

        payloads = body if isinstance(body, list) else [body]
        report = await pipeline.ingest_batch(payloads)
        for name, value in report.as_dict().items():
            setattr(total, name, getattr(total, name) + value)
        logger.info(f"Processed file {path.name}: {report.as_dict()}")

    return total


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Load webhook payload files into the message store")
    parser.add_argument("directory", type=Path, help="directory containing *.json webhook payloads")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    if not args.directory.is_dir():
        logger.error(f"Not a directory: {args.directory}")
        return 2

    store = build_store(settings)
    report = asyncio.run(load_directory(args.directory, store))
    stats = ConversationAggregator(store).get_stats()

    print(json.dumps({"ingested": report.as_dict(), "summary": stats}, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
