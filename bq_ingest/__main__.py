#!/usr/bin/env python3
"""
BigQuery Ingest CLI
-------------------
Format a JSONL file against an output configuration and deliver it to
BigQuery.

Usage:
    # Stream a local file with insertAll
    python -m bq_ingest --config output.yaml --input events.jsonl --tag app.events

    # Load a file from GCS through load jobs, 50k rows per job
    python -m bq_ingest --config load.yaml --input gs://bucket/landing/events.jsonl --chunk-size 50000

    # Print formatted rows without calling BigQuery
    python -m bq_ingest --config output.yaml --input events.jsonl --dry-run
"""

import argparse
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from dotenv import load_dotenv

from bq_ingest.chunk import MemoryChunk
from bq_ingest.config import load_config
from bq_ingest.errors import BigQueryIngestError, RetryableError
from bq_ingest.formatter import RecordFormatter
from bq_ingest.outputs import BigQueryOutput, LoadOutput, create_output
from bq_ingest.sources import JsonlSource

logger = logging.getLogger("bq_ingest")


def setup_logging(level: str = "INFO") -> None:
    """Configure logging format and level."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_env(dotenv_path: Path) -> None:
    """Load environment variables from .env file."""
    if dotenv_path.exists():
        load_dotenv(dotenv_path)
        logger.debug(f"Loaded .env from {dotenv_path}")
    else:
        logger.debug(f".env file not found at {dotenv_path}")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Deliver JSONL records to BigQuery by streaming insert or load job.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--config", required=True, help="Output configuration (YAML)")
    parser.add_argument("--input", required=True, help="JSONL file, local path or gs:// URI")
    parser.add_argument("--tag", default=None, help="Routing tag injected as tag_field")
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=500,
        help="Rows per insertAll call or load job (default: 500)",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=3,
        help="Retries of a chunk after a retryable error (default: 3)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print formatted rows without calling BigQuery",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Logging level",
    )
    parser.add_argument("--env-file", default=".env", help="dotenv file to load (default: .env)")
    return parser.parse_args(argv)


def iter_chunks(lines: Iterator[bytes], chunk_size: int, tag: Optional[str]) -> Iterator[MemoryChunk]:
    chunk = MemoryChunk(tag=tag)
    count = 0
    for line in lines:
        chunk.append(line)
        count += 1
        if count >= chunk_size:
            yield chunk
            chunk = MemoryChunk(tag=tag)
            count = 0
    if count:
        yield chunk


def format_lines(formatter: RecordFormatter, source: JsonlSource, tag: Optional[str]) -> Iterator[bytes]:
    now = datetime.now(timezone.utc)
    for record in source.records():
        line = formatter.format_line(tag, now, record)
        if line is not None:
            yield line


def deliver_with_retry(output: BigQueryOutput, chunk: MemoryChunk, max_retries: int) -> bool:
    """Deliver one chunk, retrying retryable errors with a doubling wait."""
    wait = 1
    for attempt in range(max_retries + 1):
        try:
            output.deliver(chunk)
            return True
        except RetryableError as e:
            if attempt == max_retries:
                logger.error(f"Giving up on chunk {chunk.unique_id_hex} after {attempt + 1} attempts: {e}")
                return False
            logger.warning(f"Retrying chunk {chunk.unique_id_hex} in {wait}s: {e}")
            time.sleep(wait)
            wait *= 2
        except BigQueryIngestError as e:
            logger.error(f"Chunk {chunk.unique_id_hex} failed: {e}")
            return False
    return False


def retry_failed_loads(output: LoadOutput, max_retries: int) -> int:
    """
    Resubmit chunks whose load job finished with a retryable error, with a
    doubling wait between rounds.

    Returns:
        Number of chunks that could not be resubmitted. Jobs that fail
        again stay in ``output.failed``.
    """
    lost = 0
    wait = 1
    for _ in range(max_retries):
        retryable = output.take_retryable_failures()
        if not retryable:
            break
        logger.warning(f"Resubmitting {len(retryable)} chunks after retryable load job errors in {wait}s")
        time.sleep(wait)
        wait *= 2
        for chunk, _error in retryable:
            if not deliver_with_retry(output, chunk, 0):
                lost += 1
        output.shutdown()
    return lost


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)
    load_env(Path(args.env_file))

    try:
        config = load_config(args.config)
        output = create_output(config)
    except BigQueryIngestError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    source = JsonlSource(args.input, project_id=config.project)
    lines = format_lines(output.formatter, source, args.tag)

    if args.dry_run:
        count = 0
        for line in lines:
            sys.stdout.write(line.decode("utf-8"))
            count += 1
        logger.info(f"Dry run: formatted {count} rows from {source.name}")
        return 0

    output.start()
    success_count = 0
    failed_count = 0
    try:
        for chunk in iter_chunks(lines, args.chunk_size, args.tag):
            if deliver_with_retry(output, chunk, args.max_retries):
                success_count += 1
            else:
                failed_count += 1
    except (TypeError, ValueError, OverflowError, BigQueryIngestError) as e:
        logger.error(f"Aborted on a record that cannot be formatted: {e}")
        failed_count += 1
    finally:
        output.shutdown()

    if isinstance(output, LoadOutput):
        # submitted chunks were counted as delivered before their job finished
        failed_loads = retry_failed_loads(output, args.max_retries) + len(output.failed)
        success_count -= failed_loads
        failed_count += failed_loads

    logger.info(f"Delivered {success_count} chunks, {failed_count} failed")
    return 0 if failed_count == 0 else 1


if __name__ == "__main__":
    sys.exit(main())
