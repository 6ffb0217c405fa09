from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from curation.core import ingestion
from curation.core.config import settings
from curation.core.db_read_write import write_engine
from curation.core.search_index import shutdown_index_worker
from curation.db import Base


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Ingest a CSV/JSON question dataset")
    parser.add_argument("path", help="upload file (csv, json, jsonl)")
    parser.add_argument("--format", default="", help="source format; defaults to the file suffix")
    parser.add_argument("--name", default="", help="dataset name")
    parser.add_argument("--metadata", default="", help="dataset metadata as a JSON object")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    Base.metadata.create_all(bind=write_engine)
    path = Path(args.path)
    metadata = json.loads(args.metadata) if args.metadata else None
    try:
        with path.open("rb") as handle:
            dataset = ingestion.ingest(
                handle,
                args.format or path.suffix,
                name=args.name or path.name,
                metadata=metadata,
            )
    finally:
        shutdown_index_worker()
    print(
        f"ingest done: dataset_id={dataset.id}, status={dataset.status.value}, "
        f"questions={dataset.question_count}, answers={dataset.answer_count}, skipped={dataset.skipped_count}"
    )
    if dataset.error_kind:
        print(
            f"error: kind={dataset.error_kind}, batch_range={dataset.failed_batch_start}-{dataset.failed_batch_end}, "
            f"retryable={dataset.retryable}, detail={dataset.error_detail}"
        )
        raise SystemExit(1)


if __name__ == "__main__":
    main()
