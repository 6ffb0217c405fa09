from __future__ import annotations

import argparse
from datetime import datetime
import json

from curation.core import bias
from curation.core.db_read_write import WriteSessionLocal


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate a bias report for a dataset snapshot")
    parser.add_argument("dataset_id", type=int)
    parser.add_argument("--attribute", action="append", required=True, help="protected attribute (repeatable)")
    parser.add_argument("--outcome-field", default=None)
    parser.add_argument("--label-field", default=None)
    parser.add_argument("--as-of", default=None, help="ISO timestamp of the snapshot")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    as_of = datetime.fromisoformat(args.as_of) if args.as_of else None
    db = WriteSessionLocal()
    try:
        report = bias.analyze(
            db,
            args.dataset_id,
            args.attribute,
            outcome_field=args.outcome_field,
            label_field=args.label_field,
            as_of=as_of,
        )
        print(
            json.dumps(
                {
                    "id": report.id,
                    "dataset_id": report.dataset_id,
                    "as_of": report.as_of.isoformat(),
                    "sample_size": report.sample_size,
                    "snapshot_fingerprint": report.snapshot_fingerprint,
                    "metrics": report.metrics,
                },
                ensure_ascii=False,
                indent=2,
            )
        )
    finally:
        db.close()


if __name__ == "__main__":
    main()
