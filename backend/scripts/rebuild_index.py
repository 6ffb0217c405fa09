from __future__ import annotations

import argparse

from curation import models
from curation.core.db_read_write import WriteSessionLocal
from curation.core.search_index import rebuild_dataset_index


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Re-sync the question search index")
    parser.add_argument("--dataset-id", type=int, action="append", help="dataset to rebuild (repeatable)")
    parser.add_argument("--all", action="store_true", help="rebuild every dataset")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if not args.all and not args.dataset_id:
        raise SystemExit("pass --dataset-id or --all")
    db = WriteSessionLocal()
    try:
        if args.all:
            dataset_ids = [row[0] for row in db.query(models.Dataset.id).order_by(models.Dataset.id.asc()).all()]
        else:
            dataset_ids = args.dataset_id
        for dataset_id in dataset_ids:
            stats = rebuild_dataset_index(db, dataset_id)
            db.commit()
            print(f"reindex dataset_id={dataset_id}: {stats}")
    except Exception:  # noqa: BLE001
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
