"""
Requeue script: manually re-enqueue permanently failed sync records.

Usage:
    python -m fieldsync.scripts.requeue --target hr_system
    python -m fieldsync.scripts.requeue --target hr_system --limit 20 --dry-run

Each exhausted record is copied into a fresh pending record (attempts
start again at 0); the original stays failed as the audit trail.
Failures on individual records don't abort the run.
"""
import argparse
import logging
from typing import Optional

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


def _requeue(target: Optional[str], limit: int, dry_run: bool, requested_by: str) -> int:
    from fieldsync.db.engine import get_engine
    from fieldsync.store.records import RecordNotRequeueableError, RecordStore

    store = RecordStore(get_engine())
    exhausted = store.list_exhausted(target_system=target, limit=limit)
    logger.info("Found %d exhausted record(s)%s", len(exhausted), f" for {target}" if target else "")

    requeued = 0
    for record in exhausted:
        if dry_run:
            logger.info(
                "Would requeue %s (%s %s → %s): %s",
                record.id,
                record.record_type,
                record.record_id,
                record.target_system,
                record.error_message,
            )
            continue
        try:
            fresh = store.requeue(record.id, requested_by=requested_by)
            logger.info("Requeued %s as %s", record.id, fresh.id)
            requeued += 1
        except RecordNotRequeueableError as exc:
            logger.warning("Skipping %s: %s", record.id, exc)

    logger.info("Requeue complete. Requeued: %d", requeued)
    return requeued


def main() -> None:
    parser = argparse.ArgumentParser(description="Re-enqueue permanently failed sync records")
    parser.add_argument("--target", default=None, help="Only records for this target system")
    parser.add_argument(
        "--limit",
        type=int,
        default=100,
        help="Max records to requeue (default: 100)",
    )
    parser.add_argument("--dry-run", action="store_true", help="List records without requeueing")
    parser.add_argument("--requested-by", default="requeue-script", help="Attribution for new records")
    args = parser.parse_args()
    _requeue(args.target, args.limit, args.dry_run, args.requested_by)


if __name__ == "__main__":
    main()
