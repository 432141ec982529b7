"""
Run pipeline housekeeping by hand, outside of celery beat.

Usage:
    python scripts/quarantine_maintenance.py prune --max-age-hours 12
    python scripts/quarantine_maintenance.py sidecars
    python scripts/quarantine_maintenance.py purge --ttl-hours 48 --batch-size 100
    python scripts/quarantine_maintenance.py reset-circuit clamav
"""

import argparse

import structlog

from container import get_container
from logging_config import setup_logging

logger = structlog.get_logger("quarantine_maintenance")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Quarantine and cleanup maintenance")
    sub = parser.add_subparsers(dest="command", required=True)

    prune = sub.add_parser("prune", help="Delete stale quarantined files")
    prune.add_argument("--max-age-hours", type=int, default=None, help="Override the pending TTL")

    sub.add_parser("sidecars", help="Delete orphaned hash/metadata/lock sidecars")

    purge = sub.add_parser("purge", help="Flush expired media cleanup states")
    purge.add_argument("--ttl-hours", type=int, default=None)
    purge.add_argument("--batch-size", type=int, default=None)

    reset = sub.add_parser("reset-circuit", help="Clear the failure counter of a scanner")
    reset.add_argument("scanner", help="Scanner id, e.g. clamav, yara, heuristic")

    parser.add_argument("--debug", action="store_true", help="Human readable log output")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    setup_logging(debug=args.debug)
    container = get_container()

    if args.command == "prune":
        count = container.quarantine.prune_stale(args.max_age_hours)
    elif args.command == "sidecars":
        count = container.quarantine.cleanup_orphan_sidecars()
    elif args.command == "purge":
        count = container.scheduler.purge_expired(args.ttl_hours, args.batch_size)
    else:
        container.breaker.reset(args.scanner)
        count = 1

    logger.info("maintenance_finished", command=args.command, affected=count)
    print(f"{args.command}: {count}")


if __name__ == "__main__":
    main()
