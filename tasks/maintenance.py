"""Periodic housekeeping, scheduled by celery beat."""
import structlog
from celery import shared_task

from container import get_container

logger = structlog.get_logger(__name__)


@shared_task(name="tasks.maintenance.purge_expired_cleanup_states")
def purge_expired_cleanup_states(ttl_hours: int | None = None, batch_size: int | None = None) -> int:
    return get_container().scheduler.purge_expired(ttl_hours, batch_size)


@shared_task(name="tasks.maintenance.prune_quarantine")
def prune_quarantine(max_age_hours: int | None = None) -> int:
    removed = get_container().quarantine.prune_stale(max_age_hours)
    logger.info("quarantine_pruned", removed=removed)
    return removed


@shared_task(name="tasks.maintenance.cleanup_quarantine_sidecars")
def cleanup_quarantine_sidecars() -> int:
    removed = get_container().quarantine.cleanup_orphan_sidecars()
    logger.info("quarantine_sidecars_cleaned", removed=removed)
    return removed
