"""
Media tasks: deferred upload processing, conversions and artifact cleanup.
"""
import structlog
from celery import Task, shared_task
from sqlalchemy import delete

from container import get_container
from errors import (
    AntivirusInfraError,
    CircuitOpenError,
    OwnerNotFound,
    QuarantineIntegrityError,
    ScanFailed,
    StorageError,
    ValidationError,
)
from models import Media

logger = structlog.get_logger(__name__)


class ProcessUploadTask(Task):
    """Drops the staged file once every retry has been used up."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        container = get_container()
        identifier = kwargs.get("identifier")
        if not identifier:
            return
        try:
            token = container.quarantine.token_for(identifier)
        except QuarantineIntegrityError:
            return
        container.uploads.abandon(token, reason=type(exc).__name__)


class PerformConversionsTask(Task):
    """Releases any cleanup waiting on conversions that will never finish."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        media_id = kwargs.get("media_id")
        if media_id is None:
            return
        get_container().scheduler.flush_expired(media_id, reason="conversion_failed")


@shared_task(
    name="tasks.media.process_upload",
    base=ProcessUploadTask,
    autoretry_for=(AntivirusInfraError, CircuitOpenError),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_kwargs={"max_retries": 5},
    acks_late=True,
)
def process_upload(
    identifier: str,
    owner_id: int,
    profile: str,
    original_name: str | None = None,
    declared_mime: str | None = None,
) -> dict:
    container = get_container()
    try:
        token = container.quarantine.token_for(identifier)
        media = container.uploads.process(token, owner_id, profile, original_name, declared_mime)
    except ValidationError as exc:
        # also covers ScanRejection; the staged file is already gone
        logger.info("upload_rejected", identifier=identifier[:12], code=exc.code, reason=exc.reason)
        return {"status": "rejected", "code": exc.code}
    except QuarantineIntegrityError as exc:
        # duplicate delivery or a file pruned while queued
        logger.warning("upload_skipped", identifier=identifier[:12], reason=exc.reason)
        return {"status": "skipped", "reason": exc.reason}
    except OwnerNotFound:
        container.uploads.abandon(token, reason="owner_missing")
        return {"status": "failed", "code": OwnerNotFound.code}
    except ScanFailed as exc:
        if exc.retryable:
            raise
        return {"status": "failed", "code": exc.code}

    return {"status": "stored", "media_id": media.id}


@shared_task(
    name="tasks.media.perform_conversions",
    base=PerformConversionsTask,
    autoretry_for=(OSError, StorageError),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": 3},
    acks_late=True,
)
def perform_conversions(media_id: int) -> list[str]:
    return get_container().conversions.perform(media_id)


@shared_task(name="tasks.media.cleanup_media_artifacts", acks_late=True)
def cleanup_media_artifacts(artifacts: dict, preserve: list[str] | None = None) -> dict:
    container = get_container()
    preserve = [str(p) for p in preserve or []]
    stats = container.executor.run(artifacts, preserve)

    removable = sorted(
        int(media_id)
        for media_id in stats.cleared_media_ids - set(preserve)
        if media_id.isdigit()
    )
    if removable:
        removed = container.tx.transactional(lambda session: _delete_superseded(session, removable))
        logger.info("media_records_pruned", media_ids=removable, count=removed)

    return stats.as_dict()


def _delete_superseded(session, media_ids: list[int]) -> int:
    stmt = delete(Media).where(Media.id.in_(media_ids), Media.superseded_at.is_not(None))
    return session.execute(stmt).rowcount
