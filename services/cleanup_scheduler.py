"""Deferred cleanup of superseded media.

A replacement stores a ``CleanupStatePayload`` keyed by the new media id. The
payload waits until every expected conversion of the new media has been
generated (or its state goes stale), then a cleanup job is dispatched after
commit and the state row is removed.
"""
from datetime import timedelta

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import TransactionManager
from helpers import Clock, SystemClock, ensure_aware, normalize_names
from models import Media, MediaCleanupState
from services.artifacts import MediaArtifact
from services.cleanup_state import (
    CleanupStatePayload,
    CleanupStateRepository,
    group_artifacts,
    remove_from_pending_set,
)
from services.jobs import MAX_ARTIFACTS_PER_DISK, CleanupMediaArtifactsJob, JobDispatcher

logger = structlog.get_logger(__name__)


class MediaCleanupScheduler:
    def __init__(
        self,
        tx: TransactionManager,
        dispatcher: JobDispatcher,
        clock: Clock | None = None,
        states: CleanupStateRepository | None = None,
        pending_grace_minutes: int = 30,
        state_ttl_hours: int = 48,
        purge_batch_size: int = 100,
    ):
        self.tx = tx
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.states = states or CleanupStateRepository()
        self.pending_grace = timedelta(minutes=pending_grace_minutes)
        self.state_ttl_hours = state_ttl_hours
        self.purge_batch_size = purge_batch_size

    # -- public API ------------------------------------------------------

    def flag_pending_conversions(self, artifact: MediaArtifact, conversions) -> None:
        names = normalize_names(conversions)

        def work(session: Session) -> None:
            state = self.states.find(session, artifact.id, lock=True)
            generated = self._generated(session, artifact.id)
            pending = [name for name in names if name not in generated]

            if not pending:
                if state is not None:
                    payload = self._payload(state)
                    self.states.delete(session, state)
                    if payload.has_artifacts():
                        self._dispatch(payload, artifact.id, "conversions_complete")
                return

            if state is None:
                state = self.states.get_or_create(session, artifact.id)
            self._describe(state, artifact)
            state.conversions = pending
            state.flagged_at = self.clock.now()
            logger.info("media_conversions_flagged", media_id=artifact.id, pending=pending)

        self.tx.transactional(work)

    def schedule_cleanup(
        self, artifact: MediaArtifact, artifacts_by_disk: dict, preserve=(), expected_conversions=()
    ) -> None:
        now = self.clock.now()
        incoming = CleanupStatePayload.create(
            artifact.id, artifacts_by_disk, preserve, expected_conversions, queued_at=now
        )
        if not incoming.has_artifacts():
            logger.debug("media_cleanup_nothing_to_schedule", media_id=artifact.id)
            return

        def work(session: Session) -> None:
            state = self.states.find(session, artifact.id, lock=True)
            generated = self._generated(session, artifact.id)
            pending = [c for c in incoming.expected_conversions if c not in generated]
            if state is not None and state.conversions is not None:
                flagged = set(normalize_names(state.conversions))
                pending = [c for c in pending if c in flagged]

            existing = self._payload(state) if state is not None else None
            payload = existing.merged_with(incoming) if existing and existing.has_artifacts() else incoming

            if state is not None and self._is_stale(state, now):
                self.states.delete(session, state)
                self._dispatch(payload, artifact.id, "pending_state_stale")
                return

            if not pending:
                if state is not None:
                    self.states.delete(session, state)
                self._dispatch(payload, artifact.id, "conversions_complete")
                return

            if state is None:
                state = self.states.get_or_create(session, artifact.id)
            self._describe(state, artifact)
            payload = payload.with_pending(pending)
            state.payload = payload.to_dict()
            state.payload_queued_at = now
            state.conversions = pending
            if state.flagged_at is None:
                state.flagged_at = now
            logger.info(
                "media_cleanup_deferred",
                media_id=artifact.id,
                pending=pending,
                origins=list(payload.origin_media_ids),
            )

        try:
            self.tx.transactional(work)
        except SQLAlchemyError as exc:
            logger.warning(
                "media_cleanup_state_persist_failed",
                media_id=artifact.id,
                origins=list(incoming.origin_media_ids),
                error=type(exc).__name__,
            )

    def handle_conversion_event(self, artifact: MediaArtifact | int, conversion_name: str) -> bool:
        media_id = artifact.id if isinstance(artifact, MediaArtifact) else artifact
        name = str(conversion_name).strip()

        def work(session: Session) -> bool:
            state = self.states.find(session, media_id, lock=True)
            if state is None:
                return False

            payload = remove_from_pending_set(self._payload(state), name)
            source = state.conversions if state.conversions is not None else payload.expected_conversions
            remaining = [c for c in normalize_names(source) if c != name]

            if remaining:
                state.conversions = remaining
                if state.payload is not None:
                    state.payload = payload.with_pending(remaining).to_dict()
                logger.debug("media_conversion_recorded", media_id=media_id, conversion=name, remaining=remaining)
                return False

            self.states.delete(session, state)
            if payload.has_artifacts():
                self._dispatch(payload, media_id, "conversions_complete")
                return True
            return False

        return self.tx.transactional(work)

    def flush_expired(self, media_id, reason: str = "forced") -> bool:
        """Dispatch whatever is stored for ``media_id`` and drop the state row."""

        def work(session: Session) -> bool:
            state = self.states.find(session, media_id, lock=True)
            if state is None:
                return False
            payload = self._payload(state)
            self.states.delete(session, state)
            if payload.has_artifacts():
                self._dispatch(payload, media_id, reason)
            else:
                logger.info("media_cleanup_state_cleared", media_id=str(media_id), reason=reason)
            return True

        return self.tx.transactional(work)

    def release_deleted(self, media_id, artifacts_by_disk: dict) -> None:
        """The media record is gone: flush what waited on it, then delete its own tree."""
        self.flush_expired(media_id, reason="media_deleted")
        payload = CleanupStatePayload(artifacts_by_disk=group_artifacts(artifacts_by_disk))
        if not payload.has_artifacts():
            return
        self.tx.transactional(lambda session: self._dispatch(payload, media_id, "media_deleted"))

    def purge_expired(self, ttl_hours: int | None = None, batch_size: int | None = None) -> int:
        ttl_hours = self.state_ttl_hours if ttl_hours is None else ttl_hours
        batch_size = self.purge_batch_size if batch_size is None else batch_size
        if batch_size <= 0:
            raise ValueError("batch_size must be greater than zero")

        cutoff = self.clock.now() - timedelta(hours=ttl_hours)
        purged = 0
        after = None
        while True:
            ids = self.tx.transactional(
                lambda session: self.states.expired_ids(session, cutoff, batch_size, after)
            )
            if not ids:
                break
            for media_id in ids:
                try:
                    if self.flush_expired(media_id, reason="expired"):
                        purged += 1
                except SQLAlchemyError as exc:
                    logger.error("media_cleanup_purge_failed", media_id=media_id, error=type(exc).__name__)
            after = ids[-1]
            if len(ids) < batch_size:
                break

        logger.info("media_cleanup_purged", count=purged, ttl_hours=ttl_hours)
        return purged

    # -- internals -------------------------------------------------------

    def _dispatch(self, payload: CleanupStatePayload, media_id, reason: str) -> None:
        jobs = list(self._jobs_for(payload))

        def send() -> None:
            for job in jobs:
                self.dispatcher.dispatch(job)

        self.tx.after_commit(send)
        logger.info(
            "media_cleanup_dispatched",
            media_id=str(media_id),
            reason=reason,
            jobs=len(jobs),
            origins=list(payload.origin_media_ids),
            preserve=list(payload.preserve_media_ids),
        )

    @staticmethod
    def _jobs_for(payload: CleanupStatePayload):
        chunks: list[dict] = [{}]
        for disk, entries in payload.artifacts_by_disk.items():
            for start in range(0, len(entries), MAX_ARTIFACTS_PER_DISK):
                index = start // MAX_ARTIFACTS_PER_DISK
                while len(chunks) <= index:
                    chunks.append({})
                chunks[index][disk] = entries[start : start + MAX_ARTIFACTS_PER_DISK]
        for chunk in chunks:
            if chunk:
                yield CleanupMediaArtifactsJob.build(chunk, payload.preserve_media_ids)

    def _is_stale(self, state: MediaCleanupState, now) -> bool:
        stamps = [ensure_aware(s) for s in (state.flagged_at, state.payload_queued_at) if s is not None]
        return bool(stamps) and min(stamps) <= now - self.pending_grace

    @staticmethod
    def _payload(state: MediaCleanupState) -> CleanupStatePayload:
        return CleanupStatePayload.from_dict(state.payload) if state.payload else CleanupStatePayload()

    @staticmethod
    def _describe(state: MediaCleanupState, artifact: MediaArtifact) -> None:
        state.collection = artifact.collection_key
        state.model_type = artifact.model_type
        state.model_id = str(artifact.model_id)

    @staticmethod
    def _generated(session: Session, media_id) -> set[str]:
        if not str(media_id).isdigit():
            return set()
        media = session.get(Media, int(media_id))
        if media is None:
            return set()
        return {name for name, done in (media.generated_conversions or {}).items() if done}
