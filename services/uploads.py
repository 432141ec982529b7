"""Upload orchestration: stage, scan, promote, replace."""
import uuid as uuid_lib
from dataclasses import dataclass
from typing import BinaryIO

import structlog

from database import TransactionManager
from errors import CircuitOpenError, QuarantineIntegrityError, ScanFailed, ScanRejection, ValidationError
from models import Media
from services.jobs import JobDispatcher, PerformConversionsJob, ProcessUploadJob
from services.owners import UserRepository
from services.profiles import UploadProfile, get_profile
from services.quarantine import QuarantineState, QuarantineStore, QuarantineToken
from services.replacement import MediaReplacementService, WrittenObjects
from services.scanning import ScanCoordinator
from services.storage import DiskRegistry
from services.validation import ScanTarget

logger = structlog.get_logger(__name__)

RETRY_DELAY_SECONDS = 60


@dataclass(frozen=True)
class UploadResult:
    status: str
    correlation_id: str | None
    media: Media | None = None


class MediaUploadService:
    def __init__(
        self,
        tx: TransactionManager,
        quarantine: QuarantineStore,
        coordinator: ScanCoordinator,
        owners: UserRepository,
        replacement: MediaReplacementService,
        disks: DiskRegistry,
        dispatcher: JobDispatcher,
        queue_processing: bool = False,
    ):
        self.tx = tx
        self.quarantine = quarantine
        self.coordinator = coordinator
        self.owners = owners
        self.replacement = replacement
        self.disks = disks
        self.dispatcher = dispatcher
        self.queue_processing = queue_processing

    def upload(
        self,
        stream: BinaryIO,
        owner_id: int,
        profile_name: str,
        original_name: str | None = None,
        declared_mime: str | None = None,
    ) -> UploadResult:
        profile = get_profile(profile_name)
        self.owners.lock_and_find_by_id(owner_id)
        token = self.stage(stream, owner_id, profile, original_name, declared_mime)
        job = ProcessUploadJob(token.identifier, owner_id, profile.name, original_name, declared_mime)

        if self.queue_processing:
            self.dispatcher.dispatch(job)
            return UploadResult("queued", token.correlation_id)

        try:
            media = self.process(token, owner_id, profile.name, original_name, declared_mime)
        except CircuitOpenError:
            self.abandon(token, "circuit_open")
            raise
        except ScanFailed as exc:
            if not exc.retryable:
                raise
            if self.quarantine.get_state(token) == QuarantineState.PENDING:
                logger.info(
                    "upload_requeued",
                    correlation_id=token.correlation_id,
                    scanner=getattr(exc, "scanner", None),
                    reason=getattr(exc, "reason", None),
                )
                self.dispatcher.dispatch(job, delay=RETRY_DELAY_SECONDS)
                return UploadResult("queued", token.correlation_id)
            self.abandon(token, "scan_unavailable")
            raise
        return UploadResult("stored", token.correlation_id, media)

    def stage(
        self,
        stream: BinaryIO,
        owner_id: int,
        profile: UploadProfile,
        original_name: str | None,
        declared_mime: str | None,
    ) -> QuarantineToken:
        return self.quarantine.put_stream(
            stream,
            correlation_id=uuid_lib.uuid4().hex,
            profile=profile.name,
            metadata={
                "owner_id": owner_id,
                "original_name": original_name,
                "declared_mime": declared_mime,
            },
        )

    def process(
        self,
        token: QuarantineToken,
        owner_id: int,
        profile_name: str,
        original_name: str | None = None,
        declared_mime: str | None = None,
    ) -> Media:
        profile = get_profile(profile_name)
        context = {
            "correlation_id": token.correlation_id,
            "profile": profile.name,
            "owner_id": owner_id,
        }
        # an open circuit leaves the record PENDING so a retry can pick it up
        self.coordinator.assert_available()

        record = self.quarantine.get_record(token)
        self.quarantine.transition(token, record.state, QuarantineState.SCANNING)
        target = ScanTarget(
            path=record.physical_location,
            size=record.physical_location.stat().st_size,
            declared_mime=declared_mime,
            original_name=original_name,
        )

        try:
            detected = self.coordinator.scan(target, context)
        except ScanRejection:
            self.quarantine.transition(token, QuarantineState.SCANNING, QuarantineState.INFECTED)
            self.quarantine.delete(token)
            raise
        except ValidationError:
            self.quarantine.transition(token, QuarantineState.SCANNING, QuarantineState.FAILED)
            self.quarantine.delete(token)
            raise
        except ScanFailed as exc:
            if exc.retryable:
                self.quarantine.transition(token, QuarantineState.SCANNING, QuarantineState.PENDING)
            else:
                self.quarantine.transition(token, QuarantineState.SCANNING, QuarantineState.FAILED)
                self.quarantine.delete(token)
            raise

        self.quarantine.transition(token, QuarantineState.SCANNING, QuarantineState.CLEAN)
        written = WrittenObjects()
        with self.quarantine.promote(token, {"owner_id": owner_id, "profile": profile.name}) as promoted:
            try:
                media = self.tx.transactional(
                    lambda session: self._commit(session, owner_id, profile, promoted, detected, written)
                )
            except Exception:
                written.discard_all(self.disks)
                raise

        logger.info("upload_stored", media_id=media.id, **context)
        return media

    def remove(self, owner_id: int, profile_name: str) -> list[int]:
        profile = get_profile(profile_name)

        def work(session):
            owner = self.owners.lock_and_find_by_id(owner_id)
            return self.replacement.remove(session, owner, profile)

        removed = self.tx.transactional(work)
        logger.info("media_slot_cleared", owner_id=owner_id, profile=profile.name, media_ids=removed)
        return removed

    def abandon(self, token: QuarantineToken, reason: str) -> None:
        """Terminal failure: mark the record FAILED and drop the staged file."""
        try:
            state = self.quarantine.get_state(token)
            if state in (QuarantineState.PENDING, QuarantineState.SCANNING, QuarantineState.CLEAN):
                self.quarantine.transition(token, state, QuarantineState.FAILED)
        except QuarantineIntegrityError as exc:
            logger.warning("upload_abandon_state_failed", reason=exc.reason, correlation_id=token.correlation_id)
        try:
            self.quarantine.delete(token)
        except (OSError, QuarantineIntegrityError) as exc:
            logger.error("upload_abandon_delete_failed", error=type(exc).__name__, correlation_id=token.correlation_id)
        logger.warning("upload_abandoned", reason=reason, correlation_id=token.correlation_id)

    def _commit(self, session, owner_id, profile, promoted, detected, written) -> Media:
        owner = self.owners.lock_and_find_by_id(owner_id)
        media = self.replacement.replace(session, owner, profile, promoted, detected, written)
        if profile.conversions:
            job = PerformConversionsJob(media.id)
            self.tx.after_commit(lambda: self.dispatcher.dispatch(job))
        return media
