"""Swap an owner's media slot and defer deletion of what it replaced."""
import uuid as uuid_lib
from dataclasses import dataclass, field

import structlog
from sqlalchemy.orm import Session

from config import StorageSettings
from database import TransactionManager
from helpers import Clock, SystemClock, normalize_names
from models import Media
from services.artifacts import MediaArtifact, MediaArtifactCollector, MediaOwner, ReplacementSnapshot
from services.cleanup_scheduler import MediaCleanupScheduler
from services.owners import UserRepository
from services.paths import TenantPathLayout
from services.profiles import UploadProfile
from services.quarantine import PromotedFile
from services.storage import DiskRegistry
from services.validation import DetectedImage

logger = structlog.get_logger(__name__)


@dataclass
class WrittenObjects:
    """Keys written to storage inside a transaction that has not committed yet."""

    items: list[tuple[str, str]] = field(default_factory=list)

    def add(self, disk: str, key: str) -> None:
        self.items.append((disk, key))

    def discard_all(self, disks: DiskRegistry) -> None:
        for disk_name, key in self.items:
            try:
                disks.get(disk_name).delete(key)
            except Exception as exc:
                logger.error("media_write_rollback_failed", disk=disk_name, error=type(exc).__name__)
        self.items.clear()


class MediaAttacher:
    def __init__(
        self,
        disks: DiskRegistry,
        layout: TenantPathLayout,
        owners: UserRepository,
        storage: StorageSettings,
        clock: Clock | None = None,
    ):
        self.disks = disks
        self.layout = layout
        self.owners = owners
        self.storage = storage
        self.clock = clock or SystemClock()

    def attach(
        self,
        session: Session,
        owner: MediaOwner,
        profile: UploadProfile,
        promoted: PromotedFile,
        detected: DetectedImage,
        written: WrittenObjects,
    ) -> Media:
        if profile.single_file:
            owner.avatar_version = (owner.avatar_version or 0) + 1
            self.owners.save(owner)

        media_uuid = str(uuid_lib.uuid4())
        key = profile.storage_path(self.layout, owner, detected.extension, media_uuid)
        disk_name = self.storage.default_disk
        with promoted.open() as stream:
            self.disks.get(disk_name).put(key, stream, content_type=detected.mime)
        written.add(disk_name, key)

        directory, _, file_name = key.rpartition("/")
        media = Media(
            uuid=media_uuid,
            tenant_id=owner.tenant_id,
            model_type=owner.owner_type,
            model_id=owner.get_key(),
            collection_name=profile.collection,
            disk=disk_name,
            conversions_disk=self.storage.conversions_disk,
            directory=directory,
            file_name=file_name,
            mime_type=detected.mime,
            size=promoted.size,
            generated_conversions={},
            created_at=self.clock.now(),
        )
        session.add(media)
        session.flush()
        logger.info(
            "media_attached",
            media_id=media.id,
            disk=disk_name,
            collection=profile.collection,
            correlation_id=promoted.correlation_id,
        )
        return media


class MediaReplacementService:
    def __init__(
        self,
        tx: TransactionManager,
        collector: MediaArtifactCollector,
        attacher: MediaAttacher,
        scheduler: MediaCleanupScheduler,
        clock: Clock | None = None,
    ):
        self.tx = tx
        self.collector = collector
        self.attacher = attacher
        self.scheduler = scheduler
        self.clock = clock or SystemClock()

    def replace(
        self,
        session: Session,
        owner: MediaOwner,
        profile: UploadProfile,
        promoted: PromotedFile,
        detected: DetectedImage,
        written: WrittenObjects,
    ) -> Media:
        """Write the new media and queue cleanup of the old slot for after commit.

        Must run inside ``tx.transactional`` with the owner row locked.
        """
        snapshot = (
            self.collector.snapshot(session, owner, profile.collection)
            if profile.single_file
            else ReplacementSnapshot()
        )

        media = self.attacher.attach(session, owner, profile, promoted, detected, written)
        self._supersede(session, snapshot)

        artifact = MediaArtifact.from_model(media)
        conversions = normalize_names(profile.conversion_names())
        self.scheduler.flag_pending_conversions(artifact, conversions)

        if len(snapshot):
            self.tx.after_commit(lambda: self._schedule(artifact, snapshot, conversions))
        return media

    def remove(self, session: Session, owner: MediaOwner, profile: UploadProfile) -> list[int]:
        """Drop every media in the slot; their trees are deleted after commit."""
        snapshot = self.collector.snapshot(session, owner, profile.collection)
        self._supersede(session, snapshot)

        def release() -> None:
            for item in snapshot:
                self.scheduler.release_deleted(item.media_id, _format_item(item))

        if len(snapshot):
            self.tx.after_commit(release)
        return snapshot.media_ids()

    def _supersede(self, session: Session, snapshot: ReplacementSnapshot) -> None:
        now = self.clock.now()
        for media_id in snapshot.media_ids():
            media = session.get(Media, media_id)
            if media is not None and media.superseded_at is None:
                media.superseded_at = now

    def _schedule(self, artifact: MediaArtifact, snapshot: ReplacementSnapshot, conversions: list[str]) -> None:
        preserve = [str(artifact.id)]
        for item in snapshot:
            try:
                self.scheduler.schedule_cleanup(artifact, _format_item(item), preserve, conversions)
            except Exception as exc:
                logger.error(
                    "media_cleanup_schedule_failed",
                    media_id=artifact.id,
                    origin_media_id=item.media_id,
                    error=type(exc).__name__,
                )


def _format_item(item) -> dict[str, list[dict]]:
    formatted: dict[str, list[dict]] = {}
    seen = set()
    for disk, paths in item.by_disk().items():
        for path in paths:
            key = f"{disk}|{path}|{item.media_id}"
            if key in seen:
                continue
            seen.add(key)
            formatted.setdefault(disk, []).append({"dir": path, "mediaId": str(item.media_id)})
    return formatted
