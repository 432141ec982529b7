from dataclasses import dataclass, field

import structlog

from errors import PathSafetyError, StorageError
from services.cleanup_state import ArtifactsByDisk, group_artifacts
from services.paths import TenantPathResolver
from services.storage import DiskRegistry

logger = structlog.get_logger(__name__)


@dataclass
class CleanupStats:
    deleted: int = 0
    missing: int = 0
    preserved: int = 0
    skipped_invalid: int = 0
    skipped_legacy_unparsable: int = 0
    errors: int = 0
    # media ids whose directories are all gone after this run
    cleared_media_ids: set[str] = field(default_factory=set)

    def as_dict(self) -> dict:
        return {
            "deleted": self.deleted,
            "missing": self.missing,
            "preserved": self.preserved,
            "skipped_invalid": self.skipped_invalid,
            "skipped_legacy_unparsable": self.skipped_legacy_unparsable,
            "errors": self.errors,
        }


class ArtifactCleanupExecutor:
    """Deletes superseded artifact directories.

    Directories are re-validated against the tenant layout, attributed to a media
    id, and skipped whenever that attribution is missing or preserved. Re-running
    on an already cleaned set only counts ``missing`` entries.
    """

    def __init__(self, disks: DiskRegistry, resolver: TenantPathResolver | None = None):
        self.disks = disks
        self.resolver = resolver or TenantPathResolver()

    def run(self, artifacts_by_disk: ArtifactsByDisk | dict, preserve_media_ids=()) -> CleanupStats:
        preserve = {str(media_id).strip() for media_id in preserve_media_ids if str(media_id).strip()}
        stats = CleanupStats()
        failed_ids: set[str] = set()

        for disk_name, entries in group_artifacts(artifacts_by_disk).items():
            if not self.disks.has(disk_name):
                logger.warning("media_cleanup_unknown_disk", disk=disk_name, entries=len(entries))
                stats.skipped_invalid += len(entries)
                continue
            disk = self.disks.get(disk_name)

            for entry in entries:
                try:
                    directory = self.resolver.sanitize(entry.directory)
                except PathSafetyError as exc:
                    logger.warning(
                        "security_cleanup_path_rejected",
                        disk=disk_name,
                        reason=exc.reason,
                        media_id=entry.originating_media_id,
                    )
                    stats.skipped_invalid += 1
                    continue

                media_id = entry.originating_media_id
                if media_id is None:
                    legacy_id = self.resolver.legacy_media_id(directory)
                    if legacy_id is None:
                        logger.info(
                            "media_cleanup_legacy_unparsable", disk=disk_name, directory=directory
                        )
                        stats.skipped_legacy_unparsable += 1
                        continue
                    media_id = str(legacy_id)

                if media_id in preserve:
                    stats.preserved += 1
                    continue

                try:
                    if not disk.directory_exists(directory):
                        stats.missing += 1
                        stats.cleared_media_ids.add(media_id)
                        continue
                    disk.delete_directory(directory)
                except (OSError, StorageError, PathSafetyError) as exc:
                    logger.error(
                        "media_cleanup_delete_failed",
                        disk=disk_name,
                        directory=directory,
                        media_id=media_id,
                        error=type(exc).__name__,
                    )
                    stats.errors += 1
                    failed_ids.add(media_id)
                    continue

                stats.deleted += 1
                stats.cleared_media_ids.add(media_id)

        stats.cleared_media_ids -= failed_ids

        logger.info("media_cleanup_completed", preserve=sorted(preserve), **stats.as_dict())
        return stats
