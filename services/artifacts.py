"""Immutable views of stored media and the snapshot taken before a replacement."""
from dataclasses import dataclass
from typing import Iterable, Protocol

from sqlalchemy.orm import Session

from models import Media
from services.paths import TenantPathLayout
from services.storage import DiskRegistry


class MediaOwner(Protocol):
    """Anything that owns replaceable media slots (users today)."""

    owner_type: str
    tenant_id: int

    def get_key(self) -> int: ...

    def media_in(self, session: Session, collection: str) -> list[Media]: ...


@dataclass(frozen=True)
class MediaArtifact:
    id: int
    disk: str
    conversions_disk: str
    collection_key: str
    file_name: str
    storage_key_prefix: str
    model_type: str
    model_id: int

    @classmethod
    def from_model(cls, media: Media) -> "MediaArtifact":
        return cls(
            id=media.id,
            disk=media.disk,
            conversions_disk=media.conversions_disk,
            collection_key=media.collection_name,
            file_name=media.file_name,
            storage_key_prefix=media.directory,
            model_type=media.model_type,
            model_id=media.model_id,
        )

    @property
    def path(self) -> str:
        return f"{self.storage_key_prefix}/{self.file_name}"


@dataclass(frozen=True)
class ReplacementSnapshotItem:
    media_id: int
    artifacts: tuple[tuple[str, tuple[str, ...]], ...]

    def by_disk(self) -> dict[str, list[str]]:
        return {disk: list(paths) for disk, paths in self.artifacts}


@dataclass(frozen=True)
class ReplacementSnapshot:
    items: tuple[ReplacementSnapshotItem, ...] = ()

    def __iter__(self):
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)

    def media_ids(self) -> list[int]:
        return [item.media_id for item in self.items]


class MediaArtifactCollector:
    """Lists the directories that belong to each media record, grouped by disk."""

    def __init__(self, layout: TenantPathLayout, disks: DiskRegistry, check_existence: bool = False):
        self.layout = layout
        self.disks = disks
        self.check_existence = check_existence

    def collect(self, media: Media) -> dict[str, list[str]]:
        path = media.path
        candidates = [
            (media.disk, self.layout.base_directory(path)),
            (media.conversions_disk, self.layout.conversions_directory(path)),
            (media.conversions_disk, self.layout.responsive_directory(path)),
        ]
        grouped: dict[str, list[str]] = {}
        for disk, directory in candidates:
            if self.check_existence and not self.disks.get(disk).directory_exists(directory):
                continue
            paths = grouped.setdefault(disk, [])
            if directory not in paths:
                paths.append(directory)
        return grouped

    def snapshot(
        self, session: Session, owner: MediaOwner, collection: str, exclude_ids: Iterable[int] = ()
    ) -> ReplacementSnapshot:
        excluded = set(exclude_ids)
        items = []
        for media in owner.media_in(session, collection):
            if media.id in excluded:
                continue
            grouped = self.collect(media)
            if not grouped:
                continue
            items.append(
                ReplacementSnapshotItem(
                    media_id=media.id,
                    artifacts=tuple((disk, tuple(paths)) for disk, paths in grouped.items()),
                )
            )
        return ReplacementSnapshot(tuple(items))
