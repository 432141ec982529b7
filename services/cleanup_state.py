"""Durable cleanup state: the payload value object and its repository."""
from dataclasses import dataclass, field, replace
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from helpers import ensure_aware, normalize_names
from models import MediaCleanupState


@dataclass(frozen=True)
class CleanupArtifactEntry:
    directory: str
    originating_media_id: str | None = None

    @property
    def dedup_key(self) -> str:
        return f"{self.directory}|{self.originating_media_id or ''}"

    def to_dict(self) -> dict:
        return {"dir": self.directory, "mediaId": self.originating_media_id}

    @classmethod
    def from_value(cls, value) -> "CleanupArtifactEntry | None":
        if isinstance(value, CleanupArtifactEntry):
            return value
        if isinstance(value, str):
            directory, media_id = value, None
        elif isinstance(value, dict):
            directory, media_id = value.get("dir"), value.get("mediaId")
        else:
            return None
        directory = str(directory or "").strip()
        if not directory:
            return None
        media_id = str(media_id).strip() if media_id not in (None, "") else None
        return cls(directory, media_id or None)


ArtifactsByDisk = dict[str, list[CleanupArtifactEntry]]


def group_artifacts(raw: dict | None) -> ArtifactsByDisk:
    """Normalize ``{disk: [entry...]}`` and drop duplicate (dir, mediaId) pairs."""
    grouped: ArtifactsByDisk = {}
    for disk, entries in (raw or {}).items():
        disk_name = str(disk).strip()
        if not disk_name:
            continue
        seen = set()
        for value in entries or ():
            entry = CleanupArtifactEntry.from_value(value)
            if entry is None or entry.dedup_key in seen:
                continue
            seen.add(entry.dedup_key)
            grouped.setdefault(disk_name, []).append(entry)
    return grouped


def merge_artifacts(left: ArtifactsByDisk, right: ArtifactsByDisk) -> ArtifactsByDisk:
    combined = {disk: list(entries) for disk, entries in left.items()}
    for disk, entries in right.items():
        combined.setdefault(disk, []).extend(entries)
    return group_artifacts(combined)


def artifacts_to_dict(artifacts: ArtifactsByDisk) -> dict:
    return {disk: [entry.to_dict() for entry in entries] for disk, entries in artifacts.items()}


@dataclass(frozen=True)
class CleanupStatePayload:
    artifacts_by_disk: ArtifactsByDisk = field(default_factory=dict)
    preserve_media_ids: tuple[str, ...] = ()
    expected_conversions: tuple[str, ...] = ()
    origin_media_ids: tuple[str, ...] = ()
    queued_at: datetime | None = None

    @classmethod
    def create(
        cls,
        trigger_media_id,
        artifacts_by_disk: dict,
        preserve=(),
        conversions=(),
        queued_at: datetime | None = None,
    ) -> "CleanupStatePayload":
        artifacts = group_artifacts(artifacts_by_disk)
        preserve_ids = normalize_names([*preserve, trigger_media_id])
        origins = normalize_names(
            entry.originating_media_id for entries in artifacts.values() for entry in entries
        )
        return cls(
            artifacts_by_disk=artifacts,
            preserve_media_ids=tuple(preserve_ids),
            expected_conversions=tuple(normalize_names(conversions)),
            origin_media_ids=tuple(origin for origin in origins if origin not in preserve_ids),
            queued_at=queued_at,
        )

    @classmethod
    def from_dict(cls, data: dict | None) -> "CleanupStatePayload":
        data = data or {}
        queued_at = data.get("queued_at")
        return cls(
            artifacts_by_disk=group_artifacts(data.get("artifacts")),
            preserve_media_ids=tuple(normalize_names(data.get("preserve"))),
            expected_conversions=tuple(normalize_names(data.get("conversions"))),
            origin_media_ids=tuple(normalize_names(data.get("origins"))),
            queued_at=ensure_aware(datetime.fromisoformat(queued_at)) if queued_at else None,
        )

    def to_dict(self) -> dict:
        return {
            "artifacts": artifacts_to_dict(self.artifacts_by_disk),
            "preserve": list(self.preserve_media_ids),
            "conversions": list(self.expected_conversions),
            "origins": list(self.origin_media_ids),
            "queued_at": self.queued_at.isoformat() if self.queued_at else None,
        }

    def has_artifacts(self) -> bool:
        return any(self.artifacts_by_disk.values())

    def is_complete(self) -> bool:
        return not self.expected_conversions

    def merged_with(self, other: "CleanupStatePayload") -> "CleanupStatePayload":
        preserve = normalize_names([*self.preserve_media_ids, *other.preserve_media_ids])
        origins = normalize_names([*self.origin_media_ids, *other.origin_media_ids])
        return CleanupStatePayload(
            artifacts_by_disk=merge_artifacts(self.artifacts_by_disk, other.artifacts_by_disk),
            preserve_media_ids=tuple(preserve),
            expected_conversions=tuple(
                normalize_names([*self.expected_conversions, *other.expected_conversions])
            ),
            origin_media_ids=tuple(origin for origin in origins if origin not in preserve),
            queued_at=other.queued_at or self.queued_at,
        )

    def with_pending(self, conversions) -> "CleanupStatePayload":
        return replace(self, expected_conversions=tuple(normalize_names(conversions)))


def remove_from_pending_set(payload: CleanupStatePayload, conversion: str) -> CleanupStatePayload:
    """Pure transition applied for every completed conversion."""
    name = str(conversion).strip()
    remaining = [c for c in payload.expected_conversions if c != name]
    return payload.with_pending(remaining)


class CleanupStateRepository:
    def find(self, session: Session, media_id, lock: bool = False) -> MediaCleanupState | None:
        stmt = select(MediaCleanupState).where(MediaCleanupState.media_id == str(media_id))
        if lock:
            stmt = stmt.with_for_update()
        return session.scalars(stmt).one_or_none()

    def get_or_create(self, session: Session, media_id) -> MediaCleanupState:
        state = self.find(session, media_id, lock=True)
        if state is None:
            state = MediaCleanupState(media_id=str(media_id))
            session.add(state)
        return state

    def delete(self, session: Session, state: MediaCleanupState) -> None:
        session.delete(state)
        session.flush()

    def expired_ids(self, session: Session, cutoff: datetime, limit: int, after: str | None = None) -> list[str]:
        stmt = (
            select(MediaCleanupState.media_id)
            .where(
                or_(
                    MediaCleanupState.flagged_at <= cutoff,
                    MediaCleanupState.payload_queued_at <= cutoff,
                )
            )
            .order_by(MediaCleanupState.media_id)
            .limit(limit)
        )
        if after is not None:
            stmt = stmt.where(MediaCleanupState.media_id > after)
        return list(session.scalars(stmt))
