"""Background job descriptions and the dispatcher interface the services use."""
from dataclasses import dataclass, field
from typing import Protocol

from cache import make_key
from helpers import normalize_names
from services.cleanup_state import ArtifactsByDisk, artifacts_to_dict, group_artifacts

MAX_ARTIFACTS_PER_DISK = 1000


class Job(Protocol):
    task_name: str

    def kwargs(self) -> dict: ...

    def unique_id(self) -> str | None: ...


class JobDispatcher(Protocol):
    def dispatch(self, job: Job, delay: float | None = None) -> None: ...


@dataclass(frozen=True)
class CleanupMediaArtifactsJob:
    artifacts: dict = field(default_factory=dict)
    preserve: tuple[str, ...] = ()

    task_name = "tasks.media.cleanup_media_artifacts"

    def __post_init__(self):
        for disk, entries in self.artifacts.items():
            if len(entries) > MAX_ARTIFACTS_PER_DISK:
                raise ValueError(
                    f"cleanup job for disk '{disk}' exceeds {MAX_ARTIFACTS_PER_DISK} artifacts"
                )

    @classmethod
    def build(cls, artifacts_by_disk: ArtifactsByDisk | dict, preserve=()) -> "CleanupMediaArtifactsJob":
        grouped = group_artifacts(artifacts_by_disk)
        return cls(
            artifacts=artifacts_to_dict(grouped),
            preserve=tuple(sorted(normalize_names(preserve))),
        )

    def artifacts_by_disk(self) -> ArtifactsByDisk:
        return group_artifacts(self.artifacts)

    def kwargs(self) -> dict:
        return {"artifacts": self.artifacts, "preserve": list(self.preserve)}

    def unique_id(self) -> str:
        canonical = {
            disk: sorted(
                f"{entry['dir']}|{entry.get('mediaId') or ''}" for entry in entries
            )
            for disk, entries in self.artifacts.items()
            if entries
        }
        return make_key("cleanup_media_artifacts", {"artifacts": canonical, "preserve": sorted(self.preserve)})


@dataclass(frozen=True)
class PerformConversionsJob:
    media_id: int

    task_name = "tasks.media.perform_conversions"

    def kwargs(self) -> dict:
        return {"media_id": self.media_id}

    def unique_id(self) -> str | None:
        return None


@dataclass(frozen=True)
class ProcessUploadJob:
    identifier: str
    owner_id: int
    profile: str
    original_name: str | None = None
    declared_mime: str | None = None

    task_name = "tasks.media.process_upload"

    def kwargs(self) -> dict:
        return {
            "identifier": self.identifier,
            "owner_id": self.owner_id,
            "profile": self.profile,
            "original_name": self.original_name,
            "declared_mime": self.declared_mime,
        }

    def unique_id(self) -> str | None:
        return None

