"""Isolated staging area for uploads that have not been scanned yet.

Each staged file lives at ``{root}/{h[0:2]}/{h[2:4]}/{h}.bin`` where ``h`` is a random
64-hex identifier. Two sidecars sit next to it: ``{h}.sha256`` (content digest) and
``{h}.meta.json`` (state machine record).
"""
import hashlib
import json
import os
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from io import BytesIO
from pathlib import Path
from typing import BinaryIO

import structlog

from errors import QuarantineIntegrityError, QuarantineStateError, ValidationError
from helpers import Clock, SystemClock

logger = structlog.get_logger(__name__)

CHUNK_SIZE = 1024 * 1024
MAX_PATH_ATTEMPTS = 5
MAX_METADATA_DEPTH = 10
PROMOTED_DIR = "promoted"
STALE_LOCK_SECONDS = 3600

_IDENTIFIER = re.compile(r"^[0-9a-f]{64}$")
_SIDECAR_SUFFIXES = (".sha256", ".meta.json", ".lock")


class QuarantineState(str, Enum):
    PENDING = "pending"
    SCANNING = "scanning"
    CLEAN = "clean"
    INFECTED = "infected"
    FAILED = "failed"
    PROMOTED = "promoted"


ALLOWED_TRANSITIONS: dict[QuarantineState, set[QuarantineState]] = {
    QuarantineState.PENDING: {QuarantineState.SCANNING, QuarantineState.FAILED},
    QuarantineState.SCANNING: {
        QuarantineState.CLEAN,
        QuarantineState.INFECTED,
        QuarantineState.FAILED,
        QuarantineState.PENDING,
    },
    QuarantineState.CLEAN: {QuarantineState.PROMOTED, QuarantineState.FAILED},
    QuarantineState.INFECTED: set(),
    QuarantineState.FAILED: set(),
    QuarantineState.PROMOTED: set(),
}


def can_transition(current: QuarantineState, target: QuarantineState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


@dataclass(frozen=True)
class QuarantineToken:
    path: Path
    identifier: str
    correlation_id: str | None = None
    profile: str | None = None


@dataclass(frozen=True)
class QuarantineRecord:
    token: QuarantineToken
    physical_location: Path
    correlation_id: str | None
    declared_profile: str | None
    state: QuarantineState
    created_at: datetime


class PromotedFile:
    """A file moved out of staging; the caller owns it until ``release()``."""

    def __init__(self, path: Path, sha256: str, size: int, correlation_id: str | None = None):
        self.path = path
        self.sha256 = sha256
        self.size = size
        self.correlation_id = correlation_id
        self.released = False

    def open(self) -> BinaryIO:
        return self.path.open("rb")

    def release(self) -> None:
        if self.released:
            return
        self.path.unlink(missing_ok=True)
        self.released = True

    def __enter__(self) -> "PromotedFile":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class QuarantineStore:
    def __init__(
        self,
        root: str | Path,
        max_bytes: int,
        clock: Clock | None = None,
        pending_ttl_hours: int = 24,
        failed_ttl_hours: int = 4,
    ):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes
        self.clock = clock or SystemClock()
        self.pending_ttl_hours = pending_ttl_hours
        self.failed_ttl_hours = failed_ttl_hours

    # -- staging ---------------------------------------------------------

    def put(self, data: bytes, **kwargs) -> QuarantineToken:
        return self.put_stream(BytesIO(data), **kwargs)

    def put_stream(
        self,
        stream: BinaryIO,
        *,
        correlation_id: str | None = None,
        profile: str | None = None,
        metadata: dict | None = None,
    ) -> QuarantineToken:
        self._check_metadata_depth(metadata or {})
        identifier, path, lock = self._reserve_path()
        digest = hashlib.sha256()
        written = 0
        try:
            with path.open("xb") as handle:
                while chunk := stream.read(CHUNK_SIZE):
                    written += len(chunk)
                    if written > self.max_bytes:
                        raise ValidationError(
                            f"upload exceeds {self.max_bytes} bytes", code="upload_too_large"
                        )
                    digest.update(chunk)
                    handle.write(chunk)
                handle.flush()
                os.fsync(handle.fileno())

            if not path.is_file() or path.stat().st_size != written:
                raise QuarantineIntegrityError(
                    "quarantine write could not be verified", reason="write_failed"
                )

            now = self.clock.now().isoformat()
            self._sidecar(path, ".sha256").write_text(digest.hexdigest())
            self._write_meta(
                path,
                {
                    "state": QuarantineState.PENDING.value,
                    "created_at": now,
                    "updated_at": now,
                    "correlation_id": correlation_id,
                    "profile": profile,
                    "size": written,
                    "pending_ttl_hours": self.pending_ttl_hours,
                    "failed_ttl_hours": self.failed_ttl_hours,
                    "metadata": metadata or {},
                },
            )
        except Exception:
            self._discard(path)
            raise
        finally:
            lock.unlink(missing_ok=True)

        logger.info(
            "quarantine_put",
            identifier=identifier[:12],
            correlation_id=correlation_id,
            profile=profile,
            size=written,
        )
        return QuarantineToken(path, identifier, correlation_id, profile)

    def token_for(self, identifier: str) -> QuarantineToken:
        """Rebuild a token from its identifier, e.g. inside a background job."""
        if not _IDENTIFIER.match(identifier or ""):
            raise QuarantineIntegrityError("malformed quarantine identifier", reason="invalid_token")
        path = self._path_for(identifier)
        meta = self._read_meta(path) or {}
        return QuarantineToken(path, identifier, meta.get("correlation_id"), meta.get("profile"))

    # -- state machine ---------------------------------------------------

    def get_record(self, token: QuarantineToken) -> QuarantineRecord:
        path = self._resolve(token)
        meta = self._read_meta(path)
        if meta is None:
            raise QuarantineIntegrityError("quarantine record missing", reason="missing")
        return QuarantineRecord(
            token=token,
            physical_location=path,
            correlation_id=meta.get("correlation_id"),
            declared_profile=meta.get("profile"),
            state=QuarantineState(meta["state"]),
            created_at=datetime.fromisoformat(meta["created_at"]),
        )

    def get_state(self, token: QuarantineToken) -> QuarantineState:
        return self.get_record(token).state

    def transition(
        self, token: QuarantineToken, from_state: QuarantineState, to_state: QuarantineState
    ) -> None:
        path = self._resolve(token)
        meta = self._read_meta(path)
        if meta is None:
            raise QuarantineIntegrityError("quarantine record missing", reason="missing")

        current = QuarantineState(meta["state"])
        if current != from_state:
            raise QuarantineStateError(
                f"expected state {from_state.value}, record is {current.value}"
            )
        if not can_transition(current, to_state):
            raise QuarantineStateError(f"illegal transition {current.value} -> {to_state.value}")

        meta["state"] = to_state.value
        meta["updated_at"] = self.clock.now().isoformat()
        self._write_meta(path, meta)
        logger.info(
            "quarantine_transition",
            identifier=token.identifier[:12],
            correlation_id=meta.get("correlation_id"),
            from_state=current.value,
            to_state=to_state.value,
        )

    # -- removal and promotion -------------------------------------------

    def delete(self, token: QuarantineToken) -> None:
        path = self._resolve(token)
        self._discard(path)
        logger.info("quarantine_deleted", identifier=token.identifier[:12])

    def promote(self, token: QuarantineToken, metadata: dict | None = None) -> PromotedFile:
        path = self._resolve(token)
        if not path.is_file():
            raise QuarantineIntegrityError("quarantined file missing", reason="missing")

        record = self.get_record(token)
        if record.state != QuarantineState.CLEAN:
            raise QuarantineStateError(f"cannot promote from {record.state.value}")

        expected = self._sidecar(path, ".sha256").read_text().strip()
        actual = _hash_file(path)
        if not secrets.compare_digest(expected, actual):
            logger.warning(
                "quarantine_hash_mismatch",
                identifier=token.identifier[:12],
                correlation_id=record.correlation_id,
            )
            raise QuarantineIntegrityError("quarantined file changed after staging", reason="hash_mismatch")

        destination_dir = self.root / PROMOTED_DIR
        destination_dir.mkdir(parents=True, exist_ok=True)
        destination = destination_dir / f"{token.identifier}.bin"
        if destination.exists():
            raise QuarantineIntegrityError("promotion target already exists", reason="destination_exists")

        self.transition(token, QuarantineState.CLEAN, QuarantineState.PROMOTED)
        staging = destination.with_suffix(".tmp")
        os.replace(path, staging)
        os.replace(staging, destination)
        self._remove_sidecars(path)
        self._cleanup_empty_directories(path.parent)

        logger.info(
            "quarantine_promoted",
            identifier=token.identifier[:12],
            correlation_id=record.correlation_id,
            extra_metadata=sorted((metadata or {}).keys()),
        )
        return PromotedFile(destination, actual, destination.stat().st_size, record.correlation_id)

    # -- maintenance -----------------------------------------------------

    def prune_stale(self, max_age_hours: int | None = None) -> int:
        now = self.clock.now()
        pending_ttl = timedelta(hours=max_age_hours or self.pending_ttl_hours)
        failed_ttl = min(timedelta(hours=self.failed_ttl_hours), pending_ttl)
        removed = 0

        for path in sorted(self.root.rglob("*.bin")):
            try:
                meta = self._read_meta(path)
                if meta is not None:
                    state = QuarantineState(meta["state"])
                    created_at = datetime.fromisoformat(meta["created_at"])
                else:
                    state = None
                    created_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)

                ttl = failed_ttl if state in (QuarantineState.FAILED, QuarantineState.INFECTED) else pending_ttl
                if now - created_at < ttl:
                    continue

                self._discard(path)
                removed += 1
                logger.info(
                    "quarantine_pruned",
                    identifier=path.stem[:12],
                    state=state.value if state else None,
                )
            except (OSError, ValueError, KeyError) as exc:
                logger.warning("quarantine_prune_failed", file=path.name, error=str(exc))

        return removed

    def cleanup_orphan_sidecars(self) -> int:
        removed = 0
        now = self.clock.now()
        for path in sorted(self.root.rglob("*")):
            suffix = next((s for s in _SIDECAR_SUFFIXES if path.name.endswith(s)), None)
            if suffix is None or not path.is_file():
                continue
            original = path.with_name(path.name[: -len(suffix)] + ".bin")
            if original.exists():
                continue
            if suffix == ".lock":
                age = now - datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
                if age.total_seconds() < STALE_LOCK_SECONDS:
                    continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed += 1
            self._cleanup_empty_directories(path.parent)

        if removed:
            logger.info("quarantine_orphan_sidecars_removed", count=removed)
        return removed

    # -- internals -------------------------------------------------------

    def _path_for(self, identifier: str) -> Path:
        return self.root / identifier[0:2] / identifier[2:4] / f"{identifier}.bin"

    def _reserve_path(self) -> tuple[str, Path, Path]:
        for _ in range(MAX_PATH_ATTEMPTS):
            identifier = secrets.token_hex(32)
            path = self._path_for(identifier)
            path.parent.mkdir(parents=True, exist_ok=True)
            lock = self._sidecar(path, ".lock")
            try:
                lock.touch(mode=0o600, exist_ok=False)
            except FileExistsError:
                continue
            except FileNotFoundError:
                # bucket pruned between mkdir and touch
                continue
            if path.exists():
                lock.unlink(missing_ok=True)
                continue
            return identifier, path, lock

        raise QuarantineIntegrityError(
            "unable to allocate a unique quarantine path", reason="path_exhausted"
        )

    def _resolve(self, token: QuarantineToken) -> Path:
        path = Path(token.path).resolve()
        if self.root not in path.parents:
            logger.warning(
                "security_quarantine_escape",
                identifier=(token.identifier or "")[:12],
                correlation_id=token.correlation_id,
            )
            raise QuarantineIntegrityError("path resolves outside quarantine", reason="outside_root")
        return path

    @staticmethod
    def _sidecar(path: Path, suffix: str) -> Path:
        return path.with_name(path.stem + suffix)

    def _read_meta(self, path: Path) -> dict | None:
        meta_path = self._sidecar(path, ".meta.json")
        try:
            return json.loads(meta_path.read_text())
        except FileNotFoundError:
            return None

    def _write_meta(self, path: Path, meta: dict) -> None:
        meta_path = self._sidecar(path, ".meta.json")
        tmp = meta_path.with_name(meta_path.name + ".tmp")
        tmp.write_text(json.dumps(meta, sort_keys=True))
        os.replace(tmp, meta_path)

    def _remove_sidecars(self, path: Path) -> None:
        for suffix in (".sha256", ".meta.json"):
            self._sidecar(path, suffix).unlink(missing_ok=True)

    def _discard(self, path: Path) -> None:
        path.unlink(missing_ok=True)
        self._remove_sidecars(path)
        self._cleanup_empty_directories(path.parent)

    def _cleanup_empty_directories(self, directory: Path) -> None:
        current = directory.resolve()
        while current != self.root and self.root in current.parents:
            try:
                current.rmdir()
            except OSError:
                return
            current = current.parent

    @staticmethod
    def _check_metadata_depth(value, depth: int = 0) -> None:
        if depth > MAX_METADATA_DEPTH:
            raise ValidationError("metadata nested too deeply", code="metadata_too_deep")
        if isinstance(value, dict):
            for item in value.values():
                QuarantineStore._check_metadata_depth(item, depth + 1)
        elif isinstance(value, (list, tuple)):
            for item in value:
                QuarantineStore._check_metadata_depth(item, depth + 1)


def _hash_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        while chunk := handle.read(CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()
