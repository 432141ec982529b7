"""Structural checks that run before any scanner sees the bytes."""
from dataclasses import dataclass
from pathlib import Path

import structlog
from PIL import Image, UnidentifiedImageError

from config import ImageLimits
from errors import ValidationError

logger = structlog.get_logger(__name__)

HEADER_BYTES = 512
POLYGLOT_SCAN_BYTES = 64 * 1024

MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg", "image/x-png": "image/png"}
EXTENSION_ALIASES = {"jpeg": "jpg", "jpe": "jpg"}

POLYGLOT_MARKERS = (b"%PDF", b"PK\x03\x04")


@dataclass(frozen=True)
class ScanTarget:
    path: Path
    size: int
    declared_mime: str | None = None
    original_name: str | None = None


@dataclass(frozen=True)
class DetectedImage:
    mime: str
    extension: str
    width: int
    height: int


def detect_mime(header: bytes) -> str | None:
    if header.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if header.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if header[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if header[:4] == b"RIFF" and header[8:12] == b"WEBP":
        return "image/webp"
    if header[4:8] == b"ftyp" and header[8:12] in (b"avif", b"avis"):
        return "image/avif"
    return None


def is_polyglot(sample: bytes) -> bool:
    lowered = sample.lower()
    if b"<?php" not in lowered:
        return False
    return any(marker in sample for marker in POLYGLOT_MARKERS)


def normalize_extension(name: str | None) -> str | None:
    if not name or "." not in name:
        return None
    extension = name.rsplit(".", 1)[1].strip().lower()
    return EXTENSION_ALIASES.get(extension, extension)


class StructuralValidator:
    def __init__(self, limits: ImageLimits):
        self.limits = limits

    def validate(self, target: ScanTarget) -> DetectedImage:
        limits = self.limits
        if target.size <= 0:
            raise self._fail(target, "empty_file")
        if target.size > limits.max_bytes:
            raise self._fail(target, "file_too_large", code="upload_too_large")

        extension = normalize_extension(target.original_name)
        allowed_extensions = set(limits.allowed_mimes.values())
        if extension is None or extension in limits.disallowed or extension not in allowed_extensions:
            raise self._fail(target, "extension_not_allowed")

        declared = (target.declared_mime or "").split(";")[0].strip().lower()
        declared = MIME_ALIASES.get(declared, declared)
        if declared in limits.disallowed or (declared and declared not in limits.allowed_mimes):
            raise self._fail(target, "mime_not_allowed")

        with target.path.open("rb") as handle:
            sample = handle.read(POLYGLOT_SCAN_BYTES)

        detected = detect_mime(sample[:HEADER_BYTES])
        if detected is None or detected not in limits.allowed_mimes:
            raise self._fail(target, "signature_unrecognized")
        if declared and declared != detected:
            raise self._fail(target, "mime_mismatch")
        if limits.allowed_mimes[detected] != extension:
            raise self._fail(target, "extension_mismatch")
        if is_polyglot(sample):
            raise self._fail(target, "polyglot")

        width, height = self._dimensions(target)
        self._check_dimensions(target, width, height)
        return DetectedImage(detected, extension, width, height)

    def _dimensions(self, target: ScanTarget) -> tuple[int, int]:
        try:
            with Image.open(target.path) as image:
                width, height = image.size
                image.verify()
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError) as exc:
            logger.info("upload_decode_failed", error=type(exc).__name__)
            raise self._fail(target, "undecodable") from exc
        return width, height

    def _check_dimensions(self, target: ScanTarget, width: int, height: int) -> None:
        limits = self.limits
        if width <= 0 or height <= 0:
            raise self._fail(target, "undecodable")
        if min(width, height) < limits.min_dimension:
            raise self._fail(target, "dimensions_too_small")
        if max(width, height) > limits.max_edge:
            raise self._fail(target, "dimensions_too_large")
        if limits.max_megapixels > 0 and (width * height) / 1_000_000 > limits.max_megapixels:
            raise self._fail(target, "megapixels_exceeded")

        # 32 bpp RGBA estimate of the decoded buffer
        ratio = (width * height * 4) / target.size
        if ratio > limits.bomb_ratio:
            raise self._fail(target, "decompression_bomb")

    @staticmethod
    def _fail(target: ScanTarget, reason: str, code: str = "upload_invalid") -> ValidationError:
        logger.info("upload_validation_failed", reason=reason, declared_mime=target.declared_mime)
        return ValidationError(
            f"upload failed structural validation: {reason}", code=code, reason=reason
        )
