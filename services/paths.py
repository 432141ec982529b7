"""Tenant-first storage keys.

Every key written by an upload and every key served back to a client goes through
``TenantPathResolver.sanitize`` so the two sides cannot drift apart.
"""
import re
import uuid as uuid_lib
from urllib.parse import unquote

import structlog

from errors import PathSafetyError

logger = structlog.get_logger(__name__)

TENANT_MARKER = "tenants"
CONVERSIONS_DIR = "conversions"
RESPONSIVE_DIR = "responsive-images"

_DIGITS = re.compile(r"^\d+$")


class TenantPathResolver:
    def sanitize(self, raw_path: str) -> str:
        if not raw_path:
            raise self._reject("", "empty")
        if "\x00" in raw_path:
            raise self._reject(raw_path, "null_byte")

        segments = []
        for segment in raw_path.replace("\\", "/").split("/"):
            if segment in ("", "."):
                continue
            if segment == ".." or unquote(segment) in ("..", "."):
                raise self._reject(raw_path, "traversal")
            segments.append(segment)

        if not segments:
            raise self._reject(raw_path, "empty")
        if segments[0] != TENANT_MARKER:
            raise self._reject(raw_path, "not_tenant_scoped")
        if len(segments) < 2:
            raise self._reject(raw_path, "missing_tenant")
        return "/".join(segments)

    def is_tenant_path(self, raw_path: str) -> bool:
        try:
            self.sanitize(raw_path)
        except PathSafetyError:
            return False
        return True

    def tenant_of(self, raw_path: str) -> str:
        return self.sanitize(raw_path).split("/")[1]

    def legacy_media_id(self, raw_path: str) -> int | None:
        """Media id encoded as ``.../media/{id}/...`` in older tenant-first keys.

        Anything else is ambiguous and yields ``None``.
        """
        try:
            segments = self.sanitize(raw_path).split("/")
        except PathSafetyError:
            return None
        for index, segment in enumerate(segments[:-1]):
            if segment == "media" and _DIGITS.match(segments[index + 1]):
                return int(segments[index + 1])
        return None

    def _reject(self, raw_path: str, reason: str) -> PathSafetyError:
        logger.warning("security_path_rejected", reason=reason, path=raw_path[:200])
        return PathSafetyError(raw_path, reason)


class TenantPathLayout:
    """Builds storage keys for each upload profile."""

    def __init__(self, resolver: TenantPathResolver | None = None):
        self.resolver = resolver or TenantPathResolver()

    def avatar_path(
        self, tenant_id, owner_id, extension: str, version: int, unique: str | None = None
    ) -> str:
        unique = unique or str(uuid_lib.uuid4())
        return self.resolver.sanitize(
            f"{TENANT_MARKER}/{tenant_id}/users/{owner_id}/avatars/{unique}/v{version}.{extension}"
        )

    def gallery_path(self, tenant_id, owner_id, extension: str, unique: str | None = None) -> str:
        unique = unique or str(uuid_lib.uuid4())
        return self.resolver.sanitize(
            f"{TENANT_MARKER}/{tenant_id}/users/{owner_id}/gallery/{unique}/{unique}.{extension}"
        )

    @staticmethod
    def base_directory(path: str) -> str:
        directory, _, _ = path.rpartition("/")
        return directory

    def conversions_directory(self, path: str) -> str:
        return f"{self.base_directory(path)}/{CONVERSIONS_DIR}"

    def responsive_directory(self, path: str) -> str:
        return f"{self.base_directory(path)}/{RESPONSIVE_DIR}"
