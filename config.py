import os
from dataclasses import dataclass, field
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()

DEFAULT_SUSPICIOUS_PATTERNS = (
    r"<\?php",
    r"<\?=",
    r"(eval|assert|system|exec|passthru|shell_exec|proc_open)\s{0,100}\(",
    r"base64_decode\s{0,100}\(",
)

DEFAULT_ALLOWED_MIMES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/avif": "avif",
    "image/gif": "gif",
}

DEFAULT_DISALLOWED = ("svg", "svgz", "zip", "image/svg+xml", "application/zip")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class QuarantineSettings:
    root: str = "storage/quarantine"
    max_bytes: int = 25 * 1024 * 1024
    pending_ttl_hours: int = 24
    failed_ttl_hours: int = 4

    @classmethod
    def from_env(cls) -> "QuarantineSettings":
        return cls(
            root=os.getenv("QUARANTINE_ROOT", cls.root),
            max_bytes=_env_int("QUARANTINE_MAX_BYTES", cls.max_bytes),
            pending_ttl_hours=_env_int("QUARANTINE_PENDING_TTL_HOURS", cls.pending_ttl_hours),
            failed_ttl_hours=_env_int("QUARANTINE_FAILED_TTL_HOURS", cls.failed_ttl_hours),
        )


@dataclass(frozen=True)
class ScanSettings:
    enabled: bool = True
    handlers: tuple[str, ...] = ("clamav", "yara")
    clamav_binary: str = "/usr/bin/clamdscan"
    clamav_arguments: tuple[str, ...] = ("--no-summary", "--fdpass")
    clamav_timeout: float = 10.0
    yara_binary: str = "/usr/bin/yara"
    yara_rules_path: str = "storage/yara/rules.yar"
    yara_rules_base: str = "storage/yara"
    yara_expected_hash: str = ""
    yara_hash_file: str = ""
    yara_arguments: tuple[str, ...] = ("--fail-on-warnings", "--nothreads")
    yara_timeout: float = 5.0
    bin_allowlist: tuple[str, ...] = ("/usr/bin/clamdscan", "/usr/bin/yara")
    heuristic_bytes: int = 50 * 1024
    suspicious_patterns: tuple[str, ...] = DEFAULT_SUSPICIOUS_PATTERNS
    circuit_cache_key: str = "image_scan:circuit_failures"
    circuit_max_failures: int = 5
    circuit_decay_seconds: int = 900
    retry_attempts: int = 1
    retry_backoff_ms: int = 200
    retry_jitter_ms: int = 100

    @classmethod
    def from_env(cls) -> "ScanSettings":
        return cls(
            enabled=_env_bool("SCAN_ENABLED", cls.enabled),
            handlers=_env_list("SCAN_HANDLERS", cls.handlers),
            clamav_binary=os.getenv("SCAN_CLAMAV_BINARY", cls.clamav_binary),
            clamav_arguments=_env_list("SCAN_CLAMAV_ARGUMENTS", cls.clamav_arguments),
            clamav_timeout=_env_float("SCAN_CLAMAV_TIMEOUT", cls.clamav_timeout),
            yara_binary=os.getenv("SCAN_YARA_BINARY", cls.yara_binary),
            yara_rules_path=os.getenv("SCAN_YARA_RULES_PATH", cls.yara_rules_path),
            yara_rules_base=os.getenv("SCAN_YARA_RULES_BASE", cls.yara_rules_base),
            yara_expected_hash=os.getenv("SCAN_YARA_EXPECTED_HASH", cls.yara_expected_hash),
            yara_hash_file=os.getenv("SCAN_YARA_HASH_FILE", cls.yara_hash_file),
            yara_arguments=_env_list("SCAN_YARA_ARGUMENTS", cls.yara_arguments),
            yara_timeout=_env_float("SCAN_YARA_TIMEOUT", cls.yara_timeout),
            bin_allowlist=_env_list("SCAN_BIN_ALLOWLIST", cls.bin_allowlist),
            heuristic_bytes=_env_int("SCAN_HEURISTIC_BYTES", cls.heuristic_bytes),
            suspicious_patterns=_env_list("SCAN_SUSPICIOUS_PATTERNS", cls.suspicious_patterns),
            circuit_cache_key=os.getenv("SCAN_CIRCUIT_CACHE_KEY", cls.circuit_cache_key),
            circuit_max_failures=_env_int("SCAN_CIRCUIT_MAX_FAILURES", cls.circuit_max_failures),
            circuit_decay_seconds=max(
                60, _env_int("SCAN_CIRCUIT_DECAY_SECONDS", cls.circuit_decay_seconds)
            ),
            retry_attempts=max(1, _env_int("SCAN_RETRY_ATTEMPTS", cls.retry_attempts)),
            retry_backoff_ms=_env_int("SCAN_RETRY_BACKOFF_MS", cls.retry_backoff_ms),
            retry_jitter_ms=_env_int("SCAN_RETRY_JITTER_MS", cls.retry_jitter_ms),
        )


@dataclass(frozen=True)
class ImageLimits:
    max_bytes: int = 15 * 1024 * 1024
    min_dimension: int = 128
    max_edge: int = 16384
    max_megapixels: float = 48.0
    bomb_ratio: float = 100.0
    allowed_mimes: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ALLOWED_MIMES))
    disallowed: tuple[str, ...] = DEFAULT_DISALLOWED

    @classmethod
    def from_env(cls) -> "ImageLimits":
        return cls(
            max_bytes=_env_int("IMG_MAX_BYTES", cls.max_bytes),
            min_dimension=_env_int("IMG_MIN_DIMENSION", cls.min_dimension),
            max_edge=_env_int("IMG_MAX_EDGE", cls.max_edge),
            max_megapixels=_env_float("IMG_MAX_MEGAPIXELS", cls.max_megapixels),
            bomb_ratio=_env_float("IMG_BOMB_RATIO", cls.bomb_ratio),
        )


@dataclass(frozen=True)
class CleanupSettings:
    state_ttl_hours: int = 48
    purge_batch_size: int = 100
    pending_grace_minutes: int = 30
    job_unique_seconds: int = 3600

    @classmethod
    def from_env(cls) -> "CleanupSettings":
        return cls(
            state_ttl_hours=_env_int("MEDIA_CLEANUP_TTL_HOURS", cls.state_ttl_hours),
            purge_batch_size=_env_int("MEDIA_CLEANUP_PURGE_BATCH", cls.purge_batch_size),
            pending_grace_minutes=_env_int(
                "MEDIA_CLEANUP_PENDING_GRACE_MINUTES", cls.pending_grace_minutes
            ),
            job_unique_seconds=_env_int("MEDIA_CLEANUP_UNIQUE_SECONDS", cls.job_unique_seconds),
        )


@dataclass(frozen=True)
class StorageSettings:
    default_disk: str = "public"
    conversions_disk: str = "public"
    local_disks: dict[str, str] = field(
        default_factory=lambda: {"public": "storage/public"}
    )
    s3_disk: str | None = None
    s3_bucket: str | None = None
    s3_region: str | None = None
    s3_prefix: str = ""
    queue_processing: bool = False

    @classmethod
    def from_env(cls) -> "StorageSettings":
        # MEDIA_LOCAL_DISKS="public=storage/public,private=storage/private"
        local_disks = {}
        for item in _env_list("MEDIA_LOCAL_DISKS", ("public=storage/public",)):
            name, _, root = item.partition("=")
            if name and root:
                local_disks[name.strip()] = root.strip()
        bucket = os.getenv("MEDIA_S3_BUCKET") or None
        return cls(
            default_disk=os.getenv("MEDIA_DISK", cls.default_disk),
            conversions_disk=os.getenv(
                "MEDIA_CONVERSIONS_DISK", os.getenv("MEDIA_DISK", cls.conversions_disk)
            ),
            local_disks=local_disks,
            s3_disk=os.getenv("MEDIA_S3_DISK", "s3") if bucket else None,
            s3_bucket=bucket,
            s3_region=os.getenv("MEDIA_S3_REGION") or None,
            s3_prefix=os.getenv("MEDIA_S3_PREFIX", ""),
            queue_processing=_env_bool("UPLOADS_QUEUE_PROCESSING", cls.queue_processing),
        )


@dataclass(frozen=True)
class Settings:
    quarantine: QuarantineSettings
    scan: ScanSettings
    images: ImageLimits
    cleanup: CleanupSettings
    storage: StorageSettings
    debug: bool = False


@lru_cache
def get_settings() -> Settings:
    return Settings(
        quarantine=QuarantineSettings.from_env(),
        scan=ScanSettings.from_env(),
        images=ImageLimits.from_env(),
        cleanup=CleanupSettings.from_env(),
        storage=StorageSettings.from_env(),
        debug=_env_bool("DEBUG", False),
    )
