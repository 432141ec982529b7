"""Builds the service graph shared by the API and the workers."""
from dataclasses import dataclass
from functools import lru_cache

from cache import RedisCounterStore
from config import ScanSettings, Settings, get_settings
from database import TransactionManager
from services.artifacts import MediaArtifactCollector
from services.cleanup_executor import ArtifactCleanupExecutor
from services.cleanup_scheduler import MediaCleanupScheduler
from services.conversions import ConversionService
from services.owners import UserRepository
from services.paths import TenantPathLayout, TenantPathResolver
from services.quarantine import QuarantineStore
from services.replacement import MediaAttacher, MediaReplacementService
from services.scanners import ClamAvScanner, PayloadHeuristicScanner, YaraScanner
from services.scanning import ScanCircuitBreaker, ScanCoordinator
from services.storage import DiskRegistry
from services.uploads import MediaUploadService
from services.validation import StructuralValidator
from tasks.dispatch import CeleryJobDispatcher


def build_engines(settings: ScanSettings) -> list:
    engines = []
    for handler in settings.handlers:
        if handler == "clamav":
            engines.append(
                ClamAvScanner(
                    settings.clamav_binary,
                    arguments=settings.clamav_arguments,
                    timeout=settings.clamav_timeout,
                    allowlist=settings.bin_allowlist,
                )
            )
        elif handler == "yara":
            engines.append(
                YaraScanner(
                    settings.yara_binary,
                    settings.yara_rules_path,
                    rules_base=settings.yara_rules_base or None,
                    expected_hash=settings.yara_expected_hash,
                    hash_file=settings.yara_hash_file or None,
                    arguments=settings.yara_arguments,
                    timeout=settings.yara_timeout,
                    allowlist=settings.bin_allowlist,
                )
            )
        else:
            raise ValueError(f"unknown scan handler '{handler}'")
    return engines


@dataclass
class Container:
    settings: Settings
    tx: TransactionManager
    disks: DiskRegistry
    resolver: TenantPathResolver
    quarantine: QuarantineStore
    breaker: ScanCircuitBreaker
    coordinator: ScanCoordinator
    scheduler: MediaCleanupScheduler
    executor: ArtifactCleanupExecutor
    conversions: ConversionService
    uploads: MediaUploadService


def build_container(settings: Settings, tx: TransactionManager, store, dispatcher) -> Container:
    resolver = TenantPathResolver()
    layout = TenantPathLayout(resolver)
    disks = DiskRegistry.from_settings(settings.storage)

    quarantine = QuarantineStore(
        settings.quarantine.root,
        settings.quarantine.max_bytes,
        pending_ttl_hours=settings.quarantine.pending_ttl_hours,
        failed_ttl_hours=settings.quarantine.failed_ttl_hours,
    )
    breaker = ScanCircuitBreaker(
        store,
        key=settings.scan.circuit_cache_key,
        max_failures=settings.scan.circuit_max_failures,
        decay_seconds=settings.scan.circuit_decay_seconds,
    )
    coordinator = ScanCoordinator(
        StructuralValidator(settings.images),
        PayloadHeuristicScanner(settings.scan.suspicious_patterns, settings.scan.heuristic_bytes),
        build_engines(settings.scan) if settings.scan.enabled else [],
        breaker,
        settings.scan,
    )
    scheduler = MediaCleanupScheduler(
        tx,
        dispatcher,
        pending_grace_minutes=settings.cleanup.pending_grace_minutes,
        state_ttl_hours=settings.cleanup.state_ttl_hours,
        purge_batch_size=settings.cleanup.purge_batch_size,
    )
    owners = UserRepository(tx)
    replacement = MediaReplacementService(
        tx,
        MediaArtifactCollector(layout, disks),
        MediaAttacher(disks, layout, owners, settings.storage),
        scheduler,
    )
    uploads = MediaUploadService(
        tx,
        quarantine,
        coordinator,
        owners,
        replacement,
        disks,
        dispatcher,
        queue_processing=settings.storage.queue_processing,
    )
    return Container(
        settings=settings,
        tx=tx,
        disks=disks,
        resolver=resolver,
        quarantine=quarantine,
        breaker=breaker,
        coordinator=coordinator,
        scheduler=scheduler,
        executor=ArtifactCleanupExecutor(disks, resolver),
        conversions=ConversionService(tx, disks, layout, scheduler),
        uploads=uploads,
    )


@lru_cache
def get_container() -> Container:
    settings = get_settings()
    store = RedisCounterStore()
    return build_container(
        settings,
        TransactionManager(),
        store,
        CeleryJobDispatcher(store, unique_ttl=settings.cleanup.job_unique_seconds),
    )
