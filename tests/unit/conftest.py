import io
import os
from datetime import datetime, timedelta, timezone

import pytest
from PIL import Image
from PIL.PngImagePlugin import PngInfo
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from cache import MemoryCounterStore
from config import ImageLimits, ScanSettings, StorageSettings
from database import Base, TransactionManager
from models import Tenant, User
from services.artifacts import MediaArtifactCollector
from services.cleanup_executor import ArtifactCleanupExecutor
from services.cleanup_scheduler import MediaCleanupScheduler
from services.conversions import ConversionService
from services.owners import UserRepository
from services.paths import TenantPathLayout, TenantPathResolver
from services.quarantine import QuarantineStore
from services.replacement import MediaAttacher, MediaReplacementService
from services.scanners import PayloadHeuristicScanner
from services.scanning import ScanCircuitBreaker, ScanCoordinator
from services.storage import DiskRegistry, LocalDisk
from services.uploads import MediaUploadService
from services.validation import StructuralValidator


class FrozenClock:
    def __init__(self, now: datetime | None = None):
        self.current = now or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingDispatcher:
    def __init__(self):
        self.sent = []

    def dispatch(self, job, delay=None) -> None:
        self.sent.append((job, delay))

    def jobs(self, kind=None) -> list:
        return [job for job, _ in self.sent if kind is None or isinstance(job, kind)]


def noise_jpeg(width: int = 256, height: int = 256) -> bytes:
    # random pixels keep the compression ratio far from the bomb limit
    image = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buf = io.BytesIO()
    image.save(buf, "JPEG", quality=90)
    return buf.getvalue()


def noise_png(width: int = 256, height: int = 256, text: str | None = None) -> bytes:
    image = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    info = None
    if text is not None:
        info = PngInfo()
        info.add_text("Comment", text)
    buf = io.BytesIO()
    image.save(buf, "PNG", pnginfo=info)
    return buf.getvalue()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'media.db'}", future=True)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def tx(session_factory):
    return TransactionManager(session_factory)


@pytest.fixture
def user(session_factory):
    with session_factory() as session:
        tenant = Tenant(name="Acme")
        session.add(tenant)
        session.flush()
        user = User(tenant_id=tenant.id, name="Ada", avatar_version=0)
        session.add(user)
        session.commit()
        return user


@pytest.fixture
def public_root(tmp_path):
    return tmp_path / "public"


@pytest.fixture
def disks(public_root):
    return DiskRegistry({"public": LocalDisk("public", public_root)})


@pytest.fixture
def resolver():
    return TenantPathResolver()


@pytest.fixture
def layout(resolver):
    return TenantPathLayout(resolver)


@pytest.fixture
def quarantine(tmp_path, clock):
    return QuarantineStore(tmp_path / "quarantine", max_bytes=5 * 1024 * 1024, clock=clock)


@pytest.fixture
def counters(clock):
    return MemoryCounterStore(clock)


@pytest.fixture
def breaker(counters, clock):
    return ScanCircuitBreaker(counters, max_failures=5, decay_seconds=900, clock=clock)


@pytest.fixture
def scan_settings():
    # a short heuristic window keeps random pixel data from matching by chance
    return ScanSettings(enabled=False, retry_attempts=1, heuristic_bytes=2048)


@pytest.fixture
def coordinator(breaker, scan_settings):
    return ScanCoordinator(
        StructuralValidator(ImageLimits()),
        PayloadHeuristicScanner(scan_settings.suspicious_patterns, scan_settings.heuristic_bytes),
        [],
        breaker,
        scan_settings,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def scheduler(tx, dispatcher, clock):
    return MediaCleanupScheduler(tx, dispatcher, clock=clock)


@pytest.fixture
def executor(disks, resolver):
    return ArtifactCleanupExecutor(disks, resolver)


@pytest.fixture
def conversions(tx, disks, layout, scheduler):
    return ConversionService(tx, disks, layout, scheduler)


@pytest.fixture
def uploads(tx, quarantine, coordinator, disks, layout, scheduler, dispatcher, clock):
    owners = UserRepository(tx)
    storage = StorageSettings(local_disks={"public": "unused"})
    replacement = MediaReplacementService(
        tx,
        MediaArtifactCollector(layout, disks),
        MediaAttacher(disks, layout, owners, storage, clock),
        scheduler,
        clock,
    )
    return MediaUploadService(tx, quarantine, coordinator, owners, replacement, disks, dispatcher)
