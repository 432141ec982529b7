import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from config import CleanupSettings, ImageLimits, QuarantineSettings, Settings, StorageSettings
from container import Container
from database import get_async_db
from dependencies import get_services
from main import app

from conftest import noise_jpeg


@pytest.fixture
def services(tx, disks, resolver, quarantine, breaker, coordinator, scheduler, executor, conversions, uploads, scan_settings):
    settings = Settings(
        quarantine=QuarantineSettings(),
        scan=scan_settings,
        images=ImageLimits(),
        cleanup=CleanupSettings(),
        storage=StorageSettings(),
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
        executor=executor,
        conversions=conversions,
        uploads=uploads,
    )


@pytest_asyncio.fixture
async def client(engine, services):
    async_engine = create_async_engine(f"sqlite+aiosqlite:///{engine.url.database}")
    sessions = async_sessionmaker(bind=async_engine, expire_on_commit=False)

    async def override_db():
        async with sessions() as db:
            yield db

    app.dependency_overrides[get_async_db] = override_db
    app.dependency_overrides[get_services] = lambda: services
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    await async_engine.dispose()


async def _create_user(client) -> dict:
    resp = await client.post("/tenants/", json={"name": "Acme"})
    assert resp.status_code == 201, resp.text
    resp = await client.post("/users/", json={"tenant_id": resp.json()["id"], "name": "Ada"})
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_upload_list_serve_and_remove(client):
    user = await _create_user(client)
    image = noise_jpeg()

    resp = await client.post(
        f"/users/{user['id']}/media/avatar", files={"file": ("me.jpg", image, "image/jpeg")}
    )
    assert resp.status_code == 201, resp.text
    media = resp.json()
    assert media["path"].startswith(f"tenants/{user['tenant_id']}/users/{user['id']}/avatars/")

    resp = await client.get(f"/users/{user['id']}/media", params={"collection": "avatar"})
    assert resp.status_code == 200
    assert resp.json()["total"] == 1

    resp = await client.get(f"/files/{media['path']}")
    assert resp.status_code == 200
    assert resp.content == image
    assert resp.headers["content-type"] == "image/jpeg"

    resp = await client.delete(f"/users/{user['id']}/media/avatar")
    assert resp.status_code == 200
    assert resp.json() == {"removed_ids": [media["id"]]}

    resp = await client.get(f"/users/{user['id']}/media")
    assert resp.json()["total"] == 0


@pytest.mark.asyncio
async def test_rejected_upload_returns_stable_error_code(client):
    user = await _create_user(client)
    resp = await client.post(
        f"/users/{user['id']}/media/avatar", files={"file": ("me.svg", b"<svg/>", "image/svg+xml")}
    )
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "upload_invalid"


@pytest.mark.asyncio
async def test_unknown_profile_and_owner(client):
    user = await _create_user(client)
    files = {"file": ("me.jpg", noise_jpeg(), "image/jpeg")}

    resp = await client.post(f"/users/{user['id']}/media/banner", files=files)
    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "unknown_profile"

    resp = await client.post("/users/9999/media/avatar", files=files)
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "owner_not_found"


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["media/1/secret.jpg", "tenants/1/%2e%2e/secret.jpg", "tenants/1/missing.jpg"])
async def test_serving_unsafe_or_missing_paths_is_404(client, path):
    resp = await client.get(f"/files/{path}")
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_health_reports_open_circuits(client, services):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"

    for scanner_id in services.coordinator.guarded_ids():
        for _ in range(services.breaker.max_failures):
            services.breaker.record_failure(scanner_id, "timeout")
    resp = await client.get("/health")
    body = resp.json()
    assert body["status"] == "degraded"
    assert body["scanners"]
    assert all(s["open"] for s in body["scanners"].values())
