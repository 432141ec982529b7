from types import SimpleNamespace

import pytest

from models import Media
from services.jobs import CleanupMediaArtifactsJob, PerformConversionsJob
from tasks import maintenance
from tasks import media as media_tasks
from tasks.dispatch import CeleryJobDispatcher


class FakeApp:
    def __init__(self):
        self.sent = []

    def send_task(self, name, kwargs=None, **options):
        self.sent.append((name, kwargs, options))


def test_dispatcher_sends_by_task_name_with_countdown(counters):
    app = FakeApp()
    CeleryJobDispatcher(counters, app=app).dispatch(PerformConversionsJob(7), delay=30)
    assert app.sent == [("tasks.media.perform_conversions", {"media_id": 7}, {"countdown": 30})]


def test_dispatcher_sends_unique_jobs_once_per_window(counters, clock):
    app = FakeApp()
    dispatcher = CeleryJobDispatcher(counters, unique_ttl=60, app=app)
    job = CleanupMediaArtifactsJob.build({"public": [{"dir": "tenants/1/a", "mediaId": 1}]}, ["2"])

    dispatcher.dispatch(job)
    dispatcher.dispatch(CleanupMediaArtifactsJob.build({"public": [{"dir": "tenants/1/a", "mediaId": "1"}]}, [2]))
    dispatcher.dispatch(job)
    assert len(app.sent) == 1

    clock.advance(seconds=61)
    dispatcher.dispatch(job)
    assert len(app.sent) == 2


@pytest.fixture
def container(tx, executor, scheduler, quarantine, monkeypatch):
    services = SimpleNamespace(tx=tx, executor=executor, scheduler=scheduler, quarantine=quarantine)
    monkeypatch.setattr(media_tasks, "get_container", lambda: services)
    monkeypatch.setattr(maintenance, "get_container", lambda: services)
    return services


def test_cleanup_task_prunes_superseded_rows(container, session_factory, public_root, user, clock):
    with session_factory() as session:
        old = Media(
            uuid="old", tenant_id=user.tenant_id, model_type="user", model_id=user.id,
            collection_name="avatar", disk="public", conversions_disk="public",
            directory="tenants/1/users/1/avatars/old", file_name="v1.jpg", mime_type="image/jpeg",
            size=1, generated_conversions={}, created_at=clock.now(), superseded_at=clock.now(),
        )
        session.add(old)
        session.commit()
        old_id = old.id
    (public_root / "tenants/1/users/1/avatars/old").mkdir(parents=True)

    stats = media_tasks.cleanup_media_artifacts(
        artifacts={"public": [{"dir": "tenants/1/users/1/avatars/old", "mediaId": str(old_id)}]},
        preserve=["99"],
    )

    assert stats["deleted"] == 1
    with session_factory() as session:
        assert session.get(Media, old_id) is None


def test_maintenance_tasks_delegate(container, quarantine, clock):
    quarantine.put(b"stale")
    clock.advance(hours=25)

    assert maintenance.prune_quarantine() == 1
    assert maintenance.cleanup_quarantine_sidecars() == 0
    assert maintenance.purge_expired_cleanup_states() == 0
