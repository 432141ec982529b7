import io

import pytest
from sqlalchemy import select

from errors import CircuitOpenError, OwnerNotFound, ScanRejection, ValidationError
from models import Media, MediaCleanupState, User
from services.jobs import CleanupMediaArtifactsJob, PerformConversionsJob, ProcessUploadJob
from services.quarantine import QuarantineState

from conftest import noise_jpeg, noise_png


def _upload(uploads, user, data=None, name="me.jpg", mime="image/jpeg", profile="avatar"):
    return uploads.upload(io.BytesIO(data or noise_jpeg()), user.id, profile, name, mime)


def _convert_all(conversions, dispatcher):
    for job in dispatcher.jobs(PerformConversionsJob):
        conversions.perform(job.media_id)


def test_avatar_upload_is_stored_and_queues_conversions(uploads, user, dispatcher, public_root, quarantine):
    result = _upload(uploads, user)

    assert result.status == "stored"
    media = result.media
    assert media.path.startswith(f"tenants/{user.tenant_id}/users/{user.id}/avatars/")
    assert media.file_name == "v1.jpg"
    assert (public_root / media.path).is_file()
    assert dispatcher.jobs(PerformConversionsJob) == [PerformConversionsJob(media.id)]
    assert list(quarantine.root.rglob("*.bin")) == []


def test_replacement_cleans_previous_avatar_after_conversions(
    uploads, conversions, executor, user, dispatcher, public_root, session_factory
):
    first = _upload(uploads, user).media
    _convert_all(conversions, dispatcher)
    dispatcher.sent.clear()

    second = _upload(uploads, user).media
    assert second.file_name == "v2.jpg"

    with session_factory() as session:
        old = session.get(Media, first.id)
        assert old.superseded_at is not None
        assert session.get(MediaCleanupState, str(second.id)) is not None
    assert dispatcher.jobs(CleanupMediaArtifactsJob) == []

    _convert_all(conversions, dispatcher)
    jobs = dispatcher.jobs(CleanupMediaArtifactsJob)
    assert len(jobs) == 1
    assert str(second.id) in jobs[0].preserve

    stats = executor.run(jobs[0].artifacts_by_disk(), jobs[0].preserve)
    assert stats.deleted >= 1
    assert not (public_root / first.path).exists()
    assert (public_root / second.path).exists()
    assert (public_root / conversions.conversion_key(second, "thumb")).exists()


def test_rapid_double_replacement_releases_the_skipped_media(
    uploads, conversions, user, dispatcher, session_factory
):
    first = _upload(uploads, user).media
    second = _upload(uploads, user).media
    third = _upload(uploads, user).media

    # the second avatar was replaced before its conversions ran
    assert conversions.perform(second.id) == []

    with session_factory() as session:
        assert session.get(MediaCleanupState, str(second.id)) is None
        assert session.get(MediaCleanupState, str(third.id)).payload["origins"] == [str(second.id)]
    jobs = dispatcher.jobs(CleanupMediaArtifactsJob)
    assert len(jobs) == 1
    assert {e["mediaId"] for e in jobs[0].artifacts["public"]} == {str(first.id)}


def test_gallery_uploads_do_not_replace(uploads, user, session_factory):
    _upload(uploads, user, profile="gallery")
    _upload(uploads, user, profile="gallery")

    with session_factory() as session:
        rows = session.scalars(select(Media).where(Media.collection_name == "gallery")).all()
        assert len(rows) == 2
        assert all(row.superseded_at is None for row in rows)


def test_heuristic_rejection_deletes_staged_file(uploads, user, quarantine, public_root):
    payload = noise_png(text="<?php echo 'x'; ?>")
    with pytest.raises(ScanRejection):
        _upload(uploads, user, data=payload, name="me.png", mime="image/png")

    assert list(quarantine.root.rglob("*.bin")) == []
    assert not public_root.exists() or list(public_root.rglob("*.png")) == []


def test_invalid_upload_is_rejected(uploads, user, quarantine):
    with pytest.raises(ValidationError) as exc:
        _upload(uploads, user, data=noise_png()[:200], name="me.png", mime="image/png")
    assert exc.value.reason == "undecodable"
    assert list(quarantine.root.rglob("*.bin")) == []


def test_open_circuit_rejects_inline_upload(uploads, user, breaker, quarantine):
    for _ in range(5):
        breaker.record_failure("heuristic", "timeout")

    with pytest.raises(CircuitOpenError):
        _upload(uploads, user)
    assert list(quarantine.root.rglob("*.bin")) == []


def test_queued_mode_defers_processing(uploads, user, dispatcher, quarantine):
    uploads.queue_processing = True
    result = _upload(uploads, user)

    assert result.status == "queued"
    job = dispatcher.jobs(ProcessUploadJob)[0]
    token = quarantine.token_for(job.identifier)
    assert quarantine.get_state(token) == QuarantineState.PENDING

    media = uploads.process(token, job.owner_id, job.profile, job.original_name, job.declared_mime)
    assert media.collection_name == "avatar"


def test_unknown_owner_is_rejected_before_staging(uploads, quarantine):
    class Ghost:
        id = 9999

    with pytest.raises(OwnerNotFound):
        _upload(uploads, Ghost())
    assert list(quarantine.root.rglob("*.bin")) == []


def test_failed_commit_discards_written_objects(uploads, user, public_root, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("flag failed")

    monkeypatch.setattr(uploads.replacement.scheduler, "flag_pending_conversions", boom)
    with pytest.raises(RuntimeError):
        _upload(uploads, user)

    assert not public_root.exists() or list(public_root.rglob("*.jpg")) == []


def test_remove_clears_slot_and_schedules_cleanup(uploads, user, dispatcher, session_factory):
    media = _upload(uploads, user).media

    removed = uploads.remove(user.id, "avatar")

    assert removed == [media.id]
    with session_factory() as session:
        assert session.get(Media, media.id).superseded_at is not None
        assert session.get(User, user.id).avatar_version == 1
    job = dispatcher.jobs(CleanupMediaArtifactsJob)[0]
    assert {e["mediaId"] for e in job.artifacts["public"]} == {str(media.id)}


class BrokerDownDispatcher:
    def dispatch(self, job, delay=None) -> None:
        raise ConnectionError("broker unreachable")


def test_dispatch_failure_after_commit_keeps_stored_file(uploads, user, public_root, session_factory):
    uploads.dispatcher = BrokerDownDispatcher()

    result = _upload(uploads, user)

    assert result.status == "stored"
    with session_factory() as session:
        rows = session.scalars(select(Media)).all()
    assert [row.id for row in rows] == [result.media.id]
    assert (public_root / rows[0].path).is_file()
