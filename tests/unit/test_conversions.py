import io

from PIL import Image

from models import Media
from services.conversions import render_conversion

from conftest import noise_jpeg


def _store_media(session_factory, disks, user, clock, data):
    key = f"tenants/{user.tenant_id}/users/{user.id}/avatars/u1/v1.jpg"
    disks.get("public").put(key, io.BytesIO(data))
    with session_factory() as session:
        media = Media(
            uuid="u1", tenant_id=user.tenant_id, model_type="user", model_id=user.id,
            collection_name="avatar", disk="public", conversions_disk="public",
            directory=key.rsplit("/", 1)[0], file_name="v1.jpg", mime_type="image/jpeg",
            size=len(data), generated_conversions={}, created_at=clock.now(),
        )
        session.add(media)
        session.commit()
        return media


def test_render_conversion_bounds_longest_edge():
    data = render_conversion(noise_jpeg(600, 300), 128)
    with Image.open(io.BytesIO(data)) as image:
        assert image.format == "WEBP"
        assert image.size == (128, 64)


def test_perform_generates_each_conversion_once(conversions, session_factory, disks, user, clock):
    media = _store_media(session_factory, disks, user, clock, noise_jpeg(300, 300))

    assert conversions.perform(media.id) == ["thumb", "medium", "large"]
    assert conversions.perform(media.id) == []

    with session_factory() as session:
        stored = session.get(Media, media.id)
        assert stored.generated_conversions == {"thumb": True, "medium": True, "large": True}
    assert disks.get("public").exists(conversions.conversion_key(stored, "medium"))


def test_perform_on_missing_media_is_a_noop(conversions):
    assert conversions.perform(12345) == []
