"""Rendition generation for stored images."""
from io import BytesIO

import structlog
from PIL import Image, ImageOps

from database import TransactionManager
from models import Media
from services.artifacts import MediaArtifact
from services.cleanup_scheduler import MediaCleanupScheduler
from services.paths import TenantPathLayout
from services.profiles import get_profile
from services.storage import DiskRegistry

logger = structlog.get_logger(__name__)

CONVERSION_FORMAT = "WEBP"
CONVERSION_EXTENSION = "webp"


def render_conversion(source: bytes, edge: int) -> bytes:
    with Image.open(BytesIO(source)) as image:
        image = ImageOps.exif_transpose(image)
        if image.mode not in ("RGB", "RGBA"):
            image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
        image.thumbnail((edge, edge))
        output = BytesIO()
        image.save(output, CONVERSION_FORMAT, quality=85)
    return output.getvalue()


class ConversionService:
    def __init__(
        self,
        tx: TransactionManager,
        disks: DiskRegistry,
        layout: TenantPathLayout,
        scheduler: MediaCleanupScheduler,
    ):
        self.tx = tx
        self.disks = disks
        self.layout = layout
        self.scheduler = scheduler

    def conversion_key(self, media: Media, name: str) -> str:
        stem = media.file_name.rsplit(".", 1)[0]
        return f"{self.layout.conversions_directory(media.path)}/{stem}-{name}.{CONVERSION_EXTENSION}"

    def perform(self, media_id: int) -> list[str]:
        media = self.tx.transactional(lambda session: session.get(Media, media_id))
        if media is None:
            logger.info("media_conversions_skipped", media_id=media_id, reason="missing")
            self.scheduler.flush_expired(media_id, reason="media_missing")
            return []
        if media.superseded_at is not None:
            # it will never be shown, so whatever waited on it can go now
            logger.info("media_conversions_skipped", media_id=media_id, reason="superseded")
            self.scheduler.flush_expired(media_id, reason="media_superseded")
            return []

        profile = get_profile(media.collection_name)
        artifact = MediaArtifact.from_model(media)
        source = self.disks.get(media.disk).read(media.path)
        generated = []

        for name, edge in profile.conversions.items():
            if media.has_generated(name):
                self.scheduler.handle_conversion_event(artifact, name)
                continue

            data = render_conversion(source, edge)
            self.disks.get(media.conversions_disk).put(
                self.conversion_key(media, name), BytesIO(data), content_type="image/webp"
            )
            media = self.tx.transactional(lambda session: self._mark_generated(session, media_id, name))
            if media is None:
                logger.info("media_conversions_aborted", media_id=media_id, reason="missing")
                break
            generated.append(name)
            logger.info("media_conversion_generated", media_id=media_id, conversion=name, edge=edge)
            self.scheduler.handle_conversion_event(artifact, name)

        return generated

    @staticmethod
    def _mark_generated(session, media_id: int, name: str) -> Media | None:
        media = session.get(Media, media_id, with_for_update=True)
        if media is None:
            return None
        media.generated_conversions = {**(media.generated_conversions or {}), name: True}
        return media
