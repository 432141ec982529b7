from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, select
from sqlalchemy.orm import Mapped, Session, mapped_column, relationship

from database import Base


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    users: Mapped[list["User"]] = relationship("User", back_populates="tenant")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    tenant_id: Mapped[int] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # bumped on every avatar replacement, feeds the v{n} file name
    avatar_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="users")

    owner_type = "user"

    def get_key(self) -> int:
        return self.id

    def media_in(self, session: Session, collection: str) -> list["Media"]:
        """Current (not superseded) media of this owner in one collection."""
        stmt = (
            select(Media)
            .where(
                Media.model_type == self.owner_type,
                Media.model_id == self.id,
                Media.collection_name == collection,
                Media.superseded_at.is_(None),
            )
            .order_by(Media.id)
        )
        return list(session.scalars(stmt))


class Media(Base):
    __tablename__ = "media"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    uuid: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    tenant_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    model_type: Mapped[str] = mapped_column(String(50), nullable=False)
    model_id: Mapped[int] = mapped_column(Integer, nullable=False)
    collection_name: Mapped[str] = mapped_column(String(50), nullable=False)
    disk: Mapped[str] = mapped_column(String(50), nullable=False)
    conversions_disk: Mapped[str] = mapped_column(String(50), nullable=False)
    directory: Mapped[str] = mapped_column(String(255), nullable=False)
    file_name: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    generated_conversions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    superseded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    @property
    def path(self) -> str:
        return f"{self.directory}/{self.file_name}"

    def has_generated(self, conversion: str) -> bool:
        return bool((self.generated_conversions or {}).get(conversion))


class MediaCleanupState(Base):
    __tablename__ = "media_cleanup_states"

    media_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    collection: Mapped[str | None] = mapped_column(String(50))
    model_type: Mapped[str | None] = mapped_column(String(50))
    model_id: Mapped[str | None] = mapped_column(String(64))
    conversions: Mapped[list | None] = mapped_column(JSON)
    payload: Mapped[dict | None] = mapped_column(JSON)
    flagged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)
    payload_queued_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True
    )
