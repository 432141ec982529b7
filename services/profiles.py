from dataclasses import dataclass, field

from errors import ValidationError
from services.paths import TenantPathLayout

DEFAULT_CONVERSIONS = {"thumb": 128, "medium": 512, "large": 1024}


@dataclass(frozen=True)
class UploadProfile:
    name: str
    collection: str
    single_file: bool
    conversions: dict[str, int] = field(default_factory=dict)

    def conversion_names(self) -> list[str]:
        return list(self.conversions)

    def storage_path(self, layout: TenantPathLayout, owner, extension: str, unique: str) -> str:
        if self.name == "avatar":
            return layout.avatar_path(
                owner.tenant_id, owner.get_key(), extension, owner.avatar_version, unique
            )
        return layout.gallery_path(owner.tenant_id, owner.get_key(), extension, unique)


PROFILES = {
    "avatar": UploadProfile("avatar", "avatar", single_file=True, conversions=dict(DEFAULT_CONVERSIONS)),
    "gallery": UploadProfile("gallery", "gallery", single_file=False, conversions={"thumb": 128}),
}


def get_profile(name: str) -> UploadProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValidationError(f"unknown upload profile '{name}'", code="unknown_profile") from None
