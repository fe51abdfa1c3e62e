"""Pure catalog lookups: base image selection, plan -> product mapping, instance fields."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

OS_FAMILY_TOKEN = "ubuntu"
OS_VERSION_TOKENS = ("22.04", "jammy")

MATCH_VERSION = "family+version"
MATCH_FAMILY = "family"
MATCH_DEFAULT = "configured-default"


@dataclass(frozen=True, slots=True)
class ImageSelection:
    image_id: str
    name: str
    match: str
    """How the image was chosen: MATCH_VERSION, MATCH_FAMILY or MATCH_DEFAULT."""


@dataclass(frozen=True, slots=True)
class ImageNotFound:
    family: str
    versions: tuple[str, ...]
    candidates: int

    @property
    def reason(self) -> str:
        return (
            f"no {self.family} image (versions {', '.join(self.versions)}) among "
            f"{self.candidates} images and no default image configured"
        )


def select_image(
    images: Sequence[Mapping[str, Any]],
    *,
    default_image_id: str = "",
    family: str = OS_FAMILY_TOKEN,
    versions: Sequence[str] = OS_VERSION_TOKENS,
) -> ImageSelection | ImageNotFound:
    """Pick a base image.

    Preference order: family and version token in the name, then family only,
    then ``default_image_id``. Name matching is case-insensitive.
    """
    family_matches: list[Mapping[str, Any]] = []
    for image in images:
        name = str(image.get("name", "")).lower()
        if family.lower() not in name:
            continue
        if any(v.lower() in name for v in versions):
            return ImageSelection(str(image["imageId"]), str(image.get("name", "")), MATCH_VERSION)
        family_matches.append(image)

    if family_matches:
        image = family_matches[0]
        return ImageSelection(str(image["imageId"]), str(image.get("name", "")), MATCH_FAMILY)
    if default_image_id:
        return ImageSelection(default_image_id, "", MATCH_DEFAULT)
    return ImageNotFound(family=family, versions=tuple(versions), candidates=len(images))


def resolve_product_id(plan: str, table: Mapping[str, str], default: str) -> str:
    """Provider product for ``plan``; unknown plans get ``default``."""
    return table.get(plan, default)


def instance_ipv4(instance: Mapping[str, Any]) -> str | None:
    """Extract ``ipConfig.v4.ip`` from an instance detail, if assigned."""
    ip_config = instance.get("ipConfig") or {}
    v4 = ip_config.get("v4") if isinstance(ip_config, Mapping) else None
    ip = v4.get("ip") if isinstance(v4, Mapping) else None
    return ip or None
