"""
Data models for slidebox.

Defines typed dataclasses for all entities used throughout the application.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional


class MediaKind(Enum):
    """Kind of media an asset holds."""

    IMAGE = "IMAGE"
    VIDEO = "VIDEO"


@dataclass(frozen=True)
class AssetDescriptor:
    """Catalog item without its bytes. Never mutated after creation."""

    id: str
    kind: MediaKind
    taken_at: datetime
    duration_seconds: Optional[float] = None  # VIDEO only
    width: Optional[int] = None
    height: Optional[int] = None
    is_favorite: bool = False
    is_archived: bool = False
    # Free-form EXIF-style metadata (city, make, fNumber, ...)
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_video(self) -> bool:
        return self.kind == MediaKind.VIDEO

    @property
    def orientation(self) -> Optional[str]:
        """'portrait', 'landscape' or 'square'; None when dimensions are unknown."""
        if not self.width or not self.height:
            return None
        if self.height > self.width:
            return "portrait"
        if self.width > self.height:
            return "landscape"
        return "square"

    def details(self) -> Dict[str, Optional[str]]:
        """
        Human-readable summary for the info panel.

        Returns:
            Dictionary with 'date', 'location', 'camera' and 'exposure' keys
            (None when the metadata has nothing to show)
        """
        meta = self.metadata
        location = ", ".join(str(part) for part in (meta.get("city"), meta.get("state")) if part)
        camera = " ".join(str(part) for part in (meta.get("make"), meta.get("model")) if part)

        exposure_parts = []
        if meta.get("fNumber"):
            exposure_parts.append(f"f/{meta['fNumber']}")
        exposure_time = meta.get("exposureTime")
        if isinstance(exposure_time, (int, float)) and exposure_time > 0:
            if exposure_time >= 1:
                exposure_parts.append(f"{exposure_time:g}s")
            else:
                exposure_parts.append(f"1/{round(1 / exposure_time)}s")
        if meta.get("iso"):
            exposure_parts.append(f"ISO {meta['iso']}")

        return {
            "date": f"{self.taken_at:%B} {self.taken_at.day}, {self.taken_at.year}",
            "location": location or None,
            "camera": camera or None,
            "exposure": " • ".join(exposure_parts) or None,
        }


@dataclass(frozen=True)
class MediaHandle:
    """One resolved variant (primary or preview) of an asset, backed by a local file."""

    id: str
    asset_id: str
    variant: str  # "primary" or "preview"
    path: Path
    content_type: Optional[str] = None
    size_bytes: int = 0

    @property
    def url(self) -> str:
        """Display URL served by the web API."""
        return f"/api/media/{self.id}"


@dataclass(frozen=True)
class PlayableResource:
    """A descriptor plus its resolved handles. Released exactly once by its owner."""

    descriptor: AssetDescriptor
    primary: MediaHandle
    preview: MediaHandle

    @property
    def kind(self) -> MediaKind:
        return self.descriptor.kind

    def summary(self) -> Dict[str, Any]:
        """Serializable view for status reporting."""
        descriptor = self.descriptor
        return {
            "id": descriptor.id,
            "kind": descriptor.kind.value,
            "taken_at": descriptor.taken_at.isoformat(),
            "duration_seconds": descriptor.duration_seconds,
            "is_favorite": descriptor.is_favorite,
            "url": self.primary.url,
            "preview_url": self.preview.url,
            "details": descriptor.details(),
        }


@dataclass(frozen=True)
class CatalogFilters:
    """Static catalog filters supplied once at startup."""

    favorites_only: bool = False
    include_archived: bool = False
    display_mode: str = "all"  # all, portrait, landscape
    max_video_duration_seconds: Optional[float] = None


@dataclass
class Notification:
    """User-visible, dismissible message."""

    id: int
    level: str  # info, warning, error
    title: str
    message: str
    created_at: Optional[datetime] = None


@dataclass
class ConfigEntry:
    """Configuration entry."""

    key: str
    value: str
    updated_at: Optional[datetime] = None
