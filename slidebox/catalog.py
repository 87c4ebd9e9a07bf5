"""
Asset catalog client for slidebox.

Queries the photo server's metadata search endpoint one page at a time,
newest first, using a capture-time cursor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

import requests

from .cursor_store import format_timestamp, parse_timestamp
from .models import AssetDescriptor, CatalogFilters, MediaKind

if TYPE_CHECKING:
    from .config_manager import SlideshowSettings

AssetPredicate = Callable[[AssetDescriptor], bool]

# EXIF fields carried into AssetDescriptor.metadata
EXIF_FIELDS = (
    "city",
    "state",
    "country",
    "make",
    "model",
    "lensModel",
    "fNumber",
    "exposureTime",
    "iso",
    "focalLength",
    "description",
)


class TransportError(Exception):
    """Raised when the catalog cannot be reached or returns an unusable response."""

    pass


@dataclass
class CatalogPage:
    """One page of catalog results."""

    descriptors: List[AssetDescriptor]  # filtered, in catalog order
    raw_count: int  # items returned by the server before client-side filtering
    oldest_taken_at: Optional[datetime] = None  # boundary for the following page

    @property
    def exhausted(self) -> bool:
        """True when the server had nothing at or before the cursor (end of catalog)."""
        return self.raw_count == 0


def build_predicate(
    filters: CatalogFilters, extra: Optional[AssetPredicate] = None
) -> AssetPredicate:
    """
    Build the client-side filter for a set of catalog filters.

    Favorites and archived are also sent to the server, but are re-checked here
    since not every server honors every combination.

    Args:
        filters: Static catalog filters
        extra: Additional predicate that must also accept the asset

    Returns:
        Predicate returning True for assets that should be shown
    """

    def accept(descriptor: AssetDescriptor) -> bool:
        if filters.favorites_only and not descriptor.is_favorite:
            return False
        if not filters.include_archived and descriptor.is_archived:
            return False
        if filters.display_mode in ("portrait", "landscape"):
            if descriptor.orientation != filters.display_mode:
                return False
        if descriptor.is_video and filters.max_video_duration_seconds is not None:
            duration = descriptor.duration_seconds
            if duration is not None and duration > filters.max_video_duration_seconds:
                return False
        if extra is not None and not extra(descriptor):
            return False
        return True

    return accept


def parse_duration(duration_str: Optional[str]) -> Optional[float]:
    """
    Parse a server duration string to seconds.

    Args:
        duration_str: Duration as "H:MM:SS.ffffff" (e.g., "0:00:09.500000")

    Returns:
        Duration in seconds, or None if missing, zero or unparseable
    """
    if not duration_str:
        return None

    parts = str(duration_str).strip().split(":")
    if len(parts) != 3:
        return None

    try:
        hours = int(parts[0])
        minutes = int(parts[1])
        seconds = float(parts[2])
    except ValueError:
        return None

    total = hours * 3600 + minutes * 60 + seconds
    return total if total > 0 else None


def _parse_exposure(value: Any) -> Optional[float]:
    """Exposure time arrives either as a number or as a fraction string like "1/250"."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        if "/" in text:
            numerator, denominator = text.split("/", 1)
            return float(numerator) / float(denominator)
        return float(text)
    except (ValueError, ZeroDivisionError):
        return None


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (OverflowError, TypeError, ValueError):
        return None


def parse_asset(item: Dict[str, Any]) -> Optional[AssetDescriptor]:
    """
    Convert one server asset record into an AssetDescriptor.

    Returns:
        AssetDescriptor, or None if the record lacks an id, a known type or a timestamp
    """
    if not isinstance(item, dict):
        return None

    asset_id = item.get("id")
    try:
        kind = MediaKind(str(item.get("type", "")).upper())
    except ValueError:
        return None
    if not asset_id:
        return None

    exif = item.get("exifInfo")
    if not isinstance(exif, dict):
        exif = {}
    taken_at = None
    for candidate in (
        item.get("fileCreatedAt"),
        exif.get("dateTimeOriginal"),
        item.get("localDateTime"),
        item.get("createdAt"),
    ):
        if not candidate:
            continue
        try:
            taken_at = parse_timestamp(candidate)
            break
        except (AttributeError, TypeError, ValueError):
            continue
    if taken_at is None:
        return None

    metadata = {key: exif[key] for key in EXIF_FIELDS if exif.get(key) is not None}
    if "exposureTime" in metadata:
        metadata["exposureTime"] = _parse_exposure(metadata["exposureTime"])

    # Rotated images report swapped EXIF dimensions
    width = _to_int(exif.get("exifImageWidth"))
    height = _to_int(exif.get("exifImageHeight"))
    if str(exif.get("orientation")) in ("5", "6", "7", "8"):
        width, height = height, width

    return AssetDescriptor(
        id=str(asset_id),
        kind=kind,
        taken_at=taken_at,
        duration_seconds=parse_duration(item.get("duration")) if kind == MediaKind.VIDEO else None,
        width=width,
        height=height,
        is_favorite=bool(item.get("isFavorite", False)),
        is_archived=bool(item.get("isArchived", False)) or item.get("visibility") == "archive",
        metadata=metadata,
    )


class AssetCatalogClient:
    """Paginated, filtered queries against the photo server."""

    SEARCH_PATH = "/api/search/metadata"

    def __init__(
        self,
        settings: "SlideshowSettings",
        session: Optional[requests.Session] = None,
        predicate: Optional[AssetPredicate] = None,
    ):
        """
        Initialize AssetCatalogClient.

        Args:
            settings: Slideshow settings (server URL, API key, timeout, filters)
            session: HTTP session to use (a new one is created if None)
            predicate: Extra client-side filter applied after each fetch
        """
        self.logger = logging.getLogger(__name__)
        self.settings = settings
        self.session = session or requests.Session()
        self._extra_predicate = predicate

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.settings.api_key or "",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def build_request_body(
        self, cursor: Optional[datetime], page_size: int, filters: CatalogFilters
    ) -> Dict[str, Any]:
        """Build the search request body for one page."""
        body: Dict[str, Any] = {
            "withExif": True,
            "size": page_size,
            "order": "desc",
        }
        if filters.favorites_only:
            body["isFavorite"] = True
        if not filters.include_archived:
            body["isArchived"] = False
        if cursor is not None:
            body["takenBefore"] = format_timestamp(cursor)
        return body

    def fetch_page(
        self,
        cursor: Optional[datetime],
        page_size: Optional[int] = None,
        filters: Optional[CatalogFilters] = None,
    ) -> CatalogPage:
        """
        Fetch one page of assets captured at or before the cursor.

        Makes a single request; retrying is the caller's responsibility.

        Args:
            cursor: Capture-time boundary, or None for the most recent assets
            page_size: Page size (defaults to the configured page size)
            filters: Catalog filters (defaults to the configured filters)

        Returns:
            CatalogPage in server order (newest first); an empty page signals
            the end of the catalog

        Raises:
            TransportError: On connection failure, timeout, error status or bad body
        """
        page_size = page_size or self.settings.page_size
        filters = filters or self.settings.filters
        url = f"{self.settings.server_url}{self.SEARCH_PATH}"
        body = self.build_request_body(cursor, page_size, filters)

        self.logger.debug("Fetching page: cursor=%s size=%s", cursor, page_size)
        try:
            response = self.session.post(
                url, json=body, headers=self._headers(), timeout=self.settings.fetch_timeout
            )
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            raise TransportError(f"Server responded with {status}") from e
        except requests.exceptions.Timeout as e:
            raise TransportError("Request to photo server timed out") from e
        except requests.exceptions.ConnectionError as e:
            raise TransportError(f"Failed to connect to photo server: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransportError(f"Error fetching assets: {e}") from e
        except ValueError as e:
            raise TransportError("Photo server returned invalid JSON") from e

        try:
            items = (data.get("assets") or {}).get("items") or []
        except AttributeError as e:
            raise TransportError("Unexpected response shape from photo server") from e

        predicate = build_predicate(filters, self._extra_predicate)
        descriptors: List[AssetDescriptor] = []
        oldest: Optional[datetime] = None
        for item in items:
            descriptor = parse_asset(item)
            if descriptor is None:
                self.logger.debug(
                    "Skipping unparseable asset record: %s",
                    item.get("id") if isinstance(item, dict) else item,
                )
                continue
            if oldest is None or descriptor.taken_at < oldest:
                oldest = descriptor.taken_at
            if predicate(descriptor):
                descriptors.append(descriptor)

        self.logger.info(
            "Fetched %d assets (%d after filters) before %s",
            len(items),
            len(descriptors),
            cursor.isoformat() if cursor else "now",
        )
        return CatalogPage(descriptors=descriptors, raw_count=len(items), oldest_taken_at=oldest)
