"""
Media storage for slidebox.

Keeps downloaded asset bytes on disk while they are on screen (or staged as
next) and deletes them when the owning resource is released. Every handle is
released at most once; a second release is refused and logged.
"""

from __future__ import annotations

import logging
import mimetypes
import threading
import time
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Dict, Optional

from .models import MediaHandle, PlayableResource

if TYPE_CHECKING:
    from .config_manager import ConfigManager

# Extension used when the server sends no usable content type
DEFAULT_EXTENSION = ".bin"


class MediaStore:
    """Owns the local files behind every live MediaHandle."""

    def __init__(
        self,
        config_manager: Optional["ConfigManager"] = None,
        directory: Optional[str] = None,
    ):
        """
        Initialize MediaStore.

        Args:
            config_manager: ConfigManager for the cache_directory setting
            directory: Explicit storage directory (overrides config)
        """
        self.logger = logging.getLogger(__name__)
        self.config_manager = config_manager
        self._directory = directory
        self._lock = threading.Lock()
        self._live: Dict[str, MediaHandle] = {}
        self.stored_count = 0
        self.released_count = 0
        self.logger.info("MediaStore initialized")

    @property
    def base_directory(self) -> Path:
        """Get storage directory, creating it if needed."""
        media_dir = self._directory
        if media_dir is None and self.config_manager is not None:
            media_dir = self.config_manager.get("cache_directory")
        if media_dir is None:
            media_dir = str(Path.home() / ".slidebox" / "media")

        media_path = Path(media_dir).expanduser()
        media_path.mkdir(parents=True, exist_ok=True)
        return media_path

    def store(
        self, asset_id: str, variant: str, content: bytes, content_type: Optional[str] = None
    ) -> MediaHandle:
        """
        Write downloaded bytes and register a live handle.

        Args:
            asset_id: Catalog asset id
            variant: "primary" or "preview"
            content: Downloaded bytes
            content_type: Content type reported by the server

        Returns:
            MediaHandle for the stored file
        """
        handle_id = uuid.uuid4().hex
        extension = DEFAULT_EXTENSION
        if content_type:
            extension = (
                mimetypes.guess_extension(content_type.split(";")[0].strip()) or DEFAULT_EXTENSION
            )

        path = self.base_directory / f"{handle_id}{extension}"
        path.write_bytes(content)

        handle = MediaHandle(
            id=handle_id,
            asset_id=asset_id,
            variant=variant,
            path=path,
            content_type=content_type,
            size_bytes=len(content),
        )
        with self._lock:
            self._live[handle_id] = handle
            self.stored_count += 1

        self.logger.debug(
            "Stored %s for asset %s (%.1f KB)", variant, asset_id, len(content) / 1024
        )
        return handle

    def get(self, handle_id: str) -> Optional[MediaHandle]:
        """Get a live handle by id, or None once it has been released."""
        with self._lock:
            return self._live.get(handle_id)

    def is_live(self, handle: MediaHandle) -> bool:
        with self._lock:
            return handle.id in self._live

    def release_handle(self, handle: MediaHandle) -> bool:
        """
        Release one handle and delete its file.

        Returns:
            True if released, False if it was already released
        """
        with self._lock:
            if self._live.pop(handle.id, None) is None:
                self.logger.warning(
                    "Refusing to release %s handle %s for asset %s twice",
                    handle.variant,
                    handle.id,
                    handle.asset_id,
                )
                return False
            self.released_count += 1

        try:
            handle.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning("Failed to delete media file %s: %s", handle.path, e)
        return True

    def release(self, resource: PlayableResource) -> bool:
        """
        Release both handles of a resource.

        Returns:
            True if the resource was live, False if it was already released
        """
        released_primary = self.release_handle(resource.primary)
        released_preview = self.release_handle(resource.preview)
        if released_primary or released_preview:
            self.logger.debug("Released resources for asset %s", resource.descriptor.id)
        return released_primary and released_preview

    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    def release_all(self) -> int:
        """Release every live handle. Returns the number of handles released."""
        with self._lock:
            handles = list(self._live.values())
        return sum(1 for handle in handles if self.release_handle(handle))

    # =========================================================================
    # Cleanup
    # =========================================================================

    def cleanup(self, max_age_seconds: float = 0) -> int:
        """
        Delete files left behind that no live handle owns (e.g. after a crash).

        Args:
            max_age_seconds: Only delete orphans older than this

        Returns:
            Number of files deleted
        """
        with self._lock:
            live_paths = {handle.path for handle in self._live.values()}

        deleted_count = 0
        now = time.time()
        for path in self.base_directory.iterdir():
            if not path.is_file() or path in live_paths:
                continue
            try:
                if now - path.stat().st_mtime < max_age_seconds:
                    continue
                path.unlink()
                deleted_count += 1
            except OSError as e:
                self.logger.warning("Failed to delete orphaned media file %s: %s", path, e)

        if deleted_count > 0:
            self.logger.info("Media cleanup complete: deleted %d orphaned files", deleted_count)
        return deleted_count

    def get_stats(self) -> dict:
        """
        Get statistics about stored media.

        Returns:
            Dictionary with storage statistics
        """
        with self._lock:
            live = list(self._live.values())
            stored = self.stored_count
            released = self.released_count

        return {
            "live_handles": len(live),
            "live_bytes": sum(handle.size_bytes for handle in live),
            "stored_total": stored,
            "released_total": released,
        }
