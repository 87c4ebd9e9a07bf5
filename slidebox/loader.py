"""
Asset loader for slidebox.

Resolves an asset descriptor into a PlayableResource by downloading its
primary and preview variants in parallel, with a bounded, fixed-delay retry.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Callable, Dict, List, Optional

import requests

from .models import AssetDescriptor, MediaHandle, PlayableResource

if TYPE_CHECKING:
    from .config_manager import SlideshowSettings
    from .media_store import MediaStore

PRIMARY = "primary"
PREVIEW = "preview"

# Called before each retry with (descriptor, failed attempt number, error)
RetryCallback = Callable[[AssetDescriptor, int, "LoadError"], None]


class LoadError(Exception):
    """Raised when an asset cannot be downloaded."""

    def __init__(self, message: str, asset_id: Optional[str] = None):
        super().__init__(message)
        self.asset_id = asset_id


class AssetLoader:
    """Downloads asset variants and wraps them as PlayableResources."""

    def __init__(
        self,
        settings: "SlideshowSettings",
        media_store: "MediaStore",
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize AssetLoader.

        Args:
            settings: Slideshow settings (server URL, API key, timeout, retry delay)
            media_store: MediaStore that owns downloaded bytes
            session: HTTP session to use (a new one is created if None)
            sleep: Sleep function used between retries
        """
        self.logger = logging.getLogger(__name__)
        self.settings = settings
        self.media_store = media_store
        self.session = session or requests.Session()
        self._sleep = sleep
        # Primary and preview are fetched side by side
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="AssetFetch")

    def variant_url(self, descriptor: AssetDescriptor, variant: str) -> str:
        """Server URL for one variant of an asset."""
        base = f"{self.settings.server_url}/api/assets/{descriptor.id}"
        if variant == PRIMARY:
            return f"{base}/original"
        return f"{base}/thumbnail?size=preview"

    def _fetch_variant(self, descriptor: AssetDescriptor, variant: str) -> MediaHandle:
        """Download one variant into the media store."""
        url = self.variant_url(descriptor, variant)
        try:
            response = self.session.get(
                url,
                headers={"x-api-key": self.settings.api_key or ""},
                timeout=self.settings.fetch_timeout,
            )
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise LoadError(
                f"Fetching {descriptor.kind.value} ({variant}) for {descriptor.id}: request timed out",
                descriptor.id,
            ) from e
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            raise LoadError(
                f"Fetching {descriptor.kind.value} ({variant}) for {descriptor.id}: status {status}",
                descriptor.id,
            ) from e
        except requests.exceptions.RequestException as e:
            raise LoadError(
                f"Fetching {descriptor.kind.value} ({variant}) for {descriptor.id}: {e}",
                descriptor.id,
            ) from e

        try:
            return self.media_store.store(
                descriptor.id, variant, response.content, response.headers.get("Content-Type")
            )
        except OSError as e:
            raise LoadError(f"Storing {variant} for {descriptor.id}: {e}", descriptor.id) from e

    def resolve(self, descriptor: AssetDescriptor) -> PlayableResource:
        """
        Make one attempt to resolve an asset.

        Both variants are downloaded in parallel. If either fails for any
        reason, the one that succeeded is released before the first error is
        raised.

        Raises:
            LoadError: If either variant could not be downloaded
        """
        futures = {
            variant: self._executor.submit(self._fetch_variant, descriptor, variant)
            for variant in (PRIMARY, PREVIEW)
        }

        handles: Dict[str, MediaHandle] = {}
        errors: List[Exception] = []
        for variant, future in futures.items():
            try:
                handles[variant] = future.result()
            except Exception as e:
                errors.append(e)

        if errors:
            for handle in handles.values():
                self.media_store.release_handle(handle)
            raise errors[0]

        return PlayableResource(
            descriptor=descriptor, primary=handles[PRIMARY], preview=handles[PREVIEW]
        )

    def retry_resolve(
        self,
        descriptor: AssetDescriptor,
        max_attempts: Optional[int] = None,
        on_retry: Optional[RetryCallback] = None,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> PlayableResource:
        """
        Resolve an asset, retrying with a fixed delay.

        Args:
            descriptor: Asset to resolve
            max_attempts: Extra attempts after the first (defaults to configured retry count)
            on_retry: Called before each retry
            is_cancelled: Checked before each retry; stops retrying when it returns True

        Returns:
            PlayableResource for the asset

        Raises:
            LoadError: After max_attempts + 1 failed attempts
        """
        if max_attempts is None:
            max_attempts = self.settings.asset_retry_count

        total = max(0, max_attempts) + 1
        last_error: Optional[LoadError] = None
        for attempt in range(1, total + 1):
            try:
                return self.resolve(descriptor)
            except LoadError as e:
                last_error = e
                self.logger.warning(
                    "Attempt %d/%d failed for asset %s: %s", attempt, total, descriptor.id, e
                )

            if attempt == total:
                break
            if is_cancelled is not None and is_cancelled():
                self.logger.debug("Retry for asset %s cancelled", descriptor.id)
                break
            if on_retry is not None:
                on_retry(descriptor, attempt, last_error)
            self._sleep(self.settings.asset_retry_delay)

        self.logger.error("Skipping asset %s after %d attempts", descriptor.id, total)
        raise LoadError(
            f"Skipping asset {descriptor.id} after multiple attempts: {last_error}", descriptor.id
        )

    def shutdown(self):
        """Stop the variant download pool."""
        self._executor.shutdown(wait=False)
