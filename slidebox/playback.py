"""
Playback controller for slidebox.

Owns the "current" and "next" resources, the rotation timer, and the
advance/reset protocol. All state changes run on a single control loop;
catalog fetches and asset downloads run on worker threads and post their
results back to the loop.
"""

import logging
import queue
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .catalog import AssetCatalogClient, TransportError
from .config_manager import ConfigError, SlideshowSettings
from .cursor_store import CursorStore, format_timestamp
from .loader import AssetLoader, LoadError
from .media_store import MediaStore
from .models import AssetDescriptor, PlayableResource
from .notifications import NotificationCenter
from .playlist import Playlist, RefillResult, RefillSignal


class PlaybackState(Enum):
    """Playback state enumeration."""

    LOADING = "loading"  # Nothing on screen yet
    PLAYING = "playing"
    STALLED = "stalled"  # Advance due but no next resource yet
    FATAL = "fatal"  # Terminal until restarted/reconfigured


# Wakes the control loop so it can exit
_STOP = object()


class PlaybackController:
    """Slideshow state machine."""

    def __init__(
        self,
        settings: SlideshowSettings,
        catalog: AssetCatalogClient,
        loader: AssetLoader,
        playlist: Playlist,
        cursor_store: CursorStore,
        media_store: MediaStore,
        notifications: Optional[NotificationCenter] = None,
        executor=None,
        timer_factory: Callable[..., Any] = threading.Timer,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize PlaybackController.

        Args:
            settings: Slideshow settings
            catalog: Catalog client used for refills
            loader: Asset loader used to resolve descriptors
            playlist: Playlist of pending descriptors
            cursor_store: Persisted pagination cursor
            media_store: MediaStore that releases resolved media
            notifications: Where user-visible messages go
            executor: Runs fetches and resolves (defaults to a 2-worker pool)
            timer_factory: Creates one-shot timers, threading.Timer signature
            clock: Monotonic clock in seconds, used for progress
        """
        self.settings = settings
        self.catalog = catalog
        self.loader = loader
        self.playlist = playlist
        self.cursor_store = cursor_store
        self.media_store = media_store
        self.notifications = notifications or NotificationCenter()

        self.logger = logging.getLogger(__name__)
        self.lock = threading.RLock()
        self.state = PlaybackState.LOADING
        self.error: Optional[str] = None
        self.current_resource: Optional[PlayableResource] = None
        self.next_resource: Optional[PlayableResource] = None
        self.progress = 0.0
        self.promoted_count = 0

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="SlideshowWorker"
        )
        self._timer_factory = timer_factory
        self._clock = clock
        self._events: "queue.Queue" = queue.Queue()

        # Bumped on every reset; completions from older generations are discarded
        self._generation = 0
        self._refill_in_flight = False
        self._resolve_in_flight = False
        self._advance_pending = False
        self._consecutive_skips = 0
        self._catalog_failures = 0
        self._had_persisted_cursor = False

        self._current_started_at: Optional[float] = None
        self._reported_video_duration: Optional[float] = None

        self._rotation_timer = None
        self._retry_timer = None
        self._pending_releases: List[Tuple[Any, PlayableResource]] = []

        self._started = False
        self._running = False
        self._loop_thread: Optional[threading.Thread] = None
        self._ticker_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    # =========================================================================
    # Control loop
    # =========================================================================

    def start(self, background: bool = True):
        """
        Start the slideshow.

        Args:
            background: Run the control loop and progress ticker on their own
                threads. With False, the caller drives the loop with run_pending().
        """
        with self.lock:
            if self._started:
                return
            self._started = True

        self._post(self._begin)

        if not background:
            return

        self._running = True
        self._stop_event.clear()
        self._loop_thread = threading.Thread(
            target=self._run_loop, daemon=True, name="SlideshowLoop"
        )
        self._loop_thread.start()
        self._start_ticker()
        self.logger.info("Slideshow control loop started")

    def _run_loop(self):
        while self._running:
            item = self._events.get()
            if item is _STOP:
                break
            self._dispatch(*item)

    def _start_ticker(self):
        """Start background thread that recomputes progress on a fixed tick."""
        if self.settings.progress_tick <= 0:
            # Invalid settings; _begin reports them
            return

        def ticker():
            while not self._stop_event.wait(self.settings.progress_tick):
                try:
                    self.tick()
                except Exception as e:
                    self.logger.error("Error in progress ticker: %s", e, exc_info=True)

        self._ticker_thread = threading.Thread(target=ticker, daemon=True, name="ProgressTicker")
        self._ticker_thread.start()

    def run_pending(self) -> int:
        """
        Process every queued event on the calling thread.

        Returns:
            Number of events processed
        """
        processed = 0
        while True:
            try:
                item = self._events.get_nowait()
            except queue.Empty:
                return processed
            if item is _STOP:
                continue
            self._dispatch(*item)
            processed += 1

    def _post(self, handler: Callable, *args):
        self._events.put((handler, args))

    def _dispatch(self, handler: Callable, args: tuple):
        with self.lock:
            try:
                handler(*args)
            except Exception as e:
                self.logger.error("Error in slideshow event %s: %s", handler.__name__, e, exc_info=True)

    def _submit(self, fn: Callable, args: tuple, on_done: Callable):
        """Run fn on a worker and post on_done(generation, future) back to the loop."""
        generation = self._generation
        future = self._executor.submit(fn, *args)
        future.add_done_callback(lambda f: self._post(on_done, generation, f))

    def _start_timer(self, delay: float, handler: Callable, *args):
        timer = self._timer_factory(max(0.0, delay), self._post, args=(handler,) + args)
        timer.daemon = True
        timer.start()
        return timer

    @staticmethod
    def _cancel_timer(timer):
        if timer is not None:
            timer.cancel()

    # =========================================================================
    # State transitions
    # =========================================================================

    def _set_state(self, state: PlaybackState):
        if self.state != state:
            self.logger.debug("State %s -> %s", self.state.value, state.value)
            self.state = state

    def _begin(self):
        try:
            self.settings.validate()
        except ConfigError as e:
            self._enter_fatal(f"Configuration Error: {e}. Please check your settings.")
            return

        self._set_state(PlaybackState.LOADING)
        self._request_refill()

    def _enter_fatal(self, message: str):
        self.logger.error("Slideshow stopped: %s", message)
        self._cancel_timer(self._rotation_timer)
        self._cancel_timer(self._retry_timer)
        self._rotation_timer = None
        self._retry_timer = None
        self.error = message
        self._set_state(PlaybackState.FATAL)
        self.notifications.notify("error", "Slideshow Stopped", message)

    def _request_refill(self):
        """Start a catalog refill unless one is already in flight."""
        if self._refill_in_flight or self.state == PlaybackState.FATAL:
            return
        if self._catalog_failures and self._retry_timer is not None:
            # Outage retries keep their own pace
            self.logger.debug("Refill deferred to pending retry")
            return

        self._cancel_timer(self._retry_timer)
        self._retry_timer = None
        self._refill_in_flight = True

        persisted = self.cursor_store.get()
        self._had_persisted_cursor = persisted is not None
        cursor = self.playlist.cursor_for_refill(persisted)
        exclude = self.playlist.boundary_ids if self.playlist.page_cursor is not None else frozenset()

        self.logger.debug("Requesting refill before %s", cursor)
        self._submit(self.playlist.fetch_refill, (self.catalog, cursor, exclude), self._on_refill_done)

    def _on_refill_done(self, generation: int, future: Future):
        if generation != self._generation:
            self.logger.debug("Discarding refill from before reset")
            return

        self._refill_in_flight = False
        try:
            result: RefillResult = future.result()
        except TransportError as e:
            self._on_catalog_failure(e)
            return
        except Exception as e:
            self.logger.error("Unexpected error during refill: %s", e, exc_info=True)
            self._on_catalog_failure(e)
            return

        if self._catalog_failures:
            self.logger.info("Catalog reachable again after %d failures", self._catalog_failures)
        self._catalog_failures = 0

        if result.signal == RefillSignal.EXHAUSTED:
            if self.current_resource is None and self.next_resource is None and not self.playlist:
                self._enter_fatal("No photos found matching your filters.")
            else:
                self.notifications.notify(
                    "warning", "No More Photos", "The photo server returned nothing new."
                )
                self._schedule_refill_retry()
            return

        if result.wrapped:
            self.logger.info("No more assets found, starting from the beginning")
            self.cursor_store.clear()

        self.playlist.apply_refill(result)
        if not result.descriptors:
            # Whole pages filtered out; keep paging after a pause
            self._schedule_refill_retry()
            return

        self._ensure_next()

    def _on_catalog_failure(self, error: Exception):
        self._catalog_failures += 1
        self.logger.error(
            "Failed to fetch assets (attempt %d): %s", self._catalog_failures, error
        )

        budget_spent = self._catalog_failures >= max(1, self.settings.catalog_retry_attempts)
        nothing_to_show = (
            self.current_resource is None
            and self.next_resource is None
            and not self.playlist
            and not self._had_persisted_cursor
        )
        if budget_spent and nothing_to_show:
            self._enter_fatal(f"Failed to connect to photo server: {error}")
            return

        if self._catalog_failures == max(1, self.settings.catalog_retry_attempts):
            self.notifications.notify(
                "error",
                "Connection Problem",
                f"Failed to connect to photo server. Retrying every "
                f"{self.settings.catalog_retry_delay:g}s.",
            )

        self._schedule_refill_retry()

    def _schedule_refill_retry(self):
        self._cancel_timer(self._retry_timer)
        self._retry_timer = self._start_timer(
            self.settings.catalog_retry_delay, self._on_refill_retry_due, self._generation
        )

    def _on_refill_retry_due(self, generation: int):
        if generation != self._generation:
            return
        self._retry_timer = None
        self._request_refill()

    def _ensure_next(self):
        """Resolve the following descriptor unless a resolve is already in flight."""
        if self.state == PlaybackState.FATAL:
            return
        if self.next_resource is not None or self._resolve_in_flight:
            return

        descriptor = self.playlist.pop_front()
        if descriptor is None:
            self._request_refill()
            return
        if self.playlist.needs_refill():
            self._request_refill()

        self._resolve_in_flight = True
        generation = self._generation
        self.logger.debug("Resolving asset %s", descriptor.id)
        self._submit(
            self.loader.retry_resolve,
            (
                descriptor,
                self.settings.asset_retry_count,
                self._on_asset_retry,
                lambda: generation != self._generation,
            ),
            self._on_resolved,
        )

    def _on_asset_retry(self, descriptor: AssetDescriptor, attempt: int, error: LoadError):
        # Runs on a worker thread
        self.notifications.notify(
            "info",
            "Retrying Asset Load...",
            f"Will retry in {self.settings.asset_retry_delay:g}s.",
        )

    def _on_resolved(self, generation: int, future: Future):
        if generation != self._generation:
            try:
                stale = future.result()
            except Exception:
                return
            self.logger.debug("Discarding asset %s resolved before reset", stale.descriptor.id)
            self.media_store.release(stale)
            return

        self._resolve_in_flight = False
        try:
            resource: PlayableResource = future.result()
        except Exception as e:
            if not isinstance(e, LoadError):
                self.logger.error("Unexpected error resolving asset: %s", e, exc_info=True)
            self._on_resolve_failed(e)
            return

        self._consecutive_skips = 0
        if self.state == PlaybackState.FATAL:
            self.media_store.release(resource)
            return

        if self.current_resource is None:
            self._promote(resource)
            self._ensure_next()
            return

        self.next_resource = resource
        self.logger.debug("Next asset ready: %s", resource.descriptor.id)
        if self._advance_pending:
            self._advance()

    def _on_resolve_failed(self, error: Exception):
        self._consecutive_skips += 1
        asset_id = getattr(error, "asset_id", None) or "unknown"
        self.notifications.notify(
            "warning",
            "Asset Load Failed",
            f"Skipping asset {asset_id} after multiple attempts.",
        )

        if (
            self.current_resource is None
            and self._consecutive_skips >= self.settings.max_consecutive_skips
        ):
            self._enter_fatal(
                f"Failed to load any assets after {self._consecutive_skips} attempts."
            )
            return

        self._ensure_next()

    def _promote(self, resource: PlayableResource):
        """Make a fully resolved resource current. The outgoing one is released later."""
        outgoing = self.current_resource
        self.current_resource = resource
        self.promoted_count += 1

        if outgoing is not None:
            self._schedule_release(outgoing)

        self.cursor_store.set(resource.descriptor.taken_at)
        self._current_started_at = self._clock()
        self._reported_video_duration = None
        self._advance_pending = False
        self.progress = 0.0
        self._set_state(PlaybackState.PLAYING)
        self._arm_rotation_timer()

        descriptor = resource.descriptor
        self.logger.info(
            "Showing %s %s taken %s", descriptor.kind.value, descriptor.id, descriptor.taken_at
        )

    def _arm_rotation_timer(self):
        self._cancel_timer(self._rotation_timer)
        self._rotation_timer = None
        if self.current_resource is None or self.current_resource.descriptor.is_video:
            # Videos advance when playback ends
            return
        self._rotation_timer = self._start_timer(
            self.settings.display_duration,
            self._on_rotation_due,
            self._generation,
            self.promoted_count,
        )

    def _on_rotation_due(self, generation: int, promotion: int):
        if generation != self._generation or promotion != self.promoted_count:
            return
        self._rotation_timer = None
        self._advance()

    def _advance(self) -> bool:
        if self.state not in (PlaybackState.PLAYING, PlaybackState.STALLED):
            return False
        if self.current_resource is None:
            return False

        if self.next_resource is None:
            self.logger.info("Next media not ready, holding current asset")
            self._advance_pending = True
            self._set_state(PlaybackState.STALLED)
            self._ensure_next()
            return False

        incoming = self.next_resource
        self.next_resource = None
        self._promote(incoming)
        self._ensure_next()
        return True

    def _schedule_release(self, resource: PlayableResource):
        """Release an outgoing resource once the visual transition has had time to run."""
        timer = self._start_timer(self.settings.release_delay, self._on_release_due, resource)
        self._pending_releases.append((timer, resource))

    def _on_release_due(self, resource: PlayableResource):
        if not any(pending is resource for _, pending in self._pending_releases):
            # Already released by shutdown
            return
        self._pending_releases = [
            (timer, pending) for timer, pending in self._pending_releases if pending is not resource
        ]
        self.logger.debug("Releasing asset %s", resource.descriptor.id)
        self.media_store.release(resource)

    def _reset(self, cursor: Optional[datetime]):
        if self.state == PlaybackState.FATAL:
            return

        self._generation += 1
        self._cancel_timer(self._rotation_timer)
        self._cancel_timer(self._retry_timer)
        self._rotation_timer = None
        self._retry_timer = None
        self._refill_in_flight = False
        self._resolve_in_flight = False
        self._advance_pending = False
        self._consecutive_skips = 0
        self._catalog_failures = 0

        self.playlist.clear()
        for resource in (self.current_resource, self.next_resource):
            if resource is not None:
                self.media_store.release(resource)
        self.current_resource = None
        self.next_resource = None
        self._current_started_at = None
        self._reported_video_duration = None
        self.progress = 0.0

        self.cursor_store.set(cursor)
        self._set_state(PlaybackState.LOADING)

        if cursor is not None:
            self.logger.info("Timeline set: searching for photos before %s", cursor)
            self.notifications.notify(
                "info", "Timeline Set", f"Searching for photos before {cursor.date().isoformat()}."
            )
        else:
            self.logger.info("Timeline reset to the most recent photos")
            self.notifications.notify(
                "info", "Timeline Reset", "Restarting from the most recent photos."
            )

        self._request_refill()

    # =========================================================================
    # Display-layer entry points (thread-safe; applied on the control loop)
    # =========================================================================

    def advance_now(self) -> bool:
        """
        Skip to the next asset.

        Returns:
            True if the request was accepted
        """
        with self.lock:
            if self.state == PlaybackState.FATAL:
                return False
        self._post(self._advance)
        return True

    def jump_to_date(self, when: datetime) -> bool:
        """
        Restart the slideshow from assets taken at or before a date.

        Returns:
            True if the request was accepted
        """
        return self._request_reset(when)

    def reset_to_latest(self) -> bool:
        """
        Restart the slideshow from the most recent assets.

        Returns:
            True if the request was accepted
        """
        return self._request_reset(None)

    def _request_reset(self, cursor: Optional[datetime]) -> bool:
        with self.lock:
            if self.state == PlaybackState.FATAL:
                self.logger.warning("Ignoring timeline change while stopped: %s", self.error)
                return False
        self._post(self._reset, cursor)
        return True

    def on_video_ended(self, asset_id: Optional[str] = None) -> None:
        """Called by the display layer when the current video finishes."""
        self._post(self._on_video_ended, asset_id)

    def on_playback_error(self, asset_id: Optional[str] = None) -> None:
        """Called by the display layer when the current media cannot be played."""
        self._post(self._on_playback_error, asset_id)

    def report_video_duration(self, seconds: float, asset_id: Optional[str] = None) -> None:
        """Called by the display layer once the video element knows its duration."""
        self._post(self._on_video_duration, seconds, asset_id)

    def dismiss_notification(self, notification_id: int) -> bool:
        """Dismiss a user-visible notification. Returns True if it existed."""
        return self.notifications.dismiss(notification_id)

    def _is_current(self, asset_id: Optional[str]) -> bool:
        if self.current_resource is None:
            return False
        return asset_id is None or asset_id == self.current_resource.descriptor.id

    def _on_video_ended(self, asset_id: Optional[str]):
        if not self._is_current(asset_id):
            self.logger.debug("Ignoring end of stale video %s", asset_id)
            return
        self._advance()

    def _on_playback_error(self, asset_id: Optional[str]):
        if not self._is_current(asset_id):
            return
        self.logger.warning("Display failed to play asset %s, advancing", asset_id)
        self._advance()

    def _on_video_duration(self, seconds: float, asset_id: Optional[str]):
        if not self._is_current(asset_id):
            return
        if seconds and seconds > 0:
            self._reported_video_duration = float(seconds)

    # =========================================================================
    # Status
    # =========================================================================

    def current_display_duration(self) -> float:
        """
        Seconds the current asset is meant to stay on screen.

        Videos use their own duration (reported by the display, else from the
        catalog); photos and videos without a usable duration use the static
        display duration.
        """
        with self.lock:
            resource = self.current_resource
            if resource is not None and resource.descriptor.is_video:
                for candidate in (
                    self._reported_video_duration,
                    resource.descriptor.duration_seconds,
                ):
                    if candidate is not None and candidate > 0:
                        return float(candidate)
            return self.settings.display_duration

    def tick(self) -> float:
        """Recompute progress (0-100) from the clock. Returns the new value."""
        with self.lock:
            if (
                self.current_resource is None
                or self._current_started_at is None
                or self.state not in (PlaybackState.PLAYING, PlaybackState.STALLED)
            ):
                self.progress = 0.0
                return self.progress

            duration = self.current_display_duration()
            if duration <= 0:
                self.progress = 0.0
                return self.progress
            elapsed = self._clock() - self._current_started_at
            self.progress = min(100.0, max(0.0, elapsed / duration * 100.0))
            return self.progress

    def get_status(self) -> Dict[str, Any]:
        """
        Get current playback status.

        Returns:
            Dictionary with state, progress, current/next summaries and error
        """
        with self.lock:
            current = self.current_resource
            upcoming = self.next_resource
            return {
                "state": self.state.value,
                "progress": round(self.progress, 1),
                "error": self.error,
                "current": current.summary() if current else None,
                "next": upcoming.summary() if upcoming else None,
                "display_duration_seconds": self.current_display_duration(),
                "is_fetching": self._refill_in_flight,
                "queued": len(self.playlist),
            }

    def get_cursor(self) -> Optional[str]:
        cursor = self.cursor_store.get()
        return format_timestamp(cursor) if cursor else None

    # =========================================================================
    # Shutdown
    # =========================================================================

    def shutdown(self):
        """Stop the loop and release every resource the controller holds."""
        self.logger.info("Shutting down playback controller...")
        self._running = False
        self._stop_event.set()
        self._events.put(_STOP)

        if self._loop_thread and self._loop_thread.is_alive():
            self._loop_thread.join(timeout=1.0)
            if self._loop_thread.is_alive():
                self.logger.warning("Control loop did not stop within timeout")

        with self.lock:
            self._generation += 1
            self._cancel_timer(self._rotation_timer)
            self._cancel_timer(self._retry_timer)
            self._rotation_timer = None
            self._retry_timer = None

            pending = self._pending_releases
            self._pending_releases = []
            for timer, resource in pending:
                self._cancel_timer(timer)
                self.media_store.release(resource)

            for resource in (self.current_resource, self.next_resource):
                if resource is not None:
                    self.media_store.release(resource)
            self.current_resource = None
            self.next_resource = None

        if self._owns_executor:
            self._executor.shutdown(wait=False)
        self.logger.info("Playback controller shut down")
