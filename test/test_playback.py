"""
Unit tests for PlaybackController.

The controller runs with the real Playlist, CursorStore and MediaStore, and
with fake catalog/loader collaborators. Worker threads, timers and the clock
are replaced by the deterministic fakes from conftest.py.
"""

import os
import shutil
import tempfile
from collections import Counter
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from slidebox.catalog import CatalogPage, TransportError
from slidebox.config_manager import SlideshowSettings
from slidebox.cursor_store import CursorStore
from slidebox.database import Database
from slidebox.loader import LoadError
from slidebox.media_store import MediaStore
from slidebox.models import AssetDescriptor, MediaKind, PlayableResource
from slidebox.notifications import NotificationCenter
from slidebox.playback import PlaybackController, PlaybackState
from slidebox.playlist import Playlist

BASE = datetime(2023, 6, 1, tzinfo=timezone.utc)


def make_descriptors(count, kinds=None):
    """Images newest first, one hour apart."""
    kinds = kinds or {}
    descriptors = []
    for i in range(count):
        kind = kinds.get(i, MediaKind.IMAGE)
        descriptors.append(
            AssetDescriptor(
                f"a{i}",
                kind,
                BASE - timedelta(hours=i),
                duration_seconds=9.5 if kind == MediaKind.VIDEO else None,
            )
        )
    return descriptors


class FakeCatalog:
    """Inclusive, newest-first paging over a fixed list."""

    def __init__(self, descriptors):
        self.descriptors = list(descriptors)
        self.fail = False
        self.calls = []

    def fetch_page(self, cursor, page_size=None, filters=None):
        self.calls.append(cursor)
        if self.fail:
            raise TransportError("unreachable")
        matching = [d for d in self.descriptors if cursor is None or d.taken_at <= cursor]
        raw = matching[:page_size]
        return CatalogPage(
            descriptors=list(raw),
            raw_count=len(raw),
            oldest_taken_at=min((d.taken_at for d in raw), default=None),
        )


class FakeLoader:
    """Resolves descriptors into the media store; ids in fail_ids never resolve."""

    def __init__(self, media_store):
        self.media_store = media_store
        self.fail_ids = set()
        self.attempts = Counter()

    def retry_resolve(self, descriptor, max_attempts=None, on_retry=None, is_cancelled=None):
        total = (max_attempts or 0) + 1
        for attempt in range(1, total + 1):
            self.attempts[descriptor.id] += 1
            if descriptor.id not in self.fail_ids:
                return PlayableResource(
                    descriptor=descriptor,
                    primary=self.media_store.store(descriptor.id, "primary", b"p", "image/jpeg"),
                    preview=self.media_store.store(descriptor.id, "preview", b"v", "image/jpeg"),
                )
            if attempt < total and on_retry is not None:
                on_retry(descriptor, attempt, LoadError("boom", descriptor.id))
        raise LoadError(f"Skipping asset {descriptor.id} after multiple attempts", descriptor.id)


class RecordingMediaStore(MediaStore):
    """MediaStore that remembers every release request."""

    def __init__(self, directory):
        super().__init__(directory=directory)
        self.release_requests = []

    def release(self, resource):
        self.release_requests.append(resource)
        return super().release(resource)


@pytest.fixture
def temp_db():
    fd, path = tempfile.mkstemp(suffix=".db")
    os.close(fd)
    db = Database(db_path=path)
    yield db
    db.close()
    os.unlink(path)


@pytest.fixture
def media_store():
    temp_dir = tempfile.mkdtemp()
    yield RecordingMediaStore(temp_dir)
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def settings():
    return SlideshowSettings(
        server_url="http://photos.local",
        api_key="secret",
        page_size=3,
        asset_retry_count=1,
        catalog_retry_attempts=3,
        max_consecutive_skips=3,
    )


@pytest.fixture
def catalog():
    return FakeCatalog(make_descriptors(5))


@pytest.fixture
def loader(media_store):
    return FakeLoader(media_store)


@pytest.fixture
def cursor_store(temp_db):
    return CursorStore(temp_db)


@pytest.fixture
def make_controller(settings, catalog, loader, cursor_store, media_store, manual_timers, fake_clock):
    """Build a controller; executor and settings can be swapped per test."""
    controllers = []

    def build(executor, settings=settings):
        controller = PlaybackController(
            settings,
            catalog,
            loader,
            Playlist(page_size=settings.page_size, low_water_mark=settings.low_water_mark),
            cursor_store,
            media_store,
            notifications=NotificationCenter(),
            executor=executor,
            timer_factory=manual_timers,
            clock=fake_clock,
        )
        controllers.append(controller)
        return controller

    yield build
    for controller in controllers:
        controller.shutdown()


@pytest.fixture
def controller(make_controller, inline_executor):
    """Controller started and driven on the test thread, with work run inline."""
    playback = make_controller(inline_executor)
    playback.start(background=False)
    playback.run_pending()
    return playback


def fire(controller, timers, handler_name):
    fired = timers.fire_all(handler_name)
    controller.run_pending()
    return fired


def drain(controller, executor):
    """Run deferred work and loop events until both are idle."""
    while True:
        executor.run_all()
        if controller.run_pending() == 0 and not executor.jobs:
            return


def titles(controller):
    return [n.title for n in controller.notifications.list()]


# =========================================================================
# Startup
# =========================================================================


def test_start_shows_first_asset_and_stages_next(controller, cursor_store):
    assert controller.state == PlaybackState.PLAYING
    assert controller.current_resource.descriptor.id == "a0"
    assert controller.next_resource.descriptor.id == "a1"
    assert controller.promoted_count == 1
    assert cursor_store.get() == BASE


def test_config_error_is_fatal(make_controller, inline_executor, catalog):
    playback = make_controller(
        inline_executor, settings=SlideshowSettings(server_url="http://photos.local")
    )
    playback.start(background=False)
    playback.run_pending()

    assert playback.state == PlaybackState.FATAL
    assert playback.error == "Configuration Error: API key is missing. Please check your settings."
    assert catalog.calls == []


def test_zero_display_duration_is_fatal(make_controller, inline_executor, catalog, settings):
    playback = make_controller(inline_executor, settings=replace(settings, display_duration_ms=0))
    playback.start(background=False)
    playback.run_pending()

    assert playback.state == PlaybackState.FATAL
    assert playback.error.startswith("Configuration Error: display_duration_ms must be positive")
    assert catalog.calls == []


def test_empty_catalog_is_fatal(make_controller, inline_executor, catalog):
    catalog.descriptors = []
    playback = make_controller(inline_executor)
    playback.start(background=False)
    playback.run_pending()

    assert playback.state == PlaybackState.FATAL
    assert playback.error == "No photos found matching your filters."
    assert playback.current_resource is None

    # Terminal: resets and skips are refused
    assert playback.advance_now() is False
    assert playback.jump_to_date(BASE) is False
    assert playback.reset_to_latest() is False


def test_resume_from_persisted_cursor(make_controller, inline_executor, cursor_store, catalog):
    cursor_store.set(BASE - timedelta(hours=2))
    playback = make_controller(inline_executor)
    playback.start(background=False)
    playback.run_pending()

    assert catalog.calls[0] == BASE - timedelta(hours=2)
    assert playback.current_resource.descriptor.id == "a2"


def test_wrap_around_reaches_playing(make_controller, inline_executor, cursor_store, catalog):
    """A persisted cursor past the end of the catalog restarts from the most recent asset."""
    cursor_store.set(BASE - timedelta(days=365))
    cursor_store.clear = Mock(wraps=cursor_store.clear)
    playback = make_controller(inline_executor)
    playback.start(background=False)
    playback.run_pending()

    # Reset to "most recent", then moved to the newly shown asset
    cursor_store.clear.assert_called_once()
    assert playback.state == PlaybackState.PLAYING
    assert playback.current_resource.descriptor.id == "a0"
    assert cursor_store.get() == BASE
    assert catalog.calls[:2] == [BASE - timedelta(days=365), None]


# =========================================================================
# Rotation
# =========================================================================


def test_image_rotates_after_display_duration(controller, manual_timers, cursor_store):
    """An image shown for the display duration is promoted exactly once."""
    rotation = manual_timers.pending("_on_rotation_due")
    assert len(rotation) == 1
    assert rotation[0].interval == 15.0

    fire(controller, manual_timers, "_on_rotation_due")

    assert controller.promoted_count == 2
    assert controller.current_resource.descriptor.id == "a1"
    assert controller.next_resource.descriptor.id == "a2"
    assert cursor_store.get() == BASE - timedelta(hours=1)
    assert len(manual_timers.pending("_on_rotation_due")) == 1


def test_outgoing_resource_released_after_delay(controller, manual_timers, media_store):
    outgoing = controller.current_resource
    fire(controller, manual_timers, "_on_rotation_due")

    release_timers = manual_timers.pending("_on_release_due")
    assert len(release_timers) == 1
    assert release_timers[0].interval == 2.0
    assert media_store.is_live(outgoing.primary)

    fire(controller, manual_timers, "_on_release_due")

    assert not media_store.is_live(outgoing.primary)
    assert not media_store.is_live(outgoing.preview)


def test_every_resource_released_exactly_once(controller, manual_timers, media_store):
    """Through many rotations, a wrap-around and shutdown, nothing leaks or double-releases."""
    seen = []
    for _ in range(12):
        seen.append(controller.current_resource.descriptor.id)
        fire(controller, manual_timers, "_on_rotation_due")
        fire(controller, manual_timers, "_on_release_due")

    # Wrapped around the five-asset catalog
    assert seen[:7] == ["a0", "a1", "a2", "a3", "a4", "a0", "a1"]

    controller.shutdown()

    counts = Counter(id(resource) for resource in media_store.release_requests)
    assert counts and all(count == 1 for count in counts.values())
    assert media_store.live_count() == 0


def test_advance_now_skips_immediately(controller, manual_timers):
    old_timer = manual_timers.pending("_on_rotation_due")[0]

    assert controller.advance_now() is True
    controller.run_pending()

    assert controller.current_resource.descriptor.id == "a1"
    assert old_timer.cancelled
    assert controller.promoted_count == 2


def test_playback_error_advances(controller):
    controller.on_playback_error("a0")
    controller.run_pending()
    assert controller.current_resource.descriptor.id == "a1"


def test_events_for_other_assets_are_ignored(controller):
    controller.on_playback_error("not-current")
    controller.on_video_ended("not-current")
    controller.run_pending()
    assert controller.current_resource.descriptor.id == "a0"


def test_image_progress(controller, fake_clock):
    assert controller.tick() == 0.0
    fake_clock.advance(7.5)
    assert controller.tick() == pytest.approx(50.0)
    fake_clock.advance(60)
    assert controller.tick() == 100.0


def test_progress_with_zero_duration_stays_at_zero(controller, settings, fake_clock):
    controller.settings = replace(settings, display_duration_ms=0)
    fake_clock.advance(5)

    assert controller.tick() == 0.0


# =========================================================================
# Video
# =========================================================================


def test_video_uses_its_own_duration(make_controller, inline_executor, catalog, manual_timers, fake_clock):
    """A 9.5s video reaches 100% at 9.5s and advances when it ends, not on a timer."""
    catalog.descriptors = make_descriptors(5, kinds={0: MediaKind.VIDEO})
    playback = make_controller(inline_executor)
    playback.start(background=False)
    playback.run_pending()

    assert playback.current_resource.descriptor.is_video
    assert playback.current_display_duration() == 9.5
    assert manual_timers.pending("_on_rotation_due") == []

    fake_clock.advance(4.75)
    assert playback.tick() == pytest.approx(50.0)
    fake_clock.advance(4.75)
    assert playback.tick() == pytest.approx(100.0)

    playback.on_video_ended("a0")
    playback.run_pending()
    assert playback.current_resource.descriptor.id == "a1"
    assert len(manual_timers.pending("_on_rotation_due")) == 1


def test_reported_video_duration_wins(make_controller, inline_executor, catalog):
    catalog.descriptors = make_descriptors(5, kinds={0: MediaKind.VIDEO})
    playback = make_controller(inline_executor)
    playback.start(background=False)
    playback.run_pending()

    playback.report_video_duration(19.0, "a0")
    playback.run_pending()
    assert playback.current_display_duration() == 19.0

    # Ignored for anything but the current asset
    playback.report_video_duration(3.0, "a1")
    playback.run_pending()
    assert playback.current_display_duration() == 19.0


# =========================================================================
# Failures
# =========================================================================


def test_failed_asset_is_skipped(make_controller, inline_executor, loader):
    """A failing asset is tried retry_count + 1 times, then skipped without stopping."""
    loader.fail_ids = {"a1"}
    playback = make_controller(inline_executor)
    playback.start(background=False)
    playback.run_pending()

    assert loader.attempts["a1"] == 2
    assert playback.state == PlaybackState.PLAYING
    assert playback.current_resource.descriptor.id == "a0"
    assert playback.next_resource.descriptor.id == "a2"
    assert "Asset Load Failed" in titles(playback)
    assert "Retrying Asset Load..." in titles(playback)


def test_nothing_loads_is_fatal(make_controller, inline_executor, loader):
    loader.fail_ids = {f"a{i}" for i in range(5)}
    playback = make_controller(inline_executor)
    playback.start(background=False)
    playback.run_pending()

    assert playback.state == PlaybackState.FATAL
    assert playback.error == "Failed to load any assets after 3 attempts."


def test_catalog_unreachable_is_fatal_after_retries(
    make_controller, inline_executor, catalog, manual_timers
):
    catalog.fail = True
    playback = make_controller(inline_executor)
    playback.start(background=False)
    playback.run_pending()

    assert playback.state == PlaybackState.LOADING
    retry = manual_timers.pending("_on_refill_retry_due")
    assert len(retry) == 1
    assert retry[0].interval == 5.0

    fire(playback, manual_timers, "_on_refill_retry_due")
    fire(playback, manual_timers, "_on_refill_retry_due")

    assert len(catalog.calls) == 3
    assert playback.state == PlaybackState.FATAL
    assert playback.error == "Failed to connect to photo server: unreachable"


def test_catalog_outage_with_cursor_keeps_retrying(
    make_controller, inline_executor, catalog, cursor_store, manual_timers
):
    cursor_store.set(BASE)
    catalog.fail = True
    playback = make_controller(inline_executor)
    playback.start(background=False)
    playback.run_pending()

    for _ in range(4):
        fire(playback, manual_timers, "_on_refill_retry_due")

    assert playback.state == PlaybackState.LOADING
    assert titles(playback).count("Connection Problem") == 1

    catalog.fail = False
    fire(playback, manual_timers, "_on_refill_retry_due")

    assert playback.state == PlaybackState.PLAYING
    assert playback.current_resource.descriptor.id == "a0"


def test_manual_advance_during_outage_waits_for_retry(controller, catalog, manual_timers):
    """Skipping while the server is down does not fetch ahead of the retry delay."""
    catalog.fail = True
    controller.advance_now()
    controller.run_pending()
    assert len(catalog.calls) == 2
    assert len(manual_timers.pending("_on_refill_retry_due")) == 1

    for _ in range(4):
        controller.advance_now()
        controller.run_pending()

    assert controller.state == PlaybackState.STALLED
    assert len(catalog.calls) == 2

    fire(controller, manual_timers, "_on_refill_retry_due")
    assert len(catalog.calls) == 3

    catalog.fail = False
    fire(controller, manual_timers, "_on_refill_retry_due")
    assert len(catalog.calls) == 4
    assert controller.state == PlaybackState.PLAYING


def test_stalled_until_next_is_ready(make_controller, deferred_executor, manual_timers):
    """Advancing before next is resolved holds the current asset, then self-heals."""
    playback = make_controller(deferred_executor)
    playback.start(background=False)
    playback.run_pending()

    # Refill, then the first resolve
    deferred_executor.run_all()
    playback.run_pending()
    deferred_executor.run_all()
    playback.run_pending()

    assert playback.current_resource.descriptor.id == "a0"
    assert playback.next_resource is None
    assert len(deferred_executor.jobs) == 1  # a1 still resolving

    fire(playback, manual_timers, "_on_rotation_due")

    assert playback.state == PlaybackState.STALLED
    assert playback.current_resource.descriptor.id == "a0"

    drain(playback, deferred_executor)

    assert playback.state == PlaybackState.PLAYING
    assert playback.current_resource.descriptor.id == "a1"


# =========================================================================
# Timeline
# =========================================================================


def test_jump_discards_in_flight_resolve(
    make_controller, deferred_executor, media_store, cursor_store, loader
):
    """A resolve that completes after a jump is released, never shown."""
    playback = make_controller(deferred_executor)
    playback.start(background=False)
    playback.run_pending()
    deferred_executor.run_all()
    playback.run_pending()
    deferred_executor.run_all()
    playback.run_pending()
    assert playback.current_resource.descriptor.id == "a0"
    assert len(deferred_executor.jobs) == 1

    target = BASE - timedelta(hours=2)
    assert playback.jump_to_date(target) is True
    playback.run_pending()

    assert playback.state == PlaybackState.LOADING
    assert playback.current_resource is None
    assert cursor_store.get() == target

    drain(playback, deferred_executor)

    assert loader.attempts["a1"] == 1
    stale = [r for r in media_store.release_requests if r.descriptor.id == "a1"]
    assert len(stale) == 1
    assert not media_store.is_live(stale[0].primary)

    assert playback.state == PlaybackState.PLAYING
    assert playback.current_resource.descriptor.id == "a2"
    assert cursor_store.get() == target
    assert "Timeline Set" in titles(playback)


def test_reset_to_latest(controller, manual_timers, cursor_store, media_store):
    fire(controller, manual_timers, "_on_rotation_due")
    fire(controller, manual_timers, "_on_rotation_due")
    assert controller.current_resource.descriptor.id == "a2"

    assert controller.reset_to_latest() is True
    controller.run_pending()

    assert controller.current_resource.descriptor.id == "a0"
    assert cursor_store.get() == BASE
    assert "Timeline Reset" in titles(controller)


# =========================================================================
# Status and shutdown
# =========================================================================


def test_get_status(controller, fake_clock):
    fake_clock.advance(3)
    controller.tick()

    status = controller.get_status()

    assert status["state"] == "playing"
    assert status["progress"] == 20.0
    assert status["current"]["id"] == "a0"
    assert status["current"]["url"].startswith("/api/media/")
    assert status["next"]["id"] == "a1"
    assert status["display_duration_seconds"] == 15.0
    assert status["error"] is None
    assert controller.get_cursor() == "2023-06-01T00:00:00.000Z"


def test_shutdown_releases_everything(controller, manual_timers, media_store):
    fire(controller, manual_timers, "_on_rotation_due")
    assert media_store.live_count() > 0

    controller.shutdown()

    assert media_store.live_count() == 0
    assert controller.current_resource is None
    assert controller.next_resource is None
    assert manual_timers.pending() == []
