"""
FastAPI web server for slidebox.

Provides the REST API the display layer polls for the current/next media,
progress and notifications, and the playback and timeline controls.
"""

import logging
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel

from ..config_manager import CONFIG_SCHEMA, ConfigManager
from ..cursor_store import parse_timestamp
from ..media_store import MediaStore
from ..playback import PlaybackController

logger = logging.getLogger(__name__)


# Request models
class TimelineRequest(BaseModel):
    date: Optional[str] = None  # ISO-8601; null resets to the most recent


class VideoEventRequest(BaseModel):
    asset_id: Optional[str] = None


class VideoDurationRequest(BaseModel):
    duration_seconds: float
    asset_id: Optional[str] = None


class ConfigUpdateRequest(BaseModel):
    key: str
    value: str


# Dependency to get components
def get_playback_controller(request: Request) -> PlaybackController:
    """Get PlaybackController from app state."""
    return request.app.state.playback_controller


def get_config_manager(request: Request) -> ConfigManager:
    """Get ConfigManager from app state."""
    return request.app.state.config_manager


def get_media_store(request: Request) -> MediaStore:
    """Get MediaStore from app state."""
    return request.app.state.media_store


def create_app(
    playback_controller: PlaybackController,
    config_manager: ConfigManager,
    media_store: MediaStore,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        playback_controller: PlaybackController instance
        config_manager: ConfigManager instance
        media_store: MediaStore serving resolved media bytes

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(title="slidebox", version="1.0.0")

    # Store components in app state
    app.state.playback_controller = playback_controller
    app.state.config_manager = config_manager
    app.state.media_store = media_store

    # Status endpoints
    @app.get("/api/status")
    async def get_status(playback: PlaybackController = Depends(get_playback_controller)):
        """Current/next media, state, progress and pending notifications."""
        status = playback.get_status()
        status["cursor"] = playback.get_cursor()
        status["notifications"] = [asdict(n) for n in playback.notifications.list()]
        return status

    # Playback endpoints
    @app.post("/api/playback/advance")
    async def advance(playback: PlaybackController = Depends(get_playback_controller)):
        """Skip to the next asset."""
        if not playback.advance_now():
            raise HTTPException(status_code=409, detail="Slideshow is stopped")
        return {"status": "advancing"}

    @app.post("/api/playback/timeline")
    async def set_timeline(
        request: TimelineRequest,
        playback: PlaybackController = Depends(get_playback_controller),
    ):
        """Jump to a date, or back to the most recent assets when date is null."""
        if request.date:
            try:
                when: Optional[datetime] = parse_timestamp(request.date)
            except ValueError:
                raise HTTPException(status_code=400, detail=f"Invalid date: {request.date}")
            accepted = playback.jump_to_date(when)
        else:
            when = None
            accepted = playback.reset_to_latest()

        if not accepted:
            raise HTTPException(status_code=409, detail="Slideshow is stopped")
        return {"status": "timeline_set" if when else "timeline_reset"}

    @app.post("/api/playback/reset")
    async def reset(playback: PlaybackController = Depends(get_playback_controller)):
        """Restart from the most recent assets."""
        if not playback.reset_to_latest():
            raise HTTPException(status_code=409, detail="Slideshow is stopped")
        return {"status": "timeline_reset"}

    @app.post("/api/playback/video-ended")
    async def video_ended(
        request: VideoEventRequest,
        playback: PlaybackController = Depends(get_playback_controller),
    ):
        playback.on_video_ended(request.asset_id)
        return {"status": "ok"}

    @app.post("/api/playback/playback-error")
    async def playback_error(
        request: VideoEventRequest,
        playback: PlaybackController = Depends(get_playback_controller),
    ):
        playback.on_playback_error(request.asset_id)
        return {"status": "ok"}

    @app.post("/api/playback/video-duration")
    async def video_duration(
        request: VideoDurationRequest,
        playback: PlaybackController = Depends(get_playback_controller),
    ):
        if request.duration_seconds <= 0:
            raise HTTPException(status_code=400, detail="Duration must be positive")
        playback.report_video_duration(request.duration_seconds, request.asset_id)
        return {"status": "ok"}

    # Media endpoint
    @app.get("/api/media/{handle_id}")
    async def get_media(handle_id: str, store: MediaStore = Depends(get_media_store)):
        """Bytes for a live media handle."""
        handle = store.get(handle_id)
        if handle is None or not handle.path.exists():
            raise HTTPException(status_code=404, detail="Media not found")
        return FileResponse(
            handle.path,
            media_type=handle.content_type or "application/octet-stream",
            headers={"Cache-Control": "no-store"},
        )

    # Notification endpoints
    @app.get("/api/notifications")
    async def get_notifications(playback: PlaybackController = Depends(get_playback_controller)):
        return {"notifications": [asdict(n) for n in playback.notifications.list()]}

    @app.delete("/api/notifications/{notification_id}")
    async def dismiss_notification(
        notification_id: int,
        playback: PlaybackController = Depends(get_playback_controller),
    ):
        if not playback.dismiss_notification(notification_id):
            raise HTTPException(status_code=404, detail="Notification not found")
        return {"status": "dismissed"}

    # Config endpoints
    @app.get("/api/config")
    async def get_config(config: ConfigManager = Depends(get_config_manager)):
        """Configuration values (secrets masked), schema and groups."""
        return config.get_full_config()

    @app.patch("/api/config")
    async def update_config(
        request: ConfigUpdateRequest,
        config: ConfigManager = Depends(get_config_manager),
    ):
        """Update an editable setting. Takes effect on the next restart."""
        if request.key not in CONFIG_SCHEMA:
            raise HTTPException(status_code=400, detail=f"Unknown config key: {request.key}")
        if not config.set(request.key, request.value):
            raise HTTPException(status_code=500, detail="Failed to save config")
        logger.info("Config updated: %s", request.key)
        return {"status": "updated", "restart_required": True}

    return app
