"""
Main entry point for slidebox.

Initializes all components and starts the server.
"""

import argparse
import logging
from typing import Optional

import requests
import uvicorn

from .catalog import AssetCatalogClient
from .config_manager import ConfigManager, SlideshowSettings
from .cursor_store import CursorStore
from .database import Database
from .loader import AssetLoader
from .media_store import MediaStore
from .notifications import NotificationCenter
from .playback import PlaybackController
from .playlist import Playlist
from .web.server import create_app

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


class SlideshowServer:
    """Main server class that orchestrates all components."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Initialize all components.

        Args:
            db_path: SQLite database path (defaults to ~/.slidebox/slidebox.db)
        """
        logger.info("Initializing slidebox server...")

        self.database = Database(db_path)
        self.config_manager = ConfigManager(self.database)
        self.settings = SlideshowSettings.from_config(self.config_manager)

        if not self.settings.server_url or not self.settings.api_key:
            logger.warning(
                "Photo server URL or API key not configured. Set %s and %s, "
                "or update them via /api/config and restart.",
                ConfigManager.env_name("server_url"),
                ConfigManager.env_name("api_key"),
            )

        # Media left over from a previous run is never reused
        self.media_store = MediaStore(self.config_manager)
        self.media_store.cleanup()

        # One HTTP session shared by catalog queries and downloads
        self.session = requests.Session()
        self.catalog = AssetCatalogClient(self.settings, session=self.session)
        self.loader = AssetLoader(self.settings, self.media_store, session=self.session)
        self.playlist = Playlist(
            page_size=self.settings.page_size, low_water_mark=self.settings.low_water_mark
        )
        self.cursor_store = CursorStore(self.database)
        self.notifications = NotificationCenter()

        self.playback_controller = PlaybackController(
            self.settings,
            self.catalog,
            self.loader,
            self.playlist,
            self.cursor_store,
            self.media_store,
            notifications=self.notifications,
        )

        self.web_app = create_app(self.playback_controller, self.config_manager, self.media_store)
        self.uvicorn_server = None

        logger.info("slidebox server initialized")

    def run(self, host: str = "0.0.0.0", port: int = 8000):
        """Start the slideshow and the web server (blocking)."""
        logger.info("Starting slidebox server...")
        self.playback_controller.start()

        logger.info("=" * 60)
        logger.info("slidebox is running!")
        logger.info("API: http://%s:%s/api", host, port)
        logger.info("=" * 60)

        config = uvicorn.Config(self.web_app, host=host, port=port, log_level="info")
        self.uvicorn_server = uvicorn.Server(config)
        self.uvicorn_server.run()

    def stop(self):
        """Stop all components."""
        logger.info("Stopping slidebox server...")

        if self.uvicorn_server:
            self.uvicorn_server.should_exit = True

        if self.playback_controller:
            self.playback_controller.shutdown()

        if self.loader:
            self.loader.shutdown()

        if self.media_store:
            self.media_store.release_all()

        if self.session:
            self.session.close()

        if self.database:
            self.database.close()

        logger.info("slidebox server stopped")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="slidebox - photo server slideshow engine")
    parser.add_argument("--host", default="0.0.0.0", help="Address to bind the API to")
    parser.add_argument("--port", type=int, default=8000, help="Port to bind the API to")
    parser.add_argument("--db", default=None, help="SQLite database path")
    args = parser.parse_args()

    server = SlideshowServer(db_path=args.db)
    try:
        server.run(host=args.host, port=args.port)
    except KeyboardInterrupt:
        pass
    finally:
        server.stop()


if __name__ == "__main__":
    main()
