"""Main application entry point."""

import asyncio
import signal
import sys
from datetime import datetime, timezone
from typing import Optional, Set

from aiohttp import web, web_runner

from .api_clients import GoogleDriveClient
from .config import ConnectorConfig, ConfigurationError, get_settings, load_config_from_env
from .core import ConflictDecision, SyncEngine
from .exceptions import SyncEngineError
from .utils.logging import setup_logging, get_logger


class DriveSyncApp:
    """Main Drive Sync application."""

    def __init__(self, config: Optional[ConnectorConfig] = None):
        """Initialize the application.

        Args:
            config: Preloaded configuration; read from file/environment when omitted
        """
        self.settings = get_settings()
        self.logger = get_logger("DriveSync")
        self.config = config
        self.running = False
        self.stop_requested = False
        self.started_at: Optional[datetime] = None
        self.web_runner: Optional[web_runner.AppRunner] = None
        self.client: Optional[GoogleDriveClient] = None
        self.engine: Optional[SyncEngine] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._background: Set[asyncio.Task] = set()
        self._start_task: Optional[asyncio.Task] = None

    async def startup(self):
        """Application startup."""
        self._loop = asyncio.get_event_loop()
        if self.config is None:
            self.config = load_config_from_env()

        setup_logging(log_level=self.config.log_level, log_format=self.config.log_format)
        self.logger.info(
            "Starting Drive Sync",
            version=self.settings.version,
            environment=self.config.environment,
            local_path=self.config.sync.local_path
        )

        if self.client is None:
            google = self.settings.google_drive
            self.client = GoogleDriveClient(
                credentials_path=google.credentials_path,
                token_path=google.token_path,
                scopes=google.scopes,
                large_file_threshold=self.config.sync.large_file_threshold_bytes
            )
        if self.engine is None:
            self.engine = SyncEngine(self.config.sync, self.client)

        if self.settings.status_server.enabled:
            await self._setup_web_server()

        self.started_at = datetime.now(timezone.utc)
        if self.stop_requested:
            return

        await self.engine.start()

        if self.stop_requested:
            self.logger.info("Shutdown requested during initial sync")
            return

        self.running = True
        self.logger.info("Drive Sync started successfully")

    def request_stop(self):
        """Ask the application to shut down.

        Safe to call from a signal handler: the engine's active flag is
        cleared on the event loop, which interrupts an initial sync that is
        still running.
        """
        self.stop_requested = True
        self.running = False

        if self.engine is not None and self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._spawn, self.engine.stop)

    async def shutdown(self):
        """Application shutdown."""
        self.logger.info("Shutting down Drive Sync")
        self.running = False

        if self.engine:
            await self.engine.stop()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        await self._stop_web_server()
        self.logger.info("Drive Sync stopped")

    def _spawn(self, coro_factory):
        task = asyncio.ensure_future(coro_factory())
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task):
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.logger.error("Background task failed", error=str(task.exception()))

    async def run(self):
        """Run until a shutdown signal arrives."""
        try:
            await self.startup()
            while self.running:
                await asyncio.sleep(1)

        except KeyboardInterrupt:
            self.logger.info("Received shutdown signal")
        finally:
            await self.shutdown()

    def create_web_app(self) -> web.Application:
        web_app = web.Application()
        web_app.router.add_get('/health', self._health_handler)
        web_app.router.add_get('/status', self._status_handler)
        web_app.router.add_get('/folders', self._folders_handler)
        web_app.router.add_post('/conflict', self._conflict_handler)
        web_app.router.add_post('/settings', self._settings_handler)
        web_app.router.add_post('/sync/start', self._sync_start_handler)
        web_app.router.add_post('/sync/stop', self._sync_stop_handler)
        web_app.router.add_post('/sync/folder', self._sync_folder_handler)
        return web_app

    async def _setup_web_server(self):
        """Set up web server for health checks and status."""
        server = self.settings.status_server

        self.web_runner = web_runner.AppRunner(self.create_web_app())
        await self.web_runner.setup()

        site = web_runner.TCPSite(self.web_runner, server.host, server.port)
        await site.start()

        self.logger.info(f"Status server started on http://{server.host}:{server.port}")

    async def _stop_web_server(self):
        if self.web_runner:
            await self.web_runner.cleanup()
            self.web_runner = None
            self.logger.info("Status server stopped")

    async def _health_handler(self, request):
        """Health check endpoint."""
        syncing = bool(self.engine and self.engine.is_active)
        uptime = (datetime.now(timezone.utc) - self.started_at).total_seconds() if self.started_at else 0

        health_data = {
            "status": "healthy" if syncing else "unhealthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": self.settings.version,
            "uptime_seconds": round(uptime, 1)
        }
        return web.json_response(health_data, status=200 if syncing else 503)

    async def _status_handler(self, request):
        """Detailed status endpoint."""
        status_data = {
            "application": {
                "name": self.settings.name,
                "version": self.settings.version,
                "running": self.running,
                "timestamp": datetime.now(timezone.utc).isoformat()
            },
            "sync": self.engine.get_status() if self.engine else None,
            "recent_events": self.engine.reporter.recent() if self.engine else [],
            "remote": await self.client.get_sync_info() if self.client else None
        }
        return web.json_response(status_data)

    async def _folders_handler(self, request):
        if not self.engine:
            return web.json_response({"error": "Sync engine not started"}, status=503)

        try:
            folders = await self.engine.list_drive_folders()
        except Exception as e:
            self.logger.error("Failed to list Drive folders", error=str(e))
            return web.json_response({"error": str(e)}, status=502)

        return web.json_response({"folders": folders})

    async def _conflict_handler(self, request):
        """Accept a decision for the pending 'ask' conflict."""
        if not self.engine:
            return web.json_response({"error": "Sync engine not started"}, status=503)

        body = await _json_body(request)
        if body is None:
            return web.json_response({"error": "Request body must be a JSON object"}, status=400)

        try:
            decision = ConflictDecision(body.get("decision"))
        except ValueError:
            valid = [d.value for d in ConflictDecision]
            return web.json_response({"error": f"decision must be one of {valid}"}, status=400)

        if not self.engine.submit_conflict_decision(decision, body.get("path")):
            return web.json_response({"error": "No matching conflict is waiting for a decision"}, status=409)

        return web.json_response({"accepted": True, "decision": decision.value})

    async def _settings_handler(self, request):
        """Change the conflict policy and/or the worker limit at runtime."""
        if not self.engine:
            return web.json_response({"error": "Sync engine not started"}, status=503)

        body = await _json_body(request)
        if body is None:
            return web.json_response({"error": "Request body must be a JSON object"}, status=400)

        try:
            if "conflict_policy" in body:
                self.engine.set_conflict_policy(body["conflict_policy"])
            if "max_concurrent_operations" in body:
                self.engine.set_max_concurrency(int(body["max_concurrent_operations"]))
        except (TypeError, ValueError) as e:
            return web.json_response({"error": str(e)}, status=400)

        return web.json_response({
            "conflict_policy": self.engine.conflict_policy.value,
            "max_concurrent_operations": self.engine.max_concurrency
        })

    async def _sync_start_handler(self, request):
        """Start syncing; the initial full sync runs in the background."""
        if not self.engine:
            return web.json_response({"error": "Sync engine not started"}, status=503)

        starting = self._start_task is not None and not self._start_task.done()
        if self.engine.is_active or starting:
            return web.json_response({"error": "Sync is already running"}, status=409)

        self._start_task = self._spawn(self.engine.start)
        return web.json_response({"starting": True}, status=202)

    async def _sync_stop_handler(self, request):
        if not self.engine:
            return web.json_response({"error": "Sync engine not started"}, status=503)

        await self.engine.stop()
        return web.json_response({"syncing": False})

    async def _sync_folder_handler(self, request):
        """Choose the Drive folder used by the next start."""
        if not self.engine:
            return web.json_response({"error": "Sync engine not started"}, status=503)

        body = await _json_body(request)
        if body is None:
            return web.json_response({"error": "Request body must be a JSON object"}, status=400)

        try:
            self.engine.set_drive_folder(
                folder_id=body.get("drive_folder_id"),
                folder_path=body.get("drive_folder_path")
            )
        except SyncEngineError as e:
            return web.json_response({"error": str(e)}, status=409)
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)

        return web.json_response({
            "drive_folder_id": self.engine.config.drive_folder_id,
            "drive_folder_path": self.engine.config.drive_folder_path
        })


async def _json_body(request) -> Optional[dict]:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def setup_signal_handlers(app: DriveSyncApp):
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(signum, frame):
        app.logger.info(f"Received signal {signum}")
        app.request_stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


async def main():
    """Main entry point."""
    setup_logging()

    logger = get_logger("main")
    logger.info("Initializing Drive Sync application")

    app = DriveSyncApp()
    setup_signal_handlers(app)
    await app.run()


def run():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        print(f"Application failed with error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
