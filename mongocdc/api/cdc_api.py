"""
FastAPI bindings for the change stream watcher.

The application lifespan starts the watcher on startup and stops it on
shutdown; the router exposes status and manual start/stop.
"""
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from pydantic import BaseModel, Field
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

from ..config.settings import Settings, get_settings
from ..connectors.cdc import CDCConfig, ChangeStreamWatcher
from ..mongodb import connection as mongo_conn
from ..utils.logging import configure_logging

logger = logging.getLogger(__name__)


class WatcherStatus(BaseModel):
    """Watcher status as returned by the API."""
    collection: str
    state: str
    watching: bool
    reconnect_attempts: int
    max_reconnect_attempts: int = Field(..., description="0 means unlimited")
    handlers: int
    events_dispatched: int
    resume_token: Optional[Any] = Field(None, description="Opaque; persist it to resume later")
    last_error: Optional[str] = None


def get_watcher(request: Request) -> ChangeStreamWatcher:
    """Dependency returning the watcher attached to the application."""
    watcher = getattr(request.app.state, "watcher", None)
    if watcher is None:
        raise HTTPException(status_code=503, detail={"error": "watcher_not_configured"})
    return watcher


def _status(watcher: ChangeStreamWatcher) -> WatcherStatus:
    status: Dict[str, Any] = watcher.get_status()
    status["resume_token"] = mongo_conn.serialize_value(status["resume_token"])
    return WatcherStatus(**status)


def create_cdc_router(prefix: str = "/cdc") -> APIRouter:
    """Build the CDC router. The watcher is read from ``app.state.watcher``."""
    router = APIRouter(prefix=prefix, tags=["cdc"])

    @router.get("/status", response_model=WatcherStatus)
    def watcher_status(watcher: ChangeStreamWatcher = Depends(get_watcher)):
        """Current watcher state and resume token."""
        return _status(watcher)

    @router.post("/start", response_model=WatcherStatus)
    def start_watcher(watcher: ChangeStreamWatcher = Depends(get_watcher)):
        """Start the watcher (no-op with a warning if already running)."""
        try:
            watcher.start()
        except PyMongoError as e:
            raise HTTPException(
                status_code=503,
                detail={"error": "changestream_unavailable", "message": str(e)}
            )
        except (TypeError, ValueError) as e:
            raise HTTPException(
                status_code=400,
                detail={"error": "invalid_changestream_options", "message": str(e)}
            )
        return _status(watcher)

    @router.post("/stop", response_model=WatcherStatus)
    def stop_watcher(watcher: ChangeStreamWatcher = Depends(get_watcher)):
        """Stop the watcher (no-op with a warning if not running)."""
        watcher.stop()
        return _status(watcher)

    return router


def cdc_lifespan(watcher: ChangeStreamWatcher, autostart: bool = True):
    """Lifespan handler that ties the watcher to application startup/shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.watcher = watcher
        if autostart:
            await run_in_threadpool(watcher.start)
        try:
            yield
        finally:
            await run_in_threadpool(watcher.shutdown)

    return lifespan


def build_watcher(settings: Settings) -> ChangeStreamWatcher:
    """Create a watcher for the configured collection."""
    collection = mongo_conn.open_collection(settings.mongo)
    return ChangeStreamWatcher(collection, CDCConfig.from_settings(settings.cdc))


def create_app(
    watcher: Optional[ChangeStreamWatcher] = None,
    settings: Optional[Settings] = None
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        watcher: Watcher to serve; built from settings when None
        settings: Application settings (global settings when None)
    """
    settings = settings or get_settings()
    configure_logging(settings.log.level, settings.log.json_format)

    if watcher is None:
        watcher = build_watcher(settings)

    app = FastAPI(
        title="mongocdc",
        version="0.1.0",
        lifespan=cdc_lifespan(watcher, autostart=settings.cdc.enabled)
    )
    app.state.watcher = watcher
    app.include_router(create_cdc_router(settings.api.prefix))
    return app


def main():
    """Serve the CDC API with uvicorn on the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        create_app(settings=settings),
        host=settings.api.host,
        port=settings.api.port,
        log_level=settings.log.level.lower()
    )


if __name__ == "__main__":
    main()
