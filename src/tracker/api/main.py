"""FastAPI application factory."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from tracker.api.routes import sync as sync_routes
from tracker.db.engine import get_engine
from tracker.runtime import TrackerRuntime


def create_app(runtime: Optional[TrackerRuntime] = None, start_runtime: bool = True) -> FastAPI:
    """
    Build the local control/status API around a runtime.

    Args:
        runtime: Runtime to expose. A default one (with sync history) is built if omitted.
        start_runtime: Start and stop the runtime with the app's lifespan.
    """
    if runtime is None:
        runtime = TrackerRuntime(db_engine=get_engine())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_runtime:
            await runtime.start()
        try:
            yield
        finally:
            if start_runtime:
                await runtime.stop()

    app = FastAPI(
        title="Tracker API",
        description="Sync status and control for the device telemetry engine",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app
