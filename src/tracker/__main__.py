"""
Main entrypoint: runs the sync engine and its local status API in one process.

The API has to live in the engine's process: sync status and the offline
queue are in-memory state owned by the runtime.

Usage:
    python -m tracker login <user-id>   # store the principal the engine syncs for
    python -m tracker logout            # forget it
    python -m tracker sync              # one manual pass, then exit
    python -m tracker                   # scheduler + background windows + API
"""
import asyncio
import logging
import sys

from tracker.config import get_settings

settings = get_settings()
logging.basicConfig(
    level=(settings.log_level or "INFO").upper(),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _login(user_id: str) -> None:
    from tracker.collectors.principal import PrincipalStore
    from tracker.models.snapshots import to_iso, utcnow

    PrincipalStore(settings.session_path).save({"id": user_id, "createdAt": to_iso(utcnow())})
    logger.info("Logged in as %s (session at %s)", user_id, settings.session_path)


def _logout() -> None:
    from tracker.collectors.principal import PrincipalStore

    PrincipalStore(settings.session_path).clear()
    logger.info("Logged out")


async def _sync_once() -> None:
    from tracker.db.engine import get_engine
    from tracker.models.record import SyncKind
    from tracker.runtime import TrackerRuntime

    runtime = TrackerRuntime(db_engine=get_engine())
    runtime.queue.load()
    try:
        outcome = await runtime.engine.run_pass(SyncKind.MANUAL)
        status = runtime.status.current
        logger.info("Pass %s: %s (%d queued)", outcome.value, status.description, runtime.queue.count())
    finally:
        await runtime.stop()


async def _run() -> None:
    import uvicorn

    from tracker.api.main import create_app

    app = create_app()
    server = uvicorn.Server(
        uvicorn.Config(app, host=settings.api_host, port=settings.api_port, log_level="info")
    )
    logger.info("Starting tracker on http://%s:%d", settings.api_host, settings.api_port)
    try:
        await server.serve()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        logger.info("Goodbye.")


if __name__ == "__main__":
    command = sys.argv[1] if len(sys.argv) > 1 else None
    if command == "login":
        if len(sys.argv) < 3:
            sys.exit("usage: python -m tracker login <user-id>")
        _login(sys.argv[2])
    elif command == "logout":
        _logout()
    elif command == "sync":
        asyncio.run(_sync_once())
    else:
        asyncio.run(_run())
