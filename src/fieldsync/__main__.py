"""
Main entrypoint: runs the dispatch scheduler in one process.

FastAPI runs separately under uvicorn (producer and admin endpoints).

Usage:
    python -m fieldsync setup               # configure a target interactively
    python -m fieldsync dispatch hr_system  # run one on-demand cycle and exit
    python -m fieldsync                     # starts the scheduler
    uvicorn fieldsync.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_setup() -> None:
    from fieldsync.scripts.setup import run_setup
    run_setup()


async def _run_dispatch(target_system: str) -> int:
    from fieldsync.db.engine import get_engine
    from fieldsync.scheduler.jobs import TargetBusyError, build_sync_scheduler
    from fieldsync.store.registry import TargetDisabledError, TargetNotConfiguredError

    sync_scheduler = build_sync_scheduler(get_engine())
    try:
        result = await sync_scheduler.trigger(target_system)
    except (TargetNotConfiguredError, TargetDisabledError, TargetBusyError) as exc:
        logger.error("%s", exc)
        return 1
    logger.info(
        "Dispatch for %s: claimed=%d synced=%d failed=%d",
        target_system,
        result.claimed,
        result.synced,
        result.failed,
    )
    return 0


async def _run_scheduler() -> None:
    from fieldsync.config import get_settings
    from fieldsync.db.engine import get_engine
    from fieldsync.scheduler.jobs import build_scheduler, build_sync_scheduler

    settings = get_settings()
    engine = get_engine()

    if not settings.encryption_key:
        logger.warning(
            "FIELDSYNC_ENCRYPTION_KEY not set; targets with an api key cannot be dispatched."
        )

    sync_scheduler = build_sync_scheduler(engine)
    scheduler = build_scheduler(sync_scheduler)
    scheduler.start()
    logger.info(
        "Scheduler started (worker %s, tick every %ds)",
        sync_scheduler.worker_id,
        settings.scheduler_tick_seconds,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        sync_scheduler.shutdown()
        scheduler.shutdown()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `setup`, `dispatch <target>`, or nothing
    if len(sys.argv) > 1 and sys.argv[1] == "setup":
        _run_setup()
    elif len(sys.argv) > 2 and sys.argv[1] == "dispatch":
        sys.exit(asyncio.run(_run_dispatch(sys.argv[2])))
    else:
        asyncio.run(_run_scheduler())
