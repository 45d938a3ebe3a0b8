import asyncio
import logging
from typing import Optional

from .config import settings
from .services.refresh import SeriesRefresher

logger = logging.getLogger(__name__)


async def _warmup_background(refresher: SeriesRefresher) -> None:
    try:
        await refresher.warmup()
        logger.info("Initial cache warmup complete.")
    except Exception as exc:
        logger.warning("Initial cache warmup failed: %s", exc)
    if not settings.auto_refresh:
        return
    try:
        refresher.start_auto_refresh()
    except Exception as exc:
        logger.warning("Background refresh failed to start: %s", exc)


def start_workers(refresher: SeriesRefresher) -> Optional[asyncio.Task]:
    # Keep startup path non-blocking; warmup and the refresh timer run as tasks.
    return asyncio.get_running_loop().create_task(_warmup_background(refresher), name="warmup")


async def stop_workers(refresher: SeriesRefresher) -> None:
    await refresher.close()
