import argparse
import asyncio
import logging
import os
import sys

REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.app.config import settings
from backend.app.services.refresh import SeriesRefresher
from backend.app.services.series_store import SeriesStore, all_cache_keys
from backend.app.services.upstream import SourceFetcher


async def run(cache_dir: str) -> int:
    store = SeriesStore(cache_dir, regression_ratio=settings.regression_ratio)
    refresher = SeriesRefresher(store, SourceFetcher(), policy=settings.refresh)
    try:
        result = await refresher.refresh_all("cli")
    finally:
        await refresher.close()

    for key in all_cache_keys():
        series = store.get(key)
        if series is None:
            print(f"[missing] {key}")
            continue
        print(
            f"[updated] {store.path_for(key).name}: {series.earliest_date} -> {series.latest_date} "
            f"({len(series.rows)} rows, {series.provider})"
        )
    return 1 if result["failed"] else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Refresh every cached market series once.")
    parser.add_argument("--cache-dir", default=str(settings.cache_dir))
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(asyncio.run(run(args.cache_dir)))


if __name__ == "__main__":
    main()
