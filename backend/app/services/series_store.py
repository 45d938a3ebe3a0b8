"""
Market series store: in-memory map backed by one JSON file per cache key.
Refuses updates that would silently shrink known history.
"""
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from ..assets import ASSETS
from ..market_data import ALL_RETURN_MODES, AssetSeries, CacheKey, ReturnMode, series_from_payload, series_to_payload

logger = logging.getLogger(__name__)


class RegressionRejected(RuntimeError):
    pass


def cache_file_name(key: CacheKey) -> str:
    suffix = ".json" if key.return_mode is ReturnMode.PRICE else f".{key.return_mode.value}.json"
    return f"{key.asset_id}{suffix}"


class SeriesStore:
    """Authoritative holder of the latest accepted series per (asset, return mode)."""

    def __init__(self, cache_dir: Path, regression_ratio: float = 0.85):
        self.cache_dir = Path(cache_dir)
        self.regression_ratio = regression_ratio
        self._memory: Dict[CacheKey, AssetSeries] = {}

    def path_for(self, key: CacheKey) -> Path:
        return self.cache_dir / cache_file_name(key)

    def get(self, key: CacheKey) -> Optional[AssetSeries]:
        return self._memory.get(key)

    def load(self, key: CacheKey) -> Optional[AssetSeries]:
        """Memory first, then the persisted file (which then populates memory)."""
        series = self._memory.get(key)
        if series is not None:
            return series
        series = self.read_file(key)
        if series is not None:
            self._memory[key] = series
        return series

    def read_file(self, key: CacheKey) -> Optional[AssetSeries]:
        path = self.path_for(key)
        asset = ASSETS.get(key.asset_id)
        try:
            with path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
            return series_from_payload(
                payload,
                asset_id=key.asset_id,
                asset_name=asset.name if asset else key.asset_id,
                fallback_mode=key.return_mode,
            )
        except FileNotFoundError:
            return None
        except Exception as e:
            logger.warning(f"Local cache read failed for {key}: {e}")
            return None

    def write_file(self, key: CacheKey, series: AssetSeries) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(key)
        serialized = json.dumps(series_to_payload(series), separators=(",", ":"))
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(self.cache_dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def _check_regression(self, baseline: Optional[AssetSeries], incoming: AssetSeries) -> None:
        if baseline is None or not baseline.rows:
            return
        # A total-return key still aliased to price data is a placeholder, not a baseline.
        if baseline.requested_mode is ReturnMode.TOTAL_RETURN and baseline.resolved_mode is not ReturnMode.TOTAL_RETURN:
            return
        if baseline.kind != incoming.kind:
            return
        if incoming.earliest_date > baseline.earliest_date and len(incoming.rows) < len(baseline.rows) * self.regression_ratio:
            raise RegressionRejected(
                f"{incoming.asset_name} update has shorter history "
                f"({incoming.earliest_date} / {len(incoming.rows)} rows vs "
                f"{baseline.earliest_date} / {len(baseline.rows)} rows)"
            )

    def put(self, key: CacheKey, series: AssetSeries) -> AssetSeries:
        """Store an upstream result unless it regresses history; returns the entry now held."""
        baseline = self.load(key)
        try:
            self._check_regression(baseline, series)
        except RegressionRejected as e:
            logger.warning(
                "%s; keeping existing cache (%s -> %s)", e, baseline.earliest_date, baseline.latest_date
            )
            return baseline
        self.write_file(key, series)
        self._memory[key] = series
        return series

    def replace(self, key: CacheKey, series: AssetSeries, persist: bool = True) -> AssetSeries:
        """Swap in a series derived from the current entry (mode fallback, backfill)."""
        self._memory[key] = series
        if persist:
            try:
                self.write_file(key, series)
            except OSError as e:
                logger.warning(f"Local cache write failed for {key}: {e}")
        return series

    def warm(self, keys: Iterable[CacheKey]) -> int:
        loaded = 0
        for key in keys:
            if self.load(key) is not None:
                loaded += 1
        return loaded

    def keys(self) -> List[CacheKey]:
        return list(self._memory.keys())

    def health_check(self) -> dict:
        return {
            "status": "healthy",
            "backend": "memory+file",
            "cache_dir": str(self.cache_dir),
            "keys_cached": len(self._memory),
        }


def all_cache_keys() -> List[CacheKey]:
    return [CacheKey(asset_id, mode) for asset_id in ASSETS for mode in ALL_RETURN_MODES]
