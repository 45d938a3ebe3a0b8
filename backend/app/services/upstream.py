from __future__ import annotations

import asyncio
import csv
import logging
from io import StringIO
from typing import Iterable, List, NamedTuple, Optional

import httpx

from ..assets import CsvLayout, SourceConfig
from ..config import settings
from ..market_data import Row, parse_close, parse_day, is_valid_row

logger = logging.getLogger(__name__)

_MISSING_VALUES = {"", ".", "N/D", "N/A", "--", "-", "NULL"}


class FetchError(RuntimeError):
    """One provider could not deliver usable data."""


class InsufficientDataError(FetchError):
    pass


class AllProvidersFailedError(RuntimeError):
    def __init__(self, message: str, failures: list[str]):
        super().__init__(message)
        self.failures = failures


class FetchResult(NamedTuple):
    source: SourceConfig
    rows: List[Row]


def _looks_rate_limited(text: str) -> bool:
    return "exceeded the daily hits limit" in (text or "").lower()


def parse_csv(text: str, layout: CsvLayout) -> List[Row]:
    rows: List[Row] = []
    reader = csv.reader(StringIO((text or "").strip()))
    next(reader, None)  # header
    for record in reader:
        if len(record) <= max(layout.date_column, layout.close_column):
            continue
        close_raw = record[layout.close_column].strip()
        if close_raw.upper() in _MISSING_VALUES:
            continue
        day = parse_day(record[layout.date_column])
        close = parse_close(close_raw.replace(",", ""))
        if not is_valid_row(day, close):
            continue
        rows.append((day, close))
    return rows


class SourceFetcher:
    """Tries each provider in priority order until one yields enough history."""

    def __init__(
        self,
        min_rows: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        self.min_rows = settings.min_history_rows if min_rows is None else min_rows
        self._transport = transport
        self._headers = {
            "User-Agent": user_agent or settings.user_agent,
            "Accept": "text/csv,text/plain;q=0.9,*/*;q=0.8",
        }

    async def fetch_text(self, url: str, timeout: float) -> str:
        async with httpx.AsyncClient(
            timeout=timeout,
            transport=self._transport,
            headers=self._headers,
            follow_redirects=True,
        ) as client:
            try:
                # wait_for cancels the in-flight request once the budget is spent
                resp = await asyncio.wait_for(client.get(url), timeout)
            except asyncio.TimeoutError as exc:
                raise FetchError(f"timed out after {timeout:g}s") from exc
            except httpx.TimeoutException as exc:
                raise FetchError(f"timed out after {timeout:g}s") from exc
            except httpx.HTTPError as exc:
                raise FetchError(str(exc) or exc.__class__.__name__) from exc

        if resp.status_code in {403, 429}:
            raise FetchError(f"rate limited (HTTP {resp.status_code})")
        if resp.status_code >= 400:
            raise FetchError(f"HTTP {resp.status_code}")
        text = resp.text
        if _looks_rate_limited(text):
            raise FetchError("rate limited (daily hits limit)")
        return text

    async def fetch_source(self, source: SourceConfig) -> List[Row]:
        text = await self.fetch_text(source.url, source.timeout)
        rows = parse_csv(text, source.layout)
        if len(rows) < self.min_rows:
            raise InsufficientDataError(f"too few data points ({len(rows)})")
        return rows

    async def fetch(self, sources: Iterable[SourceConfig], context: str = "") -> FetchResult:
        failures: list[str] = []
        for source in sources:
            try:
                rows = await self.fetch_source(source)
            except FetchError as exc:
                reason = f"{source.provider} ({source.resolved_mode.label}): {exc}"
                logger.warning("Upstream fetch failed for %s: %s", context or source.url, reason)
                failures.append(reason)
                continue
            return FetchResult(source, rows)

        prefix = f"{context} " if context else ""
        detail = " | ".join(failures) if failures else "no providers configured"
        raise AllProvidersFailedError(f"{prefix}upstream data unavailable ({detail})", failures)
