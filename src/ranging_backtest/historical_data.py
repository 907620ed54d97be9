"""Historical candle fetchers for backtesting.

Two upstream providers are supported:

* **KuCoin public REST** (default): unauthenticated ``/api/v1/kline/query``,
  paged in windows of 500 rows and stitched together here.
* **yfinance**: free daily / hourly history for tickers Yahoo knows about
  (``BTC-USD``, ``TSLA``, …).

Both return plain ``Candle`` lists sorted ascending with unique timestamps.
Blocking HTTP runs through ``asyncio.to_thread`` so the three timeframe
fetches of a job can overlap.
"""

from __future__ import annotations

import asyncio
import math
import warnings
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

import requests
import yfinance as yf  # type: ignore[import-untyped]
from loguru import logger

from .errors import UpstreamFetchError
from .models import TIMEFRAME_MINUTES, Candle
from .settings import Settings, settings as default_settings

warnings.filterwarnings("ignore", category=FutureWarning, module="yfinance")

REQUEST_WINDOW_ROWS = 500


# ── row parsing ───────────────────────────────────────────────────

OhlcLayout = Callable[[Sequence[Any]], dict[str, float]]


def _layout_open_close_high_low(row: Sequence[Any]) -> dict[str, float]:
    return {"open": float(row[1]), "close": float(row[2]), "high": float(row[3]), "low": float(row[4])}


def _layout_open_high_low_close(row: Sequence[Any]) -> dict[str, float]:
    return {"open": float(row[1]), "high": float(row[2]), "low": float(row[3]), "close": float(row[4])}


# KuCoin spot answers [t, o, c, h, l, ...], futures [t, o, h, l, c, ...].
# Candidates are tried in order; the first one that yields a consistent bar wins.
OHLC_LAYOUTS: list[OhlcLayout] = [
    _layout_open_high_low_close,
    _layout_open_close_high_low,
]


def _is_consistent_bar(bar: dict[str, float]) -> bool:
    return bar["high"] >= max(bar["open"], bar["close"]) and bar["low"] <= min(bar["open"], bar["close"])


def parse_ohlc(row: Sequence[Any], layouts: Sequence[OhlcLayout] = OHLC_LAYOUTS) -> dict[str, float]:
    if len(row) < 5:
        raise ValueError(f"Invalid kline row length: {len(row)}")

    candidates = [layout(row) for layout in layouts]
    for bar in candidates:
        if _is_consistent_bar(bar):
            return bar
    return candidates[-1]


def parse_timestamp(value: Any) -> int:
    raw = float(value)
    if not math.isfinite(raw):
        raise ValueError(f"Invalid kline timestamp: {value}")
    return int(raw * 1000) if raw < 1_000_000_000_000 else int(raw)


def parse_rows(rows: Sequence[Sequence[Any]]) -> list[Candle]:
    by_time: dict[int, Candle] = {}
    for row in rows:
        try:
            time_ms = parse_timestamp(row[0])
            bar = parse_ohlc(row)
            volume = float(row[5]) if len(row) > 5 else 0.0
        except (TypeError, ValueError, IndexError):
            continue
        if not all(math.isfinite(v) for v in (*bar.values(), volume)):
            continue
        by_time[time_ms] = Candle(time=time_ms, volume=volume, **bar)

    return [by_time[t] for t in sorted(by_time)]


def granularity_for(timeframe: str) -> int:
    granularity = TIMEFRAME_MINUTES.get(timeframe)
    if not granularity:
        raise UpstreamFetchError(f"Unsupported timeframe: {timeframe}")
    return granularity


# ── KuCoin ────────────────────────────────────────────────────────

class KucoinKlineProvider:
    def __init__(self, config: Settings | None = None) -> None:
        config = config or default_settings
        self.base_url = config.kucoin_public_base_url.rstrip("/")
        self.timeout_seconds = config.kline_http_timeout_seconds
        self.max_retries = config.kline_http_retries
        self.backoff_seconds = config.kline_http_backoff_seconds

    def _request_window(self, symbol: str, granularity: int, from_ms: int, to_ms: int) -> list[Candle]:
        response = requests.get(
            f"{self.base_url}/api/v1/kline/query",
            params={
                "symbol": symbol,
                "granularity": granularity,
                "from": int(from_ms),
                "to": int(to_ms),
            },
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()
        payload = response.json() or {}
        if payload.get("code") != "200000":
            raise UpstreamFetchError(f"KuCoin getKlines error: {payload.get('msg') or payload.get('code')}")
        return parse_rows(payload.get("data") or [])

    async def _fetch_window(self, symbol: str, granularity: int, from_ms: int, to_ms: int) -> list[Candle]:
        last_error: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return await asyncio.to_thread(self._request_window, symbol, granularity, from_ms, to_ms)
            except Exception as exc:
                last_error = exc
                if attempt >= self.max_retries:
                    break
                logger.debug("KuCoin kline attempt {} failed for {}: {}", attempt, symbol, exc)
                await asyncio.sleep(self.backoff_seconds * attempt)

        raise UpstreamFetchError(
            f"KuCoin public kline request failed after {self.max_retries} attempts: {last_error}"
        ) from last_error

    async def fetch(self, symbol: str, timeframe: str, from_ms: int, to_ms: int) -> list[Candle]:
        granularity = granularity_for(timeframe)
        granularity_ms = granularity * 60_000
        from_ms, to_ms = int(from_ms), int(to_ms)
        if to_ms <= from_ms:
            return []

        window_ms = REQUEST_WINDOW_ROWS * granularity_ms
        by_time: dict[int, Candle] = {}
        cursor = from_ms

        while cursor < to_ms:
            window_to = min(cursor + window_ms, to_ms)
            rows = await self._fetch_window(symbol, granularity, cursor, window_to)
            for candle in rows:
                by_time[candle.time] = candle

            next_cursor = rows[-1].time + granularity_ms if rows else window_to + granularity_ms
            if next_cursor <= cursor:
                raise UpstreamFetchError(f"KuCoin public kline pagination stalled at {cursor}")
            cursor = next_cursor

        candles = [by_time[t] for t in sorted(by_time) if from_ms <= t <= to_ms]
        logger.info("Fetched {} {} candles for {} from KuCoin", len(candles), timeframe, symbol)
        return candles


# ── yfinance ──────────────────────────────────────────────────────

YFINANCE_INTERVALS: dict[str, str] = {
    "1m": "1m",
    "5m": "5m",
    "15m": "15m",
    "30m": "30m",
    "1h": "1h",
    "1d": "1d",
    "1w": "1wk",
}


class YFinanceKlineProvider:
    """Adapter over ``yfinance.Ticker.history`` for symbols like ``BTC-USD``."""

    def _download(self, symbol: str, interval: str, from_ms: int, to_ms: int) -> list[Candle]:
        start = datetime.fromtimestamp(from_ms / 1000, tz=timezone.utc)
        end = datetime.fromtimestamp(to_ms / 1000, tz=timezone.utc)
        df = yf.Ticker(symbol).history(start=start, end=end, interval=interval, auto_adjust=True)
        if df is None or df.empty:
            return []

        rows = []
        for ts, row in df.iterrows():
            rows.append(
                [
                    int(ts.timestamp() * 1000),
                    row.get("Open", float("nan")),
                    row.get("High", float("nan")),
                    row.get("Low", float("nan")),
                    row.get("Close", float("nan")),
                    row.get("Volume", 0.0),
                ]
            )
        return parse_rows(rows)

    async def fetch(self, symbol: str, timeframe: str, from_ms: int, to_ms: int) -> list[Candle]:
        interval = YFINANCE_INTERVALS.get(timeframe)
        if interval is None:
            raise UpstreamFetchError(f"Timeframe {timeframe} is not available from yfinance")

        try:
            candles = await asyncio.to_thread(self._download, symbol, interval, int(from_ms), int(to_ms))
        except Exception as exc:
            raise UpstreamFetchError(f"yfinance history failed for {symbol}: {exc}") from exc

        logger.info("Fetched {} {} candles for {} from yfinance", len(candles), timeframe, symbol)
        return [c for c in candles if from_ms <= c.time <= to_ms]


def build_candle_provider(config: Settings | None = None) -> KucoinKlineProvider | YFinanceKlineProvider:
    config = config or default_settings
    if config.kline_provider == "yfinance":
        return YFinanceKlineProvider()
    return KucoinKlineProvider(config)
