# tests/conftest.py
from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any

import pytest
from loguru import logger

from ranging_backtest.data_cache import KlineCache
from ranging_backtest.errors import CacheStoreError, UpstreamFetchError
from ranging_backtest.models import (
    TIMEFRAME_MINUTES,
    BacktestInput,
    BacktestMetrics,
    BacktestRecord,
    BacktestResult,
    BacktestTrade,
    Candle,
    RangeLevels,
)
from ranging_backtest.settings import Settings

START_MS = 1_735_689_600_000  # 2025-01-01T00:00:00Z


@pytest.fixture(autouse=True)
def disable_logger():
    logger.remove()
    logger.add(lambda msg: None)
    yield


def make_candles(
    count: int,
    timeframe: str = "15m",
    start_ms: int = START_MS,
    base: float = 100.0,
    amplitude: float = 3.0,
    period: int = 24,
) -> list[Candle]:
    """Oscillating bars around ``base``; good enough for a range to form."""
    step = TIMEFRAME_MINUTES[timeframe] * 60_000
    candles = []
    for i in range(count):
        close = base + amplitude * math.sin(2 * math.pi * i / period)
        open_ = base + amplitude * math.sin(2 * math.pi * (i - 1) / period)
        candles.append(
            Candle(
                time=start_ms + i * step,
                open=open_,
                high=max(open_, close) + 0.25,
                low=min(open_, close) - 0.25,
                close=close,
                volume=10.0 + (i % 7),
            )
        )
    return candles


def validation_json(
    confidence: float,
    is_ranging: bool = True,
    val: float = 97.0,
    poc: float = 100.0,
    vah: float = 103.0,
    reasons: list[str] | None = None,
) -> str:
    return json.dumps(
        {
            "isRanging": is_ranging,
            "confidence": confidence,
            "timeframeDetected": "15m",
            "range": {"val": val, "poc": poc, "vah": vah},
            "reasons": reasons if reasons is not None else ["balanced_volume"],
        }
    )


# ── fakes ─────────────────────────────────────────────────────────

class MemoryBlobStore:
    def __init__(self, fail_puts: bool = False) -> None:
        self.blobs: dict[str, bytes] = {}
        self.fail_puts = fail_puts

    async def get(self, key: str) -> bytes | None:
        return self.blobs.get(key)

    async def put(self, key: str, data: bytes) -> None:
        if self.fail_puts:
            raise CacheStoreError(f"store unavailable for {key}")
        self.blobs[key] = data


class FakeCandleProvider:
    def __init__(self, series: dict[str, list[Candle]] | None = None, failing: set[str] | None = None) -> None:
        self.series = series or {}
        self.failing = failing or set()
        self.calls: list[tuple[str, str, int, int]] = []

    async def fetch(self, symbol: str, timeframe: str, from_ms: int, to_ms: int) -> list[Candle]:
        self.calls.append((symbol, timeframe, from_ms, to_ms))
        if timeframe in self.failing:
            raise UpstreamFetchError(f"upstream down for {timeframe}")
        return list(self.series.get(timeframe, []))

    def calls_for(self, timeframe: str) -> int:
        return sum(1 for call in self.calls if call[1] == timeframe)


class ScriptedCompletionService:
    """Replies per model from a queue; an Exception entry is raised instead."""

    def __init__(self, script: dict[str, list[Any]] | None = None, configured: bool = True) -> None:
        self.script = {model: list(replies) for model, replies in (script or {}).items()}
        self.configured = configured
        self.calls: list[tuple[str, int]] = []

    def is_configured(self) -> bool:
        return self.configured

    async def complete(
        self,
        model: str,
        system_prompt: str,
        user_payload: str,
        max_output_tokens: int,
        timeout: float,
    ) -> str:
        self.calls.append((model, max_output_tokens))
        queue = self.script.get(model) or []
        if not queue:
            raise RuntimeError(f"no scripted reply for {model}")
        reply = queue.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@dataclass
class FakeSnapshot:
    effective_range: RangeLevels


@dataclass
class FakeStrategyEngine:
    trades: list[BacktestTrade] = field(default_factory=list)
    error: Exception | None = None
    snapshot_error_indices: set[int] = field(default_factory=set)
    seen_execution_candles: list[Candle] = field(default_factory=list)

    def run_backtest(self, *, initial_equity, execution_candles, primary_range_candles, secondary_range_candles):
        if self.error is not None:
            raise self.error
        self.seen_execution_candles = list(execution_candles)
        net = sum(t.net_pnl for t in self.trades)
        wins = sum(1 for t in self.trades if t.net_pnl > 0)
        return BacktestResult(
            trades=list(self.trades),
            metrics=BacktestMetrics(
                total_trades=len(self.trades),
                wins=wins,
                losses=len(self.trades) - wins,
                win_rate=wins / len(self.trades) if self.trades else 0.0,
                net_pnl=net,
                ending_equity=initial_equity + net,
            ),
        )

    def build_signal_snapshot(self, *, execution_candles, index, primary_range_candles, secondary_range_candles):
        if index in self.snapshot_error_indices:
            raise ValueError(f"no snapshot at {index}")
        close = execution_candles[index].close
        return FakeSnapshot(RangeLevels(val=close - 1, poc=close, vah=close + 1))


class MemoryRecordStore:
    def __init__(self) -> None:
        self.records: dict[str, BacktestRecord] = {}
        self.history: list[BacktestRecord] = []

    async def get(self, backtest_id: str) -> BacktestRecord | None:
        return self.records.get(backtest_id)

    async def put(self, record: BacktestRecord) -> None:
        self.records[record.id] = record
        self.history.append(record)


def make_trade(trade_id: int, entry_time: int, net_pnl: float = 1.0) -> BacktestTrade:
    return BacktestTrade(
        id=trade_id,
        side="long",
        entry_time=entry_time,
        entry_price=100.0,
        stop_price_at_entry=99.0,
        quantity=1.0,
        entry_fee=0.0,
        exits=[],
        close_time=entry_time + 60_000,
        close_price=100.0 + net_pnl,
        gross_pnl=net_pnl,
        fees=0.0,
        net_pnl=net_pnl,
    )


# ── fixtures ──────────────────────────────────────────────────────

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        openai_base_url="https://api.openai.com/v1",
        kline_provider="kucoin",
        kline_cache_enabled=False,
        klines_public_base_url="",
        openai_validation_max_output_tokens=800,
    )


@pytest.fixture
def blob_store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def series() -> dict[str, list[Candle]]:
    return {
        "15m": make_candles(100, "15m"),
        "1h": make_candles(100, "1h"),
        "4h": make_candles(100, "4h"),
    }


@pytest.fixture
def provider(series) -> FakeCandleProvider:
    return FakeCandleProvider(series)


@pytest.fixture
def cache(provider, blob_store) -> KlineCache:
    return KlineCache(provider, blob_store, public_base_url="")


@pytest.fixture
def backtest_input() -> BacktestInput:
    return BacktestInput(
        bot_id="bot-1",
        bot_name="Range Bot",
        strategy_id="range-reversion",
        strategy_version="1",
        exchange_id="kucoin",
        account_id="acct-1",
        symbol="BTC-USDT",
        from_ms=START_MS,
        to_ms=START_MS + 100 * 15 * 60_000,
        execution_timeframe="15m",
        primary_range_timeframe="1h",
        secondary_range_timeframe="4h",
        initial_equity=1000.0,
    )
