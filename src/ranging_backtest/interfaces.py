"""Contracts for the collaborators the backtest pipeline depends on.

Concrete implementations live next to their concern (``historical_data``,
``data_cache``, ``db``, ``openai_client``, ``strategy``); tests swap in
in-memory fakes that satisfy the same protocols.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Protocol, Sequence

from .models import AiSummary, BacktestRecord, BacktestResult, Candle, RangeLevels


class CandleProvider(Protocol):
    async def fetch(self, symbol: str, timeframe: str, from_ms: int, to_ms: int) -> list[Candle]: ...


class BlobStore(Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def put(self, key: str, data: bytes) -> None: ...


class RecordStore(Protocol):
    async def get(self, backtest_id: str) -> BacktestRecord | None: ...

    async def put(self, record: BacktestRecord) -> None: ...


class CompletionService(Protocol):
    def is_configured(self) -> bool: ...

    async def complete(
        self,
        model: str,
        system_prompt: str,
        user_payload: str,
        max_output_tokens: int,
        timeout: float,
    ) -> str: ...


class SignalSnapshot(Protocol):
    @property
    def effective_range(self) -> RangeLevels: ...


class StrategyEngine(Protocol):
    def run_backtest(
        self,
        *,
        initial_equity: float,
        execution_candles: Sequence[Candle],
        primary_range_candles: Sequence[Candle],
        secondary_range_candles: Sequence[Candle],
    ) -> BacktestResult: ...

    def build_signal_snapshot(
        self,
        *,
        execution_candles: Sequence[Candle],
        index: int,
        primary_range_candles: Sequence[Candle],
        secondary_range_candles: Sequence[Candle],
    ) -> SignalSnapshot: ...


StrategyEngineFactory = Callable[[dict[str, Any] | None], StrategyEngine]

ProgressObserver = Callable[[AiSummary], "Awaitable[None] | None"]
