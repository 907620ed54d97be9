"""Backtest job orchestration: candles → optional AI validation → strategy → record.

A job resolves three candle series (execution, primary range, secondary range)
through the kline cache, optionally asks the range validator about a planned
subset of execution bars, overlays the verdicts onto the execution candles
and hands everything to the strategy engine.

``run_backtest_job`` never raises: any failure becomes a ``failed`` record
with zeroed metrics and a truncated error message, so the caller can always
persist *something* for the job id.

``replay_backtest_record`` re-runs a stored record from its cached candle
windows (and stored AI verdicts) to produce trades and chart candles for
display.  Stored metrics are never trusted for replay, and replay never
raises: whatever cannot be rebuilt is reported in ``warnings``.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import dataclass, field, replace
from typing import Sequence

from loguru import logger

from .ai_plan import apply_ai_summary, build_evaluation_plan, create_initial_ai_summary, normalize_ai_config
from .data_cache import CandleResolution, KlineCache, build_blob_store
from .errors import AiConfigurationError, ReplayError, StrategyComputationError
from .historical_data import build_candle_provider
from .interfaces import CompletionService, ProgressObserver, StrategyEngineFactory
from .models import (
    AiSummary,
    BacktestIdentity,
    BacktestInput,
    BacktestMetrics,
    BacktestRecord,
    BacktestResult,
    BacktestTrade,
    Candle,
    KlineCacheReference,
    RangeLevels,
)
from .openai_client import OpenAIClient
from .range_validator import RangeValidator
from .settings import Settings, settings as default_settings
from .strategy import create_strategy_engine

PROGRESS_LOG_EVERY = 10


# ── data classes ──────────────────────────────────────────────────

@dataclass
class BacktestCandles:
    execution_candles: list[Candle]
    primary_range_candles: list[Candle]
    secondary_range_candles: list[Candle]
    kline_refs: list[KlineCacheReference] = field(default_factory=list)


@dataclass
class ReplayedBacktest:
    result: BacktestResult
    chart_candles: list[Candle]
    trades: list[BacktestTrade]
    kline_refs: list[KlineCacheReference]
    chart_candles_ref: KlineCacheReference | None = None
    warnings: list[str] = field(default_factory=list)


# ── records ───────────────────────────────────────────────────────

def create_backtest_identity(symbol: str, created_at_ms: int | None = None) -> BacktestIdentity:
    if created_at_ms is None:
        created_at_ms = int(time.time() * 1000)
    return BacktestIdentity.create(symbol, created_at_ms)


def create_running_backtest_record(
    input: BacktestInput,
    identity: BacktestIdentity,
    config: Settings | None = None,
) -> BacktestRecord:
    return BacktestRecord(
        id=identity.backtest_id,
        created_at_ms=identity.created_at_ms,
        status="running",
        bot_id=input.bot_id,
        bot_name=input.bot_name,
        strategy_id=input.strategy_id,
        strategy_version=input.strategy_version,
        exchange_id=input.exchange_id,
        account_id=input.account_id,
        symbol=input.symbol,
        from_ms=input.from_ms,
        to_ms=input.to_ms,
        execution_timeframe=input.execution_timeframe,
        primary_range_timeframe=input.primary_range_timeframe,
        secondary_range_timeframe=input.secondary_range_timeframe,
        initial_equity=input.initial_equity,
        ending_equity=input.initial_equity,
        strategy_config=input.strategy_config,
        ai=create_initial_ai_summary(input.ai, config),
    )


def create_failed_backtest_record(
    input: BacktestInput,
    identity: BacktestIdentity,
    error_message: str,
    config: Settings | None = None,
) -> BacktestRecord:
    return replace(
        create_running_backtest_record(input, identity, config),
        status="failed",
        error_message=error_message,
    )


def input_from_record(record: BacktestRecord) -> BacktestInput:
    return BacktestInput(
        bot_id=record.bot_id,
        bot_name=record.bot_name,
        strategy_id=record.strategy_id,
        strategy_version=record.strategy_version,
        exchange_id=record.exchange_id,
        account_id=record.account_id,
        symbol=record.symbol,
        from_ms=record.from_ms,
        to_ms=record.to_ms,
        execution_timeframe=record.execution_timeframe,
        primary_range_timeframe=record.primary_range_timeframe,
        secondary_range_timeframe=record.secondary_range_timeframe,
        initial_equity=record.initial_equity,
        strategy_config=record.strategy_config,
        ai=record.ai.config.to_dict() if record.ai else None,
    )


# ── runner ────────────────────────────────────────────────────────

class BacktestJobRunner:
    def __init__(
        self,
        cache: KlineCache,
        client: CompletionService | None = None,
        engine_factory: StrategyEngineFactory = create_strategy_engine,
        config: Settings | None = None,
    ) -> None:
        self.cache = cache
        self.client = client
        self.engine_factory = engine_factory
        self.config = config or default_settings
        self.validator = RangeValidator(client, self.config) if client is not None else None

    # ── candles ───────────────────────────────────────────────────

    async def fetch_backtest_candles(
        self,
        input: BacktestInput,
        backtest_id: str,
        refs: Sequence[KlineCacheReference] | None = None,
    ) -> BacktestCandles:
        """Resolve all three series concurrently; a timeframe used twice is fetched once."""
        in_flight: dict[str, asyncio.Task[CandleResolution]] = {}

        def for_timeframe(timeframe: str) -> asyncio.Task[CandleResolution]:
            if timeframe not in in_flight:
                in_flight[timeframe] = asyncio.ensure_future(
                    self.cache.resolve(backtest_id, input.symbol, timeframe, input.from_ms, input.to_ms, refs)
                )
            return in_flight[timeframe]

        execution, primary, secondary = await asyncio.gather(
            for_timeframe(input.execution_timeframe),
            for_timeframe(input.primary_range_timeframe),
            for_timeframe(input.secondary_range_timeframe),
        )

        return BacktestCandles(
            execution_candles=execution.candles,
            primary_range_candles=primary.candles,
            secondary_range_candles=secondary.candles,
            kline_refs=self.cache.dedupe_refs([*(refs or []), execution.ref, primary.ref, secondary.ref]),
        )

    # ── AI validation ─────────────────────────────────────────────

    async def _report_progress(self, observer: ProgressObserver | None, summary: AiSummary) -> None:
        if observer is None:
            return
        try:
            outcome = observer(summary.clone())
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as exc:
            logger.error("AI progress observer failed: {}", exc)

    async def build_ai_summary(
        self,
        input: BacktestInput,
        execution_candles: Sequence[Candle],
        observer: ProgressObserver | None = None,
    ) -> AiSummary | None:
        ai_config = normalize_ai_config(input.ai, self.config)
        if ai_config is None:
            return None
        if self.client is None or self.validator is None or not self.client.is_configured():
            raise AiConfigurationError("OPENAI_API_KEY is required for AI-integrated backtests")

        summary = AiSummary.from_config(ai_config)
        plan = build_evaluation_plan(len(execution_candles), ai_config)
        summary.effective_cadence_bars = plan.effective_cadence_bars
        summary.planned_evaluations = len(plan.indices)
        logger.info(
            "AI range validation starting for {} {}: {} candles, lookback={} cadence={} (effective {}), planned={}",
            input.symbol,
            input.execution_timeframe,
            len(execution_candles),
            ai_config.lookback_candles,
            ai_config.cadence_bars,
            plan.effective_cadence_bars,
            len(plan.indices),
        )
        await self._report_progress(observer, summary)

        for index in plan.indices:
            evaluation = await self.validator.evaluate(
                execution_candles, index, input.symbol, input.execution_timeframe, ai_config
            )
            if evaluation is None:
                continue

            summary.evaluations_run += 1
            if evaluation.error_message is not None:
                summary.failed += 1
            if evaluation.accepted:
                summary.evaluations_accepted += 1
            if evaluation.used_fallback:
                summary.fallback_used += 1
            summary.evaluations.append(evaluation)

            if summary.evaluations_run % PROGRESS_LOG_EVERY == 0:
                logger.info(
                    "AI progress {}: {}/{} run, {} accepted, {} failed",
                    input.symbol,
                    summary.evaluations_run,
                    summary.planned_evaluations,
                    summary.evaluations_accepted,
                    summary.failed,
                )
            await self._report_progress(observer, summary)

        logger.info(
            "AI range validation completed for {}: run={} accepted={} fallback={} failed={}",
            input.symbol,
            summary.evaluations_run,
            summary.evaluations_accepted,
            summary.fallback_used,
            summary.failed,
        )
        await self._report_progress(observer, summary)
        return summary

    # ── computation ───────────────────────────────────────────────

    def run_computation(self, input: BacktestInput, candles: BacktestCandles) -> BacktestResult:
        minimum = self.config.backtest_min_execution_candles
        if len(candles.execution_candles) < minimum:
            raise StrategyComputationError(
                f"Not enough execution candles ({len(candles.execution_candles)}) for {input.symbol}"
            )

        engine = self.engine_factory(input.strategy_config)
        return engine.run_backtest(
            initial_equity=input.initial_equity,
            execution_candles=candles.execution_candles,
            primary_range_candles=candles.primary_range_candles,
            secondary_range_candles=candles.secondary_range_candles,
        )

    async def run_backtest_job(
        self,
        input: BacktestInput,
        identity: BacktestIdentity | None = None,
        on_ai_progress: ProgressObserver | None = None,
    ) -> BacktestRecord:
        identity = identity or create_backtest_identity(input.symbol)
        started = time.perf_counter()

        try:
            logger.info(
                "=== Backtest {} starting: {} exec={} primary={} secondary={} window={}-{} ai={} ===",
                identity.backtest_id,
                input.symbol,
                input.execution_timeframe,
                input.primary_range_timeframe,
                input.secondary_range_timeframe,
                input.from_ms,
                input.to_ms,
                bool((input.ai or {}).get("enabled")),
            )

            candles = await self.fetch_backtest_candles(input, identity.backtest_id)
            logger.info(
                "Backtest {} candles loaded: execution={} primary={} secondary={}",
                identity.backtest_id,
                len(candles.execution_candles),
                len(candles.primary_range_candles),
                len(candles.secondary_range_candles),
            )

            ai_summary = await self.build_ai_summary(input, candles.execution_candles, on_ai_progress)
            computation = replace(candles, execution_candles=apply_ai_summary(candles.execution_candles, ai_summary))
            result = self.run_computation(input, computation)

            metrics = result.metrics
            logger.info(
                "=== Backtest {} completed in {:.1f}s: {} trades, net {:+.2f}, equity {:.2f} ===",
                identity.backtest_id,
                time.perf_counter() - started,
                metrics.total_trades,
                metrics.net_pnl,
                metrics.ending_equity,
            )

            return replace(
                create_running_backtest_record(input, identity, self.config),
                status="completed",
                total_trades=metrics.total_trades,
                wins=metrics.wins,
                losses=metrics.losses,
                win_rate=metrics.win_rate,
                net_pnl=metrics.net_pnl,
                gross_profit=metrics.gross_profit,
                gross_loss=metrics.gross_loss,
                max_drawdown_pct=metrics.max_drawdown_pct,
                ending_equity=metrics.ending_equity,
                kline_refs=candles.kline_refs,
                ai=ai_summary,
            )
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.error("Backtest {} failed for {}: {}", identity.backtest_id, input.symbol, message)
            return create_failed_backtest_record(
                input,
                identity,
                message[: self.config.job_error_message_max_chars],
                self.config,
            )

    # ── replay ────────────────────────────────────────────────────

    def enrich_trades_with_range_levels(
        self,
        input: BacktestInput,
        candles: BacktestCandles,
        trades: Sequence[BacktestTrade],
        warnings: list[str],
    ) -> list[BacktestTrade]:
        engine = self.engine_factory(input.strategy_config)
        index_by_time = {candle.time: index for index, candle in enumerate(candles.execution_candles)}

        enriched: list[BacktestTrade] = []
        for trade in trades:
            view = replace(trade, exits=list(trade.exits))
            entry_index = index_by_time.get(trade.entry_time)
            if entry_index is None:
                warnings.append(
                    str(ReplayError(f"Trade {trade.id}: entry time {trade.entry_time} not in execution candles"))
                )
                enriched.append(view)
                continue

            try:
                snapshot = engine.build_signal_snapshot(
                    execution_candles=candles.execution_candles,
                    index=entry_index,
                    primary_range_candles=candles.primary_range_candles,
                    secondary_range_candles=candles.secondary_range_candles,
                )
                levels = snapshot.effective_range
            except Exception as exc:
                logger.debug("Snapshot failed for trade {} at index {}: {}", trade.id, entry_index, exc)
                warnings.append(str(ReplayError(f"Trade {trade.id}: range levels unavailable ({exc})")))
                enriched.append(view)
                continue

            view.range_levels = RangeLevels(val=levels.val, poc=levels.poc, vah=levels.vah)
            enriched.append(view)
        return enriched

    def _empty_replay(
        self,
        record: BacktestRecord,
        chart: CandleResolution,
        kline_refs: Sequence[KlineCacheReference | None],
        warnings: list[str],
    ) -> ReplayedBacktest:
        return ReplayedBacktest(
            result=BacktestResult(trades=[], metrics=BacktestMetrics(ending_equity=record.initial_equity)),
            chart_candles=chart.candles,
            chart_candles_ref=chart.ref,
            trades=[],
            kline_refs=self.cache.dedupe_refs(kline_refs),
            warnings=warnings,
        )

    async def replay_backtest_record(self, record: BacktestRecord, chart_timeframe: str) -> ReplayedBacktest:
        """Rebuild trades and chart candles for a stored record; failures land in ``warnings``."""
        input = input_from_record(record)
        warnings: list[str] = []

        try:
            candles = await self.fetch_backtest_candles(input, record.id, record.kline_refs)
        except Exception as exc:
            logger.warning("Replay candles unavailable for {}: {}", record.id, exc)
            warnings.append(str(ReplayError(f"Could not resolve candles for backtest {record.id}: {exc}")))
            return self._empty_replay(record, CandleResolution(candles=[]), record.kline_refs, warnings)

        try:
            chart = await self.cache.resolve(
                record.id, record.symbol, chart_timeframe, record.from_ms, record.to_ms, candles.kline_refs
            )
        except Exception as exc:
            logger.warning("Chart candles unavailable for {} ({}): {}", record.id, chart_timeframe, exc)
            warnings.append(f"Chart candles unavailable for {chart_timeframe}: {exc}")
            chart = CandleResolution(candles=[])

        computation = replace(candles, execution_candles=apply_ai_summary(candles.execution_candles, record.ai))
        try:
            result = self.run_computation(input, computation)
        except Exception as exc:
            logger.warning("Replay strategy run failed for {}: {}", record.id, exc)
            warnings.append(str(ReplayError(f"Strategy replay failed for backtest {record.id}: {exc}")))
            return self._empty_replay(record, chart, [*candles.kline_refs, chart.ref], warnings)

        return ReplayedBacktest(
            result=result,
            chart_candles=chart.candles,
            chart_candles_ref=chart.ref,
            trades=self.enrich_trades_with_range_levels(input, computation, result.trades, warnings),
            kline_refs=self.cache.dedupe_refs([*candles.kline_refs, chart.ref]),
            warnings=warnings,
        )


def build_job_runner(config: Settings | None = None) -> BacktestJobRunner:
    """Wire the runner from settings: configured provider, file cache, OpenAI client."""
    config = config or default_settings
    cache = KlineCache(
        build_candle_provider(config),
        build_blob_store(config),
        public_base_url=config.klines_public_base_url,
    )
    return BacktestJobRunner(cache, OpenAIClient(config), create_strategy_engine, config)
