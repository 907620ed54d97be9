from __future__ import annotations

import asyncio
import math
from dataclasses import replace

import pytest

from conftest import (
    FakeCandleProvider,
    FakeStrategyEngine,
    MemoryBlobStore,
    ScriptedCompletionService,
    make_candles,
    make_trade,
    validation_json,
)
from ranging_backtest.backtester import (
    BacktestJobRunner,
    create_backtest_identity,
    create_failed_backtest_record,
    create_running_backtest_record,
)
from ranging_backtest.data_cache import KlineCache
from ranging_backtest.models import BacktestIdentity
from ranging_backtest.range_validator import FAILED_REASON

IDENTITY = BacktestIdentity(backtest_id="BTC-USDT-1-abc", created_at_ms=1)

AI_BLOCK = {
    "enabled": True,
    "lookback_candles": 60,
    "cadence_bars": 1,
    "max_evaluations": 2,
    "confidence_threshold": 0.72,
    "model_primary": "primary-model",
    "model_fallback": "fallback-model",
}


def _runner(cache, test_settings, engine=None, client=None):
    factory = (lambda overrides: engine) if engine is not None else None
    kwargs = {"engine_factory": factory} if factory else {}
    return BacktestJobRunner(cache, client, config=test_settings, **kwargs)


def test_identity_and_running_record(backtest_input, test_settings):
    identity = create_backtest_identity("BTC-USDT", 1_700_000_000_000)

    record = create_running_backtest_record(backtest_input, identity, test_settings)

    assert identity.backtest_id.startswith("BTC-USDT-1700000000000-")
    assert record.status == "running"
    assert record.total_trades == 0
    assert record.ending_equity == backtest_input.initial_equity
    assert record.ai is None


def test_failed_record_has_zeroed_metrics(backtest_input, test_settings):
    record = create_failed_backtest_record(backtest_input, IDENTITY, "nope", test_settings)

    assert record.status == "failed"
    assert record.error_message == "nope"
    assert (record.total_trades, record.wins, record.net_pnl, record.max_drawdown_pct) == (0, 0, 0.0, 0.0)


def test_job_without_ai_completes(cache, provider, backtest_input, test_settings):
    record = asyncio.run(_runner(cache, test_settings).run_backtest_job(backtest_input, IDENTITY))

    assert record.status == "completed"
    assert record.id == IDENTITY.backtest_id
    assert record.ai is None
    assert record.error_message is None
    assert math.isfinite(record.net_pnl) and math.isfinite(record.ending_equity)
    assert record.wins + record.losses == record.total_trades
    assert sorted(r.timeframe for r in record.kline_refs) == ["15m", "1h", "4h"]
    assert provider.calls_for("15m") == 1


def test_shared_timeframe_is_fetched_once(cache, provider, backtest_input, test_settings):
    job = replace(backtest_input, primary_range_timeframe="15m", secondary_range_timeframe="15m")

    record = asyncio.run(_runner(cache, test_settings).run_backtest_job(job, IDENTITY))

    assert record.status == "completed"
    assert provider.calls_for("15m") == 1
    assert len(record.kline_refs) == 1


def test_fetch_failure_fails_the_job(blob_store, backtest_input, test_settings, series):
    provider = FakeCandleProvider(series, failing={"4h"})
    cache = KlineCache(provider, blob_store, public_base_url="")

    record = asyncio.run(_runner(cache, test_settings).run_backtest_job(backtest_input, IDENTITY))

    assert record.status == "failed"
    assert "upstream down for 4h" in record.error_message


def test_too_few_candles_fails_with_symbol(blob_store, backtest_input, test_settings):
    provider = FakeCandleProvider({tf: make_candles(50, tf) for tf in ("15m", "1h", "4h")})
    cache = KlineCache(provider, blob_store, public_base_url="")

    record = asyncio.run(_runner(cache, test_settings).run_backtest_job(backtest_input, IDENTITY))

    assert record.status == "failed"
    assert record.error_message == "Not enough execution candles (50) for BTC-USDT"
    assert record.total_trades == 0


def test_engine_error_message_is_truncated(cache, backtest_input, test_settings):
    engine = FakeStrategyEngine(error=RuntimeError("x" * 1000))

    record = asyncio.run(_runner(cache, test_settings, engine).run_backtest_job(backtest_input, IDENTITY))

    assert record.status == "failed"
    assert len(record.error_message) == test_settings.job_error_message_max_chars


def test_ai_requires_configured_client(cache, backtest_input, test_settings):
    job = replace(backtest_input, ai=AI_BLOCK)
    client = ScriptedCompletionService(configured=False)

    record = asyncio.run(_runner(cache, test_settings, client=client).run_backtest_job(job, IDENTITY))

    assert record.status == "failed"
    assert "OPENAI_API_KEY" in record.error_message
    assert record.ai is not None and record.ai.evaluations_run == 0
    assert client.calls == []


def test_ai_job_survives_a_failed_evaluation(cache, backtest_input, test_settings):
    # plan for 100 bars with max 2 evaluations: [59, 99]
    client = ScriptedCompletionService(
        {
            "primary-model": ["garbage", "garbage", validation_json(0.9)],
            "fallback-model": [RuntimeError("fallback down")],
        }
    )
    engine = FakeStrategyEngine()
    job = replace(backtest_input, ai=AI_BLOCK)
    progress = []

    async def observer(summary):
        progress.append(summary)

    record = asyncio.run(
        _runner(cache, test_settings, engine, client).run_backtest_job(job, IDENTITY, on_ai_progress=observer)
    )

    assert record.status == "completed"
    ai = record.ai
    assert ai.planned_evaluations == 2
    assert ai.evaluations_run == 2
    assert ai.failed == 1
    assert ai.evaluations_accepted == 1
    assert [e.at_index for e in ai.evaluations] == [59, 99]
    assert ai.evaluations[0].reasons == [FAILED_REASON]
    # after plan, after each index, at completion
    assert len(progress) == 4
    assert progress[0].evaluations == [] and progress[-1].evaluations_run == 2
    seen = engine.seen_execution_candles
    assert seen[58].features is None
    assert seen[59].features["range_valid"] is False
    assert seen[99].features["range_valid"] is True


def test_observer_errors_are_ignored(cache, backtest_input, test_settings):
    client = ScriptedCompletionService({"primary-model": [validation_json(0.9), validation_json(0.9)]})
    job = replace(backtest_input, ai=AI_BLOCK)

    def observer(summary):
        raise RuntimeError("observer broke")

    record = asyncio.run(
        _runner(cache, test_settings, FakeStrategyEngine(), client).run_backtest_job(
            job, IDENTITY, on_ai_progress=observer
        )
    )

    assert record.status == "completed"
    assert record.ai.evaluations_accepted == 2


def test_replay_enriches_trades_and_collects_warnings(cache, backtest_input, test_settings, series):
    execution = series["15m"]
    engine = FakeStrategyEngine(
        trades=[
            make_trade(1, execution[10].time),
            make_trade(2, execution[20].time),
            make_trade(3, 123),
        ],
        snapshot_error_indices={20},
    )
    runner = _runner(cache, test_settings, engine)
    record = asyncio.run(runner.run_backtest_job(backtest_input, IDENTITY))

    replayed = asyncio.run(runner.replay_backtest_record(record, "15m"))

    assert [t.id for t in replayed.trades] == [1, 2, 3]
    assert replayed.trades[0].range_levels.poc == execution[10].close
    assert replayed.trades[1].range_levels is None
    assert replayed.trades[2].range_levels is None
    assert len(replayed.warnings) == 2
    assert len(replayed.chart_candles) == 100
    assert replayed.result.metrics.total_trades == 3


def test_replay_uses_cached_windows(cache, provider, backtest_input, test_settings):
    runner = _runner(cache, test_settings, FakeStrategyEngine())
    record = asyncio.run(runner.run_backtest_job(backtest_input, IDENTITY))
    calls_after_run = len(provider.calls)

    asyncio.run(runner.replay_backtest_record(record, "1h"))

    assert len(provider.calls) == calls_after_run


def test_replay_degrades_when_chart_candles_fail(blob_store, backtest_input, test_settings, series):
    provider = FakeCandleProvider(series, failing={"5m"})
    cache = KlineCache(provider, blob_store, public_base_url="")
    runner = _runner(cache, test_settings, FakeStrategyEngine())
    record = asyncio.run(runner.run_backtest_job(backtest_input, IDENTITY))

    replayed = asyncio.run(runner.replay_backtest_record(record, "5m"))

    assert replayed.chart_candles == []
    assert replayed.chart_candles_ref is None
    assert any("5m" in w for w in replayed.warnings)


def test_replay_reports_unavailable_execution_candles(backtest_input, test_settings, series):
    runner = _runner(
        KlineCache(FakeCandleProvider(series), MemoryBlobStore(), public_base_url=""),
        test_settings,
        FakeStrategyEngine(trades=[make_trade(1, series["15m"][10].time)]),
    )
    record = asyncio.run(runner.run_backtest_job(backtest_input, IDENTITY))

    broken = _runner(
        KlineCache(FakeCandleProvider(series, failing={"15m"}), MemoryBlobStore(), public_base_url=""),
        test_settings,
        FakeStrategyEngine(),
    )

    replayed = asyncio.run(broken.replay_backtest_record(record, "1h"))

    assert replayed.trades == []
    assert replayed.chart_candles == []
    assert replayed.result.metrics.total_trades == 0
    assert replayed.result.metrics.ending_equity == backtest_input.initial_equity
    assert len(replayed.warnings) == 1
    assert "upstream down for 15m" in replayed.warnings[0]


def test_replay_reports_engine_failure(cache, backtest_input, test_settings):
    runner = _runner(cache, test_settings, FakeStrategyEngine())
    record = asyncio.run(runner.run_backtest_job(backtest_input, IDENTITY))

    failing = _runner(cache, test_settings, FakeStrategyEngine(error=RuntimeError("engine broke")))

    replayed = asyncio.run(failing.replay_backtest_record(record, "1h"))

    assert replayed.trades == []
    assert replayed.result.trades == []
    assert replayed.result.metrics.net_pnl == 0.0
    assert len(replayed.chart_candles) == 100
    assert any("engine broke" in w for w in replayed.warnings)


def test_ai_job_counts_fallback_when_primary_is_unsure(cache, backtest_input, test_settings):
    client = ScriptedCompletionService(
        {
            "primary-model": [validation_json(0.50), validation_json(0.90)],
            "fallback-model": [validation_json(0.80)],
        }
    )
    job = replace(backtest_input, ai=AI_BLOCK)

    record = asyncio.run(
        _runner(cache, test_settings, FakeStrategyEngine(), client).run_backtest_job(job, IDENTITY)
    )

    assert record.status == "completed"
    ai = record.ai
    assert ai.evaluations_run == 2
    assert ai.fallback_used == 1
    first, second = ai.evaluations
    assert first.final_model == "fallback-model"
    assert first.used_fallback is True
    assert first.confidence == pytest.approx(0.80)
    assert first.accepted is True
    assert second.final_model == "primary-model"
    assert second.used_fallback is False
    assert client.calls == [("primary-model", 800), ("fallback-model", 1600), ("primary-model", 800)]
