"""
  ============================================
   RANGING BACKTEST -- command line runner
  ============================================

  Usage:
    python -m ranging_backtest.run_backtest --symbol BTC-USDT --from 2025-01-01 --to 2025-02-01
    python -m ranging_backtest.run_backtest --symbol BTC-USDT --from 2025-01-01 --to 2025-02-01 --ai
    python -m ranging_backtest.run_backtest --replay BTC-USDT-1735689600000-1a2b3c4d --chart-timeframe 1h
    python -m ranging_backtest.run_backtest --list
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger

from .backtester import build_job_runner, create_backtest_identity
from .db import SqliteRecordStore
from .logging_config import configure_logging
from .models import TIMEFRAME_MINUTES, BacktestInput, BacktestRecord
from .settings import settings
from .worker import BacktestWorker


def _parse_date_ms(value: str) -> int:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"not an ISO date: {value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def build_parser() -> argparse.ArgumentParser:
    timeframes = list(TIMEFRAME_MINUTES)
    parser = argparse.ArgumentParser(description="Run or replay a ranging-strategy backtest")
    parser.add_argument("--symbol", help="Exchange symbol, e.g. BTC-USDT")
    parser.add_argument("--from", dest="from_ms", type=_parse_date_ms, help="Window start (ISO date, UTC)")
    parser.add_argument("--to", dest="to_ms", type=_parse_date_ms, help="Window end (ISO date, UTC)")
    parser.add_argument("--timeframe", default="15m", choices=timeframes, help="Execution timeframe")
    parser.add_argument("--primary", default="1h", choices=timeframes, help="Primary range timeframe")
    parser.add_argument("--secondary", default="4h", choices=timeframes, help="Secondary range timeframe")
    parser.add_argument("--equity", type=float, default=settings.backtest_default_initial_equity)

    ai = parser.add_argument_group("AI range validation")
    ai.add_argument("--ai", action="store_true", help="Validate ranges with the LLM")
    ai.add_argument("--lookback", type=int, default=240, help="Candles per validation window")
    ai.add_argument("--cadence", type=int, default=1, help="Preferred bars between validations")
    ai.add_argument("--max-evaluations", type=int, default=50)
    ai.add_argument("--confidence", type=float, default=settings.openai_validation_confidence_threshold)
    ai.add_argument("--model-primary", default=settings.openai_validation_model_primary)
    ai.add_argument("--model-fallback", default=settings.openai_validation_model_fallback)

    replay = parser.add_argument_group("replay")
    replay.add_argument("--replay", metavar="ID", help="Replay a stored backtest instead of running one")
    replay.add_argument("--chart-timeframe", default="1h", choices=timeframes)

    parser.add_argument("--list", action="store_true", help="Show the most recent stored backtests")
    parser.add_argument("--log-dir", type=Path, default=None, help="Also write daily rotated log files here")
    return parser


def _print_record(record: BacktestRecord) -> None:
    print()
    print("=" * 56)
    print(f"BACKTEST {record.id}  [{record.status.upper()}]")
    print("=" * 56)
    print(f"Symbol:        {record.symbol}  ({record.execution_timeframe} / {record.primary_range_timeframe} / {record.secondary_range_timeframe})")
    if record.status == "failed":
        print(f"Error:         {record.error_message}")
        return
    print(f"Ending equity: ${record.ending_equity:.2f}  (start ${record.initial_equity:.2f})")
    print(f"Net PnL:       ${record.net_pnl:+.2f}")
    print(f"Trades:        {record.total_trades} (W:{record.wins} / L:{record.losses})")
    print(f"Win rate:      {record.win_rate:.1%}")
    print(f"Max drawdown:  {record.max_drawdown_pct:.2%}")
    if record.ai is not None:
        ai = record.ai
        print(
            f"AI:            {ai.evaluations_run}/{ai.planned_evaluations} evaluations, "
            f"{ai.evaluations_accepted} accepted, {ai.fallback_used} fallback, {ai.failed} failed"
        )


async def _run(args: argparse.Namespace) -> int:
    store = SqliteRecordStore()
    runner = build_job_runner()

    if args.list:
        for record in await store.list_recent(20):
            print(f"  {record.id:40s} {record.status:9s} trades={record.total_trades:3d} net={record.net_pnl:+.2f}")
        return 0

    if args.replay:
        record = await store.get(args.replay)
        if record is None:
            print(f"No backtest stored with id {args.replay}")
            return 1
        replayed = await runner.replay_backtest_record(record, args.chart_timeframe)
        _print_record(record)
        print()
        print(f"Replayed {len(replayed.trades)} trades, {len(replayed.chart_candles)} chart candles ({args.chart_timeframe})")
        for trade in replayed.trades:
            tag = "WIN " if trade.net_pnl > 0 else "LOSS"
            levels = trade.range_levels
            band = f"  VAL {levels.val:.4f} POC {levels.poc:.4f} VAH {levels.vah:.4f}" if levels else ""
            print(f"  {tag} {trade.side:5s} {trade.entry_price:.4f} -> {trade.close_price:.4f}  pnl=${trade.net_pnl:+.2f}{band}")
        for warning in replayed.warnings:
            print(f"  ! {warning}")
        return 0

    if not args.symbol or args.from_ms is None or args.to_ms is None:
        print("--symbol, --from and --to are required to run a backtest")
        return 2

    identity = create_backtest_identity(args.symbol)
    ai = None
    if args.ai:
        ai = {
            "enabled": True,
            "lookback_candles": args.lookback,
            "cadence_bars": args.cadence,
            "max_evaluations": args.max_evaluations,
            "confidence_threshold": args.confidence,
            "model_primary": args.model_primary,
            "model_fallback": args.model_fallback,
        }
    job = BacktestInput(
        bot_id="cli",
        bot_name="cli",
        strategy_id="range-reversion",
        strategy_version="1",
        exchange_id=settings.kline_provider,
        account_id="local",
        symbol=args.symbol,
        from_ms=args.from_ms,
        to_ms=args.to_ms,
        execution_timeframe=args.timeframe,
        primary_range_timeframe=args.primary,
        secondary_range_timeframe=args.secondary,
        initial_equity=args.equity,
        ai=ai,
    )

    print(f"Backtest ID: {identity.backtest_id}")
    t0 = time.time()
    record = await BacktestWorker(runner, store).process(job, identity)
    _print_record(record)
    print(f"Time:          {time.time() - t0:.1f}s")
    return 0 if record.status == "completed" else 1


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level, args.log_dir)
    logger.debug("CLI args: {}", vars(args))
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
