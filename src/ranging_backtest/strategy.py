"""Reference range-reversion strategy engine.

The job orchestrator treats the strategy as a black box (candles in, trades +
metrics out); this module is the default box.  It fades the edges of the
value area: long at/below VAL, short at/above VAH, target the POC, stop a
small buffer outside the range.  When AI validation ran, the overlay features
on each execution candle (``range_valid`` / ``val`` / ``poc`` / ``vah``)
replace the locally computed range.

Position sizing, slippage, fees and drawdown follow the same bookkeeping the
paper-trading backtester uses.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass, fields
from typing import Any, Sequence

from loguru import logger

from .errors import StrategyComputationError
from .indicators import average_levels, compute_overlap_ratio, compute_volume_profile_levels
from .models import BacktestExit, BacktestMetrics, BacktestResult, BacktestTrade, Candle, RangeLevels


@dataclass
class RangeStrategyConfig:
    """Parameters for the reference engine; override any field via a dict."""
    min_execution_candles: int = 80
    range_lookback: int = 120       # higher-timeframe bars feeding the volume profile
    range_bins: int = 24
    value_area_pct: float = 0.7
    min_overlap_pct: float = 0.35   # primary/secondary agreement needed when no AI verdict
    stop_buffer_pct: float = 0.004  # stop distance beyond VAL / VAH (or the entry, if already outside)
    risk_per_trade_pct: float = 0.01
    max_leverage: float = 3.0
    slippage_bps: float = 2.0
    fee_bps: float = 6.0

    @classmethod
    def from_overrides(cls, overrides: dict[str, Any] | None) -> "RangeStrategyConfig":
        config = cls()
        if not overrides:
            return config
        known = {f.name for f in fields(cls)}
        for name, value in overrides.items():
            if name not in known:
                logger.debug("Ignoring unknown strategy override {}", name)
                continue
            setattr(config, name, type(getattr(config, name))(value))
        return config


@dataclass
class RangeContext:
    primary: RangeLevels
    secondary: RangeLevels
    effective: RangeLevels
    overlap_ratio: float
    is_aligned: bool


@dataclass
class SignalSnapshot:
    time: int
    price: float
    range: RangeContext
    range_valid: bool
    from_ai: bool

    @property
    def effective_range(self) -> RangeLevels:
        return self.range.effective


@dataclass
class _OpenPosition:
    trade_id: int
    side: str
    entry_time: int
    entry_price: float
    quantity: float
    stop_price: float
    target_price: float
    entry_fee: float


def _window_until(candles: Sequence[Candle], times: list[int], until: int, size: int) -> Sequence[Candle]:
    end = bisect.bisect_right(times, until)
    return candles[max(0, end - size): end]


class RangeReversionEngine:
    def __init__(self, config: RangeStrategyConfig | None = None) -> None:
        self.config = config or RangeStrategyConfig()

    # ── snapshots ─────────────────────────────────────────────────

    def _snapshot(
        self,
        candle: Candle,
        primary: Sequence[Candle],
        secondary: Sequence[Candle],
    ) -> SignalSnapshot:
        cfg = self.config
        primary_levels = (
            compute_volume_profile_levels(primary, cfg.range_bins, cfg.value_area_pct)
            if primary
            else RangeLevels(candle.close, candle.close, candle.close)
        )
        secondary_levels = (
            compute_volume_profile_levels(secondary, cfg.range_bins, cfg.value_area_pct)
            if secondary
            else primary_levels
        )
        overlap = compute_overlap_ratio(primary_levels, secondary_levels)
        effective = average_levels(primary_levels, secondary_levels)
        range_valid = overlap >= cfg.min_overlap_pct
        from_ai = False

        features = candle.features or {}
        if "range_valid" in features:
            effective = RangeLevels(val=float(features["val"]), poc=float(features["poc"]), vah=float(features["vah"]))
            range_valid = bool(features["range_valid"])
            from_ai = True

        return SignalSnapshot(
            time=candle.time,
            price=candle.close,
            range=RangeContext(
                primary=primary_levels,
                secondary=secondary_levels,
                effective=effective,
                overlap_ratio=overlap,
                is_aligned=overlap >= cfg.min_overlap_pct,
            ),
            range_valid=range_valid,
            from_ai=from_ai,
        )

    def build_signal_snapshot(
        self,
        *,
        execution_candles: Sequence[Candle],
        index: int,
        primary_range_candles: Sequence[Candle],
        secondary_range_candles: Sequence[Candle],
    ) -> SignalSnapshot:
        if index < 0 or index >= len(execution_candles):
            raise IndexError(f"Snapshot index {index} outside {len(execution_candles)} execution candles")
        candle = execution_candles[index]
        size = self.config.range_lookback
        primary = _window_until(primary_range_candles, [c.time for c in primary_range_candles], candle.time, size)
        secondary = _window_until(secondary_range_candles, [c.time for c in secondary_range_candles], candle.time, size)
        return self._snapshot(candle, primary, secondary)

    # ── simulation ────────────────────────────────────────────────

    def _fill(self, price: float, side: str, entering: bool) -> float:
        slip = self.config.slippage_bps / 10_000
        worse_up = (side == "long") == entering
        return price * (1 + slip) if worse_up else price * (1 - slip)

    def _fee(self, price: float, quantity: float) -> float:
        return price * quantity * (self.config.fee_bps / 10_000)

    def _open(self, trade_id: int, candle: Candle, snap: SignalSnapshot, equity: float) -> _OpenPosition | None:
        cfg = self.config
        levels = snap.effective_range
        if snap.price <= levels.val:
            side = "long"
            stop = min(levels.val, snap.price) * (1 - cfg.stop_buffer_pct)
        elif snap.price >= levels.vah:
            side = "short"
            stop = max(levels.vah, snap.price) * (1 + cfg.stop_buffer_pct)
        else:
            return None

        entry = self._fill(candle.close, side, entering=True)
        risk_per_unit = abs(entry - stop)
        if entry <= 0 or risk_per_unit <= 0 or equity <= 0:
            return None

        quantity = min(equity * cfg.risk_per_trade_pct / risk_per_unit, equity * cfg.max_leverage / entry)
        if quantity <= 0:
            return None

        return _OpenPosition(
            trade_id=trade_id,
            side=side,
            entry_time=candle.time,
            entry_price=entry,
            quantity=quantity,
            stop_price=stop,
            target_price=levels.poc,
            entry_fee=self._fee(entry, quantity),
        )

    def _close(self, pos: _OpenPosition, candle: Candle, raw_price: float, reason: str) -> BacktestTrade:
        exit_price = self._fill(raw_price, pos.side, entering=False)
        direction = 1 if pos.side == "long" else -1
        gross = (exit_price - pos.entry_price) * pos.quantity * direction
        exit_fee = self._fee(exit_price, pos.quantity)
        fees = pos.entry_fee + exit_fee
        return BacktestTrade(
            id=pos.trade_id,
            side=pos.side,  # type: ignore[arg-type]
            entry_time=pos.entry_time,
            entry_price=pos.entry_price,
            stop_price_at_entry=pos.stop_price,
            quantity=pos.quantity,
            entry_fee=pos.entry_fee,
            exits=[
                BacktestExit(
                    reason=reason,  # type: ignore[arg-type]
                    time=candle.time,
                    price=exit_price,
                    quantity=pos.quantity,
                    gross_pnl=gross,
                    fee=exit_fee,
                    net_pnl=gross - exit_fee,
                )
            ],
            close_time=candle.time,
            close_price=exit_price,
            gross_pnl=gross,
            fees=fees,
            net_pnl=gross - fees,
        )

    def _exit_price(self, pos: _OpenPosition, candle: Candle) -> tuple[float, str] | None:
        if pos.side == "long":
            if candle.low <= pos.stop_price:
                return pos.stop_price, "stop"
            if candle.high >= pos.target_price:
                return pos.target_price, "tp1"
        else:
            if candle.high >= pos.stop_price:
                return pos.stop_price, "stop"
            if candle.low <= pos.target_price:
                return pos.target_price, "tp1"
        return None

    def run_backtest(
        self,
        *,
        initial_equity: float,
        execution_candles: Sequence[Candle],
        primary_range_candles: Sequence[Candle],
        secondary_range_candles: Sequence[Candle],
    ) -> BacktestResult:
        if len(execution_candles) < self.config.min_execution_candles:
            raise StrategyComputationError(
                f"Not enough execution candles ({len(execution_candles)}), "
                f"need at least {self.config.min_execution_candles}"
            )

        primary_times = [c.time for c in primary_range_candles]
        secondary_times = [c.time for c in secondary_range_candles]
        size = self.config.range_lookback

        equity = initial_equity
        trades: list[BacktestTrade] = []
        position: _OpenPosition | None = None

        for candle in execution_candles:
            if position is not None:
                hit = self._exit_price(position, candle)
                if hit is not None:
                    trade = self._close(position, candle, hit[0], hit[1])
                    trades.append(trade)
                    equity += trade.net_pnl
                    position = None
                continue

            snap = self._snapshot(
                candle,
                _window_until(primary_range_candles, primary_times, candle.time, size),
                _window_until(secondary_range_candles, secondary_times, candle.time, size),
            )
            if snap.range_valid:
                position = self._open(len(trades) + 1, candle, snap, equity)

        if position is not None:
            last = execution_candles[-1]
            trade = self._close(position, last, last.close, "end")
            trades.append(trade)
            equity += trade.net_pnl

        return BacktestResult(trades=trades, metrics=compile_metrics(trades, initial_equity))


def compile_metrics(trades: Sequence[BacktestTrade], initial_equity: float) -> BacktestMetrics:
    wins = [t for t in trades if t.net_pnl > 0]
    losses = [t for t in trades if t.net_pnl <= 0]
    net_pnl = sum(t.net_pnl for t in trades)

    # max drawdown on the closed-trade equity curve
    peak = initial_equity
    running = initial_equity
    max_dd = 0.0
    for t in trades:
        running += t.net_pnl
        peak = max(peak, running)
        dd = (peak - running) / peak if peak > 0 else 0.0
        max_dd = max(max_dd, dd)

    return BacktestMetrics(
        total_trades=len(trades),
        wins=len(wins),
        losses=len(losses),
        win_rate=round(len(wins) / len(trades), 4) if trades else 0.0,
        net_pnl=round(net_pnl, 6),
        gross_profit=round(sum(t.net_pnl for t in wins), 6),
        gross_loss=round(abs(sum(t.net_pnl for t in losses)), 6),
        max_drawdown_pct=round(max_dd, 6),
        ending_equity=round(initial_equity + net_pnl, 6),
    )


def create_strategy_engine(overrides: dict[str, Any] | None = None) -> RangeReversionEngine:
    return RangeReversionEngine(RangeStrategyConfig.from_overrides(overrides))
