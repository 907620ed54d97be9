"""Plain data containers shared by the backtest pipeline.

Everything here is a dataclass so records can be handed to the sqlite store,
progress observers and the CLI as JSON-compatible dicts via ``to_dict`` /
``from_dict``.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Literal

TIMEFRAME_MINUTES: dict[str, int] = {
    "1m": 1,
    "3m": 3,
    "5m": 5,
    "15m": 15,
    "30m": 30,
    "1h": 60,
    "2h": 120,
    "4h": 240,
    "6h": 360,
    "8h": 480,
    "12h": 720,
    "1d": 1440,
    "1w": 10080,
}

BacktestStatus = Literal["running", "completed", "failed"]


def is_timeframe(value: Any) -> bool:
    return isinstance(value, str) and value in TIMEFRAME_MINUTES


# ── candles ───────────────────────────────────────────────────────

@dataclass
class Candle:
    """Single OHLCV bar, ``time`` is the bucket open in epoch milliseconds."""
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    features: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }
        if self.features is not None:
            data["features"] = dict(self.features)
        return data


@dataclass(frozen=True)
class RangeLevels:
    val: float
    poc: float
    vah: float

    def to_dict(self) -> dict[str, float]:
        return {"val": self.val, "poc": self.poc, "vah": self.vah}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RangeLevels":
        return cls(val=float(data["val"]), poc=float(data["poc"]), vah=float(data["vah"]))


@dataclass
class KlineCacheReference:
    """Lookup handle into the blob store; never owns candle data."""
    key: str
    symbol: str
    timeframe: str
    from_ms: int
    to_ms: int
    candle_count: int
    url: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KlineCacheReference":
        return cls(
            key=str(data["key"]),
            symbol=str(data["symbol"]),
            timeframe=str(data["timeframe"]),
            from_ms=int(data["from_ms"]),
            to_ms=int(data["to_ms"]),
            candle_count=int(data.get("candle_count", 0)),
            url=data.get("url"),
        )


# ── AI validation ─────────────────────────────────────────────────

@dataclass(frozen=True)
class AiConfig:
    enabled: bool
    lookback_candles: int
    cadence_bars: int
    max_evaluations: int
    confidence_threshold: float
    model_primary: str
    model_fallback: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AiEvaluation:
    at_index: int
    at_time: int
    final_model: str
    used_fallback: bool
    is_ranging: bool
    confidence: float
    accepted: bool
    range: RangeLevels
    reasons: list[str] = field(default_factory=list)
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.error_message is None:
            data.pop("error_message")
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AiEvaluation":
        return cls(
            at_index=int(data["at_index"]),
            at_time=int(data["at_time"]),
            final_model=str(data.get("final_model", "")),
            used_fallback=bool(data.get("used_fallback", False)),
            is_ranging=bool(data.get("is_ranging", False)),
            confidence=float(data.get("confidence", 0.0)),
            accepted=bool(data.get("accepted", False)),
            range=RangeLevels.from_dict(data["range"]),
            reasons=[str(r) for r in data.get("reasons", [])],
            error_message=data.get("error_message"),
        )


@dataclass
class AiSummary:
    """Normalized AI config plus run counters; grows monotonically during a job."""
    enabled: bool
    lookback_candles: int
    cadence_bars: int
    max_evaluations: int
    confidence_threshold: float
    model_primary: str
    model_fallback: str
    effective_cadence_bars: int
    planned_evaluations: int = 0
    evaluations_run: int = 0
    evaluations_accepted: int = 0
    fallback_used: int = 0
    failed: int = 0
    evaluations: list[AiEvaluation] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: AiConfig) -> "AiSummary":
        return cls(
            **config.to_dict(),
            effective_cadence_bars=config.cadence_bars,
        )

    @property
    def config(self) -> AiConfig:
        return AiConfig(
            enabled=self.enabled,
            lookback_candles=self.lookback_candles,
            cadence_bars=self.cadence_bars,
            max_evaluations=self.max_evaluations,
            confidence_threshold=self.confidence_threshold,
            model_primary=self.model_primary,
            model_fallback=self.model_fallback,
        )

    def clone(self) -> "AiSummary":
        return replace(self, evaluations=list(self.evaluations))

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["evaluations"] = [e.to_dict() for e in self.evaluations]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AiSummary":
        return cls(
            enabled=bool(data.get("enabled", False)),
            lookback_candles=int(data["lookback_candles"]),
            cadence_bars=int(data["cadence_bars"]),
            max_evaluations=int(data["max_evaluations"]),
            confidence_threshold=float(data["confidence_threshold"]),
            model_primary=str(data["model_primary"]),
            model_fallback=str(data["model_fallback"]),
            effective_cadence_bars=int(data.get("effective_cadence_bars", data["cadence_bars"])),
            planned_evaluations=int(data.get("planned_evaluations", 0)),
            evaluations_run=int(data.get("evaluations_run", 0)),
            evaluations_accepted=int(data.get("evaluations_accepted", 0)),
            fallback_used=int(data.get("fallback_used", 0)),
            failed=int(data.get("failed", 0)),
            evaluations=[AiEvaluation.from_dict(e) for e in data.get("evaluations", [])],
        )


# ── strategy output ───────────────────────────────────────────────

@dataclass
class BacktestExit:
    reason: Literal["tp1", "tp2", "stop", "signal", "end"]
    time: int
    price: float
    quantity: float
    gross_pnl: float
    fee: float
    net_pnl: float


@dataclass
class BacktestTrade:
    id: int
    side: Literal["long", "short"]
    entry_time: int
    entry_price: float
    stop_price_at_entry: float
    quantity: float
    entry_fee: float
    exits: list[BacktestExit]
    close_time: int
    close_price: float
    gross_pnl: float
    fees: float
    net_pnl: float
    range_levels: RangeLevels | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        if self.range_levels is None:
            data.pop("range_levels")
        return data


@dataclass
class BacktestMetrics:
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    net_pnl: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    max_drawdown_pct: float = 0.0
    ending_equity: float = 0.0


@dataclass
class BacktestResult:
    trades: list[BacktestTrade]
    metrics: BacktestMetrics


# ── jobs ──────────────────────────────────────────────────────────

@dataclass
class BacktestInput:
    """Parameters that define a single backtest job."""
    bot_id: str
    bot_name: str
    strategy_id: str
    strategy_version: str
    exchange_id: str
    account_id: str
    symbol: str
    from_ms: int
    to_ms: int
    execution_timeframe: str
    primary_range_timeframe: str
    secondary_range_timeframe: str
    initial_equity: float
    strategy_config: dict[str, Any] | None = None
    ai: dict[str, Any] | None = None


@dataclass(frozen=True)
class BacktestIdentity:
    backtest_id: str
    created_at_ms: int

    @classmethod
    def create(cls, symbol: str, created_at_ms: int) -> "BacktestIdentity":
        return cls(backtest_id=new_backtest_id(symbol, created_at_ms), created_at_ms=created_at_ms)


def new_backtest_id(symbol: str, created_at_ms: int) -> str:
    return f"{symbol}-{created_at_ms}-{uuid.uuid4().hex[:8]}"


@dataclass
class BacktestRecord:
    id: str
    created_at_ms: int
    status: BacktestStatus

    bot_id: str
    bot_name: str
    strategy_id: str
    strategy_version: str
    exchange_id: str
    account_id: str
    symbol: str
    from_ms: int
    to_ms: int
    execution_timeframe: str
    primary_range_timeframe: str
    secondary_range_timeframe: str
    initial_equity: float

    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    net_pnl: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    max_drawdown_pct: float = 0.0
    ending_equity: float = 0.0

    strategy_config: dict[str, Any] | None = None
    kline_refs: list[KlineCacheReference] = field(default_factory=list)
    ai: AiSummary | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kline_refs"] = [ref.to_dict() for ref in self.kline_refs]
        data["ai"] = self.ai.to_dict() if self.ai else None
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BacktestRecord":
        payload = dict(data)
        refs = payload.pop("kline_refs", None) or []
        ai = payload.pop("ai", None)
        known = set(cls.__dataclass_fields__)
        record = cls(**{k: v for k, v in payload.items() if k in known})
        record.kline_refs = [KlineCacheReference.from_dict(r) for r in refs]
        record.ai = AiSummary.from_dict(ai) if ai else None
        return record
