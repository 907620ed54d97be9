"""Event-driven backtest worker.

Consumes ``backtest.requested`` events, validates the payload into a job
input, and drives ``BacktestJobRunner`` with idempotent record handling:

  • a record that already completed is returned untouched
  • a record left ``running`` (e.g. by a crashed attempt) is reused
  • AI progress is written onto the running record as it arrives
  • the terminal record always replaces the running one
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, replace
from typing import Any, Mapping

from loguru import logger

from .backtester import (
    BacktestJobRunner,
    create_failed_backtest_record,
    create_running_backtest_record,
)
from .errors import ValidationError
from .interfaces import RecordStore
from .models import AiSummary, BacktestIdentity, BacktestInput, BacktestRecord, is_timeframe

BACKTEST_EVENT_SOURCE = "ranging.backtest"
BACKTEST_EVENT_DETAIL_TYPE_REQUESTED = "backtest.requested"
INVALID_PAYLOAD_MESSAGE = "Invalid backtest event payload. Check backtest-worker logs for details."

_IDENTITY_FIELDS = (
    ("backtest_id", "backtestId"),
    ("bot_id", "botId"),
    ("bot_name", "botName"),
    ("strategy_id", "strategyId"),
    ("strategy_version", "strategyVersion"),
    ("exchange_id", "exchangeId"),
    ("account_id", "accountId"),
    ("symbol", "symbol"),
)

_TIMEFRAME_FIELDS = (
    ("execution_timeframe", "executionTimeframe"),
    ("primary_range_timeframe", "primaryRangeTimeframe"),
    ("secondary_range_timeframe", "secondaryRangeTimeframe"),
)


@dataclass(frozen=True)
class BacktestRequest:
    identity: BacktestIdentity
    input: BacktestInput


def _pick(raw: Mapping[str, Any], snake: str, camel: str) -> Any:
    return raw[snake] if snake in raw else raw.get(camel)


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _as_mapping(raw: Any) -> Mapping[str, Any] | None:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except (ValueError, TypeError):
            return None
    return raw if isinstance(raw, Mapping) else None


def _parse_ai_block(raw: Any) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        raise ValidationError("ai must be an object")

    enabled = raw.get("enabled")
    if not isinstance(enabled, bool):
        raise ValidationError("ai.enabled must be a boolean")

    lookback = _number(_pick(raw, "lookback_candles", "lookbackCandles"))
    cadence = _number(_pick(raw, "cadence_bars", "cadenceBars"))
    max_evals = _number(_pick(raw, "max_evaluations", "maxEvaluations"))
    threshold = _number(_pick(raw, "confidence_threshold", "confidenceThreshold"))
    primary = _pick(raw, "model_primary", "modelPrimary")
    fallback = _pick(raw, "model_fallback", "modelFallback")
    primary = primary.strip() if isinstance(primary, str) else ""
    fallback = fallback.strip() if isinstance(fallback, str) else ""

    if enabled:
        for name, value in (("lookback_candles", lookback), ("cadence_bars", cadence), ("max_evaluations", max_evals)):
            if value is None or value <= 0:
                raise ValidationError(f"ai.{name} must be a positive number")
        if threshold is None:
            raise ValidationError("ai.confidence_threshold must be a number")
        if not primary or not fallback:
            raise ValidationError("ai.model_primary and ai.model_fallback are required")

    block: dict[str, Any] = {"enabled": enabled}
    if lookback is not None:
        block["lookback_candles"] = math.floor(lookback)
    if cadence is not None:
        block["cadence_bars"] = math.floor(cadence)
    if max_evals is not None:
        block["max_evaluations"] = math.floor(max_evals)
    if threshold is not None:
        block["confidence_threshold"] = threshold
    if primary:
        block["model_primary"] = primary
    if fallback:
        block["model_fallback"] = fallback
    return block


def parse_requested_detail(raw: Any) -> BacktestRequest:
    """Validate an event detail (dict or JSON string) into identity + job input."""
    detail = _as_mapping(raw)
    if detail is None:
        raise ValidationError("Event detail must be a JSON object")

    text: dict[str, str] = {}
    for snake, camel in _IDENTITY_FIELDS:
        value = _pick(detail, snake, camel)
        value = value.strip() if isinstance(value, str) else ""
        if not value:
            raise ValidationError(f"{snake} is required")
        text[snake] = value

    created_at_ms = _number(_pick(detail, "created_at_ms", "createdAtMs"))
    if created_at_ms is None or created_at_ms <= 0:
        raise ValidationError("created_at_ms must be a positive timestamp")

    from_ms = _number(_pick(detail, "from_ms", "fromMs"))
    to_ms = _number(_pick(detail, "to_ms", "toMs"))
    if from_ms is None or to_ms is None or from_ms >= to_ms:
        raise ValidationError("from_ms must be before to_ms")

    initial_equity = _number(_pick(detail, "initial_equity", "initialEquity"))
    if initial_equity is None or initial_equity <= 0:
        raise ValidationError("initial_equity must be positive")

    timeframes: dict[str, str] = {}
    for snake, camel in _TIMEFRAME_FIELDS:
        value = _pick(detail, snake, camel)
        if not is_timeframe(value):
            raise ValidationError(f"{snake} is not a supported timeframe: {value!r}")
        timeframes[snake] = value

    ai_raw = detail.get("ai")
    ai = _parse_ai_block(ai_raw) if ai_raw is not None else None

    strategy_config = _pick(detail, "strategy_config", "strategyConfig")
    if strategy_config is not None and not isinstance(strategy_config, Mapping):
        raise ValidationError("strategy_config must be an object")

    identity = BacktestIdentity(backtest_id=text.pop("backtest_id"), created_at_ms=math.floor(created_at_ms))
    return BacktestRequest(
        identity=identity,
        input=BacktestInput(
            **text,
            from_ms=math.floor(from_ms),
            to_ms=math.floor(to_ms),
            **timeframes,
            initial_equity=initial_equity,
            strategy_config=dict(strategy_config) if strategy_config is not None else None,
            ai=ai,
        ),
    )


def extract_backtest_id(raw: Any) -> str | None:
    detail = _as_mapping(raw)
    if detail is None:
        return None
    value = _pick(detail, "backtest_id", "backtestId")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class BacktestWorker:
    def __init__(self, runner: BacktestJobRunner, store: RecordStore) -> None:
        self.runner = runner
        self.store = store

    async def _mark_invalid(self, backtest_id: str) -> None:
        try:
            existing = await self.store.get(backtest_id)
            if existing is not None and existing.status == "running":
                await self.store.put(replace(existing, status="failed", error_message=INVALID_PAYLOAD_MESSAGE))
        except Exception as exc:
            logger.error("Failed to persist invalid-payload failure for {}: {}", backtest_id, exc)

    async def handle(self, event: Mapping[str, Any]) -> BacktestRecord | None:
        source = event.get("source")
        detail_type = event.get("detail-type", event.get("detail_type"))
        logger.info("Backtest event received id={} source={} type={}", event.get("id"), source, detail_type)

        if source != BACKTEST_EVENT_SOURCE or detail_type != BACKTEST_EVENT_DETAIL_TYPE_REQUESTED:
            return None

        try:
            request = parse_requested_detail(event.get("detail"))
        except ValidationError as exc:
            fallback_id = extract_backtest_id(event.get("detail"))
            logger.error("Invalid backtest event {} (backtest {}): {}", event.get("id"), fallback_id, exc)
            if fallback_id:
                await self._mark_invalid(fallback_id)
            return None

        return await self.process(request.input, request.identity)

    async def process(self, input: BacktestInput, identity: BacktestIdentity) -> BacktestRecord:
        logger.info(
            "Processing backtest {} {} {} ({}-{})",
            identity.backtest_id, input.symbol, input.execution_timeframe, input.from_ms, input.to_ms,
        )

        running: BacktestRecord | None = None

        async def on_ai_progress(summary: AiSummary) -> None:
            nonlocal running
            if running is None or running.status != "running":
                return
            running = replace(running, ai=summary)
            await self.store.put(running)

        try:
            existing = await self.store.get(identity.backtest_id)
            if existing is not None and existing.status == "completed":
                logger.info("Skipping completed backtest {}", identity.backtest_id)
                return existing

            if existing is not None and existing.status == "running":
                running = existing
            else:
                running = create_running_backtest_record(input, identity, self.runner.config)
                await self.store.put(running)

            result = await self.runner.run_backtest_job(input, identity, on_ai_progress=on_ai_progress)
            await self.store.put(result)
        except Exception as exc:
            logger.error("Backtest {} execution raised: {}", identity.backtest_id, exc)
            message = (str(exc) or type(exc).__name__)[: self.runner.config.job_error_message_max_chars]
            result = create_failed_backtest_record(input, identity, message, self.runner.config)
            try:
                await self.store.put(result)
            except Exception as put_exc:
                logger.error("Failed to persist error state for {}: {}", identity.backtest_id, put_exc)

        logger.info(
            "Backtest {} finished: status={} trades={} net={}",
            identity.backtest_id, result.status, result.total_trades, result.net_pnl,
        )
        return result
