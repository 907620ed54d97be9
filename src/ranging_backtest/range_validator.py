"""LLM range validation with primary → fallback model escalation.

For each planned bar the validator asks a cheap primary model whether the
lookback window is ranging.  The answer is only trusted as-is when it parses
and clears the confidence threshold; otherwise a stronger fallback model gets
a second opinion and the more confident verdict wins.

Escalation:
  1. primary @ base budget, on any failure retry primary once @ escalated budget
  2. primary ok and confidence >= threshold → accept primary
  3. fallback @ escalated budget
  4. prefer fallback if it succeeded and (primary failed or fallback.conf >= primary.conf)
  5. else primary if it succeeded, else AiEvaluationError

Model output is never trusted structurally: the range is re-sorted so that
val <= poc <= vah, confidence is clamped to [0, 1], reasons are capped.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from loguru import logger

from .ai_plan import LOOKBACK_FLOOR
from .errors import AiEvaluationError
from .indicators import compute_volume_profile_levels, summarize_candles
from .interfaces import CompletionService
from .models import AiConfig, AiEvaluation, Candle, RangeLevels, is_timeframe
from .settings import Settings, settings as default_settings

MAX_REASONS = 6
MAX_REASON_CHARS = 96
MAX_ERROR_CHARS = 240
# Retry / fallback budget cap. Policy value, not a documented model limit.
ESCALATED_BUDGET_CAP = 2_000
FAILED_REASON = "ai_validation_failed"

SYSTEM_PROMPT = "\n".join(
    [
        "You are a trading range validator for crypto futures.",
        "Determine if the provided candles are currently in a ranging regime.",
        "Return only valid JSON with this schema:",
        '{"isRanging":boolean,"confidence":number,"timeframeDetected":"1m|3m|5m|15m|30m|1h|2h|4h|6h|8h|12h|1d|1w|unknown",'
        '"range":{"val":number,"poc":number,"vah":number},"reasons":string[]}',
        "Rules:",
        "- confidence must be in [0,1].",
        "- if not ranging, still provide best estimated range levels.",
        "- keep reasons short and machine-friendly snake_case.",
    ]
)


# ── sanitizers ────────────────────────────────────────────────────

def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def sanitize_range(val: float, poc: float, vah: float) -> RangeLevels:
    low, mid, high = sorted((val, poc, vah))
    return RangeLevels(val=low, poc=mid, vah=high)


def truncate_text(value: str, max_length: int) -> str:
    return value if len(value) <= max_length else value[:max_length]


def sanitize_reasons(reasons: Sequence[str]) -> list[str]:
    return [truncate_text(reason, MAX_REASON_CHARS) for reason in list(reasons)[:MAX_REASONS]]


def default_range(candles: Sequence[Candle]) -> RangeLevels:
    return compute_volume_profile_levels(candles)


# ── response parsing ──────────────────────────────────────────────

_JSON_FENCE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_ANY_FENCE = re.compile(r"```\s*([\s\S]*?)```")


def _parse_raw(text: str) -> str | None:
    return text


def _parse_json_fence(text: str) -> str | None:
    match = _JSON_FENCE.search(text)
    return match.group(1) if match else None


def _parse_any_fence(text: str) -> str | None:
    match = _ANY_FENCE.search(text)
    return match.group(1) if match else None


# Each strategy picks a candidate JSON substring; the first that decodes wins.
JSON_CANDIDATES: list[Callable[[str], str | None]] = [
    _parse_raw,
    _parse_json_fence,
    _parse_any_fence,
]


def safe_json_parse(text: str) -> Any | None:
    for strategy in JSON_CANDIDATES:
        candidate = strategy(text)
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


@dataclass
class RangeValidationResult:
    is_ranging: bool
    confidence: float
    timeframe_detected: str
    range: RangeLevels
    reasons: list[str] = field(default_factory=list)


def _finite_or(value: Any, fallback: float) -> float:
    if isinstance(value, bool):
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def normalize_validation_result(raw: Any, candles: Sequence[Candle]) -> RangeValidationResult:
    fallback = default_range(candles)
    root = raw if isinstance(raw, dict) else {}
    raw_range = root.get("range") if isinstance(root.get("range"), dict) else {}
    reasons = root.get("reasons") if isinstance(root.get("reasons"), list) else []
    detected = root.get("timeframeDetected")

    return RangeValidationResult(
        is_ranging=root.get("isRanging") is True,
        confidence=clamp(_finite_or(root.get("confidence"), 0.0), 0.0, 1.0),
        timeframe_detected=detected if is_timeframe(detected) else "unknown",
        range=sanitize_range(
            _finite_or(raw_range.get("val"), fallback.val),
            _finite_or(raw_range.get("poc"), fallback.poc),
            _finite_or(raw_range.get("vah"), fallback.vah),
        ),
        reasons=[r for r in reasons if isinstance(r, str)],
    )


# ── prompt ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PromptDetail:
    symbol: str
    timeframe: str
    from_ms: int
    to_ms: int


def build_prompt_payload(detail: PromptDetail, candles: Sequence[Candle]) -> dict:
    return {
        "symbol": detail.symbol,
        "timeframe": detail.timeframe,
        "fromMs": detail.from_ms,
        "toMs": detail.to_ms,
        "summary": summarize_candles(candles).to_prompt_dict(),
        "deterministicCandidate": default_range(candles).to_dict(),
        "candles": [[c.time, c.open, c.high, c.low, c.close, c.volume] for c in candles],
    }


# ── escalation ────────────────────────────────────────────────────

@dataclass
class ValidationOutcome:
    result: RangeValidationResult
    final_model: str
    used_fallback: bool


class RangeValidator:
    def __init__(self, client: CompletionService, config: Settings | None = None) -> None:
        self.client = client
        config = config or default_settings
        self.primary_budget = int(config.openai_validation_max_output_tokens)
        self.retry_budget = min(self.primary_budget * 2, ESCALATED_BUDGET_CAP)
        self.timeout_seconds = config.openai_validation_timeout_seconds

    async def _call_model(
        self,
        model: str,
        detail: PromptDetail,
        candles: Sequence[Candle],
        max_output_tokens: int,
    ) -> RangeValidationResult:
        payload = json.dumps(build_prompt_payload(detail, candles))
        text = await asyncio.wait_for(
            self.client.complete(model, SYSTEM_PROMPT, payload, max_output_tokens, self.timeout_seconds),
            timeout=self.timeout_seconds,
        )
        parsed = safe_json_parse(text)
        if not isinstance(parsed, dict):
            raise ValueError("OpenAI output was not a JSON object")
        return normalize_validation_result(parsed, candles)

    async def validate(
        self,
        detail: PromptDetail,
        candles: Sequence[Candle],
        ai_config: AiConfig,
    ) -> ValidationOutcome:
        primary: RangeValidationResult | None = None
        primary_error: Exception | None = None
        try:
            primary = await self._call_model(ai_config.model_primary, detail, candles, self.primary_budget)
        except Exception as exc:
            logger.debug("Primary model {} failed, retrying with {} tokens: {}", ai_config.model_primary, self.retry_budget, exc)
            try:
                primary = await self._call_model(ai_config.model_primary, detail, candles, self.retry_budget)
            except Exception as retry_exc:
                primary_error = retry_exc

        if primary is not None and primary.confidence >= ai_config.confidence_threshold:
            return ValidationOutcome(primary, ai_config.model_primary, used_fallback=False)

        fallback: RangeValidationResult | None = None
        fallback_error: Exception | None = None
        try:
            fallback = await self._call_model(ai_config.model_fallback, detail, candles, self.retry_budget)
        except Exception as exc:
            fallback_error = exc

        if fallback is not None and (primary is None or fallback.confidence >= primary.confidence):
            return ValidationOutcome(fallback, ai_config.model_fallback, used_fallback=True)
        if primary is not None:
            return ValidationOutcome(primary, ai_config.model_primary, used_fallback=False)

        raise AiEvaluationError(
            f"Validation failed on both models. Primary: {primary_error}. Fallback: {fallback_error}"
        )

    async def evaluate(
        self,
        candles: Sequence[Candle],
        index: int,
        symbol: str,
        timeframe: str,
        ai_config: AiConfig,
    ) -> AiEvaluation | None:
        """Evaluate bar ``index`` against its lookback window.

        Returns None when the window is shorter than the lookback floor (the
        bar is skipped, not counted).  A double model failure is folded into a
        rejected evaluation carrying the deterministic range.
        """
        window = list(candles[max(0, index - ai_config.lookback_candles + 1): index + 1])
        if len(window) < LOOKBACK_FLOOR:
            return None

        detail = PromptDetail(symbol=symbol, timeframe=timeframe, from_ms=window[0].time, to_ms=window[-1].time)
        at_time = candles[index].time

        try:
            outcome = await self.validate(detail, window, ai_config)
        except AiEvaluationError as exc:
            logger.warning("AI validation failed for {} bar {}: {}", symbol, index, exc)
            return AiEvaluation(
                at_index=index,
                at_time=at_time,
                final_model=ai_config.model_primary,
                used_fallback=False,
                is_ranging=False,
                confidence=0.0,
                accepted=False,
                range=default_range(window),
                reasons=[FAILED_REASON],
                error_message=truncate_text(str(exc), MAX_ERROR_CHARS),
            )

        result = outcome.result
        return AiEvaluation(
            at_index=index,
            at_time=at_time,
            final_model=outcome.final_model,
            used_fallback=outcome.used_fallback,
            is_ranging=result.is_ranging,
            confidence=result.confidence,
            accepted=result.is_ranging and result.confidence >= ai_config.confidence_threshold,
            range=result.range,
            reasons=sanitize_reasons(result.reasons),
        )
