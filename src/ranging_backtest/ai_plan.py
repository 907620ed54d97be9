"""AI range-validation planning.

Decides *whether* and *where* the LLM gets asked about a backtest:

  normalize_ai_config     — one pass from a loose request dict to a frozen AiConfig
  build_evaluation_plan   — which execution-bar indices get an evaluation
  apply_ai_summary        — step-function overlay of verdicts onto candles

Defaults applied by ``normalize_ai_config``:

  =====================  ==========================  =========================
  field                  rule                        default
  =====================  ==========================  =========================
  lookback_candles       max(60, floor(x))           240
  cadence_bars           max(1, floor(x))            1
  max_evaluations        clamp(floor(x), 1, 400)     50
  confidence_threshold   clamp(x, 0, 1)              settings (0.72)
  model_primary          trimmed, non-empty          settings
  model_fallback         trimmed, non-empty          settings
  =====================  ==========================  =========================
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Mapping, Sequence

from .models import AiConfig, AiEvaluation, AiSummary, Candle
from .settings import Settings, settings as default_settings

LOOKBACK_FLOOR = 60
DEFAULT_LOOKBACK_CANDLES = 240
DEFAULT_CADENCE_BARS = 1
DEFAULT_MAX_EVALUATIONS = 50
MAX_EVALUATIONS_CAP = 400


def _finite(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _pick(raw: Mapping[str, Any], snake: str, camel: str) -> Any:
    return raw[snake] if snake in raw else raw.get(camel)


def _model_name(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def normalize_ai_config(
    raw: Mapping[str, Any] | AiConfig | None,
    config: Settings | None = None,
) -> AiConfig | None:
    """Return a fully populated AiConfig, or None when AI validation is off."""
    config = config or default_settings
    if isinstance(raw, AiConfig):
        raw = raw.to_dict()
    if not raw or raw.get("enabled") is not True:
        return None

    lookback = _finite(_pick(raw, "lookback_candles", "lookbackCandles"))
    cadence = _finite(_pick(raw, "cadence_bars", "cadenceBars"))
    max_evals = _finite(_pick(raw, "max_evaluations", "maxEvaluations"))
    threshold = _finite(_pick(raw, "confidence_threshold", "confidenceThreshold"))
    if threshold is None:
        threshold = config.openai_validation_confidence_threshold

    return AiConfig(
        enabled=True,
        lookback_candles=max(LOOKBACK_FLOOR, math.floor(lookback)) if lookback is not None else DEFAULT_LOOKBACK_CANDLES,
        cadence_bars=max(1, math.floor(cadence)) if cadence is not None else DEFAULT_CADENCE_BARS,
        max_evaluations=(
            max(1, min(math.floor(max_evals), MAX_EVALUATIONS_CAP))
            if max_evals is not None
            else DEFAULT_MAX_EVALUATIONS
        ),
        confidence_threshold=max(0.0, min(1.0, threshold)),
        model_primary=_model_name(
            _pick(raw, "model_primary", "modelPrimary"), config.openai_validation_model_primary
        ),
        model_fallback=_model_name(
            _pick(raw, "model_fallback", "modelFallback"), config.openai_validation_model_fallback
        ),
    )


def create_initial_ai_summary(
    raw: Mapping[str, Any] | AiConfig | None,
    config: Settings | None = None,
) -> AiSummary | None:
    normalized = normalize_ai_config(raw, config)
    if normalized is None:
        return None
    return AiSummary.from_config(normalized)


@dataclass(frozen=True)
class EvaluationPlan:
    indices: list[int]
    effective_cadence_bars: int


def build_evaluation_plan(total_bars: int, ai_config: AiConfig) -> EvaluationPlan:
    """Pick evaluation indices; ``max_evaluations`` is a hard ceiling, cadence only a preference.

    The final bar is always evaluated, so the most recent state is never left
    to an older verdict.
    """
    start_index = LOOKBACK_FLOOR - 1
    if total_bars <= 0 or total_bars - 1 < start_index:
        return EvaluationPlan(indices=[], effective_cadence_bars=ai_config.cadence_bars)

    span = total_bars - start_index
    effective = max(1, ai_config.cadence_bars, math.ceil(span / ai_config.max_evaluations))

    indices = list(range(start_index, total_bars, effective))
    last_index = total_bars - 1
    if indices[-1] != last_index:
        if len(indices) >= ai_config.max_evaluations:
            indices = indices[: ai_config.max_evaluations - 1]
        indices.append(last_index)

    return EvaluationPlan(indices=indices, effective_cadence_bars=effective)


def apply_ai_summary(candles: Sequence[Candle], summary: AiSummary | None) -> list[Candle]:
    """Give each candle the features of the latest evaluation at or before it."""
    if summary is None or not summary.enabled or not summary.evaluations:
        return list(candles)

    ordered: list[AiEvaluation] = sorted(
        (e for e in summary.evaluations if _finite(e.at_index) is not None and e.at_index >= 0),
        key=lambda e: e.at_index,
    )
    if not ordered:
        return list(candles)

    enriched: list[Candle] = []
    cursor = 0
    active: AiEvaluation | None = None
    for index, candle in enumerate(candles):
        while cursor < len(ordered) and ordered[cursor].at_index <= index:
            active = ordered[cursor]
            cursor += 1

        if active is None:
            enriched.append(candle)
            continue

        enriched.append(
            replace(
                candle,
                features={
                    **(candle.features or {}),
                    "range_valid": active.accepted,
                    "val": active.range.val,
                    "poc": active.range.poc,
                    "vah": active.range.vah,
                },
            )
        )
    return enriched
