from __future__ import annotations

import asyncio

import pytest

from conftest import ScriptedCompletionService, make_candles, validation_json
from ranging_backtest.ai_plan import normalize_ai_config
from ranging_backtest.errors import AiEvaluationError
from ranging_backtest.range_validator import (
    FAILED_REASON,
    MAX_ERROR_CHARS,
    MAX_REASON_CHARS,
    MAX_REASONS,
    PromptDetail,
    RangeValidator,
    build_prompt_payload,
    normalize_validation_result,
    safe_json_parse,
    sanitize_range,
)

PRIMARY = "primary-model"
FALLBACK = "fallback-model"


@pytest.fixture
def ai_config():
    return normalize_ai_config(
        {"enabled": True, "model_primary": PRIMARY, "model_fallback": FALLBACK, "confidence_threshold": 0.72}
    )


@pytest.fixture
def detail():
    return PromptDetail(symbol="BTC-USDT", timeframe="15m", from_ms=0, to_ms=1)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ((1.0, 2.0, 3.0), (1.0, 2.0, 3.0)),
        ((5.0, 1.0, 3.0), (1.0, 3.0, 5.0)),
        ((3.0, 5.0, 1.0), (1.0, 3.0, 5.0)),
        ((-1.0, -5.0, 2.0), (-5.0, -1.0, 2.0)),
    ],
)
def test_sanitize_range_orders_levels(raw, expected):
    levels = sanitize_range(*raw)

    assert (levels.val, levels.poc, levels.vah) == expected


@pytest.mark.parametrize("confidence, expected", [(1.4, 1.0), (-0.2, 0.0), ("0.5", 0.5), (None, 0.0)])
def test_normalize_result_clamps_confidence(confidence, expected):
    result = normalize_validation_result({"isRanging": True, "confidence": confidence}, make_candles(60))

    assert result.confidence == expected


def test_normalize_result_fills_missing_fields():
    candles = make_candles(60)

    result = normalize_validation_result({"isRanging": "yes", "timeframeDetected": "7m", "reasons": ["a", 3]}, candles)

    assert result.is_ranging is False
    assert result.timeframe_detected == "unknown"
    assert result.reasons == ["a"]
    assert result.range.val <= result.range.poc <= result.range.vah


def test_safe_json_parse_handles_fences_and_garbage():
    assert safe_json_parse('{"a": 1}') == {"a": 1}
    assert safe_json_parse('Here you go:\n```json\n{"a": 2}\n```') == {"a": 2}
    assert safe_json_parse('```\n{"a": 3}\n```') == {"a": 3}
    assert safe_json_parse("not json at all") is None


def test_prompt_payload_carries_summary_and_candidate():
    candles = make_candles(60)

    payload = build_prompt_payload(PromptDetail("BTC-USDT", "15m", 1, 2), candles)

    assert payload["fromMs"] == 1 and payload["toMs"] == 2
    assert len(payload["candles"]) == 60
    assert set(payload["deterministicCandidate"]) == {"val", "poc", "vah"}


def test_confident_primary_is_accepted_without_fallback(test_settings, ai_config, detail):
    client = ScriptedCompletionService({PRIMARY: [validation_json(0.9)]})
    validator = RangeValidator(client, test_settings)

    outcome = asyncio.run(validator.validate(detail, make_candles(80), ai_config))

    assert outcome.final_model == PRIMARY
    assert outcome.used_fallback is False
    assert [model for model, _ in client.calls] == [PRIMARY]


def test_more_confident_fallback_wins(test_settings, ai_config, detail):
    client = ScriptedCompletionService({PRIMARY: [validation_json(0.50)], FALLBACK: [validation_json(0.80)]})
    validator = RangeValidator(client, test_settings)

    outcome = asyncio.run(validator.validate(detail, make_candles(80), ai_config))

    assert outcome.final_model == FALLBACK
    assert outcome.used_fallback is True
    assert outcome.result.confidence == 0.80


def test_less_confident_fallback_keeps_primary(test_settings, ai_config, detail):
    client = ScriptedCompletionService({PRIMARY: [validation_json(0.60)], FALLBACK: [validation_json(0.40)]})
    validator = RangeValidator(client, test_settings)

    outcome = asyncio.run(validator.validate(detail, make_candles(80), ai_config))

    assert outcome.final_model == PRIMARY
    assert outcome.used_fallback is False


@pytest.mark.parametrize("first_reply", ["no json here", "[]", "0", "false", '"text"'])
def test_primary_retry_uses_escalated_budget(test_settings, ai_config, detail, first_reply):
    client = ScriptedCompletionService({PRIMARY: [first_reply, validation_json(0.95)]})
    validator = RangeValidator(client, test_settings)

    outcome = asyncio.run(validator.validate(detail, make_candles(80), ai_config))

    assert outcome.final_model == PRIMARY
    assert client.calls == [(PRIMARY, 800), (PRIMARY, 1600)]


def test_escalated_budget_is_capped(ai_config, test_settings):
    config = test_settings.model_copy(update={"openai_validation_max_output_tokens": 1500})

    validator = RangeValidator(ScriptedCompletionService(), config)

    assert validator.primary_budget == 1500
    assert validator.retry_budget == 2000


def test_both_models_failing_raises(test_settings, ai_config, detail):
    client = ScriptedCompletionService({PRIMARY: ["bad", "bad"], FALLBACK: [RuntimeError("boom")]})
    validator = RangeValidator(client, test_settings)

    with pytest.raises(AiEvaluationError, match="Validation failed on both models"):
        asyncio.run(validator.validate(detail, make_candles(80), ai_config))

    assert client.calls == [(PRIMARY, 800), (PRIMARY, 1600), (FALLBACK, 1600)]


def test_evaluate_skips_short_windows(test_settings, ai_config):
    validator = RangeValidator(ScriptedCompletionService(), test_settings)

    assert asyncio.run(validator.evaluate(make_candles(80), 58, "BTC-USDT", "15m", ai_config)) is None


def test_evaluate_folds_double_failure_into_rejected_evaluation(test_settings, ai_config):
    client = ScriptedCompletionService({FALLBACK: [RuntimeError("x" * 1000)]})
    validator = RangeValidator(client, test_settings)
    candles = make_candles(80)

    evaluation = asyncio.run(validator.evaluate(candles, 79, "BTC-USDT", "15m", ai_config))

    assert evaluation.accepted is False
    assert evaluation.confidence == 0.0
    assert evaluation.final_model == PRIMARY
    assert evaluation.reasons == [FAILED_REASON]
    assert len(evaluation.error_message) <= MAX_ERROR_CHARS
    assert evaluation.at_time == candles[79].time
    assert evaluation.range.val <= evaluation.range.poc <= evaluation.range.vah


def test_evaluate_accepts_only_ranging_above_threshold(test_settings, ai_config):
    long_reasons = ["r" * 200] + [f"reason_{i}" for i in range(10)]
    client = ScriptedCompletionService(
        {
            PRIMARY: [validation_json(0.95, is_ranging=False, reasons=long_reasons)],
        }
    )
    validator = RangeValidator(client, test_settings)

    evaluation = asyncio.run(validator.evaluate(make_candles(80), 79, "BTC-USDT", "15m", ai_config))

    assert evaluation.accepted is False
    assert evaluation.is_ranging is False
    assert len(evaluation.reasons) == MAX_REASONS
    assert len(evaluation.reasons[0]) == MAX_REASON_CHARS
