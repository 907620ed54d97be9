"""Error taxonomy for the backtest pipeline.

Only ``BacktestJobRunner.run_backtest_job`` turns these into a terminal
record.  Everything below the job level either propagates (fatal) or is
logged and swallowed (non-fatal):

* fatal  -> ValidationError, UpstreamFetchError, AiConfigurationError,
            StrategyComputationError
* soft   -> CacheStoreError, AiEvaluationError
* replay -> ReplayError is never raised; its message becomes a warning
            on the replay result
"""

from __future__ import annotations


class BacktestError(RuntimeError):
    """Base class for every error raised by the pipeline."""


class ValidationError(BacktestError):
    """Malformed trigger payload, rejected before a job record exists."""


class UpstreamFetchError(BacktestError):
    """Candle provider could not deliver a window."""


class CacheStoreError(BacktestError):
    """Blob store unavailable or rejected a write."""


class AiEvaluationError(BacktestError):
    """Both primary and fallback models failed for one evaluation."""


class AiConfigurationError(BacktestError):
    """AI validation requested but the runtime is missing a credential."""


class StrategyComputationError(BacktestError):
    """Strategy engine refused the input (e.g. too few candles)."""


class ReplayError(BacktestError):
    """Reconstruction failure while replaying a stored backtest."""
