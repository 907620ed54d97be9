import warnings as _warnings

# yfinance emits pandas FutureWarnings on every history() call
_warnings.filterwarnings("ignore", category=FutureWarning, module="yfinance")


__all__ = [
    "settings",
    "backtester",
    "worker",
]
