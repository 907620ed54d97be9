import sys
from pathlib import Path

from loguru import logger


LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}"


def configure_logging(level: str = "INFO", log_dir: Path | None = None) -> None:
    """Route all backtest logs to stdout, plus a daily rotated file when ``log_dir`` is set."""
    logger.remove()
    logger.add(
        sys.stdout,
        level=level.upper(),
        format=LOG_FORMAT,
        enqueue=True,
    )
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(log_dir / "backtests_{time:YYYY-MM-DD}.log"),
            level=level.upper(),
            format=LOG_FORMAT,
            rotation="1 day",
            retention="14 days",
            enqueue=True,
        )
