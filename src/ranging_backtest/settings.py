from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Range validation (OpenAI Responses API)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_validation_model_primary: str = "gpt-5-nano-2025-08-07"
    openai_validation_model_fallback: str = "gpt-5-mini-2025-08-07"
    openai_validation_confidence_threshold: float = Field(default=0.72, ge=0, le=1)
    openai_validation_max_output_tokens: int = Field(default=800, ge=64, le=4096)
    openai_validation_timeout_seconds: float = Field(default=45, ge=1, le=600)

    # Candle provider
    kline_provider: Literal["kucoin", "yfinance"] = "kucoin"
    kucoin_public_base_url: str = "https://api.kucoin.com"
    kline_http_retries: int = Field(default=3, ge=1, le=10)
    kline_http_timeout_seconds: float = Field(default=20, ge=1, le=300)
    kline_http_backoff_seconds: float = Field(default=0.35, ge=0, le=30)

    # Candle blob cache
    kline_cache_enabled: bool = True
    kline_cache_dir: Path = Path("data/kline_cache")
    klines_public_base_url: str = ""

    log_level: str = "INFO"
    db_path: Path = Path("data/ranging_backtest.sqlite3")

    # Backtest defaults
    backtest_default_initial_equity: float = Field(default=1000, ge=1, le=100_000_000)
    backtest_min_execution_candles: int = Field(default=80, ge=1, le=100_000)
    job_error_message_max_chars: int = Field(default=500, ge=32, le=10_000)

    @model_validator(mode="after")
    def validate_models(self) -> "Settings":
        if not self.openai_validation_model_primary.strip() or not self.openai_validation_model_fallback.strip():
            raise ValueError("Both range validation models must be configured.")
        return self


settings = Settings()
