"""Candle-window cache & resolution.

Normalized candle windows are stored as JSON blobs under two keys:

 • ``backtests/{id}/{symbol}/{tf}/{from}-{to}.json`` — per-job copy for audit / replay
 • ``windows/{symbol}/{tf}/{from}-{to}.json``         — shared across every job
   simulating the same window, so reruns skip the upstream fetch

Jobs only keep ``KlineCacheReference`` handles; the candles themselves live
in the blob store.  A missing or broken store never fails a backtest; the
resolver simply degrades to fetching uncached.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence
from urllib.parse import quote

from loguru import logger

from .errors import CacheStoreError
from .interfaces import BlobStore, CandleProvider
from .models import Candle, KlineCacheReference
from .settings import Settings, settings as default_settings

CACHE_SCHEMA_VERSION = 1

_UNSAFE_KEY_CHARS = re.compile(r"[^a-zA-Z0-9_-]")


# ── blob store ────────────────────────────────────────────────────

class FileBlobStore:
    """Blob store on the local filesystem, keys map to relative paths."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise CacheStoreError(f"Blob key escapes cache root: {key}")
        return path

    def _read(self, key: str) -> bytes | None:
        path = self._path(key)
        if not path.exists():
            return None
        return path.read_bytes()

    def _write(self, key: str, data: bytes) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    async def get(self, key: str) -> bytes | None:
        return await asyncio.to_thread(self._read, key)

    async def put(self, key: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._write, key, data)
        except OSError as exc:
            raise CacheStoreError(f"Failed to write blob {key}: {exc}") from exc


def build_blob_store(config: Settings | None = None) -> FileBlobStore | None:
    config = config or default_settings
    if not config.kline_cache_enabled:
        return None
    return FileBlobStore(config.kline_cache_dir)


# ── keys & refs ───────────────────────────────────────────────────

def key_part(value: str) -> str:
    return _UNSAFE_KEY_CHARS.sub("_", value)


def build_window_key(symbol: str, timeframe: str, from_ms: int, to_ms: int) -> str:
    return f"windows/{key_part(symbol)}/{key_part(timeframe)}/{from_ms}-{to_ms}.json"


def build_backtest_key(backtest_id: str, symbol: str, timeframe: str, from_ms: int, to_ms: int) -> str:
    return (
        f"backtests/{key_part(backtest_id)}/{key_part(symbol)}/"
        f"{key_part(timeframe)}/{from_ms}-{to_ms}.json"
    )


def to_public_url(key: str, base_url: str) -> str | None:
    base = base_url.strip()
    if not base:
        return None
    encoded = "/".join(quote(segment, safe="") for segment in key.split("/"))
    return f"{base.rstrip('/')}/{encoded}"


def normalize_reference(ref: KlineCacheReference, base_url: str = "") -> KlineCacheReference:
    return replace(ref, url=to_public_url(ref.key, base_url) or ref.url)


def find_matching_ref(
    refs: Sequence[KlineCacheReference] | None,
    symbol: str,
    timeframe: str,
    from_ms: int,
    to_ms: int,
) -> KlineCacheReference | None:
    for ref in refs or []:
        if (
            ref.symbol == symbol
            and ref.timeframe == timeframe
            and ref.from_ms == from_ms
            and ref.to_ms == to_ms
            and ref.key
        ):
            return ref
    return None


def dedupe_refs(
    refs: Iterable[KlineCacheReference | None],
    base_url: str = "",
) -> list[KlineCacheReference]:
    """Collapse refs by key; a later ref replaces an earlier one with the same key."""
    by_key: dict[str, KlineCacheReference] = {}
    for ref in refs:
        if ref is None or not ref.key:
            continue
        by_key[ref.key] = normalize_reference(ref, base_url)
    return list(by_key.values())


# ── normalization ─────────────────────────────────────────────────

def parse_candle(raw: Any) -> Candle | None:
    if isinstance(raw, Candle):
        raw = raw.to_dict()
    if not isinstance(raw, dict):
        return None

    try:
        values = [
            float(raw.get("time")),
            float(raw.get("open")),
            float(raw.get("high")),
            float(raw.get("low")),
            float(raw.get("close")),
            float(raw.get("volume") if raw.get("volume") is not None else 0),
        ]
    except (TypeError, ValueError):
        return None
    if not all(math.isfinite(v) for v in values):
        return None

    time, open_, high, low, close, volume = values
    return Candle(time=int(math.floor(time)), open=open_, high=high, low=low, close=close, volume=volume)


def normalize_candles(raw: Any) -> list[Candle]:
    """Parse, drop non-finite rows, dedupe by time (last wins), sort ascending."""
    if isinstance(raw, dict) and isinstance(raw.get("candles"), list):
        rows = raw["candles"]
    elif isinstance(raw, list):
        rows = raw
    else:
        rows = []

    by_time: dict[int, Candle] = {}
    for row in rows:
        candle = parse_candle(row)
        if candle is not None:
            by_time[candle.time] = candle
    return [by_time[t] for t in sorted(by_time)]


def encode_payload(symbol: str, timeframe: str, from_ms: int, to_ms: int, candles: Sequence[Candle]) -> bytes:
    payload = {
        "schema_version": CACHE_SCHEMA_VERSION,
        "symbol": symbol,
        "timeframe": timeframe,
        "from_ms": from_ms,
        "to_ms": to_ms,
        "candles": [c.to_dict() for c in candles],
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
    return json.dumps(payload).encode("utf-8")


# ── resolution ────────────────────────────────────────────────────

@dataclass
class CandleResolution:
    candles: list[Candle]
    ref: KlineCacheReference | None = None


class KlineCache:
    """Resolves (symbol, timeframe, window) to candles: known ref → shared window → upstream."""

    def __init__(
        self,
        provider: CandleProvider,
        store: BlobStore | None,
        public_base_url: str | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.public_base_url = (
            default_settings.klines_public_base_url if public_base_url is None else public_base_url
        )

    def dedupe_refs(self, refs: Iterable[KlineCacheReference | None]) -> list[KlineCacheReference]:
        return dedupe_refs(refs, self.public_base_url)

    def _ref(self, key: str, symbol: str, timeframe: str, from_ms: int, to_ms: int, count: int) -> KlineCacheReference:
        return normalize_reference(
            KlineCacheReference(
                key=key,
                symbol=symbol,
                timeframe=timeframe,
                from_ms=from_ms,
                to_ms=to_ms,
                candle_count=count,
            ),
            self.public_base_url,
        )

    async def load(self, key: str) -> list[Candle] | None:
        if self.store is None or not key.strip():
            return None
        try:
            body = await self.store.get(key)
        except Exception as exc:
            logger.debug("Kline cache read failed for {}: {}", key, exc)
            return None
        if not body:
            return None

        try:
            parsed = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.debug("Kline cache blob {} is not valid JSON", key)
            return None

        candles = normalize_candles(parsed)
        return candles or None

    async def save(
        self,
        backtest_id: str,
        symbol: str,
        timeframe: str,
        from_ms: int,
        to_ms: int,
        candles: Sequence[Candle],
    ) -> KlineCacheReference | None:
        if self.store is None:
            return None

        normalized = normalize_candles(list(candles))
        body = encode_payload(symbol, timeframe, from_ms, to_ms, normalized)
        window_key = build_window_key(symbol, timeframe, from_ms, to_ms)
        await asyncio.gather(
            self.store.put(build_backtest_key(backtest_id, symbol, timeframe, from_ms, to_ms), body),
            self.store.put(window_key, body),
        )
        return self._ref(window_key, symbol, timeframe, from_ms, to_ms, len(normalized))

    async def resolve(
        self,
        backtest_id: str,
        symbol: str,
        timeframe: str,
        from_ms: int,
        to_ms: int,
        refs: Sequence[KlineCacheReference] | None = None,
    ) -> CandleResolution:
        existing = find_matching_ref(refs, symbol, timeframe, from_ms, to_ms)
        if existing is not None:
            cached = await self.load(existing.key)
            if cached:
                logger.debug("Kline cache hit (ref) {} {} -> {} candles", symbol, timeframe, len(cached))
                return CandleResolution(cached, normalize_reference(existing, self.public_base_url))

        window_key = build_window_key(symbol, timeframe, from_ms, to_ms)
        shared = await self.load(window_key)
        if shared:
            logger.debug("Kline cache hit (window) {} {} -> {} candles", symbol, timeframe, len(shared))
            return CandleResolution(
                shared,
                self._ref(window_key, symbol, timeframe, from_ms, to_ms, len(shared)),
            )

        logger.info("Kline cache miss {} {} {}-{}, fetching upstream", symbol, timeframe, from_ms, to_ms)
        candles = normalize_candles(await self.provider.fetch(symbol, timeframe, from_ms, to_ms))

        try:
            ref = await self.save(backtest_id, symbol, timeframe, from_ms, to_ms, candles)
        except Exception as exc:
            logger.error(
                "Failed to persist kline cache for {} {} {} ({}-{}): {}",
                backtest_id, symbol, timeframe, from_ms, to_ms, exc,
            )
            return CandleResolution(candles)
        return CandleResolution(candles, ref)
