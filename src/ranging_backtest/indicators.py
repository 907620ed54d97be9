"""Volume-profile and window statistics computed from OHLCV candle data.

The value-area levels (VAL / POC / VAH) are both the deterministic fallback
range handed to the LLM and the range the reference strategy trades.  All
functions work on sequences of ``Candle`` objects from ``models.py``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence

from .models import Candle, RangeLevels


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _fallback_levels(candles: Sequence[Candle]) -> RangeLevels:
    price = candles[-1].close if candles else 0.0
    return RangeLevels(val=price, poc=price, vah=price)


def compute_volume_profile_levels(
    candles: Sequence[Candle],
    bins: int = 24,
    value_area_pct: float = 0.7,
) -> RangeLevels:
    """Bucket volume by typical price and grow the value area out of the POC bin."""
    if not candles:
        return RangeLevels(val=0.0, poc=0.0, vah=0.0)
    if len(candles) == 1:
        c = candles[0]
        return RangeLevels(val=c.low, poc=c.close, vah=c.high)

    min_price = min(c.low for c in candles)
    max_price = max(c.high for c in candles)
    if not math.isfinite(min_price) or not math.isfinite(max_price) or min_price == max_price:
        return _fallback_levels(candles)

    bin_count = max(3, int(bins))
    bin_size = (max_price - min_price) / bin_count
    volumes = [0.0] * bin_count

    for candle in candles:
        typical = (candle.high + candle.low + candle.close) / 3
        idx = int(_clamp(math.floor((typical - min_price) / bin_size), 0, bin_count - 1))
        volumes[idx] += max(0.0, candle.volume)

    poc_idx = 0
    for i in range(1, bin_count):
        if volumes[i] > volumes[poc_idx]:
            poc_idx = i

    target = sum(volumes) * _clamp(value_area_pct, 0.1, 1.0)
    selected = {poc_idx}
    cumulative = volumes[poc_idx]
    left, right = poc_idx - 1, poc_idx + 1

    while cumulative < target and (left >= 0 or right < bin_count):
        left_volume = volumes[left] if left >= 0 else -1.0
        right_volume = volumes[right] if right < bin_count else -1.0

        if right_volume > left_volume or left < 0:
            selected.add(right)
            cumulative += right_volume
            right += 1
        else:
            selected.add(left)
            cumulative += left_volume
            left -= 1

    return RangeLevels(
        val=min_price + min(selected) * bin_size,
        poc=min_price + (poc_idx + 0.5) * bin_size,
        vah=min_price + (max(selected) + 1) * bin_size,
    )


def compute_overlap_ratio(a: RangeLevels, b: RangeLevels) -> float:
    overlap = max(0.0, min(a.vah, b.vah) - max(a.val, b.val))
    union = max(a.vah, b.vah) - min(a.val, b.val)
    if union <= 0:
        return 0.0
    return overlap / union


def average_levels(a: RangeLevels, b: RangeLevels) -> RangeLevels:
    return RangeLevels(
        val=(a.val + b.val) / 2,
        poc=(a.poc + b.poc) / 2,
        vah=(a.vah + b.vah) / 2,
    )


@dataclass
class WindowSummary:
    """Compact numeric description of a candle window, fed to the LLM prompt."""
    count: int
    start_time: int | None
    end_time: int | None
    min_low: float
    max_high: float
    width: float
    width_pct: float
    avg_volume: float

    def to_prompt_dict(self) -> dict:
        return {
            "count": self.count,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "minLow": self.min_low,
            "maxHigh": self.max_high,
            "width": self.width,
            "widthPct": self.width_pct,
            "avgVolume": self.avg_volume,
        }


def summarize_candles(candles: Sequence[Candle]) -> WindowSummary:
    if not candles:
        return WindowSummary(0, None, None, 0.0, 0.0, 0.0, 0.0, 0.0)

    first, last = candles[0], candles[-1]
    min_low = min(c.low for c in candles)
    max_high = max(c.high for c in candles)
    avg_volume = sum(c.volume for c in candles) / len(candles)
    width = max_high - min_low if math.isfinite(max_high) and math.isfinite(min_low) else 0.0
    reference_close = last.close or first.close or 1.0
    width_pct = width / reference_close if reference_close > 0 else 0.0

    return WindowSummary(
        count=len(candles),
        start_time=first.time,
        end_time=last.time,
        min_low=min_low,
        max_high=max_high,
        width=width,
        width_pct=width_pct,
        avg_volume=avg_volume,
    )
