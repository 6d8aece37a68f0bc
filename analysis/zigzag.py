"""
Adaptive ZigZag Pivot Extraction
Reduces a candle series to alternating swing highs and swing lows. A swing
qualifies only when the retracement from the running extreme clears both a
percentage threshold and an absolute floor expressed in ATR multiples, so
sensitivity stays comparable across quiet and volatile instruments.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Dict

import numpy as np

from .indicators import TechnicalIndicators
from .models import Candle, Pivot, MultiScalePivots, SegmentFeatures

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScaleParams:
    threshold_pct: float
    min_bars: int
    min_swing_atr_multiple: float
    scale: str

    @classmethod
    def from_dict(cls, scale: str, data: Dict) -> 'ScaleParams':
        return cls(
            threshold_pct=float(data['threshold_pct']),
            min_bars=int(data['min_bars']),
            min_swing_atr_multiple=float(data['min_swing_atr_multiple']),
            scale=scale,
        )


SCALE_PRESETS: Dict[str, ScaleParams] = {
    'macro': ScaleParams(10.0, 10, 3.0, 'macro'),
    'meso': ScaleParams(5.0, 5, 1.5, 'meso'),
    'micro': ScaleParams(2.0, 3, 0.8, 'micro'),
}

# Re-extraction used by the pivot-quality sub-score on the trailing window
PIVOT_QUALITY_PARAMS = ScaleParams(4.0, 4, 1.2, 'meso')


def compute_adaptive_zigzag(candles: List[Candle],
                            threshold_pct: float,
                            min_bars: int,
                            atr: float,
                            min_swing_atr_multiple: float,
                            scale: str,
                            source_timeframe: Optional[str] = None) -> List[Pivot]:
    """
    Extracts pivots with dual percentage + ATR gating.

    Args:
        candles: Well-formed candle sequence, ascending by date.
        threshold_pct: Retracement from the running extreme, in percent (3.0 = 3%).
        min_bars: Minimum bars between the last confirmed pivot and the
            confirming bar.
        atr: Volatility estimate in price units.
        min_swing_atr_multiple: Absolute swing floor as a multiple of `atr`.
        scale: Label stamped on every emitted pivot.
        source_timeframe: Optional timeframe label stamped on every pivot.

    Returns:
        Pivots in bar order. Empty when the series is shorter than `min_bars`
        or nothing qualifies.
    """
    n = len(candles)
    if n < min_bars or n == 0:
        return []

    highs = [c.high for c in candles]
    lows = [c.low for c in candles]
    min_swing = atr * min_swing_atr_multiple

    last_pivot_idx = 0
    last_high, last_low = highs[0], lows[0]
    last_high_idx, last_low_idx = 0, 0
    trend = 0  # 1 = up, -1 = down, 0 = unknown

    pivots: List[Pivot] = []

    for i in range(1, n):
        if highs[i] >= last_high:
            last_high = highs[i]
            last_high_idx = i
        if lows[i] <= last_low:
            last_low = lows[i]
            last_low_idx = i

        drop_from_high = (last_high - lows[i]) / last_high * 100
        rise_from_low = (highs[i] - last_low) / last_low * 100
        drop_abs = last_high - lows[i]
        rise_abs = highs[i] - last_low

        drop_valid = drop_from_high >= threshold_pct and drop_abs >= min_swing
        rise_valid = rise_from_low >= threshold_pct and rise_abs >= min_swing
        spaced = (i - last_pivot_idx) >= min_bars

        if trend >= 0 and drop_valid and spaced:
            pivots.append(Pivot(
                index=last_high_idx,
                type='high',
                price=last_high,
                date=candles[last_high_idx].date,
                prominence=drop_from_high,
                scale=scale,
                source_timeframe=source_timeframe,
            ))
            last_pivot_idx = last_high_idx
            last_low = lows[i]
            last_low_idx = i
            trend = -1
        elif trend <= 0 and rise_valid and spaced:
            pivots.append(Pivot(
                index=last_low_idx,
                type='low',
                price=last_low,
                date=candles[last_low_idx].date,
                prominence=rise_from_low,
                scale=scale,
                source_timeframe=source_timeframe,
            ))
            last_pivot_idx = last_low_idx
            last_high = highs[i]
            last_high_idx = i
            trend = 1

    logger.debug(f"ZigZag[{scale}] threshold={threshold_pct}% min_bars={min_bars} -> {len(pivots)} pivots from {n} bars")
    return pivots


def extract_pivots(candles: List[Candle], params: ScaleParams, atr: float,
                   source_timeframe: Optional[str] = None) -> List[Pivot]:
    """Runs compute_adaptive_zigzag with a ScaleParams preset."""
    return compute_adaptive_zigzag(
        candles,
        params.threshold_pct,
        params.min_bars,
        atr,
        params.min_swing_atr_multiple,
        params.scale,
        source_timeframe,
    )


def compute_multi_scale_pivots(candles: List[Candle],
                               atr: float,
                               source_timeframe: Optional[str] = None,
                               presets: Optional[Dict[str, ScaleParams]] = None) -> MultiScalePivots:
    """
    Extracts macro, meso and micro pivots over the same candles.
    Scales are independent; no pivot is shared or deduplicated across them.
    """
    presets = presets or SCALE_PRESETS
    return MultiScalePivots(
        macro=extract_pivots(candles, presets['macro'], atr, source_timeframe),
        meso=extract_pivots(candles, presets['meso'], atr, source_timeframe),
        micro=extract_pivots(candles, presets['micro'], atr, source_timeframe),
    )


def aggregate_candles(candles: List[Candle], factor: int) -> List[Candle]:
    """
    Down-samples a series by grouping every `factor` bars into one.

    Each group keeps the first date and open, the max high, the min low, the
    last close and the summed volume. A trailing partial group is kept.
    """
    if factor < 1:
        raise ValueError(f"Aggregation factor must be >= 1, got {factor}")
    result = []
    for start in range(0, len(candles), factor):
        group = candles[start:start + factor]
        result.append(Candle(
            date=group[0].date,
            open=group[0].open,
            high=max(c.high for c in group),
            low=min(c.low for c in group),
            close=group[-1].close,
            volume=sum(c.volume for c in group),
        ))
    return result


def calculate_segment_features(candles: List[Candle],
                               pivots: List[Pivot],
                               rsi_values: Optional[List[float]] = None) -> List[SegmentFeatures]:
    """
    Describes each pivot-to-pivot leg: size, duration, slope, range in ATR
    units, volume behaviour, worst counter-move and RSI at the leg end.
    """
    if rsi_values is None:
        rsi_values = TechnicalIndicators.calculate_rsi(candles)

    features: List[SegmentFeatures] = []
    for i in range(len(pivots) - 1):
        start, end = pivots[i], pivots[i + 1]
        from_idx, to_idx = start.index, end.index
        if from_idx >= to_idx or to_idx >= len(candles):
            continue

        segment = candles[from_idx:to_idx + 1]
        pct_move = (end.price - start.price) / start.price * 100
        abs_move = end.price - start.price
        bars_count = len(segment)

        segment_range = max(c.high for c in segment) - min(c.low for c in segment)
        segment_atr = TechnicalIndicators.calculate_atr(segment, min(14, len(segment) - 1)) or 1.0

        volumes = np.array([c.volume for c in segment], dtype=float)
        avg_volume = float(volumes.mean())
        prev_volume = features[-1].avg_volume if features else avg_volume
        rel_volume = avg_volume / (prev_volume or 1.0)

        midpoint = len(volumes) // 2
        first_half = float(volumes[:midpoint].mean())
        second_half = float(volumes[midpoint:].mean())
        volume_slope = (second_half - first_half) / first_half if first_half > 0 else 0.0

        max_drawdown = 0.0
        if start.type == 'low':
            peak = segment[0].close
            for c in segment:
                peak = max(peak, c.high)
                max_drawdown = max(max_drawdown, (peak - c.low) / peak * 100)
        else:
            trough = segment[0].close
            for c in segment:
                trough = min(trough, c.low)
                max_drawdown = max(max_drawdown, (c.high - trough) / trough * 100)

        features.append(SegmentFeatures(
            from_pivot=i,
            to_pivot=i + 1,
            pct_move=pct_move,
            abs_move=abs_move,
            bars_count=bars_count,
            slope=abs_move / bars_count,
            atr_normalized_range=segment_range / segment_atr,
            avg_volume=avg_volume,
            rel_volume_vs_prev=rel_volume,
            volume_slope=volume_slope,
            max_drawdown=max_drawdown,
            rsi_at_end=rsi_values[to_idx] if to_idx < len(rsi_values) else 50.0,
            direction='up' if pct_move > 0 else 'down',
        ))
    return features
