"""
Screening Metrics
Cheap per-symbol liquidity, volatility, regime and pivot-cleanliness
figures used to rank a universe before structure scoring.
"""

import math
import logging
from typing import List

import numpy as np

from .indicators import TechnicalIndicators
from .models import Candle, SymbolMetrics

logger = logging.getLogger(__name__)

MIN_SCREEN_BARS = 30
EXPECTED_PIVOTS = 10


def detect_fractal_pivots(candles: List[Candle], threshold_pct: float) -> List[int]:
    """
    Five-bar fractal swing points whose move against the bars two away on
    either side is at least `threshold_pct` percent.

    Returns:
        Indices of qualifying swing highs and lows, ascending.
    """
    pivots = []
    if len(candles) < 5:
        return pivots

    for i in range(2, len(candles) - 2):
        neighbours = (candles[i - 2], candles[i - 1], candles[i + 1], candles[i + 2])
        is_high = all(candles[i].high > c.high for c in neighbours)
        is_low = all(candles[i].low < c.low for c in neighbours)
        if not (is_high or is_low):
            continue

        if is_high:
            move = (candles[i].high - min(candles[i - 2].low, candles[i + 2].low)) / candles[i].high * 100
        else:
            move = (max(candles[i - 2].high, candles[i + 2].high) - candles[i].low) / candles[i].low * 100
        if move >= threshold_pct:
            pivots.append(i)
    return pivots


def compute_symbol_metrics(symbol: str, candles: List[Candle]) -> SymbolMetrics:
    """
    Computes the screening row for one symbol.

    Fewer than 30 bars yields a zeroed row carrying error='Insufficient data'.
    """
    if len(candles) < MIN_SCREEN_BARS:
        return SymbolMetrics(symbol=symbol, error='Insufficient data')

    recent30 = candles[-30:]
    recent90 = candles[-90:]
    last_price = candles[-1].close

    avg_volume_30d = float(np.mean([c.volume for c in recent30]))
    dollar_volume = avg_volume_30d * last_price
    # $1M/day ~ 90, floor at $1k
    liquidity_score = min(100.0, math.log10(max(dollar_volume, 1000.0)) * 15)

    atr = TechnicalIndicators.calculate_atr(recent30)
    atr_pct = atr / last_price * 100
    volatility_score = min(100.0, atr_pct * 20)

    adx = TechnicalIndicators.calculate_adx(recent90)
    regime = 'trending' if adx > 25 else 'ranging'

    pivots = detect_fractal_pivots(candles[-120:], 3.0)
    pivot_ratio = len(pivots) / EXPECTED_PIVOTS
    pivot_cleanliness = max(0.0, 100 - abs(1 - pivot_ratio) * 50)

    trend_bonus = 15 if regime == 'trending' else 0
    volatility_bonus = 10 if 1 <= atr_pct <= 4 else 0
    pre_filter_score = min(
        100.0,
        liquidity_score * 0.3
        + pivot_cleanliness * 0.4
        + volatility_bonus
        + trend_bonus
        + (volatility_score * 0.15 if regime == 'trending' else 0),
    )

    logger.debug(f"{symbol}: liquidity={liquidity_score:.1f} atr%={atr_pct:.2f} adx={adx:.1f} pivots={len(pivots)}")
    return SymbolMetrics(
        symbol=symbol,
        liquidity_score=round(liquidity_score, 1),
        volatility_score=round(volatility_score, 1),
        regime=regime,
        pivot_cleanliness=round(pivot_cleanliness, 1),
        pre_filter_score=round(pre_filter_score, 1),
        last_price=round(last_price, 2),
        avg_volume_30d=float(round(avg_volume_30d)),
        atr_pct=round(atr_pct, 2),
    )
