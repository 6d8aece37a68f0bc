"""
Technical Indicators Module
Implements the volatility and trend-strength indicators used by the
pivot extractor and the structure scorer:
- True Range
- ATR (Average True Range, simple mean of the trailing true ranges)
- ADX (Average Directional Index, Wilder-smoothed)
- RSI (Relative Strength Index, Wilder-smoothed)
"""

import numpy as np
from typing import List, Tuple
import logging

from .models import Candle

logger = logging.getLogger(__name__)

# Neutral ADX returned when history is too short; sits between the
# ranging (<20) and trending (>30) cut-offs.
NEUTRAL_ADX = 25.0
NEUTRAL_RSI = 50.0


class TechnicalIndicators:
    """
    A class to compute technical indicators from candle sequences.
    All methods are pure and return plain floats or numpy arrays.
    """

    @staticmethod
    def _ohlc_arrays(candles: List[Candle]) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        highs = np.array([c.high for c in candles], dtype=float)
        lows = np.array([c.low for c in candles], dtype=float)
        closes = np.array([c.close for c in candles], dtype=float)
        return highs, lows, closes

    @staticmethod
    def true_range(candles: List[Candle]) -> np.ndarray:
        """
        Calculate the True Range for every bar after the first.

        Args:
            candles: Candle sequence, ascending by date

        Returns:
            Array of length len(candles) - 1 where element i-1 is
            max(high_i - low_i, |high_i - close_{i-1}|, |low_i - close_{i-1}|)
        """
        if len(candles) < 2:
            return np.array([], dtype=float)
        highs, lows, closes = TechnicalIndicators._ohlc_arrays(candles)
        prev_close = closes[:-1]
        tr0 = highs[1:] - lows[1:]
        tr1 = np.abs(highs[1:] - prev_close)
        tr2 = np.abs(lows[1:] - prev_close)
        return np.maximum(tr0, np.maximum(tr1, tr2))

    @staticmethod
    def calculate_atr(candles: List[Candle], period: int = 14) -> float:
        """
        Calculate Average True Range (ATR)

        Args:
            candles: Candle sequence
            period: Number of trailing true ranges to average (default 14)

        Returns:
            Simple mean of the last `period` true ranges, or 0.0 when fewer
            than period + 1 bars are available
        """
        if len(candles) < period + 1:
            return 0.0
        trs = TechnicalIndicators.true_range(candles)
        return float(np.mean(trs[-period:]))

    @staticmethod
    def _wilder_sum(values: np.ndarray, period: int) -> List[float]:
        # Running sum seeded with the first `period` values: s = s - s/p + x
        total = float(np.sum(values[:period]))
        smoothed = [total]
        for value in values[period:]:
            total = total - total / period + float(value)
            smoothed.append(total)
        return smoothed

    @staticmethod
    def calculate_adx(candles: List[Candle], period: int = 14) -> float:
        """
        Calculate an approximate Average Directional Index (ADX)

        Args:
            candles: Candle sequence
            period: Smoothing period (default 14)

        Returns:
            Mean of the last `period` DX values, or NEUTRAL_ADX (25) when there
            are fewer than 2 * period bars or fewer than `period` DX values
        """
        if len(candles) < period * 2:
            return NEUTRAL_ADX

        highs, lows, _ = TechnicalIndicators._ohlc_arrays(candles)
        high_diff = highs[1:] - highs[:-1]
        low_diff = lows[:-1] - lows[1:]
        plus_dm = np.where((high_diff > low_diff) & (high_diff > 0), high_diff, 0.0)
        minus_dm = np.where((low_diff > high_diff) & (low_diff > 0), low_diff, 0.0)
        trs = TechnicalIndicators.true_range(candles)

        smooth_tr = TechnicalIndicators._wilder_sum(trs, period)
        smooth_plus = TechnicalIndicators._wilder_sum(plus_dm, period)
        smooth_minus = TechnicalIndicators._wilder_sum(minus_dm, period)

        dx = []
        for tr, pdm, mdm in zip(smooth_tr, smooth_plus, smooth_minus):
            if tr == 0:
                continue
            plus_di = pdm / tr * 100
            minus_di = mdm / tr * 100
            di_sum = plus_di + minus_di
            if di_sum > 0:
                dx.append(abs(plus_di - minus_di) / di_sum * 100)

        if len(dx) < period:
            logger.debug(f"ADX: only {len(dx)} DX values for period {period}, using neutral default")
            return NEUTRAL_ADX
        return float(np.mean(dx[-period:]))

    @staticmethod
    def calculate_rsi(candles: List[Candle], period: int = 14) -> List[float]:
        """
        Calculate Relative Strength Index (RSI) per bar

        Args:
            candles: Candle sequence
            period: Number of periods for RSI calculation (default 14)

        Returns:
            List aligned with `candles`; bars without enough history hold 50
        """
        rsi = [NEUTRAL_RSI] * len(candles)
        if len(candles) < period + 1:
            return rsi

        closes = np.array([c.close for c in candles], dtype=float)
        changes = np.diff(closes)
        gains = np.where(changes > 0, changes, 0.0)
        losses = np.where(changes < 0, -changes, 0.0)

        avg_gain = float(np.mean(gains[:period]))
        avg_loss = float(np.mean(losses[:period]))
        for i in range(period, len(gains)):
            avg_gain = (avg_gain * (period - 1) + gains[i]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i]) / period
            rs = 100.0 if avg_loss == 0 else avg_gain / avg_loss
            rsi[i + 1] = 100 - (100 / (1 + rs))
        return rsi
