"""
Structure Scorer
Deterministic, LLM-free readiness score answering "does this price series
show the geometry of a clean, analyzable wave structure".

Sub-scores (raw maximums):
- alternation       30
- proportionality   25
- pivot quality     30
- cage presence     20
- wave-3 bonus      10 (only when 3+ impulse legs exist)

structure_score = round(raw / 115 * 100). Version 0.1 has no wave-3 bonus,
no upward cage break and no break-strength refinement, and normalizes by 105.
"""

import copy
import math
import logging
from typing import Any, List, Dict, Tuple, Optional

from .indicators import TechnicalIndicators
from .models import Candle, Pivot, CageInfo, ScoreBundle, validate_candles
from .regime import classify_regime
from .zigzag import ScaleParams, SCALE_PRESETS, PIVOT_QUALITY_PARAMS, extract_pivots

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = ('0.1', '0.2')
DEFAULT_VERSION = '0.2'
MAX_RAW_SCORE = {'0.1': 105.0, '0.2': 115.0}

DEFAULT_SCORING_CONFIG = {
    'atr_period': 14,
    'adx_period': 14,
    'min_bars': 100,
    'regime_window': 90,
    'trending_adx': 30.0,
    'ranging_adx': 20.0,
    'alternation_lookback': 10,
    'alternation_partial_credit': 10,
    'pivot_quality_window': 120,
    'pivot_quality_min_bars': 30,
    'ideal_pivot_band': [8, 15],
    'prominence_band': [3.0, 8.0],
    'proportionality_bands': [3.0, 5.0, 8.0],
    'cage_break_atr': 0.8,
    'scales': {
        name: {
            'threshold_pct': p.threshold_pct,
            'min_bars': p.min_bars,
            'min_swing_atr_multiple': p.min_swing_atr_multiple,
        }
        for name, p in SCALE_PRESETS.items()
    },
    'pivot_quality_scale': {
        'threshold_pct': PIVOT_QUALITY_PARAMS.threshold_pct,
        'min_bars': PIVOT_QUALITY_PARAMS.min_bars,
        'min_swing_atr_multiple': PIVOT_QUALITY_PARAMS.min_swing_atr_multiple,
    },
}


def merge_config(base: Dict[str, Any], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Recursively merges `override` over a copy of `base`."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


class StructureScorer:
    """
    Combines meso-scale pivot geometry, ATR and ADX into a ScoreBundle.
    Holds configuration only; every call to `score` is independent.
    """
    def __init__(self, config: Optional[Dict] = None, version: str = DEFAULT_VERSION):
        if version not in SUPPORTED_VERSIONS:
            raise ValueError(f"Unsupported scorer version '{version}'. Expected one of {SUPPORTED_VERSIONS}")
        self.version = version
        self.config = merge_config(DEFAULT_SCORING_CONFIG, config)
        self.scales = {
            name: ScaleParams.from_dict(name, params)
            for name, params in self.config['scales'].items()
        }
        self.pivot_quality_params = ScaleParams.from_dict('meso', self.config['pivot_quality_scale'])
        logger.debug(f"Initialized StructureScorer v{self.version} with min_bars={self.config['min_bars']}")

    @property
    def max_raw_score(self) -> float:
        return MAX_RAW_SCORE[self.version]

    def calculate_alternation_score(self, pivots: List[Pivot]) -> int:
        """Full marks when the first pivots strictly alternate high/low."""
        if len(pivots) < 4:
            return 0
        lookback = min(len(pivots), self.config['alternation_lookback'])
        for i in range(1, lookback):
            if pivots[i].type == pivots[i - 1].type:
                logger.debug(f"Alternation broken at pivot {i} ({pivots[i].type} after {pivots[i - 1].type})")
                return self.config['alternation_partial_credit']
        return 30

    def calculate_proportionality_score(self, pivots: List[Pivot]) -> int:
        """Penalizes wildly uneven legs; ratio of largest to smallest % move."""
        if len(pivots) < 4:
            return 0
        moves = [
            abs(pivots[i].price - pivots[i - 1].price) / pivots[i - 1].price * 100
            for i in range(1, len(pivots))
        ]
        if len(moves) < 2:
            return 0

        ratio = max(moves) / max(min(moves), 0.1)
        full, partial, weak = self.config['proportionality_bands']
        if ratio <= full:
            return 25
        if ratio <= partial:
            return 15
        if ratio <= weak:
            return 8
        return 0

    def calculate_pivot_quality_score(self, candles: List[Candle], atr: float) -> int:
        """
        Scores the pivot count of the trailing window against the ideal band
        (max 20) plus a median-prominence bonus (max 10).
        """
        recent = candles[-self.config['pivot_quality_window']:]
        if len(recent) < self.config['pivot_quality_min_bars']:
            return 0

        recent_atr = TechnicalIndicators.calculate_atr(recent, self.config['atr_period']) or atr
        pivots = extract_pivots(recent, self.pivot_quality_params, recent_atr)
        count = len(pivots)

        low_band, high_band = self.config['ideal_pivot_band']
        if low_band <= count <= high_band:
            count_score = 20
        elif count > high_band:
            count_score = max(0, 20 - (count - high_band) * 2)
        else:
            count_score = max(0, 20 - (low_band - count) * 3)

        prominences = sorted(p.prominence for p in pivots)
        median_prominence = prominences[len(prominences) // 2] if prominences else 0.0

        sweet_low, sweet_high = self.config['prominence_band']
        if sweet_low <= median_prominence <= sweet_high:
            prominence_score = 10
        elif median_prominence > sweet_high:
            prominence_score = 7
        elif median_prominence >= 2:
            prominence_score = 4
        else:
            prominence_score = 0

        logger.debug(f"Pivot quality: {count} pivots (score {count_score}), median prominence {median_prominence:.2f}% (score {prominence_score})")
        return count_score + prominence_score

    def calculate_cage_presence(self, candles: List[Candle], pivots: List[Pivot], atr: float) -> Tuple[int, CageInfo]:
        """
        Builds a channel from the two most recent low pivots (lower line) and
        high pivots (upper line), projects both to the last bar and checks the
        last close against them.

        Returns:
            (score, CageInfo). Score is 10 for a constructible channel, +10 if
            unbroken, +3 if broken by at least `cage_break_atr` ATR.
        """
        no_cage = (0, CageInfo(exists=False, broken=False))
        if not candles:
            return no_cage

        lows = [p for p in pivots if p.type == 'low'][-3:]
        highs = [p for p in pivots if p.type == 'high'][-3:]
        if len(lows) < 2 or len(highs) < 1:
            return no_cage

        first_low, second_low = lows[-2], lows[-1]
        if second_low.index <= first_low.index:
            return no_cage

        slope = (second_low.price - first_low.price) / (second_low.index - first_low.index)
        if len(highs) >= 2 and highs[-1].index != highs[-2].index:
            top_slope = (highs[-1].price - highs[-2].price) / (highs[-1].index - highs[-2].index)
        else:
            top_slope = slope

        last_idx = len(candles) - 1
        projected_lower = first_low.price + slope * (last_idx - first_low.index)
        if len(highs) >= 2:
            anchor = highs[-2]
            projected_upper = anchor.price + top_slope * (last_idx - anchor.index)
        else:
            projected_upper = projected_lower + atr * 3
        last_close = candles[last_idx].close

        broken = False
        break_direction = None
        boundary = None
        if last_close < projected_lower:
            broken, break_direction, boundary = True, 'down', projected_lower
        elif self.version != '0.1' and last_close > projected_upper:
            broken, break_direction, boundary = True, 'up', projected_upper

        strength = abs(boundary - last_close) / atr if broken and atr > 0 else 0.0

        score = 10
        if not broken:
            score += 10
        elif self.version != '0.1' and strength >= self.config['cage_break_atr']:
            score += 3

        info = CageInfo(
            exists=True,
            broken=broken,
            break_direction=break_direction,
            break_price=last_close if broken else None,
            boundary_value_at_break=boundary,
            break_strength_atr=strength,
        )
        return min(20, score), info

    def calculate_wave3_bonus(self, pivots: List[Pivot]) -> Tuple[int, bool]:
        """
        Awards 10 unless the middle of the last three low->high legs is the
        smallest. Returns (bonus, has_impulse_legs); fewer than three legs
        yields (0, False) without comparing anything.
        """
        if self.version == '0.1':
            return 0, False

        up_moves = [
            pivots[i + 1].price - pivots[i].price
            for i in range(len(pivots) - 1)
            if pivots[i].type == 'low' and pivots[i + 1].type == 'high'
        ]
        if len(up_moves) < 3:
            return 0, False

        first, middle, last = up_moves[-3:]
        middle_is_smallest = middle <= min(first, last)
        return (0 if middle_is_smallest else 10), True

    def _insufficient(self, bars: int, symbol: Optional[str]) -> ScoreBundle:
        logger.debug(f"Insufficient data for {symbol or 'series'}: {bars} bars < {self.config['min_bars']}")
        return ScoreBundle(
            structure_score=0,
            raw_structure_score=0.0,
            regime_hint='unclear',
            notes=[f"Insufficient data (<{self.config['min_bars']} bars)"],
            api_version=self.version,
            symbol=symbol,
        )

    def score(self, candles: List[Candle], symbol: Optional[str] = None,
              source_timeframe: Optional[str] = None, validate: bool = True) -> ScoreBundle:
        """
        Scores a candle series.

        Args:
            candles: Candle sequence, ascending by date.
            symbol: Optional label copied into the bundle.
            source_timeframe: Optional timeframe label for extracted pivots.
            validate: Check OHLCV preconditions first.

        Returns:
            ScoreBundle; an all-zero 'unclear' bundle when there are fewer
            than `min_bars` candles.

        Raises:
            MalformedInputError: when `validate` is set and the candles are malformed.
        """
        if validate:
            validate_candles(candles)
        if len(candles) < self.config['min_bars']:
            return self._insufficient(len(candles), symbol)

        atr = TechnicalIndicators.calculate_atr(candles, self.config['atr_period'])
        meso_pivots = extract_pivots(candles, self.scales['meso'], atr, source_timeframe)
        notes: List[str] = []

        alternation = self.calculate_alternation_score(meso_pivots)
        if alternation >= 25:
            notes.append('Good alternation pattern')

        proportionality = self.calculate_proportionality_score(meso_pivots)
        if proportionality >= 20:
            notes.append('Proportional wave structure')

        pivot_quality = self.calculate_pivot_quality_score(candles, atr)
        if pivot_quality >= 25:
            notes.append('Clean pivot structure')

        cage_score, cage = self.calculate_cage_presence(candles, meso_pivots, atr)
        if cage.exists:
            if cage.broken:
                notes.append(f"Cage broken ({cage.break_direction}, strength: {cage.break_strength_atr:.2f} ATR)")
            else:
                notes.append('Intact cage channel')

        wave3_bonus, has_impulse_legs = self.calculate_wave3_bonus(meso_pivots)
        if has_impulse_legs:
            notes.append('Wave 3 not shortest check passed' if wave3_bonus > 0 else 'Wave 3 may be shortest')

        regime = classify_regime(
            candles,
            window=self.config['regime_window'],
            period=self.config['adx_period'],
            trending_above=self.config['trending_adx'],
            ranging_below=self.config['ranging_adx'],
        )
        if regime == 'trending':
            notes.append('Trending regime')
        elif regime == 'ranging':
            notes.append('Ranging regime')

        raw = float(alternation + proportionality + pivot_quality + cage_score + wave3_bonus)
        structure_score = int(math.floor(raw / self.max_raw_score * 100 + 0.5))

        logger.debug(f"Structure score for {symbol or 'series'}: raw={raw}, normalized={structure_score}")
        return ScoreBundle(
            structure_score=structure_score,
            raw_structure_score=raw,
            regime_hint=regime,
            alternation_score=alternation,
            proportionality_score=proportionality,
            pivot_quality_score=pivot_quality,
            cage_presence_score=cage_score,
            wave3_bonus=wave3_bonus,
            notes=notes,
            cage=cage,
            api_version=self.version,
            symbol=symbol,
        )
