"""
Data Models
Typed records exchanged between the pivot extractor, the structure scorer
and the screening layer.
"""

import datetime
import math
import numbers
from dataclasses import dataclass, field, asdict
from typing import List, Optional, Dict, Any, Union

import pandas as pd

PIVOT_TYPES = ('high', 'low')
SCALES = ('macro', 'meso', 'micro')
REGIMES = ('trending', 'ranging', 'unclear')

DateLike = Union[datetime.date, str]


class MalformedInputError(ValueError):
    """Raised when candle data violates the OHLCV preconditions."""


@dataclass(frozen=True)
class Candle:
    date: DateLike
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class Pivot:
    index: int
    type: str  # 'high' | 'low'
    price: float
    date: DateLike
    prominence: float
    scale: str  # 'macro' | 'meso' | 'micro'
    source_timeframe: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['date'] = _format_date(self.date)
        return data


@dataclass(frozen=True)
class MultiScalePivots:
    macro: List[Pivot]
    meso: List[Pivot]
    micro: List[Pivot]

    def to_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            'macro': [p.to_dict() for p in self.macro],
            'meso': [p.to_dict() for p in self.meso],
            'micro': [p.to_dict() for p in self.micro],
        }


@dataclass(frozen=True)
class CageInfo:
    exists: bool
    broken: bool
    break_direction: Optional[str] = None  # 'up' | 'down'
    break_price: Optional[float] = None
    boundary_value_at_break: Optional[float] = None
    break_strength_atr: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SegmentFeatures:
    from_pivot: int
    to_pivot: int
    pct_move: float
    abs_move: float
    bars_count: int
    slope: float
    atr_normalized_range: float
    avg_volume: float
    rel_volume_vs_prev: float
    volume_slope: float
    max_drawdown: float
    rsi_at_end: float
    direction: str  # 'up' | 'down'

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScoreBundle:
    """
    Output of the structure scorer.

    Component maximums: alternation 30, proportionality 25, pivot quality 30,
    cage presence 20, wave-3 bonus 10.
    """
    structure_score: int
    raw_structure_score: float
    regime_hint: str
    alternation_score: int = 0
    proportionality_score: int = 0
    pivot_quality_score: int = 0
    cage_presence_score: int = 0
    wave3_bonus: int = 0
    notes: List[str] = field(default_factory=list)
    cage: CageInfo = field(default_factory=lambda: CageInfo(exists=False, broken=False))
    api_version: str = '0.2'
    symbol: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'structure_score': self.structure_score,
            'raw_structure_score': round(self.raw_structure_score, 1),
            'regime_hint': self.regime_hint,
            'cage_presence_score': self.cage_presence_score,
            'alternation_score': self.alternation_score,
            'proportionality_score': self.proportionality_score,
            'pivot_quality_score': self.pivot_quality_score,
            'wave3_bonus': self.wave3_bonus,
            'notes': list(self.notes),
            'cage': self.cage.to_dict(),
            'api_version': self.api_version,
        }
        if self.symbol is not None:
            data['symbol'] = self.symbol
        return data


@dataclass(frozen=True)
class FundamentalsSnapshot:
    """Company fundamentals attached to scan rows on request. Unknown values are None."""
    market_cap: Optional[float] = None
    trailing_pe: Optional[float] = None
    forward_pe: Optional[float] = None
    revenue_growth: Optional[float] = None
    earnings_growth: Optional[float] = None
    next_earnings_date: Optional[str] = None
    sector: Optional[str] = None
    industry: Optional[str] = None
    short_name: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return all(value is None for value in asdict(self).values())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SymbolMetrics:
    symbol: str
    liquidity_score: float = 0.0
    volatility_score: float = 0.0
    regime: str = 'unknown'  # 'trending' | 'ranging' | 'unknown'
    pivot_cleanliness: float = 0.0
    pre_filter_score: float = 0.0
    last_price: float = 0.0
    avg_volume_30d: float = 0.0
    atr_pct: float = 0.0
    structure: Optional[ScoreBundle] = None
    fundamentals: Optional[FundamentalsSnapshot] = None
    error: Optional[str] = None

    @property
    def structure_score(self) -> int:
        return self.structure.structure_score if self.structure else 0

    def to_dict(self) -> Dict[str, Any]:
        data = {
            'symbol': self.symbol,
            'liquidity_score': self.liquidity_score,
            'volatility_score': self.volatility_score,
            'regime': self.regime,
            'pivot_cleanliness': self.pivot_cleanliness,
            'pre_filter_score': self.pre_filter_score,
            'last_price': self.last_price,
            'avg_volume_30d': self.avg_volume_30d,
            'atr_pct': self.atr_pct,
            'structure_score': self.structure_score,
        }
        if self.structure is not None:
            data['structure'] = self.structure.to_dict()
        if self.fundamentals is not None:
            data['fundamentals'] = self.fundamentals.to_dict()
        if self.error is not None:
            data['error'] = self.error
        return data


def _format_date(value: DateLike) -> str:
    if isinstance(value, (datetime.date, datetime.datetime)):
        return value.isoformat()
    return str(value)


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return False
    return math.isfinite(value)


def validate_candles(candles: List[Candle]) -> None:
    """
    Checks the OHLCV preconditions of a candle series.

    Raises:
        MalformedInputError: on non-numeric prices, broken high/low envelope,
            negative volume or dates that are not strictly ascending.
    """
    prev_date = None
    for i, candle in enumerate(candles):
        for name in ('open', 'high', 'low', 'close'):
            value = getattr(candle, name, None)
            if not _is_number(value):
                raise MalformedInputError(f"Candle {i}: '{name}' is not a finite number ({value!r})")
            if value <= 0:
                raise MalformedInputError(f"Candle {i}: '{name}' must be positive, got {value}")
        if not _is_number(candle.volume) or candle.volume < 0:
            raise MalformedInputError(f"Candle {i}: volume must be a non-negative number ({candle.volume!r})")
        if candle.low > min(candle.open, candle.close) or candle.high < max(candle.open, candle.close):
            raise MalformedInputError(
                f"Candle {i}: OHLC envelope violated (o={candle.open}, h={candle.high}, l={candle.low}, c={candle.close})"
            )
        date_key = _format_date(candle.date)
        if prev_date is not None and date_key <= prev_date:
            raise MalformedInputError(f"Candle {i}: date {date_key} is not after {prev_date}")
        prev_date = date_key


def candles_from_dataframe(df: pd.DataFrame, validate: bool = True) -> List[Candle]:
    """
    Converts an OHLCV DataFrame into a list of Candle records.

    Args:
        df: DataFrame with columns ['open', 'high', 'low', 'close'] and optionally
            'volume'. Dates are taken from a 'date' column or the index.
        validate: Run validate_candles on the result.

    Returns:
        List of Candle, in frame order.
    """
    if df.empty:
        return []
    columns = {c.lower(): c for c in df.columns}
    missing = [c for c in ('open', 'high', 'low', 'close') if c not in columns]
    if missing:
        raise MalformedInputError(f"DataFrame is missing columns: {missing}")

    if 'date' in columns:
        dates = pd.to_datetime(df[columns['date']])
    else:
        dates = pd.to_datetime(df.index)
    volumes = df[columns['volume']] if 'volume' in columns else pd.Series(0.0, index=df.index)

    candles = [
        Candle(
            date=ts.date() if ts == ts.normalize() else ts.to_pydatetime(),
            open=float(o),
            high=float(h),
            low=float(l),
            close=float(c),
            volume=float(v) if pd.notna(v) else 0.0,
        )
        for ts, o, h, l, c, v in zip(
            dates, df[columns['open']], df[columns['high']], df[columns['low']], df[columns['close']], volumes
        )
    ]
    if validate:
        validate_candles(candles)
    return candles

