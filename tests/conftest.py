"""
Synthetic candle builders shared by the test suite.
"""

import datetime
from typing import List

import pytest

from analysis.models import Candle

START_DATE = datetime.date(2023, 1, 2)


def candles_from_closes(closes: List[float], volume: float = 1_000_000.0,
                        spread: float = 0.002, start: datetime.date = START_DATE) -> List[Candle]:
    """Flat-bodied daily candles (open == close) with a symmetric high/low wick."""
    return [
        Candle(
            date=start + datetime.timedelta(days=i),
            open=close,
            high=close * (1 + spread),
            low=close * (1 - spread),
            close=close,
            volume=volume,
        )
        for i, close in enumerate(closes)
    ]


def sawtooth_closes(n: int = 200, up: float = 1.08, down: float = 0.95, half: int = 5, start: float = 100.0) -> List[float]:
    """
    Rises by `up` over `half` bars, then falls by `down` over `half` bars.
    Swing highs land on 10k + 5, swing lows on 10k.
    """
    up_step = up ** (1 / half)
    down_step = down ** (1 / half)
    closes = [start]
    for i in range(1, n):
        step = up_step if (i - 1) % (2 * half) < half else down_step
        closes.append(closes[-1] * step)
    return closes


def trending_closes(n: int = 120, step: float = 1.01, start: float = 100.0) -> List[float]:
    return [start * step ** i for i in range(n)]


def choppy_closes(n: int = 120, low: float = 100.0, high: float = 101.0) -> List[float]:
    return [low if i % 2 == 0 else high for i in range(n)]


@pytest.fixture
def sawtooth_candles() -> List[Candle]:
    return candles_from_closes(sawtooth_closes())


@pytest.fixture
def trending_candles() -> List[Candle]:
    return candles_from_closes(trending_closes())


@pytest.fixture
def choppy_candles() -> List[Candle]:
    return candles_from_closes(choppy_closes())


@pytest.fixture
def build_candles():
    return candles_from_closes
