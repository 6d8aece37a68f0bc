import logging
from typing import List

from .indicators import TechnicalIndicators
from .models import Candle

logger = logging.getLogger(__name__)

REGIME_WINDOW = 90
MIN_REGIME_BARS = 30
TRENDING_ADX = 30.0
RANGING_ADX = 20.0


def classify_regime(candles: List[Candle],
                    window: int = REGIME_WINDOW,
                    period: int = 14,
                    trending_above: float = TRENDING_ADX,
                    ranging_below: float = RANGING_ADX) -> str:
    """
    Labels the trailing window 'trending', 'ranging' or 'unclear' from ADX.
    Short histories fall through to 'unclear' (ADX defaults to 25).
    """
    recent = candles[-window:]
    if len(recent) < MIN_REGIME_BARS:
        return 'unclear'

    adx = TechnicalIndicators.calculate_adx(recent, period)
    logger.debug(f"Regime ADX({window}) = {adx:.2f}")
    if adx > trending_above:
        return 'trending'
    if adx < ranging_below:
        return 'ranging'
    return 'unclear'
