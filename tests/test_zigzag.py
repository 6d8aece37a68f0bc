"""
Test suite for the adaptive ZigZag pivot extractor.
"""

import pytest
from analysis.indicators import TechnicalIndicators
from analysis.zigzag import (
    SCALE_PRESETS,
    ScaleParams,
    aggregate_candles,
    calculate_segment_features,
    compute_adaptive_zigzag,
    compute_multi_scale_pivots,
    extract_pivots,
)


def test_empty_and_short_series(build_candles):
    assert compute_adaptive_zigzag([], 5.0, 5, 1.0, 1.5, 'meso') == [], "Empty input should yield no pivots"

    candles = build_candles([100.0, 120.0, 90.0])
    pivots = compute_adaptive_zigzag(candles, 1.0, 5, 0.0, 0.0, 'meso')
    assert pivots == [], "Series shorter than min_bars should yield no pivots"


def test_sawtooth_meso_pivots(sawtooth_candles):
    """Regular 8% up / 5% down cycles produce one pivot per swing."""
    atr = TechnicalIndicators.calculate_atr(sawtooth_candles)
    pivots = extract_pivots(sawtooth_candles, SCALE_PRESETS['meso'], atr, source_timeframe='1d')

    assert len(pivots) == 39, f"Expected 39 meso pivots, got {len(pivots)}"
    assert pivots[0].type == 'low' and pivots[0].index == 0, "First pivot should be the opening low"
    assert [p.index for p in pivots if p.type == 'high'][:3] == [5, 15, 25], "Swing highs land on 10k + 5"
    assert [p.index for p in pivots if p.type == 'low'][:3] == [0, 10, 20], "Swing lows land on 10k"
    assert pivots[-1].type == 'low' and pivots[-1].index == 190, "Final swing low is confirmed by the last rise"

    for prev, cur in zip(pivots, pivots[1:]):
        assert cur.index > prev.index, "Pivot indices must strictly increase"
        assert cur.type != prev.type, "Pivots must alternate high/low"

    for p in pivots:
        candle = sawtooth_candles[p.index]
        expected = candle.high if p.type == 'high' else candle.low
        assert p.price == expected, "Pivot price must be the bar's high or low"
        assert p.date == candle.date, "Pivot date must come from its bar"
        assert p.scale == 'meso' and p.source_timeframe == '1d', "Scale and timeframe labels are stamped"
        assert p.prominence >= 5.0, "Prominence should clear the percentage threshold"


def test_pivot_count_does_not_grow_with_threshold(sawtooth_candles):
    counts = [
        len(compute_adaptive_zigzag(sawtooth_candles, threshold, 3, 0.0, 0.0, 'meso'))
        for threshold in (2.0, 5.0, 10.0, 20.0)
    ]
    assert counts == sorted(counts, reverse=True), f"Pivot count should be non-increasing, got {counts}"
    assert counts[0] == 40, "Both legs clear 2%, including the final pullback"
    assert counts[2] == 1, "No 10% pullback exists, only the opening low is confirmed"


def test_atr_floor_suppresses_small_swings(sawtooth_candles):
    """A large ATR floor vetoes swings that clear the percentage threshold."""
    pivots = compute_adaptive_zigzag(sawtooth_candles, 5.0, 5, 100.0, 1.5, 'meso')
    assert pivots == [], "No swing is larger than 150 price units"


def test_min_bars_spacing(sawtooth_candles):
    """Widening min_bars past the half-cycle length suppresses pivots."""
    pivots = compute_adaptive_zigzag(sawtooth_candles, 5.0, 11, 0.0, 0.0, 'meso')
    for prev, cur in zip(pivots, pivots[1:]):
        assert cur.type != prev.type, "Pivots must still alternate"
    assert len(pivots) < 39, "Spacing guard should drop pivots"


def test_multi_scale_pivots_are_independent(sawtooth_candles):
    atr = TechnicalIndicators.calculate_atr(sawtooth_candles)
    multi = compute_multi_scale_pivots(sawtooth_candles, atr, source_timeframe='1d')

    assert all(p.scale == 'macro' for p in multi.macro), "Macro pivots carry the macro label"
    assert all(p.scale == 'meso' for p in multi.meso), "Meso pivots carry the meso label"
    assert all(p.scale == 'micro' for p in multi.micro), "Micro pivots carry the micro label"
    assert len(multi.macro) <= len(multi.meso), "Macro is coarser than meso"

    data = multi.to_dict()
    assert set(data) == {'macro', 'meso', 'micro'}, "All three scales are serialized"
    assert isinstance(data['meso'][0]['date'], str), "Dates serialize to ISO strings"


def test_scale_params_from_dict():
    params = ScaleParams.from_dict('micro', {'threshold_pct': '2', 'min_bars': 3.0, 'min_swing_atr_multiple': 0.8})
    assert params == ScaleParams(2.0, 3, 0.8, 'micro'), "Config values should be coerced"


def test_aggregate_candles(build_candles):
    candles = build_candles([float(100 + i) for i in range(12)], volume=10.0)
    weekly = aggregate_candles(candles, 5)

    assert len(weekly) == 3, "Trailing partial group is kept"
    first = weekly[0]
    assert first.date == candles[0].date, "Group keeps its first date"
    assert first.open == candles[0].open, "Group keeps its first open"
    assert first.close == candles[4].close, "Group keeps its last close"
    assert first.high == max(c.high for c in candles[:5]), "Group high is the max high"
    assert first.low == min(c.low for c in candles[:5]), "Group low is the min low"
    assert first.volume == 50.0, "Volumes are summed"
    assert weekly[-1].volume == 20.0, "Partial group sums its two bars"

    assert aggregate_candles(candles, 1) == candles, "Factor 1 is the identity"
    with pytest.raises(ValueError):
        aggregate_candles(candles, 0)


def test_segment_features(sawtooth_candles):
    atr = TechnicalIndicators.calculate_atr(sawtooth_candles)
    pivots = extract_pivots(sawtooth_candles, SCALE_PRESETS['meso'], atr)
    segments = calculate_segment_features(sawtooth_candles, pivots)

    assert len(segments) == len(pivots) - 1, "One segment per consecutive pivot pair"
    first, second = segments[0], segments[1]
    assert first.direction == 'up' and second.direction == 'down', "Segments alternate direction"
    assert first.bars_count == 6, "Segment spans both pivot bars"
    assert first.pct_move == pytest.approx(8.43, abs=0.01), "Low-to-high move is about 8.43%"
    assert second.pct_move == pytest.approx(-5.38, abs=0.01), "High-to-low move is about -5.38%"
    assert first.rel_volume_vs_prev == pytest.approx(1.0), "Constant volume gives a relative volume of 1"
    assert first.volume_slope == pytest.approx(0.0), "Constant volume has no slope"
    assert first.max_drawdown >= 0 and second.max_drawdown >= 0, "Drawdowns are non-negative"
