"""
Universe scanning: fetches OHLCV through a cache, computes screening metrics
and structure scores per symbol, and ranks the results.
"""

import asyncio
import datetime
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from analysis.cache import Cache, InMemoryTTLCache, fundamentals_cache_key, ohlcv_cache_key, ttl_for_interval
from analysis.indicators import TechnicalIndicators
from analysis.models import Candle, FundamentalsSnapshot, ScoreBundle, SymbolMetrics, validate_candles
from analysis.screening import compute_symbol_metrics
from analysis.structure_scorer import StructureScorer
from analysis.zigzag import aggregate_candles, calculate_segment_features, compute_multi_scale_pivots
from ingest.adapters import AdapterFactory, DataFetchError, normalize_interval
from backend.config import DEFAULT_CONFIG, merge_config

logger = logging.getLogger(__name__)

# Timeframes no provider serves directly: (fetched interval, bars per candle)
AGGREGATED_TIMEFRAMES = {
    '4h': ('1h', 4),
}


@dataclass
class ScanResult:
    scan_id: str
    total_symbols: int
    processed: int
    failed: int
    rankings: List[SymbolMetrics]
    top_symbols: List[str]
    created_at: datetime.datetime = field(default_factory=lambda: datetime.datetime.now(datetime.timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scan_id': self.scan_id,
            'total_symbols': self.total_symbols,
            'processed': self.processed,
            'failed': self.failed,
            'rankings': [m.to_dict() for m in self.rankings],
            'top_symbols': list(self.top_symbols),
            'created_at': self.created_at.isoformat(),
        }


def rank_metrics(metrics: List[SymbolMetrics]) -> List[SymbolMetrics]:
    """Structure score first, pre-filter score second, errored rows last."""
    return sorted(
        metrics,
        key=lambda m: (m.error is not None, -m.structure_score, -m.pre_filter_score),
    )


class UniverseScanner:
    """
    Runs the screening pipeline over a list of symbols.

    Args:
        adapter_factory: Creates a DataAdapter per symbol.
        scorer: StructureScorer used for every symbol.
        cache: Read-through OHLCV cache; an in-memory TTL cache by default.
        config: Full application config (only 'scan' and 'cache' are read).
    """
    def __init__(self, adapter_factory: AdapterFactory, scorer: StructureScorer,
                 cache: Optional[Cache] = None, config: Optional[Dict] = None):
        config = config or {}
        self.adapter_factory = adapter_factory
        self.scorer = scorer
        self.cache = cache if cache is not None else InMemoryTTLCache()
        self.scan_config = merge_config(DEFAULT_CONFIG['scan'], config.get('scan'))
        self.cache_config = merge_config(DEFAULT_CONFIG['cache'], config.get('cache'))
        self.concurrency = max(1, int(self.scan_config['concurrency']))
        self.max_retries = max(1, int(self.scan_config['max_retries']))
        self.initial_backoff = float(self.scan_config['initial_backoff_seconds'])
        self.batch_delay = float(self.scan_config['batch_delay_seconds'])
        self.history_days = int(self.scan_config['history_days'])
        logger.info(f"Initialized UniverseScanner (concurrency={self.concurrency}, max_retries={self.max_retries})")

    async def fetch_candles(self, symbol: str, interval: str) -> List[Candle]:
        """
        Returns cached candles or fetches them, retrying DataFetchError with
        exponential backoff. The last error is re-raised once attempts run out.
        """
        interval = normalize_interval(interval)
        key = ohlcv_cache_key(symbol, interval)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug(f"Cache hit for {key}")
            return cached

        adapter = self.adapter_factory.get_adapter(symbol, interval=interval)
        for attempt in range(self.max_retries):
            try:
                candles = await adapter.fetch_recent(self.history_days)
                break
            except DataFetchError as e:
                if attempt == self.max_retries - 1:
                    logger.error(f"Giving up on {symbol} after {self.max_retries} attempts: {e}")
                    raise
                delay = self.initial_backoff * 2 ** attempt
                logger.warning(f"Fetch failed for {symbol} (attempt {attempt + 1}/{self.max_retries}): {e}. Retrying in {delay:.1f}s")
                await asyncio.sleep(delay)

        ttl = ttl_for_interval(interval, self.cache_config['daily_ttl_seconds'], self.cache_config['intraday_ttl_seconds'])
        self.cache.set(key, candles, ttl)
        return candles

    async def load_series(self, symbol: str, timeframe: str) -> List[Candle]:
        """Candles for `timeframe`, built from a finer interval where needed."""
        interval = normalize_interval(timeframe)
        if interval in AGGREGATED_TIMEFRAMES:
            source_interval, factor = AGGREGATED_TIMEFRAMES[interval]
            candles = await self.fetch_candles(symbol, source_interval)
            return aggregate_candles(candles, factor)
        return await self.fetch_candles(symbol, interval)

    async def fetch_fundamentals(self, symbol: str) -> FundamentalsSnapshot:
        """Cached fundamentals lookup. Empty snapshots are returned but never cached."""
        key = fundamentals_cache_key(symbol)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        snapshot = await self.adapter_factory.get_fundamentals_client().fetch_fundamentals(symbol)
        if not snapshot.is_empty:
            self.cache.set(key, snapshot, self.cache_config['fundamentals_ttl_seconds'])
        return snapshot

    async def _scan_symbol(self, symbol: str, interval: str, semaphore: asyncio.Semaphore,
                           include_fundamentals: bool = False) -> SymbolMetrics:
        async with semaphore:
            try:
                candles = await self.load_series(symbol, interval)
                validate_candles(candles)
                metrics = compute_symbol_metrics(symbol, candles)
                if metrics.error is None:
                    metrics.structure = self.scorer.score(candles, symbol=symbol, source_timeframe=interval, validate=False)
                if include_fundamentals:
                    metrics.fundamentals = await self.fetch_fundamentals(symbol)
                return metrics
            except Exception as e:
                logger.error(f"Error processing {symbol}: {e}")
                return SymbolMetrics(symbol=symbol, error=str(e) or e.__class__.__name__)
            finally:
                if self.batch_delay > 0:
                    await asyncio.sleep(self.batch_delay)

    async def scan(self, symbols: List[str], base_timeframe: str = '1d', top_n: Optional[int] = None,
                   include_fundamentals: bool = False) -> ScanResult:
        """
        Screens and ranks `symbols`. Per-symbol failures of any kind are
        recorded on the row and never abort the scan.

        Raises:
            ValueError: if `symbols` is empty.
        """
        unique = list(dict.fromkeys(s.strip().upper() for s in symbols if s and s.strip()))
        if not unique:
            raise ValueError("symbols array required")
        top_n = self.scan_config['default_top_n'] if top_n is None else top_n
        interval = normalize_interval(base_timeframe)

        logger.info(f"Scanning {len(unique)} symbols on {interval}")
        semaphore = asyncio.Semaphore(self.concurrency)
        metrics = await asyncio.gather(*(
            self._scan_symbol(s, interval, semaphore, include_fundamentals) for s in unique
        ))

        rankings = rank_metrics(list(metrics))
        failed = sum(1 for m in rankings if m.error is not None)
        top_symbols = [m.symbol for m in rankings if m.error is None][:top_n]
        result = ScanResult(
            scan_id=str(uuid.uuid4()),
            total_symbols=len(unique),
            processed=len(unique) - failed,
            failed=failed,
            rankings=rankings,
            top_symbols=top_symbols,
        )
        logger.info(f"Scan {result.scan_id} complete: {result.processed} processed, {failed} failed. Top: {top_symbols}")
        return result

    def _scorer_for(self, api_version: Optional[str]) -> StructureScorer:
        if api_version is None or api_version == self.scorer.version:
            return self.scorer
        return StructureScorer(self.scorer.config, version=api_version)

    async def prefilter(self, symbol: str, timeframe: str = '1d', api_version: Optional[str] = None) -> ScoreBundle:
        """Fetches one symbol through the cache and returns its ScoreBundle."""
        if not symbol or not symbol.strip():
            raise ValueError("symbol required")
        scorer = self._scorer_for(api_version)
        symbol = symbol.strip().upper()
        interval = normalize_interval(timeframe)
        candles = await self.load_series(symbol, interval)
        return scorer.score(candles, symbol=symbol, source_timeframe=interval)

    async def pivots(self, symbol: str, timeframe: str = '1d') -> Dict[str, Any]:
        """Multi-scale pivots plus meso segment features for one symbol."""
        if not symbol or not symbol.strip():
            raise ValueError("symbol required")
        symbol = symbol.strip().upper()
        interval = normalize_interval(timeframe)
        candles = await self.load_series(symbol, interval)
        validate_candles(candles)

        atr = TechnicalIndicators.calculate_atr(candles, self.scorer.config['atr_period'])
        multi = compute_multi_scale_pivots(candles, atr, source_timeframe=interval, presets=self.scorer.scales)
        segments = calculate_segment_features(candles, multi.meso)
        return {
            'symbol': symbol,
            'timeframe': interval,
            'bars': len(candles),
            'atr': atr,
            'pivots': multi.to_dict(),
            'meso_segments': [s.to_dict() for s in segments],
        }
