import asyncio
import datetime
import logging
import typing
from abc import ABC, abstractmethod
from urllib.parse import quote

import aiohttp
import pandas as pd
import yfinance as yf

from analysis.models import Candle, FundamentalsSnapshot, candles_from_dataframe

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = '1d'
DEFAULT_TIMEOUT_SECONDS = 15
YAHOO_CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}"
YAHOO_QUOTE_SUMMARY_URL = "https://query1.finance.yahoo.com/v10/finance/quoteSummary/{symbol}"
QUOTE_SUMMARY_MODULES = "summaryProfile,defaultKeyStatistics,financialData,calendarEvents,price"
BINANCE_BASE_URL = "https://api.binance.com"
CRYPTO_SUFFIXES = ('USDT', 'BUSD', 'USDC', 'BTC', 'ETH', 'BNB')
DAILY_INTERVALS = ('1d', '1wk', '1mo')


class DataFetchError(Exception):
    """Upstream OHLCV fetch failed or returned no usable data."""


class RateLimitedError(DataFetchError):
    """Upstream answered HTTP 429."""


def normalize_interval(interval: typing.Optional[str]) -> str:
    """Maps user-facing timeframes ('1D', '1W', '1h') to provider intervals."""
    if not interval:
        return DEFAULT_INTERVAL
    # '1M' is a month, '1m' a minute
    if interval == '1M':
        return '1mo'
    lowered = interval.lower()
    return {'1w': '1wk'}.get(lowered, lowered)


def _naive_timestamp(value) -> pd.Timestamp:
    ts = pd.Timestamp(value)
    return ts.tz_convert(None) if ts.tzinfo is not None else ts


def _bar_date(timestamp_s: float, interval: str):
    moment = datetime.datetime.fromtimestamp(timestamp_s, tz=datetime.timezone.utc)
    return moment.date() if interval in DAILY_INTERVALS else moment


def parse_chart_payload(payload: dict, symbol: str, interval: str) -> typing.List[Candle]:
    """
    Converts a Yahoo v8 chart response into candles.
    Bars with a null open, high, low or close are skipped; null volume is 0.
    """
    result = ((payload or {}).get('chart') or {}).get('result') or []
    if not result or not result[0].get('timestamp'):
        raise DataFetchError(f"No data for {symbol}")

    timestamps = result[0]['timestamp']
    quotes = (result[0].get('indicators') or {}).get('quote') or [{}]
    quote_data = quotes[0]

    def column(name):
        values = quote_data.get(name) or []
        return list(values) + [None] * (len(timestamps) - len(values))

    candles = []
    for ts, o, h, l, c, v in zip(timestamps, column("open"), column("high"), column("low"),
                                 column("close"), column("volume")):
        if o is None or h is None or l is None or c is None:
            continue
        candles.append(Candle(
            date=_bar_date(ts, interval),
            open=float(o),
            high=float(h),
            low=float(l),
            close=float(c),
            volume=float(v or 0),
        ))
    return candles


class DataAdapter(ABC):
    """
    Abstract base class for OHLCV data adapters.
    Implementations raise DataFetchError (or RateLimitedError) instead of
    returning partial data; retry policy belongs to the caller.
    """
    def __init__(self, symbol: str, interval: str = DEFAULT_INTERVAL, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self.symbol = symbol
        self.interval = normalize_interval(interval)
        self.timeout_seconds = timeout_seconds
        logger.debug(f"Initialized {self.__class__.__name__} for symbol {self.symbol} with interval {self.interval}")

    @abstractmethod
    async def fetch_candles(self, start_date: datetime.datetime, end_date: datetime.datetime) -> typing.List[Candle]:
        """
        Fetches candles between start_date and end_date, ascending by date.
        """
        pass

    async def fetch_recent(self, lookback_days: int) -> typing.List[Candle]:
        """Fetches the last `lookback_days` calendar days of candles."""
        end_date = datetime.datetime.now(datetime.timezone.utc)
        start_date = end_date - datetime.timedelta(days=lookback_days)
        return await self.fetch_candles(start_date, end_date)


class YahooChartAdapter(DataAdapter):
    """
    Adapter for the Yahoo Finance v8 chart endpoint over aiohttp.
    """
    async def fetch_candles(self, start_date: datetime.datetime, end_date: datetime.datetime) -> typing.List[Candle]:
        url = YAHOO_CHART_URL.format(symbol=quote(self.symbol, safe=''))
        params = {
            'period1': int(start_date.timestamp()),
            'period2': int(end_date.timestamp()),
            'interval': self.interval,
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, params=params) as response:
                    if response.status == 429:
                        raise RateLimitedError(f"Rate limited fetching {self.symbol}")
                    if response.status != 200:
                        raise DataFetchError(f"Failed to fetch {self.symbol}: {response.status}")
                    payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DataFetchError(f"Yahoo chart request failed for {self.symbol}: {e}") from e
        except ValueError as e:
            raise DataFetchError(f"Yahoo chart returned invalid JSON for {self.symbol}: {e}") from e

        try:
            candles = parse_chart_payload(payload, self.symbol, self.interval)
        except (AttributeError, IndexError, KeyError, TypeError, ValueError) as e:
            raise DataFetchError(f"Malformed Yahoo chart payload for {self.symbol}: {e}") from e

        logger.info(f"Fetched {len(candles)} candles for {self.symbol}/{self.interval} from Yahoo chart API")
        return candles


class YahooFinanceAdapter(DataAdapter):
    """
    Adapter for Yahoo Finance via yfinance.
    """
    def __init__(self, symbol: str, interval: str = DEFAULT_INTERVAL, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        super().__init__(symbol, interval, timeout_seconds)
        self.ticker = yf.Ticker(self.symbol)

    def _history(self, start_date: datetime.datetime, end_date: datetime.datetime) -> pd.DataFrame:
        return self.ticker.history(start=start_date, end=end_date, interval=self.interval, auto_adjust=False, back_adjust=False)

    async def fetch_candles(self, start_date: datetime.datetime, end_date: datetime.datetime) -> typing.List[Candle]:
        try:
            data = await asyncio.to_thread(self._history, start_date, end_date)
        except Exception as e:
            raise DataFetchError(f"yfinance request failed for {self.symbol}: {e}") from e

        if data is None or data.empty:
            raise DataFetchError(f"No data returned from Yahoo Finance for {self.symbol}")

        data = data.rename(columns=str.lower)[['open', 'high', 'low', 'close', 'volume']]
        data = data.dropna(subset=['open', 'high', 'low', 'close'])
        data['volume'] = data['volume'].fillna(0.0)
        index = pd.to_datetime(data.index)
        if self.interval in DAILY_INTERVALS:
            if index.tz is not None:
                index = index.tz_localize(None)
            data.index = index.normalize()
        else:
            data.index = index.tz_convert("UTC") if index.tz is not None else index.tz_localize("UTC")
        candles = candles_from_dataframe(data, validate=False)
        logger.info(f"Fetched {len(candles)} candles for {self.symbol} from yfinance")
        return candles


def _raw_value(section: dict, key: str):
    value = section.get(key)
    return value.get('raw') if isinstance(value, dict) else value


def parse_quote_summary(payload: dict) -> FundamentalsSnapshot:
    """
    Converts a Yahoo v10 quoteSummary response into a FundamentalsSnapshot.
    Missing modules or fields become None; an empty result gives an empty snapshot.
    """
    result = ((payload or {}).get('quoteSummary') or {}).get('result') or []
    if not result:
        return FundamentalsSnapshot()

    modules = result[0] or {}
    profile = modules.get('summaryProfile') or {}
    key_stats = modules.get('defaultKeyStatistics') or {}
    financial = modules.get('financialData') or {}
    earnings = (modules.get('calendarEvents') or {}).get('earnings') or {}
    price = modules.get('price') or {}

    earnings_dates = earnings.get('earningsDate') or []
    market_cap = _raw_value(key_stats, 'marketCap')
    if market_cap is None:
        market_cap = _raw_value(financial, 'marketCap') or _raw_value(price, 'marketCap')

    return FundamentalsSnapshot(
        market_cap=market_cap,
        trailing_pe=_raw_value(key_stats, 'trailingPE'),
        forward_pe=_raw_value(key_stats, 'forwardPE'),
        revenue_growth=_raw_value(financial, 'revenueGrowth'),
        earnings_growth=_raw_value(financial, 'earningsGrowth'),
        next_earnings_date=earnings_dates[0].get('fmt') if earnings_dates else None,
        sector=profile.get('sector'),
        industry=profile.get('industry'),
        short_name=price.get('shortName'),
    )


class YahooFundamentalsClient:
    """
    Fetches company fundamentals from the Yahoo quoteSummary endpoint.
    Failures are logged and yield an empty snapshot.
    """
    def __init__(self, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        self.timeout_seconds = timeout_seconds

    async def fetch_fundamentals(self, symbol: str) -> FundamentalsSnapshot:
        url = YAHOO_QUOTE_SUMMARY_URL.format(symbol=quote(symbol, safe=''))
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, params={'modules': QUOTE_SUMMARY_MODULES}) as response:
                    if response.status != 200:
                        logger.warning(f"Fundamentals not available for {symbol}: {response.status}")
                        return FundamentalsSnapshot()
                    payload = await response.json(content_type=None)
            return parse_quote_summary(payload)
        except (aiohttp.ClientError, asyncio.TimeoutError, AttributeError, IndexError, TypeError, ValueError) as e:
            logger.warning(f"Error fetching fundamentals for {symbol}: {e}")
            return FundamentalsSnapshot()


class BinanceAdapter(DataAdapter):
    """
    Adapter for Binance spot klines (REST, paginated).
    """
    def __init__(self, symbol: str, interval: str = DEFAULT_INTERVAL, timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS):
        super().__init__(symbol, interval, timeout_seconds)
        self.binance_symbol = symbol.upper().replace('-', '').replace('/', '')

    def map_interval_to_binance(self, interval: str) -> typing.Optional[str]:
        """Maps internal interval string to Binance API interval string."""
        interval_map = {
            '1m': '1m', '5m': '5m', '15m': '15m', '30m': '30m',
            '1h': '1h', '4h': '4h', '1d': '1d', '1wk': '1w', '1mo': '1M',
        }
        return interval_map.get(interval)

    async def fetch_candles(self, start_date: datetime.datetime, end_date: datetime.datetime) -> typing.List[Candle]:
        binance_interval = self.map_interval_to_binance(self.interval)
        if not binance_interval:
            raise DataFetchError(f"Unsupported interval for Binance: {self.interval}")

        url = f"{BINANCE_BASE_URL}/api/v3/klines"
        start_ms = int(start_date.timestamp() * 1000)
        end_ms = int(end_date.timestamp() * 1000)
        params = {'symbol': self.binance_symbol, 'interval': binance_interval, 'limit': 1000}
        klines = []
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                current = start_ms
                while current < end_ms:
                    params['startTime'] = current
                    params['endTime'] = end_ms
                    async with session.get(url, params=params) as response:
                        if response.status == 429:
                            raise RateLimitedError(f"Rate limited fetching {self.binance_symbol}")
                        if response.status != 200:
                            raise DataFetchError(f"Failed to fetch {self.binance_symbol}: {response.status}")
                        batch = await response.json()
                    if not batch:
                        break
                    klines.extend(batch)
                    current = batch[-1][0] + 1
                    if len(batch) < params['limit']:
                        break
                    await asyncio.sleep(0.1)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DataFetchError(f"Binance API request failed for {self.binance_symbol}: {e}") from e
        except (ValueError, TypeError, IndexError, KeyError) as e:
            raise DataFetchError(f"Malformed Binance response for {self.binance_symbol}: {e}") from e

        if not klines:
            raise DataFetchError(f"No klines found for {self.binance_symbol}")

        # kline: [open_time, open, high, low, close, volume, close_time, ...]
        try:
            candles = [
                Candle(
                    date=_bar_date(k[0] / 1000, self.interval),
                    open=float(k[1]),
                    high=float(k[2]),
                    low=float(k[3]),
                    close=float(k[4]),
                    volume=float(k[5]),
                )
                for k in klines
            ]
        except (ValueError, TypeError, IndexError) as e:
            raise DataFetchError(f"Malformed kline for {self.binance_symbol}: {e}") from e
        logger.info(f"Fetched {len(candles)} klines for {self.binance_symbol} from Binance.")
        return candles


class SampleCSVAdapter(DataAdapter):
    """
    Adapter for local OHLCV CSV files (columns: date, open, high, low, close, volume).
    Used for offline runs and demonstrations.
    """
    def __init__(self, symbol: str, interval: str, csv_path: str):
        super().__init__(symbol, interval)
        self.csv_path = csv_path

    async def fetch_candles(self, start_date: datetime.datetime, end_date: datetime.datetime) -> typing.List[Candle]:
        try:
            df = pd.read_csv(self.csv_path, parse_dates=['date'])
        except FileNotFoundError as e:
            raise DataFetchError(f"Sample CSV file not found at {self.csv_path}") from e
        except ValueError as e:
            # pandas parse errors, including a missing 'date' column
            raise DataFetchError(f"Unreadable sample CSV {self.csv_path}: {e}") from e
        df.columns = [c.lower() for c in df.columns]
        df = df.sort_values('date').set_index('date')
        start, end = _naive_timestamp(start_date), _naive_timestamp(end_date)
        df = df.loc[(df.index >= start) & (df.index <= end)]
        candles = candles_from_dataframe(df)
        logger.info(f"Loaded {len(candles)} candles for {self.symbol} from {self.csv_path}")
        return candles


class AdapterFactory:
    """Factory to create appropriate data adapters."""
    def __init__(self, config: typing.Optional[dict] = None):
        self.config = config or {}
        self.default_interval = self.config.get('default_resolution', DEFAULT_INTERVAL)
        self.timeout_seconds = self.config.get('fetch_timeout_seconds', DEFAULT_TIMEOUT_SECONDS)
        self.csv_dir = self.config.get('csv_dir', 'data')

    def get_adapter(self, symbol: str, interval: typing.Optional[str] = None, source_preference: typing.Optional[str] = None) -> DataAdapter:
        """
        Returns an adapter for the symbol.
        Source preference can be 'yahoo', 'yfinance', 'binance' or 'csv'.
        """
        interval = interval or self.default_interval
        symbol_upper = symbol.upper()
        source = source_preference or self.config.get('source_preference')

        if source == 'csv':
            csv_path = f"{self.csv_dir}/{symbol_upper}_{normalize_interval(interval)}.csv"
            return SampleCSVAdapter(symbol_upper, interval, csv_path)
        if source == 'yfinance':
            return YahooFinanceAdapter(symbol_upper, interval, self.timeout_seconds)
        if source == 'binance' or (source is None and self._is_crypto_symbol(symbol_upper)):
            return BinanceAdapter(symbol_upper, interval, self.timeout_seconds)
        return YahooChartAdapter(symbol_upper, interval, self.timeout_seconds)

    def get_fundamentals_client(self) -> YahooFundamentalsClient:
        return YahooFundamentalsClient(self.timeout_seconds)

    def _is_crypto_symbol(self, symbol: str) -> bool:
        """Heuristic: exchange pairs like BTCUSDT. Yahoo crypto tickers (BTC-USD) stay on Yahoo."""
        return '-' not in symbol and any(symbol.endswith(suffix) and len(symbol) > len(suffix) for suffix in CRYPTO_SUFFIXES)
