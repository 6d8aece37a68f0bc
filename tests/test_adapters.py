"""
Test suite for OHLCV data adapters.
"""

import asyncio
import datetime
import json

import pytest
import ingest.adapters as adapters
from ingest.adapters import (
    AdapterFactory,
    BinanceAdapter,
    DataFetchError,
    RateLimitedError,
    SampleCSVAdapter,
    YahooChartAdapter,
    YahooFinanceAdapter,
    YahooFundamentalsClient,
    normalize_interval,
    parse_chart_payload,
    parse_quote_summary,
)

START = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)
END = datetime.datetime(2024, 2, 1, tzinfo=datetime.timezone.utc)


def chart_payload():
    day = 86400
    base = int(datetime.datetime(2024, 1, 2, 14, 30, tzinfo=datetime.timezone.utc).timestamp())
    return {
        'chart': {
            'result': [{
                'timestamp': [base, base + day, base + 2 * day],
                'indicators': {'quote': [{
                    'open': [10.0, None, 11.0],
                    'high': [10.5, 10.6, 11.5],
                    'low': [9.5, 9.6, 10.5],
                    'close': [10.2, 10.3, 11.2],
                    'volume': [1000, 2000, None],
                }]},
            }],
        },
    }


class FakeResponse:
    def __init__(self, status, payload=None):
        self.status = status
        self.payload = payload

    async def json(self, content_type=None):
        return self.payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class InvalidJSONResponse(FakeResponse):
    def __init__(self):
        super().__init__(200)

    async def json(self, content_type=None):
        raise json.JSONDecodeError("Expecting value", "<html>", 0)


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.requests = []

    def get(self, url, params=None):
        self.requests.append((url, dict(params or {})))
        return self.response

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def patch_session(monkeypatch, response):
    session = FakeSession(response)
    monkeypatch.setattr(adapters.aiohttp, 'ClientSession', lambda *args, **kwargs: session)
    return session


def test_normalize_interval():
    assert normalize_interval('1D') == '1d', "Daily label maps to 1d"
    assert normalize_interval('1W') == '1wk', "Weekly label maps to 1wk"
    assert normalize_interval('1wk') == '1wk'
    assert normalize_interval('1h') == '1h', "Intraday passes through"
    assert normalize_interval('1M') == '1mo', "Capital M is a month"
    assert normalize_interval('1m') == '1m', "Lowercase m is a minute"
    assert normalize_interval(None) == '1d', "Missing interval defaults to daily"


def test_parse_chart_payload_skips_null_bars():
    candles = parse_chart_payload(chart_payload(), 'AAPL', '1d')

    assert len(candles) == 2, "Bar with a null open is skipped"
    assert candles[0].date == datetime.date(2024, 1, 2), "Daily bars carry calendar dates"
    assert candles[0].close == 10.2 and candles[0].volume == 1000.0
    assert candles[1].volume == 0.0, "Null volume becomes 0"


def test_parse_chart_payload_intraday_keeps_time():
    candles = parse_chart_payload(chart_payload(), 'AAPL', '1h')
    assert isinstance(candles[0].date, datetime.datetime), "Intraday bars keep their timestamp"


def test_parse_chart_payload_empty():
    with pytest.raises(DataFetchError):
        parse_chart_payload({'chart': {'result': None}}, 'NOPE', '1d')


def test_yahoo_chart_adapter_fetch(monkeypatch):
    session = patch_session(monkeypatch, FakeResponse(200, chart_payload()))
    adapter = YahooChartAdapter('AAPL', '1D')

    candles = asyncio.run(adapter.fetch_candles(START, END))

    assert len(candles) == 2, "Parsed candles are returned"
    url, params = session.requests[0]
    assert url.endswith('/v8/finance/chart/AAPL'), "Symbol is placed in the path"
    assert params['interval'] == '1d' and params['period1'] == int(START.timestamp()), "Range and interval are passed"


def test_yahoo_chart_adapter_rate_limited(monkeypatch):
    patch_session(monkeypatch, FakeResponse(429))
    with pytest.raises(RateLimitedError):
        asyncio.run(YahooChartAdapter('AAPL').fetch_candles(START, END))


def test_yahoo_chart_adapter_http_error(monkeypatch):
    patch_session(monkeypatch, FakeResponse(500))
    with pytest.raises(DataFetchError) as excinfo:
        asyncio.run(YahooChartAdapter('AAPL').fetch_candles(START, END))
    assert not isinstance(excinfo.value, RateLimitedError), "Server errors are not rate limits"


def test_binance_interval_mapping():
    adapter = BinanceAdapter(symbol="BTC-USDT", interval="1W")
    assert adapter.binance_symbol == "BTCUSDT", "Separators are stripped"
    assert adapter.interval == '1wk'
    assert adapter.map_interval_to_binance('1wk') == '1w', "Weekly maps to Binance 1w"
    assert adapter.map_interval_to_binance('1h') == '1h'
    assert adapter.map_interval_to_binance('3m') is None, "Should return None for unsupported interval"


def test_binance_adapter_fetch(monkeypatch):
    day_ms = 86400 * 1000
    open_ms = int(datetime.datetime(2024, 1, 2, tzinfo=datetime.timezone.utc).timestamp() * 1000)
    klines = [
        [open_ms, '100', '110', '95', '105', '12.5', open_ms + day_ms - 1],
        [open_ms + day_ms, '105', '108', '101', '102', '8', open_ms + 2 * day_ms - 1],
    ]
    patch_session(monkeypatch, FakeResponse(200, klines))

    candles = asyncio.run(BinanceAdapter('BTCUSDT', '1d').fetch_candles(START, END))

    assert len(candles) == 2
    assert candles[0].date == datetime.date(2024, 1, 2), "Kline open time becomes the bar date"
    assert (candles[0].open, candles[0].high, candles[0].low, candles[0].close) == (100.0, 110.0, 95.0, 105.0)
    assert candles[1].volume == 8.0


def test_sample_csv_adapter(tmp_path):
    csv_path = tmp_path / "AAPL_1d.csv"
    csv_path.write_text(
        "date,open,high,low,close,volume\n"
        "2024-01-03,11,12,10.5,11.5,200\n"
        "2024-01-02,10,11,9.5,10.5,100\n"
        "2023-06-01,9,9.5,8.5,9,50\n"
    )
    adapter = SampleCSVAdapter('AAPL', '1d', str(csv_path))
    candles = asyncio.run(adapter.fetch_candles(START, END))

    assert [c.date for c in candles] == [datetime.date(2024, 1, 2), datetime.date(2024, 1, 3)], "Rows are sorted and range-filtered"
    assert candles[1].volume == 200.0


def test_sample_csv_adapter_missing_file(tmp_path):
    adapter = SampleCSVAdapter('AAPL', '1d', str(tmp_path / "missing.csv"))
    with pytest.raises(DataFetchError):
        asyncio.run(adapter.fetch_candles(START, END))


def test_adapter_factory_selection(tmp_path):
    factory = AdapterFactory({'csv_dir': str(tmp_path)})

    assert isinstance(factory.get_adapter('AAPL'), YahooChartAdapter), "Equities default to the Yahoo chart API"
    assert isinstance(factory.get_adapter('BTC-USD'), YahooChartAdapter), "Yahoo crypto tickers stay on Yahoo"
    assert isinstance(factory.get_adapter('BTCUSDT'), BinanceAdapter), "Exchange pairs go to Binance"
    assert isinstance(factory.get_adapter('AAPL', source_preference='yfinance'), YahooFinanceAdapter)
    assert isinstance(factory.get_fundamentals_client(), YahooFundamentalsClient)

    csv_adapter = factory.get_adapter('aapl', interval='1D', source_preference='csv')
    assert isinstance(csv_adapter, SampleCSVAdapter)
    assert csv_adapter.csv_path.endswith('AAPL_1d.csv'), "CSV path is built from symbol and interval"
    assert factory.get_adapter('AAPL').interval == '1d', "Default resolution is daily"


def quote_summary_payload():
    return {
        'quoteSummary': {
            'result': [{
                'summaryProfile': {'sector': 'Technology', 'industry': 'Consumer Electronics'},
                'defaultKeyStatistics': {'marketCap': {}, 'trailingPE': {'raw': 28.5, 'fmt': '28.50'}, 'forwardPE': {'raw': 26.1}},
                'financialData': {'marketCap': {'raw': 2.9e12}, 'revenueGrowth': {'raw': 0.06}, 'earningsGrowth': {}},
                'calendarEvents': {'earnings': {'earningsDate': [{'raw': 1714680000, 'fmt': '2024-05-02'}]}},
                'price': {'shortName': 'Apple Inc.'},
            }],
            'error': None,
        },
    }


def test_yahoo_chart_adapter_invalid_json(monkeypatch):
    patch_session(monkeypatch, InvalidJSONResponse())
    with pytest.raises(DataFetchError):
        asyncio.run(YahooChartAdapter('AAPL').fetch_candles(START, END))


def test_yahoo_chart_adapter_malformed_payload(monkeypatch):
    patch_session(monkeypatch, FakeResponse(200, {'chart': {'result': ['not a mapping']}}))
    with pytest.raises(DataFetchError):
        asyncio.run(YahooChartAdapter('AAPL').fetch_candles(START, END))


def test_binance_adapter_invalid_json(monkeypatch):
    patch_session(monkeypatch, InvalidJSONResponse())
    with pytest.raises(DataFetchError):
        asyncio.run(BinanceAdapter('BTCUSDT', '1d').fetch_candles(START, END))


def test_sample_csv_adapter_without_date_column(tmp_path):
    csv_path = tmp_path / "AAPL_1d.csv"
    csv_path.write_text("open,high,low,close,volume\n10,11,9.5,10.5,100\n")
    with pytest.raises(DataFetchError) as excinfo:
        asyncio.run(SampleCSVAdapter('AAPL', '1d', str(csv_path)).fetch_candles(START, END))
    assert str(csv_path) in str(excinfo.value), "Error names the file"


def test_parse_quote_summary():
    snapshot = parse_quote_summary(quote_summary_payload())

    assert snapshot.market_cap == 2.9e12, "Market cap falls back to financialData"
    assert snapshot.trailing_pe == 28.5 and snapshot.forward_pe == 26.1
    assert snapshot.revenue_growth == 0.06 and snapshot.earnings_growth is None, "Empty fields become None"
    assert snapshot.next_earnings_date == '2024-05-02'
    assert (snapshot.sector, snapshot.industry, snapshot.short_name) == ('Technology', 'Consumer Electronics', 'Apple Inc.')
    assert parse_quote_summary({'quoteSummary': {'result': None}}).is_empty, "No result gives an empty snapshot"


def test_fundamentals_client_fetch(monkeypatch):
    session = patch_session(monkeypatch, FakeResponse(200, quote_summary_payload()))
    snapshot = asyncio.run(YahooFundamentalsClient().fetch_fundamentals('AAPL'))

    assert snapshot.sector == 'Technology'
    url, params = session.requests[0]
    assert url.endswith('/v10/finance/quoteSummary/AAPL') and 'financialData' in params['modules']


@pytest.mark.parametrize("response", [FakeResponse(404), FakeResponse(429), InvalidJSONResponse()])
def test_fundamentals_client_failures_are_empty(monkeypatch, response):
    patch_session(monkeypatch, response)
    snapshot = asyncio.run(YahooFundamentalsClient().fetch_fundamentals('AAPL'))
    assert snapshot.is_empty, "Failures yield an empty snapshot"
