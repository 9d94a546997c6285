"""
Unit tests for MarketDataService (simulated feeds, history, indicators, verification)

Tests cover:
- Simulated price seeding and random-walk ticks
- CCXT ticker handling, streaming reconnects and subscriber fan-out
- Historical data caching and simulated fallback
- Indicator calculation (pandas-ta and short-history defaults)
- CoinMarketCap price verification and source selection
- Health check summary and resilience counters
"""

import asyncio
from types import SimpleNamespace

import pytest
from unittest.mock import Mock

from deeptrade.models import PriceData
from deeptrade.roles import job_market_data
from deeptrade.roles.job_market_data import (
    BASE_PRICES,
    RECONNECT_DELAY_SECS,
    MarketDataService,
    _Feed,
    periods_for,
    to_exchange_symbol,
)
from deeptrade.utils import ExternalAPIError


def cmc_session(price, pct=2.0, status=200):
    session = Mock()
    session.get.return_value = Mock(
        status_code=status,
        json=Mock(return_value={'data': {'APT': {'quote': {'USD': {
            'price': price, 'percent_change_24h': pct, 'volume_24h': 5_000_000,
        }}}}}),
    )
    return session


def pro_exchange_factory(steps):
    """
    ccxt.pro exchange stand-in. Each watch_ticker call consumes one step: an
    exception is raised, a callable is called (its result returned), anything
    else is returned as the ticker.
    """
    instances = []

    class FakeProExchange:
        def __init__(self, config):
            self.config = config
            self.watched = []
            self.closed = False
            instances.append(self)

        async def watch_ticker(self, symbol):
            self.watched.append(symbol)
            step = steps.pop(0)
            if isinstance(step, Exception):
                raise step
            return step() if callable(step) else step

        async def close(self):
            self.closed = True

    return FakeProExchange, instances


@pytest.fixture
def streaming(paper_settings, monkeypatch):
    """Live-mode service with a registered APT/USDC feed, ccxt.pro and asyncio.sleep replaced"""
    service = MarketDataService(paper_settings, exchange=Mock(), mock_mode=False)
    feed = _Feed(kind='stream')
    service._feeds['APT/USDC'] = feed
    delays = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(job_market_data.asyncio, 'sleep', fake_sleep)

    def run(steps, on_sleep=None):
        if on_sleep is not None:
            async def sleep_then(delay):
                delays.append(delay)
                on_sleep()
            monkeypatch.setattr(job_market_data.asyncio, 'sleep', sleep_then)
        factory, instances = pro_exchange_factory(steps)
        monkeypatch.setattr(job_market_data, 'ccxtpro', SimpleNamespace(**{paper_settings.exchange_id: factory}))
        asyncio.run(service._stream_ticker('APT/USDC', feed.stop))
        return instances

    service.run_stream = run
    service.delays = delays
    service.feed = feed
    return service


@pytest.fixture
def market(paper_settings):
    service = MarketDataService(paper_settings, mock_mode=True, seed=7)
    yield service
    service.disconnect()


@pytest.mark.unit
class TestHelpers:

    def test_exchange_symbol_uses_usdt(self):
        assert to_exchange_symbol('apt/usdc') == 'APT/USDT'

    def test_periods_for_timeframe(self):
        assert periods_for('5m', 3600) == 12
        assert periods_for('1h', 86400) == 24
        assert periods_for('1d', 3600) == 1


@pytest.mark.unit
class TestSimulatedFeed:
    """Test simulated prices and feed bookkeeping"""

    def test_seeds_base_prices(self, market):
        for symbol, base in BASE_PRICES.items():
            assert market.get_current_data(symbol).price == base

    def test_tick_moves_price_at_most_one_percent(self, market):
        before = market.get_current_data('APT/USDC').price

        after = market.tick_mock_price('APT/USDC').price

        assert after != before
        assert abs(after - before) / before <= 0.01

    def test_tick_unknown_symbol(self, market):
        assert market.tick_mock_price('DOGE/USDC') is None

    def test_connect_is_idempotent(self, market):
        market.connect_price_feed('APT/USDC')
        market.connect_price_feed('APT/USDC')

        assert market.connected_symbols == ['APT/USDC']

        market.disconnect('APT/USDC')
        assert market.connected_symbols == []

    def test_subscribers_receive_ticks(self, market):
        callback = Mock()
        unsubscribe = market.subscribe('ETH/USDC', callback)

        market.tick_mock_price('ETH/USDC')
        unsubscribe()
        market.tick_mock_price('ETH/USDC')

        callback.assert_called_once()
        assert callback.call_args[0][0].symbol == 'ETH/USDC'


@pytest.mark.unit
class TestTickerHandling:
    """Test CCXT unified ticker conversion"""

    def test_handle_ticker(self, market):
        # Arrange
        ticker = {
            'last': 13.1, 'percentage': -2.5, 'baseVolume': 120000.0,
            'high': 13.5, 'low': 12.8, 'timestamp': 1_700_000_000_000,
        }

        # Act
        data = market.handle_ticker('APT/USDC', ticker)

        # Assert
        assert data == PriceData(
            symbol='APT/USDC', price=13.1, change_24h=-2.5, volume_24h=120000.0,
            high_24h=13.5, low_24h=12.8, timestamp=1_700_000_000.0,
        )
        assert market.get_current_data('APT/USDC') == data

    def test_ticker_without_price_is_ignored(self, market):
        assert market.handle_ticker('APT/USDC', {'last': None}) is None
        assert market.get_current_data('APT/USDC').price == BASE_PRICES['APT/USDC']


@pytest.mark.unit
class TestTickerStream:
    """Test the ccxt.pro watch_ticker loop (reconnect and shutdown)"""

    def test_reconnects_after_drop_while_connected(self, streaming):
        # Arrange
        def last_tick():
            streaming.feed.stop.set()
            return {'last': 13.1, 'timestamp': 1_700_000_000_000}

        # Act
        instances = streaming.run_stream([ConnectionError('socket closed'), last_tick])

        # Assert
        assert streaming.delays == [RECONNECT_DELAY_SECS]
        assert len(instances) == 2
        assert all(ex.closed for ex in instances)
        assert instances[0].config == {'enableRateLimit': True}
        assert instances[1].watched == ['APT/USDT']
        assert streaming.get_current_data('APT/USDC').price == 13.1

    def test_stops_without_reconnect_after_disconnect(self, streaming):
        """A drop that follows disconnect() ends the loop without a backoff"""
        def disconnect_then_drop():
            streaming.disconnect('APT/USDC')
            raise ConnectionError('socket closed')

        instances = streaming.run_stream([disconnect_then_drop])

        assert streaming.delays == []
        assert len(instances) == 1
        assert instances[0].closed is True
        assert streaming.connected_symbols == []

    def test_disconnect_during_backoff_stops_loop(self, streaming):
        instances = streaming.run_stream(
            [ConnectionError('socket closed')],
            on_sleep=lambda: streaming.disconnect('APT/USDC'),
        )

        assert streaming.delays == [RECONNECT_DELAY_SECS]
        assert len(instances) == 1


@pytest.mark.unit
class TestHistory:
    """Test OHLCV history"""

    def test_mock_history_shape(self, market):
        df = market.generate_mock_history('APT/USDC', 50, '5m')

        assert len(df) == 51
        assert list(df.columns) == ['timestamp', 'open', 'high', 'low', 'close', 'volume']
        assert (df['close'] > 0).all()
        assert (df['high'] >= df[['open', 'close']].max(axis=1)).all()
        assert df['timestamp'].is_monotonic_increasing

    def test_history_is_cached(self, market):
        first = market.get_historical_data('APT/USDC', '5m', 100)
        second = market.get_historical_data('APT/USDC', '5m', 100)

        assert len(first) == 100
        assert len(second) == 100
        assert second['close'].tolist() == first['close'].tolist()

    def test_exchange_failure_falls_back(self, paper_settings):
        """OHLCV errors degrade to simulated history instead of raising"""
        exchange = Mock()
        exchange.fetch_ohlcv.side_effect = RuntimeError('exchange down')
        service = MarketDataService(paper_settings, exchange=exchange, mock_mode=False, seed=1)

        df = service.get_historical_data('BTC/USDC', '1h', 30)

        assert len(df) == 30
        exchange.fetch_ohlcv.assert_called_once_with('BTC/USDT', '1h', limit=30)

    def test_exchange_ohlcv_is_parsed(self, paper_settings):
        exchange = Mock()
        exchange.fetch_ohlcv.return_value = [
            [1_700_000_000_000 + i * 300_000, 10.0, 10.5, 9.5, 10.0 + i, 100.0] for i in range(3)
        ]
        service = MarketDataService(paper_settings, exchange=exchange, mock_mode=False)

        df = service.get_historical_data('APT/USDC', '5m', 3)

        assert df['close'].tolist() == [10.0, 11.0, 12.0]


@pytest.mark.unit
class TestIndicators:
    """Test indicator calculation"""

    def test_rising_series(self, market, sample_ohlcv_data):
        # Act
        indicators = market.calculate_indicators(sample_ohlcv_data, '1h')

        # Assert
        closes = sample_ohlcv_data['close']
        assert indicators.rsi > 70
        assert indicators.sma20 == pytest.approx(closes.tail(20).mean())
        assert indicators.sma50 == pytest.approx(closes.tail(50).mean())
        assert indicators.macd > 0
        assert indicators.bb_upper > indicators.bb_middle > indicators.bb_lower
        assert indicators.volume == sample_ohlcv_data['volume'].iloc[-1]
        expected_1h = (closes.iloc[-1] - closes.iloc[-2]) / closes.iloc[-2] * 100
        assert indicators.price_change_1h == pytest.approx(expected_1h)
        expected_24h = (closes.iloc[-1] - closes.iloc[-25]) / closes.iloc[-25] * 100
        assert indicators.price_change_24h == pytest.approx(expected_24h)

    def test_short_history_uses_neutral_defaults(self, market, sample_ohlcv_data):
        short = sample_ohlcv_data.head(5)

        indicators = market.calculate_indicators(short, '1h')

        last_close = short['close'].iloc[-1]
        assert indicators.rsi == 50.0
        assert indicators.sma20 == pytest.approx(last_close)
        assert indicators.price_change_24h == 0.0

    def test_empty_frame(self, market, sample_ohlcv_data):
        indicators = market.calculate_indicators(sample_ohlcv_data.head(0))

        assert indicators.rsi == 50.0
        assert indicators.sma20 == 0.0

    def test_context_includes_price(self, market, sample_ohlcv_data):
        context = market.calculate_indicators(sample_ohlcv_data, '1h').to_context(12.0)

        assert context['price'] == 12.0
        assert 'macd_histogram' not in context


@pytest.mark.unit
class TestVerification:
    """Test CoinMarketCap verification"""

    def test_no_key_uses_feed_price(self, market):
        assert market.get_verified_price('APT/USDC').price == BASE_PRICES['APT/USDC']

    def test_prefers_most_recent_quote(self, paper_settings):
        """The CMC quote is newer than the seeded feed price and wins"""
        settings = paper_settings.model_copy(update={'coinmarketcap_api_key': 'cmc-key'})
        service = MarketDataService(settings, session=cmc_session(12.75), mock_mode=True)
        service.handle_ticker('APT/USDC', {'last': 12.5, 'timestamp': 1_000})

        verified = service.get_verified_price('APT/USDC')

        assert verified.price == 12.75
        assert verified.high_24h == pytest.approx(12.75 * 1.01)
        assert verified.low_24h == pytest.approx(12.75 * 0.99)
        headers = service.session.get.call_args.kwargs['headers']
        assert headers['X-CMC_PRO_API_KEY'] == 'cmc-key'

    def test_cmc_quote_is_cached(self, paper_settings):
        settings = paper_settings.model_copy(update={'coinmarketcap_api_key': 'cmc-key'})
        service = MarketDataService(settings, session=cmc_session(12.75), mock_mode=True)

        service.get_coinmarketcap_price('APT/USDC')
        service.get_coinmarketcap_price('APT/USDC')

        assert service.session.get.call_count == 1

    def test_cmc_error_returns_none(self, paper_settings):
        settings = paper_settings.model_copy(update={'coinmarketcap_api_key': 'cmc-key'})
        service = MarketDataService(settings, session=cmc_session(12.75, status=500), mock_mode=True)

        assert service.get_coinmarketcap_price('APT/USDC') is None

    def test_comprehensive_data(self, market):
        data = market.get_comprehensive_market_data('APT/USDC', '5m')

        assert data['current'].symbol == 'APT/USDC'
        assert data['verified'] is not None
        assert 0 <= data['indicators'].rsi <= 100
        assert data['sources'] == ['Simulated Feed']


@pytest.mark.unit
class TestHealth:

    def test_critical_without_sources(self, market):
        assert market.health_check() == {
            'websocket': False, 'coinmarketcap': False, 'ccxt': False, 'overall': 'critical',
        }

    def test_degraded_with_feed(self, market):
        market.connect_price_feed('APT/USDC')

        health = market.health_check()

        assert health['websocket'] is True
        assert health['overall'] == 'degraded'

    def test_resilience_stats(self, market):
        market.get_historical_data('APT/USDC', '5m', 10)
        market.get_historical_data('APT/USDC', '5m', 10)

        stats = market.resilience_stats()

        assert stats['ccxt']['breaker']['name'] == 'CCXT_API'
        assert stats['ccxt']['history_cache']['hits'] == 1
        assert stats['ccxt']['history_cache']['misses'] == 1
        assert stats['coinmarketcap']['limiter']['limit'] == 30


@pytest.mark.unit
class TestRateLimit:

    def test_exhausted_limiter_reports_retry_after(self, paper_settings):
        exchange = Mock()
        service = MarketDataService(paper_settings, exchange=exchange, mock_mode=False)
        service.ccxt_limiter.wait_if_needed = Mock(return_value=False)
        service.ccxt_limiter.get_wait_time = Mock(return_value=12.5)

        with pytest.raises(ExternalAPIError) as exc_info:
            service._fetch_ohlcv('APT/USDC', '5m', 10)

        assert exc_info.value.context == {'symbol': 'APT/USDC', 'retry_after': 12.5}
        exchange.fetch_ohlcv.assert_not_called()
