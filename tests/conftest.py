"""
Pytest configuration and shared fixtures for DeepTrade tests.

This module provides:
- Mock Supabase client (chainable query builder)
- Settings for paper/development and live/production runs
- A deterministic in-memory market data stand-in
- Mock contract service and sample strategies
- Shared fixtures for all tests
"""

import pytest
from unittest.mock import Mock
import pandas as pd

from deeptrade.config import DEFAULT_MODULE_ADDRESS, Settings
from deeptrade.database import clear_config_cache
from deeptrade.models import (
    ContractResponse,
    ParsedStrategy,
    PriceData,
    RiskManagement,
    TechnicalIndicators,
    TradingAction,
    TradingCondition,
)
from deeptrade.roles.job_contract import ContractService

NOW = 1_700_000_000.0  # 2023-11-14 22:13:20 UTC


# ===========================
# Mock Database Client
# ===========================

@pytest.fixture
def mock_db():
    """Mock Supabase database client"""
    db = Mock()

    # Mock table() method to return a chainable query builder
    table_mock = Mock()
    table_mock.select = Mock(return_value=table_mock)
    table_mock.insert = Mock(return_value=table_mock)
    table_mock.upsert = Mock(return_value=table_mock)
    table_mock.update = Mock(return_value=table_mock)
    table_mock.delete = Mock(return_value=table_mock)
    table_mock.eq = Mock(return_value=table_mock)
    table_mock.order = Mock(return_value=table_mock)
    table_mock.limit = Mock(return_value=table_mock)
    table_mock.execute = Mock(return_value=Mock(data=[]))

    db.table = Mock(return_value=table_mock)

    return db


@pytest.fixture
def db_with_bot_status(mock_db):
    """Factory: mock database whose bot_config holds the given BOT_STATUS"""
    def _create(status):
        mock_db.table.return_value.execute = Mock(return_value=Mock(data=[{'value': f'"{status}"'}]))
        return mock_db
    return _create


@pytest.fixture(autouse=True)
def _fresh_config_cache():
    """bot_config lookups are cached module-wide; isolate each test"""
    clear_config_cache()
    yield
    clear_config_cache()


# ===========================
# Settings
# ===========================

@pytest.fixture
def paper_settings():
    """Development settings: simulated data, paper trading, keyword parser"""
    return Settings.from_env({})


@pytest.fixture
def live_settings():
    """Production settings with live trading enabled"""
    return Settings.from_env({
        'APP_ENV': 'production',
        'TRADING_ENABLED': 'true',
        'GEMINI_API_KEY': 'test-key',
        'MAX_POSITION_SIZE': '500',
    })


# ===========================
# Market Data
# ===========================

class FakeMarketData:
    """In-memory MarketDataService stand-in with a fixed price and indicators"""

    def __init__(self, price=10.0, indicators=None, clock=lambda: NOW):
        self.price = price
        self.indicators = indicators or TechnicalIndicators()
        self.clock = clock
        self.connected = []
        self.disconnected = False

    def _price_data(self, symbol):
        if self.price is None:
            return None
        return PriceData(symbol=symbol, price=self.price, timestamp=self.clock())

    def connect_price_feed(self, symbol):
        self.connected.append(symbol)

    def disconnect(self, symbol=None):
        self.disconnected = True

    def get_current_data(self, symbol):
        return self._price_data(symbol)

    def get_verified_price(self, symbol):
        return self._price_data(symbol)

    def get_comprehensive_market_data(self, symbol, timeframe='5m'):
        return {
            'current': self._price_data(symbol),
            'verified': self._price_data(symbol),
            'indicators': self.indicators,
            'sources': ['Simulated Feed'],
        }

    def health_check(self):
        return {'websocket': bool(self.connected), 'coinmarketcap': False, 'ccxt': False,
                'overall': 'degraded' if self.connected else 'critical'}

    def resilience_stats(self):
        return {'ccxt': {'breaker': {'name': 'CCXT_API', 'state': 'closed'}}}


@pytest.fixture
def market_factory():
    """Factory: FakeMarketData(price=..., indicators=...)"""
    return FakeMarketData


@pytest.fixture
def fake_market():
    """Market data at $10 with neutral indicators"""
    return FakeMarketData()


@pytest.fixture
def sample_ohlcv_data():
    """100 steadily rising hourly candles"""
    dates = pd.date_range(start='2024-01-01', periods=100, freq='1h')
    data = {
        'timestamp': dates,
        'open': [10.0 + i * 0.1 for i in range(100)],
        'high': [10.2 + i * 0.1 for i in range(100)],
        'low': [9.9 + i * 0.1 for i in range(100)],
        'close': [10.1 + i * 0.1 for i in range(100)],
        'volume': [1000 + i for i in range(100)],
    }
    return pd.DataFrame(data)


# ===========================
# Contract
# ===========================

@pytest.fixture
def mock_contract():
    """ContractService mock; balance is 2000 USDC, trades succeed"""
    contract = Mock(spec=ContractService)
    contract.module_address = DEFAULT_MODULE_ADDRESS
    contract.get_bot_usdc_balance.return_value = ContractResponse.ok(2_000_000_000)
    contract.execute_trade.return_value = ContractResponse.ok({'hash': '0xtradehash'})
    contract.is_reachable.return_value = True
    contract.resilience_stats.return_value = {'aptos_node': {'name': 'APTOS_NODE', 'state': 'closed'}}
    return contract


# ===========================
# Strategies
# ===========================

@pytest.fixture
def rsi_strategy():
    """Buy when RSI < 30, sell when RSI > 70"""
    return ParsedStrategy(
        symbol='APT/USDC',
        timeframe='5m',
        conditions=[
            TradingCondition(indicator='rsi', operator='<', value=30, side='buy'),
            TradingCondition(indicator='rsi', operator='>', value=70, side='sell'),
        ],
        buy_actions=[TradingAction(type='buy', amount_percent=10, stop_loss=5, take_profit=15)],
        sell_actions=[TradingAction(type='sell', amount_percent=100)],
        risk_management=RiskManagement(),
    )


# ===========================
# Pytest Markers
# ===========================

def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Tests that take a long time")
