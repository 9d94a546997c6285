"""
Unit tests for settings and Supabase helpers

Tests cover:
- Settings.from_env defaults, flags and derived properties
- Production validation and module address checks
- bot_config lookups (quote stripping, caching, fallbacks)
- Emergency stop detection
- Trade persistence
"""

import pytest
from unittest.mock import Mock

from deeptrade.config import (
    DEFAULT_MODULE_ADDRESS,
    PLACEHOLDER_MODULE_ADDRESS,
    Settings,
    get_environment_settings,
    validate_module_address,
    validate_settings,
)
from deeptrade.database import get_config, get_config_safe, is_bot_stopped, record_trade
from deeptrade.utils import ConfigurationError


@pytest.mark.unit
class TestSettings:
    """Test environment parsing"""

    def test_defaults(self, paper_settings):
        assert paper_settings.app_env == 'development'
        assert paper_settings.module_address == DEFAULT_MODULE_ADDRESS
        assert paper_settings.node_url == 'https://fullnode.testnet.aptoslabs.com/v1'
        assert paper_settings.max_position_size == 1000.0
        assert paper_settings.slippage_limit == 0.02
        assert paper_settings.enable_mock_data is True
        assert paper_settings.enable_real_trading is False

    def test_production_flags(self, live_settings):
        assert live_settings.is_production is True
        assert live_settings.enable_mock_data is False
        assert live_settings.enable_real_trading is True
        assert live_settings.max_position_size == 500.0

    def test_trading_flag_needs_production(self):
        settings = Settings.from_env({'TRADING_ENABLED': 'true'})

        assert settings.trading_enabled is True
        assert settings.enable_real_trading is False

    def test_mock_data_can_be_disabled(self):
        assert Settings.from_env({'ENABLE_MOCK_DATA': 'false'}).enable_mock_data is False

    def test_network_is_normalized(self):
        settings = Settings.from_env({'APTOS_NETWORK': ' MainNet '})

        assert settings.network == 'mainnet'
        assert settings.node_url == 'https://fullnode.mainnet.aptoslabs.com/v1'

    def test_unknown_network_uses_testnet_node(self):
        assert Settings.from_env({'APTOS_NETWORK': 'localnet'}).node_url.startswith('https://fullnode.testnet')

    def test_invalid_number_raises(self):
        with pytest.raises(ConfigurationError):
            Settings.from_env({'MAX_POSITION_SIZE': 'lots'})

    def test_environment_settings(self, paper_settings):
        assert get_environment_settings(paper_settings) == {
            'is_production': False,
            'is_development': True,
            'enable_mock_data': True,
            'enable_real_trading': False,
            'enable_debug_logging': True,
        }


@pytest.mark.unit
class TestValidation:

    def test_live_settings_are_valid(self, live_settings):
        assert validate_settings(live_settings) == {'valid': True, 'errors': []}

    def test_collects_errors(self):
        settings = Settings.from_env({
            'TRADING_ENABLED': 'true', 'MAX_POSITION_SIZE': '0', 'SLIPPAGE_LIMIT': '0.5', 'MODULE_ADDRESS': '',
        })

        result = validate_settings(settings)

        assert result['valid'] is False
        assert result['errors'] == [
            'AI API key is required for production',
            'Aptos module address is required',
            'Max position size must be greater than 0 when trading is enabled',
            'Slippage limit must be between 0 and 10%',
        ]

    @pytest.mark.parametrize('address', ['', PLACEHOLDER_MODULE_ADDRESS])
    def test_placeholder_module_address(self, address):
        with pytest.raises(ConfigurationError, match='MODULE_ADDRESS'):
            validate_module_address(address)

    def test_deployed_module_address(self):
        validate_module_address(DEFAULT_MODULE_ADDRESS)


@pytest.mark.unit
class TestDatabaseHelpers:
    """Test bot_config reads and bot_trades writes"""

    def test_get_config_strips_json_quotes(self, db_with_bot_status):
        db = db_with_bot_status('STOPPED')

        assert get_config('BOT_STATUS', db=db) == 'STOPPED'
        db.table.assert_called_with('bot_config')

    def test_get_config_is_cached(self, db_with_bot_status):
        db = db_with_bot_status('ACTIVE')

        get_config('BOT_STATUS', db=db)
        get_config('BOT_STATUS', db=db)

        assert db.table.return_value.execute.call_count == 1

    def test_missing_key_returns_default(self, mock_db):
        assert get_config('MISSING', default='x', db=mock_db) == 'x'

    def test_get_config_safe_falls_back(self, mock_db):
        mock_db.table.return_value.execute.side_effect = RuntimeError('offline')

        assert get_config_safe('BOT_STATUS', default='ACTIVE', db=mock_db) == 'ACTIVE'

    @pytest.mark.parametrize('status, stopped', [
        ('STOPPED', True),
        ('stopped', True),
        ('ACTIVE', False),
    ])
    def test_is_bot_stopped(self, db_with_bot_status, status, stopped):
        assert is_bot_stopped(db_with_bot_status(status)) is stopped

    def test_record_trade(self, mock_db):
        trade = {'bot_id': 'bot-1', 'side': 'BUY', 'amount': 100.0}

        assert record_trade(mock_db, trade) is True
        mock_db.table.assert_called_with('bot_trades')
        mock_db.table.return_value.insert.assert_called_once_with(trade)

    def test_record_trade_without_db(self):
        assert record_trade(None, {'bot_id': 'bot-1'}) is False

    def test_record_trade_failure(self):
        db = Mock()
        db.table.side_effect = RuntimeError('offline')

        assert record_trade(db, {'bot_id': 'bot-1'}) is False
