"""
Runtime settings loaded from the environment (.env is read via python-dotenv).

Settings are immutable once built; call Settings.from_env() again (or
get_settings(reload=True)) to pick up changed variables.
"""

import os
from typing import Mapping, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

from deeptrade.utils import ConfigurationError

load_dotenv()

PLACEHOLDER_MODULE_ADDRESS = "0xYOUR_DEPLOYED_CONTRACT_ADDRESS_HERE"
DEFAULT_MODULE_ADDRESS = "0x64b0d0c590ac866988e39442f4bb7dc69f9ee956d9b45ed3128f751f2e430c1a"
USDC_METADATA_ADDRESS = "0xf22bede237a07e121b56d91a491eb7bcdfd1f5907926a9e58338f964a01b17fa"

APTOS_NODE_URLS = {
    'mainnet': 'https://fullnode.mainnet.aptoslabs.com/v1',
    'testnet': 'https://fullnode.testnet.aptoslabs.com/v1',
    'devnet': 'https://fullnode.devnet.aptoslabs.com/v1',
}


def _flag(env: Mapping, key: str, default: bool = False) -> bool:
    value = env.get(key)
    if value is None or value == '':
        return default
    return str(value).strip().lower() == 'true'


def aptos_node_url(network: str) -> str:
    """Fullnode REST URL for a network name; unknown names map to testnet."""
    return APTOS_NODE_URLS.get(network, APTOS_NODE_URLS['testnet'])


class Settings(BaseModel):
    """
    All knobs the engine reads from the environment.

    Example:
        settings = Settings.from_env({'APP_ENV': 'production', 'TRADING_ENABLED': 'true'})
        settings.node_url  # 'https://fullnode.testnet.aptoslabs.com/v1'
    """

    # Environment
    app_env: str = Field(default='development')
    enable_mock_data_flag: bool = Field(default=True, description="ENABLE_MOCK_DATA != 'false'")
    debug_logging: bool = False

    # AI
    ai_provider: str = 'gemini'
    ai_api_key: str = ''
    ai_model: str = 'gemini-2.0-flash'

    # Market data
    exchange_id: str = 'binance'
    coinmarketcap_api_key: str = ''
    coingecko_api_key: str = ''

    # Trading
    trading_enabled: bool = False
    max_position_size: float = 1000.0
    default_risk_percent: float = 2.0
    slippage_limit: float = 0.02
    confirmation_timeout_ms: int = 30000
    default_bot_balance: float = 1000.0

    # Aptos
    network: str = 'testnet'
    module_address: str = DEFAULT_MODULE_ADDRESS
    aptos_api_key: str = ''
    max_gas_amount: int = 10000
    gas_unit_price: int = 100

    # API server
    api_port: int = 8080

    @field_validator('network')
    @classmethod
    def normalize_network(cls, v):
        return (v or 'testnet').strip().lower()

    @property
    def node_url(self) -> str:
        return aptos_node_url(self.network)

    @property
    def is_production(self) -> bool:
        return self.app_env == 'production'

    @property
    def is_development(self) -> bool:
        return self.app_env == 'development'

    @property
    def enable_mock_data(self) -> bool:
        return self.is_development and self.enable_mock_data_flag

    @property
    def enable_real_trading(self) -> bool:
        return self.is_production and self.trading_enabled

    @classmethod
    def from_env(cls, env: Optional[Mapping] = None) -> 'Settings':
        env = os.environ if env is None else env
        try:
            return cls(
                app_env=env.get('APP_ENV', 'development').strip().lower(),
                enable_mock_data_flag=env.get('ENABLE_MOCK_DATA', '').strip().lower() != 'false',
                debug_logging=_flag(env, 'ENABLE_DEBUG_LOGGING'),
                ai_provider=env.get('AI_PROVIDER', 'gemini'),
                ai_api_key=env.get('GEMINI_API_KEY', ''),
                ai_model=env.get('AI_MODEL', 'gemini-2.0-flash'),
                exchange_id=env.get('EXCHANGE_ID', 'binance'),
                coinmarketcap_api_key=env.get('COINMARKETCAP_API_KEY', ''),
                coingecko_api_key=env.get('COINGECKO_API_KEY', ''),
                trading_enabled=_flag(env, 'TRADING_ENABLED'),
                max_position_size=float(env.get('MAX_POSITION_SIZE', '1000')),
                default_risk_percent=float(env.get('DEFAULT_RISK_PERCENT', '2')),
                slippage_limit=float(env.get('SLIPPAGE_LIMIT', '0.02')),
                confirmation_timeout_ms=int(env.get('CONFIRMATION_TIMEOUT', '30000')),
                default_bot_balance=float(env.get('DEFAULT_BOT_BALANCE', '1000')),
                network=env.get('APTOS_NETWORK', 'testnet'),
                module_address=env.get('MODULE_ADDRESS', DEFAULT_MODULE_ADDRESS),
                aptos_api_key=env.get('APTOS_API_KEY', ''),
                max_gas_amount=int(env.get('MAX_GAS_AMOUNT', '10000')),
                gas_unit_price=int(env.get('GAS_UNIT_PRICE', '100')),
                api_port=int(env.get('PORT', '8080')),
            )
        except ValueError as e:
            raise ConfigurationError("Invalid numeric environment value", context={'error': str(e)})


def validate_settings(settings: Settings) -> dict:
    """Check the settings a live deployment needs. Returns {'valid', 'errors'}."""
    errors = []

    if not settings.ai_api_key:
        errors.append('AI API key is required for production')

    if not settings.module_address:
        errors.append('Aptos module address is required')

    if settings.trading_enabled and settings.max_position_size <= 0:
        errors.append('Max position size must be greater than 0 when trading is enabled')

    if settings.slippage_limit <= 0 or settings.slippage_limit > 0.1:
        errors.append('Slippage limit must be between 0 and 10%')

    return {'valid': not errors, 'errors': errors}


def get_environment_settings(settings: Optional[Settings] = None) -> dict:
    settings = settings or get_settings()
    return {
        'is_production': settings.is_production,
        'is_development': settings.is_development,
        'enable_mock_data': settings.enable_mock_data,
        'enable_real_trading': settings.enable_real_trading,
        'enable_debug_logging': settings.is_development or settings.debug_logging,
    }


def validate_module_address(address: str):
    """Raise ConfigurationError unless address looks like a deployed module."""
    if not address or address == PLACEHOLDER_MODULE_ADDRESS:
        raise ConfigurationError(
            "MODULE_ADDRESS is not configured. Deploy the trading_bot module and set MODULE_ADDRESS.",
            context={'address': address or ''},
        )


_settings: Optional[Settings] = None


def get_settings(reload: bool = False) -> Settings:
    global _settings
    if _settings is None or reload:
        _settings = Settings.from_env()
    return _settings
