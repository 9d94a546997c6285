"""
Records exchanged with the on-chain trading_bot Move module.

Amounts are micro USDC (6 decimals) unless noted; timestamps are Unix seconds.
"""

from enum import Enum, IntEnum
from typing import Any, Optional

from pydantic import BaseModel, Field


class BotStatus(str, Enum):
    ACTIVE = 'active'
    INACTIVE = 'inactive'
    PAUSED = 'paused'


class TradeType(IntEnum):
    BUY = 0
    SELL = 1


class SubscriptionTier(IntEnum):
    FREE = 0
    BASIC = 1
    PREMIUM = 2


class ContractFunction(str, Enum):
    CREATE_BOT = 'create_bot'
    EXECUTE_TRADE = 'execute_trade'
    GET_BOT = 'get_bot'
    GET_USER_BOTS = 'get_user_bots'
    GET_LEADERBOARD = 'get_leaderboard'
    GET_REGISTRY_STATS = 'get_registry_stats'
    HAS_BOT = 'has_bot'
    PURCHASE_SUBSCRIPTION = 'purchase_subscription'
    GET_USER_SUBSCRIPTION = 'get_user_subscription'
    GET_CURRENT_SUBSCRIPTION_TIER = 'get_current_subscription_tier'
    GET_USER_MAX_BOTS = 'get_user_max_bots'
    GET_SUBSCRIPTION_PRICES = 'get_subscription_prices'
    GET_USER_BOT_COUNT = 'get_user_bot_count'
    GET_BOT_USDC_BALANCE = 'get_bot_usdc_balance'


class TradingBotData(BaseModel):
    owner: str
    bot_id: int
    name: str
    strategy: str
    balance: int = 0
    performance: int = 0
    total_loss: int = 0
    active: bool = False
    total_trades: int = 0
    created_at: int = 0
    last_trade_at: Optional[int] = None
    daily_trades: Optional[int] = None


class BotPerformanceData(BaseModel):
    bot_id: int
    owner: str
    name: str
    net_performance: int = 0
    total_trades: int = 0
    win_rate: int = 0


class RegistryStats(BaseModel):
    total_bots: int = 0
    total_volume: int = 0


class CreateBotParams(BaseModel):
    name: str = Field(min_length=1, max_length=64)
    strategy: str = Field(min_length=1)
    initial_balance: int = Field(ge=0)
    max_position_size: int = Field(gt=0)
    stop_loss_percent: int = Field(ge=0, le=50)
    max_trades_per_day: int = Field(gt=0)
    max_daily_loss: int = Field(ge=0)


class UserSubscription(BaseModel):
    tier: SubscriptionTier = SubscriptionTier.FREE
    expires_at: int = 0
    auto_renew: bool = False


class SubscriptionPrices(BaseModel):
    basic_price: int = Field(description="Octas (APT, 8 decimals)")
    premium_price: int = Field(description="Octas (APT, 8 decimals)")


class ContractResponse(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, data=None) -> 'ContractResponse':
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str) -> 'ContractResponse':
        return cls(success=False, error=error)
