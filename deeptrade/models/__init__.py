"""
Data models.

Pydantic models validate anything crossing a boundary (LLM output, contract
view results, API input); dataclasses hold the engine's mutable state.
"""

from .strategy import TradingCondition, TradingAction, RiskManagement, ParsedStrategy, validate_timeframe
from .market import PriceData, TechnicalIndicators
from .engine import BotInstance, BotStats, OpenPosition, TradeSignal, EngineStatus
from .contract import (
    BotStatus,
    TradeType,
    SubscriptionTier,
    ContractFunction,
    TradingBotData,
    BotPerformanceData,
    RegistryStats,
    CreateBotParams,
    UserSubscription,
    SubscriptionPrices,
    ContractResponse,
)
from .leaderboard import BotPerformance, LeaderboardStats, LeaderboardFilters

__all__ = [
    'TradingCondition',
    'TradingAction',
    'RiskManagement',
    'ParsedStrategy',
    'validate_timeframe',
    'PriceData',
    'TechnicalIndicators',
    'BotInstance',
    'BotStats',
    'OpenPosition',
    'TradeSignal',
    'EngineStatus',
    'BotStatus',
    'TradeType',
    'SubscriptionTier',
    'ContractFunction',
    'TradingBotData',
    'BotPerformanceData',
    'RegistryStats',
    'CreateBotParams',
    'UserSubscription',
    'SubscriptionPrices',
    'ContractResponse',
    'BotPerformance',
    'LeaderboardStats',
    'LeaderboardFilters',
]
