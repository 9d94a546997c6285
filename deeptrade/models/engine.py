"""
Mutable runtime state owned by AutoTradingEngine.

These are dataclasses rather than pydantic models: the engine updates them
in place on every trade under its own lock.
"""

import time
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from typing import List, Literal, Optional

from .strategy import ParsedStrategy


@dataclass
class BotStats:
    total_trades: int = 0
    winning_trades: int = 0
    total_profit: float = 0.0
    total_loss: float = 0.0

    @property
    def win_rate(self) -> float:
        return self.winning_trades / self.total_trades * 100 if self.total_trades else 0.0


@dataclass
class OpenPosition:
    """Base-asset quantity held by a bot and its average entry price."""
    quantity: float = 0.0
    entry_price: float = 0.0


@dataclass
class BotInstance:
    bot_id: str
    user_id: str
    strategy: ParsedStrategy
    is_active: bool = True
    last_trade_time: float = 0.0
    daily_trade_count: int = 0
    daily_pnl: float = 0.0
    daily_reset_date: date = field(default_factory=lambda: datetime.now(timezone.utc).date())
    performance: BotStats = field(default_factory=BotStats)
    position: OpenPosition = field(default_factory=OpenPosition)
    original_strategy: str = ''

    def to_dict(self) -> dict:
        return {
            'bot_id': self.bot_id,
            'user_id': self.user_id,
            'symbol': self.strategy.symbol,
            'strategy': self.strategy.model_dump(),
            'original_strategy': self.original_strategy,
            'is_active': self.is_active,
            'last_trade_time': self.last_trade_time,
            'daily_trade_count': self.daily_trade_count,
            'daily_pnl': self.daily_pnl,
            'performance': {**asdict(self.performance), 'win_rate': self.performance.win_rate},
            'position': asdict(self.position),
        }


@dataclass
class TradeSignal:
    bot_id: str
    action: Literal['buy', 'sell']
    amount: float
    price: float
    confidence: float
    reason: str
    timestamp: float = field(default_factory=time.time)
    symbol: str = ''
    tx_hash: Optional[str] = None
    is_sim: bool = True
    realized_pnl: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EngineStatus:
    is_running: bool
    active_bots: int
    total_signals: int
    total_trades: int
    uptime: int
    errors: List[str]

    def to_dict(self) -> dict:
        return asdict(self)
