"""Leaderboard rows, aggregate stats and query filters."""

from typing import Literal, Optional

from pydantic import BaseModel, Field


class BotPerformance(BaseModel):
    bot_id: str
    owner: str = ''
    name: str = ''
    net_performance: float = Field(default=0, description="Profit minus loss, micro USDC")
    total_trades: int = 0
    win_rate: float = Field(default=0, description="Percent 0-100")
    profit: float = 0
    loss: float = 0
    created_at: int = 0
    last_trade_at: int = 0
    daily_trades: int = 0
    strategy: str = 'Unknown Strategy'
    roi_percentage: float = 0
    ranking: int = 0


class LeaderboardStats(BaseModel):
    total_bots: int = 0
    total_volume: int = 0
    active_bots: int = 0
    top_performer: Optional[BotPerformance] = None
    worst_performer: Optional[BotPerformance] = None
    average_roi: float = 0
    total_trades_today: int = 0


class LeaderboardFilters(BaseModel):
    timeframe: Literal['all_time', '24h', '7d', '30d'] = 'all_time'
    sort_by: Literal['net_performance', 'roi_percentage', 'win_rate', 'total_trades'] = 'net_performance'
    min_trades: int = Field(default=0, ge=0)
    only_active: bool = False

    def cache_key(self) -> str:
        return f"leaderboard:{self.timeframe}:{self.sort_by}:{self.min_trades}:{self.only_active}"
