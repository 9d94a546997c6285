import time
from typing import List, Optional, Union

from deeptrade.models import (
    BotPerformance,
    BotPerformanceData,
    LeaderboardFilters,
    LeaderboardStats,
    RegistryStats,
)
from deeptrade.roles.job_contract import ContractService
from deeptrade.utils import SimpleCache
from deeptrade.utils.formatters import MICRO
from deeptrade.utils.logger import get_logger

DAY_SECS = 24 * 60 * 60
TIMEFRAME_SECS = {'24h': DAY_SECS, '7d': 7 * DAY_SECS, '30d': 30 * DAY_SECS}
REFRESH_SECS = 30.0
DEFAULT_BALANCE_MICRO = MICRO  # 1 USDC when the bot reports no balance


def calculate_roi(profit: float, loss: float, balance_micro: float) -> float:
    balance = balance_micro / MICRO
    return (profit - loss) / balance * 100 if balance > 0 else 0.0


class LeaderboardService:
    """
    THE SCOREKEEPER (Leaderboard)
    Role: Ranks every on-chain bot by performance. Data comes only from
    contract view calls; filtering, sorting and stats happen here.
    Results are cached for 30 seconds per filter set.
    """

    def __init__(self, contract: ContractService, cache_ttl: float = REFRESH_SECS, clock=time.time):
        self.contract = contract
        self.logger = get_logger(__name__, role="Leaderboard")
        self.cache = SimpleCache(default_ttl=cache_ttl, max_size=64)
        self.clock = clock

    def get_leaderboard(self, filters: Union[LeaderboardFilters, dict, None] = None) -> dict:
        """
        Returns:
            {'bots': [BotPerformance], 'stats': LeaderboardStats, 'filters': LeaderboardFilters}
        """
        if not isinstance(filters, LeaderboardFilters):
            filters = LeaderboardFilters(**(filters or {}))
        return self.cache.get_or_set(filters.cache_key(), lambda: self._build(filters))

    def _build(self, filters: LeaderboardFilters) -> dict:
        entries = self._fetch_entries()
        registry = self._fetch_registry_stats()

        bots = [self._enrich(entry) for entry in entries]
        bots = self.apply_filters(bots, filters)
        bots = self.sort_bots(bots, filters.sort_by)
        for rank, bot in enumerate(bots, start=1):
            bot.ranking = rank

        stats = self.calculate_stats(bots, registry)
        self.logger.info("Leaderboard built", bots=len(bots), sort_by=filters.sort_by, timeframe=filters.timeframe)
        return {'bots': bots, 'stats': stats, 'filters': filters}

    def _fetch_entries(self) -> List[BotPerformanceData]:
        response = self.contract.get_leaderboard()
        if not response.success:
            self.logger.error("get_leaderboard failed", error=response.error)
            return []
        return response.data or []

    def _fetch_registry_stats(self) -> RegistryStats:
        response = self.contract.get_registry_stats()
        if not response.success:
            self.logger.error("get_registry_stats failed", error=response.error)
            return RegistryStats()
        return response.data

    def _enrich(self, entry: BotPerformanceData) -> BotPerformance:
        row = BotPerformance(
            bot_id=str(entry.bot_id),
            owner=entry.owner or '',
            name=entry.name or f"Bot {entry.bot_id}",
            net_performance=entry.net_performance,
            total_trades=entry.total_trades,
            win_rate=entry.win_rate,
        )

        details = self.contract.get_bot_details(entry.owner, entry.bot_id)
        if details is None:
            self.logger.warning("Bot details unavailable, using basic data", bot_id=row.bot_id)
            return row

        row.profit = details.performance
        row.loss = details.total_loss
        row.created_at = details.created_at
        row.last_trade_at = details.last_trade_at or 0
        row.daily_trades = details.daily_trades or 0
        row.strategy = details.strategy or 'Unknown Strategy'
        row.roi_percentage = calculate_roi(details.performance, details.total_loss,
                                           details.balance or DEFAULT_BALANCE_MICRO)
        return row

    def apply_filters(self, bots: List[BotPerformance], filters: LeaderboardFilters) -> List[BotPerformance]:
        now = self.clock()

        if filters.min_trades > 0:
            bots = [b for b in bots if b.total_trades >= filters.min_trades]

        if filters.timeframe != 'all_time':
            cutoff = now - TIMEFRAME_SECS[filters.timeframe]
            bots = [b for b in bots if b.last_trade_at >= cutoff]

        if filters.only_active:
            bots = [b for b in bots if b.last_trade_at >= now - DAY_SECS]

        return bots

    @staticmethod
    def sort_bots(bots: List[BotPerformance], sort_by: str) -> List[BotPerformance]:
        return sorted(bots, key=lambda b: getattr(b, sort_by), reverse=True)

    def calculate_stats(self, bots: List[BotPerformance], registry: RegistryStats) -> LeaderboardStats:
        day_ago = self.clock() - DAY_SECS
        recent = [b for b in bots if b.last_trade_at >= day_ago]
        rois = [b.roi_percentage for b in bots if b.roi_percentage != 0]

        return LeaderboardStats(
            total_bots=registry.total_bots,
            total_volume=registry.total_volume,
            active_bots=len(recent),
            top_performer=bots[0] if bots else None,
            worst_performer=bots[-1] if bots else None,
            average_roi=sum(rois) / len(rois) if rois else 0.0,
            total_trades_today=sum(b.daily_trades for b in recent),
        )

    def get_user_bot_rankings(self, address: str) -> List[BotPerformance]:
        """Ranked rows owned by address (case-insensitive); [] on error."""
        try:
            board = self.get_leaderboard()
        except Exception as e:
            self.logger.error("User rankings failed", address=address, error=str(e))
            return []
        address = address.lower()
        return [b for b in board['bots'] if b.owner.lower() == address]

    def refresh(self, filters: Optional[LeaderboardFilters] = None) -> dict:
        """Drop cached results and rebuild (used by the periodic refresh job)."""
        self.cache.clear()
        return self.get_leaderboard(filters)
