"""Service roles: strategist, market data, contract gateway, leaderboard and trading engine."""
