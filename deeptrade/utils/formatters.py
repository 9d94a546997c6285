"""Display formatting for on-chain values (USDC amounts are stored in micro units)."""

from datetime import datetime

MICRO = 1_000_000


def format_balance(micro_amount) -> str:
    return f"{int(micro_amount) / MICRO:.6f}"


def format_performance(micro_amount) -> str:
    return f"{int(micro_amount) / MICRO:.3f}"


def format_performance_with_sign(micro_amount) -> str:
    value = int(micro_amount) / MICRO
    sign = "+" if value >= 0 else ""
    return f"{sign}{value:.3f}"


def format_timestamp(seconds) -> str:
    """Unix seconds to a local 'YYYY-MM-DD HH:MM:SS' string."""
    return datetime.fromtimestamp(int(seconds)).strftime("%Y-%m-%d %H:%M:%S")


def format_win_rate(winning_trades, total_trades) -> str:
    if int(total_trades) == 0:
        return "0.0%"
    return f"{int(winning_trades) / int(total_trades) * 100:.1f}%"


def format_trade_count(count) -> str:
    return f"{int(count):,}"


def format_address(address: str) -> str:
    """0x1234567890abcdef -> 0x1234...cdef"""
    if not address or len(address) <= 10:
        return address or ""
    return f"{address[:6]}...{address[-4:]}"


def micro_to_units(micro_amount) -> float:
    return int(micro_amount) / MICRO


def units_to_micro(amount: float) -> int:
    """Floor to whole micro units, the representation the Move module expects."""
    return int(amount * MICRO)
