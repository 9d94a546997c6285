"""
Unit tests for display formatters (micro USDC amounts, addresses, timestamps)
"""

from datetime import datetime

import pytest

from deeptrade.utils.formatters import (
    format_address,
    format_balance,
    format_performance,
    format_performance_with_sign,
    format_timestamp,
    format_trade_count,
    format_win_rate,
    micro_to_units,
    units_to_micro,
)


@pytest.mark.unit
class TestFormatters:

    def test_balance_six_decimals(self):
        assert format_balance(1_234_567) == '1.234567'

    @pytest.mark.parametrize('micro, plain, signed', [
        (2_500_000, '2.500', '+2.500'),
        (0, '0.000', '+0.000'),
        (-1_250_000, '-1.250', '-1.250'),
    ])
    def test_performance(self, micro, plain, signed):
        assert format_performance(micro) == plain
        assert format_performance_with_sign(micro) == signed

    def test_win_rate(self):
        assert format_win_rate(2, 3) == '66.7%'
        assert format_win_rate(5, 0) == '0.0%'

    def test_trade_count_grouping(self):
        assert format_trade_count('1234567') == '1,234,567'

    def test_address_shortening(self):
        assert format_address('0x1234567890abcdef') == '0x1234...cdef'
        assert format_address('0x1234') == '0x1234'
        assert format_address('') == ''

    def test_timestamp_is_local_time(self):
        expected = datetime.fromtimestamp(1_700_000_000).strftime('%Y-%m-%d %H:%M:%S')

        assert format_timestamp('1700000000') == expected

    def test_micro_conversion(self):
        assert micro_to_units(2_000_000_000) == 2000.0
        assert units_to_micro(10.5) == 10_500_000
