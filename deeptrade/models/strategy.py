"""
Parsed trading strategy models.

A ParsedStrategy is the fixed JSON shape the strategy parser produces from
free text, whether it came from the LLM or the keyword parser.
"""

from typing import List, Literal, Optional

import ccxt
from pydantic import BaseModel, Field, field_validator

Operator = Literal['<', '<=', '>', '>=', '==', '!=']

KNOWN_INDICATORS = (
    'price', 'rsi', 'macd', 'macd_signal', 'sma20', 'sma50', 'ema12', 'ema26',
    'bb_upper', 'bb_lower', 'volume', 'price_change_1h', 'price_change_24h',
)


def validate_timeframe(timeframe: str) -> str:
    """
    Return timeframe unchanged if ccxt understands it ('1m', '5m', '1h', '1d', ...).

    Raises:
        ValueError: unparseable or non-positive timeframe
    """
    try:
        seconds = ccxt.Exchange.parse_timeframe(timeframe)
    except (ValueError, TypeError, IndexError, ccxt.NotSupported):
        raise ValueError(f"Unsupported timeframe '{timeframe}', expected a ccxt timeframe such as 5m, 1h or 1d")
    if seconds <= 0:
        raise ValueError(f"Unsupported timeframe '{timeframe}', expected a positive duration")
    return timeframe


class TradingCondition(BaseModel):
    """
    One indicator comparison, e.g. rsi < 30.

    side restricts the condition to the buy or sell rule set; None means it
    applies to both.
    """

    indicator: str = Field(min_length=1)
    operator: Operator
    value: float
    timeframe: Optional[str] = None
    side: Optional[Literal['buy', 'sell']] = None

    @field_validator('indicator')
    @classmethod
    def normalize_indicator(cls, v):
        return v.strip().lower()

    @field_validator('timeframe')
    @classmethod
    def check_timeframe(cls, v):
        return v if v is None else validate_timeframe(v)


class TradingAction(BaseModel):
    type: Literal['buy', 'sell']
    amount_percent: float = Field(gt=0, le=100, description="Share of bot balance to trade")
    stop_loss: Optional[float] = Field(default=None, ge=0)
    take_profit: Optional[float] = Field(default=None, ge=0)


class RiskManagement(BaseModel):
    max_position_size: float = 1000
    max_daily_trades: int = 20
    stop_loss_percent: float = 5
    max_daily_loss: float = 500


class ParsedStrategy(BaseModel):
    """
    Example:
        ParsedStrategy(
            symbol="APT/USDC",
            timeframe="5m",
            conditions=[TradingCondition(indicator="rsi", operator="<", value=30, side="buy")],
            buy_actions=[TradingAction(type="buy", amount_percent=10, stop_loss=5, take_profit=15)],
            sell_actions=[],
            risk_management=RiskManagement(),
        )
    """

    symbol: str = 'APT/USDC'
    timeframe: str = '5m'
    conditions: List[TradingCondition] = Field(default_factory=list)
    buy_actions: List[TradingAction] = Field(default_factory=list)
    sell_actions: List[TradingAction] = Field(default_factory=list)
    risk_management: RiskManagement = Field(default_factory=RiskManagement)

    @field_validator('symbol')
    @classmethod
    def normalize_symbol(cls, v):
        v = v.strip().upper()
        if '/' not in v:
            raise ValueError('Symbol must be a pair like APT/USDC')
        return v

    @field_validator('timeframe')
    @classmethod
    def check_timeframe(cls, v):
        return validate_timeframe(v)

    def conditions_for(self, side: str) -> List[TradingCondition]:
        return [c for c in self.conditions if c.side in (None, side)]

    class Config:
        json_schema_extra = {
            "example": {
                "symbol": "APT/USDC",
                "timeframe": "5m",
                "conditions": [{"indicator": "rsi", "operator": "<", "value": 30, "side": "buy"}],
                "buy_actions": [{"type": "buy", "amount_percent": 10, "stop_loss": 5, "take_profit": 15}],
                "sell_actions": [],
                "risk_management": {
                    "max_position_size": 1000,
                    "max_daily_trades": 20,
                    "stop_loss_percent": 5,
                    "max_daily_loss": 500,
                },
            }
        }
