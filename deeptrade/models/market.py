"""Market data snapshots returned by MarketDataService."""

from typing import Dict, Optional

from pydantic import BaseModel, Field


class PriceData(BaseModel):
    symbol: str
    price: float = Field(gt=0)
    change_24h: float = 0.0
    volume_24h: float = 0.0
    high_24h: float = 0.0
    low_24h: float = 0.0
    timestamp: float = Field(description="Unix seconds")


class TechnicalIndicators(BaseModel):
    """Latest-candle indicator values for one symbol/timeframe."""

    rsi: float = 50.0
    macd: float = 0.0
    macd_signal: float = 0.0
    macd_histogram: float = 0.0
    sma20: float = 0.0
    sma50: float = 0.0
    ema12: float = 0.0
    ema26: float = 0.0
    bb_upper: float = 0.0
    bb_middle: float = 0.0
    bb_lower: float = 0.0
    volume: float = 0.0
    price_change_1h: float = 0.0
    price_change_24h: float = 0.0

    def to_context(self, price: Optional[float]) -> Dict[str, float]:
        """Flat indicator map that strategy conditions are evaluated against."""
        context = {
            'rsi': self.rsi,
            'macd': self.macd,
            'macd_signal': self.macd_signal,
            'sma20': self.sma20,
            'sma50': self.sma50,
            'ema12': self.ema12,
            'ema26': self.ema26,
            'bb_upper': self.bb_upper,
            'bb_lower': self.bb_lower,
            'volume': self.volume,
            'price_change_1h': self.price_change_1h,
            'price_change_24h': self.price_change_24h,
        }
        if price is not None:
            context['price'] = price
        return context
