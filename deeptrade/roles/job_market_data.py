import asyncio
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

import ccxt  # Standard CCXT (REST: OHLCV)
import ccxt.pro as ccxtpro  # Streaming tickers
import numpy as np
import pandas as pd
import requests
try:
    import pandas_ta as ta  # noqa: F401  registers the DataFrame.ta accessor
except ImportError:
    import pandas_ta_classic as ta  # noqa: F401  community fork

from deeptrade.config import Settings, get_settings
from deeptrade.models import PriceData, TechnicalIndicators
from deeptrade.utils import CircuitBreaker, ExternalAPIError, RateLimiter, SimpleCache
from deeptrade.utils.logger import get_logger, log_execution_time

PriceCallback = Callable[[PriceData], None]

BASE_PRICES = {'APT/USDC': 12.50, 'BTC/USDC': 43000.0, 'ETH/USDC': 2500.0, 'SOL/USDC': 100.0}
CMC_SYMBOLS = {'APT/USDC': 'APT', 'BTC/USDC': 'BTC', 'ETH/USDC': 'ETH', 'SOL/USDC': 'SOL'}
CMC_QUOTES_URL = "https://pro-api.coinmarketcap.com/v1/cryptocurrency/quotes/latest"

FEED_INTERVAL_SECS = 5.0
RECONNECT_DELAY_SECS = 5.0
MOCK_TICK_VOLATILITY = 0.02
PRICE_FLOOR = 0.01
DISCREPANCY_THRESHOLD = 0.01
DEFAULT_HISTORY_LIMIT = 300

logger = get_logger(__name__, role="MarketData")


def to_exchange_symbol(symbol: str) -> str:
    """APT/USDC -> APT/USDT (Binance lists USDT pairs)."""
    return symbol.upper().replace('USDC', 'USDT')


def periods_for(timeframe: str, seconds: int) -> int:
    """Number of candles of `timeframe` spanning `seconds`."""
    return max(1, int(seconds // ccxt.Exchange.parse_timeframe(timeframe)))


def _last(series, default: float) -> float:
    if series is None:
        return default
    series = series.dropna()
    if series.empty:
        return default
    return float(series.iloc[-1])


def _column(frame: Optional[pd.DataFrame], prefix: str) -> Optional[pd.Series]:
    """Pick a pandas-ta output column by prefix (suffixes differ between releases)."""
    if frame is None:
        return None
    for col in frame.columns:
        if col.startswith(prefix):
            return frame[col]
    return None


@dataclass
class _Feed:
    stop: threading.Event = field(default_factory=threading.Event)
    thread: Optional[threading.Thread] = None
    kind: str = 'mock'


class MarketDataService:
    """
    THE SPY (Market Data)
    Role: Keeps a live price per symbol (streaming ticker or simulated walk),
    fetches OHLCV history, computes technical indicators and cross-checks
    prices against CoinMarketCap.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        exchange=None,
        session: Optional[requests.Session] = None,
        mock_mode: Optional[bool] = None,
        seed: Optional[int] = None,
    ):
        self.settings = settings or get_settings()
        self.mock_mode = self.settings.enable_mock_data if mock_mode is None else mock_mode
        self.coinmarketcap_key = self.settings.coinmarketcap_api_key
        self.session = session or requests.Session()
        self.rng = np.random.default_rng(seed)

        self.ccxt_breaker = CircuitBreaker(name="CCXT_API", failure_threshold=5, timeout=60.0)
        self.cmc_breaker = CircuitBreaker(name="COINMARKETCAP", failure_threshold=3, timeout=120.0)
        # Binance allows 1200 weight/minute; CMC basic plan ~30 calls/minute
        self.ccxt_limiter = RateLimiter(max_calls=1000, period=60.0)
        self.cmc_limiter = RateLimiter(max_calls=30, period=60.0)

        self.history_cache = SimpleCache(default_ttl=60.0, max_size=200)
        self.cmc_cache = SimpleCache(default_ttl=30.0, max_size=50)

        self._lock = threading.RLock()
        self._prices: Dict[str, PriceData] = {}
        self._feeds: Dict[str, _Feed] = {}
        self._subscribers: Dict[str, Set[PriceCallback]] = {}

        self.exchange = exchange
        if self.exchange is None and not self.mock_mode:
            self.exchange = self._init_exchange()

        if self.mock_mode:
            self._seed_mock_prices()

    def _init_exchange(self):
        try:
            exchange = getattr(ccxt, self.settings.exchange_id)({
                'enableRateLimit': True,
                'timeout': 10000,
                'options': {'defaultType': 'spot'},
            })
            logger.info("CCXT initialized for live market data", exchange=self.settings.exchange_id)
            return exchange
        except (AttributeError, ccxt.BaseError) as e:
            logger.error("CCXT init failed, using simulated data", error=str(e))
            self.mock_mode = True
            return None

    def _seed_mock_prices(self):
        now = time.time()
        for symbol, base in BASE_PRICES.items():
            self._prices[symbol] = PriceData(
                symbol=symbol,
                price=base,
                change_24h=float((self.rng.random() - 0.5) * 0.2),
                volume_24h=float(self.rng.random() * 1_000_000),
                high_24h=base * 1.05,
                low_24h=base * 0.95,
                timestamp=now,
            )

    # ------------------------------------------------------------------
    # Live price feeds
    # ------------------------------------------------------------------

    def connect_price_feed(self, symbol: str):
        """Start a price feed thread for symbol (no-op if one is running)."""
        with self._lock:
            if symbol in self._feeds:
                return
            feed = _Feed()
            self._feeds[symbol] = feed

        try:
            if self.mock_mode:
                self._start_mock_feed(symbol, feed)
            else:
                self._start_stream_feed(symbol, feed)
            logger.info("Connected price feed", symbol=symbol, kind=feed.kind)
        except Exception as e:
            logger.error("Price feed failed, falling back to simulated feed", symbol=symbol, error=str(e))
            self._start_mock_feed(symbol, feed)

    def _start_mock_feed(self, symbol: str, feed: _Feed):
        with self._lock:
            if symbol not in self._prices:
                base = BASE_PRICES.get(symbol, 100.0)
                self._prices[symbol] = PriceData(
                    symbol=symbol, price=base, high_24h=base * 1.05, low_24h=base * 0.95, timestamp=time.time(),
                )
        feed.kind = 'mock'
        feed.thread = threading.Thread(target=self._run_mock_feed, args=(symbol, feed.stop), daemon=True)
        feed.thread.start()

    def _run_mock_feed(self, symbol: str, stop: threading.Event):
        while not stop.wait(FEED_INTERVAL_SECS):
            self.tick_mock_price(symbol)

    def tick_mock_price(self, symbol: str) -> Optional[PriceData]:
        """Advance the simulated price by one random step (at most +/-1%)."""
        with self._lock:
            current = self._prices.get(symbol)
            if current is None:
                return None
            change = (self.rng.random() - 0.5) * MOCK_TICK_VOLATILITY
            updated = current.model_copy(update={
                'price': max(PRICE_FLOOR, current.price * (1 + change)),
                'timestamp': time.time(),
            })
            self._prices[symbol] = updated
        self._notify(symbol, updated)
        return updated

    def _start_stream_feed(self, symbol: str, feed: _Feed):
        feed.kind = 'stream'
        feed.thread = threading.Thread(
            target=lambda: asyncio.run(self._stream_ticker(symbol, feed.stop)),
            daemon=True,
        )
        feed.thread.start()

    async def _stream_ticker(self, symbol: str, stop: threading.Event):
        ex_symbol = to_exchange_symbol(symbol)
        while not stop.is_set():
            exchange = getattr(ccxtpro, self.settings.exchange_id)({'enableRateLimit': True})
            try:
                while not stop.is_set():
                    ticker = await exchange.watch_ticker(ex_symbol)
                    self.handle_ticker(symbol, ticker)
            except Exception as e:
                logger.warning("Ticker stream dropped", symbol=symbol, error=str(e))
            finally:
                await exchange.close()

            if stop.is_set():
                break
            logger.info("Reconnecting ticker stream", symbol=symbol, delay=RECONNECT_DELAY_SECS)
            await asyncio.sleep(RECONNECT_DELAY_SECS)
            with self._lock:
                if symbol not in self._feeds:
                    break

    def handle_ticker(self, symbol: str, ticker: dict) -> Optional[PriceData]:
        """Convert a CCXT unified ticker into PriceData, cache it and fan it out."""
        price = ticker.get('last') or ticker.get('close')
        if not price:
            return None
        data = PriceData(
            symbol=symbol,
            price=float(price),
            change_24h=float(ticker.get('percentage') or 0.0),
            volume_24h=float(ticker.get('baseVolume') or 0.0),
            high_24h=float(ticker.get('high') or 0.0),
            low_24h=float(ticker.get('low') or 0.0),
            timestamp=(ticker.get('timestamp') or time.time() * 1000) / 1000,
        )
        with self._lock:
            self._prices[symbol] = data
        self._notify(symbol, data)
        return data

    def _notify(self, symbol: str, data: PriceData):
        with self._lock:
            callbacks = list(self._subscribers.get(symbol, ()))
        for callback in callbacks:
            try:
                callback(data)
            except Exception as e:
                logger.warning("Price subscriber raised", symbol=symbol, error=str(e))

    def get_current_data(self, symbol: str) -> Optional[PriceData]:
        with self._lock:
            return self._prices.get(symbol)

    def subscribe(self, symbol: str, callback: PriceCallback) -> Callable[[], None]:
        """Register callback for price updates; returns an unsubscribe function."""
        with self._lock:
            self._subscribers.setdefault(symbol, set()).add(callback)
            connected = symbol in self._feeds
        if not connected:
            self.connect_price_feed(symbol)

        def unsubscribe():
            with self._lock:
                self._subscribers.get(symbol, set()).discard(callback)
        return unsubscribe

    def disconnect(self, symbol: Optional[str] = None):
        with self._lock:
            symbols = [symbol] if symbol else list(self._feeds)
            for sym in symbols:
                feed = self._feeds.pop(sym, None)
                if feed:
                    feed.stop.set()
                self._subscribers.pop(sym, None)
        if symbols:
            logger.info("Disconnected price feeds", symbols=symbols)

    @property
    def connected_symbols(self) -> List[str]:
        with self._lock:
            return list(self._feeds)

    # ------------------------------------------------------------------
    # History and indicators
    # ------------------------------------------------------------------

    @log_execution_time(logger, operation="get_historical_data")
    def get_historical_data(self, symbol: str, timeframe: str = '5m', limit: int = 100) -> pd.DataFrame:
        """OHLCV candles, oldest first. Never raises; falls back to a simulated series."""
        cache_key = f"{symbol}_{timeframe}"
        cached = self.history_cache.get(cache_key)
        if cached is not None and len(cached) >= limit:
            return cached.tail(limit).reset_index(drop=True)

        ttl = min(60.0, float(ccxt.Exchange.parse_timeframe(timeframe)))
        if self.mock_mode or self.exchange is None:
            df = self.generate_mock_history(symbol, limit, timeframe)
        else:
            try:
                df = self._fetch_ohlcv(symbol, timeframe, limit)
            except Exception as e:
                logger.warning("OHLCV fetch failed, using simulated history", symbol=symbol, error=str(e))
                df = self.generate_mock_history(symbol, limit, timeframe)
                ttl = min(ttl, 15.0)

        self.history_cache.set(cache_key, df, ttl=ttl)
        return df.tail(limit).reset_index(drop=True)

    def _fetch_ohlcv(self, symbol: str, timeframe: str, limit: int) -> pd.DataFrame:
        if not self.ccxt_limiter.wait_if_needed(timeout=5.0):
            raise ExternalAPIError(
                "CCXT rate limit reached",
                context={'symbol': symbol, 'retry_after': self.ccxt_limiter.get_wait_time()},
            )

        ohlcv = self.ccxt_breaker.call_function(
            lambda: self.exchange.fetch_ohlcv(to_exchange_symbol(symbol), timeframe, limit=limit)
        )
        if not ohlcv:
            raise ExternalAPIError("Empty OHLCV response", context={'symbol': symbol, 'timeframe': timeframe})

        df = pd.DataFrame(ohlcv, columns=['timestamp', 'open', 'high', 'low', 'close', 'volume'])
        df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms')
        return df

    def generate_mock_history(self, symbol: str, count: int, timeframe: str = '5m') -> pd.DataFrame:
        """Random-walk candles ending now, spaced one timeframe apart."""
        current = self.get_current_data(symbol)
        price = current.price if current else BASE_PRICES.get(symbol, 100.0)
        step_ms = ccxt.Exchange.parse_timeframe(timeframe) * 1000
        now_ms = int(time.time() * 1000)

        rows = []
        for i in range(count, -1, -1):
            change = (self.rng.random() - 0.5) * MOCK_TICK_VOLATILITY
            open_ = price
            close = max(PRICE_FLOOR, price * (1 + change))
            rows.append([
                now_ms - i * step_ms,
                open_,
                max(open_, close) * (1 + self.rng.random() * 0.01),
                min(open_, close) * (1 - self.rng.random() * 0.01),
                close,
                self.rng.random() * 1000,
            ])
            price = close

        df = pd.DataFrame(rows, columns=['timestamp', 'open', 'high', 'low', 'close', 'volume'])
        df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms')
        return df

    def get_technical_indicators(self, symbol: str, timeframe: str = '5m') -> TechnicalIndicators:
        df = self.get_historical_data(symbol, timeframe, DEFAULT_HISTORY_LIMIT)
        return self.calculate_indicators(df, timeframe)

    def calculate_indicators(self, df: pd.DataFrame, timeframe: str = '5m') -> TechnicalIndicators:
        """
        Latest indicator values using PANDAS-TA.
        Features: RSI(14), MACD(12,26,9), SMA 20/50, EMA 12/26, Bollinger Bands (20, 2).
        Short histories fall back to neutral values (RSI 50, averages = last close).
        """
        if df is None or df.empty:
            return TechnicalIndicators()

        df = df.copy()
        close = df['close']
        last_close = float(close.iloc[-1])
        changes = {
            'volume': float(df['volume'].iloc[-1]),
            'price_change_1h': self._price_change(close, periods_for(timeframe, 3600)),
            'price_change_24h': self._price_change(close, periods_for(timeframe, 86400)),
        }

        try:
            macd = df.ta.macd(fast=12, slow=26, signal=9)
            bb = df.ta.bbands(length=20, std=2)
            return TechnicalIndicators(
                rsi=_last(df.ta.rsi(length=14), 50.0),
                macd=_last(_column(macd, 'MACD_'), 0.0),
                macd_signal=_last(_column(macd, 'MACDs_'), 0.0),
                macd_histogram=_last(_column(macd, 'MACDh_'), 0.0),
                sma20=_last(df.ta.sma(length=20), last_close),
                sma50=_last(df.ta.sma(length=50), last_close),
                ema12=_last(df.ta.ema(length=12), last_close),
                ema26=_last(df.ta.ema(length=26), last_close),
                bb_upper=_last(_column(bb, 'BBU_'), last_close),
                bb_middle=_last(_column(bb, 'BBM_'), last_close),
                bb_lower=_last(_column(bb, 'BBL_'), last_close),
                **changes,
            )
        except Exception as e:
            logger.warning("pandas-ta failed, using basic indicator math", error=str(e))
            return self._basic_indicators(close, **changes)

    @staticmethod
    def _price_change(close: pd.Series, periods: int) -> float:
        if len(close) < periods + 1:
            return 0.0
        past = float(close.iloc[-1 - periods])
        if past == 0:
            return 0.0
        return (float(close.iloc[-1]) - past) / past * 100

    @staticmethod
    def _basic_indicators(close: pd.Series, **changes) -> TechnicalIndicators:
        """Plain pandas fallback (Wilder RSI, rolling SMA, ewm EMA, population-std bands)."""
        last_close = float(close.iloc[-1])

        def sma(n):
            return float(close.tail(n).mean()) if len(close) >= n else last_close

        rsi = 50.0
        if len(close) >= 15:
            delta = close.diff()
            gain = delta.clip(lower=0).ewm(alpha=1 / 14, adjust=False).mean().iloc[-1]
            loss = (-delta.clip(upper=0)).ewm(alpha=1 / 14, adjust=False).mean().iloc[-1]
            rsi = 100.0 if loss == 0 else float(100 - 100 / (1 + gain / loss))

        ema12 = float(close.ewm(span=12, adjust=False).mean().iloc[-1])
        ema26 = float(close.ewm(span=26, adjust=False).mean().iloc[-1])
        macd_line = close.ewm(span=12, adjust=False).mean() - close.ewm(span=26, adjust=False).mean()
        signal = float(macd_line.ewm(span=9, adjust=False).mean().iloc[-1])

        middle = sma(20)
        std = float(close.tail(20).std(ddof=0))
        return TechnicalIndicators(
            rsi=rsi,
            macd=ema12 - ema26,
            macd_signal=signal,
            macd_histogram=ema12 - ema26 - signal,
            sma20=middle,
            sma50=sma(50),
            ema12=ema12,
            ema26=ema26,
            bb_upper=middle + 2 * std,
            bb_middle=middle,
            bb_lower=middle - 2 * std,
            **changes,
        )

    # ------------------------------------------------------------------
    # Price verification
    # ------------------------------------------------------------------

    def get_coinmarketcap_price(self, symbol: str) -> Optional[PriceData]:
        if not self.coinmarketcap_key:
            return None
        cmc_symbol = CMC_SYMBOLS.get(symbol)
        if not cmc_symbol:
            return None

        cached = self.cmc_cache.get(symbol)
        if cached is not None:
            return cached

        try:
            if not self.cmc_limiter.allow():
                return None
            payload = self.cmc_breaker.call_function(self._fetch_cmc_quote, cmc_symbol)
            quote = (payload.get('data', {}).get(cmc_symbol) or {}).get('quote', {}).get('USD')
            if not quote:
                return None
            pct = float(quote.get('percent_change_24h') or 0.0)
            price = float(quote['price'])
            data = PriceData(
                symbol=symbol,
                price=price,
                change_24h=pct,
                volume_24h=float(quote.get('volume_24h') or 0.0),
                high_24h=price * (1 + abs(pct) / 200),  # estimate
                low_24h=price * (1 - abs(pct) / 200),
                timestamp=time.time(),
            )
            self.cmc_cache.set(symbol, data)
            return data
        except Exception as e:
            logger.warning("CoinMarketCap quote failed", symbol=symbol, error=str(e))
            return None

    def _fetch_cmc_quote(self, cmc_symbol: str) -> dict:
        response = self.session.get(
            CMC_QUOTES_URL,
            params={'symbol': cmc_symbol},
            headers={'X-CMC_PRO_API_KEY': self.coinmarketcap_key, 'Accept': 'application/json'},
            timeout=10,
        )
        if response.status_code != 200:
            raise ExternalAPIError("CoinMarketCap API error", context={'status': response.status_code})
        return response.json()

    def get_verified_price(self, symbol: str) -> Optional[PriceData]:
        """Most recent quote across sources; warns when sources disagree by >1%."""
        prices = [p for p in (self.get_current_data(symbol), self.get_coinmarketcap_price(symbol)) if p]
        if not prices:
            return None

        if len(prices) > 1:
            values = [p.price for p in prices]
            avg = sum(values) / len(values)
            deviation = max(abs(v - avg) / avg for v in values)
            if deviation > DISCREPANCY_THRESHOLD:
                logger.warning("Price discrepancy detected", symbol=symbol, prices=values,
                               deviation_pct=round(deviation * 100, 3))

        return max(prices, key=lambda p: p.timestamp)

    def get_comprehensive_market_data(self, symbol: str, timeframe: str = '5m') -> dict:
        current = self.get_current_data(symbol)
        verified = self.get_verified_price(symbol)
        indicators = self.get_technical_indicators(symbol, timeframe)

        sources = []
        if current:
            sources.append('Simulated Feed' if self.mock_mode else f"{self.settings.exchange_id.title()} WebSocket")
        if self.coinmarketcap_key:
            sources.append('CoinMarketCap API')

        return {
            'current': current,
            'verified': verified,
            'indicators': indicators,
            'sources': sources,
        }

    def health_check(self) -> dict:
        checks = {
            'websocket': bool(self.connected_symbols),
            'coinmarketcap': bool(self.coinmarketcap_key),
            'ccxt': self.exchange is not None and self.ccxt_breaker.is_available,
        }
        healthy = sum(checks.values())
        overall = 'healthy' if healthy >= 2 else 'degraded' if healthy >= 1 else 'critical'
        return {**checks, 'overall': overall}

    def resilience_stats(self) -> dict:
        """Breaker, rate limiter and cache counters for /api/health."""
        return {
            'ccxt': {
                'breaker': self.ccxt_breaker.get_stats(),
                'limiter': self.ccxt_limiter.get_stats(),
                'history_cache': self.history_cache.get_stats(),
            },
            'coinmarketcap': {
                'breaker': self.cmc_breaker.get_stats(),
                'limiter': self.cmc_limiter.get_stats(),
                'quote_cache': self.cmc_cache.get_stats(),
            },
        }
