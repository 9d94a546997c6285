import threading
import time
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import schedule
from pydantic import ValidationError as PydanticValidationError

from deeptrade.config import Settings, get_settings
from deeptrade.database import clear_config_cache, is_bot_stopped, record_trade
from deeptrade.models import (
    BotInstance,
    EngineStatus,
    RiskManagement,
    TechnicalIndicators,
    TradeSignal,
    TradingCondition,
)
from deeptrade.roles.job_contract import ContractService, SignAndSubmit
from deeptrade.roles.job_market_data import MarketDataService
from deeptrade.roles.job_strategy_parser import AIStrategyParser
from deeptrade.utils.audit_logger import AuditLogger
from deeptrade.utils.formatters import micro_to_units
from deeptrade.utils.logger import get_logger, log_activity

MONITOR_INTERVAL_SECS = 5
MIN_SECS_BETWEEN_TRADES = 60
MAX_SIGNAL_AGE_SECS = 30
MAX_ERRORS = 100
MAX_HISTORY = 1000
FLOAT_TOLERANCE = 0.001

TradeListener = Callable[[TradeSignal], None]


def check_condition(actual: float, operator: str, expected: float) -> bool:
    if operator == '<':
        return actual < expected
    if operator == '<=':
        return actual <= expected
    if operator == '>':
        return actual > expected
    if operator == '>=':
        return actual >= expected
    if operator == '==':
        return abs(actual - expected) < FLOAT_TOLERANCE
    if operator == '!=':
        return abs(actual - expected) >= FLOAT_TOLERANCE
    return False


class AutoTradingEngine:
    """
    THE PILOT (Autonomous Trading Engine)
    Role: Every 5 seconds, checks each active bot's parsed strategy against
    fresh market data and, when all conditions for a side hold and risk
    limits allow, executes a trade on chain (or on paper).

    Construct one per process and pass it to the API layer; collaborators
    are injected so tests can substitute them.
    """

    def __init__(
        self,
        market_data: MarketDataService,
        strategy_parser: AIStrategyParser,
        contract: ContractService,
        settings: Optional[Settings] = None,
        db=None,
        audit: Optional[AuditLogger] = None,
        sign_and_submit: Optional[SignAndSubmit] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.market_data = market_data
        self.strategy_parser = strategy_parser
        self.contract = contract
        self.settings = settings or get_settings()
        self.db = db
        self.audit = audit or AuditLogger(db=db)
        self.sign_and_submit = sign_and_submit
        self.clock = clock
        self.logger = get_logger(__name__, role="Engine")

        self._lock = threading.RLock()
        self._bots: Dict[str, BotInstance] = {}
        self._history: List[TradeSignal] = []
        self._errors: List[str] = []
        self._listeners: List[TradeListener] = []
        self._signal_count = 0

        self.is_running = False
        self.start_time = 0.0
        self.scheduler = schedule.Scheduler()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, sign_and_submit: SignAndSubmit):
        """Attach the wallet signing callback used for live trades."""
        self.sign_and_submit = sign_and_submit
        self.logger.info("Engine initialized with wallet connection")

    def start(self):
        with self._lock:
            if self.is_running:
                self.logger.info("Trading engine is already running")
                return
            self.is_running = True
            self.start_time = self.clock()
            self._errors = []

        # BOT_STATUS may have been cleared on the dashboard since the last read
        clear_config_cache()

        for symbol in self.get_active_symbols():
            self.market_data.connect_price_feed(symbol)

        self.scheduler.every(MONITOR_INTERVAL_SECS).seconds.do(self.monitor_all_bots)
        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._run_loop, name="trading-engine", daemon=True)
        self._thread.start()

        self.audit.log_engine_state("STOPPED", "RUNNING")
        log_activity(self.db, "Engine", f"Trading engine started with {len(self._bots)} bots")

    def _run_loop(self):
        while not self._stop_event.wait(1.0):
            self.scheduler.run_pending()

    def stop(self):
        with self._lock:
            if not self.is_running:
                self.logger.info("Trading engine is not running")
                return
            self.is_running = False

        self._stop_event.set()
        self.scheduler.clear()
        self.market_data.disconnect()

        self.audit.log_engine_state("RUNNING", "STOPPED")
        log_activity(self.db, "Engine", "Trading engine stopped")

    # ------------------------------------------------------------------
    # Bot registry
    # ------------------------------------------------------------------

    def add_bot(self, bot_id: str, user_id: str, strategy_text: str, risk_settings: Optional[dict] = None) -> dict:
        """Parse, validate and register a bot. Returns {'success': bool, 'error'?: str}."""
        try:
            strategy = self.strategy_parser.parse_strategy(strategy_text)

            validation = self.strategy_parser.validate_strategy(strategy)
            if not validation['valid']:
                return {'success': False, 'error': f"Invalid strategy: {', '.join(validation['errors'])}"}

            if risk_settings:
                merged = {**strategy.risk_management.model_dump(), **risk_settings}
                strategy = strategy.model_copy(update={'risk_management': RiskManagement(**merged)})

            bot = BotInstance(
                bot_id=str(bot_id),
                user_id=user_id,
                strategy=strategy,
                daily_reset_date=self._utc_date(),
                original_strategy=strategy_text,
            )
            with self._lock:
                if bot.bot_id in self._bots:
                    self.logger.warning("Replacing existing bot", bot_id=bot.bot_id)
                self._bots[bot.bot_id] = bot

            self.market_data.connect_price_feed(strategy.symbol)

            self.logger.success(
                "Bot added",
                bot_id=bot.bot_id,
                symbol=strategy.symbol,
                conditions=[c.model_dump() for c in strategy.conditions],
            )
            self.audit.log_bot_added(bot.bot_id, user_id, strategy.symbol)
            return {'success': True}

        except PydanticValidationError as e:
            message = f"Invalid risk settings: {e.errors()[0].get('msg', str(e))}"
            self._log_error(f"Failed to add bot {bot_id}: {message}")
            return {'success': False, 'error': message}
        except Exception as e:
            self._log_error(f"Failed to add bot {bot_id}: {e}")
            return {'success': False, 'error': str(e) or 'Unknown error'}

    def remove_bot(self, bot_id: str) -> bool:
        with self._lock:
            removed = self._bots.pop(str(bot_id), None)
        if removed:
            self.logger.info("Bot removed", bot_id=bot_id)
            self.audit.log_bot_removed(str(bot_id))
        return removed is not None

    def toggle_bot(self, bot_id: str, active: bool) -> bool:
        with self._lock:
            bot = self._bots.get(str(bot_id))
            if bot is None:
                return False
            bot.is_active = bool(active)
        self.logger.info("Bot toggled", bot_id=bot_id, active=bool(active))
        self.audit.log_bot_toggled(str(bot_id), bool(active))
        return True

    def get_bot(self, bot_id: str) -> Optional[BotInstance]:
        with self._lock:
            return self._bots.get(str(bot_id))

    def get_all_bots(self) -> List[BotInstance]:
        with self._lock:
            return list(self._bots.values())

    def get_active_symbols(self) -> List[str]:
        with self._lock:
            return sorted({b.strategy.symbol for b in self._bots.values()})

    def get_trade_history(self, limit: int = 50) -> List[TradeSignal]:
        with self._lock:
            return list(self._history[-limit:]) if limit > 0 else []

    def get_status(self) -> EngineStatus:
        with self._lock:
            return EngineStatus(
                is_running=self.is_running,
                active_bots=len(self._bots),
                total_signals=self._signal_count,
                total_trades=len(self._history),
                uptime=int((self.clock() - self.start_time) * 1000) if self.start_time else 0,
                errors=list(self._errors),
            )

    def on_trade(self, listener: TradeListener) -> Callable[[], None]:
        """Register a callback fired after each executed trade; returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    def monitor_all_bots(self):
        if not self.is_running:
            return
        if self.db is not None and is_bot_stopped(self.db):
            self.logger.warning("BOT_STATUS is STOPPED, skipping monitoring cycle")
            return

        for bot in self.get_all_bots():
            if bot.is_active:
                self.monitor_bot(bot)

    def monitor_bot(self, bot: BotInstance) -> Optional[TradeSignal]:
        """One evaluation pass for one bot. Errors are recorded, never raised."""
        try:
            strategy = bot.strategy
            data = self.market_data.get_comprehensive_market_data(strategy.symbol, strategy.timeframe)
            price_data = data['verified'] or data['current']
            if price_data is None:
                self.logger.debug("No price data available", symbol=strategy.symbol)
                return None

            signal = self.evaluate_strategy(bot, price_data.price, data['indicators'])
            if signal is None:
                return None

            with self._lock:
                self._signal_count += 1
            self.logger.info(
                "Trade signal generated",
                bot_id=bot.bot_id,
                action=signal.action,
                amount=round(signal.amount, 6),
                confidence=signal.confidence,
                reason=signal.reason,
                sources=data['sources'],
            )
            return self.execute_trade_signal(signal, bot)

        except Exception as e:
            self._log_error(f"Error monitoring bot {bot.bot_id}: {e}")
            return None

    def evaluate_strategy(self, bot: BotInstance, price: float, indicators: TechnicalIndicators) -> Optional[TradeSignal]:
        if not self.check_risk_limits(bot):
            return None

        strategy = bot.strategy
        context = indicators.to_context(price)

        for side, actions in (('buy', strategy.buy_actions), ('sell', strategy.sell_actions)):
            if not actions:
                continue
            conditions = strategy.conditions_for(side)
            if not self.evaluate_conditions(conditions, context):
                continue
            if side == 'sell' and bot.position.quantity <= 0:
                self.logger.debug("Sell conditions met with no open position", bot_id=bot.bot_id)
                continue

            return TradeSignal(
                bot_id=bot.bot_id,
                action=side,
                amount=self.calculate_trade_amount(bot, side, actions[0].amount_percent, price),
                price=price,
                confidence=self.calculate_confidence(conditions),
                reason=self.generate_signal_reason(conditions, context, side),
                timestamp=self.clock(),
                symbol=strategy.symbol,
            )
        return None

    def evaluate_conditions(self, conditions: List[TradingCondition], context: Dict[str, float]) -> bool:
        """AND over all conditions; unknown indicators are skipped; needs one evaluated condition."""
        evaluated = 0
        for condition in conditions:
            actual = context.get(condition.indicator)
            if actual is None:
                self.logger.debug("Unknown indicator", indicator=condition.indicator)
                continue
            if not check_condition(actual, condition.operator, condition.value):
                return False
            evaluated += 1
        return evaluated > 0

    @staticmethod
    def calculate_confidence(conditions: List[TradingCondition]) -> float:
        return min(0.8, len(conditions) * 0.2)

    @staticmethod
    def generate_signal_reason(conditions: List[TradingCondition], context: Dict[str, float], side: str) -> str:
        parts = []
        for c in conditions:
            value = context.get(c.indicator)
            shown = f"{value:.2f}" if value is not None else "n/a"
            parts.append(f"{c.indicator} ({shown}) {c.operator} {c.value:g}")
        return f"{side.upper()}: {' AND '.join(parts)}"

    def check_risk_limits(self, bot: BotInstance) -> bool:
        risk = bot.strategy.risk_management
        now = self.clock()

        today = self._utc_date(now)
        if bot.daily_reset_date != today:
            bot.daily_reset_date = today
            bot.daily_trade_count = 0
            bot.daily_pnl = 0.0

        if bot.daily_trade_count >= risk.max_daily_trades:
            self.logger.debug("Daily trade limit reached", bot_id=bot.bot_id)
            return False

        if bot.daily_pnl <= -risk.max_daily_loss:
            self.logger.debug("Daily loss limit reached", bot_id=bot.bot_id)
            return False

        if now - bot.last_trade_time < MIN_SECS_BETWEEN_TRADES:
            return False

        return True

    def get_bot_balance(self, bot: BotInstance) -> float:
        """USDC available to the bot; the configured default when unknown or on paper."""
        if not self.settings.trading_enabled:
            return self.settings.default_bot_balance
        response = self.contract.get_bot_usdc_balance(bot.user_id, bot.bot_id)
        if response.success and response.data is not None:
            return micro_to_units(response.data)
        self.logger.warning("Bot balance unavailable, using default", bot_id=bot.bot_id, error=response.error)
        return self.settings.default_bot_balance

    def calculate_trade_amount(self, bot: BotInstance, side: str, percent: float, price: float) -> float:
        """Trade size in USDC, capped by the bot's and the global max position size."""
        if side == 'buy':
            base = self.get_bot_balance(bot)
        else:
            base = bot.position.quantity * price
        cap = min(bot.strategy.risk_management.max_position_size, self.settings.max_position_size)
        return min(base * percent / 100, cap)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def validate_trade_signal(self, signal: TradeSignal, bot: BotInstance) -> bool:
        if not bot.is_active:
            return False
        if self.clock() - signal.timestamp > MAX_SIGNAL_AGE_SECS:
            return False
        if signal.amount <= 0 or signal.amount > bot.strategy.risk_management.max_position_size:
            return False
        return True

    def get_current_market_price(self, symbol: str) -> Optional[float]:
        try:
            verified = self.market_data.get_verified_price(symbol)
            if verified:
                return verified.price
            cached = self.market_data.get_current_data(symbol)
            return cached.price if cached else None
        except Exception as e:
            self.logger.error("Market price lookup failed", symbol=symbol, error=str(e))
            return None

    def execute_trade_signal(self, signal: TradeSignal, bot: BotInstance) -> Optional[TradeSignal]:
        """Validate, price-check and submit a signal. Returns the executed trade or None."""
        if not self.validate_trade_signal(signal, bot):
            self._log_error(f"Trade signal validation failed for bot {bot.bot_id}")
            return None

        symbol = bot.strategy.symbol
        price = self.get_current_market_price(symbol)
        if not price:
            self._log_error(f"Could not get current price for {symbol}")
            return None

        slippage = abs(price - signal.price) / signal.price
        if slippage > self.settings.slippage_limit:
            self._log_error(f"Price slippage too high: {slippage * 100:.2f}%")
            return None

        amount = min(signal.amount, bot.strategy.risk_management.max_position_size)
        if signal.action == 'sell':
            amount = min(amount, bot.position.quantity * price)
            if amount <= 0:
                return None

        paper = not self.settings.trading_enabled
        if paper:
            tx_hash = f"sim-{uuid.uuid4().hex[:16]}"
        else:
            if self.sign_and_submit is None:
                self._log_error("No wallet connection available for trading")
                return None
            response = self.contract.execute_trade(
                bot.bot_id,
                signal.action,
                amount,
                price,
                self.sign_and_submit,
                wait_for_confirmation=self.settings.is_production,
            )
            if not response.success:
                self._log_error(f"Failed to execute trade for bot {bot.bot_id}: {response.error}")
                return None
            tx_hash = (response.data or {}).get('hash')

        executed = replace(
            signal,
            price=price,
            amount=amount,
            timestamp=self.clock(),
            tx_hash=tx_hash,
            is_sim=paper,
        )
        with self._lock:
            executed.realized_pnl = self.update_bot_after_trade(bot, executed)
            self._history.append(executed)
            if len(self._history) > MAX_HISTORY:
                self._history = self._history[-MAX_HISTORY:]
            listeners = list(self._listeners)

        self.logger.success(
            "Trade executed",
            bot_id=bot.bot_id,
            action=executed.action,
            amount=round(amount, 6),
            price=price,
            tx_hash=tx_hash,
            is_sim=paper,
        )
        self._persist(executed)
        for listener in listeners:
            try:
                listener(executed)
            except Exception as e:
                self.logger.warning("Trade listener raised", error=str(e))
        return executed

    def update_bot_after_trade(self, bot: BotInstance, trade: TradeSignal) -> float:
        """Apply a fill to the bot's position and stats. Returns realized PnL (sells only)."""
        bot.last_trade_time = trade.timestamp
        bot.daily_trade_count += 1
        bot.performance.total_trades += 1

        position = bot.position
        quantity = trade.amount / trade.price

        if trade.action == 'buy':
            total = position.quantity + quantity
            position.entry_price = (position.quantity * position.entry_price + quantity * trade.price) / total
            position.quantity = total
            return 0.0

        quantity = min(quantity, position.quantity)
        pnl = (trade.price - position.entry_price) * quantity
        position.quantity -= quantity
        if position.quantity <= 1e-12:
            position.quantity = 0.0
            position.entry_price = 0.0

        bot.daily_pnl += pnl
        if pnl > 0:
            bot.performance.winning_trades += 1
            bot.performance.total_profit += pnl
        else:
            bot.performance.total_loss += abs(pnl)
        return pnl

    def _persist(self, trade: TradeSignal):
        record_trade(self.db, {
            'bot_id': trade.bot_id,
            'symbol': trade.symbol,
            'side': trade.action.upper(),
            'amount': trade.amount,
            'price': trade.price,
            'confidence': trade.confidence,
            'reason': trade.reason[:500],
            'tx_hash': trade.tx_hash,
            'is_sim': trade.is_sim,
            'realized_pnl': trade.realized_pnl,
            'executed_at': datetime.fromtimestamp(trade.timestamp, timezone.utc).isoformat(),
        })
        self.audit.log_trade(
            trade.bot_id, trade.symbol, trade.action, trade.amount, trade.price,
            tx_hash=trade.tx_hash, is_sim=trade.is_sim,
        )

    def _log_error(self, message: str):
        entry = f"[{datetime.now(timezone.utc).isoformat()}] {message}"
        self.logger.error(message)
        with self._lock:
            self._errors.append(entry)
            if len(self._errors) > MAX_ERRORS:
                self._errors = self._errors[-MAX_ERRORS:]

    def _utc_date(self, ts: Optional[float] = None):
        return datetime.fromtimestamp(self.clock() if ts is None else ts, timezone.utc).date()
