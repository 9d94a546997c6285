import json
import re
from typing import Optional

import google.generativeai as genai
from pydantic import ValidationError as PydanticValidationError

from deeptrade.config import Settings, get_settings
from deeptrade.models import ParsedStrategy, RiskManagement, TradingAction, TradingCondition
from deeptrade.utils import CircuitBreaker, ValidationError
from deeptrade.utils.logger import get_logger

SYSTEM_PROMPT = (
    "You are an expert trading strategy parser. Convert plain English trading strategies "
    "into structured JSON format for algorithmic trading execution."
)

SCHEMA_EXAMPLE = {
    "symbol": "APT/USDC",
    "timeframe": "5m",
    "conditions": [
        {"indicator": "rsi", "operator": "<", "value": 30, "timeframe": "5m", "side": "buy"},
        {"indicator": "rsi", "operator": ">", "value": 70, "timeframe": "5m", "side": "sell"},
    ],
    "buy_actions": [{"type": "buy", "amount_percent": 10, "stop_loss": 5, "take_profit": 15}],
    "sell_actions": [{"type": "sell", "amount_percent": 100, "stop_loss": None, "take_profit": None}],
    "risk_management": {
        "max_position_size": 1000,
        "max_daily_trades": 10,
        "stop_loss_percent": 5,
        "max_daily_loss": 500,
    },
}

KNOWN_ASSETS = ('APT', 'BTC', 'ETH', 'SOL')

_NUM = r'(\d+(?:\.\d+)?)'
RSI_BELOW = re.compile(r'rsi[^.,;]*?(\b(?:below|under)\b|<=?)\s*' + _NUM + '?')
RSI_ABOVE = re.compile(r'rsi[^.,;]*?(\b(?:above|over)\b|>=?)\s*' + _NUM + '?')
PERCENT = re.compile(_NUM + r'\s*%')
CLAUSE_SPLIT = re.compile(r'[,;]|\.(?!\d)')
ASSET = re.compile(r'\b(' + '|'.join(a.lower() for a in KNOWN_ASSETS) + r')\b')

DEFAULT_BUY = dict(type='buy', amount_percent=10, stop_loss=5, take_profit=15)
DEFAULT_SELL = dict(type='sell', amount_percent=100)


def validate_strategy(strategy: ParsedStrategy) -> dict:
    """Semantic checks on a parsed strategy. Returns {'valid': bool, 'errors': [...]}."""
    errors = []

    if not strategy.conditions:
        errors.append('Strategy must have at least one trading condition')

    if not strategy.buy_actions and not strategy.sell_actions:
        errors.append('Strategy must have at least one trading action')

    if strategy.risk_management.max_position_size <= 0:
        errors.append('Max position size must be greater than 0')

    if not 0 <= strategy.risk_management.stop_loss_percent <= 50:
        errors.append('Stop loss percent must be between 0 and 50')

    return {'valid': not errors, 'errors': errors}


def build_prompt(text: str) -> str:
    return f"""
Convert this trading strategy to structured JSON: "{text}"

Return JSON with this exact structure:
{json.dumps(SCHEMA_EXAMPLE, indent=2)}

Guidelines:
- Extract clear buy/sell conditions from the text
- Tag each condition with "side": "buy" or "sell" (null if it gates both)
- Indicators: price, rsi, macd, macd_signal, sma20, sma50, ema12, ema26, bb_upper, bb_lower, volume, price_change_1h, price_change_24h
- Operators: <, <=, >, >=, ==, !=
- Conditions on the same side are combined with AND
- Set reasonable defaults for unspecified parameters
- Use conservative risk management settings
"""


class AIStrategyParser:
    """
    THE STRATEGIST (Strategy Parser)
    Role: Turns a free-text trading strategy into a ParsedStrategy.

    Gemini is used in production when GEMINI_API_KEY is set; everywhere
    else, and whenever the model call or its output fails, a keyword
    parser produces the strategy instead.
    """

    def __init__(self, settings: Optional[Settings] = None, model=None):
        self.settings = settings or get_settings()
        self.logger = get_logger(__name__, role="Strategist")
        self._model = model

        self.gemini_breaker = CircuitBreaker(
            name="GEMINI_AI",
            failure_threshold=3,  # Stricter for AI
            timeout=90.0
        )

    @property
    def use_llm(self) -> bool:
        return bool(self.settings.ai_api_key) and self.settings.is_production

    @property
    def model(self):
        if self._model is None:
            genai.configure(api_key=self.settings.ai_api_key)
            self._model = genai.GenerativeModel(
                self.settings.ai_model,
                system_instruction=SYSTEM_PROMPT,
                generation_config={
                    'temperature': 0.1,
                    'max_output_tokens': 1000,
                    'response_mime_type': 'application/json',
                },
            )
        return self._model

    def parse_strategy(self, text: str) -> ParsedStrategy:
        """Never raises for model failures; falls back to keyword parsing."""
        if not self.use_llm:
            self.logger.info("Using keyword strategy parser")
            return self.mock_parse_strategy(text)

        try:
            return self.parse_with_llm(text)
        except Exception as e:
            message = str(e)
            self.logger.warning("LLM strategy parse failed, falling back to keyword parser", error=message)
            if 'quota' in message.lower() or '429' in message:
                self.logger.warning(
                    "Gemini quota exceeded. Check plan and billing in Google AI Studio (https://aistudio.google.com)."
                )
            return self.mock_parse_strategy(text)

    def parse_with_llm(self, text: str) -> ParsedStrategy:
        """
        Raises:
            ValidationError: reply is not valid JSON or fails schema/semantic checks
        """
        response = self.gemini_breaker.call_function(
            lambda: self.model.generate_content(build_prompt(text), request_options={"timeout": 30})
        )
        content = (response.text or '').replace('```json', '').replace('```', '').strip()
        if not content:
            raise ValidationError("Empty response from model")

        try:
            strategy = ParsedStrategy.model_validate(json.loads(content))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise ValidationError("Model returned an invalid strategy", context={'error': str(e)[:200]})

        validation = validate_strategy(strategy)
        if not validation['valid']:
            raise ValidationError(
                f"Invalid strategy from AI: {', '.join(validation['errors'])}",
                context={'symbol': strategy.symbol},
            )
        self.logger.success("Strategy parsed by model", symbol=strategy.symbol, conditions=len(strategy.conditions))
        return strategy

    def mock_parse_strategy(self, text: str) -> ParsedStrategy:
        lower = text.lower()
        conditions, buy_actions, sell_actions = [], [], []

        match = RSI_BELOW.search(lower)
        if match:
            conditions.append(TradingCondition(
                indicator='rsi', operator='<=' if match.group(1) == '<=' else '<',
                value=float(match.group(2) or 30), timeframe='5m', side='buy',
            ))
            buy_actions.append(TradingAction(**DEFAULT_BUY))

        match = RSI_ABOVE.search(lower)
        if match:
            conditions.append(TradingCondition(
                indicator='rsi', operator='>=' if match.group(1) == '>=' else '>',
                value=float(match.group(2) or 70), timeframe='5m', side='sell',
            ))
            sell_actions.append(TradingAction(**DEFAULT_SELL))

        # "drop"/"fall" inside an RSI clause ("rsi falls below 25") is not a price move
        drop_clause = next(
            (c for c in CLAUSE_SPLIT.split(lower) if ('drop' in c or 'fall' in c) and 'rsi' not in c),
            None,
        )
        if drop_clause is not None:
            pct = PERCENT.search(drop_clause)
            drop = float(pct.group(1)) if pct else 5.0
            conditions.append(TradingCondition(
                indicator='price_change_1h', operator='<', value=-drop, timeframe='1h', side='buy',
            ))
            buy_actions.append(TradingAction(type='buy', amount_percent=15, stop_loss=3, take_profit=10))

        if not buy_actions:
            buy_actions.append(TradingAction(**DEFAULT_BUY))
        if not sell_actions:
            sell_actions.append(TradingAction(**DEFAULT_SELL))

        asset = ASSET.search(lower)
        symbol = f"{asset.group(1).upper()}/USDC" if asset else 'APT/USDC'

        return ParsedStrategy(
            symbol=symbol,
            timeframe='5m',
            conditions=conditions,
            buy_actions=buy_actions,
            sell_actions=sell_actions,
            risk_management=RiskManagement(
                max_position_size=1000,
                max_daily_trades=20,
                stop_loss_percent=5,
                max_daily_loss=500,
            ),
        )

    def validate_strategy(self, strategy: ParsedStrategy) -> dict:
        return validate_strategy(strategy)
