"""
Unit tests for AIStrategyParser (Gemini parsing and keyword fallback)

Tests cover:
- Keyword parsing of RSI thresholds, price drops and asset symbols
- Default actions and risk settings
- Gemini reply handling (code fences, schema errors, semantic errors)
- Fallback to keyword parsing when the model fails
- Strategy validation rules and timeframe checks
"""

import json

import pytest
from pydantic import ValidationError as PydanticValidationError
from unittest.mock import Mock

from deeptrade.models import ParsedStrategy, RiskManagement, TradingAction, TradingCondition
from deeptrade.roles.job_strategy_parser import AIStrategyParser, SCHEMA_EXAMPLE, validate_strategy
from deeptrade.utils import ValidationError


def model_replying(text):
    model = Mock()
    model.generate_content.return_value = Mock(text=text)
    return model


@pytest.mark.unit
class TestKeywordParser:
    """Test the keyword fallback parser"""

    def test_rsi_thresholds_from_text(self, paper_settings):
        """Thresholds after below/above are used, tagged by side"""
        # Arrange
        parser = AIStrategyParser(paper_settings)

        # Act
        strategy = parser.parse_strategy('Buy when RSI drops below 25, sell when RSI goes above 80')

        # Assert
        assert [(c.indicator, c.operator, c.value, c.side) for c in strategy.conditions] == [
            ('rsi', '<', 25.0, 'buy'),
            ('rsi', '>', 80.0, 'sell'),
        ]
        assert strategy.buy_actions[0].amount_percent == 10
        assert strategy.sell_actions[0].amount_percent == 100

    @pytest.mark.parametrize('text, expected', [
        ('Buy when RSI <= 25', [('<=', 25.0, 'buy')]),
        ('Sell when RSI >= 75', [('>=', 75.0, 'sell')]),
        ('buy rsi<30 sell rsi>70', [('<', 30.0, 'buy'), ('>', 70.0, 'sell')]),
        ('Buy when RSI is under 20, sell when RSI recovers above 50', [('<', 20.0, 'buy'), ('>', 50.0, 'sell')]),
        ('Sell when RSI hovers over 65', [('>', 65.0, 'sell')]),
    ])
    def test_rsi_operators_and_word_boundaries(self, paper_settings, text, expected):
        """Keywords match whole words only; <= and >= keep their operator"""
        parser = AIStrategyParser(paper_settings)

        strategy = parser.mock_parse_strategy(text)

        assert [(c.operator, c.value, c.side) for c in strategy.conditions] == expected

    def test_rsi_defaults_without_numbers(self, paper_settings):
        parser = AIStrategyParser(paper_settings)

        strategy = parser.parse_strategy('buy if rsi is below normal, sell if rsi is above normal')

        assert [c.value for c in strategy.conditions] == [30.0, 70.0]

    def test_rsi_clause_drop_is_not_a_price_drop(self, paper_settings):
        """'RSI drops below 25' must not add a price_change_1h condition"""
        parser = AIStrategyParser(paper_settings)

        strategy = parser.parse_strategy('Buy when RSI drops below 25')

        assert [c.indicator for c in strategy.conditions] == ['rsi']

    def test_price_drop_condition(self, paper_settings):
        """A price drop clause becomes price_change_1h < -pct"""
        parser = AIStrategyParser(paper_settings)

        strategy = parser.parse_strategy('Buy SOL when the price falls 7.5% in an hour')

        condition = strategy.conditions[0]
        assert condition.indicator == 'price_change_1h'
        assert condition.operator == '<'
        assert condition.value == -7.5
        assert condition.side == 'buy'
        assert strategy.symbol == 'SOL/USDC'
        assert strategy.buy_actions[0].amount_percent == 15
        assert strategy.buy_actions[0].stop_loss == 3

    def test_defaults_for_unrecognized_text(self, paper_settings):
        parser = AIStrategyParser(paper_settings)

        strategy = parser.parse_strategy('make me rich')

        assert strategy.symbol == 'APT/USDC'
        assert strategy.timeframe == '5m'
        assert strategy.conditions == []
        assert len(strategy.buy_actions) == 1
        assert len(strategy.sell_actions) == 1
        assert strategy.risk_management.max_daily_trades == 20
        assert parser.validate_strategy(strategy)['valid'] is False


@pytest.mark.unit
class TestModelParser:
    """Test Gemini reply handling"""

    def test_keyword_parser_used_outside_production(self, paper_settings):
        model = model_replying(json.dumps(SCHEMA_EXAMPLE))
        parser = AIStrategyParser(paper_settings, model=model)

        parser.parse_strategy('buy when rsi below 30')

        model.generate_content.assert_not_called()

    def test_parses_fenced_json(self, live_settings):
        """Markdown code fences around the JSON are stripped"""
        # Arrange
        model = model_replying('```json\n' + json.dumps(SCHEMA_EXAMPLE) + '\n```')
        parser = AIStrategyParser(live_settings, model=model)

        # Act
        strategy = parser.parse_strategy('Buy APT when RSI < 30, sell when RSI > 70')

        # Assert
        assert strategy.symbol == 'APT/USDC'
        assert [c.side for c in strategy.conditions] == ['buy', 'sell']
        assert strategy.risk_management.max_daily_trades == 10
        prompt = model.generate_content.call_args[0][0]
        assert 'Buy APT when RSI < 30' in prompt

    def test_invalid_json_raises_validation_error(self, live_settings):
        parser = AIStrategyParser(live_settings, model=model_replying('not json'))

        with pytest.raises(ValidationError):
            parser.parse_with_llm('buy low')

    def test_semantically_invalid_strategy_raises(self, live_settings):
        reply = dict(SCHEMA_EXAMPLE, conditions=[])
        parser = AIStrategyParser(live_settings, model=model_replying(json.dumps(reply)))

        with pytest.raises(ValidationError, match='at least one trading condition'):
            parser.parse_with_llm('buy low')

    def test_falls_back_when_model_fails(self, live_settings):
        """Quota errors fall back to keyword parsing instead of failing"""
        model = Mock()
        model.generate_content.side_effect = RuntimeError('429 quota exceeded')
        parser = AIStrategyParser(live_settings, model=model)

        strategy = parser.parse_strategy('buy BTC when rsi below 20')

        assert strategy.symbol == 'BTC/USDC'
        assert strategy.conditions[0].value == 20.0

    def test_circuit_opens_after_repeated_failures(self, live_settings):
        model = Mock()
        model.generate_content.side_effect = RuntimeError('boom')
        parser = AIStrategyParser(live_settings, model=model)

        for _ in range(5):
            parser.parse_strategy('buy when rsi below 30')

        assert model.generate_content.call_count == 3
        assert parser.gemini_breaker.is_available is False


@pytest.mark.unit
class TestValidateStrategy:
    """Test semantic validation"""

    def test_valid_strategy(self, rsi_strategy):
        assert validate_strategy(rsi_strategy) == {'valid': True, 'errors': []}

    def test_collects_all_errors(self):
        strategy = ParsedStrategy(
            conditions=[],
            buy_actions=[],
            sell_actions=[],
            risk_management=RiskManagement(max_position_size=0, stop_loss_percent=60),
        )

        result = validate_strategy(strategy)

        assert result['valid'] is False
        assert result['errors'] == [
            'Strategy must have at least one trading condition',
            'Strategy must have at least one trading action',
            'Max position size must be greater than 0',
            'Stop loss percent must be between 0 and 50',
        ]

    def test_model_normalization(self):
        """Symbols are upper-cased and indicators lower-cased"""
        strategy = ParsedStrategy(
            symbol='eth/usdc',
            conditions=[TradingCondition(indicator=' RSI ', operator='<', value=30)],
            buy_actions=[TradingAction(type='buy', amount_percent=5)],
        )

        assert strategy.symbol == 'ETH/USDC'
        assert strategy.conditions[0].indicator == 'rsi'
        assert strategy.conditions_for('sell') == strategy.conditions

    @pytest.mark.parametrize('timeframe', ['1 hour', '1hour', '5', '', '0m'])
    def test_rejects_unknown_timeframe(self, timeframe):
        with pytest.raises(PydanticValidationError, match='Unsupported timeframe'):
            ParsedStrategy(timeframe=timeframe)
        with pytest.raises(PydanticValidationError, match='Unsupported timeframe'):
            TradingCondition(indicator='rsi', operator='<', value=30, timeframe=timeframe)

    def test_accepts_exchange_timeframes(self):
        assert ParsedStrategy(timeframe='15m').timeframe == '15m'
        assert TradingCondition(indicator='rsi', operator='<', value=30, timeframe='1d').timeframe == '1d'
        assert TradingCondition(indicator='rsi', operator='<', value=30).timeframe is None

    def test_model_reply_with_bad_timeframe_falls_back(self, live_settings):
        """An unusable timeframe from the model is rejected and keyword parsing takes over"""
        reply = dict(SCHEMA_EXAMPLE, timeframe='1 hour')
        parser = AIStrategyParser(live_settings, model=model_replying(json.dumps(reply)))

        with pytest.raises(ValidationError):
            parser.parse_with_llm('buy when rsi below 30')
        strategy = parser.parse_strategy('buy when rsi below 30')

        assert strategy.timeframe == '5m'
        assert strategy.conditions[0].value == 30.0
