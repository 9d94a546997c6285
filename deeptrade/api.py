"""
REST API for the trading engine (Flask).

Domain errors map to HTTP statuses in one place; clients get
{'error': ..., 'detail': ...} bodies and never a stack trace.
"""

from typing import Optional

from flask import Flask, jsonify, request
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from werkzeug.exceptions import HTTPException

from deeptrade.config import validate_module_address
from deeptrade.models import LeaderboardFilters, validate_timeframe
from deeptrade.roles.job_contract import ContractService
from deeptrade.roles.job_leaderboard import LeaderboardService
from deeptrade.roles.job_market_data import MarketDataService
from deeptrade.roles.job_strategy_parser import AIStrategyParser
from deeptrade.roles.job_trading_engine import AutoTradingEngine
from deeptrade.utils import BotNotFoundError, ExternalAPIError, TradingBotError, ValidationError
from deeptrade.utils.logger import get_logger

logger = get_logger(__name__, role="API")

HTTP_400 = 400
HTTP_500 = 500


class ParseStrategyRequest(BaseModel):
    strategy: str = Field(min_length=1)


class AddBotRequest(BaseModel):
    bot_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    strategy: str = Field(min_length=1)
    risk_settings: Optional[dict] = None


class ToggleBotRequest(BaseModel):
    active: bool


def _error_response(status_code: int, error: str, detail: Optional[str] = None):
    body = {'error': error}
    if detail:
        body['detail'] = detail
    return jsonify(body), status_code


def _dump(value):
    """JSON-ready form of models, dataclasses and lists of either."""
    if value is None:
        return None
    if isinstance(value, list):
        return [_dump(v) for v in value]
    if isinstance(value, BaseModel):
        return value.model_dump(mode='json')
    if hasattr(value, 'to_dict'):
        return value.to_dict()
    return value


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


def _contract_data(contract: ContractService, response):
    """
    Unwrap a ContractResponse.

    Raises:
        ConfigurationError: MODULE_ADDRESS is unset or the placeholder
        ExternalAPIError: any other failed call
    """
    if not response.success:
        validate_module_address(contract.module_address)
        raise ExternalAPIError("Contract call failed", context={'error': response.error})
    return _dump(response.data)


def register_error_handlers(app: Flask):

    @app.errorhandler(PydanticValidationError)
    def handle_request_validation(exc):
        first = exc.errors(include_url=False)[0] if exc.errors() else {}
        field = '.'.join(str(p) for p in first.get('loc', ()))
        detail = f"{field}: {first.get('msg', 'invalid value')}" if field else first.get('msg')
        logger.warning("Request validation failed", detail=detail)
        return _error_response(HTTP_400, "Invalid request", detail)

    @app.errorhandler(TradingBotError)
    def handle_domain_error(exc):
        if exc.http_status >= HTTP_500:
            logger.error(exc.public_error, error_type=type(exc).__name__, error=str(exc))
        else:
            logger.warning(exc.public_error, error_type=type(exc).__name__, error=str(exc))
        return jsonify(exc.to_dict()), exc.http_status

    @app.errorhandler(Exception)
    def handle_unexpected(exc):
        if isinstance(exc, HTTPException):
            return _error_response(exc.code, exc.name)
        logger.error("Unexpected error", error_type=type(exc).__name__, error=str(exc))
        return _error_response(HTTP_500, "Internal server error")


def create_app(
    engine: AutoTradingEngine,
    parser: AIStrategyParser,
    market_data: MarketDataService,
    contract: ContractService,
    leaderboard: LeaderboardService,
) -> Flask:
    app = Flask(__name__)
    register_error_handlers(app)

    @app.get('/api/health')
    def health():
        market = market_data.health_check()
        return jsonify({
            'status': market['overall'],
            'market_data': market,
            'contract_reachable': contract.is_reachable(),
            'engine': engine.get_status().to_dict(),
            'resilience': {
                **market_data.resilience_stats(),
                **contract.resilience_stats(),
                'gemini': parser.gemini_breaker.get_stats(),
            },
        })

    # -- strategy ------------------------------------------------------

    @app.post('/api/strategy/parse')
    def parse_strategy():
        body = ParseStrategyRequest(**_json_body())
        strategy = parser.parse_strategy(body.strategy)
        return jsonify({
            'strategy': _dump(strategy),
            'validation': parser.validate_strategy(strategy),
        })

    # -- trading engine ------------------------------------------------

    @app.get('/api/trading/status')
    def trading_status():
        return jsonify(engine.get_status().to_dict())

    @app.post('/api/trading/start')
    def trading_start():
        engine.start()
        return jsonify(engine.get_status().to_dict())

    @app.post('/api/trading/stop')
    def trading_stop():
        engine.stop()
        return jsonify(engine.get_status().to_dict())

    @app.get('/api/trading/bots')
    def list_bots():
        return jsonify({'bots': _dump(engine.get_all_bots())})

    @app.post('/api/trading/bots')
    def add_bot():
        body = AddBotRequest(**_json_body())
        result = engine.add_bot(body.bot_id, body.user_id, body.strategy, body.risk_settings)
        if not result['success']:
            raise ValidationError(result.get('error') or "Failed to add bot", context={'bot_id': body.bot_id})
        return jsonify({'success': True, 'bot': _dump(engine.get_bot(body.bot_id))}), 201

    @app.delete('/api/trading/bots/<bot_id>')
    def remove_bot(bot_id):
        if not engine.remove_bot(bot_id):
            raise BotNotFoundError(f"Bot {bot_id} not found", context={'bot_id': bot_id})
        return jsonify({'success': True})

    @app.post('/api/trading/bots/<bot_id>/toggle')
    def toggle_bot(bot_id):
        body = ToggleBotRequest(**_json_body())
        if not engine.toggle_bot(bot_id, body.active):
            raise BotNotFoundError(f"Bot {bot_id} not found", context={'bot_id': bot_id})
        return jsonify({'success': True, 'bot': _dump(engine.get_bot(bot_id))})

    @app.get('/api/trading/history')
    def trade_history():
        limit = request.args.get('limit', default=50, type=int)
        if limit < 0:
            raise ValidationError("limit must not be negative", context={'limit': limit})
        return jsonify({'trades': _dump(engine.get_trade_history(limit))})

    # -- market data ---------------------------------------------------

    @app.get('/api/market')
    def market():
        symbol = request.args.get('symbol', 'APT/USDC').upper()
        timeframe = request.args.get('timeframe', '5m')
        if '/' not in symbol:
            raise ValidationError("symbol must be a pair like APT/USDC", context={'symbol': symbol})
        try:
            validate_timeframe(timeframe)
        except ValueError as e:
            raise ValidationError(str(e), context={'timeframe': timeframe})
        data = market_data.get_comprehensive_market_data(symbol, timeframe)
        return jsonify({
            'symbol': symbol,
            'timeframe': timeframe,
            'current': _dump(data['current']),
            'verified': _dump(data['verified']),
            'indicators': _dump(data['indicators']),
            'sources': data['sources'],
        })

    # -- leaderboard ---------------------------------------------------

    @app.get('/api/leaderboard')
    def get_leaderboard():
        filters = LeaderboardFilters(
            timeframe=request.args.get('timeframe', 'all_time'),
            sort_by=request.args.get('sort_by', 'net_performance'),
            min_trades=request.args.get('min_trades', 0),
            only_active=request.args.get('only_active', 'false').lower() == 'true',
        )
        board = leaderboard.get_leaderboard(filters)
        return jsonify({
            'bots': _dump(board['bots']),
            'stats': _dump(board['stats']),
            'filters': _dump(board['filters']),
        })

    @app.get('/api/leaderboard/user/<address>')
    def user_rankings(address):
        return jsonify({'bots': _dump(leaderboard.get_user_bot_rankings(address))})

    # -- on-chain ------------------------------------------------------

    @app.get('/api/bots/<address>')
    def user_bots(address):
        return jsonify({'bots': _contract_data(contract, contract.get_user_bots(address))})

    @app.get('/api/registry/stats')
    def registry_stats():
        return jsonify(_contract_data(contract, contract.get_registry_stats()))

    @app.get('/api/subscription/<address>')
    def subscription(address):
        return jsonify({
            'subscription': _contract_data(contract, contract.get_user_subscription(address)),
            'max_bots': _contract_data(contract, contract.get_user_max_bots(address)),
            'bot_count': _contract_data(contract, contract.get_user_bot_count(address)),
        })

    return app
