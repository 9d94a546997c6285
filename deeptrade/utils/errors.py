"""
Exception hierarchy for the DeepTrade bot engine.

Every exception carries a context dict that is folded into the message, and
an HTTP status plus a short public label the REST API answers with.
"""

HTTP_BAD_REQUEST = 400
HTTP_NOT_FOUND = 404
HTTP_INTERNAL_ERROR = 500
HTTP_BAD_GATEWAY = 502
HTTP_UNAVAILABLE = 503


class TradingBotError(Exception):
    """
    Base exception for all engine errors.

    Example:
        raise ExternalAPIError("Contract call failed", context={'function': 'get_user_bots'})
        # str(e) == "Contract call failed | Context: function=get_user_bots"
        # e.to_dict() == {'error': 'Upstream service unavailable', 'detail': 'Contract call failed'}
    """
    http_status = HTTP_INTERNAL_ERROR
    public_error = "Internal server error"

    def __init__(self, message: str, context: dict = None):
        self.message = message
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            msg = f"{msg} | Context: {ctx_str}"
        return msg

    def to_dict(self) -> dict:
        """API error body; context stays in the logs."""
        return {'error': self.public_error, 'detail': self.message}


class DatabaseError(TradingBotError):
    """Supabase query or insert failed (bot_config, bot_trades, system_logs)."""
    http_status = HTTP_UNAVAILABLE
    public_error = "Database unavailable"


class ExternalAPIError(TradingBotError):
    """
    Call to the Aptos fullnode, CoinMarketCap, the exchange or Gemini failed.

    Also raised when a transaction fails on chain or is not confirmed in time.
    """
    http_status = HTTP_BAD_GATEWAY
    public_error = "Upstream service unavailable"


class CircuitBreakerOpenError(ExternalAPIError):
    """A breaker is OPEN and short-circuits calls to its service."""


class ConfigurationError(TradingBotError):
    """MODULE_ADDRESS unset or still the placeholder, slippage outside (0, 0.1], etc."""
    http_status = HTTP_UNAVAILABLE
    public_error = "Service not configured"


class ValidationError(TradingBotError):
    """Strategy, trade signal or request parameter rejected before anything runs."""
    http_status = HTTP_BAD_REQUEST
    public_error = "Validation failed"


class BotNotFoundError(TradingBotError):
    """No bot is registered with the engine under the requested id."""
    http_status = HTTP_NOT_FOUND
    public_error = "Bot not found"
