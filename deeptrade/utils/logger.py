"""
Structured JSON logging.

Every line is a JSON object with timestamp, level, message, the service
role (e.g. "Engine", "MarketData") and any context fields passed as kwargs.
"""

import json
import logging
import os
import time
from datetime import datetime, timezone
from functools import wraps
from typing import Callable, Dict, Optional


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z')


class JSONFormatter(logging.Formatter):
    """Pass JSON messages through unchanged, wrap anything else."""

    def format(self, record):
        msg = record.getMessage()
        try:
            json.loads(msg)
            return msg
        except (json.JSONDecodeError, ValueError):
            return json.dumps({
                'timestamp': _utc_now(),
                'level': record.levelname,
                'message': msg,
                'module': record.module,
            })


class StructuredLogger:
    """
    Example:
        logger = StructuredLogger(__name__, role="Engine")
        logger.info("Bot added", bot_id="bot-1", symbol="APT/USDC")
        # {"timestamp": "...", "level": "INFO", "message": "Bot added", "role": "Engine", "bot_id": "bot-1", ...}
    """

    def __init__(self, name: str, role: Optional[str] = None):
        self.logger = logging.getLogger(name)
        self.role = role

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(JSONFormatter())
            self.logger.addHandler(handler)
            level = logging.DEBUG if os.environ.get("ENABLE_DEBUG_LOGGING", "").lower() == "true" else logging.INFO
            self.logger.setLevel(level)

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def success(self, message: str, **kwargs):
        self._log(logging.INFO, message, level_name="SUCCESS", **kwargs)

    def _log(self, level: int, message: str, level_name: Optional[str] = None, **kwargs):
        if not self.logger.isEnabledFor(level):
            return
        data = {
            'timestamp': _utc_now(),
            'level': level_name or logging.getLevelName(level),
            'message': message,
        }
        if self.role:
            data['role'] = self.role
        data.update(kwargs)
        self.logger.log(level, json.dumps(data, default=str))


def log_execution_time(logger: StructuredLogger, operation: Optional[str] = None):
    """
    Decorator logging duration and outcome of the wrapped call.

    Usage:
        @log_execution_time(logger, operation="fetch_ohlcv")
        def get_historical_data(self, symbol, timeframe):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            op_name = operation or func.__name__
            start = time.time()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"{op_name} failed",
                    operation=op_name,
                    duration_ms=round((time.time() - start) * 1000, 2),
                    status="error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise
            logger.debug(
                f"{op_name} completed",
                operation=op_name,
                duration_ms=round((time.time() - start) * 1000, 2),
                status="success",
            )
            return result
        return wrapper
    return decorator


_loggers: Dict[str, StructuredLogger] = {}


def get_logger(name: str, role: Optional[str] = None) -> StructuredLogger:
    key = f"{name}:{role}" if role else name
    if key not in _loggers:
        _loggers[key] = StructuredLogger(name, role)
    return _loggers[key]


def log_activity(db, role: str, message: str, level: str = "INFO"):
    """
    Log a message and mirror it into the system_logs table.

    db may be None (no Supabase configured); the message is still logged.
    """
    logger = get_logger("deeptrade.activity", role=role)
    if level == "ERROR":
        logger.error(message)
    elif level == "WARNING":
        logger.warning(message)
    else:
        logger.info(message)

    if db is None:
        return
    try:
        db.table("system_logs").insert({
            "role": role,
            "message": message,
            "level": level,
        }).execute()
    except Exception as e:
        logger.warning("system_logs insert failed", error=str(e))
