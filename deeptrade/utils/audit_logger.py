"""
Audit trail for sensitive operations: trades, bot registration, engine state.

Entries go to the audit_log table when Supabase is configured and to the
"audit" logger always.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from deeptrade.database import get_db


class AuditLogger:
    """
    Example:
        audit = AuditLogger()
        audit.log_trade("bot-1", "APT/USDC", "buy", 100.0, 12.5, tx_hash="0xabc", is_sim=True)
        audit.log_bot_toggled("bot-1", False)
    """

    def __init__(self, db=None):
        self.db = db if db is not None else get_db()
        self.logger = logging.getLogger("audit")

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(
                '[%(asctime)s] AUDIT: %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    def log_trade(
        self,
        bot_id: str,
        symbol: str,
        action: str,
        amount: float,
        price: float,
        tx_hash: Optional[str] = None,
        is_sim: bool = True,
    ):
        self._write({
            "event_type": "TRADE_EXECUTED",
            "bot_id": bot_id,
            "symbol": symbol,
            "side": action.upper(),
            "amount": float(amount),
            "price": float(price),
            "tx_hash": tx_hash,
            "is_sim": is_sim,
        })
        self.logger.info(
            f"TRADE {action.upper()} {amount:.2f} USDC of {symbol} @ {price} "
            f"bot={bot_id} tx={tx_hash} (sim={is_sim})"
        )

    def log_bot_added(self, bot_id: str, user_id: str, symbol: str):
        self._write({"event_type": "BOT_ADDED", "bot_id": bot_id, "user": user_id, "symbol": symbol})
        self.logger.info(f"BOT ADDED {bot_id} for {user_id} on {symbol}")

    def log_bot_removed(self, bot_id: str):
        self._write({"event_type": "BOT_REMOVED", "bot_id": bot_id})
        self.logger.info(f"BOT REMOVED {bot_id}")

    def log_bot_toggled(self, bot_id: str, is_active: bool):
        self._write({"event_type": "BOT_TOGGLED", "bot_id": bot_id, "new_value": str(is_active)})
        self.logger.info(f"BOT {bot_id} active={is_active}")

    def log_engine_state(self, old_state: str, new_state: str, user: str = "system"):
        self._write({
            "event_type": "ENGINE_STATE_CHANGED",
            "old_value": old_state,
            "new_value": new_state,
            "user": user,
        })
        self.logger.info(f"ENGINE {old_state} -> {new_state} (by {user})")

    def _write(self, entry: dict):
        entry["timestamp"] = datetime.now(timezone.utc).isoformat()
        if not self.db:
            return
        try:
            self.db.table("audit_log").insert(entry).execute()
        except Exception as e:
            # Audit failures never abort the audited operation
            self.logger.error(f"Failed to write audit log: {e}")


_audit_logger = None


def get_audit_logger() -> AuditLogger:
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
