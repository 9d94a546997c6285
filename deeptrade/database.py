"""
Optional Supabase persistence.

The engine runs without a database; every helper here degrades to a no-op
or a default when SUPABASE_URL / SUPABASE_KEY are unset.
"""

import os
import logging

from dotenv import load_dotenv
from supabase import create_client, Client, ClientOptions

from deeptrade.utils import retry_db_operation, SimpleCache, DatabaseError, safe_execute

load_dotenv()

logger = logging.getLogger(__name__)

# bot_config lookups are cached for 5 minutes; BOT_STATUS uses a shorter TTL
_config_cache = SimpleCache(default_ttl=300, max_size=100)


class Database:
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            url = os.environ.get("SUPABASE_URL")
            key = os.environ.get("SUPABASE_KEY")
            if not url or not key:
                logger.warning("Supabase credentials missing, persistence disabled.")
                return None

            opts = ClientOptions(postgrest_client_timeout=20)
            cls._instance = create_client(url, key, options=opts)
        return cls._instance


def get_db() -> Client:
    return Database()


@retry_db_operation(max_attempts=2)
def get_config(key: str, default=None, db=None, ttl: float = None):
    """
    Read a value from the bot_config table (cached).

    Raises:
        DatabaseError: query failed after retries
    """
    cache_key = f"config:{key}"
    cached = _config_cache.get(cache_key)
    if cached is not None:
        return cached

    try:
        db = db if db is not None else get_db()
        if not db:
            return default

        result = db.table('bot_config').select('value').eq('key', key).execute()
        if not result.data:
            return default

        value = result.data[0]['value']
        if isinstance(value, str):
            value = value.replace('"', '').strip()
        _config_cache.set(cache_key, value, ttl=ttl)
        return value

    except Exception as e:
        raise DatabaseError(
            f"Failed to get config '{key}'",
            context={'key': key, 'error': str(e)}
        )


def get_config_safe(key: str, default=None, db=None, ttl: float = None):
    """get_config that never raises."""
    return safe_execute(
        lambda: get_config(key, default, db=db, ttl=ttl),
        fallback=default,
        error_context={'key': key}
    )


def clear_config_cache():
    _config_cache.clear()


def is_bot_stopped(db=None) -> bool:
    """True when the dashboard Emergency Stop set BOT_STATUS=STOPPED."""
    if db is None and get_db() is None:
        return False
    status = get_config_safe('BOT_STATUS', default='ACTIVE', db=db, ttl=10)
    return str(status).upper() == 'STOPPED'


def record_trade(db, trade: dict) -> bool:
    """Insert one executed trade into bot_trades. Returns False on failure."""
    if not db:
        return False
    try:
        db.table('bot_trades').insert(trade).execute()
        return True
    except Exception as e:
        logger.warning(f"bot_trades insert failed: {e}")
        return False
