import os
import threading
import time

import schedule

from deeptrade.api import create_app
from deeptrade.config import get_environment_settings, get_settings, validate_settings
from deeptrade.database import get_db
from deeptrade.roles.job_contract import ContractService
from deeptrade.roles.job_leaderboard import LeaderboardService
from deeptrade.roles.job_market_data import MarketDataService
from deeptrade.roles.job_strategy_parser import AIStrategyParser
from deeptrade.roles.job_trading_engine import AutoTradingEngine
from deeptrade.utils.audit_logger import get_audit_logger
from deeptrade.utils.logger import log_activity

HEARTBEAT_SECS = 60
LEADERBOARD_REFRESH_SECS = 30
WATCHDOG_STALL_SECS = 300

# Thread-safe heartbeat tracking
_heartbeat_lock = threading.Lock()
_last_heartbeat = time.time()


def get_heartbeat():
    with _heartbeat_lock:
        return _last_heartbeat


def set_heartbeat():
    global _last_heartbeat
    with _heartbeat_lock:
        _last_heartbeat = time.time()


def build_services(settings=None, db=None):
    """Wire the roles together. Returns a dict keyed by role name."""
    settings = settings or get_settings()
    market_data = MarketDataService(settings)
    parser = AIStrategyParser(settings)
    contract = ContractService(settings)
    engine = AutoTradingEngine(
        market_data=market_data,
        strategy_parser=parser,
        contract=contract,
        settings=settings,
        db=db,
        audit=get_audit_logger(),
    )
    return {
        'settings': settings,
        'db': db,
        'market_data': market_data,
        'parser': parser,
        'contract': contract,
        'engine': engine,
        'leaderboard': LeaderboardService(contract),
    }


def write_heartbeat(db):
    set_heartbeat()
    if db is None:
        return
    try:
        db.table("bot_config").upsert({"key": "LAST_HEARTBEAT", "value": str(time.time())}).execute()
    except Exception as e:
        log_activity(None, "System", f"Heartbeat DB error: {e}", "WARNING")


def refresh_leaderboard(leaderboard):
    set_heartbeat()
    try:
        board = leaderboard.refresh()
        log_activity(None, "Leaderboard", f"Refreshed {len(board['bots'])} bots")
    except Exception as e:
        log_activity(None, "Leaderboard", f"Refresh failed: {e}", "ERROR")


def run_scheduler(services):
    """Background jobs: heartbeat and leaderboard refresh."""
    db = services['db']
    schedule.every(HEARTBEAT_SECS).seconds.do(write_heartbeat, db)
    schedule.every(LEADERBOARD_REFRESH_SECS).seconds.do(refresh_leaderboard, services['leaderboard'])

    while True:
        try:
            schedule.run_pending()
        except Exception as e:
            log_activity(db, "System", f"Scheduler loop error: {e}", "ERROR")
        time.sleep(1)


def start_watchdog(db):
    """Exit the process if background jobs stop ticking."""
    while True:
        time.sleep(60)
        elapsed = time.time() - get_heartbeat()
        if elapsed > WATCHDOG_STALL_SECS:
            log_activity(db, "System", f"Watchdog: scheduler stalled for {elapsed:.0f}s, restarting", "ERROR")
            os._exit(1)


def start():
    settings = get_settings()
    db = get_db()

    env = get_environment_settings(settings)
    log_activity(db, "System", f"DeepTrade engine starting ({settings.app_env}, network={settings.network})")
    if settings.is_production:
        check = validate_settings(settings)
        for error in check['errors']:
            log_activity(db, "System", f"Config: {error}", "WARNING")
    if not env['enable_real_trading']:
        log_activity(db, "System", "Paper trading mode: trades are simulated")

    services = build_services(settings, db)
    services['engine'].start()
    write_heartbeat(db)

    threading.Thread(target=run_scheduler, args=(services,), daemon=True).start()
    threading.Thread(target=start_watchdog, args=(db,), daemon=True).start()

    app = create_app(
        engine=services['engine'],
        parser=services['parser'],
        market_data=services['market_data'],
        contract=services['contract'],
        leaderboard=services['leaderboard'],
    )
    try:
        log_activity(db, "System", f"REST API listening on 0.0.0.0:{settings.api_port}")
        app.run(host='0.0.0.0', port=settings.api_port)
    finally:
        services['engine'].stop()
        log_activity(db, "System", "DeepTrade engine stopped")


if __name__ == "__main__":
    start()
