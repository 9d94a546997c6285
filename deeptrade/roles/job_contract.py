import time
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

import requests

from deeptrade.config import Settings, get_settings, validate_module_address
from deeptrade.models import (
    BotPerformanceData,
    ContractFunction,
    ContractResponse,
    CreateBotParams,
    RegistryStats,
    SubscriptionPrices,
    SubscriptionTier,
    TradeType,
    TradingBotData,
    UserSubscription,
)
from deeptrade.utils import CircuitBreaker, ExternalAPIError, retry_with_backoff
from deeptrade.utils.formatters import units_to_micro
from deeptrade.utils.logger import get_logger

# Wallet callback: takes an entry-function payload, returns at least {'hash': ...}
SignAndSubmit = Callable[[Dict[str, Any]], Dict[str, Any]]


def contract_call(error_message: str):
    """Turn any exception raised by a contract method into a failed ContractResponse."""
    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            try:
                validate_module_address(self.module_address)
                return func(self, *args, **kwargs)
            except Exception as e:
                self.logger.error(error_message, function=func.__name__, error=str(e))
                return ContractResponse.fail(str(e) or error_message)
        return wrapper
    return decorator


class ContractService:
    """
    THE NOTARY (On-chain Gateway)
    Role: Marshals calls into the trading_bot Move module over the Aptos
    fullnode REST API. View functions are called directly; entry functions
    are built as JSON payloads and handed to a wallet signing callback.

    Every public method returns a ContractResponse and never raises.
    """

    def __init__(self, settings: Optional[Settings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or get_settings()
        self.logger = get_logger(__name__, role="Contract")
        self.module_address = self.settings.module_address
        self.node_url = self.settings.node_url.rstrip('/')

        self.session = session or requests.Session()
        self.session.headers.update({'Content-Type': 'application/json'})
        if self.settings.aptos_api_key:
            self.session.headers.update({'Authorization': f"Bearer {self.settings.aptos_api_key}"})

        self.node_breaker = CircuitBreaker(name="APTOS_NODE", failure_threshold=5, timeout=60.0)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _function_id(self, function: ContractFunction) -> str:
        return f"{self.module_address}::trading_bot::{function.value}"

    def build_entry_payload(self, function: ContractFunction, arguments: List[Any]) -> Dict[str, Any]:
        return {
            'type': 'entry_function_payload',
            'function': self._function_id(function),
            'type_arguments': [],
            'arguments': arguments,
        }

    @retry_with_backoff(max_attempts=3, min_wait=0.5, max_wait=4.0, service="aptos_view")
    def _post_view(self, body: dict) -> list:
        try:
            response = self.session.post(f"{self.node_url}/view", json=body, timeout=15)
        except requests.RequestException as e:
            raise ExternalAPIError("Aptos view request failed", context={'function': body['function'], 'error': str(e)})

        if response.status_code >= 500:
            raise ExternalAPIError(
                "Aptos node error",
                context={'function': body['function'], 'status': response.status_code},
            )
        if response.status_code != 200:
            # 4xx: bad arguments or missing function, retrying will not help
            raise ValueError(f"View {body['function']} rejected ({response.status_code}): {response.text[:200]}")
        return response.json()

    def view(self, function: ContractFunction, arguments: Optional[List[Any]] = None) -> list:
        body = {
            'function': self._function_id(function),
            'type_arguments': [],
            'arguments': [str(a) if isinstance(a, int) and not isinstance(a, bool) else a for a in (arguments or [])],
        }
        self.logger.debug("View call", function=function.value, arguments=body['arguments'])
        return self.node_breaker.call_function(self._post_view, body)

    def wait_for_transaction(self, tx_hash: str, timeout_secs: Optional[float] = None) -> dict:
        """
        Block until the transaction is committed.

        Raises:
            ExternalAPIError: timeout, or the transaction aborted on chain
        """
        timeout_secs = timeout_secs or self.settings.confirmation_timeout_ms / 1000
        deadline = time.time() + timeout_secs

        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise ExternalAPIError("Transaction confirmation timed out", context={'hash': tx_hash})
            try:
                response = self.session.get(
                    f"{self.node_url}/transactions/wait_by_hash/{tx_hash}",
                    timeout=max(1.0, remaining),
                )
            except requests.RequestException as e:
                raise ExternalAPIError("Transaction lookup failed", context={'hash': tx_hash, 'error': str(e)})

            if response.status_code == 404:
                time.sleep(min(1.0, max(0.0, remaining)))
                continue
            if response.status_code != 200:
                raise ExternalAPIError(
                    "Transaction lookup failed",
                    context={'hash': tx_hash, 'status': response.status_code},
                )

            tx = response.json()
            if tx.get('type') == 'pending_transaction':
                time.sleep(min(1.0, max(0.0, remaining)))
                continue
            if not tx.get('success', False):
                raise ExternalAPIError(
                    "Transaction failed on chain",
                    context={'hash': tx_hash, 'vm_status': tx.get('vm_status')},
                )
            return tx

    def _submit(
        self,
        function: ContractFunction,
        arguments: List[Any],
        sign_and_submit: SignAndSubmit,
        wait: bool = True,
    ) -> dict:
        if sign_and_submit is None:
            raise ExternalAPIError("No wallet signer available", context={'function': function.value})

        payload = self.build_entry_payload(function, arguments)
        self.logger.info("Submitting transaction", function=function.value)
        result = sign_and_submit(payload) or {}

        tx_hash = result.get('hash')
        if tx_hash and wait:
            tx = self.wait_for_transaction(tx_hash)
            self.logger.success("Transaction confirmed", function=function.value, hash=tx_hash)
            return tx
        return result

    # ------------------------------------------------------------------
    # Entry functions
    # ------------------------------------------------------------------

    @contract_call("Failed to create bot")
    def create_bot(self, params: CreateBotParams, sign_and_submit: SignAndSubmit) -> ContractResponse:
        tx = self._submit(
            ContractFunction.CREATE_BOT,
            [
                params.name,
                params.strategy,
                str(params.initial_balance),
                str(params.max_position_size),
                str(params.stop_loss_percent),
                str(params.max_trades_per_day),
                str(params.max_daily_loss),
            ],
            sign_and_submit,
        )
        bot_id = None
        for event in tx.get('events', []):
            if str(event.get('type', '')).endswith('::trading_bot::BotCreated'):
                bot_id = int(event.get('data', {}).get('bot_id', 0))
                break
        if bot_id is None:
            bot_id = int(time.time() * 1000)
        return ContractResponse.ok({'bot_id': bot_id, 'hash': tx.get('hash')})

    @contract_call("Failed to execute trade")
    def execute_trade(
        self,
        bot_id: str,
        action: str,
        amount: float,
        price: float,
        sign_and_submit: SignAndSubmit,
        wait_for_confirmation: bool = True,
    ) -> ContractResponse:
        trade_type = TradeType.BUY if action == 'buy' else TradeType.SELL
        tx = self._submit(
            ContractFunction.EXECUTE_TRADE,
            [str(bot_id), int(trade_type), str(units_to_micro(amount)), str(units_to_micro(price))],
            sign_and_submit,
            wait=wait_for_confirmation,
        )
        return ContractResponse.ok({'hash': tx.get('hash')})

    @contract_call("Failed to purchase subscription")
    def purchase_subscription(self, tier: SubscriptionTier, sign_and_submit: SignAndSubmit) -> ContractResponse:
        tier = SubscriptionTier(tier)
        if tier == SubscriptionTier.FREE:
            raise ValueError("FREE tier cannot be purchased")
        tx = self._submit(ContractFunction.PURCHASE_SUBSCRIPTION, [str(int(tier))], sign_and_submit)
        return ContractResponse.ok({'success': True, 'hash': tx.get('hash')})

    # ------------------------------------------------------------------
    # View functions
    # ------------------------------------------------------------------

    @contract_call("Failed to fetch user bots")
    def get_user_bots(self, address: str) -> ContractResponse:
        response = self.view(ContractFunction.GET_USER_BOTS, [address])
        if not response or not response[0]:
            return ContractResponse.ok([])

        bots = []
        for index, bot in enumerate(response[0]):
            bots.append(TradingBotData(
                owner=address,
                bot_id=int(bot.get('bot_id', index)),
                name=bot.get('name') or f"Bot {index + 1}",
                strategy=bot.get('strategy') or "No strategy defined",
                balance=int(bot.get('balance') or 0),
                performance=int(bot.get('net_performance') or 0),
                total_loss=int(bot.get('total_loss') or 0),
                active=bool(bot.get('active')),
                total_trades=int(bot.get('total_trades') or 0),
                created_at=int(bot.get('created_at') or time.time()),
            ))
        return ContractResponse.ok(bots)

    def get_bot_details(self, owner: str, bot_id) -> Optional[TradingBotData]:
        """
        Full get_bot record, or None when the call fails or the reply is short.

        Reply layout: owner, name, strategy, balance, performance, total_loss,
        active, total_trades, created_at[, last_trade_at, daily_trades].
        """
        try:
            validate_module_address(self.module_address)
            r = self.view(ContractFunction.GET_BOT, [owner, str(bot_id)])
        except Exception as e:
            self.logger.warning("get_bot failed", owner=owner, bot_id=str(bot_id), error=str(e))
            return None

        if not r or len(r) < 9:
            return None
        return TradingBotData(
            owner=r[0],
            bot_id=int(bot_id),
            name=r[1],
            strategy=r[2],
            balance=int(r[3]),
            performance=int(r[4]),
            total_loss=int(r[5]),
            active=bool(r[6]),
            total_trades=int(r[7]),
            created_at=int(r[8]),
            last_trade_at=int(r[9]) if len(r) > 9 and r[9] else 0,
            daily_trades=int(r[10]) if len(r) > 10 and r[10] else 0,
        )

    @contract_call("Failed to fetch bot data")
    def get_user_bot(self, address: str, bot_id: int = 0) -> ContractResponse:
        has_bot = self.view(ContractFunction.HAS_BOT, [address])
        if not has_bot or not has_bot[0]:
            return ContractResponse.fail("No bot found for this user")
        bot = self.get_bot_details(address, bot_id)
        if bot is None:
            return ContractResponse.fail("Failed to fetch bot data")
        return ContractResponse.ok(bot)

    @contract_call("Failed to fetch leaderboard")
    def get_leaderboard(self) -> ContractResponse:
        response = self.view(ContractFunction.GET_LEADERBOARD)
        entries = response[0] if response else None
        if not isinstance(entries, list):
            return ContractResponse.ok([])
        return ContractResponse.ok([
            BotPerformanceData(
                bot_id=int(e.get('bot_id') or 0),
                owner=e.get('owner') or '',
                name=e.get('name') or '',
                net_performance=int(e.get('net_performance') or 0),
                total_trades=int(e.get('total_trades') or 0),
                win_rate=int(e.get('win_rate') or 0),
            )
            for e in entries
        ])

    @contract_call("Failed to fetch registry stats")
    def get_registry_stats(self) -> ContractResponse:
        response = self.view(ContractFunction.GET_REGISTRY_STATS)
        return ContractResponse.ok(RegistryStats(
            total_bots=int(response[0] if response else 0),
            total_volume=int(response[1] if len(response) > 1 else 0),
        ))

    @contract_call("Failed to check bot existence")
    def has_bot(self, address: str) -> ContractResponse:
        response = self.view(ContractFunction.HAS_BOT, [address])
        return ContractResponse.ok(bool(response[0]) if response else False)

    @contract_call("Failed to fetch user subscription")
    def get_user_subscription(self, address: str) -> ContractResponse:
        tier, expires_at, auto_renew = self.view(ContractFunction.GET_USER_SUBSCRIPTION, [address])[:3]
        return ContractResponse.ok(UserSubscription(
            tier=SubscriptionTier(int(tier)),
            expires_at=int(expires_at),
            auto_renew=bool(auto_renew),
        ))

    @contract_call("Failed to fetch subscription tier")
    def get_current_subscription_tier(self, address: str) -> ContractResponse:
        response = self.view(ContractFunction.GET_CURRENT_SUBSCRIPTION_TIER, [address])
        return ContractResponse.ok(SubscriptionTier(int(response[0])))

    @contract_call("Failed to fetch user bot limit")
    def get_user_max_bots(self, address: str) -> ContractResponse:
        return ContractResponse.ok(int(self.view(ContractFunction.GET_USER_MAX_BOTS, [address])[0]))

    @contract_call("Failed to fetch user bot count")
    def get_user_bot_count(self, address: str) -> ContractResponse:
        return ContractResponse.ok(int(self.view(ContractFunction.GET_USER_BOT_COUNT, [address])[0]))

    @contract_call("Failed to fetch subscription prices")
    def get_subscription_prices(self) -> ContractResponse:
        basic, premium = self.view(ContractFunction.GET_SUBSCRIPTION_PRICES)[:2]
        return ContractResponse.ok(SubscriptionPrices(basic_price=int(basic), premium_price=int(premium)))

    @contract_call("Failed to fetch bot USDC balance")
    def get_bot_usdc_balance(self, owner: str, bot_id) -> ContractResponse:
        """Balance in micro USDC."""
        response = self.view(ContractFunction.GET_BOT_USDC_BALANCE, [owner, str(bot_id)])
        return ContractResponse.ok(int(response[0]))

    def is_reachable(self) -> bool:
        return self.node_breaker.is_available

    def resilience_stats(self) -> dict:
        return {'aptos_node': self.node_breaker.get_stats()}
