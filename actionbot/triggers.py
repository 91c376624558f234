"""Decide which accounts act on an incoming market signal."""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from actionbot.accounts import AccountConfig, AccountSource, ActionsConfig
from actionbot.config import Config
from actionbot.notifier import ACTION_QUEUED, Notifier
from actionbot.store.schemas import Action, Signal, TradeEvent, WalletProfile
from actionbot.store.service import ActionStore

logger = logging.getLogger(__name__)

FRESH_INSIDER_MAX_BETS = 3
FRESH_WALLET_MAX_BETS = 10


def parse_number(value: Any) -> float:
    """Price and size arrive as strings or numbers; anything unparsable is 0."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        return float(str(value).strip())
    except ValueError:
        return 0.0


def notional(trade: TradeEvent | None) -> float:
    if trade is None:
        return 0.0
    return parse_number(trade.price) * parse_number(trade.size)


def shorten_address(address: str) -> str:
    if len(address) <= 10:
        return address
    return f"{address[:6]}...{address[-4:]}"


def should_trigger(config: ActionsConfig, profile: WalletProfile, trade: TradeEvent | None) -> bool:
    if not config.enabled:
        return False

    trigger = config.trigger_type
    if trigger == "fresh_insider":
        return profile.bet_count <= FRESH_INSIDER_MAX_BETS
    if trigger == "fresh_wallet":
        return profile.bet_count <= FRESH_WALLET_MAX_BETS
    if trigger == "big_trade":
        return trade is not None and notional(trade) >= config.min_trade_size
    if trigger == "any_trade":
        return trade is not None
    if trigger == "custom_bet_count":
        return profile.bet_count <= config.custom_bet_count
    return False


def build_action(
    account: AccountConfig,
    profile: WalletProfile,
    trade: TradeEvent | None,
    source_event_id: str,
    *,
    base_url: str = Config.MARKET_BASE_URL,
    now: datetime | None = None,
) -> Action:
    """Fresh pending action with wallet/trade snapshots and derived URLs."""
    now = now or datetime.now(timezone.utc)
    base = base_url.rstrip("/")
    market_url = ""
    if trade is not None and trade.market_slug:
        market_url = f"{base}/event/{trade.market_slug}"

    return Action(
        id=str(uuid.uuid4()),
        account_id=account.id,
        source_event_id=source_event_id,
        trigger_type=account.actions.trigger_type,
        wallet_address=profile.address,
        wallet_profile=profile,
        trade_event=trade,
        market_url=market_url,
        profile_url=f"{base}/profile/{profile.address}",
        status="pending",
        created_at=now,
        updated_at=now,
    )


class TriggerEvaluator:
    """Turn signals into queued actions, at most one per account and source event."""

    def __init__(
        self,
        store: ActionStore,
        accounts: AccountSource,
        notifier: Notifier | None = None,
        *,
        base_url: str = Config.MARKET_BASE_URL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.notifier = notifier
        self.base_url = base_url
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def evaluate(self, signal: Signal) -> list[Action]:
        source_event_id = signal.source_event_id
        profile = signal.wallet_profile
        trade = signal.trade

        created: list[Action] = []
        for account in self.accounts.list_accounts():
            if not account.enabled or not account.actions.enabled:
                continue
            if not should_trigger(account.actions, profile, trade):
                continue

            action = await self.create_action(account, profile, trade, source_event_id)
            if action is not None:
                created.append(action)
        return created

    async def create_action(
        self,
        account: AccountConfig,
        profile: WalletProfile,
        trade: TradeEvent | None,
        source_event_id: str,
    ) -> Action | None:
        """Queue an action; None when this account already handled the event."""
        action = build_action(
            account,
            profile,
            trade,
            source_event_id,
            base_url=self.base_url,
            now=self._clock(),
        )
        stored = await self.store.create_if_absent(action)
        if stored is None:
            logger.debug(f"Skipping duplicate event {source_event_id} for account {account.id}")
            return None

        logger.info(
            f"Action queued: account={account.id} wallet={shorten_address(profile.address)} "
            f"trigger={account.actions.trigger_type}"
        )
        if self.notifier is not None:
            self.notifier.send_action(ACTION_QUEUED, stored)
        return stored
