"""Pydantic schemas for actions, signals and store views."""
from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


TriggerType = Literal["fresh_insider", "fresh_wallet", "big_trade", "any_trade", "custom_bet_count"]
ScreenshotMode = Literal["none", "market", "profile"]
ActionStatus = Literal[
    "pending",
    "fetching",
    "generating",
    "reviewing",
    "capturing",
    "posting",
    "completed",
    "failed",
]

IN_FLIGHT_STATUSES: tuple[str, ...] = ("fetching", "generating", "reviewing", "capturing", "posting")
NON_TERMINAL_STATUSES: tuple[str, ...] = ("pending",) + IN_FLIGHT_STATUSES


class WalletProfile(BaseModel):
    address: str
    bet_count: int = Field(default=0, ge=0)
    freshness_level: str = ""
    join_date: str = ""


class TradeEvent(BaseModel):
    event_id: str | None = None
    market_name: str = ""
    market_slug: str = ""
    event_title: str = ""
    side: str = ""
    outcome: str = ""
    price: float | str | None = None
    size: float | str | None = None


class Signal(BaseModel):
    """Market signal consumed from the upstream event source."""

    event_id: int | str | None = None
    wallet_profile: WalletProfile
    trade: TradeEvent | None = None

    @property
    def source_event_id(self) -> str:
        if self.event_id is not None and str(self.event_id).strip():
            return str(self.event_id).strip()
        if self.trade is not None and self.trade.event_id:
            return self.trade.event_id
        return f"wallet:{self.wallet_profile.address.lower()}"


class Action(BaseModel):
    id: str
    account_id: str
    source_event_id: str
    trigger_type: TriggerType
    wallet_address: str
    wallet_profile: WalletProfile | None = None
    trade_event: TradeEvent | None = None
    market_url: str = ""
    profile_url: str = ""
    status: ActionStatus = "pending"
    draft_text: str = ""
    reviewed_text: str = ""
    final_text: str = ""
    screenshot_path: str = ""
    posted_id: str = ""
    tokens_used: int = 0
    retry_count: int = 0
    next_retry_at: datetime | None = None
    error_message: str = ""
    created_at: datetime
    updated_at: datetime
    processed_at: datetime | None = None

    @property
    def market_slug(self) -> str:
        return self.trade_event.market_slug if self.trade_event is not None else ""

    @property
    def is_terminal(self) -> bool:
        if self.status == "completed":
            return True
        return self.status == "failed" and self.next_retry_at is None


class ActionHistoryItem(BaseModel):
    id: str
    account_id: str
    wallet_address: str
    market_name: str
    post_text: str
    posted_id: str
    status: ActionStatus
    retry_count: int
    created_at: datetime
    processed_at: datetime | None = None
    error_message: str = ""


class ActionStats(BaseModel):
    total_actions: int = 0
    pending_count: int = 0
    in_progress_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    retrying_count: int = 0
    total_tokens_used: int = 0


class RecoveryResult(BaseModel):
    requeued: int = 0
    failed: int = 0
