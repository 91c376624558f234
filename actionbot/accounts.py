"""Account configuration consumed by the pipeline (owned elsewhere, read-only here)."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from actionbot.store.schemas import ScreenshotMode, TriggerType

logger = logging.getLogger(__name__)


class ActionsConfig(BaseModel):
    """Per-account automated action settings."""

    enabled: bool = False
    trigger_type: TriggerType = "fresh_insider"
    custom_bet_count: int = Field(default=5, ge=0)
    min_trade_size: float = Field(default=100.0, ge=0)
    screenshot_mode: ScreenshotMode = "none"
    custom_prompt: str = ""
    example_tweets: list[str] = Field(default_factory=list)
    use_historical: bool = True
    review_enabled: bool = True
    max_retries: int = 3
    retry_backoff_secs: int = 60


class AccountConfig(BaseModel):
    id: str
    username: str = ""
    enabled: bool = True
    access_token: str = ""
    actions: ActionsConfig = Field(default_factory=ActionsConfig)


class AccountSource(Protocol):
    """Read-only view of the externally managed account list."""

    def list_accounts(self) -> list[AccountConfig]:
        ...

    def get_account(self, account_id: str) -> AccountConfig | None:
        ...


class StaticAccountSource:
    """In-memory account list."""

    def __init__(self, accounts: list[AccountConfig] | None = None) -> None:
        self._accounts = {a.id: a for a in (accounts or [])}

    def list_accounts(self) -> list[AccountConfig]:
        return list(self._accounts.values())

    def get_account(self, account_id: str) -> AccountConfig | None:
        return self._accounts.get(account_id)

    def put(self, account: AccountConfig) -> None:
        self._accounts[account.id] = account


class JsonAccountSource:
    """Accounts read from a JSON file on every call.

    The file holds either a list of accounts or ``{"accounts": [...]}``.
    Re-reading per call means edits apply on the next scheduler pass.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> list[AccountConfig]:
        if not self.path.exists():
            logger.warning(f"Accounts file not found: {self.path}")
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Unable to read accounts file {self.path}: {e}")
            return []

        items = raw.get("accounts", []) if isinstance(raw, dict) else raw
        if not isinstance(items, list):
            logger.error(f"Accounts file {self.path} has no account list")
            return []

        accounts: list[AccountConfig] = []
        for item in items:
            try:
                accounts.append(AccountConfig.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping invalid account entry in {self.path}: {e}")
        return accounts

    def list_accounts(self) -> list[AccountConfig]:
        return self._load()

    def get_account(self, account_id: str) -> AccountConfig | None:
        for account in self._load():
            if account.id == account_id:
                return account
        return None
