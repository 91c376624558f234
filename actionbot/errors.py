"""Error taxonomy for the action pipeline."""
from __future__ import annotations


class ActionError(Exception):
    """Base class for pipeline errors."""


class DuplicateEvent(ActionError):
    """An action already exists for this (account_id, source_event_id)."""

    def __init__(self, account_id: str, source_event_id: str) -> None:
        super().__init__(f"action already exists for account={account_id} event={source_event_id}")
        self.account_id = account_id
        self.source_event_id = source_event_id


class GenerationError(ActionError):
    """LLM draft/review failed or returned unusable content."""


class CaptureError(ActionError):
    """Screenshot capture failed. Never fatal to an action."""


class PostingError(ActionError):
    """Publishing failed, including rate-limit responses."""

    def __init__(self, message: str, *, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.rate_limited = rate_limited


class ExhaustedRetries(ActionError):
    """Retry ceiling reached; the action needs manual follow-up."""

    def __init__(self, retry_count: int, max_retries: int, last_error: str) -> None:
        super().__init__(f"max retries exceeded ({retry_count}/{max_retries}): {last_error}")
        self.retry_count = retry_count
        self.max_retries = max_retries
        self.last_error = last_error


class PersistenceError(ActionError):
    """Action store unavailable. Not counted as a business-logic failure.

    posted_id is set when the post went out but could not be recorded.
    """

    def __init__(self, message: str, *, posted_id: str = "") -> None:
        super().__init__(message)
        self.posted_id = posted_id


class AccountNotFound(ActionError):
    """No configured account has this id."""

    def __init__(self, account_id: str) -> None:
        super().__init__(f"unknown account: {account_id}")
        self.account_id = account_id
