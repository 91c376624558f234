"""Per-action state machine: fetch, generate, review, capture, post."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from actionbot.accounts import AccountConfig, ActionsConfig
from actionbot.capture import ScreenshotCapturer
from actionbot.config import Config
from actionbot.errors import CaptureError, ExhaustedRetries, GenerationError, PersistenceError, PostingError
from actionbot.fetcher import ContentFetcher
from actionbot.generation.agent import ContentGenerator, GenerationRequest
from actionbot.notifier import (
    ACTION_COMPLETED,
    ACTION_FAILED,
    ACTION_GENERATING,
    ACTION_POSTING,
    Notifier,
)
from actionbot.posting import Poster
from actionbot.store.schemas import Action
from actionbot.store.service import ActionStore

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 5


def retry_policy(config: ActionsConfig) -> tuple[int, int]:
    """(max_retries, retry_backoff_secs) with non-positive values replaced by defaults."""
    max_retries = config.max_retries if config.max_retries > 0 else Config.DEFAULT_MAX_RETRIES
    backoff = config.retry_backoff_secs if config.retry_backoff_secs > 0 else Config.DEFAULT_RETRY_BACKOFF_SECS
    return max_retries, backoff


def compute_backoff_delay(retry_count: int, backoff_secs: int) -> int:
    """Seconds to wait before attempt retry_count + 1: backoff * 2^(retry_count - 1)."""
    return backoff_secs * 2 ** max(retry_count - 1, 0)


class ActionPipeline:
    """Drive one action through its stages and record the outcome.

    Every stage change is persisted before the stage runs, so a crash leaves
    the action in the stage that was interrupted.
    """

    def __init__(
        self,
        store: ActionStore,
        generator: ContentGenerator,
        poster: Poster,
        *,
        notifier: Optional[Notifier] = None,
        capturer: Optional[ScreenshotCapturer] = None,
        fetcher: Optional[ContentFetcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_post_length: int = Config.MAX_POST_LENGTH,
        fetch_timeout_seconds: float = Config.FETCH_TIMEOUT_SEC,
        post_timeout_seconds: float = Config.POST_TIMEOUT_SEC,
    ) -> None:
        self.store = store
        self.generator = generator
        self.poster = poster
        self.notifier = notifier
        self.capturer = capturer
        self.fetcher = fetcher
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.max_post_length = max_post_length
        self.fetch_timeout_seconds = fetch_timeout_seconds
        self.post_timeout_seconds = post_timeout_seconds

    def _emit(self, event_type: str, action: Action) -> None:
        if self.notifier is not None:
            self.notifier.send_action(event_type, action)

    async def _save(self, action: Action, **changes) -> Action:
        return await self.store.update(action.model_copy(update=changes), now=self._clock())

    async def _fetch_context(self, url: str) -> str:
        if self.fetcher is None or not url:
            return ""
        try:
            return await asyncio.wait_for(self.fetcher.fetch(url), timeout=self.fetch_timeout_seconds)
        except Exception as e:
            logger.warning(f"Context fetch failed for {url} (ignored): {e}")
            return ""

    async def build_request(self, account: AccountConfig, action: Action) -> GenerationRequest:
        cfg = account.actions
        historical: list[str] = []
        if cfg.use_historical:
            historical = await self.store.recent_posts(account.id, limit=HISTORY_LIMIT)

        return GenerationRequest(
            wallet_profile=action.wallet_profile,
            trade_event=action.trade_event,
            market_url=action.market_url,
            profile_url=action.profile_url,
            system_prompt=cfg.custom_prompt,
            example_tweets=list(cfg.example_tweets),
            historical_tweets=historical,
            market_context=await self._fetch_context(action.market_url),
            profile_context=await self._fetch_context(action.profile_url),
            max_length=self.max_post_length,
            review_enabled=cfg.review_enabled,
        )

    async def process(self, account: AccountConfig, action: Action) -> Action:
        """Run the action to completed or failed and return the stored result.

        PersistenceError propagates without touching retry bookkeeping; every
        other failure is recorded on the action.
        """
        cfg = account.actions
        stage = "fetching"
        logger.info(f"Processing action {action.id} for account {account.id} (attempt {action.retry_count + 1})")

        try:
            action = await self._save(action, status="fetching", next_retry_at=None)
            request = await self.build_request(account, action)

            stage = "generation"
            action = await self._save(action, status="generating")
            self._emit(ACTION_GENERATING, action)

            async def mark_reviewing() -> None:
                nonlocal action
                action = await self._save(action, status="reviewing")

            response = await self.generator.generate(request, on_review=mark_reviewing)
            action = await self._save(
                action,
                draft_text=response.draft_text,
                reviewed_text=response.reviewed_text,
                final_text=response.final_text,
                tokens_used=action.tokens_used + response.tokens_used,
            )

            if cfg.screenshot_mode != "none" and self.capturer is not None:
                stage = "capture"
                action = await self._save(action, status="capturing")
                try:
                    path = await self.capturer.capture(cfg.screenshot_mode, action)
                except CaptureError as e:
                    logger.warning(f"Screenshot capture failed for action {action.id} (non-fatal): {e}")
                    path = None
                if path:
                    action = await self._save(action, screenshot_path=path)

            stage = "posting"
            action = await self._save(action, status="posting")
            self._emit(ACTION_POSTING, action)
            posted_id = await asyncio.wait_for(
                self.poster.post(account, action.final_text, action.screenshot_path or None),
                timeout=self.post_timeout_seconds,
            )

            now = self._clock()
            try:
                action = await self.store.update(
                    action.model_copy(
                        update={
                            "status": "completed",
                            "posted_id": posted_id,
                            "processed_at": now,
                            "next_retry_at": None,
                            "error_message": "",
                        }
                    ),
                    now=now,
                )
            except PersistenceError as e:
                raise PersistenceError(f"post {posted_id} not recorded: {e}", posted_id=posted_id) from e
            logger.info(f"Action {action.id} posted as {posted_id}")
            self._emit(ACTION_COMPLETED, action)
            return action

        except PersistenceError:
            logger.error(f"Action store unavailable while processing {action.id}; retry not counted")
            raise
        except (GenerationError, PostingError) as e:
            return await self.record_failure(account, action, f"{stage} failed: {e}")
        except asyncio.TimeoutError:
            return await self.record_failure(account, action, f"{stage} timed out")
        except Exception as e:
            logger.error(f"Unexpected error processing action {action.id}: {e}", exc_info=True)
            return await self.record_failure(account, action, f"{stage} failed: unexpected error: {e}")

    async def record_failure(self, account: AccountConfig, action: Action, message: str) -> Action:
        """Count a failed attempt and schedule a retry or give up.

        max_retries is the number of retries after the first attempt, so the
        default of 3 schedules retries at 1x, 2x and 4x the backoff.
        """
        max_retries, backoff = retry_policy(account.actions)
        retry_count = action.retry_count + 1
        now = self._clock()

        if retry_count <= max_retries:
            delay = compute_backoff_delay(retry_count, backoff)
            logger.warning(
                f"Action {action.id} failed ({message}); retry {retry_count}/{max_retries} in {delay}s"
            )
            return await self.store.update(
                action.model_copy(
                    update={
                        "status": "failed",
                        "retry_count": retry_count,
                        "error_message": message,
                        "next_retry_at": now + timedelta(seconds=delay),
                    }
                ),
                now=now,
            )

        return await self.give_up(
            action.model_copy(update={"retry_count": retry_count}),
            ExhaustedRetries(retry_count, max_retries, message),
        )

    async def give_up(self, action: Action, exhausted: ExhaustedRetries) -> Action:
        """Mark the action terminally failed; it will not be retried again."""
        now = self._clock()
        logger.error(f"Action {action.id} gave up: {exhausted}")
        action = await self.store.update(
            action.model_copy(
                update={
                    "status": "failed",
                    "error_message": str(exhausted),
                    "next_retry_at": None,
                    "processed_at": now,
                }
            ),
            now=now,
        )
        self._emit(ACTION_FAILED, action)
        return action
