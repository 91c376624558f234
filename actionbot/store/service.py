"""Durable action queue, history and dedup ledger."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from actionbot.errors import DuplicateEvent, PersistenceError
from actionbot.store.models import ActionEventLog, TweetAction
from actionbot.store.schemas import (
    IN_FLIGHT_STATUSES,
    NON_TERMINAL_STATUSES,
    Action,
    ActionHistoryItem,
    ActionStats,
    RecoveryResult,
    TradeEvent,
    WalletProfile,
)

logger = logging.getLogger(__name__)

INTERRUPTED_POST_ERROR = "interrupted while posting; verify on the account before re-posting"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_action(row: TweetAction) -> Action:
    return Action(
        id=row.id,
        account_id=row.account_id,
        source_event_id=row.source_event_id,
        trigger_type=row.trigger_type,
        wallet_address=row.wallet_address,
        wallet_profile=WalletProfile.model_validate(row.wallet_profile) if row.wallet_profile else None,
        trade_event=TradeEvent.model_validate(row.trade_event) if row.trade_event else None,
        market_url=row.market_url or "",
        profile_url=row.profile_url or "",
        status=row.status,
        draft_text=row.draft_text or "",
        reviewed_text=row.reviewed_text or "",
        final_text=row.final_text or "",
        screenshot_path=row.screenshot_path or "",
        posted_id=row.posted_id or "",
        tokens_used=int(row.tokens_used or 0),
        retry_count=int(row.retry_count or 0),
        next_retry_at=_as_utc(row.next_retry_at),
        error_message=row.error_message or "",
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        processed_at=_as_utc(row.processed_at),
    )


def _to_row(action: Action) -> TweetAction:
    return TweetAction(
        id=action.id,
        account_id=action.account_id,
        source_event_id=action.source_event_id,
        trigger_type=action.trigger_type,
        wallet_address=action.wallet_address,
        wallet_profile=action.wallet_profile.model_dump(mode="json") if action.wallet_profile else None,
        trade_event=action.trade_event.model_dump(mode="json") if action.trade_event else None,
        market_url=action.market_url,
        profile_url=action.profile_url,
        status=action.status,
        draft_text=action.draft_text,
        reviewed_text=action.reviewed_text,
        final_text=action.final_text,
        screenshot_path=action.screenshot_path,
        posted_id=action.posted_id,
        tokens_used=action.tokens_used,
        retry_count=action.retry_count,
        next_retry_at=action.next_retry_at,
        error_message=action.error_message,
        created_at=action.created_at,
        updated_at=action.updated_at,
        processed_at=action.processed_at,
    )


class ActionStore:
    """CRUD and queue queries over actions and the dedup ledger.

    Each call opens its own session, so one store instance can be shared by
    the scheduler passes and the API within a single event loop.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                yield session
        except SQLAlchemyError as exc:
            raise PersistenceError(f"action store unavailable: {exc}") from exc

    # ==== Queue writes ====

    async def create_if_absent(self, action: Action) -> Action | None:
        """Insert the ledger entry and the action in one transaction.

        Returns None when the (account_id, source_event_id) pair is already
        in the ledger; the unique key decides, so concurrent deliveries of
        the same event cannot both succeed.
        """
        async with self._session() as session:
            try:
                async with session.begin():
                    session.add(
                        ActionEventLog(
                            account_id=action.account_id,
                            source_event_id=action.source_event_id,
                            action_id=action.id,
                            created_at=action.created_at,
                        )
                    )
                    await session.flush()
                    session.add(_to_row(action))
            except IntegrityError:
                logger.debug(
                    f"Dedup ledger hit for account={action.account_id} event={action.source_event_id}"
                )
                return None
        return action

    async def enqueue(self, action: Action) -> Action:
        created = await self.create_if_absent(action)
        if created is None:
            raise DuplicateEvent(action.account_id, action.source_event_id)
        return created

    async def update(self, action: Action, *, now: datetime | None = None) -> Action:
        """Replace all mutable fields. Last writer wins."""
        now = now or utcnow()
        async with self._session() as session:
            async with session.begin():
                row = await session.get(TweetAction, action.id)
                if row is None:
                    raise PersistenceError(f"action {action.id} not found")
                row.status = action.status
                row.draft_text = action.draft_text
                row.reviewed_text = action.reviewed_text
                row.final_text = action.final_text
                row.screenshot_path = action.screenshot_path
                row.posted_id = action.posted_id
                row.tokens_used = action.tokens_used
                row.retry_count = action.retry_count
                row.next_retry_at = action.next_retry_at
                row.error_message = action.error_message
                row.processed_at = action.processed_at
                row.updated_at = now
        return action.model_copy(update={"updated_at": now})

    # ==== Queue reads ====

    async def has_action_for_event(self, account_id: str, source_event_id: str) -> bool:
        async with self._session() as session:
            stmt = select(ActionEventLog.action_id).where(
                ActionEventLog.account_id == account_id,
                ActionEventLog.source_event_id == source_event_id,
            )
            res = await session.execute(stmt)
            return res.scalar_one_or_none() is not None

    async def dequeue_ready(self, account_id: str, limit: int) -> list[Action]:
        """Pending actions for one account, oldest first."""
        async with self._session() as session:
            stmt = (
                select(TweetAction)
                .where(TweetAction.account_id == account_id, TweetAction.status == "pending")
                .order_by(TweetAction.created_at.asc(), TweetAction.id.asc())
                .limit(limit)
            )
            res = await session.execute(stmt)
            return [_to_action(row) for row in res.scalars().all()]

    async def dequeue_stale(self, account_id: str, limit: int, *, older_than: datetime) -> list[Action]:
        """In-flight actions abandoned before posting, least recently touched first.

        Posting is excluded: the post may be live and only recovery resolves it.
        """
        stale_statuses = [s for s in IN_FLIGHT_STATUSES if s != "posting"]
        async with self._session() as session:
            stmt = (
                select(TweetAction)
                .where(
                    TweetAction.account_id == account_id,
                    TweetAction.status.in_(stale_statuses),
                    TweetAction.updated_at <= older_than,
                )
                .order_by(TweetAction.updated_at.asc(), TweetAction.id.asc())
                .limit(limit)
            )
            res = await session.execute(stmt)
            return [_to_action(row) for row in res.scalars().all()]

    async def dequeue_retryable(
        self,
        limit: int,
        *,
        max_retries: int,
        now: datetime | None = None,
    ) -> list[Action]:
        """Failed actions whose backoff elapsed, across accounts, oldest retry first.

        max_retries counts retries, so an action with retry_count == max_retries
        still has its last retry pending.

        Terminal failures carry no next_retry_at and never match.
        """
        now = now or utcnow()
        async with self._session() as session:
            stmt = (
                select(TweetAction)
                .where(
                    TweetAction.status == "failed",
                    TweetAction.next_retry_at.is_not(None),
                    TweetAction.next_retry_at <= now,
                    TweetAction.retry_count <= max_retries,
                )
                .order_by(TweetAction.next_retry_at.asc(), TweetAction.id.asc())
                .limit(limit)
            )
            res = await session.execute(stmt)
            return [_to_action(row) for row in res.scalars().all()]

    async def get(self, action_id: str) -> Action | None:
        async with self._session() as session:
            row = await session.get(TweetAction, action_id)
            return _to_action(row) if row is not None else None

    async def pending(self, account_id: str) -> list[Action]:
        """Every non-terminal action for an account, newest first."""
        async with self._session() as session:
            stmt = (
                select(TweetAction)
                .where(
                    TweetAction.account_id == account_id,
                    TweetAction.status.in_(NON_TERMINAL_STATUSES),
                )
                .order_by(TweetAction.created_at.desc())
            )
            res = await session.execute(stmt)
            return [_to_action(row) for row in res.scalars().all()]

    # ==== History views ====

    async def history(self, account_id: str, limit: int = 50) -> list[ActionHistoryItem]:
        async with self._session() as session:
            stmt = (
                select(TweetAction)
                .where(TweetAction.account_id == account_id)
                .order_by(TweetAction.created_at.desc())
                .limit(limit)
            )
            res = await session.execute(stmt)
            rows = list(res.scalars().all())

        items: list[ActionHistoryItem] = []
        for row in rows:
            trade = row.trade_event or {}
            items.append(
                ActionHistoryItem(
                    id=row.id,
                    account_id=row.account_id,
                    wallet_address=row.wallet_address,
                    market_name=str(trade.get("market_name") or ""),
                    post_text=row.final_text or "",
                    posted_id=row.posted_id or "",
                    status=row.status,
                    retry_count=int(row.retry_count or 0),
                    created_at=_as_utc(row.created_at),
                    processed_at=_as_utc(row.processed_at),
                    error_message=row.error_message or "",
                )
            )
        return items

    async def recent_posts(self, account_id: str, limit: int = 5) -> list[str]:
        """Final texts of the most recent completed actions."""
        async with self._session() as session:
            stmt = (
                select(TweetAction.final_text)
                .where(
                    TweetAction.account_id == account_id,
                    TweetAction.status == "completed",
                    TweetAction.final_text != "",
                )
                .order_by(TweetAction.processed_at.desc())
                .limit(limit)
            )
            res = await session.execute(stmt)
            return [text for text in res.scalars().all() if text]

    async def stats(self, account_id: str) -> ActionStats:
        def _count_where(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        async with self._session() as session:
            stmt = select(
                func.count(TweetAction.id),
                _count_where(TweetAction.status == "pending"),
                _count_where(TweetAction.status.in_(IN_FLIGHT_STATUSES)),
                _count_where(TweetAction.status == "completed"),
                _count_where(TweetAction.status == "failed"),
                _count_where((TweetAction.status == "failed") & TweetAction.next_retry_at.is_not(None)),
                func.coalesce(func.sum(TweetAction.tokens_used), 0),
            ).where(TweetAction.account_id == account_id)
            res = await session.execute(stmt)
            total, pending, in_progress, completed, failed, retrying, tokens = res.one()

        return ActionStats(
            total_actions=int(total or 0),
            pending_count=int(pending or 0),
            in_progress_count=int(in_progress or 0),
            completed_count=int(completed or 0),
            failed_count=int(failed or 0),
            retrying_count=int(retrying or 0),
            total_tokens_used=int(tokens or 0),
        )

    # ==== Crash recovery ====

    async def recover_interrupted(self, *, now: datetime | None = None) -> RecoveryResult:
        """Resolve actions a crash left mid-pipeline.

        Pre-posting stages are safe to redo and go back to pending. An action
        caught in posting may already be live, so it is failed terminally for
        an operator to check instead of being re-posted.
        """
        now = now or utcnow()
        result = RecoveryResult()
        async with self._session() as session:
            async with session.begin():
                stmt = select(TweetAction).where(TweetAction.status.in_(IN_FLIGHT_STATUSES))
                res = await session.execute(stmt)
                for row in res.scalars().all():
                    if row.status == "posting":
                        row.status = "failed"
                        row.next_retry_at = None
                        row.error_message = INTERRUPTED_POST_ERROR
                        result.failed += 1
                    else:
                        row.status = "pending"
                        result.requeued += 1
                    row.updated_at = now

        if result.requeued or result.failed:
            logger.warning(
                f"Recovered interrupted actions: requeued={result.requeued} failed={result.failed}"
            )
        return result
