import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from actionbot.errors import DuplicateEvent, PersistenceError
from actionbot.store.models import ActionEventLog, Base, TweetAction
from actionbot.store.schemas import Action, TradeEvent, WalletProfile
from actionbot.store.service import INTERRUPTED_POST_ERROR, ActionStore

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'actions.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    Session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield Session
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_factory):
    return ActionStore(session_factory)


def make_action(account_id: str = "acct-1", source_event_id: str = "evt-1", created_at: datetime = T0, **kw) -> Action:
    fields = dict(
        id=str(uuid.uuid4()),
        account_id=account_id,
        source_event_id=source_event_id,
        trigger_type="fresh_insider",
        wallet_address="0xabcdef0123456789abcdef0123456789abcdef01",
        wallet_profile=WalletProfile(address="0xabcdef0123456789abcdef0123456789abcdef01", bet_count=1),
        trade_event=TradeEvent(market_name="Will it rain?", market_slug="will-it-rain", price="0.4", size="500"),
        market_url="https://polymarket.com/event/will-it-rain",
        profile_url="https://polymarket.com/profile/0xabcdef0123456789abcdef0123456789abcdef01",
        created_at=created_at,
        updated_at=created_at,
    )
    fields.update(kw)
    return Action(**fields)


async def count_rows(session_factory, model) -> int:
    async with session_factory() as s:
        return (await s.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_enqueue_round_trips_snapshots(store: ActionStore):
    action = make_action()
    await store.enqueue(action)

    loaded = await store.get(action.id)
    assert loaded is not None
    assert loaded.status == "pending"
    assert loaded.created_at == T0
    assert loaded.wallet_profile.bet_count == 1
    assert loaded.trade_event.market_slug == "will-it-rain"
    assert loaded.market_slug == "will-it-rain"


@pytest.mark.asyncio
async def test_enqueue_same_event_twice_raises_duplicate(store: ActionStore, session_factory):
    await store.enqueue(make_action())

    with pytest.raises(DuplicateEvent) as exc:
        await store.enqueue(make_action())

    assert exc.value.source_event_id == "evt-1"
    assert await count_rows(session_factory, TweetAction) == 1
    assert await count_rows(session_factory, ActionEventLog) == 1


@pytest.mark.asyncio
async def test_create_if_absent_returns_none_on_ledger_hit(store: ActionStore):
    first = await store.create_if_absent(make_action())
    second = await store.create_if_absent(make_action())

    assert first is not None
    assert second is None
    assert await store.has_action_for_event("acct-1", "evt-1") is True
    assert await store.has_action_for_event("acct-2", "evt-1") is False


@pytest.mark.asyncio
async def test_same_event_for_different_accounts_is_allowed(store: ActionStore):
    assert await store.create_if_absent(make_action(account_id="acct-1")) is not None
    assert await store.create_if_absent(make_action(account_id="acct-2")) is not None


@pytest.mark.asyncio
async def test_concurrent_delivery_creates_exactly_one_action(session_factory):
    stores = [ActionStore(session_factory) for _ in range(3)]

    results = await asyncio.gather(*(s.create_if_absent(make_action()) for s in stores))

    assert sum(1 for r in results if r is not None) == 1
    assert await count_rows(session_factory, TweetAction) == 1
    assert await count_rows(session_factory, ActionEventLog) == 1


@pytest.mark.asyncio
async def test_dequeue_ready_oldest_first_for_one_account(store: ActionStore):
    newer = make_action(source_event_id="evt-new", created_at=T0 + timedelta(minutes=5))
    older = make_action(source_event_id="evt-old", created_at=T0)
    other = make_action(account_id="acct-2", source_event_id="evt-other", created_at=T0 - timedelta(minutes=5))
    done = make_action(source_event_id="evt-done", created_at=T0 - timedelta(minutes=10), status="completed")
    for a in (newer, older, other, done):
        await store.enqueue(a)

    batch = await store.dequeue_ready("acct-1", 1)
    assert [a.id for a in batch] == [older.id]

    batch = await store.dequeue_ready("acct-1", 10)
    assert [a.id for a in batch] == [older.id, newer.id]


@pytest.mark.asyncio
async def test_dequeue_retryable_only_due_and_under_ceiling(store: ActionStore):
    due = make_action(source_event_id="evt-due", status="failed", retry_count=1, next_retry_at=T0 - timedelta(seconds=1))
    later = make_action(source_event_id="evt-later", status="failed", retry_count=1, next_retry_at=T0 + timedelta(minutes=1))
    terminal = make_action(source_event_id="evt-terminal", status="failed", retry_count=3, next_retry_at=None)
    last_retry = make_action(source_event_id="evt-last", status="failed", retry_count=3, next_retry_at=T0 - timedelta(seconds=30))
    capped = make_action(source_event_id="evt-capped", status="failed", retry_count=4, next_retry_at=T0 - timedelta(minutes=5))
    for a in (due, later, terminal, last_retry, capped):
        await store.enqueue(a)

    batch = await store.dequeue_retryable(10, max_retries=3, now=T0)
    assert [a.id for a in batch] == [last_retry.id, due.id]

    batch = await store.dequeue_retryable(10, max_retries=3, now=T0 + timedelta(minutes=2))
    assert [a.id for a in batch] == [last_retry.id, due.id, later.id]


@pytest.mark.asyncio
async def test_dequeue_stale_skips_posting_and_fresh(store: ActionStore):
    old = make_action(source_event_id="evt-old", status="generating", created_at=T0)
    fresh = make_action(source_event_id="evt-fresh", status="capturing", created_at=T0 + timedelta(minutes=10))
    posting = make_action(source_event_id="evt-posting", status="posting", created_at=T0)
    pending = make_action(source_event_id="evt-pending", created_at=T0)
    for a in (old, fresh, posting, pending):
        await store.enqueue(a)

    batch = await store.dequeue_stale("acct-1", 10, older_than=T0 + timedelta(minutes=5))
    assert [a.id for a in batch] == [old.id]
    assert await store.dequeue_stale("acct-2", 10, older_than=T0 + timedelta(days=1)) == []


@pytest.mark.asyncio
async def test_update_replaces_mutable_fields(store: ActionStore):
    action = await store.enqueue(make_action())
    later = T0 + timedelta(minutes=1)

    updated = await store.update(
        action.model_copy(
            update={
                "status": "completed",
                "draft_text": "draft",
                "final_text": "final",
                "posted_id": "post-1",
                "tokens_used": 42,
                "processed_at": later,
            }
        ),
        now=later,
    )

    assert updated.updated_at == later
    loaded = await store.get(action.id)
    assert loaded.status == "completed"
    assert loaded.final_text == "final"
    assert loaded.posted_id == "post-1"
    assert loaded.tokens_used == 42
    assert loaded.processed_at == later
    assert loaded.updated_at == later


@pytest.mark.asyncio
async def test_update_unknown_action_raises_persistence_error(store: ActionStore):
    with pytest.raises(PersistenceError):
        await store.update(make_action())


@pytest.mark.asyncio
async def test_pending_history_recent_posts_and_stats(store: ActionStore):
    a1 = make_action(source_event_id="e1", created_at=T0, status="completed", final_text="first post",
                     posted_id="p1", tokens_used=10, processed_at=T0 + timedelta(minutes=1))
    a2 = make_action(source_event_id="e2", created_at=T0 + timedelta(minutes=1), status="completed",
                     final_text="second post", posted_id="p2", tokens_used=5, processed_at=T0 + timedelta(minutes=2))
    a3 = make_action(source_event_id="e3", created_at=T0 + timedelta(minutes=2), status="failed",
                     retry_count=1, next_retry_at=T0 + timedelta(minutes=5), error_message="posting failed: 503")
    a4 = make_action(source_event_id="e4", created_at=T0 + timedelta(minutes=3), status="failed",
                     retry_count=3, error_message="max retries exceeded (3/3): boom")
    a5 = make_action(source_event_id="e5", created_at=T0 + timedelta(minutes=4))
    a6 = make_action(source_event_id="e6", created_at=T0 + timedelta(minutes=5), status="generating")
    for a in (a1, a2, a3, a4, a5, a6):
        await store.enqueue(a)

    pending = await store.pending("acct-1")
    assert [a.id for a in pending] == [a6.id, a5.id]

    history = await store.history("acct-1", limit=3)
    assert [h.id for h in history] == [a6.id, a5.id, a4.id]
    full = {h.id: h for h in await store.history("acct-1")}
    assert full[a1.id].post_text == "first post"
    assert full[a1.id].market_name == "Will it rain?"
    assert full[a3.id].error_message == "posting failed: 503"

    assert await store.recent_posts("acct-1", limit=5) == ["second post", "first post"]

    stats = await store.stats("acct-1")
    assert stats.total_actions == 6
    assert stats.pending_count == 1
    assert stats.in_progress_count == 1
    assert stats.completed_count == 2
    assert stats.failed_count == 2
    assert stats.retrying_count == 1
    assert stats.total_tokens_used == 15

    empty = await store.stats("nobody")
    assert empty.total_actions == 0
    assert empty.total_tokens_used == 0


@pytest.mark.asyncio
async def test_recover_interrupted_requeues_safe_stages_and_fails_posting(store: ActionStore):
    generating = make_action(source_event_id="e-gen", status="generating")
    capturing = make_action(source_event_id="e-cap", status="capturing")
    posting = make_action(source_event_id="e-post", status="posting", next_retry_at=T0)
    completed = make_action(source_event_id="e-done", status="completed")
    for a in (generating, capturing, posting, completed):
        await store.enqueue(a)

    result = await store.recover_interrupted(now=T0 + timedelta(hours=1))

    assert result.requeued == 2
    assert result.failed == 1
    assert (await store.get(generating.id)).status == "pending"
    assert (await store.get(capturing.id)).status == "pending"
    stuck = await store.get(posting.id)
    assert stuck.status == "failed"
    assert stuck.next_retry_at is None
    assert stuck.error_message == INTERRUPTED_POST_ERROR
    assert stuck.is_terminal
    assert (await store.get(completed.id)).status == "completed"

    again = await store.recover_interrupted()
    assert again.requeued == 0 and again.failed == 0
