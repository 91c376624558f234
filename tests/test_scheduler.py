import asyncio
import time
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from actionbot.accounts import AccountConfig, ActionsConfig, StaticAccountSource
from actionbot.errors import AccountNotFound
from actionbot.generation import ChatResult, ContentGenerator
from actionbot.pipeline import ActionPipeline
from actionbot.posting import MockPoster
from actionbot.scheduler import SAMPLE_WALLET, ActionScheduler, ActionWorker, SchedulerState
from actionbot.store.models import Base
from actionbot.store.schemas import Action
from actionbot.store.service import ActionStore
from actionbot.triggers import TriggerEvaluator

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class EchoChat:
    async def complete(self, system_prompt: str, user_prompt: str) -> ChatResult:
        return ChatResult("Test post about a fresh insider wallet", 5)


def make_accounts() -> StaticAccountSource:
    return StaticAccountSource(
        [AccountConfig(id="acct-1", actions=ActionsConfig(enabled=True, review_enabled=False, use_historical=False))]
    )


def make_worker(session_factory, accounts, poster) -> ActionWorker:
    store = ActionStore(session_factory)
    pipeline = ActionPipeline(store, ContentGenerator(EchoChat()), poster)
    return ActionWorker(store, accounts, pipeline, TriggerEvaluator(store, accounts))


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    Session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield Session
    await engine.dispose()


@pytest.mark.asyncio
async def test_run_test_action_processes_sample_wallet(session_factory):
    poster = MockPoster()
    worker = make_worker(session_factory, make_accounts(), poster)

    action = await worker.run_test_action("acct-1")

    assert action.status == "completed"
    assert action.wallet_address == SAMPLE_WALLET.address
    assert action.trade_event is None
    assert action.source_event_id.startswith("test:")
    assert action.profile_url.endswith(f"/profile/{SAMPLE_WALLET.address}")
    assert poster.posts[0]["text"] == "Test post about a fresh insider wallet"

    again = await worker.run_test_action("acct-1")
    assert again.id != action.id


@pytest.mark.asyncio
async def test_run_test_action_unknown_account(session_factory):
    worker = make_worker(session_factory, make_accounts(), MockPoster())
    with pytest.raises(AccountNotFound):
        await worker.run_test_action("nobody")


@pytest.mark.asyncio
async def test_stopping_worker_starts_no_new_action(session_factory):
    accounts = make_accounts()
    worker = make_worker(session_factory, accounts, MockPoster())
    await worker.evaluator.create_action(accounts.get_account("acct-1"), SAMPLE_WALLET, None, "evt-1")

    worker.stopping = True
    assert await worker.run_queue_pass() == 0
    assert len(await worker.store.pending("acct-1")) == 1


@pytest.mark.asyncio
async def test_action_claimed_elsewhere_is_skipped(session_factory):
    accounts = make_accounts()
    worker = make_worker(session_factory, accounts, MockPoster())
    created = await worker.evaluator.create_action(accounts.get_account("acct-1"), SAMPLE_WALLET, None, "evt-1")

    stale = (await worker.store.dequeue_ready("acct-1", 1))[0]
    await worker.store.update(created.model_copy(update={"status": "completed"}))

    assert await worker._process_claimed(accounts.get_account("acct-1"), stale) is None


def _seed_interrupted(db_url: str) -> None:
    async def seed():
        engine = create_async_engine(db_url, echo=False)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        store = ActionStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
        for status in ("generating", "posting"):
            await store.enqueue(
                Action(
                    id=f"stuck-{status}",
                    account_id="acct-1",
                    source_event_id=f"evt-{status}",
                    trigger_type="fresh_insider",
                    wallet_address=SAMPLE_WALLET.address,
                    status=status,
                    created_at=T0,
                    updated_at=T0,
                )
            )
        await engine.dispose()

    asyncio.run(seed())


def test_scheduler_thread_lifecycle(tmp_path):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}"
    _seed_interrupted(db_url)

    accounts = make_accounts()
    poster = MockPoster()
    scheduler = ActionScheduler(
        accounts,
        database_url=db_url,
        worker_factory=lambda sf: make_worker(sf, accounts, poster),
        queue_interval=0.05,
        retry_interval=0.05,
        shutdown_timeout=10,
    )

    with pytest.raises(RuntimeError):
        scheduler.run_test_action("acct-1")

    assert scheduler.start() is True
    try:
        assert scheduler.start() is False
        assert scheduler.wait_ready(timeout=10)
        assert scheduler.stats["last_recovery"] == {"requeued": 1, "failed": 1}

        result = scheduler.run_test_action("acct-1").result(timeout=10)
        assert result.status == "completed"

        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and scheduler.get_status()["queue_passes"] < 2:
            time.sleep(0.05)
        status = scheduler.get_status()
        assert status["state"] == "running"
        assert status["queue_passes"] >= 2
        assert status["actions_processed"] >= 2
    finally:
        assert scheduler.stop() is True

    assert scheduler.state == SchedulerState.STOPPED
    assert scheduler.get_status()["running"] is False
    assert scheduler.stop() is False
    assert not scheduler.thread.is_alive()
    assert [p["text"] for p in poster.posts].count("Test post about a fresh insider wallet") >= 2
