"""Queue/retry scheduler running the action pipeline in a background thread."""
import asyncio
import concurrent.futures
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from actionbot.accounts import AccountSource
from actionbot.capture import ScreenshotCapturer
from actionbot.config import Config
from actionbot.errors import AccountNotFound, ExhaustedRetries, PersistenceError
from actionbot.fetcher import HttpContentFetcher
from actionbot.generation import ChatClient, ContentGenerator
from actionbot.notifier import Notifier
from actionbot.pipeline import ActionPipeline, retry_policy
from actionbot.posting import make_poster
from actionbot.store.db import init_db, make_engine, make_session_factory
from actionbot.store.schemas import Action, RecoveryResult, WalletProfile
from actionbot.store.service import ActionStore
from actionbot.triggers import TriggerEvaluator

logger = logging.getLogger(__name__)

SAMPLE_WALLET = WalletProfile(
    address="0x1234567890abcdef1234567890abcdef12345678",
    bet_count=2,
    freshness_level="insider",
    join_date="Jan 2025",
)


class SchedulerState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    ERROR = "error"


class ActionWorker:
    """Queue and retry passes over one event loop.

    A single lock keeps at most one action in flight, shared by both passes
    and manual test actions.
    """

    def __init__(
        self,
        store: ActionStore,
        accounts: AccountSource,
        pipeline: ActionPipeline,
        evaluator: TriggerEvaluator,
        *,
        capturer: Optional[ScreenshotCapturer] = None,
        queue_batch: int = Config.QUEUE_BATCH_PER_ACCOUNT,
        retry_batch: int = Config.RETRY_BATCH,
        max_retries_ceiling: int = Config.MAX_RETRIES_CEILING,
        stale_after_seconds: float = Config.STALE_IN_FLIGHT_SEC,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.pipeline = pipeline
        self.evaluator = evaluator
        self.capturer = capturer
        self.queue_batch = queue_batch
        self.retry_batch = retry_batch
        self.max_retries_ceiling = max_retries_ceiling
        self.stale_after_seconds = stale_after_seconds

        self._lock = asyncio.Lock()
        self.stopping = False
        self.processed = 0

    async def _release(self, claimed: Action, error: PersistenceError) -> None:
        """Put an aborted action back where a later pass will find it."""
        if error.posted_id:
            logger.error(f"Action {claimed.id} was posted as {error.posted_id} but not recorded; left for recovery")
            return
        restored = claimed
        if claimed.status not in ("pending", "failed"):
            restored = claimed.model_copy(update={"status": "pending"})
        try:
            await self.store.update(restored)
        except PersistenceError as e:
            logger.warning(f"Could not release action {claimed.id}: {e}; it is reclaimed once stale")

    async def _process_claimed(self, account, action: Action) -> Optional[Action]:
        """Process under the lock if nobody else moved the action meanwhile."""
        async with self._lock:
            current = await self.store.get(action.id)
            if (
                current is None
                or current.status != action.status
                or current.retry_count != action.retry_count
                or current.updated_at != action.updated_at
            ):
                logger.debug(f"Action {action.id} changed since dequeue; skipping")
                return None
            try:
                result = await self.pipeline.process(account, current)
            except PersistenceError as e:
                logger.error(f"Action {action.id} aborted this cycle: {e}")
                await self._release(current, e)
                return None
            self.processed += 1
            return result

    async def run_queue_pass(self, now: Optional[datetime] = None) -> int:
        """Process up to queue_batch pending actions per enabled account.

        Free slots in the batch go to in-flight actions untouched for
        stale_after_seconds, which an aborted pass could not release.
        """
        now = now or datetime.now(timezone.utc)
        stale_cutoff = now - timedelta(seconds=self.stale_after_seconds)
        handled = 0
        for account in self.accounts.list_accounts():
            if self.stopping:
                break
            if not account.enabled or not account.actions.enabled:
                continue

            actions = await self.store.dequeue_ready(account.id, self.queue_batch)
            if len(actions) < self.queue_batch:
                actions += await self.store.dequeue_stale(
                    account.id, self.queue_batch - len(actions), older_than=stale_cutoff
                )
            for action in actions:
                if self.stopping:
                    return handled
                if await self._process_claimed(account, action) is not None:
                    handled += 1
        return handled

    async def run_retry_pass(self, now: Optional[datetime] = None) -> int:
        """Re-process failed actions whose backoff has elapsed."""
        handled = 0
        actions = await self.store.dequeue_retryable(
            self.retry_batch,
            max_retries=self.max_retries_ceiling,
            now=now,
        )
        for action in actions:
            if self.stopping:
                break
            account = self.accounts.get_account(action.account_id)
            if account is None or not account.enabled or not account.actions.enabled:
                logger.debug(f"Skipping retry of {action.id}: account {action.account_id} unavailable")
                continue

            max_retries, _ = retry_policy(account.actions)
            if action.retry_count > max_retries:
                await self.pipeline.give_up(
                    action,
                    ExhaustedRetries(action.retry_count, max_retries, action.error_message),
                )
                continue

            if await self._process_claimed(account, action) is not None:
                handled += 1
        return handled

    async def run_test_action(self, account_id: str) -> Action:
        """Queue a sample fresh-insider action for the account and process it now."""
        account = self.accounts.get_account(account_id)
        if account is None:
            raise AccountNotFound(account_id)

        action = await self.evaluator.create_action(account, SAMPLE_WALLET, None, f"test:{uuid.uuid4()}")
        if action is None:
            raise PersistenceError("test action was not created")

        async with self._lock:
            current = await self.store.get(action.id)
            if current is None or current.status != "pending":
                return current or action
            try:
                result = await self.pipeline.process(account, current)
            except PersistenceError as e:
                await self._release(current, e)
                raise
            self.processed += 1
            return result

    async def recover(self) -> RecoveryResult:
        return await self.store.recover_interrupted()

    def cleanup_screenshots(self) -> int:
        if self.capturer is None:
            return 0
        return self.capturer.cleanup_old_screenshots(Config.SCREENSHOT_MAX_AGE_HOURS * 3600)

    async def close(self) -> None:
        if self.capturer is not None:
            await self.capturer.close()


WorkerFactory = Callable[[async_sessionmaker[AsyncSession]], ActionWorker]


def default_worker_factory(accounts: AccountSource, notifier: Optional[Notifier]) -> WorkerFactory:
    def build(session_factory: async_sessionmaker[AsyncSession]) -> ActionWorker:
        store = ActionStore(session_factory)
        capturer = ScreenshotCapturer()
        pipeline = ActionPipeline(
            store,
            ContentGenerator(ChatClient()),
            make_poster(),
            notifier=notifier,
            capturer=capturer,
            fetcher=HttpContentFetcher(),
        )
        evaluator = TriggerEvaluator(store, accounts, notifier)
        return ActionWorker(store, accounts, pipeline, evaluator, capturer=capturer)

    return build


class ActionScheduler:
    """Start/stop controller for the background queue and retry loops.

    The loop runs in its own thread with its own event loop and its own DB
    engine, since async drivers bind connections to the loop that opened them.
    """

    def __init__(
        self,
        accounts: AccountSource,
        *,
        notifier: Optional[Notifier] = None,
        database_url: str = Config.DATABASE_URL,
        worker_factory: Optional[WorkerFactory] = None,
        queue_interval: float = Config.QUEUE_INTERVAL_SEC,
        retry_interval: float = Config.RETRY_INTERVAL_SEC,
        shutdown_timeout: float = Config.SHUTDOWN_TIMEOUT_SEC,
    ) -> None:
        self.accounts = accounts
        self.notifier = notifier
        self.database_url = database_url
        self.worker_factory = worker_factory or default_worker_factory(accounts, notifier)
        self.queue_interval = float(queue_interval)
        self.retry_interval = float(retry_interval)
        self.shutdown_timeout = float(shutdown_timeout)

        self.state = SchedulerState.STOPPED
        self.thread: Optional[threading.Thread] = None
        self.running = False
        self._lock = threading.Lock()
        self._ready = threading.Event()

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wake: Optional[asyncio.Event] = None
        self._worker: Optional[ActionWorker] = None

        self.stats: Dict[str, Any] = {
            "started_at": None,
            "queue_passes": 0,
            "retry_passes": 0,
            "last_queue_pass": None,
            "last_retry_pass": None,
            "last_recovery": None,
        }

        logger.info("ActionScheduler initialized")

    def start(self) -> bool:
        with self._lock:
            if self.running:
                logger.warning("Scheduler already running")
                return False
            try:
                self.running = True
                self.state = SchedulerState.RUNNING
                self._ready.clear()
                self.stats["started_at"] = datetime.now(timezone.utc)
                self.stats["queue_passes"] = 0
                self.stats["retry_passes"] = 0

                self.thread = threading.Thread(target=self._run_thread, name="action-scheduler", daemon=False)
                self.thread.start()

                if self.notifier is not None:
                    self.notifier.send_started()
                logger.info("Action scheduler started")
                return True
            except Exception as e:
                logger.error(f"Error starting scheduler: {e}", exc_info=True)
                self.state = SchedulerState.ERROR
                self.running = False
                return False

    def stop(self) -> bool:
        with self._lock:
            if not self.running:
                logger.warning("Scheduler not running")
                return False
            self.running = False
            loop = self._loop

        if loop is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(self._signal_stop)
            except RuntimeError:
                logger.debug("Scheduler loop already closed")

        try:
            if self.thread and self.thread.is_alive():
                self.thread.join(timeout=self.shutdown_timeout)
                if self.thread.is_alive():
                    logger.warning(f"Scheduler thread still busy after {self.shutdown_timeout}s")
            self.state = SchedulerState.STOPPED
            if self.notifier is not None:
                self.notifier.send_stopped()
            logger.info("Action scheduler stopped")
            return True
        except Exception as e:
            logger.error(f"Error stopping scheduler: {e}", exc_info=True)
            self.state = SchedulerState.ERROR
            return False

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        return self._ready.wait(timeout)

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            worker = self._worker

            def _iso(value: Optional[datetime]) -> Optional[str]:
                return value.isoformat() if value else None

            return {
                "state": self.state.value,
                "running": self.running,
                "ready": self._ready.is_set(),
                "queue_passes": int(self.stats["queue_passes"]),
                "retry_passes": int(self.stats["retry_passes"]),
                "actions_processed": worker.processed if worker is not None else 0,
                "started_at": _iso(self.stats["started_at"]),
                "last_queue_pass": _iso(self.stats["last_queue_pass"]),
                "last_retry_pass": _iso(self.stats["last_retry_pass"]),
            }

    def submit(self, job: Callable[[ActionWorker], Awaitable[Any]]) -> concurrent.futures.Future:
        """Run job(worker) on the scheduler loop; returns a thread-safe future."""
        with self._lock:
            loop, worker = self._loop, self._worker
            if not self.running or loop is None or worker is None or not self._ready.is_set():
                raise RuntimeError("scheduler is not running")
        return asyncio.run_coroutine_threadsafe(job(worker), loop)

    def run_test_action(self, account_id: str) -> concurrent.futures.Future:
        return self.submit(lambda worker: worker.run_test_action(account_id))

    def _signal_stop(self) -> None:
        if self._worker is not None:
            self._worker.stopping = True
        if self._wake is not None:
            self._wake.set()

    def _run_thread(self) -> None:
        try:
            asyncio.run(self._async_loop())
        except Exception as e:
            logger.error(f"Unexpected error in scheduler loop: {e}", exc_info=True)
            self.state = SchedulerState.ERROR
            self.running = False
            if self.notifier is not None:
                self.notifier.send_event("error", {"message": f"Scheduler loop error: {str(e)[:200]}"})
        finally:
            self._ready.clear()

    async def _run_pass(self, name: str, job: Callable[[], Awaitable[int]]) -> None:
        try:
            handled = await job()
            if handled:
                logger.info(f"{name} pass handled {handled} action(s)")
        except Exception as e:
            logger.error(f"Error in {name} pass: {e}", exc_info=True)
        finally:
            with self._lock:
                self.stats[f"{name}_passes"] += 1
                self.stats[f"last_{name}_pass"] = datetime.now(timezone.utc)

    async def _async_loop(self) -> None:
        loop = asyncio.get_running_loop()
        engine = make_engine(self.database_url)
        worker: Optional[ActionWorker] = None
        try:
            await init_db(engine)
            worker = self.worker_factory(make_session_factory(engine))
            with self._lock:
                self._loop = loop
                self._wake = asyncio.Event()
                self._worker = worker

            recovered = await worker.recover()
            with self._lock:
                self.stats["last_recovery"] = recovered.model_dump()
            try:
                worker.cleanup_screenshots()
            except OSError as e:
                logger.warning(f"Screenshot cleanup failed: {e}")

            self._ready.set()
            if not self.running:
                return

            next_queue = loop.time() + self.queue_interval
            next_retry = loop.time() + self.retry_interval
            while self.running:
                timeout = max(0.0, min(next_queue, next_retry) - loop.time())
                try:
                    await asyncio.wait_for(self._wake.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    pass
                if not self.running:
                    break

                if loop.time() >= next_queue:
                    await self._run_pass("queue", worker.run_queue_pass)
                    next_queue = loop.time() + self.queue_interval
                if self.running and loop.time() >= next_retry:
                    await self._run_pass("retry", worker.run_retry_pass)
                    next_retry = loop.time() + self.retry_interval
        finally:
            with self._lock:
                self._loop = None
                self._wake = None
                self._worker = None
            if worker is not None:
                await worker.close()
            await engine.dispose()
