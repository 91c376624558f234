"""FastAPI routes for signals and action queue views."""
import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel

from actionbot.errors import AccountNotFound, PersistenceError
from actionbot.store import db
from actionbot.store.schemas import Action, ActionHistoryItem, ActionStats, Signal
from actionbot.store.service import ActionStore
from actionbot.triggers import TriggerEvaluator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/actions", tags=["actions"])


class SignalResult(BaseModel):
    source_event_id: str
    queued: int
    actions: List[Action]


def get_store(request: Request) -> ActionStore:
    store = getattr(request.app.state, "store", None)
    if store is not None:
        return store
    if db.AsyncSessionLocal is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return ActionStore(db.AsyncSessionLocal)


def get_evaluator(request: Request, store: ActionStore = Depends(get_store)) -> TriggerEvaluator:
    return TriggerEvaluator(
        store,
        request.app.state.accounts,
        getattr(request.app.state, "notifier", None),
    )


# ==== SIGNAL INTAKE ====

@router.post("/signals", response_model=SignalResult)
async def submit_signal(
    signal: Signal,
    evaluator: TriggerEvaluator = Depends(get_evaluator),
) -> SignalResult:
    """Evaluate a market signal against every account; duplicates are no-ops."""
    try:
        created = await evaluator.evaluate(signal)
    except PersistenceError as e:
        logger.error(f"Signal {signal.source_event_id} not evaluated: {e}")
        raise HTTPException(status_code=503, detail="Action store unavailable")
    return SignalResult(source_event_id=signal.source_event_id, queued=len(created), actions=created)


# ==== QUEUE VIEWS ====

@router.get("/item/{action_id}", response_model=Action)
async def get_action(action_id: str, store: ActionStore = Depends(get_store)) -> Action:
    try:
        action = await store.get(action_id)
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Action store unavailable")
    if action is None:
        raise HTTPException(status_code=404, detail=f"Action {action_id} not found")
    return action


@router.get("/{account_id}/pending", response_model=List[Action])
async def get_pending(account_id: str, store: ActionStore = Depends(get_store)) -> List[Action]:
    try:
        return await store.pending(account_id)
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Action store unavailable")


@router.get("/{account_id}/history", response_model=List[ActionHistoryItem])
async def get_history(
    account_id: str,
    limit: int = Query(50, ge=1, le=500),
    store: ActionStore = Depends(get_store),
) -> List[ActionHistoryItem]:
    try:
        return await store.history(account_id, limit)
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Action store unavailable")


@router.get("/{account_id}/stats", response_model=ActionStats)
async def get_stats(account_id: str, store: ActionStore = Depends(get_store)) -> ActionStats:
    try:
        return await store.stats(account_id)
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Action store unavailable")


# ==== MANUAL TEST ====

@router.post("/{account_id}/test", response_model=Action)
async def run_test_action(account_id: str, request: Request) -> Action:
    """Create a sample fresh-insider action and run it through the pipeline now."""
    scheduler = request.app.state.scheduler
    try:
        future = scheduler.run_test_action(account_id)
    except RuntimeError:
        raise HTTPException(status_code=409, detail="Scheduler is not running")

    try:
        return await asyncio.wrap_future(future)
    except AccountNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError:
        raise HTTPException(status_code=503, detail="Action store unavailable")
    except asyncio.CancelledError:
        raise HTTPException(status_code=409, detail="Scheduler stopped before the test action finished")
