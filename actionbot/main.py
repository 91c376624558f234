"""FastAPI application entrypoint."""
import asyncio
import logging
import sys
from typing import Any, Dict

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from actionbot.accounts import JsonAccountSource
from actionbot.api import router as actions_router
from actionbot.config import Config
from actionbot.notifier import Notifier
from actionbot.scheduler import ActionScheduler
from actionbot.store import close_db, init_db

# Configure logging
logging.basicConfig(
    level=Config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Validate config on startup
try:
    Config.validate()
except ValueError as e:
    logger.error(f"Configuration error: {e}")
    sys.exit(1)

app = FastAPI(title="Action Bot", version="1.0.0")

accounts = JsonAccountSource(Config.ACCOUNTS_FILE)
notifier = Notifier(Config.NOTIFY_WEBHOOK_URL)
scheduler = ActionScheduler(accounts, notifier=notifier)

app.state.accounts = accounts
app.state.notifier = notifier
app.state.scheduler = scheduler
app.include_router(actions_router)


class MessageResponse(BaseModel):
    """Standard response model."""
    message: str


class StatusResponse(BaseModel):
    state: str
    running: bool
    ready: bool
    queue_passes: int
    retry_passes: int
    actions_processed: int
    started_at: str | None
    last_queue_pass: str | None
    last_retry_pass: str | None


@app.on_event("startup")
async def startup_event() -> None:
    logger.info("Initializing action store...")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("Shutting down...")

    if scheduler.running:
        logger.info("Stopping scheduler...")
        await asyncio.to_thread(scheduler.stop)

    logger.info("Closing database connections...")
    try:
        await close_db()
    except Exception as e:
        logger.warning(f"Error closing database: {e}")


@app.post("/start", response_model=MessageResponse)
async def start_scheduler() -> MessageResponse:
    if scheduler.start():
        return MessageResponse(message="Action scheduler started successfully")
    raise HTTPException(status_code=400, detail="Failed to start scheduler")


@app.post("/stop", response_model=MessageResponse)
async def stop_scheduler() -> MessageResponse:
    # stop() joins the worker thread; keep the event loop free meanwhile
    if await asyncio.to_thread(scheduler.stop):
        return MessageResponse(message="Action scheduler stopped successfully")
    raise HTTPException(status_code=400, detail="Failed to stop scheduler")


@app.get("/status", response_model=StatusResponse)
async def get_status() -> StatusResponse:
    status: Dict[str, Any] = scheduler.get_status()
    return StatusResponse(**status)


@app.get("/health")
async def health_check() -> MessageResponse:
    return MessageResponse(message="OK")


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Starting {Config.BOT_NAME} v1.0.0 on 0.0.0.0:8000")
    logger.info(f"Poster provider: {Config.POSTER_PROVIDER}")
    logger.info(f"Accounts file: {Config.ACCOUNTS_FILE}")

    uvicorn.run(
        "actionbot.main:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
    )
