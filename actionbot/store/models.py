"""SQLAlchemy ORM models for the action queue and dedup ledger."""
from sqlalchemy import Column, DateTime, Index, Integer, JSON, PrimaryKeyConstraint, String, Text
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func

Base = declarative_base()


class TweetAction(Base):
    """One queued/processed automated post opportunity."""

    __tablename__ = "tweet_actions"

    id = Column(String(36), primary_key=True)
    account_id = Column(String(64), nullable=False)
    source_event_id = Column(String(128), nullable=False)
    trigger_type = Column(String(32), nullable=False)

    # Snapshots captured at trigger time
    wallet_address = Column(String(64), nullable=False)
    wallet_profile = Column(JSON, nullable=True)
    trade_event = Column(JSON, nullable=True)
    market_url = Column(String(512), nullable=False, default="")
    profile_url = Column(String(512), nullable=False, default="")

    status = Column(String(16), nullable=False, default="pending")
    draft_text = Column(Text, nullable=False, default="")
    reviewed_text = Column(Text, nullable=False, default="")
    final_text = Column(Text, nullable=False, default="")
    screenshot_path = Column(String(512), nullable=False, default="")
    posted_id = Column(String(64), nullable=False, default="")
    tokens_used = Column(Integer, nullable=False, default=0)

    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=False, default="")

    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"TweetAction("
            f"id={self.id}, "
            f"account_id={self.account_id}, "
            f"status={self.status}, "
            f"retry_count={self.retry_count})"
        )


class ActionEventLog(Base):
    """Dedup ledger: at most one action per (account_id, source_event_id)."""

    __tablename__ = "action_event_log"
    __table_args__ = (
        PrimaryKeyConstraint("account_id", "source_event_id", name="pk_action_event_log"),
    )

    account_id = Column(String(64), nullable=False)
    source_event_id = Column(String(128), nullable=False)
    action_id = Column(String(36), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=func.now())


Index("ix_tweet_actions_account_status", TweetAction.account_id, TweetAction.status, TweetAction.created_at)
Index("ix_tweet_actions_status_retry", TweetAction.status, TweetAction.next_retry_at)
