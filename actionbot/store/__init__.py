"""Action store package."""
from actionbot.store.models import ActionEventLog, Base, TweetAction
from actionbot.store.db import close_db, init_db
from actionbot.store.service import ActionStore

__all__ = ["ActionEventLog", "ActionStore", "Base", "TweetAction", "close_db", "init_db"]
