"""Observer events for action lifecycle changes."""
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

import requests

from actionbot.config import Config

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Dict[str, Any]], None]

ACTION_QUEUED = "action:queued"
ACTION_GENERATING = "action:generating"
ACTION_POSTING = "action:posting"
ACTION_COMPLETED = "action:completed"
ACTION_FAILED = "action:failed"


class Notifier:
    """Fan events out to in-process subscribers and an optional webhook.

    Fire-and-forget: never raises, so a broken observer cannot stall the pipeline.
    """

    def __init__(self, webhook_url: str = "") -> None:
        self.webhook_url = webhook_url
        self.session = requests.Session()
        self._subscribers: List[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def send_event(self, event_type: str, data: Dict[str, Any]) -> bool:
        """
        Deliver an event to every subscriber, then to the webhook if configured.

        Args:
            event_type: Event name (e.g. 'action:queued', 'action:completed')
            data: Event payload, usually the full action snapshot

        Returns:
            False if any delivery failed, True otherwise
        """
        ok = True
        for callback in list(self._subscribers):
            try:
                callback(event_type, data)
            except Exception as e:
                logger.warning(f"Event subscriber failed on {event_type}: {e}")
                ok = False

        if self.webhook_url:
            ok = self._post_webhook(event_type, data) and ok
        return ok

    def send_action(self, event_type: str, action) -> bool:
        """Send an action lifecycle event carrying the action snapshot."""
        return self.send_event(event_type, action.model_dump(mode="json"))

    def _post_webhook(self, event_type: str, data: Dict[str, Any]) -> bool:
        try:
            payload = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event_type": event_type,
                "bot_name": Config.BOT_NAME,
                "data": data,
            }

            response = self.session.post(
                self.webhook_url,
                json=payload,
                headers={"Content-Type": "application/json"},
                timeout=5,
            )

            if response.status_code >= 400:
                logger.warning(f"Webhook returned {response.status_code}: {response.text[:200]}")
                return False

            logger.debug(f"Event sent: {event_type}")
            return True

        except requests.exceptions.Timeout:
            logger.warning(f"Webhook timeout sending {event_type}")
            return False
        except requests.exceptions.ConnectionError:
            logger.warning(f"Webhook connection error sending {event_type}")
            return False
        except Exception as e:
            logger.error(f"Unexpected error sending webhook event: {e}", exc_info=True)
            return False

    def send_started(self) -> bool:
        return self.send_event("started", {"message": "Action scheduler started"})

    def send_stopped(self) -> bool:
        return self.send_event("stopped", {"message": "Action scheduler stopped"})
