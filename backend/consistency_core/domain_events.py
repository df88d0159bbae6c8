"""
Budget alert channel.

Alerts produced by a mutation are queued while the mutation is in flight and
published only after the atomic batch commits. Subscribers are injected
(notification sender, websocket fan-out, tests); there is no global emitter.
Subscriber failures are logged and swallowed so delivery problems never
affect the committed mutation.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable, Dict, Any, List, Optional
import asyncio
import uuid
import logging

logger = logging.getLogger(__name__)


@dataclass
class BudgetAlertEvent:
    """Payload delivered to alert subscribers"""
    category_id: str
    type: str
    severity: str
    message: str
    budget_id: Optional[str] = None
    owner_id: Optional[str] = None
    transaction_id: Optional[str] = None
    threshold: Optional[float] = None
    current_amount: Optional[float] = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)

    @classmethod
    def from_alert(cls, alert: Dict[str, Any]) -> "BudgetAlertEvent":
        return cls(
            category_id=alert["category_id"],
            type=alert["type"],
            severity=alert["severity"],
            message=alert["message"],
            budget_id=alert.get("budget_id"),
            owner_id=alert.get("owner_id"),
            transaction_id=alert.get("transaction_id"),
            threshold=alert.get("threshold"),
            current_amount=alert.get("current_amount"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


AlertHandler = Callable[[BudgetAlertEvent], Any]


class PendingAlerts:
    """Events queued by one mutation; emitted after commit, dropped on rollback."""

    def __init__(self, channel: "AlertChannel"):
        self._channel = channel
        self._events: List[BudgetAlertEvent] = []

    def queue(self, event: BudgetAlertEvent):
        if not isinstance(event, BudgetAlertEvent):
            raise TypeError(f"Expected BudgetAlertEvent, got {type(event).__name__}")
        self._events.append(event)

    @property
    def events(self) -> List[BudgetAlertEvent]:
        return list(self._events)

    def __len__(self):
        return len(self._events)

    async def emit(self) -> int:
        """Emit all pending events (call AFTER commit)"""
        events_to_emit = self._events.copy()
        self._events.clear()
        return await self._channel.publish(events_to_emit)

    def clear(self):
        """Clear pending events (call on rollback)"""
        self._events.clear()


class AlertChannel:
    """Typed publish/subscribe channel for BudgetAlertEvent"""

    def __init__(self):
        self._handlers: List[AlertHandler] = []

    def subscribe(self, handler: AlertHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe():
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def pending(self) -> PendingAlerts:
        return PendingAlerts(self)

    async def publish(self, events: List[BudgetAlertEvent]) -> int:
        delivered = 0
        for event in events:
            for handler in list(self._handlers):
                try:
                    if asyncio.iscoroutinefunction(handler):
                        await handler(event)
                    else:
                        handler(event)
                    delivered += 1
                except Exception as e:
                    logger.error(f"[EVENT] Alert handler error: {event.type} - {str(e)}")

            logger.info(
                f"[EVENT] Emitted: {event.type} category={event.category_id} - {event.event_id}"
            )
        return delivered
