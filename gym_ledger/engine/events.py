"""
Typed lifecycle events.

The orchestrator returns the events it produced as part of every
TransitionResult; callers that want push delivery pass an EventBus in and
subscribe handlers to LifecycleEvents members.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class LifecycleEvents(str, Enum):
    MEMBERSHIP_CREATED = 'membership_created'
    MEMBERSHIP_CHANGED = 'membership_changed'
    PAYMENT_PLAN_REQUESTED = 'payment_plan_requested'
    CREDIT_ISSUED = 'credit_issued'
    COMMISSION_REASSIGNED = 'commission_reassigned'
    SESSION_SCHEDULED = 'session_scheduled'


@dataclass(frozen=True)
class Event:
    name: LifecycleEvents
    payload: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Event], None]


class EventBus:
    """In-process publish/subscribe keyed by LifecycleEvents"""

    def __init__(self):
        self._handlers: Dict[LifecycleEvents, List[Handler]] = defaultdict(list)

    def subscribe(self, name: LifecycleEvents, handler: Handler):
        if handler not in self._handlers[name]:
            self._handlers[name].append(handler)

    def unsubscribe(self, name: LifecycleEvents, handler: Handler):
        if handler in self._handlers[name]:
            self._handlers[name].remove(handler)

    def publish(self, event: Event):
        for handler in list(self._handlers[event.name]):
            try:
                handler(event)
            except Exception as exc:
                # A subscriber never undoes a committed transition
                logger.error(f"Handler {getattr(handler, '__name__', handler)} failed for {event.name.value}: {exc}")
