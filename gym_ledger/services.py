"""
Wiring of the engine onto the Flask app: one EventBus and one set of
EngineSettings per app, and engine objects bound to the request's
database session.
"""
import logging

from flask import current_app

from gym_ledger.engine import (
    BillingService, EngineSettings, EventBus, LifecycleEvents, LifecycleOrchestrator, SessionScheduler,
)
from gym_ledger.store import SQLAlchemyLedgerStore

logger = logging.getLogger(__name__)


def _log_event(event):
    logger.info(f"Event {event.name.value}: {event.payload}")


def init_engine(app):
    event_bus = EventBus()
    for name in LifecycleEvents:
        event_bus.subscribe(name, _log_event)

    app.extensions['gym_ledger'] = {
        'settings': EngineSettings.from_config(app.config),
        'event_bus': event_bus,
    }


def _state():
    return current_app.extensions['gym_ledger']


def get_event_bus() -> EventBus:
    return _state()['event_bus']


def get_store():
    return SQLAlchemyLedgerStore()


def get_orchestrator() -> LifecycleOrchestrator:
    state = _state()
    return LifecycleOrchestrator(get_store(), settings=state['settings'], event_bus=state['event_bus'])


def get_billing() -> BillingService:
    return BillingService(get_store(), settings=_state()['settings'])


def get_scheduler() -> SessionScheduler:
    return SessionScheduler(get_store(), event_bus=get_event_bus())
