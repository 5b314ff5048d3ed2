from __future__ import annotations
"""Lifecycle event fan-out to notification handlers.

Delivery mechanics (email, push, chat) live in the handlers; this module only
guarantees that publishing is fire-and-forget: it runs after the lifecycle
transaction has committed and a failing handler is logged, never raised.
"""
import logging
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

TICKET_OPENED = 'ticket.opened'
REPAIR_COMPLETED = 'repair.completed'
PICKUP_PENDING = 'pickup.pending'
TICKET_CLOSED = 'ticket.closed'
MAINTENANCE_SCHEDULED = 'maintenance.scheduled'

Handler = Callable[[str, Dict[str, Any]], None]
_handlers: List[Handler] = []


def subscribe(handler: Handler) -> Handler:
    if handler not in _handlers:
        _handlers.append(handler)
    return handler


def unsubscribe(handler: Handler) -> None:
    if handler in _handlers:
        _handlers.remove(handler)


def publish(event_name: str, payload: Dict[str, Any]) -> int:
    """Deliver to every handler; returns how many succeeded."""
    delivered = 0
    logger.info('lifecycle event %s %s', event_name, payload)
    for handler in list(_handlers):
        try:
            handler(event_name, payload)
            delivered += 1
        except Exception:
            logger.warning('notification handler %r failed for %s', handler, event_name, exc_info=True)
    return delivered


def publish_all(events) -> None:
    for name, payload in events:
        publish(name, payload)
