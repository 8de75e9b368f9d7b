"""Synchronous observer list with a re-entrancy guard."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Set

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]

MAX_ROUNDS = 10


class EventBus:
    """Named events dispatched to handlers in registration order.

    An event emitted while it is already being dispatched is not nested: it
    is deferred and dispatched again, with its latest payload, once the
    current round of handlers has finished. At most ``max_rounds`` rounds run
    per outer emit.
    """

    def __init__(self, max_rounds: int = MAX_ROUNDS) -> None:
        self._handlers: Dict[str, List[Handler]] = {}
        self._dispatching: Set[str] = set()
        self._pending: Dict[str, Dict[str, Any]] = {}
        self.max_rounds = max_rounds

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        if not callable(handler):
            raise TypeError(f"Handler for {event!r} must be callable")
        self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(event, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def handlers(self, event: str) -> List[Handler]:
        return list(self._handlers.get(event, []))

    def is_dispatching(self, event: str) -> bool:
        return event in self._dispatching

    def has_pending(self, event: str) -> bool:
        return event in self._pending

    def emit(self, event: str, **payload: Any) -> bool:
        """Call every handler of ``event``; returns False when the emit was deferred."""
        if event in self._dispatching:
            logger.debug("Deferred re-entrant %r event", event)
            self._pending[event] = payload
            return False
        self._dispatching.add(event)
        try:
            rounds = 0
            while True:
                for handler in self.handlers(event):
                    handler(**payload)
                rounds += 1
                if event not in self._pending:
                    break
                payload = self._pending.pop(event)
                if rounds >= self.max_rounds:
                    logger.warning("Dropped %r event after %d dispatch rounds", event, rounds)
                    break
        finally:
            self._dispatching.discard(event)
            self._pending.pop(event, None)
        return True
