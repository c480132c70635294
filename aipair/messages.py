"""
AI Pair message channel.

A synchronous callback registry that carries observer traffic in both
directions: outbound notifications (state/config/log updates) go to
subscribers, inbound requests (start/stop/view...) are routed to the
handler registered for their kind. One channel is created per session
and handed to whoever needs it; there is no module-level instance.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, get_args

from loguru import logger
from pydantic import BaseModel, Field

MessageKind = Literal[
    "stateUpdate",
    "configUpdate",
    "logUpdate",
    "viewBuildLog",
    "viewTestLog",
    "viewGenerationLog",
    "viewDiff",
    "startWithHint",
    "startAIPair",
    "stopAIPair",
    "openSettings",
    "requestLogs",
    "requestState",
]

MESSAGE_KINDS: frozenset[str] = frozenset(get_args(MessageKind))


class Message(BaseModel):
    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    kind: MessageKind
    payload: Dict[str, Any] = Field(default_factory=dict)


Subscriber = Callable[[Message], None]
Handler = Callable[[Message], None]


class UnhandledMessageError(Exception):
    pass


class MessageChannel:
    """Explicit message channel between the run and its observers."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._handlers: Dict[str, Handler] = {}

    # -- Outbound -----------------------------------------------------------

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback for every emitted message. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, kind: str, payload: Dict[str, Any] | None = None) -> Message:
        """Construct a Message and broadcast it to all subscribers."""
        message = Message(kind=kind, payload=payload or {})

        for subscriber in list(self._subscribers):
            try:
                subscriber(message)
            except Exception:
                # Observer failures never reach the emitter
                logger.exception(f"[CHANNEL] Subscriber failed on {message.kind}")

        return message

    # -- Inbound ------------------------------------------------------------

    def on(self, kind: str, handler: Handler) -> None:
        """Register the handler for an inbound message kind."""
        if kind not in MESSAGE_KINDS:
            raise ValueError(f"Unknown message kind: {kind}")
        self._handlers[kind] = handler

    def receive(self, kind: str, payload: Dict[str, Any] | None = None) -> None:
        """Validate an inbound message and dispatch it to its handler."""
        message = Message(kind=kind, payload=payload or {})
        handler = self._handlers.get(message.kind)
        if handler is None:
            raise UnhandledMessageError(f"No handler registered for {message.kind}")
        logger.debug(f"[CHANNEL] ← {message.kind}")
        handler(message)
