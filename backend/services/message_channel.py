"""Message channel between the authorization callback and the broker.

The bank redirect lands in a different browsing context from the one
that started the flow. The callback side posts an ``AuthorizationMessage``
on a channel; the broker listens on the same channel and acts only on
messages whose origin it trusts.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol

from integrations.aggregator_protocol import ExternalAccount

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Outcome kinds the callback can report."""

    SUCCESS = "GOCARDLESS_SUCCESS"
    ERROR = "GOCARDLESS_ERROR"
    CANCELLED = "GOCARDLESS_CANCELLED"


@dataclass
class AuthorizationMessage:
    """Payload posted by the callback context."""

    type: MessageType
    origin: str
    requisition_id: str | None = None
    accounts: list[ExternalAccount] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def success(cls, origin: str, requisition_id: str, accounts: list[ExternalAccount]):
        return cls(MessageType.SUCCESS, origin, requisition_id=requisition_id, accounts=accounts)

    @classmethod
    def failure(cls, origin: str, error: str):
        return cls(MessageType.ERROR, origin, error=error)

    @classmethod
    def cancelled(cls, origin: str):
        return cls(MessageType.CANCELLED, origin)


MessageHandler = Callable[[AuthorizationMessage], None]


class MessageChannel(Protocol):
    def send(self, message: AuthorizationMessage) -> None:
        ...

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        """Subscribe; returns a callable that removes the subscription."""
        ...

    def close(self) -> None:
        ...


class InProcessMessageChannel:
    """Thread-safe in-memory channel.

    Handlers run on the sender's thread. A handler that raises is logged
    and does not stop delivery to the others.
    """

    def __init__(self):
        self._handlers: list[MessageHandler] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, message: AuthorizationMessage) -> None:
        with self._lock:
            if self._closed:
                logger.debug("Dropping %s on closed channel", message.type.value)
                return
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(message)
            except Exception:
                logger.exception("Authorization message handler failed")

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def close(self) -> None:
        with self._lock:
            self._closed = True
            self._handlers.clear()
