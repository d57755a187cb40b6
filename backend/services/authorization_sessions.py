"""Authorization sessions - hosts one broker per browser-driven authorization.

The browser opens the bank link in a popup; the bank redirects that popup
to our callback route. The server keeps a broker for each session so the
callback (which arrives on an unrelated request) can be routed by the
requisition reference to the channel of the session that started it.
Each session has its own channel and window, so concurrent users or tabs
never see each other's messages.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Callable
from urllib.parse import urlsplit

from config import settings
from services.authorization_broker import (
    AuthorizationAttempt,
    AuthorizationBroker,
    AuthorizationOutcome,
    BrokerState,
    FlowStarter,
)
from services.message_channel import AuthorizationMessage, InProcessMessageChannel

logger = logging.getLogger(__name__)


def origin_of(url: str) -> str:
    """``scheme://host[:port]`` of a URL."""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


class RemoteAuthorizationWindow:
    """A popup living in the user's browser, known only through reports."""

    def __init__(self, url: str):
        self.url = url
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def mark_closed(self) -> None:
        """The browser reported that the user closed the popup."""
        self._closed.set()

    def close(self) -> None:
        # The callback page closes the real popup itself
        self._closed.set()


class RemoteWindowOpener:
    """Hands the auth URL to the browser; opening never fails server-side."""

    def __init__(self):
        self.window: RemoteAuthorizationWindow | None = None

    def open(self, url: str) -> RemoteAuthorizationWindow:
        self.window = RemoteAuthorizationWindow(url)
        return self.window


class UnknownSessionError(Exception):
    pass


@dataclass
class AuthorizationSession:
    id: str
    institution_id: str
    broker: AuthorizationBroker
    channel: InProcessMessageChannel
    window: RemoteAuthorizationWindow
    attempt: AuthorizationAttempt
    created_at: float
    mappings_committed: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def state(self) -> BrokerState:
        outcome = self.attempt.outcome
        return outcome.status if outcome is not None else self.broker.state

    @property
    def outcome(self) -> AuthorizationOutcome | None:
        return self.attempt.outcome

    @property
    def auth_url(self) -> str:
        return self.attempt.auth_url

    @property
    def requisition_id(self) -> str:
        return self.attempt.requisition_id

    @property
    def reference(self) -> str:
        return self.attempt.reference


class AuthorizationSessionRegistry:
    """In-process registry of live authorization sessions."""

    def __init__(
        self,
        flow_starter: FlowStarter,
        poll_interval: float | None = None,
        timeout: float | None = None,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._flow_starter = flow_starter
        self._poll_interval = poll_interval
        self._timeout = settings.AUTHORIZATION_TIMEOUT_SECONDS if timeout is None else timeout
        self._ttl = settings.AUTHORIZATION_SESSION_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._sessions: dict[str, AuthorizationSession] = {}
        self._by_reference: dict[str, str] = {}
        self._lock = threading.Lock()

    def create(self, institution_id: str, redirect_url: str) -> AuthorizationSession:
        """Start a new authorization for ``institution_id``.

        Only messages stamped with the redirect URL's origin are trusted.
        Flow-start failures propagate unchanged.
        """
        self.prune()
        channel = InProcessMessageChannel()
        opener = RemoteWindowOpener()
        broker = AuthorizationBroker(
            flow_starter=self._flow_starter,
            window_opener=opener,
            channel=channel,
            origin=origin_of(redirect_url),
            poll_interval=self._poll_interval,
            timeout=self._timeout,
        )
        try:
            attempt = broker.start(institution_id, redirect_url)
        except Exception:
            channel.close()
            raise

        session = AuthorizationSession(
            id=str(uuid.uuid4()),
            institution_id=institution_id,
            broker=broker,
            channel=channel,
            window=opener.window,
            attempt=attempt,
            created_at=self._clock(),
        )
        with self._lock:
            self._sessions[session.id] = session
            self._by_reference[attempt.reference] = session.id
        logger.info("Authorization session %s started for %s", session.id, institution_id)
        return session

    def get(self, session_id: str) -> AuthorizationSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(f"Authorization session not found: {session_id}")
        return session

    def find_by_reference(self, reference: str) -> AuthorizationSession | None:
        with self._lock:
            session_id = self._by_reference.get(reference)
            return self._sessions.get(session_id) if session_id else None

    def deliver(self, reference: str, message: AuthorizationMessage) -> bool:
        """Route a callback message to the session that owns ``reference``."""
        session = self.find_by_reference(reference)
        if session is None:
            logger.warning("No authorization session for reference %s", reference)
            return False
        session.channel.send(message)
        return True

    def report_window_closed(self, session_id: str) -> AuthorizationSession:
        session = self.get(session_id)
        session.window.mark_closed()
        return session

    def cancel(self, session_id: str) -> AuthorizationSession:
        session = self.get(session_id)
        session.attempt.cancel("Authorization cancelled by user")
        return session

    def remove(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is not None:
                self._by_reference.pop(session.reference, None)
        if session is not None:
            session.attempt.cancel("Authorization session closed")
            session.channel.close()

    def prune(self) -> int:
        """Drop sessions older than the TTL. Returns how many were removed."""
        cutoff = self._clock() - self._ttl
        with self._lock:
            stale = [s.id for s in self._sessions.values() if s.created_at < cutoff]
        for session_id in stale:
            self.remove(session_id)
        if stale:
            logger.debug("Pruned %d authorization session(s)", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def close_all(self) -> None:
        """Cancel every live session (application shutdown)."""
        with self._lock:
            session_ids = list(self._sessions)
        for session_id in session_ids:
            self.remove(session_id)
