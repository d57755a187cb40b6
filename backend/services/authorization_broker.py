"""Authorization broker - drives one bank authorization from start to outcome.

State machine::

    idle -> awaiting_flow_start -> awaiting_authorization
         -> completed | failed | cancelled -> idle

Two sources can end an attempt: a message from the callback context, or
the watcher noticing that the authorization window was closed (or that
the optional timeout elapsed). Both race to resolve the attempt's
``Future``; whichever gets the broker lock first wins and the other is
torn down. Every terminal outcome closes the window and returns the
broker to ``idle`` so a new attempt can start right away.
"""

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Protocol

from config import settings
from integrations.aggregator_protocol import ExternalAccount
from services.message_channel import AuthorizationMessage, MessageChannel, MessageType

logger = logging.getLogger(__name__)


class BrokerState(str, Enum):
    IDLE = "idle"
    AWAITING_FLOW_START = "awaiting_flow_start"
    AWAITING_AUTHORIZATION = "awaiting_authorization"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({BrokerState.COMPLETED, BrokerState.FAILED, BrokerState.CANCELLED})


class PopupBlockedError(Exception):
    """The authorization window could not be opened."""

    pass


@dataclass
class FlowStart:
    """What the backend returns when a flow is started."""

    auth_url: str
    requisition_id: str
    reference: str


@dataclass
class PendingConnection:
    """Handed to the connection registrar once account mapping is saved."""

    requisition_id: str
    institution_id: str


@dataclass
class AuthorizationOutcome:
    status: BrokerState
    institution_id: str
    requisition_id: str | None = None
    accounts: list[ExternalAccount] = field(default_factory=list)
    error: str | None = None


class AuthorizationWindow(Protocol):
    @property
    def closed(self) -> bool:
        ...

    def close(self) -> None:
        ...


class WindowOpener(Protocol):
    def open(self, url: str) -> AuthorizationWindow | None:
        """Open ``url``; ``None`` means the window was blocked."""
        ...


class FlowStarter(Protocol):
    def start_flow(self, institution_id: str, redirect_url: str) -> FlowStart:
        ...


class AuthorizationAttempt:
    """One in-flight authorization. Owns its window and watcher."""

    def __init__(self, institution_id: str, flow: FlowStart, window: AuthorizationWindow):
        self.institution_id = institution_id
        self.flow = flow
        self.window = window
        self._future: Future = Future()
        self._stop = threading.Event()
        self._resolved = False
        self._unsubscribe: Callable[[], None] | None = None
        self._broker: "AuthorizationBroker | None" = None

    @property
    def requisition_id(self) -> str:
        return self.flow.requisition_id

    @property
    def reference(self) -> str:
        return self.flow.reference

    @property
    def auth_url(self) -> str:
        return self.flow.auth_url

    def done(self) -> bool:
        return self._future.done()

    @property
    def outcome(self) -> AuthorizationOutcome | None:
        return self._future.result() if self._future.done() else None

    def wait(self, timeout: float | None = None) -> AuthorizationOutcome | None:
        """Block until the attempt resolves; ``None`` if ``timeout`` elapses first."""
        try:
            return self._future.result(timeout=timeout)
        except FutureTimeoutError:
            return None

    def cancel(self, reason: str = "Authorization cancelled") -> bool:
        """Resolve as cancelled. Returns False if already resolved."""
        if self._broker is None:
            return False
        return self._broker._resolve(
            self,
            AuthorizationOutcome(BrokerState.CANCELLED, self.institution_id, self.requisition_id, error=reason),
        )


class AuthorizationBroker:
    """Runs authorization attempts against a message channel and window opener."""

    def __init__(
        self,
        flow_starter: FlowStarter,
        window_opener: WindowOpener,
        channel: MessageChannel,
        origin: str,
        poll_interval: float | None = None,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._flow_starter = flow_starter
        self._window_opener = window_opener
        self._channel = channel
        self._origin = origin
        self._poll_interval = (
            settings.AUTHORIZATION_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        )
        self._timeout = timeout
        self._clock = clock

        self._lock = threading.Lock()
        self._state = BrokerState.IDLE
        self._attempt: AuthorizationAttempt | None = None
        self._last_outcome: AuthorizationOutcome | None = None
        self._pending_connection: PendingConnection | None = None

    @property
    def state(self) -> BrokerState:
        with self._lock:
            return self._state

    @property
    def origin(self) -> str:
        return self._origin

    @property
    def current_attempt(self) -> AuthorizationAttempt | None:
        with self._lock:
            return self._attempt

    @property
    def last_outcome(self) -> AuthorizationOutcome | None:
        with self._lock:
            return self._last_outcome

    @property
    def pending_connection(self) -> PendingConnection | None:
        with self._lock:
            return self._pending_connection

    def consume_pending_connection(self) -> PendingConnection | None:
        """Hand over the pending connection exactly once."""
        with self._lock:
            pending, self._pending_connection = self._pending_connection, None
            return pending

    def start(self, institution_id: str, redirect_url: str) -> AuthorizationAttempt:
        """Start a new authorization, cancelling any attempt still in flight.

        Raises:
            PopupBlockedError: The window opener returned nothing. The broker
                is back in ``idle`` and never entered ``awaiting_authorization``.
            Exception: Whatever the flow starter raised; the broker is back
                in ``idle``.
        """
        previous = self.current_attempt
        if previous is not None and not previous.done():
            logger.info("Cancelling in-flight authorization for %s", previous.institution_id)
            previous.cancel("Superseded by a new authorization")

        with self._lock:
            self._state = BrokerState.AWAITING_FLOW_START
            self._pending_connection = None

        try:
            flow = self._flow_starter.start_flow(institution_id, redirect_url)
        except Exception:
            logger.warning("Could not start authorization flow for %s", institution_id, exc_info=True)
            self._set_state(BrokerState.IDLE)
            raise

        window = self._window_opener.open(flow.auth_url)
        if window is None:
            logger.warning("Authorization window blocked for %s", institution_id)
            self._set_state(BrokerState.IDLE)
            raise PopupBlockedError(
                "The authorization window was blocked. Allow popups for this site and try again."
            )

        attempt = AuthorizationAttempt(institution_id, flow, window)
        attempt._broker = self
        with self._lock:
            self._attempt = attempt
            self._state = BrokerState.AWAITING_AUTHORIZATION

        attempt._unsubscribe = self._channel.on_message(
            lambda message: self._handle_message(attempt, message)
        )
        watcher = threading.Thread(
            target=self._watch,
            args=(attempt,),
            name=f"authorization-watch-{flow.reference[:8]}",
            daemon=True,
        )
        watcher.start()
        logger.info(
            "Awaiting authorization for %s (requisition %s)", institution_id, flow.requisition_id
        )
        return attempt

    def cancel(self) -> bool:
        """Cancel the in-flight attempt, if any."""
        attempt = self.current_attempt
        if attempt is None:
            return False
        return attempt.cancel()

    def _set_state(self, state: BrokerState) -> None:
        with self._lock:
            self._state = state

    def _handle_message(self, attempt: AuthorizationAttempt, message: AuthorizationMessage) -> None:
        if message.origin != self._origin:
            logger.warning("Ignoring authorization message from untrusted origin %r", message.origin)
            return
        if (
            message.requisition_id
            and attempt.requisition_id
            and message.requisition_id != attempt.requisition_id
        ):
            logger.warning(
                "Ignoring authorization message for requisition %s (expected %s)",
                message.requisition_id,
                attempt.requisition_id,
            )
            return

        if message.type == MessageType.SUCCESS:
            outcome = AuthorizationOutcome(
                BrokerState.COMPLETED,
                attempt.institution_id,
                message.requisition_id or attempt.requisition_id,
                accounts=list(message.accounts),
            )
        elif message.type == MessageType.ERROR:
            outcome = AuthorizationOutcome(
                BrokerState.FAILED,
                attempt.institution_id,
                attempt.requisition_id,
                error=message.error or "Authorization failed",
            )
        else:
            outcome = AuthorizationOutcome(
                BrokerState.CANCELLED,
                attempt.institution_id,
                attempt.requisition_id,
                error="Authorization cancelled",
            )
        self._resolve(attempt, outcome)

    def _watch(self, attempt: AuthorizationAttempt) -> None:
        deadline = None if self._timeout is None else self._clock() + self._timeout
        while not attempt._stop.wait(self._poll_interval):
            if attempt.window.closed:
                self._resolve(
                    attempt,
                    AuthorizationOutcome(
                        BrokerState.CANCELLED,
                        attempt.institution_id,
                        attempt.requisition_id,
                        error="Authorization window was closed",
                    ),
                )
                return
            if deadline is not None and self._clock() >= deadline:
                self._resolve(
                    attempt,
                    AuthorizationOutcome(
                        BrokerState.FAILED,
                        attempt.institution_id,
                        attempt.requisition_id,
                        error="Authorization timed out",
                    ),
                )
                return

    def _resolve(self, attempt: AuthorizationAttempt, outcome: AuthorizationOutcome) -> bool:
        """Resolve ``attempt`` once; later calls are no-ops returning False."""
        with self._lock:
            if attempt._resolved:
                return False
            attempt._resolved = True
            attempt._stop.set()
            is_current = attempt is self._attempt
            if is_current:
                self._state = outcome.status
                self._last_outcome = outcome
                if outcome.status == BrokerState.COMPLETED:
                    self._pending_connection = PendingConnection(
                        requisition_id=outcome.requisition_id,
                        institution_id=attempt.institution_id,
                    )
                else:
                    self._pending_connection = None

        if attempt._unsubscribe is not None:
            attempt._unsubscribe()
        if not attempt.window.closed:
            attempt.window.close()

        with self._lock:
            if self._attempt is attempt:
                self._attempt = None
                self._state = BrokerState.IDLE

        logger.info(
            "Authorization for %s %s%s",
            attempt.institution_id,
            outcome.status.value,
            f": {outcome.error}" if outcome.error and outcome.status != BrokerState.COMPLETED else "",
        )
        attempt._future.set_result(outcome)
        return True
