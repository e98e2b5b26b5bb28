"""Per-session connection lifecycle with exponential-backoff reconnects.

State machine::

    DISCONNECTED → CONNECTING → (success) → CONNECTED → (transport error) → RECONNECT_SCHEDULED
                              → (failure) →             RECONNECT_SCHEDULED → CONNECTING

Each failure schedules exactly one retry task on the dispatcher.  The retry
task returns ``0`` when the connection came up and the next backoff delay
when it did not, so the dispatcher re-arms that same task; a session never
has more than one retry outstanding.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol

from gpsstats.dispatcher import Dispatcher, Handle, Task
from gpsstats.models import ConnectionState, SessionStats, Status

logger = logging.getLogger(__name__)

INITIAL_DELAY = 1.0
MAX_DELAY = 32.0

# Consecutive failures after which reconnect noise is logged as a warning.
WARN_AFTER_FAILURES = 3


class Session(Protocol):
    """What the scheduler needs from a source or sink session."""

    name: str
    state: ConnectionState
    stats: SessionStats

    def connect(self) -> Status: ...

    def disconnect(self) -> None: ...

    def fileno(self) -> int: ...

    def interest(self) -> int: ...


class Backoff:
    """Doubling delay: 1, 2, 4, ... capped at *maximum*, reset on success."""

    def __init__(self, initial: float = INITIAL_DELAY, maximum: float = MAX_DELAY) -> None:
        self.initial = initial
        self.maximum = maximum
        self.next_delay = initial
        self.next_attempt: Optional[float] = None

    def failure(self, now: float) -> float:
        """Record a failed attempt and return the delay before the next one."""
        delay = self.next_delay
        self.next_attempt = now + delay
        self.next_delay = min(max(self.initial, delay * 2), self.maximum)
        return delay

    def reset(self) -> None:
        self.next_delay = self.initial
        self.next_attempt = None


class ReconnectScheduler:
    """Connects a session, registers its descriptor and repairs it on failure.

    Parameters
    ----------
    dispatcher:
        The event loop that owns descriptors and tasks.
    session:
        The source or sink session being managed.
    on_ready:
        Readiness callback, invoked as ``on_ready(scheduler, events)``.
    backoff:
        Retry delay policy; a fresh 1..32 s :class:`Backoff` by default.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        session: Session,
        on_ready: Callable[["ReconnectScheduler", int], Any],
        backoff: Optional[Backoff] = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.session = session
        self.backoff = backoff or Backoff()
        self._on_ready = on_ready
        self._handle: Optional[Handle] = None
        self._task: Optional[Task] = None
        self._failures = 0

    @property
    def handle(self) -> Optional[Handle]:
        return self._handle

    @property
    def pending(self) -> Optional[Task]:
        """The outstanding retry task, if any."""
        return self._task

    @property
    def connected(self) -> bool:
        return self.session.state is ConnectionState.CONNECTED

    def attempt_connect(self) -> Status:
        """Connect now, or schedule a retry when that fails.

        A call made while a retry is already pending does nothing.
        """
        if self._task is not None:
            return Status.NEEDS_RECONNECT
        if self.connected:
            return Status.OK

        status = self._try_connect()
        if status is not Status.OK:
            self._schedule_retry()
        return status

    def connection_lost(self) -> None:
        """Tear the session down and schedule a reconnect."""
        if self._task is not None:
            return
        logger.debug("%s: connection lost, scheduling reconnect", self.session.name)
        self.teardown()
        self._schedule_retry()

    def force_reconnect(self) -> Status:
        """Drop the current connection and reconnect immediately."""
        self._cancel_retry()
        self.teardown()
        self.backoff.reset()
        self._failures = 0
        return self.attempt_connect()

    def set_interest(self, events: int) -> None:
        if self._handle is not None:
            self.dispatcher.modify(self._handle, events)

    def teardown(self) -> None:
        """Deregister the descriptor and close the session, best-effort."""
        if self._handle is not None:
            self.dispatcher.unregister(self._handle)
            self._handle = None
        if self.session.state is ConnectionState.CONNECTED:
            self.session.stats.disconnects += 1
        if self.session.state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING):
            self.session.disconnect()
        self.session.state = ConnectionState.DISCONNECTED

    def shutdown(self) -> None:
        self._cancel_retry()
        self.teardown()

    # ── internal ────────────────────────────────────────────────────

    def _try_connect(self) -> Status:
        session = self.session
        session.state = ConnectionState.CONNECTING
        try:
            status = session.connect()
        except Exception:
            logger.exception("%s: unexpected error while connecting", session.name)
            status = Status.NEEDS_RECONNECT

        if status is not Status.OK:
            session.disconnect()
            session.state = ConnectionState.DISCONNECTED
            return status

        self._handle = self.dispatcher.register(
            session.fileno(), session.interest(), self._on_ready, self
        )
        session.state = ConnectionState.CONNECTED
        session.stats.connects += 1
        self.backoff.reset()
        self._failures = 0
        logger.info("%s: connected", session.name)
        return Status.OK

    def _schedule_retry(self) -> None:
        self.session.state = ConnectionState.RECONNECT_SCHEDULED
        if self._task is not None:
            return
        delay = self._record_failure()
        self._task = self.dispatcher.schedule(delay, ReconnectScheduler._retry, self)

    def _retry(self) -> float:
        status = self._try_connect()
        if status is Status.OK:
            self._task = None
            return 0
        self.session.state = ConnectionState.RECONNECT_SCHEDULED
        return self._record_failure()

    def _record_failure(self) -> float:
        delay = self.backoff.failure(self.dispatcher.now())
        self._failures += 1
        log = logger.warning if self._failures >= WARN_AFTER_FAILURES else logger.debug
        log(
            "%s: reconnecting in %.0fs (attempt %d)",
            self.session.name,
            delay,
            self._failures,
        )
        return delay

    def _cancel_retry(self) -> None:
        if self._task is not None:
            self.dispatcher.cancel(self._task)
            self._task = None
