"""Single-threaded, selector-based event loop.

Each iteration::

    apply queued changes → select(timeout) → readiness callbacks → due tasks

* ``timeout`` is the time left until the nearest task deadline, capped at
  :data:`DEFAULT_TICK`.
* Descriptor callbacks are invoked as ``callback(context, events)``.
* Task callbacks are invoked as ``callback(context)``; a positive return
  value reschedules the task that many seconds later, anything else ends it.
* Registrations, interest changes, unregistrations and new tasks requested
  while callbacks are running are queued and applied at the start of the
  next iteration.  An unregistered handle is deactivated at once, so it
  receives no further callbacks in the current iteration either.
* A failing callback is logged and contained; a failing ``select()`` is
  fatal and stops the loop.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import selectors
import time
from collections import deque
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

EVENT_READ = selectors.EVENT_READ
EVENT_WRITE = selectors.EVENT_WRITE

DEFAULT_TICK = 0.25

ReadyCallback = Callable[[Any, int], None]
TaskCallback = Callable[[Any], Optional[float]]


class Handle:
    """A descriptor registration owned by the dispatcher."""

    __slots__ = ("fd", "events", "callback", "context", "active")

    def __init__(self, fd: int, events: int, callback: ReadyCallback, context: Any) -> None:
        self.fd = fd
        self.events = events
        self.callback = callback
        self.context = context
        self.active = True

    def __repr__(self) -> str:
        return f"Handle(fd={self.fd}, events={self.events}, active={self.active})"


class Task:
    """A scheduled callback; one-shot unless its callback asks for more."""

    __slots__ = ("deadline", "callback", "context", "cancelled")

    def __init__(self, deadline: float, callback: TaskCallback, context: Any) -> None:
        self.deadline = deadline
        self.callback = callback
        self.context = context
        self.cancelled = False

    def __repr__(self) -> str:
        return f"Task(deadline={self.deadline:.3f}, callback={self.callback!r})"


class Dispatcher:
    """Owns the watched descriptors and scheduled tasks of the process.

    Parameters
    ----------
    selector:
        A :class:`selectors.BaseSelector`; defaults to the platform's best.
    clock:
        Monotonic time source in seconds, injectable for tests.
    tick:
        Upper bound on a single ``select()`` wait.
    """

    def __init__(
        self,
        selector: Optional[selectors.BaseSelector] = None,
        clock: Optional[Callable[[], float]] = None,
        tick: float = DEFAULT_TICK,
    ) -> None:
        self._selector = selector or selectors.DefaultSelector()
        self._clock: Callable[[], float] = clock or time.monotonic
        self._tick = tick
        self._handles: dict[int, Handle] = {}
        self._heap: list[tuple[float, int, Task]] = []
        self._tasks: set[Task] = set()
        self._pending: deque = deque()
        self._seq = itertools.count()
        self._dispatching = False
        self._running = False

    # ── public API ──────────────────────────────────────────────────

    @property
    def handles(self) -> tuple[Handle, ...]:
        """Handles currently registered with the selector."""
        return tuple(self._handles.values())

    @property
    def tasks(self) -> tuple[Task, ...]:
        """Tasks that are scheduled and not cancelled."""
        return tuple(t for t in self._tasks if not t.cancelled)

    @property
    def running(self) -> bool:
        return self._running

    def now(self) -> float:
        return self._clock()

    def register(
        self,
        fd: int,
        events: int,
        callback: ReadyCallback,
        context: Any = None,
    ) -> Handle:
        """Watch *fd* for *events* and route readiness to *callback*."""
        handle = Handle(fd, events, callback, context)
        self._submit(self._apply_register, handle, events)
        return handle

    def modify(self, handle: Handle, events: int) -> None:
        """Change the interest mask of *handle*."""
        if handle.active:
            self._submit(self._apply_modify, handle, events)

    def unregister(self, handle: Handle) -> None:
        """Stop watching *handle*; no further callbacks reach it."""
        handle.active = False
        self._submit(self._apply_unregister, handle)

    def schedule(self, delay: float, callback: TaskCallback, context: Any = None) -> Task:
        """Run *callback* once *delay* seconds from now."""
        task = Task(self._clock() + max(0.0, delay), callback, context)
        self._tasks.add(task)
        self._submit(self._apply_schedule, task)
        return task

    def cancel(self, task: Task) -> None:
        task.cancelled = True
        self._tasks.discard(task)

    def call_soon(self, callback: TaskCallback, context: Any = None) -> None:
        """Queue *callback* for the next iteration.

        Safe to call from a signal handler: it only appends to a deque.
        """
        self._pending.append((self._schedule_now, (callback, context)))

    def run(self) -> None:
        """Iterate until :meth:`stop` is called or the selector fails."""
        self._running = True
        logger.debug("Dispatcher running (tick=%.3fs)", self._tick)
        try:
            while self._running:
                self.run_once()
        finally:
            self._running = False
            logger.debug("Dispatcher stopped")

    def stop(self) -> None:
        self._running = False

    def close(self) -> None:
        self._selector.close()

    def run_once(self) -> None:
        """Perform a single poll-and-dispatch iteration."""
        self._apply_pending()

        try:
            ready = self._selector.select(self._next_timeout())
        except OSError as exc:
            logger.error("Polling descriptors failed: %s", exc)
            self._running = False
            raise

        self._dispatching = True
        try:
            for key, events in ready:
                handle: Handle = key.data
                if not handle.active:
                    continue
                mask = events & handle.events
                if mask:
                    self._invoke(handle.callback, handle.context, mask)
            self._run_due_tasks()
        finally:
            self._dispatching = False

    # ── internal ────────────────────────────────────────────────────

    def _submit(self, fn: Callable, *args: Any) -> None:
        if self._dispatching:
            self._pending.append((fn, args))
        else:
            fn(*args)

    def _apply_pending(self) -> None:
        while self._pending:
            fn, args = self._pending.popleft()
            fn(*args)

    def _apply_register(self, handle: Handle, events: int) -> None:
        if not handle.active:
            return
        previous = self._handles.get(handle.fd)
        if previous is not None:
            logger.warning("Descriptor %d registered twice; replacing %r", handle.fd, previous)
            self._apply_unregister(previous)
        self._selector.register(handle.fd, events, handle)
        self._handles[handle.fd] = handle

    def _apply_modify(self, handle: Handle, events: int) -> None:
        if not handle.active or self._handles.get(handle.fd) is not handle:
            return
        if handle.events == events:
            return
        self._selector.modify(handle.fd, events, handle)
        handle.events = events

    def _apply_unregister(self, handle: Handle) -> None:
        handle.active = False
        if self._handles.get(handle.fd) is not handle:
            return
        del self._handles[handle.fd]
        try:
            self._selector.unregister(handle.fd)
        except (KeyError, ValueError) as exc:
            logger.debug("Descriptor %d already gone: %s", handle.fd, exc)

    def _apply_schedule(self, task: Task) -> None:
        if task.cancelled:
            return
        heapq.heappush(self._heap, (task.deadline, next(self._seq), task))

    def _schedule_now(self, callback: TaskCallback, context: Any) -> None:
        self.schedule(0.0, callback, context)

    def _next_timeout(self) -> float:
        while self._heap and self._heap[0][2].cancelled:
            heapq.heappop(self._heap)
        timeout = self._tick
        if self._pending:
            return 0.0
        if self._heap:
            timeout = min(timeout, max(0.0, self._heap[0][0] - self._clock()))
        return timeout

    def _run_due_tasks(self) -> None:
        now = self._clock()
        while self._heap and self._heap[0][0] <= now:
            _, _, task = heapq.heappop(self._heap)
            if task.cancelled:
                continue
            interval = self._invoke(task.callback, task.context)
            if task.cancelled:
                continue
            if interval is not None and interval > 0:
                task.deadline = now + interval
                self._submit(self._apply_schedule, task)
            else:
                self._tasks.discard(task)

    def _invoke(self, fn: Callable, *args: Any) -> Any:
        try:
            return fn(*args)
        except Exception:
            logger.exception("Callback %r failed", fn)
            return None
