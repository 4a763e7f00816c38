"""
SideEffectDispatcher -- post-commit jobs on worker threads.

Contract:
    ``publish(event)`` enqueues one job per handler registered for the
    event's type and returns at once.  Worker threads (``start()`` /
    ``stop()``) run each job with its own timeout.  A job is attempted at
    most ``max_attempts`` times (default 1, i.e. at-most-once delivery).

Invariants enforced:
    - Handler failures and timeouts are logged as ``SideEffectError`` and
      recorded in ``outcomes``; they never propagate to the publisher.
    - A full queue drops the job and records the drop; ``publish`` never
      blocks the request thread.

Non-goals:
    - NOT durable.  Jobs queued in memory are lost on process exit.
    - Does NOT cancel a handler that overruns its timeout; the job is
      recorded as failed and its late result is ignored.
"""

from __future__ import annotations

import contextvars
import queue
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Protocol, runtime_checkable
from uuid import UUID

from caisse_kernel.domain.events import SideEffectEvent
from caisse_kernel.exceptions import SideEffectError
from caisse_kernel.logging_config import LogContext, get_logger

logger = get_logger("services.side_effects")

_STOP = object()


# =============================================================================
# Handler protocol and registry
# =============================================================================


@runtime_checkable
class SideEffectHandler(Protocol):
    """One post-commit action, e.g. sending a notice or archiving a PDF."""

    @property
    def name(self) -> str: ...

    def handle(self, event: SideEffectEvent) -> None: ...


class HandlerRegistry:
    """
    Maps event types to handlers.

    ``register()`` raises ValueError when the same handler name is
    registered twice for one event type.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[SideEffectHandler]] = {}

    def register(
        self,
        event_type: type[SideEffectEvent] | str,
        handler: SideEffectHandler,
    ) -> None:
        key = event_type if isinstance(event_type, str) else event_type.__name__
        handlers = self._handlers.setdefault(key, [])
        if any(existing.name == handler.name for existing in handlers):
            raise ValueError(f"Handler '{handler.name}' is already registered for {key}")
        handlers.append(handler)

    def handlers_for(self, event: SideEffectEvent) -> tuple[SideEffectHandler, ...]:
        return tuple(self._handlers.get(event.event_type, ()))

    def event_types(self) -> list[str]:
        return sorted(self._handlers)


# =============================================================================
# Outcomes
# =============================================================================


@dataclass(frozen=True)
class JobOutcome:
    """Final state of one (event, handler) job."""

    event_id: UUID
    event_type: str
    handler: str
    succeeded: bool
    attempts: int
    error: str | None = None


@dataclass(frozen=True)
class _Job:
    event: SideEffectEvent
    handler: SideEffectHandler


class _HandlerTimeout(Exception):
    pass


# =============================================================================
# Dispatcher
# =============================================================================


class SideEffectDispatcher:
    """In-process queue with a fixed pool of worker threads."""

    def __init__(
        self,
        registry: HandlerRegistry,
        workers: int = 2,
        handler_timeout_seconds: float = 30.0,
        max_attempts: int = 1,
        queue_size: int = 1000,
        outcome_history: int = 1000,
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._registry = registry
        self._worker_count = workers
        self._timeout = handler_timeout_seconds
        self._max_attempts = max_attempts
        self._queue: queue.Queue = queue.Queue(maxsize=queue_size)
        self._threads: list[threading.Thread] = []
        self._outcomes: deque[JobOutcome] = deque(maxlen=outcome_history)
        self._outcomes_lock = threading.Lock()
        self._pending = 0
        self._idle = threading.Condition()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def publish(self, event: SideEffectEvent) -> int:
        """Queue one job per registered handler; returns the number queued."""
        queued = 0
        for handler in self._registry.handlers_for(event):
            with self._idle:
                self._pending += 1
            try:
                self._queue.put_nowait(_Job(event, handler))
            except queue.Full:
                self._fail(event, handler, 0, "side-effect queue is full")
                self._job_done()
                continue
            queued += 1

        logger.debug(
            "side_effect_published",
            extra={"event_type": event.event_type, "jobs": queued},
        )
        return queued

    def start(self) -> None:
        """Start the worker threads (no-op if already running)."""
        if self.is_running:
            return
        self._threads = [
            threading.Thread(
                target=self._run_loop,
                name=f"side-effects-{index}",
                daemon=True,
            )
            for index in range(self._worker_count)
        ]
        for thread in self._threads:
            thread.start()
        logger.info("dispatcher_started", extra={"workers": self._worker_count})

    def stop(self, timeout: float = 30.0) -> None:
        """Let workers finish queued jobs, then join them."""
        for _ in self._threads:
            self._queue.put(_STOP)
        deadline = time.monotonic() + timeout
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        self._threads = []
        logger.info("dispatcher_stopped")

    def drain(self, timeout: float | None = None) -> bool:
        """Wait until every queued job has finished.  False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout=timeout)

    @property
    def is_running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    @property
    def outcomes(self) -> tuple[JobOutcome, ...]:
        with self._outcomes_lock:
            return tuple(self._outcomes)

    @property
    def failures(self) -> tuple[JobOutcome, ...]:
        return tuple(outcome for outcome in self.outcomes if not outcome.succeeded)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while True:
            job = self._queue.get()
            if job is _STOP:
                return
            try:
                with LogContext.bind(
                    correlation_id=job.event.correlation_id,
                    declaration_id=str(job.event.declaration.id),
                ):
                    self._execute(job)
            except Exception:
                logger.exception("side_effect_worker_error")
            finally:
                self._job_done()

    def _execute(self, job: _Job) -> None:
        event, handler = job.event, job.handler
        reason = ""
        for attempt in range(1, self._max_attempts + 1):
            try:
                self._call_with_timeout(handler, event)
            except _HandlerTimeout:
                reason = f"timed out after {self._timeout}s"
            except Exception as exc:
                reason = f"{type(exc).__name__}: {exc}"
            else:
                self._record(JobOutcome(
                    event_id=event.event_id,
                    event_type=event.event_type,
                    handler=handler.name,
                    succeeded=True,
                    attempts=attempt,
                ))
                logger.info(
                    "side_effect_completed",
                    extra={
                        "event_type": event.event_type,
                        "handler": handler.name,
                        "attempts": attempt,
                    },
                )
                return

            if attempt < self._max_attempts:
                logger.warning(
                    "side_effect_retry",
                    extra={
                        "event_type": event.event_type,
                        "handler": handler.name,
                        "attempt": attempt,
                        "reason": reason,
                    },
                )

        self._fail(event, handler, self._max_attempts, reason)

    def _call_with_timeout(self, handler: SideEffectHandler, event: SideEffectEvent) -> None:
        errors: list[Exception] = []

        def target() -> None:
            try:
                handler.handle(event)
            except Exception as exc:
                errors.append(exc)

        context = contextvars.copy_context()
        runner = threading.Thread(
            target=context.run, args=(target,), name=f"handler-{handler.name}", daemon=True
        )
        runner.start()
        runner.join(timeout=self._timeout)
        if runner.is_alive():
            raise _HandlerTimeout()
        if errors:
            raise errors[0]

    def _fail(
        self,
        event: SideEffectEvent,
        handler: SideEffectHandler,
        attempts: int,
        reason: str,
    ) -> None:
        error = SideEffectError(event.event_type, handler.name, reason)
        self._record(JobOutcome(
            event_id=event.event_id,
            event_type=event.event_type,
            handler=handler.name,
            succeeded=False,
            attempts=attempts,
            error=str(error),
        ))
        logger.error(
            "side_effect_failed",
            extra={
                "event_type": event.event_type,
                "handler": handler.name,
                "attempts": attempts,
                "reason": reason,
            },
            exc_info=error,
        )

    def _record(self, outcome: JobOutcome) -> None:
        with self._outcomes_lock:
            self._outcomes.append(outcome)

    def _job_done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending == 0:
                self._idle.notify_all()
