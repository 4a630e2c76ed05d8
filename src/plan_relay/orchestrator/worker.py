"""Polling worker that drives the responder and the dispatch engine."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from plan_relay.orchestrator.conversation import ConversationResponder
from plan_relay.orchestrator.dispatch import DispatchEngine, TickOutcome
from plan_relay.orchestrator.lock import SessionLock
from plan_relay.orchestrator.signals import ContinueGate

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    ticks: int = 0
    conversations: int = 0
    tasks_done: int = 0
    tasks_failed: int = 0
    fallbacks: int = 0
    completed_runs: int = 0
    stale_locks_cleared: int = 0
    idle_polls: int = 0
    errors: int = 0

    @property
    def busy(self) -> bool:
        return bool(self.conversations or self.tasks_done or self.tasks_failed)

    def add(self, other: WorkerRunSummary) -> None:
        self.ticks += other.ticks
        self.conversations += other.conversations
        self.tasks_done += other.tasks_done
        self.tasks_failed += other.tasks_failed
        self.fallbacks += other.fallbacks
        self.completed_runs += other.completed_runs
        self.stale_locks_cleared += other.stale_locks_cleared
        self.idle_polls += other.idle_polls
        self.errors += other.errors


class RelayWorker:
    """One process, one loop: chat first, then the next dispatch step."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        lock: SessionLock,
        conversation: ConversationResponder,
        dispatch: DispatchEngine,
        gate: ContinueGate,
        stop_event: threading.Event,
        poll_interval_seconds: float = 3.0,
        cooldown_seconds: float = 10.0,
    ) -> None:
        self.lock = lock
        self.conversation = conversation
        self.dispatch = dispatch
        self.gate = gate
        self.stop_event = stop_event
        self.poll_interval_seconds = poll_interval_seconds
        self.cooldown_seconds = cooldown_seconds
        self._stop_signal_name: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Run one poll tick."""

        summary = WorkerRunSummary(ticks=1)
        if self.stop_event.is_set():
            summary.idle_polls = 1
            return summary

        if self.lock.clear_if_stale():
            summary.stale_locks_cleared = 1

        chat = self.conversation.respond()
        if chat is not None:
            summary.conversations = 1

        if not self.stop_event.is_set():
            result = self.dispatch.tick()
            summary.tasks_done = result.done
            summary.tasks_failed = result.failed
            summary.fallbacks = result.fallbacks
            if result.outcome is TickOutcome.COMPLETED:
                summary.completed_runs = 1

        if not summary.busy:
            summary.idle_polls = 1
        return summary

    def run_loop(self, *, max_ticks: int | None = None) -> WorkerRunSummary:
        """Poll until a stop signal arrives or ``max_ticks`` ticks have run.

        A tick that raises is logged and counted; the loop keeps polling.
        Busy ticks are followed by the cooldown instead of the poll interval.
        """

        aggregate = WorkerRunSummary()
        with self._signal_handlers():
            while True:
                if self.stop_event.is_set():
                    return aggregate
                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    return aggregate

                try:
                    summary = self.run_once()
                except Exception:  # noqa: BLE001
                    logger.exception("Worker tick failed")
                    summary = WorkerRunSummary(ticks=1, errors=1)
                aggregate.add(summary)

                if max_ticks is not None and aggregate.ticks >= max_ticks:
                    return aggregate
                delay = self.cooldown_seconds if summary.busy else self.poll_interval_seconds
                self._sleep_with_stop(delay)

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if not self.stop_event.is_set():
            logger.info("Stop requested (%s); finishing current step", signal_name)
        self._stop_signal_name = signal_name
        self.stop_event.set()
        self.gate.wake()

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self.stop_event.is_set() and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
