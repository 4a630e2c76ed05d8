"""File-backed signals exchanged with the chat frontend."""

from __future__ import annotations

import threading
from collections.abc import Callable
from enum import Enum
from pathlib import Path

from plan_relay.storage.common import to_iso, utc_now
from plan_relay.storage.files import atomic_write_json, remove_file

CONTINUE_FILENAME = "wa_dispatch_continue.json"
DRAFT_MARKER_FILENAME = "wa_plan_mode"


class WaitOutcome(str, Enum):
    """How a step-through pause ended."""

    CONTINUE = "continue"
    STOPPED = "stopped"
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"


class ContinueGate:
    """Blocking wait for the operator's continue signal.

    The external contract is a sentinel file whose presence means "continue";
    it is deleted on consumption. Inside the process the wait sleeps on an
    event so a local ``signal()`` or a shutdown ``wake()`` ends it at once.
    """

    def __init__(self, state_dir: Path, *, poll_interval_seconds: float = 2.0) -> None:
        self.path = state_dir / CONTINUE_FILENAME
        self.poll_interval_seconds = poll_interval_seconds
        self._event = threading.Event()

    def signal(self) -> None:
        atomic_write_json(self.path, {"timestamp": to_iso(utc_now()), "action": "continue"})
        self._event.set()

    def pending(self) -> bool:
        return self.path.exists()

    def consume(self) -> bool:
        return remove_file(self.path)

    def wake(self) -> None:
        self._event.set()

    def wait(
        self,
        *,
        halted: Callable[[], WaitOutcome | None],
        stop_requested: Callable[[], bool] = lambda: False,
    ) -> WaitOutcome:
        """Block until continue, an external halt, or a local shutdown request.

        No timeout: the pause lasts until the operator acts.
        """

        while True:
            if self.consume():
                return WaitOutcome.CONTINUE
            outcome = halted()
            if outcome is not None:
                return outcome
            if stop_requested():
                return WaitOutcome.INTERRUPTED
            self._event.wait(self.poll_interval_seconds)
            self._event.clear()


class DraftMarker:
    """Presence of the marker file means a plan is being drafted."""

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / DRAFT_MARKER_FILENAME

    def active(self) -> bool:
        return self.path.exists()

    def set(self, note: str = "") -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(note, "utf-8")

    def clear(self) -> bool:
        return remove_file(self.path)
