"""System-wide session lock guarding every agent invocation."""

from __future__ import annotations

import contextlib
import errno
import json
import logging
import os
import signal
from collections.abc import Iterator
from pathlib import Path

from plan_relay.orchestrator.models import LockInfo, RecordValidationError
from plan_relay.storage.common import to_iso, utc_now
from plan_relay.storage.files import atomic_write_json, read_json, remove_file

logger = logging.getLogger(__name__)

LOCK_FILENAME = "wa_session.lock"


class LockBusyError(RuntimeError):
    """Raised when another invocation already holds the lock."""

    def __init__(self, holder: LockInfo | None) -> None:
        description = (
            f"{holder.holder} (pid {holder.pid}, since {holder.acquired_at})"
            if holder is not None
            else "unknown holder"
        )
        super().__init__(f"Session lock is held by {description}")
        self.holder = holder


class SessionLock:
    """Single-file mutex; creation with O_EXCL is the acquire step."""

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / LOCK_FILENAME

    def acquire(self, holder: str) -> LockInfo:
        info = LockInfo(holder=holder, pid=os.getpid(), acquired_at=to_iso(utc_now()))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise LockBusyError(self.holder()) from None
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(info.to_record(), handle)
        return info

    def release(self) -> bool:
        return remove_file(self.path)

    def is_held(self) -> bool:
        return self.path.exists()

    def holder(self) -> LockInfo | None:
        """Parse the lock marker; legacy markers hold only a bare pid."""

        try:
            raw = self.path.read_text("utf-8").strip()
        except FileNotFoundError:
            return None
        if raw.isdigit():
            return LockInfo(holder="legacy", pid=int(raw), acquired_at="")
        try:
            return LockInfo.from_record(read_json(self.path))
        except (ValueError, RecordValidationError) as error:
            logger.warning("Unreadable lock marker %s: %s", self.path, error)
            return None

    def record_agent_pid(self, agent_pid: int) -> None:
        info = self.holder()
        if info is None:
            return
        info.agent_pid = agent_pid
        atomic_write_json(self.path, info.to_record())

    @contextlib.contextmanager
    def held(self, holder: str) -> Iterator[LockInfo]:
        info = self.acquire(holder)
        try:
            yield info
        finally:
            self.release()

    def clear_if_stale(self) -> bool:
        """Remove the marker when its owning process no longer exists."""

        info = self.holder()
        if info is None or _pid_alive(info.pid):
            return False
        if self.release():
            logger.info("Cleared stale session lock of dead pid %s", info.pid)
            return True
        return False

    def kill(self) -> LockInfo | None:
        """Terminate the in-flight agent process and drop the lock.

        Task status is left untouched; a killed task stays running until it is
        reset by the operator.
        """

        info = self.holder()
        if info is not None and info.agent_pid is not None:
            _terminate_pid(info.agent_pid)
        self.release()
        return info


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as error:
        return error.errno == errno.EPERM
    return True


def _terminate_pid(pid: int) -> None:
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return
    except OSError as error:
        logger.warning("Failed to terminate agent pid %s: %s", pid, error)
        return
    logger.info("Sent SIGTERM to agent pid %s", pid)
