"""Dispatch engine: runs approved plan tasks one at a time under the session lock."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from plan_relay.orchestrator.git_ops import GitError
from plan_relay.orchestrator.journal import DispatchJournal
from plan_relay.orchestrator.lock import LockBusyError, SessionLock
from plan_relay.orchestrator.mailbox import MessageQueueStore
from plan_relay.orchestrator.models import (
    BranchMode,
    DispatchRun,
    DispatchTask,
    ExecutionMode,
    LockInfo,
    PlanStatus,
    TaskStatus,
)
from plan_relay.orchestrator.plans import PlanManager
from plan_relay.orchestrator.prompts import build_task_prompt
from plan_relay.orchestrator.routing import RoutingDefaults
from plan_relay.orchestrator.runner import AgentRunner, AgentRunOutcome
from plan_relay.orchestrator.sessions import SessionBranchManager
from plan_relay.orchestrator.signals import ContinueGate, WaitOutcome
from plan_relay.storage.files import remove_file

logger = logging.getLogger(__name__)

REPORT_FILENAME = "wa_task_report.md"
MIN_REPORT_CHARS = 20
OUTPUT_TAIL_CHARS = 1_500
LOCK_HOLDER = "dispatch"

STEP_MARKUP = {
    "inline_keyboard": [
        [
            {"text": "▶️ Continue", "callback_data": "ep_continue"},
            {"text": "🛑 Stop", "callback_data": "ep_stop"},
        ],
    ],
}
AUTO_MARKUP = {"inline_keyboard": [[{"text": "🛑 Stop", "callback_data": "ep_stop"}]]}


class TickOutcome(str, Enum):
    """What one poll tick of the dispatcher did."""

    IDLE = "idle"
    DRAFTING = "drafting"
    BUSY = "busy"
    WAITING = "waiting"
    PAUSED = "paused"
    COMPLETED = "completed"
    STOPPED = "stopped"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class DispatchTickResult:
    """Aggregate of tasks executed during one tick."""

    outcome: TickOutcome
    executed: list[int] = field(default_factory=list)
    done: int = 0
    failed: int = 0
    fallbacks: int = 0


@dataclass(slots=True)
class TaskExecution:
    task: DispatchTask
    status: TaskStatus
    report: str
    outcome: AgentRunOutcome
    run: DispatchRun | None


class LockLostError(RuntimeError):
    """The session lock was removed (killed or cleared) while a task was in flight."""


def select_next_task(tasks: list[DispatchTask]) -> DispatchTask | None:
    """Lowest-id task that has not started and whose deps are all done."""

    status_by_id = {task.id: task.task_status for task in tasks}
    for task in sorted(tasks, key=lambda item: item.id):
        if task.task_status not in (None, TaskStatus.PENDING):
            continue
        if all(status_by_id.get(dep) is TaskStatus.DONE for dep in task.deps):
            return task
    return None


def blocked_tasks(tasks: list[DispatchTask]) -> dict[int, list[int]]:
    """Unstarted tasks mapped to the deps that are not done yet."""

    status_by_id = {task.id: task.task_status for task in tasks}
    blocked: dict[int, list[int]] = {}
    for task in tasks:
        if task.task_status not in (None, TaskStatus.PENDING):
            continue
        missing = [dep for dep in task.deps if status_by_id.get(dep) is not TaskStatus.DONE]
        if missing:
            blocked[task.id] = missing
    return blocked


class DispatchEngine:
    """Consumes the approved DispatchRun.

    One tick acquires the session lock, runs the next runnable task, records
    the result in both the DispatchRun and the plan, checkpoints, and then
    either keeps going (auto mode) or blocks on the continue gate (step mode).
    A failed task is marked ``error`` and never aborts the plan.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        plans: PlanManager,
        mailbox: MessageQueueStore,
        runner: AgentRunner,
        lock: SessionLock,
        gate: ContinueGate,
        routing: RoutingDefaults,
        project_dir: Path,
        state_dir: Path,
        sessions: SessionBranchManager | None = None,
        journal: DispatchJournal | None = None,
        stop_requested: Callable[[], bool] = lambda: False,
    ) -> None:
        self.plans = plans
        self.mailbox = mailbox
        self.runner = runner
        self.lock = lock
        self.gate = gate
        self.routing = routing
        self.project_dir = project_dir
        self.report_path = state_dir / REPORT_FILENAME
        self.sessions = sessions
        self.journal = journal
        self.stop_requested = stop_requested
        self._run_timestamp: str | None = None
        self._blocked_signature: tuple[tuple[int, tuple[int, ...]], ...] | None = None
        self._lock_info: LockInfo | None = None

    def tick(self) -> DispatchTickResult:
        run = self.plans.dispatch.load()
        if run is None or run.status is not PlanStatus.APPROVED:
            return DispatchTickResult(outcome=TickOutcome.IDLE)
        if self.plans.draft_marker.active():
            logger.debug("Drafting marker active; dispatch paused")
            return DispatchTickResult(outcome=TickOutcome.DRAFTING)

        self._observe_run(run)
        if not run.awaiting_continue and select_next_task(run.tasks) is None:
            if run.counts().remaining == 0:
                self._complete(run, last=None)
                return DispatchTickResult(outcome=TickOutcome.COMPLETED)
            self._log_blocked(run)
            return DispatchTickResult(outcome=TickOutcome.WAITING)

        try:
            self._lock_info = self.lock.acquire(LOCK_HOLDER)
        except LockBusyError as error:
            logger.info("Dispatch tick skipped: %s", error)
            return DispatchTickResult(outcome=TickOutcome.BUSY)
        try:
            if run.awaiting_continue:
                logger.info("Resuming step-through pause of run %s", run.timestamp)
                resumed = self._pause(run)
                if isinstance(resumed, TickOutcome):
                    return DispatchTickResult(outcome=resumed)
                run = resumed
            return self._execute(run)
        finally:
            self._release_lock()

    def _execute(self, run: DispatchRun) -> DispatchTickResult:
        result = DispatchTickResult(outcome=TickOutcome.WAITING)
        self._ensure_session_branch()
        while True:
            task = select_next_task(run.tasks)
            if task is None:
                self._log_blocked(run)
                return result

            try:
                execution = self._run_task(run, task)
            except LockLostError as error:
                logger.warning("%s; leaving it running", error)
                self._journal_event("lock_lost", task_id=task.id, details={"run": run.timestamp})
                result.outcome = TickOutcome.INTERRUPTED
                return result
            if execution is None:
                result.outcome = TickOutcome.STOPPED
                return result
            result.executed.append(task.id)
            if execution.status is TaskStatus.DONE:
                result.done += 1
            else:
                result.failed += 1
            if execution.outcome.fallback_used:
                result.fallbacks += 1

            if execution.run is None:
                logger.info("Dispatch run was stopped while task %s was running", task.id)
                result.outcome = TickOutcome.STOPPED
                return result
            run = execution.run

            counts = run.counts()
            if counts.remaining == 0:
                self._complete(run, last=execution)
                result.outcome = TickOutcome.COMPLETED
                return result

            if select_next_task(run.tasks) is None:
                self._narrate_blocked(run, execution)
                self._log_blocked(run)
                result.outcome = TickOutcome.WAITING
                return result

            if run.mode is ExecutionMode.AUTO:
                self._narrate_result(run, execution, reply_markup=AUTO_MARKUP)
                if self.stop_requested():
                    result.outcome = TickOutcome.INTERRUPTED
                    return result
                continue

            self._narrate_result(run, execution, reply_markup=STEP_MARKUP)
            resumed = self._pause(run)
            if isinstance(resumed, TickOutcome):
                result.outcome = resumed
                return result
            run = resumed

    def _pause(self, run: DispatchRun) -> DispatchRun | TickOutcome:
        """Block on the continue gate; the wait is recorded on the run so a restart resumes it."""

        self._mark_awaiting(run, awaiting=True)
        wait_outcome = self.gate.wait(
            halted=self._halted_check(run.timestamp),
            stop_requested=self.stop_requested,
        )
        if wait_outcome is not WaitOutcome.CONTINUE:
            logger.info("Step-through pause ended with %s", wait_outcome.value)
            if wait_outcome is WaitOutcome.STOPPED:
                self._journal_event("run_stopped", details={"run": run.timestamp})
            return TickOutcome(wait_outcome.value)

        logger.info("Continue signal received; resuming dispatch")
        refreshed = self._mark_awaiting(run, awaiting=False)
        return refreshed if refreshed is not None else TickOutcome.STOPPED

    def _mark_awaiting(self, run: DispatchRun, *, awaiting: bool) -> DispatchRun | None:
        current = self.plans.dispatch.load()
        if (
            current is None
            or current.timestamp != run.timestamp
            or current.status is not PlanStatus.APPROVED
        ):
            return None
        if current.awaiting_continue != awaiting:
            current.awaiting_continue = awaiting
            self.plans.dispatch.save(current)
        return current

    def _owns_lock(self) -> bool:
        """Whether the lock marker on disk is still the one this engine acquired."""

        if self._lock_info is None:
            return False
        current = self.lock.holder()
        return (
            current is not None
            and current.holder == self._lock_info.holder
            and current.pid == self._lock_info.pid
            and current.acquired_at == self._lock_info.acquired_at
        )

    def _release_lock(self) -> None:
        if self._owns_lock():
            self.lock.release()
        else:
            logger.warning("Session lock was taken away during dispatch; not releasing it")
        self._lock_info = None

    def _run_task(self, run: DispatchRun, task: DispatchTask) -> TaskExecution | None:
        total = len(run.tasks)
        current = self._persist_status(run, task.id, TaskStatus.RUNNING, error=None)
        if current is None:
            return None
        counts = current.counts()
        self.mailbox.enqueue_outbound(
            f"🔄 Task {task.id}/{total}: {task.description}\n"
            f"🤖 {task.platform}/{task.model}\n"
            f"📊 done {counts.done} · errors {counts.error} · remaining {counts.remaining}",
        )
        logger.info("Dispatching task %s/%s with %s/%s", task.id, total, task.platform, task.model)
        self._journal_event("task_started", task_id=task.id, details={"model": task.model})
        attempt_id = (
            self.journal.start_attempt(
                run_timestamp=run.timestamp,
                task_id=task.id,
                description=task.description,
                platform=task.platform,
                model=task.model,
            )
            if self.journal is not None
            else None
        )

        remove_file(self.report_path)
        prompt = build_task_prompt(
            task=task,
            total=total,
            report_path=self.report_path,
            spec_ref=run.spec_ref,
            scope=tuple(task.scope),
            history_path=self.sessions.history_path if self.sessions is not None else None,
        )
        outcome = self._invoke(task, prompt)
        if not self._owns_lock():
            raise LockLostError(f"Session lock was released while task {task.id} was running")

        status = TaskStatus.DONE if outcome.succeeded else TaskStatus.ERROR
        error = outcome.error_summary()
        report = self._read_report(outcome) if outcome.succeeded else outcome.output
        updated = self._persist_status(run, task.id, status, error=error)

        if self.sessions is not None:
            reverted = self.sessions.enforce_draft_guard()
            if reverted:
                self.mailbox.enqueue_outbound(
                    "🛡️ Plan-drafting guard reverted code changes:\n"
                    + "\n".join(f"• {path}" for path in reverted),
                )
            self.sessions.commit(f"task {task.id}: {task.description}")

        if self.journal is not None:
            self.journal.finish_attempt(
                attempt_id,
                status=status.value,
                model=outcome.model,
                exit_code=outcome.exit_code,
                fallback_used=outcome.fallback_used,
                rate_limited=outcome.rate_limited,
                timed_out=outcome.timed_out,
                error_summary=error,
            )
        self._journal_event(
            "task_finished",
            task_id=task.id,
            details={
                "status": status.value,
                "model": outcome.model,
                "fallback_used": outcome.fallback_used,
                **(
                    outcome.classification.to_event_details(
                        backend=outcome.backend,
                        model=outcome.model,
                    )
                    if outcome.classification is not None
                    else {}
                ),
            },
        )
        logger.info("Task %s finished: %s", task.id, status.value)
        return TaskExecution(task=task, status=status, report=report, outcome=outcome, run=updated)

    def _invoke(self, task: DispatchTask, prompt: str) -> AgentRunOutcome:
        try:
            return self.runner.run(
                prompt,
                task.model,
                self.project_dir,
                self.routing.extra_flags(task.platform),
                backend=task.platform,
                on_spawn=self.lock.record_agent_pid,
            )
        except ValueError as error:
            logger.warning("Task %s could not be invoked: %s", task.id, error)
            return AgentRunOutcome(
                output=f"⚠️ Task {task.id} could not be started: {error}",
                stderr=str(error),
                exit_code=2,
                backend=task.platform,
                model=task.model,
                synthetic=True,
            )

    def _persist_status(
        self,
        run: DispatchRun,
        task_id: int,
        status: TaskStatus,
        *,
        error: str | None,
    ) -> DispatchRun | None:
        """Write a task status to the DispatchRun and the plan.

        The DispatchRun is re-read first; if it was stopped or replaced in the
        meantime it is not resurrected and None is returned.
        """

        self.plans.update_task_status(task_id, status, error=error)
        current = self.plans.dispatch.load()
        if (
            current is None
            or current.timestamp != run.timestamp
            or current.status is not PlanStatus.APPROVED
        ):
            return None
        task = current.task(task_id)
        if task is not None:
            task.task_status = status
            task.error = error
        self.plans.dispatch.save(current)
        return current

    def _complete(self, run: DispatchRun, *, last: TaskExecution | None) -> None:
        run.status = PlanStatus.COMPLETED
        self.plans.dispatch.save(run)
        self.plans.set_status(PlanStatus.COMPLETED)
        counts = run.counts()
        lines = [
            f"🏁 Execution plan completed: {counts.done} done, {counts.error} failed "
            f"of {counts.total} tasks.",
        ]
        if last is not None:
            lines.extend(["", f"Last task ({last.task.id}) report:", last.report])
        self.mailbox.enqueue_outbound("\n".join(lines))
        self._journal_event(
            "run_completed",
            details={"run": run.timestamp, "done": counts.done, "error": counts.error},
        )
        logger.info("Dispatch run %s completed", run.timestamp)

    def _narrate_result(
        self,
        run: DispatchRun,
        execution: TaskExecution,
        *,
        reply_markup: dict[str, object],
    ) -> None:
        self.mailbox.enqueue_outbound(
            self._result_text(run, execution),
            reply_markup=reply_markup,
        )

    def _narrate_blocked(self, run: DispatchRun, execution: TaskExecution) -> None:
        blocked = blocked_tasks(run.tasks)
        details = "\n".join(
            f"• task {task_id} waits on {', '.join(str(dep) for dep in deps)}"
            for task_id, deps in sorted(blocked.items())
        )
        self.mailbox.enqueue_outbound(
            self._result_text(run, execution)
            + "\n\n⏸️ No remaining task can start:\n"
            + details
            + "\nReset the failed task to retry it, or stop the plan.",
            reply_markup=AUTO_MARKUP,
        )

    def _result_text(self, run: DispatchRun, execution: TaskExecution) -> str:
        counts = run.counts()
        total = counts.total
        task = execution.task
        if execution.status is TaskStatus.DONE:
            header = f"✅ Task {task.id}/{total} done: {task.description}"
        else:
            header = f"❌ Task {task.id}/{total} failed: {task.description}"
        if execution.outcome.fallback_used:
            header += f"\n♻️ Completed via fallback model {execution.outcome.model}"
        return (
            f"{header}\n\n{execution.report.strip()}\n\n"
            f"📊 done {counts.done} · errors {counts.error} · remaining {counts.remaining}"
        )

    def _read_report(self, outcome: AgentRunOutcome) -> str:
        try:
            report = self.report_path.read_text("utf-8").strip()
        except FileNotFoundError:
            report = ""
        remove_file(self.report_path)
        if len(report) >= MIN_REPORT_CHARS:
            return report
        return outcome.output.strip()[-OUTPUT_TAIL_CHARS:]

    def _halted_check(self, run_timestamp: str) -> Callable[[], WaitOutcome | None]:
        def _check() -> WaitOutcome | None:
            current = self.plans.dispatch.load()
            if current is None or current.timestamp != run_timestamp:
                return WaitOutcome.STOPPED
            if current.status is PlanStatus.STOPPED:
                return WaitOutcome.STOPPED
            if current.status is PlanStatus.COMPLETED:
                return WaitOutcome.COMPLETED
            plan = self.plans.load()
            if plan is not None and plan.status is PlanStatus.STOPPED:
                return WaitOutcome.STOPPED
            if plan is not None and plan.status is PlanStatus.COMPLETED:
                return WaitOutcome.COMPLETED
            if not self._owns_lock():
                logger.warning("Session lock was released during the step-through pause")
                return WaitOutcome.INTERRUPTED
            if self.mailbox.has_unread_stop_request():
                # the message stays unread so the conversation responder still answers it
                self.plans.stop()
                self.mailbox.enqueue_outbound("🛑 Execution plan stopped.")
                logger.info("STOP received during pause; dispatch run %s halted", run_timestamp)
                return WaitOutcome.STOPPED
            return None

        return _check

    def _observe_run(self, run: DispatchRun) -> None:
        if run.timestamp == self._run_timestamp:
            return
        self._run_timestamp = run.timestamp
        self._blocked_signature = None
        counts = run.counts()
        if counts.done == 0 and counts.error == 0 and counts.running == 0 and self.gate.consume():
            logger.info("Discarded stale continue signal from a previous run")
        self._journal_event(
            "run_detected",
            details={"run": run.timestamp, "tasks": counts.total, "mode": run.mode.value},
        )
        logger.info("Approved dispatch run %s detected (%s tasks)", run.timestamp, counts.total)

    def _ensure_session_branch(self) -> None:
        if self.sessions is None:
            return
        try:
            self.sessions.ensure_branch(BranchMode.CONTINUE)
        except GitError as error:
            logger.warning("Could not switch to session branch: %s", error)

    def _log_blocked(self, run: DispatchRun) -> None:
        blocked = blocked_tasks(run.tasks)
        signature = tuple((task_id, tuple(deps)) for task_id, deps in sorted(blocked.items()))
        if signature == self._blocked_signature:
            return
        self._blocked_signature = signature
        running = [task.id for task in run.tasks if task.task_status is TaskStatus.RUNNING]
        logger.warning(
            "Dispatch waiting: %d unresolved task(s) cannot start (blocked=%s running=%s); "
            "manual reset required",
            run.counts().remaining,
            dict(blocked),
            running,
        )
        self._journal_event(
            "dispatch_waiting",
            details={"blocked": {str(k): v for k, v in blocked.items()}, "running": running},
        )

    def _journal_event(
        self,
        event_type: str,
        *,
        task_id: int | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        if self.journal is not None:
            self.journal.add_event(event_type, task_id=task_id, details=details)
