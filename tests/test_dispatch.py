from __future__ import annotations

import shutil
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import allure
import pytest

from plan_relay.orchestrator.dispatch import (
    REPORT_FILENAME,
    DispatchEngine,
    DispatchTickResult,
    TickOutcome,
    select_next_task,
)
from plan_relay.orchestrator.journal import DispatchJournal
from plan_relay.orchestrator.lock import SessionLock
from plan_relay.orchestrator.mailbox import MessageQueueStore
from plan_relay.orchestrator.models import (
    DispatchTask,
    ExecutionMode,
    ExecutionPlan,
    Message,
    PlanStatus,
    Task,
    TaskStatus,
)
from plan_relay.orchestrator.plans import DispatchRunStore, PlanManager, StateStore
from plan_relay.orchestrator.routing import RoutingDefaults
from plan_relay.orchestrator.runner import AgentRunner, AgentRunOutcome
from plan_relay.orchestrator.sessions import COMMIT_PREFIX, SessionBranchManager
from plan_relay.orchestrator.signals import ContinueGate, DraftMarker

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Sequential Task Dispatch"),
]

FAST_MODEL = "gemini-2.5-flash"
FAILING_MODEL = "gemini-2.0-flash-lite"


@dataclass(slots=True)
class Harness:
    state_dir: Path
    project_dir: Path
    plans: PlanManager
    mailbox: MessageQueueStore
    lock: SessionLock
    gate: ContinueGate
    engine: DispatchEngine

    def approve(self, tasks: list[Task], *, mode: ExecutionMode) -> None:
        self.plans.save(ExecutionPlan(status=PlanStatus.CONFIRMING, tasks=tasks))
        self.plans.approve(mode=mode)

    def run_task(self, task_id: int) -> DispatchTask:
        run = self.plans.dispatch.load()
        assert run is not None
        task = run.task(task_id)
        assert task is not None
        return task

    def outbox(self) -> list[Message]:
        return self.mailbox.list_outbound()


def _harness(  # noqa: PLR0913
    tmp_path: Path,
    template: str,
    *,
    project_dir: Path | None = None,
    state_dir: Path | None = None,
    with_sessions: bool = False,
    journal: DispatchJournal | None = None,
) -> Harness:
    state_dir = state_dir or tmp_path / "state"
    project_dir = project_dir or tmp_path / "project"
    project_dir.mkdir(parents=True, exist_ok=True)
    draft_marker = DraftMarker(state_dir)
    plans = PlanManager(
        state=StateStore(state_dir),
        dispatch=DispatchRunStore(state_dir),
        draft_marker=draft_marker,
    )
    routing = RoutingDefaults(
        default_backend="gemini",
        default_model=None,
        routine_model=FAST_MODEL,
        fallback_model=FAST_MODEL,
        command_templates={"gemini": template, "kilo": template},
    )
    mailbox = MessageQueueStore(state_dir)
    lock = SessionLock(state_dir)
    gate = ContinueGate(state_dir, poll_interval_seconds=0.05)
    sessions = (
        SessionBranchManager(
            project_dir=project_dir,
            state_dir=state_dir,
            draft_marker=draft_marker,
            lock_path=lock.path,
        )
        if with_sessions
        else None
    )
    engine = DispatchEngine(
        plans=plans,
        mailbox=mailbox,
        runner=AgentRunner(routing=routing, work_dir=state_dir / "agent", timeout_seconds=60),
        lock=lock,
        gate=gate,
        routing=routing,
        project_dir=project_dir,
        state_dir=state_dir,
        sessions=sessions,
        journal=journal,
    )
    return Harness(
        state_dir=state_dir,
        project_dir=project_dir,
        plans=plans,
        mailbox=mailbox,
        lock=lock,
        gate=gate,
        engine=engine,
    )


def _wait_until(predicate: Callable[[], bool], timeout: float = 30.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.05)
    raise AssertionError("condition was not reached in time")


def _tick_in_thread(harness: Harness) -> tuple[threading.Thread, list[DispatchTickResult]]:
    results: list[DispatchTickResult] = []
    thread = threading.Thread(target=lambda: results.append(harness.engine.tick()), daemon=True)
    thread.start()
    return thread, results


def test_select_next_task_respects_dependencies() -> None:
    tasks = [
        DispatchTask(
            id=1,
            description="a",
            platform="gemini",
            model="m",
            task_status=TaskStatus.DONE,
        ),
        DispatchTask(id=2, description="b", platform="gemini", model="m", deps=[1]),
        DispatchTask(id=3, description="c", platform="gemini", model="m"),
    ]
    assert select_next_task(tasks).id == 2

    tasks[0].task_status = TaskStatus.ERROR
    assert select_next_task(tasks).id == 3

    tasks[2].task_status = TaskStatus.RUNNING
    assert select_next_task(tasks) is None


def test_tick_without_approved_run_is_idle(tmp_path: Path, echo_command_template) -> None:
    harness = _harness(tmp_path, echo_command_template)

    assert harness.engine.tick().outcome is TickOutcome.IDLE
    assert harness.outbox() == []


def test_failed_dependency_stalls_dependent_task(
    tmp_path: Path,
    monkeypatch,
    echo_command_template,
) -> None:
    monkeypatch.setenv("RELAY_ECHO_FAIL_MODELS", f"{FAILING_MODEL},{FAST_MODEL}")
    harness = _harness(tmp_path, echo_command_template)
    harness.approve(
        [
            Task(id=1, description="Create schema", platform="gemini", model=FAILING_MODEL),
            Task(id=2, description="Seed data", platform="gemini", model=FAST_MODEL, deps=[1]),
        ],
        mode=ExecutionMode.AUTO,
    )

    result = harness.engine.tick()

    assert result.outcome is TickOutcome.WAITING
    assert result.executed == [1]
    assert result.failed == 1
    assert harness.run_task(1).task_status is TaskStatus.ERROR
    assert "rate limited" in (harness.run_task(1).error or "")
    assert harness.run_task(2).task_status is TaskStatus.PENDING
    assert harness.plans.dispatch.load().counts().remaining == 1
    assert harness.plans.require().status is PlanStatus.EXECUTING
    assert not harness.lock.is_held()

    again = harness.engine.tick()
    assert again.outcome is TickOutcome.WAITING
    assert again.executed == []
    assert harness.run_task(2).task_status is TaskStatus.PENDING
    assert any("No remaining task can start" in (m.text or "") for m in harness.outbox())


def test_step_mode_waits_for_continue_between_tasks(
    tmp_path: Path,
    echo_command_template,
) -> None:
    harness = _harness(tmp_path, echo_command_template)
    harness.approve(
        [Task(id=index, description=f"Step {index}") for index in (1, 2, 3)],
        mode=ExecutionMode.STEP,
    )

    thread, results = _tick_in_thread(harness)
    _wait_until(lambda: any(message.reply_markup for message in harness.outbox()))
    time.sleep(0.3)
    assert harness.run_task(1).task_status is TaskStatus.DONE
    assert harness.run_task(2).task_status is TaskStatus.PENDING
    assert harness.lock.is_held()

    paused = [message for message in harness.outbox() if message.reply_markup]
    callbacks = [
        button["callback_data"]
        for row in paused[-1].reply_markup["inline_keyboard"]
        for button in row
    ]
    assert callbacks == ["ep_continue", "ep_stop"]

    ContinueGate(harness.state_dir).signal()
    _wait_until(lambda: harness.run_task(2).task_status is TaskStatus.DONE)
    time.sleep(0.3)
    assert harness.run_task(3).task_status is TaskStatus.PENDING

    ContinueGate(harness.state_dir).signal()
    thread.join(timeout=30)

    assert not thread.is_alive()
    assert results[0].outcome is TickOutcome.COMPLETED
    assert results[0].executed == [1, 2, 3]
    assert harness.plans.dispatch.load().status is PlanStatus.COMPLETED
    assert harness.plans.require().status is PlanStatus.COMPLETED
    assert not harness.lock.is_held()


def test_auto_mode_runs_independent_tasks_without_signals(
    tmp_path: Path,
    echo_command_template,
) -> None:
    harness = _harness(tmp_path, echo_command_template)
    harness.approve(
        [Task(id=index, description=f"Independent {index}") for index in (1, 2, 3)],
        mode=ExecutionMode.AUTO,
    )

    result = harness.engine.tick()

    assert result.outcome is TickOutcome.COMPLETED
    assert result.executed == [1, 2, 3]
    assert harness.plans.dispatch.load().counts().done == 3
    assert harness.plans.require().status is PlanStatus.COMPLETED
    assert not (harness.state_dir / "wa_dispatch_continue.json").exists()


def test_auto_mode_runs_dependency_chain_to_completion(
    tmp_path: Path,
    echo_command_template,
) -> None:
    harness = _harness(tmp_path, echo_command_template)
    harness.approve(
        [
            Task(id=1, description="Model"),
            Task(id=2, description="API", deps=[1]),
            Task(id=3, description="UI", deps=[2]),
        ],
        mode=ExecutionMode.AUTO,
    )

    result = harness.engine.tick()

    assert result.outcome is TickOutcome.COMPLETED
    assert result.executed == [1, 2, 3]
    assert result.done == 3
    run = harness.plans.dispatch.load()
    assert run.status is PlanStatus.COMPLETED
    assert all(task.task_status is TaskStatus.DONE for task in run.tasks)
    plan = harness.plans.require()
    assert plan.status is PlanStatus.COMPLETED
    assert all(task.task_status is TaskStatus.DONE for task in plan.tasks)

    texts = [message.text or "" for message in harness.outbox()]
    assert texts[0].startswith("🔄 Task 1/3: Model")
    assert texts[-1].startswith("🏁 Execution plan completed: 3 done, 0 failed of 3 tasks.")
    assert harness.engine.tick().outcome is TickOutcome.IDLE


def test_stop_during_step_pause_halts_without_resurrecting_run(
    tmp_path: Path,
    echo_command_template,
) -> None:
    harness = _harness(tmp_path, echo_command_template)
    harness.approve(
        [Task(id=1, description="first"), Task(id=2, description="second")],
        mode=ExecutionMode.STEP,
    )

    thread, results = _tick_in_thread(harness)
    _wait_until(lambda: any(message.reply_markup for message in harness.outbox()))
    harness.plans.stop()
    thread.join(timeout=30)

    assert results[0].outcome is TickOutcome.STOPPED
    assert harness.plans.dispatch.load() is None
    plan = harness.plans.require()
    assert plan.status is PlanStatus.STOPPED
    assert plan.tasks[1].task_status is TaskStatus.PENDING
    assert not harness.lock.is_held()


def test_dispatch_pauses_while_plan_is_being_drafted(
    tmp_path: Path,
    echo_command_template,
) -> None:
    harness = _harness(tmp_path, echo_command_template)
    harness.approve([Task(id=1, description="only")], mode=ExecutionMode.AUTO)
    harness.plans.draft_marker.set("new plan")

    assert harness.engine.tick().outcome is TickOutcome.DRAFTING
    assert harness.run_task(1).task_status is TaskStatus.PENDING


def test_busy_lock_skips_tick(tmp_path: Path, echo_command_template) -> None:
    harness = _harness(tmp_path, echo_command_template)
    harness.approve([Task(id=1, description="only")], mode=ExecutionMode.AUTO)
    harness.lock.acquire("chat")

    assert harness.engine.tick().outcome is TickOutcome.BUSY
    assert harness.run_task(1).task_status is TaskStatus.PENDING


def test_stale_continue_signal_is_discarded_for_new_run(
    tmp_path: Path,
    echo_command_template,
) -> None:
    harness = _harness(tmp_path, echo_command_template)
    ContinueGate(harness.state_dir).signal()
    harness.approve(
        [Task(id=1, description="first"), Task(id=2, description="second")],
        mode=ExecutionMode.STEP,
    )

    thread, _ = _tick_in_thread(harness)
    _wait_until(lambda: any(message.reply_markup for message in harness.outbox()))
    time.sleep(0.3)
    assert harness.run_task(2).task_status is TaskStatus.PENDING

    harness.plans.stop()
    thread.join(timeout=30)


def test_completion_report_file_is_preferred_over_output(
    tmp_path: Path,
    monkeypatch,
    echo_command_template,
) -> None:
    project_dir = tmp_path / "project"
    monkeypatch.setenv("RELAY_ECHO_WRITE", f".relay/{REPORT_FILENAME}")
    harness = _harness(
        tmp_path,
        echo_command_template,
        project_dir=project_dir,
        state_dir=project_dir / ".relay",
    )
    harness.approve([Task(id=1, description="only")], mode=ExecutionMode.AUTO)

    harness.engine.tick()

    final = harness.outbox()[-1].text or ""
    assert f"written by {FAST_MODEL}" in final
    assert not (harness.state_dir / REPORT_FILENAME).exists()


def test_journal_records_attempts_and_events(tmp_path: Path, echo_command_template) -> None:
    journal = DispatchJournal(db_path=tmp_path / "relay.db")
    journal.init_schema()
    harness = _harness(tmp_path, echo_command_template, journal=journal)
    harness.approve(
        [Task(id=1, description="first"), Task(id=2, description="second")],
        mode=ExecutionMode.AUTO,
    )

    harness.engine.tick()

    attempts = journal.list_attempts(limit=10)
    assert [(attempt.task_id, attempt.status) for attempt in attempts] == [
        (2, "done"),
        (1, "done"),
    ]
    assert all(attempt.finished_at is not None for attempt in attempts)
    event_types = [event.event_type for event in journal.list_events(limit=20)]
    assert "run_detected" in event_types
    assert "run_completed" in event_types
    assert event_types.count("task_finished") == 2
    journal.close()


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_each_task_is_checkpointed_on_session_branch(
    git_repo: Path,
    tmp_path: Path,
    monkeypatch,
    git_cmd,
    echo_command_template,
) -> None:
    monkeypatch.setenv("RELAY_ECHO_WRITE", "feature.py")
    harness = _harness(
        tmp_path,
        echo_command_template,
        project_dir=git_repo,
        with_sessions=True,
    )
    harness.approve([Task(id=1, description="Add feature")], mode=ExecutionMode.AUTO)

    assert harness.engine.tick().outcome is TickOutcome.COMPLETED

    assert git_cmd(git_repo, "rev-parse", "--abbrev-ref", "HEAD") == "relay/session"
    assert git_cmd(git_repo, "log", "-1", "--format=%s") == f"{COMMIT_PREFIX} task 1: Add feature"
    assert "feature.py" in git_cmd(git_repo, "ls-files").splitlines()


class _LockStealingRunner:
    """Kills the lock mid-task and lets another holder take it."""

    def __init__(self, lock: SessionLock) -> None:
        self.lock = lock
        self.calls: list[tuple[int, bool]] = []

    def run(  # noqa: PLR0913
        self,
        prompt: str,
        model: str,
        project_dir: Path,
        extra_flags: tuple[str, ...] = (),
        *,
        backend: str | None = None,
        on_spawn: Callable[[int], None] | None = None,
    ) -> AgentRunOutcome:
        self.calls.append((len(self.calls) + 1, self.lock.is_held()))
        self.lock.kill()
        self.lock.acquire("chat")
        return AgentRunOutcome(
            output="finished after the kill",
            stderr="",
            exit_code=0,
            backend=backend or "gemini",
            model=model,
        )


def test_killed_lock_interrupts_dispatch_and_leaves_task_running(
    tmp_path: Path,
    echo_command_template,
) -> None:
    harness = _harness(tmp_path, echo_command_template)
    runner = _LockStealingRunner(harness.lock)
    harness.engine.runner = runner
    harness.approve(
        [Task(id=1, description="first"), Task(id=2, description="second")],
        mode=ExecutionMode.AUTO,
    )

    result = harness.engine.tick()

    assert result.outcome is TickOutcome.INTERRUPTED
    assert result.executed == []
    assert runner.calls == [(1, True)]
    assert harness.run_task(1).task_status is TaskStatus.RUNNING
    assert harness.run_task(2).task_status is TaskStatus.PENDING
    assert harness.plans.require().tasks[0].task_status is TaskStatus.RUNNING
    holder = harness.lock.holder()
    assert holder is not None
    assert holder.holder == "chat"
    assert not any("done: first" in (message.text or "") for message in harness.outbox())


def test_step_pause_survives_worker_restart(tmp_path: Path, echo_command_template) -> None:
    harness = _harness(tmp_path, echo_command_template)
    shutdown = threading.Event()
    harness.engine.stop_requested = shutdown.is_set
    harness.approve(
        [Task(id=1, description="first"), Task(id=2, description="second")],
        mode=ExecutionMode.STEP,
    )

    thread, results = _tick_in_thread(harness)
    _wait_until(lambda: any(message.reply_markup for message in harness.outbox()))
    _wait_until(lambda: harness.plans.dispatch.load().awaiting_continue)
    shutdown.set()
    thread.join(timeout=30)

    assert results[0].outcome is TickOutcome.INTERRUPTED
    assert harness.plans.dispatch.load().awaiting_continue is True
    assert not harness.lock.is_held()

    restarted = _harness(tmp_path, echo_command_template, state_dir=harness.state_dir)
    thread, results = _tick_in_thread(restarted)
    _wait_until(restarted.lock.is_held)
    time.sleep(0.3)
    assert thread.is_alive()
    assert restarted.run_task(2).task_status is TaskStatus.PENDING

    ContinueGate(restarted.state_dir).signal()
    thread.join(timeout=30)

    assert not thread.is_alive()
    assert results[0].outcome is TickOutcome.COMPLETED
    assert results[0].executed == [2]
    run = restarted.plans.dispatch.load()
    assert run.status is PlanStatus.COMPLETED
    assert run.awaiting_continue is False


def test_chat_stop_is_honored_during_step_pause(tmp_path: Path, echo_command_template) -> None:
    harness = _harness(tmp_path, echo_command_template)
    harness.approve(
        [Task(id=1, description="first"), Task(id=2, description="second")],
        mode=ExecutionMode.STEP,
    )

    thread, results = _tick_in_thread(harness)
    _wait_until(lambda: any(message.reply_markup for message in harness.outbox()))
    harness.mailbox.enqueue_inbound("stop")
    thread.join(timeout=30)

    assert not thread.is_alive()
    assert results[0].outcome is TickOutcome.STOPPED
    assert harness.plans.dispatch.load() is None
    plan = harness.plans.require()
    assert plan.status is PlanStatus.STOPPED
    assert plan.tasks[1].task_status is TaskStatus.PENDING
    assert harness.outbox()[-1].text == "🛑 Execution plan stopped."
    assert harness.mailbox.has_unread_stop_request()
    assert not harness.lock.is_held()
