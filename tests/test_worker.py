from __future__ import annotations

import subprocess
import sys
import threading
from pathlib import Path

import allure

from plan_relay.orchestrator.conversation import ConversationResponder
from plan_relay.orchestrator.dispatch import DispatchEngine
from plan_relay.orchestrator.lock import LOCK_FILENAME, SessionLock
from plan_relay.orchestrator.mailbox import MessageQueueStore
from plan_relay.orchestrator.models import ExecutionMode, ExecutionPlan, PlanStatus, Task
from plan_relay.orchestrator.plans import DispatchRunStore, PlanManager, StateStore
from plan_relay.orchestrator.routing import RoutingDefaults
from plan_relay.orchestrator.runner import AgentRunner
from plan_relay.orchestrator.signals import ContinueGate, DraftMarker
from plan_relay.orchestrator.worker import RelayWorker, WorkerRunSummary

pytestmark = [
    allure.epic("Worker"),
    allure.feature("Polling Loop"),
]


def _worker(tmp_path: Path, template: str, *, stop_event: threading.Event | None = None):
    state_dir = tmp_path / "state"
    project_dir = tmp_path / "project"
    project_dir.mkdir(parents=True, exist_ok=True)
    routing = RoutingDefaults(
        default_backend="gemini",
        default_model=None,
        routine_model="gemini-2.5-flash",
        fallback_model="gemini-2.5-flash",
        command_templates={"gemini": template, "kilo": template},
    )
    plans = PlanManager(
        state=StateStore(state_dir),
        dispatch=DispatchRunStore(state_dir),
        draft_marker=DraftMarker(state_dir),
    )
    mailbox = MessageQueueStore(state_dir)
    lock = SessionLock(state_dir)
    gate = ContinueGate(state_dir, poll_interval_seconds=0.05)
    runner = AgentRunner(routing=routing, work_dir=state_dir / "agent", timeout_seconds=60)
    stop_event = stop_event or threading.Event()
    worker = RelayWorker(
        lock=lock,
        conversation=ConversationResponder(
            mailbox=mailbox,
            plans=plans,
            runner=runner,
            lock=lock,
            routing=routing,
            project_dir=project_dir,
        ),
        dispatch=DispatchEngine(
            plans=plans,
            mailbox=mailbox,
            runner=runner,
            lock=lock,
            gate=gate,
            routing=routing,
            project_dir=project_dir,
            state_dir=state_dir,
            stop_requested=stop_event.is_set,
        ),
        gate=gate,
        stop_event=stop_event,
        poll_interval_seconds=0.01,
        cooldown_seconds=0.01,
    )
    return worker, plans, mailbox


def test_summary_add_accumulates_counters() -> None:
    total = WorkerRunSummary()
    total.add(WorkerRunSummary(ticks=1, tasks_done=2, fallbacks=1))
    total.add(WorkerRunSummary(ticks=1, idle_polls=1))

    assert total.ticks == 2
    assert total.tasks_done == 2
    assert total.fallbacks == 1
    assert total.idle_polls == 1
    assert total.busy is True
    assert WorkerRunSummary(ticks=3, idle_polls=3).busy is False


def test_run_once_answers_chat_then_dispatches(tmp_path: Path, echo_command_template) -> None:
    worker, plans, mailbox = _worker(tmp_path, echo_command_template)
    plans.save(
        ExecutionPlan(
            status=PlanStatus.CONFIRMING,
            tasks=[Task(id=1, description="one"), Task(id=2, description="two", deps=[1])],
        ),
    )
    plans.approve(mode=ExecutionMode.AUTO)
    mailbox.enqueue_inbound("status?")

    summary = worker.run_once()

    assert summary.conversations == 1
    assert summary.tasks_done == 2
    assert summary.completed_runs == 1
    assert summary.idle_polls == 0
    assert plans.require().status is PlanStatus.COMPLETED
    first_reply = mailbox.list_outbound()[0].text or ""
    assert first_reply.startswith("echo[gemini-2.5-flash]:")


def test_run_once_clears_stale_lock(tmp_path: Path, echo_command_template) -> None:
    worker, _, _ = _worker(tmp_path, echo_command_template)
    process = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    process.wait()
    lock_path = tmp_path / "state" / LOCK_FILENAME
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.write_text(str(process.pid), "utf-8")

    summary = worker.run_once()

    assert summary.stale_locks_cleared == 1
    assert summary.idle_polls == 1
    assert not lock_path.exists()


def test_run_loop_respects_max_ticks(tmp_path: Path, echo_command_template) -> None:
    worker, _, _ = _worker(tmp_path, echo_command_template)

    summary = worker.run_loop(max_ticks=3)

    assert summary.ticks == 3
    assert summary.idle_polls == 3
    assert summary.errors == 0


def test_run_loop_returns_immediately_when_stopped(tmp_path: Path, echo_command_template) -> None:
    stop_event = threading.Event()
    stop_event.set()
    worker, _, _ = _worker(tmp_path, echo_command_template, stop_event=stop_event)

    assert worker.run_loop(max_ticks=5).ticks == 0


def test_run_loop_survives_failing_tick(
    tmp_path: Path,
    monkeypatch,
    echo_command_template,
) -> None:
    worker, _, _ = _worker(tmp_path, echo_command_template)

    def _broken_tick():
        raise RuntimeError("dispatch exploded")

    monkeypatch.setattr(worker.dispatch, "tick", _broken_tick)

    summary = worker.run_loop(max_ticks=2)

    assert summary.ticks == 2
    assert summary.errors == 2


def test_request_stop_sets_event_and_wakes_gate(tmp_path: Path, echo_command_template) -> None:
    worker, _, _ = _worker(tmp_path, echo_command_template)

    worker.request_stop(signal_name="SIGTERM")

    assert worker.stop_event.is_set()
    assert worker.run_once().idle_polls == 1
