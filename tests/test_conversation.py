from __future__ import annotations

import shutil
from pathlib import Path

import allure
import pytest

from plan_relay.orchestrator.conversation import ConversationResponder
from plan_relay.orchestrator.journal import DispatchJournal
from plan_relay.orchestrator.lock import SessionLock
from plan_relay.orchestrator.mailbox import MessageQueueStore
from plan_relay.orchestrator.models import ExecutionMode, ExecutionPlan, PlanStatus, Task
from plan_relay.orchestrator.plans import DispatchRunStore, PlanManager, StateStore
from plan_relay.orchestrator.routing import RoutingDefaults
from plan_relay.orchestrator.runner import AgentRunner
from plan_relay.orchestrator.sessions import SessionBranchManager
from plan_relay.orchestrator.signals import DraftMarker

pytestmark = [
    allure.epic("Conversation"),
    allure.feature("Operator Chat Relay"),
]

ROUTINE_MODEL = "gemini-2.5-flash"


def _responder(
    tmp_path: Path,
    template: str,
    *,
    project_dir: Path | None = None,
    with_sessions: bool = False,
    journal: DispatchJournal | None = None,
) -> ConversationResponder:
    state_dir = tmp_path / "state"
    project_dir = project_dir or tmp_path / "project"
    project_dir.mkdir(parents=True, exist_ok=True)
    draft_marker = DraftMarker(state_dir)
    lock = SessionLock(state_dir)
    routing = RoutingDefaults(
        default_backend="gemini",
        default_model=None,
        routine_model=ROUTINE_MODEL,
        fallback_model=ROUTINE_MODEL,
        command_templates={"gemini": template, "kilo": template},
    )
    return ConversationResponder(
        mailbox=MessageQueueStore(state_dir),
        plans=PlanManager(
            state=StateStore(state_dir),
            dispatch=DispatchRunStore(state_dir),
            draft_marker=draft_marker,
        ),
        runner=AgentRunner(routing=routing, work_dir=state_dir / "agent", timeout_seconds=60),
        lock=lock,
        routing=routing,
        project_dir=project_dir,
        sessions=(
            SessionBranchManager(
                project_dir=project_dir,
                state_dir=state_dir,
                draft_marker=draft_marker,
                lock_path=lock.path,
            )
            if with_sessions
            else None
        ),
        journal=journal,
    )


def test_nothing_to_answer_returns_none(tmp_path: Path, echo_command_template) -> None:
    responder = _responder(tmp_path, echo_command_template)

    assert responder.respond() is None
    assert responder.mailbox.list_outbound() == []


def test_reply_is_queued_and_inbound_marked_read(tmp_path: Path, echo_command_template) -> None:
    responder = _responder(tmp_path, echo_command_template)
    responder.mailbox.enqueue_inbound("How is the login page going?")
    responder.mailbox.enqueue_inbound("Also check the tests.")

    result = responder.respond()

    assert result is not None
    assert result.handled == 2
    assert result.model == ROUTINE_MODEL
    assert result.reply.startswith(f"echo[{ROUTINE_MODEL}]:")
    outbound = responder.mailbox.list_outbound()
    assert [message.text for message in outbound] == [result.reply]
    assert not responder.mailbox.has_unread_inbound()
    assert not responder.lock.is_held()
    assert responder.respond() is None


def test_chat_model_from_state_file_is_used(tmp_path: Path, echo_command_template) -> None:
    responder = _responder(tmp_path, echo_command_template)
    responder.plans.state.update(lambda state: state.__setitem__("model", "gemini-2.5-pro"))
    responder.mailbox.enqueue_inbound("hi")

    result = responder.respond()

    assert result is not None
    assert result.model == "gemini-2.5-pro"


def test_stop_message_halts_approved_run(tmp_path: Path, echo_command_template) -> None:
    responder = _responder(tmp_path, echo_command_template)
    responder.plans.save(
        ExecutionPlan(status=PlanStatus.CONFIRMING, tasks=[Task(id=1, description="build")]),
    )
    responder.plans.approve(mode=ExecutionMode.AUTO)
    responder.mailbox.enqueue_inbound(" stop ")

    result = responder.respond()

    assert result is not None
    assert result.stop_requested is True
    assert responder.plans.dispatch.load() is None
    assert responder.plans.require().status is PlanStatus.STOPPED
    texts = [message.text for message in responder.mailbox.list_outbound()]
    assert texts[0] == "🛑 Execution plan stopped."
    assert len(texts) == 2


def test_stop_without_run_only_replies(tmp_path: Path, echo_command_template) -> None:
    responder = _responder(tmp_path, echo_command_template)
    responder.mailbox.enqueue_inbound("STOP")

    result = responder.respond()

    assert result is not None
    assert result.stop_requested is True
    assert len(responder.mailbox.list_outbound()) == 1


def test_busy_lock_defers_conversation(tmp_path: Path, echo_command_template) -> None:
    responder = _responder(tmp_path, echo_command_template)
    responder.mailbox.enqueue_inbound("hello")
    responder.lock.acquire("dispatch")

    assert responder.respond() is None
    assert responder.mailbox.has_unread_inbound()

    responder.lock.release()
    assert responder.respond() is not None


def test_conversation_is_journaled(tmp_path: Path, echo_command_template) -> None:
    journal = DispatchJournal(db_path=tmp_path / "relay.db")
    journal.init_schema()
    responder = _responder(tmp_path, echo_command_template, journal=journal)
    responder.mailbox.enqueue_inbound("hello")

    responder.respond()

    events = journal.list_events(limit=5)
    assert [event.event_type for event in events] == ["conversation"]
    assert events[0].details["messages"] == 1
    assert events[0].details["model"] == ROUTINE_MODEL
    journal.close()


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_draft_guard_reverts_code_written_during_chat(
    git_repo: Path,
    tmp_path: Path,
    monkeypatch,
    echo_command_template,
) -> None:
    monkeypatch.setenv("RELAY_ECHO_WRITE", "feature.py")
    responder = _responder(
        tmp_path,
        echo_command_template,
        project_dir=git_repo,
        with_sessions=True,
    )
    responder.plans.draft_marker.set("login feature")
    responder.mailbox.enqueue_inbound("Draft a plan for the login feature")

    result = responder.respond()

    assert result is not None
    assert result.reverted == ["feature.py"]
    assert not (git_repo / "feature.py").exists()
    texts = [message.text or "" for message in responder.mailbox.list_outbound()]
    assert texts[-1].startswith("🛡️ Plan drafting is active")
    history = responder.sessions.history_path.read_text("utf-8")
    assert "Draft a plan for the login feature" in history
