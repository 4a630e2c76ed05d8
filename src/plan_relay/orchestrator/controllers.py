"""Controllers for relay CLI commands."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path

from plan_relay.config import Settings
from plan_relay.orchestrator.conversation import ConversationResponder
from plan_relay.orchestrator.dispatch import DispatchEngine
from plan_relay.orchestrator.git_ops import GitError
from plan_relay.orchestrator.journal import DispatchJournal
from plan_relay.orchestrator.lock import SessionLock
from plan_relay.orchestrator.mailbox import MessageQueueStore
from plan_relay.orchestrator.models import (
    BranchMode,
    DocumentRef,
    ExecutionMode,
    Message,
    PlanStatus,
)
from plan_relay.orchestrator.plans import (
    DispatchRunStore,
    PlanError,
    PlanManager,
    StateStore,
    format_summary,
)
from plan_relay.orchestrator.routing import RoutingDefaults, normalize_backend
from plan_relay.orchestrator.runner import AgentRunner
from plan_relay.orchestrator.sessions import SessionBranchManager
from plan_relay.orchestrator.signals import ContinueGate, DraftMarker
from plan_relay.orchestrator.worker import RelayWorker

logger = logging.getLogger(__name__)

MAX_MESSAGE_CHARS = 4_096
OUTBOX_DOCUMENTS_DIRNAME = "outbox_documents"


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    state_dir: Path | None
    once: bool
    max_ticks: int | None


@dataclass(slots=True)
class PlanCommand:
    """CLI input for plan actions without arguments."""

    state_dir: Path | None


@dataclass(slots=True)
class PlanLoadCommand:
    state_dir: Path | None
    path: Path


@dataclass(slots=True)
class PlanApproveCommand:
    state_dir: Path | None
    auto: bool | None


@dataclass(slots=True)
class PlanTaskCommand:
    """CLI input for per-task recovery."""

    state_dir: Path | None
    task_id: int


@dataclass(slots=True)
class PlanSelectCommand:
    state_dir: Path | None
    value: str


@dataclass(slots=True)
class PlanOverrideCommand:
    """CLI input for a single-task platform/model override."""

    state_dir: Path | None
    task_id: int
    platform: str
    model: str


@dataclass(slots=True)
class PlanDraftCommand:
    state_dir: Path | None
    fresh: bool
    note: str


@dataclass(slots=True)
class InboxSendCommand:
    state_dir: Path | None
    text: str


@dataclass(slots=True)
class OutboxCommand:
    """CLI input for outbox listing and flushing."""

    state_dir: Path | None
    limit: int | None = None


@dataclass(slots=True)
class HistoryCommand:
    state_dir: Path | None
    limit: int
    events: bool
    task_id: int | None = None


@dataclass(slots=True)
class RelayServices:
    """Wired collaborators for one state directory."""

    settings: Settings
    project_dir: Path
    mailbox: MessageQueueStore
    plans: PlanManager
    draft_marker: DraftMarker
    gate: ContinueGate
    lock: SessionLock
    routing: RoutingDefaults
    sessions: SessionBranchManager
    journal: DispatchJournal


class RelayCliController:
    """Coordinates worker, plan, queue and session CLI operations."""

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _load_settings(command.state_dir)
        with _services(settings) as services:
            worker = build_worker(services, stop_event=threading.Event())
            summary = worker.run_once() if command.once else worker.run_loop(
                max_ticks=command.max_ticks,
            )

        return [
            "Worker summary: "
            f"ticks={summary.ticks} conversations={summary.conversations} "
            f"tasks_done={summary.tasks_done} tasks_failed={summary.tasks_failed} "
            f"fallbacks={summary.fallbacks} completed_runs={summary.completed_runs} "
            f"stale_locks_cleared={summary.stale_locks_cleared} "
            f"idle_polls={summary.idle_polls} errors={summary.errors}",
        ]

    def show_plan(self, command: PlanCommand) -> list[str]:
        plans = _plan_manager(_load_settings(command.state_dir))
        plan = plans.load()
        if plan is None:
            return ["No execution plan."]
        lines = [f"Status: {plan.status.value}"]
        if plan.spec_ref:
            lines.append(f"Spec: {plan.spec_ref}")
        lines.extend(["", format_summary(plan)])
        run = plans.dispatch.load()
        if run is not None:
            counts = run.counts()
            lines.extend(
                [
                    "",
                    f"Dispatch run {run.timestamp}: status={run.status.value} "
                    f"mode={run.mode.value} done={counts.done} error={counts.error} "
                    f"running={counts.running} remaining={counts.remaining}",
                ],
            )
            if run.awaiting_continue:
                lines.append("  paused: waiting for a continue signal")
            lines.extend(
                f"  task {task.id} error: {task.error}" for task in run.tasks if task.error
            )
        return lines

    def load_plan(self, command: PlanLoadCommand) -> list[str]:
        plans = _plan_manager(_load_settings(command.state_dir))
        plan = plans.load_tasks_from_markdown(command.path)
        plans.dispatch.clear()
        plan = plans.begin_review()
        return [f"Loaded {len(plan.tasks)} task(s) from {command.path}", "", format_summary(plan)]

    def approve_plan(self, command: PlanApproveCommand) -> list[str]:
        settings = _load_settings(command.state_dir)
        plans = _plan_manager(settings)
        if command.auto is None:
            mode = ExecutionMode(settings.dispatch.execution_mode)
        else:
            mode = ExecutionMode.AUTO if command.auto else ExecutionMode.STEP
        run = plans.approve(mode=mode)
        return [
            f"Plan approved: {len(run.tasks)} task(s), mode={run.mode.value}, run={run.timestamp}",
        ]

    def stop_plan(self, command: PlanCommand) -> list[str]:
        settings = _load_settings(command.state_dir)
        plans = _plan_manager(settings)
        plan = plans.stop()
        ContinueGate(settings.state_dir).consume()
        if plan is None:
            return ["No execution plan; dispatch run cleared."]
        return [f"Plan stopped ({plan.counts().done}/{len(plan.tasks)} task(s) done)."]

    def continue_plan(self, command: PlanCommand) -> list[str]:
        settings = _load_settings(command.state_dir)
        run = DispatchRunStore(settings.state_dir).load()
        if run is None or run.status is not PlanStatus.APPROVED:
            raise PlanError("No approved dispatch run to continue.")
        ContinueGate(settings.state_dir).signal()
        return ["Continue signal sent."]

    def replan(self, command: PlanCommand) -> list[str]:
        _plan_manager(_load_settings(command.state_dir)).replan()
        return ["Execution plan and dispatch run cleared."]

    def reset_task(self, command: PlanTaskCommand) -> list[str]:
        task = _plan_manager(_load_settings(command.state_dir)).reset_task(command.task_id)
        return [f"Task {task.id} reset to pending: {task.description}"]

    def select_platform(self, command: PlanSelectCommand) -> list[str]:
        plan = _plan_manager(_load_settings(command.state_dir)).select_platform(command.value)
        return [f"Platform set to {plan.default_platform}; choose a model next."]

    def select_model(self, command: PlanSelectCommand) -> list[str]:
        plan = _plan_manager(_load_settings(command.state_dir)).select_model(command.value)
        return [
            f"Model {plan.default_model} applied to {len(plan.tasks)} task(s).",
            "",
            format_summary(plan),
        ]

    def override_task(self, command: PlanOverrideCommand) -> list[str]:
        plans = _plan_manager(_load_settings(command.state_dir))
        plan = plans.override_task(command.task_id, platform=command.platform, model=command.model)
        return [
            f"Task {command.task_id} routed to {command.platform}/{command.model}.",
            "",
            format_summary(plan),
        ]

    def draft_plan(self, command: PlanDraftCommand) -> list[str]:
        settings = _load_settings(command.state_dir)
        with _services(settings) as services:
            services.draft_marker.set(command.note)
            lines = ["Plan drafting enabled; code changes will be reverted until approval."]
            mode = BranchMode.FRESH if command.fresh else BranchMode.CONTINUE
            try:
                branch = services.sessions.ensure_branch(mode)
            except GitError as error:
                lines.append(f"Session branch unchanged: {error}")
            else:
                lines.append(_branch_line(branch.name, branch.archived_as))
            services.journal.add_event("draft_started", details={"mode": mode.value})
        return lines

    def send_inbound(self, command: InboxSendCommand) -> list[str]:
        mailbox = MessageQueueStore(_load_settings(command.state_dir).state_dir)
        message = mailbox.enqueue_inbound(command.text)
        return [f"Queued inbound message {message.id}"]

    def list_outbound(self, command: OutboxCommand) -> list[str]:
        mailbox = MessageQueueStore(_load_settings(command.state_dir).state_dir)
        messages = mailbox.list_outbound(limit=command.limit)
        if not messages:
            return ["Outbox is empty."]
        lines: list[str] = []
        for message in messages:
            flag = "sent" if message.sent else "unsent"
            lines.append(f"{message.id} [{flag}] {message.timestamp}")
            lines.extend(_render_message(message))
        return lines

    def flush_outbound(self, command: OutboxCommand) -> list[str]:
        """Print unsent messages to the terminal and mark them sent."""

        settings = _load_settings(command.state_dir)
        mailbox = MessageQueueStore(settings.state_dir)
        documents_dir = settings.state_dir / OUTBOX_DOCUMENTS_DIRNAME
        lines: list[str] = []

        def _send(message: Message) -> None:
            lines.extend(_render_message(_fit_for_delivery(message, documents_dir)))
            lines.append("")

        report = mailbox.deliver_outbound(_send)
        lines.append(f"Delivered {report.delivered} message(s).")
        if report.error is not None:
            lines.append(f"Delivery stopped at {report.failed_message_id}: {report.error}")
        return lines

    def lock_status(self, command: PlanCommand) -> list[str]:
        lock = SessionLock(_load_settings(command.state_dir).state_dir)
        info = lock.holder()
        if info is None:
            if lock.is_held():
                return ["Session lock is held but its marker is unreadable."]
            return ["Session lock is free."]
        return [
            f"Session lock held by {info.holder} (pid {info.pid}) since {info.acquired_at or '-'}",
            f"Agent pid: {info.agent_pid or '-'}",
        ]

    def clear_lock(self, command: PlanCommand) -> list[str]:
        lock = SessionLock(_load_settings(command.state_dir).state_dir)
        return ["Session lock removed." if lock.release() else "Session lock was not held."]

    def kill_agent(self, command: PlanCommand) -> list[str]:
        lock = SessionLock(_load_settings(command.state_dir).state_dir)
        info = lock.kill()
        if info is None:
            return ["No lock holder; nothing to kill."]
        lines = [f"Released lock held by {info.holder} (pid {info.pid})."]
        if info.agent_pid is not None:
            lines.append(f"Sent SIGTERM to agent pid {info.agent_pid}.")
        lines.append("A task interrupted this way stays running until `plan reset-task`.")
        return lines

    def new_session(self, command: PlanCommand) -> list[str]:
        settings = _load_settings(command.state_dir)
        with _services(settings) as services:
            branch = services.sessions.ensure_branch(BranchMode.FRESH)
            services.journal.add_event(
                "session_started",
                details={"branch": branch.name, "archived_as": branch.archived_as},
            )
        return [_branch_line(branch.name, branch.archived_as)]

    def history(self, command: HistoryCommand) -> list[str]:
        settings = _load_settings(command.state_dir)
        with _journal(settings) as journal:
            if command.events:
                events = journal.list_events(limit=command.limit, task_id=command.task_id)
                if not events:
                    return ["No dispatch events recorded."]
                return [
                    f"{event.created_at.isoformat()} {event.event_type}"
                    f" task={event.task_id if event.task_id is not None else '-'}"
                    f" {_format_details(event.details)}".rstrip()
                    for event in events
                ]
            attempts = journal.list_attempts(limit=command.limit)
        if not attempts:
            return ["No dispatch attempts recorded."]
        lines: list[str] = []
        for attempt in attempts:
            flags = []
            if attempt.fallback_used:
                flags.append("fallback")
            if attempt.rate_limited:
                flags.append("rate_limited")
            if attempt.timed_out:
                flags.append("timeout")
            lines.append(
                f"#{attempt.attempt_id} task {attempt.task_id} {attempt.status} "
                f"{attempt.platform}/{attempt.model} exit={attempt.exit_code} "
                f"started={attempt.started_at.isoformat()}"
                + (f" [{', '.join(flags)}]" if flags else ""),
            )
            if attempt.error_summary:
                lines.append(f"  {attempt.error_summary}")
        return lines


def build_worker(services: RelayServices, *, stop_event: threading.Event) -> RelayWorker:
    """Assemble the polling worker around one shared stop event."""

    settings = services.settings
    runner = AgentRunner(
        routing=services.routing,
        work_dir=settings.state_dir / "agent",
        timeout_seconds=settings.agent.timeout_seconds,
        shutdown_requested=stop_event.is_set,
    )
    conversation = ConversationResponder(
        mailbox=services.mailbox,
        plans=services.plans,
        runner=runner,
        lock=services.lock,
        routing=services.routing,
        project_dir=services.project_dir,
        sessions=services.sessions,
        journal=services.journal,
    )
    dispatch = DispatchEngine(
        plans=services.plans,
        mailbox=services.mailbox,
        runner=runner,
        lock=services.lock,
        gate=services.gate,
        routing=services.routing,
        project_dir=services.project_dir,
        state_dir=settings.state_dir,
        sessions=services.sessions,
        journal=services.journal,
        stop_requested=stop_event.is_set,
    )
    return RelayWorker(
        lock=services.lock,
        conversation=conversation,
        dispatch=dispatch,
        gate=services.gate,
        stop_event=stop_event,
        poll_interval_seconds=settings.dispatch.poll_interval_seconds,
        cooldown_seconds=settings.dispatch.cooldown_seconds,
    )


def _load_settings(state_dir: Path | None) -> Settings:
    settings = Settings.from_env(state_dir=state_dir)
    settings.validate()
    settings.state_dir.mkdir(parents=True, exist_ok=True)
    return settings


def _plan_manager(settings: Settings) -> PlanManager:
    state = StateStore(settings.state_dir)
    return PlanManager(
        state=state,
        dispatch=DispatchRunStore(settings.state_dir),
        draft_marker=DraftMarker(settings.state_dir),
        default_backend=settings.agent.backend,
    )


def _routing_defaults(*, settings: Settings, state: StateStore) -> RoutingDefaults:
    routing = RoutingDefaults.from_settings(settings.agent)
    if state.backend:
        routing = replace(routing, default_backend=normalize_backend(state.backend))
    if state.model:
        routing = replace(routing, default_model=state.model)
    return routing


@contextmanager
def _journal(settings: Settings) -> Iterator[DispatchJournal]:
    journal = DispatchJournal(
        db_path=settings.journal_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    journal.init_schema()
    try:
        yield journal
    finally:
        journal.close()


@contextmanager
def _services(settings: Settings) -> Iterator[RelayServices]:
    plans = _plan_manager(settings)
    project_dir = (settings.project_dir or plans.state.active_project or Path.cwd()).resolve()
    lock = SessionLock(settings.state_dir)
    with _journal(settings) as journal:
        yield RelayServices(
            settings=settings,
            project_dir=project_dir,
            mailbox=MessageQueueStore(settings.state_dir),
            plans=plans,
            draft_marker=plans.draft_marker,
            gate=ContinueGate(
                settings.state_dir,
                poll_interval_seconds=settings.dispatch.continue_poll_seconds,
            ),
            lock=lock,
            routing=_routing_defaults(settings=settings, state=plans.state),
            sessions=SessionBranchManager(
                project_dir=project_dir,
                state_dir=settings.state_dir,
                draft_marker=plans.draft_marker,
                lock_path=lock.path,
                trunk_branch=settings.session.trunk_branch,
                branch_prefix=settings.session.branch_prefix,
            ),
            journal=journal,
        )


def _fit_for_delivery(message: Message, documents_dir: Path) -> Message:
    """Swap an oversized text for a document reference holding the full text."""

    if message.text is None or len(message.text) <= MAX_MESSAGE_CHARS:
        return message
    documents_dir.mkdir(parents=True, exist_ok=True)
    path = documents_dir / f"{message.id}.md"
    path.write_text(message.text, "utf-8")
    caption = message.text[:200].splitlines()[0] if message.text.strip() else ""
    logger.info("Message %s exceeds %d chars; sent as %s", message.id, MAX_MESSAGE_CHARS, path)
    return replace(message, text=None, document=DocumentRef(path=str(path), caption=caption))


def _render_message(message: Message) -> list[str]:
    lines: list[str] = []
    if message.document is not None:
        caption = f" ({message.document.caption})" if message.document.caption else ""
        lines.append(f"📎 {message.document.path}{caption}")
    if message.text:
        lines.extend(message.text.splitlines())
    if message.reply_markup:
        buttons = [
            button.get("text", "")
            for row in message.reply_markup.get("inline_keyboard", [])
            for button in row
        ]
        if buttons:
            lines.append("[" + "] [".join(buttons) + "]")
    return lines


def _branch_line(name: str, archived_as: str | None) -> str:
    if archived_as:
        return f"Session branch {name} (previous session archived as {archived_as})"
    return f"Session branch {name}"


def _format_details(details: dict[str, object]) -> str:
    return " ".join(f"{key}={value}" for key, value in sorted(details.items()))

