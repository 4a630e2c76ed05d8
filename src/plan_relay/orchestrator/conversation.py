"""Answer queued operator messages through the agent."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from plan_relay.orchestrator.journal import DispatchJournal
from plan_relay.orchestrator.lock import LockBusyError, SessionLock
from plan_relay.orchestrator.mailbox import MessageQueueStore, is_stop_request
from plan_relay.orchestrator.models import Message, PlanStatus
from plan_relay.orchestrator.plans import PlanManager
from plan_relay.orchestrator.prompts import build_conversation_prompt
from plan_relay.orchestrator.routing import RoutingDefaults
from plan_relay.orchestrator.runner import AgentRunner, AgentRunOutcome
from plan_relay.orchestrator.sessions import SessionBranchManager

logger = logging.getLogger(__name__)

LOCK_HOLDER = "chat"


@dataclass(slots=True)
class ConversationResult:
    """What one responder pass did."""

    handled: int = 0
    reply: str = ""
    model: str = ""
    fallback_used: bool = False
    stop_requested: bool = False
    reverted: list[str] = field(default_factory=list)


class ConversationResponder:
    """Drains unread inbound messages and relays the agent's reply.

    Runs only while the session lock is free; the agent call itself happens
    under the lock so the dispatcher cannot start a task in parallel.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        mailbox: MessageQueueStore,
        plans: PlanManager,
        runner: AgentRunner,
        lock: SessionLock,
        routing: RoutingDefaults,
        project_dir: Path,
        sessions: SessionBranchManager | None = None,
        journal: DispatchJournal | None = None,
    ) -> None:
        self.mailbox = mailbox
        self.plans = plans
        self.runner = runner
        self.lock = lock
        self.routing = routing
        self.project_dir = project_dir
        self.sessions = sessions
        self.journal = journal

    def respond(self) -> ConversationResult | None:
        """Handle pending messages; None when there was nothing to do or the lock is busy."""

        if not self.mailbox.has_unread_inbound():
            return None
        try:
            self.lock.acquire(LOCK_HOLDER)
        except LockBusyError as error:
            logger.debug("Conversation deferred: %s", error)
            return None
        try:
            messages = self.mailbox.drain_unread_inbound()
            if not messages:
                return None
            return self._handle(messages)
        finally:
            self.lock.release()

    def _handle(self, messages: list[Message]) -> ConversationResult:
        result = ConversationResult(handled=len(messages))
        result.stop_requested = any(is_stop_request(message) for message in messages)
        if result.stop_requested:
            self._halt_dispatch()

        drafting = self.plans.draft_marker.active()
        history_path = self.sessions.history_path if self.sessions is not None else None
        if self.sessions is not None:
            self.sessions.append_history(
                "operator",
                "\n\n".join(message.text or "" for message in messages),
            )

        prompt = build_conversation_prompt(
            messages=messages,
            history_path=history_path,
            drafting=drafting,
            stop_requested=result.stop_requested,
        )
        backend = self.plans.backend
        model = self.plans.state.model or self.routing.routine_model
        logger.info(
            "Answering %d message(s) with %s/%s (drafting=%s)",
            len(messages),
            backend,
            model,
            drafting,
        )
        outcome = self._invoke(prompt, backend=backend, model=model)
        result.reply = outcome.output.strip()
        result.model = outcome.model
        result.fallback_used = outcome.fallback_used

        self.mailbox.enqueue_outbound(result.reply)
        if self.sessions is not None:
            self.sessions.append_history("agent", result.reply)
            result.reverted = self.sessions.enforce_draft_guard()
            if result.reverted:
                self.mailbox.enqueue_outbound(
                    "🛡️ Plan drafting is active, so code changes were reverted:\n"
                    + "\n".join(f"• {path}" for path in result.reverted),
                )
            self.sessions.commit("chat")

        if self.journal is not None:
            self.journal.add_event(
                "conversation",
                details={
                    "messages": len(messages),
                    "model": outcome.model,
                    "fallback_used": outcome.fallback_used,
                    "rate_limited": outcome.rate_limited,
                    "stop_requested": result.stop_requested,
                    "reverted": result.reverted,
                },
            )
        return result

    def _invoke(self, prompt: str, *, backend: str, model: str) -> AgentRunOutcome:
        try:
            return self.runner.run(
                prompt,
                model,
                self.project_dir,
                self.routing.extra_flags(backend),
                backend=backend,
                on_spawn=self.lock.record_agent_pid,
            )
        except ValueError as error:
            logger.warning("Conversation agent could not be started: %s", error)
            return AgentRunOutcome(
                output=f"⚠️ Agent could not be started: {error}",
                stderr=str(error),
                exit_code=2,
                backend=backend,
                model=model,
                synthetic=True,
            )

    def _halt_dispatch(self) -> None:
        run = self.plans.dispatch.load()
        if run is None or run.status is not PlanStatus.APPROVED:
            return
        self.plans.stop()
        self.mailbox.enqueue_outbound("🛑 Execution plan stopped.")
        logger.info("STOP received; dispatch run %s halted", run.timestamp)
        if self.journal is not None:
            self.journal.add_event("run_stopped", details={"run": run.timestamp, "via": "chat"})
