"""Structured prompt composition for task and conversation invocations."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from plan_relay.orchestrator.models import DispatchTask, Message

TASK_ROLE = (
    "You are an autonomous coding agent executing one task of an approved "
    "execution plan inside a git repository."
)
CONVERSATION_ROLE = (
    "You are a coding agent answering a remote operator who writes to you "
    "through a chat relay. Reply concisely; your answer is forwarded as a chat message."
)
STOP_INSTRUCTION = (
    "STOP signal received from the operator. Complete your current action, "
    "write a final status update and halt. Do not start any new tasks."
)
DRAFT_INSTRUCTION = (
    "The session is in plan-drafting mode: edit documentation and specs only. "
    "Changes to source code, scripts or styles will be reverted."
)


@dataclass(slots=True)
class PromptSection:
    title: str
    body: str

    def render(self) -> str:
        return f"## {self.title}\n{self.body.strip()}"


@dataclass(slots=True)
class Prompt:
    """Ordered typed sections rendered into the text handed to the agent."""

    role: str
    sections: list[PromptSection] = field(default_factory=list)

    def add(self, title: str, body: str | None) -> Prompt:
        if body and body.strip():
            self.sections.append(PromptSection(title=title, body=body))
        return self

    def render(self) -> str:
        parts = [self.role.strip(), *(section.render() for section in self.sections)]
        return "\n\n".join(parts) + "\n"


def build_task_prompt(  # noqa: PLR0913
    *,
    task: DispatchTask,
    total: int,
    report_path: Path,
    spec_ref: str | None = None,
    scope: tuple[str, ...] = (),
    history_path: Path | None = None,
) -> str:
    """Compose the prompt for one dispatched task."""

    prompt = Prompt(role=TASK_ROLE)
    prompt.add("Task", f"Task {task.id} of {total}: {task.description}")
    prompt.add("Summary", task.summary)
    if spec_ref:
        prompt.add("Specification", f"Read the specification first: {spec_ref}")
    if scope:
        prompt.add(
            "Scope boundary",
            "You may only modify these paths:\n"
            + "\n".join(f"- {path}" for path in scope)
            + "\nDo NOT modify files outside the scope boundary.",
        )
    if history_path is not None:
        prompt.add("Session history", f"Earlier conversation is logged in {history_path}")
    prompt.add(
        "Completion report",
        f"When done, write a short markdown report of what you changed to {report_path}.",
    )
    prompt.add(
        "Rules",
        f"Implement ONLY task {task.id}. Do not start, implement or partially implement "
        "any other task of the plan, even if it looks trivial.",
    )
    return prompt.render()


def build_conversation_prompt(
    *,
    messages: list[Message],
    history_path: Path | None = None,
    drafting: bool = False,
    stop_requested: bool = False,
) -> str:
    """Compose the prompt for answering queued operator messages."""

    prompt = Prompt(role=CONVERSATION_ROLE)
    if history_path is not None:
        prompt.add("Session history", f"Earlier conversation is logged in {history_path}")
    if drafting:
        prompt.add("Mode", DRAFT_INSTRUCTION)
    if stop_requested:
        prompt.add("Operator signal", STOP_INSTRUCTION)
    lines = [
        f"[{message.timestamp}] {message.text}"
        for message in messages
        if message.text and message.text.strip().upper() != "STOP"
    ]
    prompt.add("Messages", "\n".join(lines))
    return prompt.render()
