"""CLI entrypoint for plan-relay."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from plan_relay import __version__
from plan_relay.orchestrator.controllers import (
    HistoryCommand,
    InboxSendCommand,
    OutboxCommand,
    PlanApproveCommand,
    PlanCommand,
    PlanDraftCommand,
    PlanLoadCommand,
    PlanOverrideCommand,
    PlanSelectCommand,
    PlanTaskCommand,
    RelayCliController,
    WorkerCommand,
)
from plan_relay.orchestrator.git_ops import GitError
from plan_relay.orchestrator.lock import LockBusyError
from plan_relay.orchestrator.plans import PlanError

click.rich_click.USE_MARKDOWN = True
RELAY_CONTROLLER = RelayCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

CommandT = TypeVar("CommandT")

state_dir_option = click.option(
    "--state-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory with state.json and the queue files. Defaults to RELAY_STATE_DIR or .relay.",
)


@click.group()
@click.version_option(version=__version__, prog_name="plan-relay")
def plan_relay() -> None:
    """Chat-driven execution plan relay for coding agents."""


@plan_relay.group()
def worker() -> None:
    """Polling worker commands."""


@worker.command("run")
@state_dir_option
@click.option("--once", is_flag=True, default=False, help="Run a single poll tick and exit.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many poll ticks (default: run until SIGINT/SIGTERM).",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging verbosity.",
)
def worker_run(state_dir: Path | None, once: bool, max_ticks: int | None, log_level: str) -> None:
    """Answer queued messages and dispatch approved plan tasks."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)
    _emit_lines(
        _invoke(
            RELAY_CONTROLLER.run_worker,
            WorkerCommand(state_dir=state_dir, once=once, max_ticks=max_ticks),
        ),
    )


@plan_relay.group()
def plan() -> None:
    """Execution plan review, approval and recovery."""


@plan.command("show")
@state_dir_option
def plan_show(state_dir: Path | None) -> None:
    """Print the current plan and dispatch progress."""

    _emit_lines(_invoke(RELAY_CONTROLLER.show_plan, PlanCommand(state_dir=state_dir)))


@plan.command("load")
@state_dir_option
@click.argument("path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
def plan_load(state_dir: Path | None, path: Path) -> None:
    """Build a plan from the `## To Do` checklist of a markdown task board."""

    _emit_lines(
        _invoke(RELAY_CONTROLLER.load_plan, PlanLoadCommand(state_dir=state_dir, path=path)),
    )


@plan.command("approve")
@state_dir_option
@click.option(
    "--auto/--step",
    "auto",
    default=None,
    help="Run all tasks without pausing (`--auto`) or pause after each (`--step`).",
)
def plan_approve(state_dir: Path | None, auto: bool | None) -> None:
    """Approve the plan and hand it to the dispatcher."""

    _emit_lines(
        _invoke(RELAY_CONTROLLER.approve_plan, PlanApproveCommand(state_dir=state_dir, auto=auto)),
    )


@plan.command("stop")
@state_dir_option
def plan_stop(state_dir: Path | None) -> None:
    """Stop dispatching; the running task, if any, finishes first."""

    _emit_lines(_invoke(RELAY_CONTROLLER.stop_plan, PlanCommand(state_dir=state_dir)))


@plan.command("continue")
@state_dir_option
def plan_continue(state_dir: Path | None) -> None:
    """Release a step-through pause."""

    _emit_lines(_invoke(RELAY_CONTROLLER.continue_plan, PlanCommand(state_dir=state_dir)))


@plan.command("replan")
@state_dir_option
def plan_replan(state_dir: Path | None) -> None:
    """Discard the plan and its dispatch run."""

    _emit_lines(_invoke(RELAY_CONTROLLER.replan, PlanCommand(state_dir=state_dir)))


@plan.command("reset-task")
@state_dir_option
@click.argument("task_id", type=click.IntRange(min=1))
def plan_reset_task(state_dir: Path | None, task_id: int) -> None:
    """Return a running or failed task to pending."""

    _emit_lines(
        _invoke(RELAY_CONTROLLER.reset_task, PlanTaskCommand(state_dir=state_dir, task_id=task_id)),
    )


@plan.command("select-platform")
@state_dir_option
@click.argument("platform", type=click.Choice(["gemini", "kilo"], case_sensitive=False))
def plan_select_platform(state_dir: Path | None, platform: str) -> None:
    """Choose the platform for every task."""

    _emit_lines(
        _invoke(
            RELAY_CONTROLLER.select_platform,
            PlanSelectCommand(state_dir=state_dir, value=platform.lower()),
        ),
    )


@plan.command("select-model")
@state_dir_option
@click.argument("model")
def plan_select_model(state_dir: Path | None, model: str) -> None:
    """Apply one model to every task."""

    _emit_lines(
        _invoke(RELAY_CONTROLLER.select_model, PlanSelectCommand(state_dir=state_dir, value=model)),
    )


@plan.command("override")
@state_dir_option
@click.argument("task_id", type=click.IntRange(min=1))
@click.option(
    "--platform",
    type=click.Choice(["gemini", "kilo"], case_sensitive=False),
    required=True,
    help="Platform for this task.",
)
@click.option("--model", required=True, help="Model id for this task.")
def plan_override(state_dir: Path | None, task_id: int, platform: str, model: str) -> None:
    """Route one task to a specific platform/model."""

    _emit_lines(
        _invoke(
            RELAY_CONTROLLER.override_task,
            PlanOverrideCommand(
                state_dir=state_dir,
                task_id=task_id,
                platform=platform.lower(),
                model=model,
            ),
        ),
    )


@plan.command("draft")
@state_dir_option
@click.option("--fresh", is_flag=True, default=False, help="Archive the session branch first.")
@click.option("--note", default="", help="Optional note stored in the drafting marker.")
def plan_draft(state_dir: Path | None, fresh: bool, note: str) -> None:
    """Enter plan-drafting mode: agent code edits are reverted until approval."""

    _emit_lines(
        _invoke(
            RELAY_CONTROLLER.draft_plan,
            PlanDraftCommand(state_dir=state_dir, fresh=fresh, note=note),
        ),
    )


@plan_relay.group()
def inbox() -> None:
    """Inbound message queue."""


@inbox.command("send")
@state_dir_option
@click.argument("text")
def inbox_send(state_dir: Path | None, text: str) -> None:
    """Queue an operator message for the agent. `STOP` halts the running plan."""

    _emit_lines(
        _invoke(RELAY_CONTROLLER.send_inbound, InboxSendCommand(state_dir=state_dir, text=text)),
    )


@plan_relay.group()
def outbox() -> None:
    """Outbound message queue."""


@outbox.command("list")
@state_dir_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="How many latest messages to print.",
)
def outbox_list(state_dir: Path | None, limit: int) -> None:
    """List recent outbound messages with their delivery flag."""

    _emit_lines(
        _invoke(RELAY_CONTROLLER.list_outbound, OutboxCommand(state_dir=state_dir, limit=limit)),
    )


@outbox.command("flush")
@state_dir_option
def outbox_flush(state_dir: Path | None) -> None:
    """Print unsent messages and mark them sent."""

    _emit_lines(_invoke(RELAY_CONTROLLER.flush_outbound, OutboxCommand(state_dir=state_dir)))


@plan_relay.group()
def lock() -> None:
    """Session lock inspection and recovery."""


@lock.command("status")
@state_dir_option
def lock_status(state_dir: Path | None) -> None:
    """Show who holds the session lock."""

    _emit_lines(_invoke(RELAY_CONTROLLER.lock_status, PlanCommand(state_dir=state_dir)))


@lock.command("clear")
@state_dir_option
def lock_clear(state_dir: Path | None) -> None:
    """Remove the lock marker without touching any process."""

    _emit_lines(_invoke(RELAY_CONTROLLER.clear_lock, PlanCommand(state_dir=state_dir)))


@lock.command("kill")
@state_dir_option
def lock_kill(state_dir: Path | None) -> None:
    """Terminate the running agent process and release the lock."""

    _emit_lines(_invoke(RELAY_CONTROLLER.kill_agent, PlanCommand(state_dir=state_dir)))


@plan_relay.group()
def session() -> None:
    """Session branch commands."""


@session.command("new")
@state_dir_option
def session_new(state_dir: Path | None) -> None:
    """Archive the current session branch and start a fresh one from trunk."""

    _emit_lines(_invoke(RELAY_CONTROLLER.new_session, PlanCommand(state_dir=state_dir)))


@plan_relay.command("history")
@state_dir_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="How many latest rows to print.",
)
@click.option("--events", is_flag=True, default=False, help="Show lifecycle events, not attempts.")
@click.option("--task-id", type=click.IntRange(min=1), default=None, help="Filter events by task.")
def history(state_dir: Path | None, limit: int, events: bool, task_id: int | None) -> None:
    """Show the dispatch journal."""

    _emit_lines(
        _invoke(
            RELAY_CONTROLLER.history,
            HistoryCommand(state_dir=state_dir, limit=limit, events=events, task_id=task_id),
        ),
    )


def _invoke(action: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return action(command)
    except (PlanError, LockBusyError, GitError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    plan_relay()
