"""Execution plan ownership: shared state file, dispatch record, approval flow."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from plan_relay.config import validate_model_id
from plan_relay.orchestrator.models import (
    DispatchRun,
    DispatchTask,
    ExecutionMode,
    ExecutionPlan,
    PlanStatus,
    RecordValidationError,
    Task,
    TaskStatus,
)
from plan_relay.orchestrator.routing import (
    PLATFORM_MODELS,
    TIER_DEFAULTS,
    TIER_EMOJI,
    difficulty_label,
    normalize_backend,
    tier_for_difficulty,
)
from plan_relay.orchestrator.signals import DraftMarker
from plan_relay.storage.common import to_iso, utc_now
from plan_relay.storage.files import atomic_write_json, quarantine, read_json, remove_file

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"
DISPATCH_FILENAME = "wa_dispatch.json"
DEFAULT_BACKEND = "gemini"

_TODO_HEADING = re.compile(r"^##\s+To Do\s*$", re.IGNORECASE)
_TODO_LINE = re.compile(r"^\s*-\s*\[ \]\s+(?P<body>.+)$")
_DIFFICULTY = re.compile(r"\[Difficulty:\s*(\d+)(?:/\d+)?\]", re.IGNORECASE)
_REF = re.compile(r"\[Ref:\s*([^\]]+)\]", re.IGNORECASE)
_TAG = re.compile(r"^\[[^\]]+\]\s*")


class PlanError(RuntimeError):
    """Operator-facing plan action that cannot be applied."""


class PlanValidationError(ValueError):
    """Structural plan invariant violated."""


class StateStore:
    """Accessor for ``state.json``; the only writer of that file.

    Keys owned by other processes (project registry, chat settings) are
    preserved on every update.
    """

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / STATE_FILENAME

    def read(self) -> dict[str, Any]:
        try:
            payload = read_json(self.path)
        except ValueError as error:
            quarantine(self.path, reason=str(error))
            return {}
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            quarantine(self.path, reason="state must be a JSON object")
            return {}
        return payload

    def update(self, mutate: Callable[[dict[str, Any]], None]) -> dict[str, Any]:
        state = self.read()
        mutate(state)
        atomic_write_json(self.path, state)
        return state

    @property
    def backend(self) -> str | None:
        value = self.read().get("backend")
        return value if isinstance(value, str) and value else None

    @property
    def model(self) -> str | None:
        value = self.read().get("model")
        return value if isinstance(value, str) and value else None

    @property
    def active_project(self) -> Path | None:
        value = self.read().get("activeProject")
        return Path(value) if isinstance(value, str) and value else None


class DispatchRunStore:
    """The single global DispatchRun record."""

    def __init__(self, state_dir: Path) -> None:
        self.path = state_dir / DISPATCH_FILENAME

    def load(self) -> DispatchRun | None:
        try:
            payload = read_json(self.path)
            if payload is None:
                return None
            return DispatchRun.from_record(payload)
        except ValueError as error:
            quarantine(self.path, reason=str(error))
            return None

    def save(self, run: DispatchRun) -> None:
        atomic_write_json(self.path, run.to_record())

    def clear(self) -> bool:
        return remove_file(self.path)


class PlanManager:
    """Owns the ExecutionPlan inside ``state.json`` and its DispatchRun projection.

    Structural invariants (unique ids, deps pointing only at earlier tasks) are
    enforced on save; status transitions are driven by callers.
    """

    def __init__(
        self,
        *,
        state: StateStore,
        dispatch: DispatchRunStore,
        draft_marker: DraftMarker,
        default_backend: str = DEFAULT_BACKEND,
    ) -> None:
        self.state = state
        self.dispatch = dispatch
        self.draft_marker = draft_marker
        self.default_backend = default_backend

    @property
    def backend(self) -> str:
        return normalize_backend(self.state.backend or self.default_backend)

    def load(self) -> ExecutionPlan | None:
        record = self.state.read().get("executionPlan")
        if record is None:
            return None
        try:
            return ExecutionPlan.from_record(record)
        except RecordValidationError as error:
            logger.warning("Rejected malformed execution plan: %s", error)

            def _quarantine(state: dict[str, Any]) -> None:
                state["executionPlanRejected"] = {
                    "rejected_at": to_iso(utc_now()),
                    "reason": str(error),
                    "record": state.pop("executionPlan", None),
                }

            self.state.update(_quarantine)
            return None

    def save(self, plan: ExecutionPlan) -> None:
        validate_plan(plan)
        record = plan.to_record()
        self.state.update(lambda state: state.__setitem__("executionPlan", record))

    def clear(self) -> None:
        self.state.update(lambda state: state.pop("executionPlan", None))

    def require(self) -> ExecutionPlan:
        plan = self.load()
        if plan is None:
            raise PlanError("No execution plan found.")
        return plan

    def begin_review(self) -> ExecutionPlan:
        """Fill default platform/model and move the plan to confirming."""

        plan = self.require()
        apply_tier_defaults(plan, backend=self.backend)
        plan.status = PlanStatus.CONFIRMING
        self.save(plan)
        return plan

    def select_platform(self, platform: str) -> ExecutionPlan:
        plan = self.require()
        plan.default_platform = normalize_backend(platform)
        plan.status = PlanStatus.SELECTING_MODEL
        self.save(plan)
        return plan

    def select_model(self, model: str) -> ExecutionPlan:
        """Apply one model to every task, then return to confirming."""

        plan = self.require()
        platform = plan.default_platform or self.backend
        for task in plan.tasks:
            task.platform = platform
            task.model = validate_model_id(model)
        plan.default_model = model
        plan.status = PlanStatus.CONFIRMING
        self.save(plan)
        return plan

    def override_task(self, task_id: int, *, platform: str, model: str) -> ExecutionPlan:
        plan = self.require()
        task = plan.task(task_id)
        if task is None:
            raise PlanError(f"Task not found: {task_id}")
        task.platform = normalize_backend(platform)
        task.model = validate_model_id(model)
        self.save(plan)
        return plan

    def approve(self, *, mode: ExecutionMode = ExecutionMode.STEP) -> DispatchRun:
        """Authorize execution: write the DispatchRun and lift the draft guard."""

        plan = self.require()
        if not plan.tasks:
            raise PlanError("Execution plan has no tasks.")
        current = self.dispatch.load()
        if current is not None and current.status is PlanStatus.APPROVED:
            if current.counts().running:
                raise PlanError("A dispatch run is still executing a task.")

        apply_tier_defaults(plan, backend=self.backend)
        plan.status = PlanStatus.APPROVED
        for task in plan.tasks:
            if task.task_status is None:
                task.task_status = TaskStatus.PENDING
        self.save(plan)

        platform = plan.default_platform or self.backend
        fallback_model = plan.default_model or PLATFORM_MODELS[platform][0]
        run = DispatchRun(
            timestamp=to_iso(utc_now()),
            status=PlanStatus.APPROVED,
            tasks=[
                DispatchTask.from_task(task, platform=platform, model=fallback_model)
                for task in plan.tasks
            ],
            mode=mode,
            spec_ref=plan.spec_ref,
        )
        self.dispatch.save(run)
        if self.draft_marker.clear():
            logger.info("Plan approved; drafting marker cleared")
        return run

    def stop(self) -> ExecutionPlan | None:
        """Halt execution: plan goes to stopped and the DispatchRun is discarded."""

        plan = self.load()
        if plan is not None:
            plan.status = PlanStatus.STOPPED
            self.save(plan)
        self.dispatch.clear()
        return plan

    def replan(self) -> None:
        self.clear()
        self.dispatch.clear()

    def reset_task(self, task_id: int) -> DispatchTask | Task:
        """Return a running/error task to pending (manual recovery after kill or failure)."""

        plan = self.load()
        run = self.dispatch.load()
        plan_task = plan.task(task_id) if plan is not None else None
        run_task = run.task(task_id) if run is not None else None
        if plan_task is None and run_task is None:
            raise PlanError(f"Task not found: {task_id}")
        if plan is not None and plan_task is not None:
            plan_task.task_status = TaskStatus.PENDING
            plan_task.error = None
            if plan.status is PlanStatus.COMPLETED and run is not None:
                plan.status = PlanStatus.APPROVED
            self.save(plan)
        if run is not None and run_task is not None:
            run_task.task_status = TaskStatus.PENDING
            run_task.error = None
            if run.status is PlanStatus.COMPLETED:
                run.status = PlanStatus.APPROVED
            self.dispatch.save(run)
        return run_task if run_task is not None else plan_task  # type: ignore[return-value]

    def update_task_status(
        self,
        task_id: int,
        status: TaskStatus,
        *,
        error: str | None = None,
    ) -> None:
        """Mirror a dispatcher status change into the editable plan."""

        plan = self.load()
        if plan is None:
            return
        task = plan.task(task_id)
        if task is None:
            return
        task.task_status = status
        task.error = error
        if status is TaskStatus.RUNNING and plan.status is PlanStatus.APPROVED:
            plan.status = PlanStatus.EXECUTING
        self.save(plan)

    def set_status(self, status: PlanStatus) -> None:
        plan = self.load()
        if plan is None:
            return
        plan.status = status
        self.save(plan)

    def load_tasks_from_markdown(self, path: Path) -> ExecutionPlan:
        plan = parse_task_markdown(path.read_text("utf-8"))
        self.save(plan)
        return plan


def validate_plan(plan: ExecutionPlan) -> None:
    """Check unique ids and that deps only reference earlier-declared tasks."""

    seen: set[int] = set()
    for task in plan.tasks:
        if task.id in seen:
            raise PlanValidationError(f"Duplicate task id: {task.id}")
        for dep in task.deps:
            if dep not in seen:
                raise PlanValidationError(
                    f"Task {task.id} depends on {dep}, which is not an earlier task.",
                )
        seen.add(task.id)


def apply_tier_defaults(plan: ExecutionPlan, *, backend: str) -> bool:
    """Assign platform/model from the tier table to tasks without a platform.

    Mutates only the passed plan; returns whether any task was changed.
    """

    tier_map = TIER_DEFAULTS.get(backend) or TIER_DEFAULTS[DEFAULT_BACKEND]
    applied = False
    for task in plan.tasks:
        if task.platform and task.model:
            continue
        if not task.platform and task.tier in tier_map:
            task.platform = backend if backend in TIER_DEFAULTS else DEFAULT_BACKEND
            task.model = tier_map[task.tier]
        else:
            task.platform = task.platform or backend
            task.model = task.model or PLATFORM_MODELS.get(task.platform, (plan.default_model,))[0]
        applied = True
    if applied and not plan.default_platform:
        plan.default_platform = backend
    return applied


def format_summary(plan: ExecutionPlan) -> str:
    lines = [f"📋 Execution Plan ({len(plan.tasks)} tasks)", ""]
    for task in plan.tasks:
        tier_emoji = TIER_EMOJI.get(task.tier, "❓")
        model_label = task.model or "—"
        if task.platform and task.model:
            model_label = f"{task.platform}/{task.model}"
        difficulty = (
            f"  {difficulty_label(task.difficulty)} ({task.difficulty}/10)"
            if task.difficulty
            else ""
        )
        deps = f"  deps: {', '.join(str(dep) for dep in task.deps)}" if task.deps else ""
        status = f"  [{task.task_status.value}]" if task.task_status is not None else ""
        lines.append(
            f"{task.id}. {task.description}  {tier_emoji} {model_label}{difficulty}{deps}{status}",
        )
        if task.summary:
            lines.append(f"   → {task.summary}")
    return "\n".join(lines)


def parse_task_markdown(text: str) -> ExecutionPlan:
    """Build a pending_review plan from the ``## To Do`` checklist of a task board."""

    tasks: list[Task] = []
    refs: list[str | None] = []
    in_todo = False
    for line in text.splitlines():
        if line.startswith("## "):
            in_todo = bool(_TODO_HEADING.match(line))
            continue
        if not in_todo:
            continue
        match = _TODO_LINE.match(line)
        if match is None:
            continue
        body = match.group("body")
        difficulty_match = _DIFFICULTY.search(body)
        ref_match = _REF.search(body)
        difficulty = int(difficulty_match.group(1)) if difficulty_match else 0
        description = _REF.sub("", _DIFFICULTY.sub("", body))
        while _TAG.match(description):
            description = _TAG.sub("", description, count=1)
        description = " ".join(description.split())
        if not description:
            continue
        refs.append(ref_match.group(1).strip() if ref_match else None)
        tasks.append(
            Task(
                id=len(tasks) + 1,
                description=description,
                difficulty=difficulty,
                tier=tier_for_difficulty(difficulty),
            ),
        )

    if not tasks:
        raise PlanError("No open tasks found under a '## To Do' heading.")

    distinct_refs = {ref for ref in refs if ref}
    spec_ref = distinct_refs.pop() if len(distinct_refs) == 1 and all(refs) else None
    if spec_ref is None:
        for task, ref in zip(tasks, refs, strict=True):
            if ref:
                task.summary = f"Ref: {ref}"
    return ExecutionPlan(status=PlanStatus.PENDING_REVIEW, tasks=tasks, spec_ref=spec_ref)
