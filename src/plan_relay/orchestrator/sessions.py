"""Session branches, task checkpoints and the plan-drafting write guard."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath

from plan_relay.orchestrator import git_ops
from plan_relay.orchestrator.git_ops import GitError
from plan_relay.orchestrator.models import BranchMode
from plan_relay.orchestrator.signals import DraftMarker
from plan_relay.storage.common import to_iso, utc_now

logger = logging.getLogger(__name__)

CODE_EXTENSIONS = frozenset(
    {".js", ".mjs", ".cjs", ".jsx", ".py", ".sh", ".ts", ".tsx", ".css", ".html"},
)
HISTORY_FILENAME = "wa_session_history.md"
COMMIT_PREFIX = "[plan-relay]"


@dataclass(slots=True)
class SessionBranch:
    """A work session bound to one git branch."""

    name: str
    mode: BranchMode
    created_at: datetime
    archived_as: str | None = None


def active_branch_name(prefix: str) -> str:
    return f"{prefix}/session"


def archive_branch_name(prefix: str, at: datetime) -> str:
    return f"{prefix}/archive/{at.strftime('%Y%m%d-%H%M%S')}"


def is_code_path(path: str) -> bool:
    return PurePosixPath(path).suffix.lower() in CODE_EXTENSIONS


class SessionBranchManager:
    """Git side of a session.

    Checkpoint and guard operations are best-effort: git failures are logged
    and reported as "nothing happened" so the dispatch loop keeps running.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        project_dir: Path,
        state_dir: Path,
        draft_marker: DraftMarker,
        lock_path: Path,
        trunk_branch: str = "main",
        branch_prefix: str = "relay",
    ) -> None:
        self.project_dir = project_dir
        self.history_path = state_dir / HISTORY_FILENAME
        self.draft_marker = draft_marker
        self.lock_path = lock_path
        self.trunk_branch = trunk_branch
        self.branch_prefix = branch_prefix

    @property
    def active_branch(self) -> str:
        return active_branch_name(self.branch_prefix)

    def ensure_branch(self, mode: BranchMode) -> SessionBranch:
        """Check out the session branch, archiving the old one on ``fresh``.

        Raises GitError when the project is not a repository or git refuses.
        """

        if not git_ops.is_repo(self.project_dir):
            raise GitError(f"Not a git repository: {self.project_dir}")

        now = utc_now()
        name = self.active_branch
        archived_as: str | None = None
        exists = git_ops.branch_exists(self.project_dir, name)

        if mode is BranchMode.FRESH:
            if exists:
                self.commit("session archived")
                archived_as = self._free_archive_name(now)
                git_ops.rename_branch(self.project_dir, name, archived_as)
                logger.info("Archived session branch %s as %s", name, archived_as)
            git_ops.create_branch(self.project_dir, name, self._start_point())
            self.reset_history()
        elif not exists:
            git_ops.create_branch(self.project_dir, name, self._start_point())
        elif git_ops.current_branch(self.project_dir) != name:
            git_ops.checkout(self.project_dir, name)

        return SessionBranch(name=name, mode=mode, created_at=now, archived_as=archived_as)

    def commit(self, tag: str) -> str | None:
        """Stage everything but the lock marker and commit; None when clean or failed."""

        try:
            if not git_ops.is_repo(self.project_dir):
                logger.warning(
                    "Skipping checkpoint %r: %s is not a git repository",
                    tag,
                    self.project_dir,
                )
                return None
            git_ops.add_all(self.project_dir, exclude=self._lock_pathspec())
            if not git_ops.has_staged_changes(self.project_dir):
                return None
            sha = git_ops.commit(self.project_dir, f"{COMMIT_PREFIX} {tag}")
        except GitError as error:
            logger.warning("Checkpoint commit %r failed: %s", tag, error)
            return None
        logger.info("Checkpoint %s: %s", sha[:10], tag)
        return sha

    def enforce_draft_guard(self) -> list[str]:
        """Revert code-file changes while a plan is being drafted.

        Tracked files go back to their HEAD content, files unknown to HEAD are
        deleted. A staged rename that involves a code file gets its source back as
        well. Documentation changes are left alone. Returns reverted paths.
        """

        if not self.draft_marker.active():
            return []
        try:
            entries = git_ops.status(self.project_dir)
        except GitError as error:
            logger.warning("Draft guard could not read working tree: %s", error)
            return []

        restore: list[str] = []
        discard: list[str] = []
        staged_new: list[str] = []
        for entry in entries:
            if (
                entry.renamed
                and (is_code_path(entry.path) or is_code_path(entry.orig_path))
                and git_ops.exists_in_head(self.project_dir, entry.orig_path)
            ):
                # a staged rename also deletes its source
                restore.append(entry.orig_path)
            if not is_code_path(entry.path):
                continue
            if entry.untracked:
                discard.append(entry.path)
            elif git_ops.exists_in_head(self.project_dir, entry.path):
                restore.append(entry.path)
            else:
                staged_new.append(entry.path)

        reverted: list[str] = []
        try:
            git_ops.restore_from_head(self.project_dir, restore)
            reverted.extend(restore)
            git_ops.drop_from_index(self.project_dir, staged_new)
        except GitError as error:
            logger.warning("Draft guard revert failed: %s", error)
        for path in [*staged_new, *discard]:
            target = self.project_dir / path
            try:
                target.unlink()
            except FileNotFoundError:
                pass
            except OSError as error:
                logger.warning("Draft guard could not delete %s: %s", target, error)
                continue
            reverted.append(path)

        if reverted:
            logger.info("Draft guard reverted %d code file(s): %s", len(reverted), reverted)
        return sorted(reverted)

    def append_history(self, role: str, text: str) -> None:
        self.history_path.parent.mkdir(parents=True, exist_ok=True)
        with self.history_path.open("a", encoding="utf-8") as handle:
            handle.write(f"\n### {role} · {to_iso(utc_now())}\n\n{text.strip()}\n")

    def reset_history(self) -> None:
        self.history_path.parent.mkdir(parents=True, exist_ok=True)
        self.history_path.write_text(
            f"# Session log\n\nStarted {to_iso(utc_now())} on {self.active_branch}\n",
            "utf-8",
        )

    def _start_point(self) -> str | None:
        if git_ops.branch_exists(self.project_dir, self.trunk_branch):
            return self.trunk_branch
        logger.warning("Trunk branch %s not found; branching from HEAD", self.trunk_branch)
        return None

    def _free_archive_name(self, now: datetime) -> str:
        base = archive_branch_name(self.branch_prefix, now)
        candidate = base
        suffix = 1
        while git_ops.branch_exists(self.project_dir, candidate):
            suffix += 1
            candidate = f"{base}-{suffix}"
        return candidate

    def _lock_pathspec(self) -> tuple[str, ...]:
        try:
            relative = self.lock_path.resolve().relative_to(self.project_dir.resolve())
        except ValueError:
            return ()
        return (relative.as_posix(),)
