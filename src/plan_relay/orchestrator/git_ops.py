"""Thin git wrappers used by the session/branch manager.

Functions raise GitError on failure so callers decide whether a failure is
fatal or only worth a warning.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


class GitError(RuntimeError):
    """A git command failed."""


@dataclass(slots=True)
class StatusEntry:
    """One ``git status --porcelain`` line."""

    code: str
    path: str
    orig_path: str | None = None

    @property
    def untracked(self) -> bool:
        return self.code == "??"

    @property
    def renamed(self) -> bool:
        return self.code[0] == "R" and self.orig_path is not None


def run_git(repo: Path, *args: str) -> str:
    try:
        completed = subprocess.run(
            ["git", *args],  # noqa: S607
            cwd=repo,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as error:
        detail = (error.stderr or error.stdout or "").strip()
        raise GitError(f"git {' '.join(args)} failed: {detail}") from None
    except FileNotFoundError:
        raise GitError("git executable not found") from None
    return completed.stdout


def is_repo(repo: Path) -> bool:
    try:
        return run_git(repo, "rev-parse", "--is-inside-work-tree").strip() == "true"
    except GitError:
        return False


def current_branch(repo: Path) -> str | None:
    name = run_git(repo, "rev-parse", "--abbrev-ref", "HEAD").strip()
    return None if name == "HEAD" else name


def branch_exists(repo: Path, name: str) -> bool:
    try:
        run_git(repo, "rev-parse", "--verify", "--quiet", f"refs/heads/{name}")
    except GitError:
        return False
    return True


def rename_branch(repo: Path, old: str, new: str) -> None:
    run_git(repo, "branch", "-m", old, new)


def checkout(repo: Path, name: str) -> None:
    run_git(repo, "checkout", name)


def create_branch(repo: Path, name: str, start_point: str | None) -> None:
    args = ["checkout", "-b", name]
    if start_point is not None:
        args.append(start_point)
    run_git(repo, *args)


def status(repo: Path) -> list[StatusEntry]:
    """Working-tree changes, untracked files listed individually."""

    raw = run_git(repo, "status", "--porcelain", "-z", "--untracked-files=all")
    entries: list[StatusEntry] = []
    tokens = iter(raw.split("\0"))
    for token in tokens:
        if len(token) < 4:
            continue
        code, path = token[:2], token[3:]
        # rename/copy records carry the source path as the next token
        orig_path = next(tokens, None) if code[0] in {"R", "C"} else None
        entries.append(StatusEntry(code=code, path=path, orig_path=orig_path))
    return entries


def add_all(repo: Path, *, exclude: tuple[str, ...] = ()) -> None:
    pathspec = ["."] + [f":(exclude){path}" for path in exclude]
    run_git(repo, "add", "-A", "--", *pathspec)


def has_staged_changes(repo: Path) -> bool:
    try:
        subprocess.run(
            ["git", "diff", "--cached", "--quiet"],  # noqa: S607
            cwd=repo,
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as error:
        if error.returncode == 1:
            return True
        raise GitError(f"git diff --cached failed: {error.stderr.strip()}") from None
    return False


def commit(repo: Path, message: str) -> str:
    run_git(repo, "commit", "--no-verify", "-m", message)
    return run_git(repo, "rev-parse", "HEAD").strip()


def exists_in_head(repo: Path, path: str) -> bool:
    try:
        run_git(repo, "cat-file", "-e", f"HEAD:{path}")
    except GitError:
        return False
    return True


def restore_from_head(repo: Path, paths: list[str]) -> None:
    if paths:
        run_git(repo, "checkout", "HEAD", "--", *paths)


def drop_from_index(repo: Path, paths: list[str]) -> None:
    if paths:
        run_git(repo, "rm", "--cached", "--quiet", "-f", "--", *paths)
