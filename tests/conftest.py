"""Shared test fixtures."""

from __future__ import annotations

import os
import subprocess
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from plan_relay.config import Settings

SRC_DIR = Path(__file__).resolve().parents[1] / "src"

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m plan_relay.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file} --model {model} {flags}"
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep host RELAY_* settings out of tests and let child agents import the package."""

    for name in list(os.environ):
        if name.startswith("RELAY_"):
            monkeypatch.delenv(name, raising=False)
    pythonpath = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        f"{SRC_DIR}{os.pathsep}{pythonpath}" if pythonpath else str(SRC_DIR),
    )
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Relay Tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "relay-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Relay Tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "relay-tests@example.com")


@pytest.fixture()
def echo_command_template() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def echo_agent(monkeypatch):
    """Monkeypatch Settings.from_env to run the echo agent for every backend."""
    original_from_env = Settings.from_env

    def _patched_from_env(state_dir=None):
        settings = original_from_env(state_dir=state_dir)
        agent = replace(
            settings.agent,
            gemini_command_template=ECHO_AGENT_COMMAND_TEMPLATE,
            kilo_command_template=ECHO_AGENT_COMMAND_TEMPLATE,
        )
        return replace(settings, agent=agent)

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))


def git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],  # noqa: S607
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout.strip()


@pytest.fixture()
def git_cmd():
    """Run git in a repository and return stripped stdout."""

    return git


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
    """A repository on ``main`` with one committed source file and one doc."""

    repo = tmp_path / "project"
    repo.mkdir()
    git(repo, "init", "--quiet")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    (repo / "app.py").write_text("print('hello')\n", "utf-8")
    (repo / "README.md").write_text("# Project\n", "utf-8")
    (repo / ".gitignore").write_text(".relay/\n", "utf-8")
    git(repo, "add", "-A")
    git(repo, "commit", "--quiet", "-m", "initial")
    return repo
