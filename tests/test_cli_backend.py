from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest

from plan_relay.orchestrator.backend import BackendRunError, BackendRunRequest
from plan_relay.orchestrator.backend.cli_backend import (
    TIMEOUT_EXIT_CODE,
    GeminiCliBackend,
    KiloCliBackend,
    backend_for,
    build_run_args,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Agent Command Rendering"),
]


def _request(tmp_path: Path, command_template: str, **overrides) -> BackendRunRequest:
    project_dir = tmp_path / "project"
    project_dir.mkdir(exist_ok=True)
    values = {
        "prompt": "Task 1 of 1: do it",
        "model": "gemini-2.5-flash",
        "project_dir": project_dir,
        "command_template": command_template,
        "timeout_seconds": 30,
        "prompt_file": tmp_path / "work" / "prompt.txt",
        "stdout_path": tmp_path / "work" / "stdout.log",
        "stderr_path": tmp_path / "work" / "stderr.log",
    }
    values.update(overrides)
    return BackendRunRequest(**values)


def test_build_run_args_quotes_placeholder_values() -> None:
    argv = build_run_args(
        command_template="gemini --model {model} --yolo {flags} --prompt {prompt}",
        model="gemini-2.5-pro",
        prompt="fix the 'login' bug; rm -rf /",
        prompt_file=Path("prompt.txt"),
    )

    assert argv == [
        "gemini",
        "--model",
        "gemini-2.5-pro",
        "--yolo",
        "--prompt",
        "fix the 'login' bug; rm -rf /",
    ]


def test_build_run_args_expands_flags_and_prompt_file() -> None:
    argv = build_run_args(
        command_template="agent {flags} --file {prompt_file}",
        model="m",
        prompt="ignored",
        prompt_file=Path("work dir/prompt.txt"),
        extra_flags=("--sandbox", "--debug"),
    )

    assert argv == ["agent", "--sandbox", "--debug", "--file", "work dir/prompt.txt"]


@pytest.mark.parametrize(
    "template",
    ["", "agent --model {model}", "agent {prompt} {unknown}"],
)
def test_build_run_args_rejects_bad_templates(template: str) -> None:
    with pytest.raises(BackendRunError) as error:
        build_run_args(command_template=template, model="m", prompt="p", prompt_file=Path("p"))

    assert error.value.transient is False


def test_backend_for_rejects_unknown_platform() -> None:
    assert isinstance(backend_for("Gemini"), GeminiCliBackend)
    assert isinstance(backend_for("kilo"), KiloCliBackend)
    with pytest.raises(ValueError, match="Unsupported backend"):
        backend_for("codex")


def test_backend_runs_command_in_project_dir_and_reports_spawned_pid(
    tmp_path: Path,
    monkeypatch,
) -> None:
    monkeypatch.setenv("RELAY_ECHO_WRITE", "out/created.txt")
    spawned: list[int] = []
    request = _request(
        tmp_path,
        f"{sys.executable} -m plan_relay.orchestrator.backend.echo_agent "
        "--prompt-file {prompt_file} --model {model}",
        on_spawn=spawned.append,
    )

    result = GeminiCliBackend().run(request)

    assert result.exit_code == 0
    assert result.timed_out is False
    assert result.stdout_path.read_text("utf-8").strip() == (
        "echo[gemini-2.5-flash]: Task 1 of 1: do it"
    )
    assert (request.project_dir / "out" / "created.txt").exists()
    assert request.prompt_file.read_text("utf-8") == "Task 1 of 1: do it"
    assert len(spawned) == 1


def test_gemini_backend_moves_project_settings_aside_during_run(tmp_path: Path) -> None:
    script = tmp_path / "probe.py"
    script.write_text(
        "import pathlib, sys\n"
        "print(pathlib.Path('.gemini/settings.json').exists())\n",
        "utf-8",
    )
    request = _request(tmp_path, f"{sys.executable} {script} {{prompt_file}}")
    settings_path = request.project_dir / ".gemini" / "settings.json"
    settings_path.parent.mkdir(parents=True)
    settings_path.write_text('{"hooks": {}}', "utf-8")

    result = GeminiCliBackend().run(request)

    assert result.stdout_path.read_text("utf-8").strip() == "False"
    assert settings_path.read_text("utf-8") == '{"hooks": {}}'
    assert not settings_path.with_name("settings.json.watcher-bak").exists()


def test_kilo_backend_maps_api_key_for_openrouter(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("KILO_API_KEY", "kilo-secret")
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    script = tmp_path / "probe.py"
    script.write_text("import os\nprint(os.environ['OPENROUTER_API_KEY'])\n", "utf-8")
    request = _request(tmp_path, f"{sys.executable} {script} {{prompt_file}}")

    result = KiloCliBackend().run(request)

    assert result.stdout_path.read_text("utf-8").strip() == "kilo-secret"


def test_backend_times_out_and_terminates_process(tmp_path: Path) -> None:
    script = tmp_path / "sleepy.py"
    script.write_text("import time\ntime.sleep(30)\n", "utf-8")
    request = _request(tmp_path, f"{sys.executable} {script} {{prompt_file}}", timeout_seconds=1)

    result = GeminiCliBackend().run(request)

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE


def test_missing_executable_is_a_non_transient_error(tmp_path: Path) -> None:
    request = _request(tmp_path, "definitely-not-an-agent-binary {prompt}")

    with pytest.raises(BackendRunError) as error:
        GeminiCliBackend().run(request)

    assert error.value.transient is False
