"""Local deterministic agent for CLI backend integration tests.

Behaviour is steered by environment variables so tests can script outcomes:
``RELAY_ECHO_STDERR`` text to print on stderr, ``RELAY_ECHO_EXIT`` exit code,
``RELAY_ECHO_SILENT=1`` to print nothing on stdout, ``RELAY_ECHO_FAIL_MODELS``
comma-separated models that behave as rate-limited, ``RELAY_ECHO_WRITE`` a
relative file path to create in the working directory.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Echo the prompt back and optionally simulate failures."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    parser.add_argument("--model", default="echo")
    args, _ = parser.parse_known_args(argv)

    failing_models = {
        model.strip()
        for model in os.getenv("RELAY_ECHO_FAIL_MODELS", "").split(",")
        if model.strip()
    }
    if args.model in failing_models:
        sys.stderr.write("Error: 429 Too Many Requests - RESOURCE_EXHAUSTED quota\n")
        return 1

    write_target = os.getenv("RELAY_ECHO_WRITE", "").strip()
    if write_target:
        target = Path.cwd() / write_target
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(f"written by {args.model}\n", "utf-8")

    stderr_text = os.getenv("RELAY_ECHO_STDERR", "")
    if stderr_text:
        sys.stderr.write(stderr_text + "\n")

    if os.getenv("RELAY_ECHO_SILENT", "0") != "1":
        prompt = Path(args.prompt_file).read_text("utf-8")
        first_line = prompt.strip().splitlines()[0] if prompt.strip() else ""
        sys.stdout.write(f"echo[{args.model}]: {first_line}\n")
    return int(os.getenv("RELAY_ECHO_EXIT", "0"))


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
