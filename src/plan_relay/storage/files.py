"""Atomic JSON file primitives shared by every state file."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from plan_relay.storage.common import utc_now

logger = logging.getLogger(__name__)


def atomic_write_json(path: Path, payload: object) -> None:
    """Write JSON so readers never observe a torn file.

    The payload goes to ``<name>.tmp`` next to the target and is then renamed
    over it; ``os.replace`` is atomic on the same filesystem.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
        handle.write("\n")
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def read_json(path: Path) -> object | None:
    """Return decoded JSON, or None when the file does not exist.

    Raises ValueError for undecodable content so callers can quarantine it.
    """

    try:
        raw = path.read_text("utf-8")
    except FileNotFoundError:
        return None
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Invalid JSON in {path}: {error}") from error


def quarantine(path: Path, *, reason: str) -> Path | None:
    """Move a malformed record aside so the next read starts clean."""

    target = path.with_name(f"{path.name}.corrupt-{utc_now().strftime('%Y%m%d%H%M%S')}")
    try:
        os.replace(path, target)
    except FileNotFoundError:
        return None
    logger.warning("Quarantined malformed record %s -> %s: %s", path, target.name, reason)
    return target


def remove_file(path: Path) -> bool:
    """Delete a file if present; return whether something was removed."""

    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def reject_records(path: Path, records: list[dict[str, object]]) -> Path:
    """Append invalid entries of ``path`` to its ``<name>.rejected.json`` sidecar."""

    sidecar = path.with_name(f"{path.name}.rejected.json")
    try:
        existing = read_json(sidecar)
    except ValueError:
        existing = None
    kept = existing.get("records") if isinstance(existing, dict) else None
    rejected_at = utc_now().strftime("%Y-%m-%dT%H:%M:%SZ")
    entries = list(kept) if isinstance(kept, list) else []
    entries.extend({**record, "rejected_at": rejected_at} for record in records)
    atomic_write_json(sidecar, {"records": entries})
    logger.warning("Rejected %d malformed record(s) of %s -> %s", len(records), path, sidecar.name)
    return sidecar
