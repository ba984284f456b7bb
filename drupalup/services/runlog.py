"""Reading back the JSON-lines log written by structlog."""

import json
from pathlib import Path

COMMAND_STARTED = "command_started"
COMMAND_FINISHED = "command_finished"


def read_entries(log_file: str | Path) -> list[dict]:
    """Every parseable entry of the log file. Foreign lines are skipped."""
    path = Path(log_file)
    if not path.is_file():
        return []
    entries = []
    with path.open(encoding="utf-8", errors="replace") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(entry, dict):
                entries.append(entry)
    return entries


def last_run(entries: list[dict]) -> list[dict]:
    """Entries of the most recent command, from its ``command_started`` event onwards.

    A run that never logged ``command_finished`` is returned up to the end of the log.
    """
    start = None
    for index in range(len(entries) - 1, -1, -1):
        if entries[index].get("event") == COMMAND_STARTED:
            start = index
            break
    if start is None:
        return []

    section = []
    for entry in entries[start:]:
        section.append(entry)
        if entry.get("event") == COMMAND_FINISHED:
            break
    return section


def entry_details(entry: dict) -> str:
    """Everything but the standard keys, as ``key=value`` pairs."""
    skipped = {"event", "level", "timestamp"}
    return " ".join(f"{key}={value}" for key, value in entry.items() if key not in skipped)
