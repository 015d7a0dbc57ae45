"""Audit logging.

Appends structured JSON entries to ~/.shellbox/logs.jsonl.
Each entry records a sandbox event (batch, restart, destroy) with timestamp,
sandbox name, and host directory.
"""

import json
from datetime import datetime
from pathlib import Path

LOGS_FILE = Path.home() / ".shellbox" / "logs.jsonl"


def write_log(entry):
    """Append an audit log entry."""
    LOGS_FILE.parent.mkdir(parents=True, exist_ok=True)
    entry["timestamp"] = datetime.now().isoformat()
    with open(LOGS_FILE, "a") as f:
        f.write(json.dumps(entry) + "\n")


def read_logs(host_dir=None):
    """Return logged entries oldest-first, optionally only those for host_dir."""
    if not LOGS_FILE.exists():
        return []
    entries = []
    for line in LOGS_FILE.read_text().splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if host_dir and entry.get("host_dir") != host_dir:
            continue
        entries.append(entry)
    return entries
