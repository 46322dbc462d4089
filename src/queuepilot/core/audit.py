from __future__ import annotations

from datetime import datetime, timezone
import json
import os
import uuid
from typing import Any, Dict, List, Optional

from queuepilot.core.logging_config import append_to_file, get_audit_log_path


def generate_request_id() -> str:
    """Generate a short unique request ID."""
    return uuid.uuid4().hex[:12]


def log_event(
    data_dir: str,
    event_type: str,
    payload: Dict[str, Any],
    request_id: Optional[str] = None,
) -> None:
    """Append one control-surface event to ``<data_dir>/audit.jsonl``."""
    os.makedirs(data_dir, exist_ok=True)
    path = os.path.join(data_dir, "audit.jsonl")
    record: Dict[str, Any] = {
        "ts": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "type": event_type,
        "payload": payload,
    }
    if request_id:
        record["request_id"] = request_id
    line = json.dumps(record, default=str)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(line + "\n")
    try:
        central = get_audit_log_path()
        if os.path.abspath(central) != os.path.abspath(path):
            append_to_file(central, line)
    except Exception:  # noqa: BLE001
        pass


def read_events(data_dir: str, event_type: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
    """Return the most recent audit records, newest last."""
    path = os.path.join(data_dir, "audit.jsonl")
    if not os.path.exists(path):
        return []
    records: List[Dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if event_type and record.get("type") != event_type:
                continue
            records.append(record)
    return records[-limit:] if limit > 0 else records
