"""Append-only JSON-lines audit trail of access decisions."""

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Get current UTC time (naive, serialized with a Z suffix)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class AuditLogger:
    """Append-only audit log."""

    def __init__(self, path: Path):
        self.path = path
        self._lock = threading.Lock()
        self._ensure_dir()

    def _ensure_dir(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def log(
        self,
        event: str,
        token: str | None = None,
        credential: str | None = None,
        door_id: str | None = None,
        reason: str | None = None,
        **extra: Any,
    ) -> None:
        """Write an audit entry.

        Extra fields whose name starts with ``_`` are dropped.
        """
        entry: dict[str, Any] = {
            "ts": utcnow().isoformat() + "Z",
            "event": event,
        }
        if token:
            entry["token"] = token
        if credential:
            entry["credential"] = credential
        if door_id:
            entry["door_id"] = door_id
        if reason:
            entry["reason"] = reason
        entry.update({k: v for k, v in extra.items() if not k.startswith("_")})

        line = json.dumps(entry, default=str) + "\n"
        with self._lock:
            with open(self.path, "a") as f:
                f.write(line)

        logger.debug(f"Audit: {event} door={door_id} reason={reason}")

    def read(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Load entries, oldest first; unparseable lines are skipped."""
        if not self.path.exists():
            return []
        entries = []
        with open(self.path) as f:
            for line in f:
                try:
                    entries.append(json.loads(line.strip()))
                except json.JSONDecodeError:
                    continue
        if limit is not None:
            entries = entries[-limit:]
        return entries
