"""
Audit log of operations.

One JSON object per line. Entries record what happened and how long it took;
inputs appear only as truncated SHA-256 hashes.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import timedelta
from pathlib import Path
from typing import Callable, Optional

from ..crypto import hash_for_audit
from ..models import format_timestamp, parse_timestamp, utc_now
from ..types import AUDIT_LOG_FILE_NAME
from .files import append_private_line, write_private_file

logger = logging.getLogger("diabetesm.audit")


@dataclass
class AuditEntry:
    """A single audit log line."""
    timestamp: str
    operation: str
    success: bool
    duration: float
    toolName: Optional[str] = None
    inputHash: Optional[str] = None
    errorCode: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({k: v for k, v in asdict(self).items() if v is not None})


class AuditLogger:
    """Appends audit entries to the audit log in the config directory."""

    def __init__(self, directory: Path, file_name: str = AUDIT_LOG_FILE_NAME) -> None:
        self._path = Path(directory) / file_name

    @property
    def path(self) -> Path:
        return self._path

    def log_operation(
        self,
        operation: str,
        success: bool,
        duration_ms: float,
        input_data: Optional[str] = None,
        error_code: Optional[str] = None,
        tool_name: Optional[str] = None,
    ) -> None:
        """
        Record an operation.

        Args:
            operation: Operation name.
            success: Whether it succeeded.
            duration_ms: Elapsed milliseconds.
            input_data: Identifying input; only its hash is written.
            error_code: Error code on failure.
            tool_name: Calling tool, if any.
        """
        entry = AuditEntry(
            timestamp=format_timestamp(utc_now()),
            operation=operation,
            success=success,
            duration=round(duration_ms, 3),
            toolName=tool_name,
            inputHash=hash_for_audit(input_data) if input_data else None,
            errorCode=str(getattr(error_code, "value", error_code)) if error_code else None,
        )
        try:
            append_private_line(self._path, entry.to_json())
        except OSError as e:
            logger.warning("Could not write audit entry for %s: %s", operation, e)

    @staticmethod
    def start_timer() -> Callable[[], float]:
        """Returns a callable giving milliseconds elapsed since this call."""
        start = time.monotonic()
        return lambda: (time.monotonic() - start) * 1000

    def recent_entries(self, count: int = 100) -> list[dict]:
        """Last `count` entries, oldest first."""
        entries = []
        for line in self._read_lines()[-count:]:
            try:
                entries.append(json.loads(line))
            except ValueError:
                continue
        return entries

    def cleanup_old_entries(self, retention_days: int = 90) -> int:
        """Drop entries older than the retention window. Returns how many were removed."""
        lines = self._read_lines()
        if not lines:
            return 0

        cutoff = utc_now() - timedelta(days=retention_days)
        kept = []
        for line in lines:
            try:
                if parse_timestamp(json.loads(line)["timestamp"]) > cutoff:
                    kept.append(line)
            except (ValueError, KeyError, TypeError):
                continue

        removed = len(lines) - len(kept)
        if removed:
            payload = "".join(line + "\n" for line in kept)
            write_private_file(self._path, payload.encode("utf-8"))
        return removed

    def statistics(self) -> dict:
        """Summary over the last 1000 entries."""
        entries = self.recent_entries(1000)
        if not entries:
            return {"total_operations": 0, "success_rate": 0.0, "average_duration": 0.0}

        successes = sum(1 for e in entries if e.get("success"))
        total_duration = sum(float(e.get("duration", 0)) for e in entries)
        return {
            "total_operations": len(entries),
            "success_rate": successes / len(entries) * 100,
            "average_duration": total_duration / len(entries),
            "last_operation": entries[-1].get("timestamp"),
        }

    def _read_lines(self) -> list[str]:
        if not self._path.exists():
            return []
        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("Could not read audit log: %s", e)
            return []
        return [line for line in content.splitlines() if line.strip()]
