"""Append-only audit log for validation verdicts and workflow arbitrations.

Entries are frozen pydantic models; nothing in this module ever mutates or
removes one once written.  When ``INCIDENT_LOG_PATH`` is set every entry is
also mirrored as one JSON line to that file, so operators can tail it.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from dental_voice.config import INCIDENT_LOG_PATH
from dental_voice.models import IncidentEntry, Severity

logger = logging.getLogger(__name__)


class IncidentLog:
    """Thread-safe, in-memory incident log with an optional JSON-lines sink."""

    def __init__(self, path: str | Path | None = None) -> None:
        self._entries: list[IncidentEntry] = []
        self._lock = threading.Lock()
        target = path if path is not None else INCIDENT_LOG_PATH
        self._path = Path(target) if target else None

    def record(
        self,
        *,
        session_id: str,
        operation_type: str,
        verdict: str,
        severity: Severity = "none",
        reasoning: str = "",
        original_arguments: dict[str, Any] | None = None,
        corrected_arguments: dict[str, Any] | None = None,
        action: str = "allowed",
    ) -> IncidentEntry:
        """Write one entry and return it."""
        entry = IncidentEntry(
            session_id=session_id,
            operation_type=operation_type,
            verdict=verdict,
            severity=severity,
            reasoning=reasoning,
            original_arguments=dict(original_arguments or {}),
            corrected_arguments=dict(corrected_arguments) if corrected_arguments else None,
            action=action,
        )
        with self._lock:
            self._entries.append(entry)
            if self._path is not None:
                self._write_line(entry)

        log = logger.warning if action in ("blocked", "failed") else logger.info
        log(
            "Incident [%s] %s verdict=%s severity=%s action=%s",
            session_id, operation_type, verdict, severity, action,
        )
        return entry

    def entries(self, session_id: str | None = None) -> list[IncidentEntry]:
        """Return a copy of the log, optionally filtered by session."""
        with self._lock:
            if session_id is None:
                return list(self._entries)
            return [e for e in self._entries if e.session_id == session_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _write_line(self, entry: IncidentEntry) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(entry.model_dump_json() + "\n")
        except OSError:
            # The in-memory copy is still authoritative for this process
            logger.exception("Could not write incident to %s", self._path)
