from __future__ import annotations

import datetime as dt
import hashlib
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from structlog import get_logger

from policygate.core.security import correlation_id
from policygate.models.audit import AuditEvent


logger = get_logger(__name__)


@dataclass
class AuditResult:
    ok: bool
    event_hash: Optional[str] = None
    error: Optional[str] = None


class AuditSink(Protocol):
    def log(self, event: Dict[str, Any]) -> AuditResult:
        ...


class AuditLogger:
    """Append-only, hash-chained JSONL audit trail, one file per UTC day."""

    def __init__(self, base_path: Path, enabled: bool = True) -> None:
        self.base_path = Path(base_path)
        self.enabled = enabled
        self._lock = threading.Lock()
        self._prev_hash: Dict[Path, str] = {}

    def log(self, event: Dict[str, Any]) -> AuditResult:
        if not self.enabled:
            return AuditResult(ok=True)

        record = dict(event)
        record.setdefault("ts", dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"))
        record.setdefault("corr_id", correlation_id())

        log_path = self._log_path_for_ts(record["ts"])

        with self._lock:
            try:
                self.base_path.mkdir(parents=True, exist_ok=True)
                record["prev_hash"] = self._previous_hash(log_path)
                payload = json.dumps(record, sort_keys=True)
                event_hash = hashlib.sha256(payload.encode("utf-8")).hexdigest()
                record["event_hash"] = event_hash
                self._write_line(log_path, json.dumps(record, sort_keys=True))
            except (OSError, TypeError, ValueError) as exc:
                logger.warning("audit.sink_failed", action=record.get("action"), error=str(exc))
                return AuditResult(ok=False, error=str(exc))
            self._prev_hash[log_path] = event_hash

        logger.info(
            "audit.event",
            action=record.get("action"),
            entity_id=record.get("entity_id"),
            corr_id=record.get("corr_id"),
        )
        return AuditResult(ok=True, event_hash=event_hash)

    def read_events(self) -> List[AuditEvent]:
        events: List[AuditEvent] = []
        if not self.base_path.exists():
            return events
        for path in sorted(self.base_path.glob("audit-*.jsonl")):
            for line in path.read_text("utf-8").splitlines():
                if line.strip():
                    events.append(AuditEvent.model_validate_json(line))
        return events

    def _log_path_for_ts(self, iso_ts: str) -> Path:
        day = iso_ts.split("T", 1)[0].replace("-", "")
        return self.base_path / f"audit-{day}.jsonl"

    def _write_line(self, path: Path, line: str) -> None:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def _previous_hash(self, path: Path) -> str:
        cached = self._prev_hash.get(path)
        if cached:
            return cached
        if not path.exists():
            return ""
        last_line = self._read_last_line(path)
        if not last_line:
            return ""
        try:
            return json.loads(last_line).get("event_hash", "")
        except json.JSONDecodeError:
            return ""

    def _read_last_line(self, path: Path) -> str:
        last = ""
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.rstrip("\n")
                if line:
                    last = line
        return last


def deliver(sink: Optional[AuditSink], event: Dict[str, Any]) -> AuditResult:
    """Hand an event to a sink; sink failures are logged and returned, never raised."""
    if sink is None:
        return AuditResult(ok=False, error="no audit sink configured")
    try:
        result = sink.log(event)
    except Exception as exc:  # noqa: BLE001
        logger.warning("audit.sink_failed", action=event.get("action"), error=repr(exc))
        return AuditResult(ok=False, error=repr(exc))
    if isinstance(result, AuditResult):
        return result
    return AuditResult(ok=True)
