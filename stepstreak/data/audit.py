"""Shared audit-log helpers."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from stepstreak.core.errors import CorruptedAggregate

logger = logging.getLogger(__name__)

CORRECTIONS_LOG = "corrections.jsonl"
ANOMALIES_LOG = "anomalies.jsonl"


def write_audit_entry(audit_path: Path, entry: dict[str, Any]) -> None:
    """Append a JSON-lines entry to an audit log file."""
    audit_path.parent.mkdir(parents=True, exist_ok=True)
    with audit_path.open("a", encoding="utf-8") as f:
        f.write(json.dumps(entry, default=str) + "\n")


def audit_correction(audit_dir: Path, key: str, before: int, after: int, source: str) -> None:
    """Record an upward correction of a finalized day's step total."""
    write_audit_entry(
        audit_dir / CORRECTIONS_LOG,
        {
            "timestamp": datetime.now(UTC).isoformat(),
            "action": "correct_steps",
            "key": key,
            "before": before,
            "after": after,
            "source": source,
        },
    )


def audit_anomaly(audit_dir: Path, key: str, detail: str) -> None:
    """Record a rejected aggregate for diagnostics."""
    write_audit_entry(
        audit_dir / ANOMALIES_LOG,
        {
            "timestamp": datetime.now(UTC).isoformat(),
            "action": "reject_aggregate",
            "key": key,
            "detail": detail,
        },
    )


def report_anomaly(audit_dir: Path | None, exc: CorruptedAggregate) -> None:
    """Log a rejected aggregate and, when an audit directory is configured, record it."""
    logger.error("Rejected corrupted aggregate %s: %s", exc.key, exc.detail)
    if audit_dir is not None:
        audit_anomaly(audit_dir, exc.key, exc.detail)
