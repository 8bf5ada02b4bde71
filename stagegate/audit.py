"""
Audit trail for pipeline actions.

Every run start and finish, rollback decision and operator request is
appended as one JSON object per line. Audit failures are logged and never
interrupt the pipeline.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Replaced by configure_audit_log from pipeline.audit_log
AUDIT_LOG_PATH = Path("/var/log/stagegate/audit.jsonl")


def configure_audit_log(path: str) -> None:
    """Point the audit trail at ``path``."""
    global AUDIT_LOG_PATH
    AUDIT_LOG_PATH = Path(path)


def _append(entry: Dict[str, Any]) -> None:
    AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    with open(AUDIT_LOG_PATH, "a") as f:
        f.write(json.dumps(entry, default=str) + "\n")


def audit_pipeline_action(
    action: str,
    run_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    user: Optional[str] = None,
    success: Optional[bool] = None,
) -> None:
    """
    Record a pipeline action.

    Args:
        action: What happened (run_started, rollback_started, abort_requested, ...)
        run_id: Run or operation identifier
        details: Action-specific fields
        user: Actor that caused the action; ``system`` when omitted
        success: Outcome, for actions that have one
    """
    actor = user or "system"
    entry: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "run_id": run_id,
        "user": actor,
        "details": details or {},
    }
    if success is not None:
        entry["success"] = success

    try:
        _append(entry)
    except OSError as e:
        logger.error(f"Could not write audit entry {action} for {run_id}: {e}")
        return

    logger.debug(f"Audit: {action} ({run_id}) by {actor}")
