"""
Status cache and status rendering.

status.json is derived data: the reduced WorkflowState tagged with the
audit sequence it reflects. It is served only while that sequence equals
the audit log tail; otherwise the log is replayed.

Writing the cache is best-effort and never interrupts a command.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging
import os

from refgate.models.phase import PhaseStatus
from refgate.models.state import WorkflowState

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    PhaseStatus.LOCKED: "[ ]",
    PhaseStatus.READY: "[>]",
    PhaseStatus.ACTIVE: "[*]",
    PhaseStatus.COMPLETED: "[x]",
    PhaseStatus.FAILED: "[!]",
}


def get_status_path(state_dir: str) -> Path:
    return Path(state_dir) / "status.json"


def save_status(state_dir: str, state: WorkflowState) -> bool:
    """Write the status cache. Returns False instead of raising."""
    path = get_status_path(state_dir)
    tmp = path.with_suffix(".json.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w") as f:
            json.dump({"last_sequence": state.last_sequence, "state": state.to_dict()}, f, indent=2)
        os.replace(tmp, path)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.warning("Could not write status cache %s: %s", path, e)
        return False


def load_status(state_dir: str, last_sequence: int) -> Optional[WorkflowState]:
    """Cached state if it reflects exactly `last_sequence`, else None."""
    path = get_status_path(state_dir)
    if not path.exists():
        return None
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError):
        return None
    if data.get("last_sequence") != last_sequence:
        logger.debug("Status cache is stale (%s != %s)", data.get("last_sequence"), last_sequence)
        return None
    try:
        return WorkflowState.from_dict(data.get("state", {}))
    except (KeyError, TypeError, ValueError):
        return None


def status_data(state: WorkflowState) -> Dict[str, Any]:
    """JSON-friendly status summary."""
    phases = []
    for inst in state.current_instances():
        attempts = state.attempts_for(inst.instance_id)
        phases.append({
            "name": inst.name,
            "instance_id": inst.instance_id,
            "status": inst.status.value,
            "entered_at": inst.entered_at,
            "finished_at": inst.finished_at,
            "failure_reason": inst.failure_reason,
            "attempts": [a.to_dict() for a in attempts],
        })
    points = []
    for point in state.points.values():
        entry = point.to_dict()
        result = state.rollback_results.get(point.point_id)
        entry["rollback"] = result.to_dict() if result else None
        points.append(entry)
    return {
        "last_sequence": state.last_sequence,
        "phases": phases,
        "points": points,
        "reverted": sorted(state.reverted),
    }


def format_status(state: WorkflowState) -> str:
    """Human-readable status view."""
    lines: List[str] = []
    active = state.active_instance()
    lines.append(f"Active phase: {active.instance_id if active else 'none'}")
    lines.append("")
    for inst in state.current_instances():
        icon = STATUS_ICONS.get(inst.status, "[?]")
        line = f"{icon} {inst.instance_id:<20} {inst.status.value}"
        if inst.failure_reason:
            line += f"  ({inst.failure_reason})"
        lines.append(line)
        unmet = [r.detail for r in inst.last_gate_check if not r.satisfied]
        if unmet and inst.status in (PhaseStatus.LOCKED, PhaseStatus.READY):
            for detail in unmet:
                lines.append(f"      - {detail}")
        for attempt in state.attempts_for(inst.instance_id):
            outcome = attempt.outcome.value if attempt.outcome else "in flight"
            if attempt.attempt_id in state.reverted:
                outcome += ", reverted"
            lines.append(f"      {attempt.attempt_id}  {attempt.operation.name}  {outcome}")
    lines.append("")
    lines.append(f"Audit sequence: {state.last_sequence}")
    return "\n".join(lines)
