import json
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

from agents.procedure_agent.responses import AuthorizationQuantities


TOTAL_STEPS = 13


@dataclass(frozen=True)
class WorkUnit:
    patient: str
    slot: str
    card: str = ""
    skip: bool = False

    @classmethod
    def from_record(cls, record, slot: Any) -> "WorkUnit":
        return cls(patient=record.name, slot=str(slot), card=record.card, skip=record.skip)

    def to_dict(self) -> Dict[str, Any]:
        return {"patient": self.patient, "slot": self.slot, "card": self.card, "skip": self.skip}

    @property
    def label(self) -> str:
        return f"{self.patient} - {self.slot}"


def fmt_duration(seconds: float) -> str:
    sec = max(0, int(seconds))
    h, rem = divmod(sec, 3600)
    m, s = divmod(rem, 60)
    if h > 0:
        return f"{h}h {m}m"
    if m > 0:
        return f"{m}m {s}s"
    return f"{s}s"


class ProgressTracker:
    """Single writer of the run progress; republishes the full view on every change.

    Bucket invariant: every seeded unit is in exactly one of completed,
    failed, skipped or remaining. The unit in flight stays in remaining until
    it is retired.
    """

    def __init__(
        self,
        summary_path: Path,
        state_path: Path,
        logger,
        total_steps: int = TOTAL_STEPS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.summary_path = Path(summary_path)
        self.state_path = Path(state_path)
        self.logger = logger
        self.total_steps = total_steps
        self._clock = clock
        self._lock = threading.Lock()
        self.started_at = self._clock()
        self._seeded: List[WorkUnit] = []
        self._retired: set = set()
        self._completed: List[Dict[str, Any]] = []
        self._failed: List[Dict[str, Any]] = []
        self._skipped: List[Dict[str, Any]] = []
        self._current: Optional[Dict[str, Any]] = None
        self._publish()

    def seed(self, units: Iterable[WorkUnit]) -> None:
        with self._lock:
            self._seeded = []
            seen = set()
            for unit in units:
                if unit in seen:
                    self.logger.warning("Duplicate work unit ignored: %s", unit.label)
                    continue
                seen.add(unit)
                self._seeded.append(unit)
            self._retired = set()
            self._completed = []
            self._failed = []
            self._skipped = []
            self._current = None
        self._publish()

    def start_unit(self, unit: WorkUnit) -> None:
        with self._lock:
            if unit in self._retired:
                self.logger.warning("Work unit already retired, not restarting: %s", unit.label)
                return
            if self._current is not None and self._current["unit"] == unit:
                # Same unit again: a retry attempt.
                self._current["attempt"] += 1
                self._current["step"] = 0
                self._current["last_step"] = ""
                self._current["last_step_ok"] = True
            else:
                if self._current is not None:
                    self.logger.warning(
                        "Starting %s while %s is still in flight",
                        unit.label,
                        self._current["unit"].label,
                    )
                self._current = {
                    "unit": unit,
                    "started_at": self._clock(),
                    "step": 0,
                    "last_step": "",
                    "last_step_ok": True,
                    "attempt": 1,
                    "quantities": None,
                    "last_error": "",
                }
        self._publish()

    def record_step(self, index: int, label: str, ok: bool = True) -> None:
        with self._lock:
            if self._current is None:
                return
            self._current["step"] = int(index)
            self._current["last_step"] = label
            self._current["last_step_ok"] = bool(ok)
        self._publish()

    def attach_quantities(self, quantities: AuthorizationQuantities) -> None:
        with self._lock:
            if self._current is None:
                return
            self._current["quantities"] = quantities
        self._publish()

    def record_error(self, message: str) -> None:
        with self._lock:
            if self._current is None:
                return
            self._current["last_error"] = str(message)
        self._publish()

    def complete_unit(self, ok: bool, extra: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            current = self._current
            if current is None:
                return
            unit = current["unit"]
            self._current = None
            if unit in self._retired:
                self.logger.warning("Work unit already retired: %s", unit.label)
                return
            self._retired.add(unit)
            result = self._result_for(current, ok, extra or {})
            (self._completed if ok else self._failed).append(result)
        self._publish()

    def skip_unit(self, unit: WorkUnit, reason: str, reason_code: str = "") -> None:
        with self._lock:
            current = self._current
            if current is None:
                return
            if current["unit"] != unit:
                self.logger.warning(
                    "Skip requested for %s but %s is in flight; ignoring",
                    unit.label,
                    current["unit"].label,
                )
                return
            self._current = None
            if unit in self._retired:
                return
            self._retired.add(unit)
            self._skipped.append(
                {
                    **unit.to_dict(),
                    "reason": str(reason),
                    "reason_code": str(reason_code or ""),
                    "skipped_at": self._clock().isoformat(),
                }
            )
        self._publish()

    def _result_for(self, current: Dict[str, Any], ok: bool, extra: Dict[str, Any]) -> Dict[str, Any]:
        ended_at = self._clock()
        quantities: Optional[AuthorizationQuantities] = current.get("quantities")
        return {
            **current["unit"].to_dict(),
            "ok": ok,
            "started_at": current["started_at"].isoformat(),
            "ended_at": ended_at.isoformat(),
            "duration_seconds": max(0, int((ended_at - current["started_at"]).total_seconds())),
            "steps": current["step"],
            "last_step": current["last_step"],
            "attempts": current["attempt"],
            "registration_number": extra.get("registration_number"),
            "realization_date": extra.get("realization_date"),
            "error": extra.get("error") or (None if ok else current.get("last_error") or None),
            "quantities": quantities.to_dict() if quantities is not None else None,
        }

    def _snapshot_locked(self) -> Dict[str, Any]:
        now = self._clock()
        remaining = [u.to_dict() for u in self._seeded if u not in self._retired]
        current = None
        if self._current is not None:
            quantities = self._current.get("quantities")
            current = {
                **self._current["unit"].to_dict(),
                "step": self._current["step"],
                "total_steps": self.total_steps,
                "last_step": self._current["last_step"],
                "last_step_ok": self._current["last_step_ok"],
                "attempt": self._current["attempt"],
                "started_at": self._current["started_at"].isoformat(),
                "last_error": self._current["last_error"],
                "quantities": quantities.to_dict() if quantities is not None else None,
            }
        return {
            "started_at": self.started_at.isoformat(),
            "updated_at": now.isoformat(),
            "elapsed_seconds": max(0, int((now - self.started_at).total_seconds())),
            "total": len(self._seeded),
            "counts": {
                "completed": len(self._completed),
                "failed": len(self._failed),
                "skipped": len(self._skipped),
                "remaining": len(remaining),
            },
            "current": current,
            "completed": [dict(item) for item in self._completed],
            "failed": [dict(item) for item in self._failed],
            "skipped": [dict(item) for item in self._skipped],
            "remaining": remaining,
        }

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return self._snapshot_locked()

    def _publish(self) -> None:
        with self._lock:
            snap = self._snapshot_locked()
        try:
            self.summary_path.parent.mkdir(parents=True, exist_ok=True)
            self.summary_path.write_text(
                render_summary(snap, self.total_steps, self.summary_path),
                encoding="utf-8",
            )
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self.state_path.write_text(
                json.dumps(snap, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
        except Exception:
            self.logger.exception("Failed to persist progress snapshot")


def _fmt_ts(value: Optional[str]) -> str:
    if not value:
        return ""
    try:
        return datetime.fromisoformat(value).strftime("%d/%m/%Y %H:%M:%S")
    except ValueError:
        return value


def _quantity_text(value: Optional[int]) -> str:
    return "N/A" if value is None else str(value)


def render_summary(snap: Dict[str, Any], total_steps: int, summary_path: Path) -> str:
    """Render the live markdown summary read by operators during a run."""
    counts = snap["counts"]
    lines: List[str] = [
        "# Automation Live Summary",
        f"Started: {_fmt_ts(snap['started_at'])}",
        f"Last Updated: {_fmt_ts(snap['updated_at'])}",
        f"Elapsed Time: {fmt_duration(snap['elapsed_seconds'])}",
        "",
        "## Current Status",
    ]

    current = snap.get("current")
    if current is None:
        lines.append("**Idle - Waiting for next patient**")
    else:
        skip_note = " (skip mode)" if current["skip"] else ""
        lines.append(f"**Currently Processing**: {current['patient']} - {current['slot']}{skip_note}")
        step_line = f"   Step {current['step']}/{total_steps}"
        if current["last_step"]:
            step_line += f" - {current['last_step']}"
        if not current["last_step_ok"]:
            step_line += " (failed)"
        lines.append(step_line)
        lines.append(f"   Attempt: {current['attempt']}")
        lines.append(f"   Started: {_fmt_ts(current['started_at'])}")
        if current.get("last_error"):
            lines.append(f"   Last error: {current['last_error']}")
        quant = current.get("quantities")
        if quant and (quant["requested"] is not None or quant["authorized"] is not None):
            lines.append("   **Authorization Status:**")
            lines.append(f"      - Requested: {_quantity_text(quant['requested'])} sessions")
            lines.append(f"      - Authorized: {_quantity_text(quant['authorized'])} sessions")
            lines.append(f"      - Completed: {_quantity_text(quant['completed'])} sessions")
            if quant["remaining"] is not None:
                lines.append(f"      - Remaining: {quant['remaining']} sessions")

    lines += [
        "",
        "## Progress Overview",
        f"- Total Procedures: {snap['total']}",
        f"- Completed: {counts['completed']}",
        f"- Failed: {counts['failed']}",
        f"- Skipped: {counts['skipped']}",
        f"- Remaining: {counts['remaining']}",
        "",
        "## Completed Patients",
    ]
    if snap["completed"]:
        for item in snap["completed"]:
            line = f"- **{item['patient']}** - {item['slot']} | Steps: {item['steps']}/{total_steps}"
            if item.get("registration_number"):
                line += f" | Registration: {item['registration_number']}"
            if item.get("realization_date"):
                line += f" | Realization: {item['realization_date']}"
            line += f" | Duration: {fmt_duration(item['duration_seconds'])}"
            lines.append(line)
            quant = item.get("quantities")
            if quant and (quant["requested"] is not None or quant["authorized"] is not None):
                sessions = (
                    f"   Sessions: Requested: {_quantity_text(quant['requested'])}"
                    f" | Authorized: {_quantity_text(quant['authorized'])}"
                    f" | Completed: {_quantity_text(quant['completed'])}"
                )
                if quant["remaining"] is not None:
                    sessions += f" | Remaining: {quant['remaining']}"
                lines.append(sessions)
    else:
        lines.append("_None yet_")

    lines += ["", "## Failed Patients"]
    if snap["failed"]:
        for item in snap["failed"]:
            line = f"- **{item['patient']}** - {item['slot']} - Failed at Step {item['steps']}"
            if item.get("last_step"):
                line += f": {item['last_step']}"
            line += f" | Attempts: {item['attempts']} | Duration: {fmt_duration(item['duration_seconds'])}"
            lines.append(line)
            if item.get("error"):
                lines.append(f"   Error: {item['error']}")
    else:
        lines.append("_None yet_")

    lines += ["", "## Skipped Patients"]
    if snap["skipped"]:
        for item in snap["skipped"]:
            line = f"- **{item['patient']}** - {item['slot']} - Reason: {item['reason']}"
            if item.get("reason_code"):
                line += f" [{item['reason_code']}]"
            lines.append(line)
    else:
        lines.append("_None yet_")

    lines += ["", "## Currently in Queue"]
    if snap["remaining"]:
        grouped: Dict[str, Dict[str, Any]] = {}
        for item in snap["remaining"]:
            entry = grouped.setdefault(item["patient"], {"slots": [], "skip": item["skip"]})
            entry["slots"].append(item["slot"])
        for name, data in grouped.items():
            skip_note = " [SKIP]" if data["skip"] else ""
            lines.append(f"- **{name}**{skip_note} - {', '.join(data['slots'])}")
    else:
        lines.append("_Queue empty_")

    lines += ["", "---", f"_File: {summary_path}_", ""]
    return "\n".join(lines)
