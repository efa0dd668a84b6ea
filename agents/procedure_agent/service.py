import json
import re
import subprocess
import sys
import threading
import time
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

import httpx
from playwright.sync_api import sync_playwright

from agents.procedure_agent import selectors
from agents.procedure_agent.dates import SUNDAY, check_slot, parse_run_date
from agents.procedure_agent.page_driver import PlaywrightPageDriver
from agents.procedure_agent.progress import ProgressTracker, WorkUnit
from agents.procedure_agent.records import JsonRecordRepository, Record
from agents.procedure_agent.retry import RetryPolicy
from agents.procedure_agent.workflow import UnitOutcome, WorkflowEngine


AGENT_NAME = "procedure_agent"
JOB_NAME = "procedure_batch"

_DIGITAL_RELEASE_RE = re.compile(
    r"\s+".join(map(re.escape, selectors.DIGITAL_RELEASE_TEXT.split())),
    re.IGNORECASE,
)


class SetupError(RuntimeError):
    """The browser session or login could not be established."""


class ProcedureAgentService:
    """Runs the procedure batch for every patient slot of the current week."""

    def __init__(
        self,
        data_dir: Path,
        base_url: str,
        clinic: str,
        username: str,
        password: str,
        patients_path: Path,
        webhook_final_url: str,
        logger,
        *,
        headless: bool = True,
        timeout_ms: int = 30_000,
        retry_attempts: int = 3,
        retry_delay_seconds: float = 5.0,
        unit_pause_seconds: float = 2.0,
        screenshot_on_error: bool = True,
        default_professional: str = "",
        run_date: str = "",
        catch_up_weekday: int = SUNDAY,
        session_factory: Optional[Callable[[str], Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.data_dir = Path(data_dir)
        self.base_url = base_url
        self.clinic = clinic
        self.username = username
        self.password = password
        self.patients_path = Path(patients_path)
        self.webhook_final_url = webhook_final_url
        self.logger = logger
        self.headless = headless
        self.timeout_ms = int(timeout_ms)
        self.retry_attempts = int(retry_attempts)
        self.retry_delay_seconds = float(retry_delay_seconds)
        self.unit_pause_seconds = float(unit_pause_seconds)
        self.screenshot_on_error = screenshot_on_error
        self.default_professional = default_professional
        self.run_date = run_date
        self.catch_up_weekday = int(catch_up_weekday)
        self._session_factory = session_factory or self._browser_session
        self._sleep = sleep
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._tracker: Optional[ProgressTracker] = None
        self._run_id = ""
        self.summary_path = self.data_dir / "logs" / "live_summary.md"
        self.runtime_state_path = self.data_dir / "procedure_runtime_state.json"
        self.runtime_events_path = self.data_dir / "procedure_runtime_events.jsonl"
        self._debug("Service initialized", patients_path=self.patients_path)

    @staticmethod
    def _now_text() -> str:
        return datetime.now().strftime("%Y-%m-%d %H:%M:%S")

    def _debug(self, message: str, **meta: Any) -> None:
        suffix = " | " + ", ".join(f"{k}={v}" for k, v in meta.items()) if meta else ""
        self.logger.debug(f"[DEBUG][{AGENT_NAME}] {message} | at={self._now_text()}{suffix}")

    @staticmethod
    def now_id() -> str:
        return time.strftime("%Y%m%d-%H%M%S")

    @staticmethod
    def _sanitize_url_for_log(raw_url: str) -> str:
        if not raw_url:
            return raw_url
        try:
            parts = urlsplit(raw_url)
            return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))
        except Exception:
            return raw_url

    def list_jobs(self) -> Dict[str, Callable[..., Dict[str, Any]]]:
        return {JOB_NAME: self.run}

    def has_active_run(self) -> bool:
        return self._run_lock.locked()

    def _artifact_dir(self, run_id: str) -> Path:
        d = self.data_dir / "runs" / JOB_NAME / run_id
        d.mkdir(parents=True, exist_ok=True)
        return d

    def _append_runtime_event(self, event: str, **meta: Any) -> None:
        item = {
            "ts": datetime.now().isoformat(),
            "event": event,
            "run_id": meta.get("run_id"),
            "job": JOB_NAME,
            "meta": meta,
        }
        try:
            self.runtime_events_path.parent.mkdir(parents=True, exist_ok=True)
            with self.runtime_events_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(item, ensure_ascii=False) + "\n")
        except Exception:
            self.logger.exception("Failed to store runtime event")

    def get_runtime_events(self, limit: int = 200) -> Dict[str, Any]:
        if not self.runtime_events_path.exists():
            return {"ok": True, "count": 0, "items": []}
        try:
            lines = self.runtime_events_path.read_text(encoding="utf-8").splitlines()
        except Exception:
            self.logger.exception("Failed to read runtime events")
            return {"ok": False, "count": 0, "items": []}

        items: List[Dict[str, Any]] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                items.append(json.loads(line))
            except Exception:
                continue
        items = items[-max(1, min(limit, 1000)) :]
        return {"ok": True, "count": len(items), "items": items}

    def _ensure_playwright_browsers(self, run_id: str) -> bool:
        command = [sys.executable, "-m", "playwright", "install", "chromium"]
        self.logger.warning("Chromium not found; attempting automatic install for run_id=%s", run_id)
        try:
            subprocess.run(command, check=True, timeout=900, text=True, capture_output=True)
            self.logger.info("Automatic Chromium install completed for run_id=%s", run_id)
            return True
        except Exception:
            self.logger.exception("Could not install Chromium at runtime for run_id=%s", run_id)
            return False

    @staticmethod
    def _is_playwright_executable_error(error: Exception) -> bool:
        return "Executable doesn't exist" in str(error)

    def _launch_browser(self, playwright, run_id: str):
        args = ["--disable-blink-features=AutomationControlled"]
        try:
            return playwright.chromium.launch(headless=self.headless, args=args)
        except Exception as err:
            if not self._is_playwright_executable_error(err):
                raise
            if not self._ensure_playwright_browsers(run_id=run_id):
                raise
            return playwright.chromium.launch(headless=self.headless, args=args)

    @contextmanager
    def _browser_session(self, run_id: str) -> Iterator[PlaywrightPageDriver]:
        with sync_playwright() as p:
            browser = self._launch_browser(p, run_id=run_id)
            context = None
            try:
                context = browser.new_context(
                    viewport={"width": 1280, "height": 720},
                    user_agent="Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
                )
                page = context.new_page()
                page.set_default_timeout(self.timeout_ms)
                yield PlaywrightPageDriver(
                    page,
                    screenshot_dir=self._artifact_dir(run_id),
                    logger=self.logger,
                    default_timeout_ms=self.timeout_ms,
                )
            finally:
                if context is not None:
                    context.close()
                browser.close()
                self.logger.info("Playwright resources closed run_id=%s", run_id)

    def _login(self, driver) -> None:
        if not self.base_url:
            raise SetupError("Missing base_url in configuration")
        self.logger.info("Navigating to login page: %s", self._sanitize_url_for_log(self.base_url))
        try:
            driver.navigate(self.base_url)
            driver.fill(selectors.LOGIN["username_input"], self.username)
            driver.fill(selectors.LOGIN["clinic_input"], self.clinic)
            driver.fill(selectors.LOGIN["password_input"], self.password)
            driver.click(selectors.LOGIN["submit_button"])
        except Exception as err:
            raise SetupError(f"Login failed: {err}") from err

        driver.pause(2000)
        try:
            if driver.has_text(_DIGITAL_RELEASE_RE):
                self.logger.info("Found 'Liberação Digital' screen, clicking cancel")
                driver.click(selectors.LOGIN["cancel_button"])
        except Exception:
            self.logger.exception("Error dismissing 'Liberação Digital' screen")
        self.logger.info("Login completed successfully")

    def _post_webhook(self, url: str, payload: Dict[str, Any]) -> None:
        if not url:
            self.logger.info("Webhook skipped: URL not configured")
            return
        sanitized_url = self._sanitize_url_for_log(url)
        self._debug("Sending webhook", url=sanitized_url)
        try:
            httpx.post(url, json=payload, timeout=15)
            self._debug("Webhook sent", url=sanitized_url)
        except Exception:
            self.logger.exception("Webhook send failed")

    def send_final(self, run_id: str, result: Dict[str, Any]) -> None:
        payload = {
            "ok": result.get("ok", False),
            "job": JOB_NAME,
            "run_id": run_id,
            "message": f"[{JOB_NAME}] {'OK' if result.get('ok') else 'ERROR'}",
            "meta": result,
        }
        log_fn = self.logger.info if result.get("ok") else self.logger.error
        log_fn("Final result %s/%s: %s counts=%s", JOB_NAME, run_id, payload["message"], result.get("counts"))
        self._post_webhook(self.webhook_final_url, payload)

    def _load_records(self, patients_path: Optional[Path]) -> List[Record]:
        repository = JsonRecordRepository(
            patients_path or self.patients_path,
            logger=self.logger,
            default_professional=self.default_professional,
        )
        return repository.all()

    def _work_pairs(self, records: List[Record]) -> List[Tuple[Record, Any]]:
        """Every (record, slot) to process, in order, each work unit once."""
        pairs: List[Tuple[Record, Any]] = []
        seen = set()
        for record in records:
            if not record.slots:
                self.logger.warning("Patient %s has no slots configured", record.name)
            for slot in record.slots:
                unit = WorkUnit.from_record(record, slot)
                if unit in seen:
                    self.logger.warning("Duplicate work unit ignored: %s", unit.label)
                    continue
                seen.add(unit)
                pairs.append((record, slot))
        return pairs

    def run(self, run_id: str = "", run_date: str = "", patients_path: Optional[Path] = None) -> Dict[str, Any]:
        run_id = run_id or self.now_id()
        if not self._run_lock.acquire(blocking=False):
            return {"ok": False, "run_id": run_id, "reason": "busy"}
        try:
            return self._run_locked(run_id, run_date, patients_path)
        finally:
            self._run_lock.release()

    def _run_locked(self, run_id: str, run_date: str, patients_path: Optional[Path]) -> Dict[str, Any]:
        tracker = ProgressTracker(self.summary_path, self.runtime_state_path, logger=self.logger)
        with self._state_lock:
            self._tracker = tracker
            self._run_id = run_id
        self.logger.info("Live summary available at: %s", self.summary_path)
        self._append_runtime_event("run_started", run_id=run_id)

        try:
            today = parse_run_date(run_date or self.run_date)
            records = self._load_records(patients_path)
            pairs = self._work_pairs(records)
            tracker.seed(WorkUnit.from_record(record, slot) for record, slot in pairs)
            self.logger.info(
                "Starting to process %s patients with %s total procedures (run date %s)",
                len(records),
                len(pairs),
                today.isoformat(),
            )

            with self._session_factory(run_id) as driver:
                self._login(driver)
                engine = WorkflowEngine(
                    driver,
                    tracker,
                    self.logger,
                    screenshot_on_error=self.screenshot_on_error,
                    default_professional=self.default_professional,
                    catch_up_weekday=self.catch_up_weekday,
                )
                retry_policy = RetryPolicy(
                    attempts=self.retry_attempts,
                    delay_seconds=self.retry_delay_seconds,
                    logger=self.logger,
                    sleep=self._sleep,
                )
                for record, slot in pairs:
                    self._process_unit(engine, retry_policy, tracker, run_id, record, slot, today)
        except Exception as err:
            self.logger.exception("Fatal error in procedure run run_id=%s", run_id)
            snapshot = tracker.snapshot()
            result = {
                "ok": False,
                "run_id": run_id,
                "error": str(err),
                "counts": snapshot["counts"],
                "summary_path": str(self.summary_path),
            }
            self._append_runtime_event("run_failed", run_id=run_id, error=str(err))
            self.send_final(run_id, result)
            return result

        snapshot = tracker.snapshot()
        result = {
            "ok": True,
            "run_id": run_id,
            "counts": snapshot["counts"],
            "summary_path": str(self.summary_path),
        }
        self._append_runtime_event("run_finished", run_id=run_id, counts=snapshot["counts"])
        self.send_final(run_id, result)
        return result

    def _process_unit(
        self,
        engine: WorkflowEngine,
        retry_policy: RetryPolicy,
        tracker: ProgressTracker,
        run_id: str,
        record: Record,
        slot: Any,
        today: date,
    ) -> UnitOutcome:
        unit = WorkUnit.from_record(record, slot)
        resolution = check_slot(slot, today, self.catch_up_weekday)
        if not resolution.valid:
            self.logger.info("Skipping %s (%s): %s", unit.label, resolution.reason, resolution.message)
            tracker.start_unit(unit)
            tracker.skip_unit(unit, resolution.message, resolution.reason)
            outcome = UnitOutcome(status="skipped", reason=resolution.message, reason_code=resolution.reason)
            self._append_runtime_event(
                "unit_retired",
                run_id=run_id,
                unit=unit.label,
                status=outcome.status,
                reason=outcome.reason,
                reason_code=outcome.reason_code,
            )
            return outcome

        try:
            outcome = retry_policy.run(lambda: engine.process(record, slot, today), label=unit.label)
        except Exception as err:
            self.logger.error(
                "Failed to process %s after %s attempts: %s",
                unit.label,
                retry_policy.attempts,
                err,
            )
            tracker.complete_unit(False, {"error": str(err)})
            outcome = UnitOutcome(status="failed", reason=str(err))

        self._append_runtime_event(
            "unit_retired",
            run_id=run_id,
            unit=unit.label,
            status=outcome.status,
            reason=outcome.reason,
            reason_code=outcome.reason_code,
            registration_number=outcome.registration_number,
        )
        self._sleep(self.unit_pause_seconds)
        return outcome

    def get_status(self) -> Dict[str, Any]:
        with self._state_lock:
            tracker = self._tracker
            run_id = self._run_id
        if tracker is not None:
            return {"running": self.has_active_run(), "run_id": run_id, **tracker.snapshot()}
        if self.runtime_state_path.exists():
            try:
                data = json.loads(self.runtime_state_path.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    return {"running": False, "run_id": "", **data}
            except Exception:
                self.logger.exception("Failed to read persisted progress snapshot")
        return {"running": False, "run_id": "", "counts": {}, "current": None}

    def get_summary_markdown(self) -> str:
        if not self.summary_path.exists():
            return "# Automation Live Summary\n\n_No run yet_\n"
        return self.summary_path.read_text(encoding="utf-8")
