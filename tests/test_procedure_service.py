import json
import logging
import tempfile
import unittest
from pathlib import Path

try:
    from agents.procedure_agent import selectors
    from agents.procedure_agent import service as service_module
    from agents.procedure_agent.service import JOB_NAME, ProcedureAgentService
    from tests.procedure_fakes import FOUND_ROW, MISSING_ROW, FakeDriver, FakeSession

    DEPS_AVAILABLE = True
except ModuleNotFoundError:  # pragma: no cover - depends on local environment
    DEPS_AVAILABLE = False


PATIENTS = [
    {
        "nome": "Ana Silva",
        "carteirinha": "0001",
        "nascimento": "05/03/1990",
        "cpf": "12345678901",
        "nomeDaMae": "Maria Souza Lima",
        "nomeDoTitular": "João Pedro Alves",
        "skip": True,
        "weekdays": ["monday"],
    },
    {
        "nome": "Bruno Costa",
        "carteirinha": "0002",
        "skip": True,
        "weekdays": ["segunda"],
    },
]


@unittest.skipUnless(DEPS_AVAILABLE, "playwright/httpx are not installed in this environment")
class ProcedureAgentServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.data_dir = Path(self._tmp.name)
        self.patients_path = self.data_dir / "patients_data.json"
        self.sleeps = []

    def _write_patients(self, patients) -> None:
        self.patients_path.write_text(json.dumps(patients, ensure_ascii=False), encoding="utf-8")

    def _service(self, session: "FakeSession", **kwargs) -> "ProcedureAgentService":
        options = dict(
            retry_attempts=3,
            retry_delay_seconds=0,
            unit_pause_seconds=1.5,
            default_professional="Dr. Carol Silva",
        )
        options.update(kwargs)
        return ProcedureAgentService(
            data_dir=self.data_dir,
            base_url="https://portal.example.test/login",
            clinic="CLINICA",
            username="operator",
            password="secret",
            patients_path=self.patients_path,
            webhook_final_url="",
            logger=logging.getLogger("tests.procedure.service"),
            session_factory=session,
            sleep=self.sleeps.append,
            **options,
        )

    def _events(self, service: "ProcedureAgentService"):
        return [item["event"] for item in service.get_runtime_events()["items"]]

    def test_row_not_found_does_not_affect_other_units(self) -> None:
        self._write_patients(PATIENTS)
        driver = FakeDriver(rows=[MISSING_ROW, MISSING_ROW, FOUND_ROW])
        session = FakeSession(driver)
        service = self._service(session)

        result = service.run(run_id="run-a", run_date="2026-10-19")

        self.assertTrue(result["ok"])
        self.assertEqual(result["counts"], {"completed": 1, "failed": 1, "skipped": 0, "remaining": 0})
        self.assertEqual(session.events, ["open", "closed"])
        status = service.get_status()
        self.assertEqual(status["failed"][0]["patient"], "ANA SILVA")
        self.assertEqual(status["failed"][0]["error"], "row not found")
        self.assertEqual(status["completed"][0]["patient"], "BRUNO COSTA")
        # A row miss is a terminal outcome, not a retried failure.
        self.assertEqual(driver.clicked(selectors.REGISTRATION["checkin_menu"]), 2)
        self.assertEqual(self.sleeps, [1.5, 1.5])
        self.assertEqual(self._events(service), ["run_started", "unit_retired", "unit_retired", "run_finished"])

    def test_sunday_run_skips_days_from_previous_month_without_touching_page(self) -> None:
        self._write_patients(PATIENTS[:1])
        driver = FakeDriver()
        service = self._service(FakeSession(driver))

        result = service.run(run_id="run-b", run_date="2026-11-01")

        self.assertTrue(result["ok"])
        self.assertEqual(result["counts"]["skipped"], 1)
        self.assertEqual(driver.clicked(selectors.REGISTRATION["checkin_menu"]), 0)
        self.assertNotIn(selectors.REGISTRATION["card_number_input"], driver.filled)
        skipped = service.get_status()["skipped"][0]
        self.assertIn("current month", skipped["reason"])
        self.assertEqual(skipped["reason_code"], "past_month")
        retired = [item for item in service.get_runtime_events()["items"] if item["event"] == "unit_retired"]
        self.assertEqual(retired[0]["reason_code"], "past_month")
        self.assertEqual(self.sleeps, [])

    def test_invalid_weekday_is_skipped(self) -> None:
        self._write_patients([{"nome": "Ana Silva", "carteirinha": "0001", "weekdays": ["funday", "monday"]}])
        driver = FakeDriver()
        service = self._service(FakeSession(driver))

        result = service.run(run_date="2026-10-19")

        self.assertEqual(result["counts"], {"completed": 1, "failed": 0, "skipped": 1, "remaining": 0})
        skipped = service.get_status()["skipped"][0]
        self.assertIn("funday", skipped["reason"])
        self.assertEqual(skipped["reason_code"], "invalid_weekday")

    def test_duplicate_slots_run_once(self) -> None:
        self._write_patients([{"nome": "Ana Silva", "carteirinha": "0001", "skip": True, "weekdays": ["monday", "monday"]}])
        driver = FakeDriver()
        service = self._service(FakeSession(driver))

        with self.assertLogs("tests.procedure.service", level="WARNING") as logs:
            result = service.run(run_date="2026-10-19")

        self.assertEqual(result["counts"], {"completed": 1, "failed": 0, "skipped": 0, "remaining": 0})
        self.assertEqual(service.get_status()["total"], 1)
        self.assertEqual(driver.clicked(selectors.PROCEDURE["execute_button"]), 1)
        self.assertEqual(driver.clicked(selectors.REGISTRATION["checkin_menu"]), 1)
        self.assertTrue(any("Duplicate work unit ignored: ANA SILVA - monday" in line for line in logs.output))
        self.assertEqual(self.sleeps, [1.5])

    def test_exhausted_retries_fail_unit_once(self) -> None:
        self._write_patients(PATIENTS[:1])
        driver = FakeDriver(professionals=[])
        service = self._service(FakeSession(driver), retry_delay_seconds=4)

        result = service.run(run_date="2026-10-19")

        self.assertTrue(result["ok"])
        self.assertEqual(result["counts"], {"completed": 0, "failed": 1, "skipped": 0, "remaining": 0})
        failed = service.get_status()["failed"][0]
        self.assertEqual(failed["attempts"], 3)
        self.assertIn("Dr. Carol Silva", failed["error"])
        self.assertEqual(driver.clicked(selectors.REGISTRATION["checkin_menu"]), 3)
        self.assertEqual(self.sleeps, [4.0, 4.0, 1.5])

    def test_transient_failure_recovers_on_retry(self) -> None:
        self._write_patients(PATIENTS[:1])
        driver = FakeDriver(missing=[selectors.PROCEDURE["execute_button"]])
        original_wait_for = driver.wait_for
        state = {"calls": 0}

        def flaky_wait_for(selector, timeout_ms=None):
            if selector == selectors.PROCEDURE["execute_button"]:
                state["calls"] += 1
                return state["calls"] > 1
            return original_wait_for(selector, timeout_ms=timeout_ms)

        driver.wait_for = flaky_wait_for
        service = self._service(FakeSession(driver))

        result = service.run(run_date="2026-10-19")

        self.assertEqual(result["counts"]["completed"], 1)
        self.assertEqual(service.get_status()["completed"][0]["attempts"], 2)

    def test_login_failure_is_a_setup_error(self) -> None:
        self._write_patients(PATIENTS)
        session = FakeSession(FakeDriver(navigate_error=RuntimeError("net::ERR_NAME_NOT_RESOLVED")))
        service = self._service(session)

        result = service.run(run_id="run-c", run_date="2026-10-19")

        self.assertFalse(result["ok"])
        self.assertIn("Login failed", result["error"])
        self.assertEqual(result["counts"]["remaining"], 2)
        self.assertEqual(session.events, ["open", "closed"])
        self.assertEqual(self._events(service), ["run_started", "run_failed"])

    def test_missing_patient_file_is_a_setup_error(self) -> None:
        session = FakeSession(FakeDriver())
        result = self._service(session).run(run_date="2026-10-19")
        self.assertFalse(result["ok"])
        self.assertIn("not found", result["error"])
        self.assertEqual(session.events, [])

    def test_busy_when_run_is_active(self) -> None:
        service = self._service(FakeSession(FakeDriver()))
        service._run_lock.acquire()
        try:
            self.assertTrue(service.has_active_run())
            result = service.run(run_id="run-d")
        finally:
            service._run_lock.release()
        self.assertEqual(result, {"ok": False, "run_id": "run-d", "reason": "busy"})

    def test_status_and_summary_survive_restart(self) -> None:
        self._write_patients(PATIENTS[:1])
        self._service(FakeSession(FakeDriver())).run(run_date="2026-10-19")

        fresh = self._service(FakeSession(FakeDriver()))
        status = fresh.get_status()
        self.assertFalse(status["running"])
        self.assertEqual(status["counts"]["completed"], 1)
        self.assertIn("## Completed Patients", fresh.get_summary_markdown())

    def test_digital_release_text_matches_loose_spacing(self) -> None:
        self.assertIsNotNone(service_module._DIGITAL_RELEASE_RE.search("Tela de LIBERAÇÃO  digital"))
        self.assertIsNone(service_module._DIGITAL_RELEASE_RE.search("Liberação presencial"))

    def test_idle_status_before_any_run(self) -> None:
        service = self._service(FakeSession(FakeDriver()))
        self.assertEqual(service.get_status()["current"], None)
        self.assertIn("_No run yet_", service.get_summary_markdown())
        self.assertEqual(list(service.list_jobs()), [JOB_NAME])


if __name__ == "__main__":
    unittest.main()
