from dataclasses import dataclass
from datetime import date
from typing import Any, Optional

from agents.procedure_agent import selectors
from agents.procedure_agent.dates import SUNDAY, check_slot
from agents.procedure_agent.page_driver import (
    ContactModalQuery,
    ExecutionRowQuery,
    ExecutionRowResult,
    ProfessionalQuery,
    ValidationQuestionsQuery,
)
from agents.procedure_agent.progress import TOTAL_STEPS, ProgressTracker, WorkUnit
from agents.procedure_agent.records import Record
from agents.procedure_agent.responses import (
    CONFIRMATION_PHRASES,
    AuthorizationQuantities,
    RemoteResponse,
    classify_response,
    extract_registration_number,
)
from agents.procedure_agent.validation import answer_questions


REG = selectors.REGISTRATION
VAL = selectors.VALIDATION
AUTH = selectors.AUTHORIZATION
PROC = selectors.PROCEDURE

ROW_NOT_FOUND = "row not found"


class WorkflowError(RuntimeError):
    """Remote application presented a state the workflow cannot continue from."""


class ProfessionalNotFound(WorkflowError):
    pass


class UnexpectedConfirmation(WorkflowError):
    pass


@dataclass(frozen=True)
class UnitOutcome:
    status: str
    reason: str = ""
    reason_code: str = ""
    registration_number: Optional[str] = None
    realization_date: Optional[str] = None
    quantities: Optional[AuthorizationQuantities] = None

    @property
    def ok(self) -> bool:
        return self.status == "completed"


class WorkflowEngine:
    """Runs the 13-step check-in and procedure sequence for one work unit."""

    # The justification control only renders for regular patients; its absence
    # after the full wait is what identifies a cross-coverage patient, so the
    # wait must not be shortened.
    JUSTIFICATION_WAIT_MS = 5_000
    JUSTIFICATION_CODE = "100"
    BIOMETRIC_JUSTIFICATION_CODE = "200"
    CONFIRMATION_TIMEOUT_MS = 10_000
    PROFESSIONAL_TABLE_TIMEOUT_MS = 10_000
    SERVICES_TABLE_TIMEOUT_MS = 5_000
    ROW_LOOKUP_RETRIES = 1

    def __init__(
        self,
        driver,
        tracker: ProgressTracker,
        logger,
        *,
        screenshot_on_error: bool = True,
        default_professional: str = "",
        catch_up_weekday: int = SUNDAY,
        row_lookup_retries: int = ROW_LOOKUP_RETRIES,
    ) -> None:
        self.driver = driver
        self.tracker = tracker
        self.logger = logger
        self.screenshot_on_error = screenshot_on_error
        self.default_professional = default_professional
        self.catch_up_weekday = catch_up_weekday
        self.row_lookup_retries = max(0, int(row_lookup_retries))
        self._step_index = 0
        self._step_label = ""

    def _begin(self, index: int, label: str) -> None:
        self._step_index = index
        self._step_label = label
        self.logger.info("Step %s/%s: %s", index, TOTAL_STEPS, label)

    def _done(self, label: str, ok: bool = True) -> None:
        self.tracker.record_step(self._step_index, label, ok)

    def process(self, record: Record, slot: Any, today: date) -> UnitOutcome:
        unit = WorkUnit.from_record(record, slot)
        self.logger.info("Processing patient: %s - %s", record.name, slot)
        self.tracker.start_unit(unit)
        self._step_index = 0
        self._step_label = "Starting"
        try:
            return self._run(record, unit, slot, today)
        except Exception as err:
            self.logger.error(
                "Error processing patient %s at step %s (%s): %s",
                record.name,
                self._step_index,
                self._step_label,
                err,
            )
            self.tracker.record_step(self._step_index, self._step_label, ok=False)
            self.tracker.record_error(str(err))
            if self.screenshot_on_error:
                self.driver.screenshot(f"error_{record.card or record.name}")
            raise

    def _run(self, record: Record, unit: WorkUnit, slot: Any, today: date) -> UnitOutcome:
        self._checkin()
        self._card_and_justification(record)
        self._confirmation_dialog()

        if record.skip:
            self.logger.info("Patient %s has skip flag - jumping to step 7", record.name)
            self._step_index = 6
            self._done("Skipped biometric/validation - Patient already registered")
        else:
            self._register_without_biometrics()
            self._biometric_justification()
            self._begin(6, "Answering validation questions")
            self.answer_validation_questions(record)
            self._done("Validation questions answered")

        self._load_authorization_data()

        self._begin(8, "Locating execution row")
        row = self.locate_execution_row()
        if not row.found:
            self.logger.warning("Could not find execution row for patient %s", record.name)
            self._done("Execution row not found", ok=False)
            self.tracker.complete_unit(False, {"error": ROW_NOT_FOUND})
            return UnitOutcome(status="failed", reason=ROW_NOT_FOUND)
        self._done("Execution row found and opened")
        if row.quantities.known:
            self.tracker.attach_quantities(row.quantities)

        self._begin(9, "Filling procedure date")
        resolution = check_slot(slot, today, self.catch_up_weekday)
        if not resolution.valid:
            self.logger.warning("Skipping procedure (%s): %s", resolution.reason, resolution.message)
            self.tracker.skip_unit(unit, resolution.message, resolution.reason)
            return UnitOutcome(
                status="skipped",
                reason=resolution.message,
                reason_code=resolution.reason,
                quantities=row.quantities,
            )
        self._require(PROC["date_input"], "procedure date input")
        self.driver.pause(500)
        self.driver.fill(PROC["date_input"], resolution.date_text)
        self._done(f"Procedure date filled ({resolution.date_text})")

        self._begin(10, "Selecting professional")
        self.select_professional(record.professional or self.default_professional)
        self._done("Professional selected")

        self._begin(11, "Clicking execute")
        self._require(PROC["execute_button"], "execute button")
        self.driver.pause(500)
        self.driver.click(PROC["execute_button"])
        self._done("Execute button clicked")

        registration_number = self._success_confirmation()
        realization_date = self._capture_realization_date()

        self.tracker.complete_unit(
            True,
            {"registration_number": registration_number, "realization_date": realization_date},
        )
        self.logger.info("Successfully processed patient: %s - %s", record.name, slot)
        return UnitOutcome(
            status="completed",
            registration_number=registration_number,
            realization_date=realization_date,
            quantities=row.quantities,
        )

    def _require(self, selector: str, what: str, timeout_ms: Optional[int] = None) -> None:
        if not self.driver.wait_for(selector, timeout_ms=timeout_ms):
            raise WorkflowError(f"Timed out waiting for {what}")

    def _checkin(self) -> None:
        self._begin(1, "Opening check-in and registering without card")
        self.driver.click(REG["checkin_menu"], settle=False)
        self._require(REG["no_card_button"], "register without card button")
        self.driver.click(REG["no_card_button"], wait_for=REG["no_card_dialog"])
        self._done("Checkin accessed and Register Without Card clicked")

    def _card_and_justification(self, record: Record) -> None:
        self._begin(2, "Filling card number and justification")
        self.driver.fill(REG["card_number_input"], record.card)
        self.driver.blur(REG["card_number_input"])
        self.driver.pause(1000)
        if self.driver.wait_for(REG["justification_select"], timeout_ms=self.JUSTIFICATION_WAIT_MS):
            self.driver.select_option(REG["justification_select"], self.JUSTIFICATION_CODE)
            self.driver.click(REG["send_button"])
            self._done("Card number and justification filled")
            return
        self.logger.info("Justification select absent after full wait (cross-coverage patient)")
        self.driver.click(REG["ok_button"])
        self._done("Card number filled (cross-coverage - no justification needed)")

    def _confirmation_dialog(self) -> None:
        self._begin(3, "Handling confirmation dialog")
        matched = self.driver.wait_for_any_text(CONFIRMATION_PHRASES, timeout_ms=self.CONFIRMATION_TIMEOUT_MS)
        category = classify_response(matched)
        if category is RemoteResponse.CROSS_COVERAGE_RELEASE:
            self.logger.info("Cross-coverage patient confirmation detected")
            label = "Confirmation dialog handled (cross-coverage)"
        elif category is RemoteResponse.REGULAR_RELEASE:
            self.logger.info("Regular patient confirmation detected")
            label = "Confirmation dialog handled"
        else:
            raise UnexpectedConfirmation(f"Unexpected confirmation dialog: {matched!r}")
        self.driver.click(REG["confirm_button"], settle=False)
        self._done(label)

    def _register_without_biometrics(self) -> None:
        self._begin(4, "Registering without biometrics")
        self.driver.click(REG["no_biometric_button"], wait_for=REG["no_biometric_dialog"])
        self._done("Register Without Biometrics clicked")

    def _biometric_justification(self) -> None:
        self._begin(5, "Filling biometric justification")
        self.driver.select_option(REG["bio_justification_select"], self.BIOMETRIC_JUSTIFICATION_CODE)
        self.driver.click(REG["bio_send_button"])
        self._done("Biometric justification filled")

    def answer_validation_questions(self, record: Record) -> None:
        self._require(VAL["first_answer"], "validation questions")
        questions = self.driver.evaluate(ValidationQuestionsQuery())
        self.logger.info("Found validation questions: %s", ", ".join(questions))
        answers = answer_questions(questions, record, self.logger)
        inputs = (VAL["first_answer"], VAL["second_answer"], VAL["third_answer"])
        for selector, item in zip(inputs, answers):
            if item.answer:
                self.driver.fill(selector, item.answer)
        self.driver.click(VAL["submit_button"])

    def _load_authorization_data(self) -> None:
        self._begin(7, "Loading authorization data")
        if self.driver.evaluate(ContactModalQuery()):
            self.logger.info("Contact update modal is visible, clicking Cancel")
            self.driver.click(AUTH["contact_modal_cancel"], settle=False)
            self.driver.pause(1000)
        self.driver.click(AUTH["refresh_icon"])
        self._done("Authorization data loaded")

    def locate_execution_row(self) -> ExecutionRowResult:
        """Open the "Em Execução" row, refreshing the grid a bounded number of times."""
        for attempt in range(self.row_lookup_retries + 1):
            if attempt > 0:
                self.logger.info("Execution row not found, refreshing authorization data")
                self.driver.click(AUTH["refresh_icon"])
                self.driver.pause(2000)
            self.driver.wait_for(AUTH["guides_table"])
            self.driver.pause(1000)
            result = self.driver.evaluate(ExecutionRowQuery())
            if result.found:
                q = result.quantities
                if q.known:
                    self.logger.info(
                        "Authorization quantities - Requested: %s, Authorized: %s, Completed: %s",
                        q.requested,
                        q.authorized,
                        q.completed if q.completed is not None else 0,
                    )
                return result
        self.logger.warning("Could not find execution row after %s refresh(es)", self.row_lookup_retries)
        return ExecutionRowResult(found=False)

    def select_professional(self, name: str) -> None:
        if not name:
            raise ProfessionalNotFound("No professional configured for patient")
        self.driver.click(PROC["executant_search"], settle=False)
        self._require(PROC["professional_table"], "professional list", self.PROFESSIONAL_TABLE_TIMEOUT_MS)
        self.driver.pause(1000)
        if not self.driver.evaluate(ProfessionalQuery(name=name)):
            self.logger.error("Could not find professional: %s", name)
            raise ProfessionalNotFound(f'Professional "{name}" not found in the list')
        self.driver.pause(1000)

    def _success_confirmation(self) -> Optional[str]:
        self._begin(12, "Handling success confirmation")
        self._require(PROC["result_dialog"], "result dialog")
        self.driver.pause(1000)
        message = self.driver.read_text(PROC["result_message"])
        self.logger.info("Result message: %s", message)
        if classify_response(message) is not RemoteResponse.PROCEDURE_SUCCESS:
            raise UnexpectedConfirmation(f"Unexpected message in confirmation dialog: {message}")
        registration_number = extract_registration_number(message)
        if registration_number:
            self.logger.info("Registration number: %s", registration_number)
        self.driver.click(PROC["result_ok_button"])
        self._done("Success confirmation handled")
        return registration_number

    def _capture_realization_date(self) -> Optional[str]:
        self._begin(13, "Capturing realization date")
        try:
            if not self.driver.wait_for(PROC["services_table"], timeout_ms=self.SERVICES_TABLE_TIMEOUT_MS):
                self.logger.warning("Services table did not appear; realization date not captured")
                return None
            self.driver.pause(500)
            realization_date = self.driver.read_text(PROC["realization_date_cell"]) or None
        except Exception as err:
            self.logger.warning("Could not capture realization date: %s", err)
            return None
        if not realization_date:
            self.logger.warning("Could not extract realization date from services table")
            return None
        self.logger.info("Realization date: %s", realization_date)
        self._done(f"Realization date captured: {realization_date}")
        return realization_date
