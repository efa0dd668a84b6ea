import unittest
from datetime import date

from agents.procedure_agent.dates import (
    FUTURE_DATE,
    FUTURE_MONTH,
    INVALID_DAY_FOR_MONTH,
    INVALID_DAY_NUMBER,
    INVALID_WEEKDAY,
    PAST_MONTH,
    ExecutionWindow,
    InvalidWeekday,
    check_slot,
    normalize_weekday,
    parse_run_date,
    resolve_monthly_day,
    resolve_slot,
    resolve_weekday,
    validate,
)

# 2026-10-19 is a Monday; 2026-10-25 and 2026-11-01 are Sundays.
MONDAY = date(2026, 10, 19)
WEDNESDAY = date(2026, 10, 21)
SUNDAY = date(2026, 10, 25)
SUNDAY_NEXT_MONTH = date(2026, 11, 1)


class ExecutionWindowTests(unittest.TestCase):
    def test_week_starts_on_monday(self) -> None:
        window = ExecutionWindow.for_day(WEDNESDAY)
        self.assertEqual(window.week_start, MONDAY)
        self.assertEqual(window.week_end, SUNDAY)

    def test_sunday_anchors_on_previous_monday(self) -> None:
        window = ExecutionWindow.for_day(SUNDAY)
        self.assertEqual(window.week_start, MONDAY)
        self.assertTrue(window.contains(SUNDAY))
        self.assertFalse(window.contains(date(2026, 10, 26)))


class WeekdayResolutionTests(unittest.TestCase):
    def test_resolves_inside_current_week(self) -> None:
        resolution = resolve_weekday("monday", WEDNESDAY)
        self.assertTrue(resolution.valid)
        self.assertEqual(resolution.date, MONDAY)
        self.assertEqual(resolution.date_text, "19/10/2026")
        self.assertEqual(resolution.offsets["sunday"], 6)

    def test_sunday_run_resolves_the_week_that_just_ended(self) -> None:
        self.assertEqual(resolve_weekday("monday", SUNDAY).date, MONDAY)
        self.assertEqual(resolve_weekday("saturday", SUNDAY).date, date(2026, 10, 24))
        self.assertEqual(resolve_weekday("sunday", SUNDAY).date, SUNDAY)

    def test_portuguese_spellings(self) -> None:
        self.assertEqual(normalize_weekday("Terça-feira"), "tuesday")
        self.assertEqual(normalize_weekday("terca"), "tuesday")
        self.assertEqual(normalize_weekday("SÁBADO"), "saturday")
        self.assertEqual(normalize_weekday("segunta"), "monday")
        self.assertEqual(normalize_weekday(" quinta feira "), "thursday")
        self.assertEqual(normalize_weekday("Domingo"), "sunday")

    def test_unknown_weekday_raises(self) -> None:
        with self.assertRaises(InvalidWeekday):
            resolve_weekday("funday", MONDAY)
        with self.assertRaises(InvalidWeekday):
            resolve_slot("", MONDAY)


class MonthlyDayResolutionTests(unittest.TestCase):
    def test_day_in_current_month(self) -> None:
        resolution = resolve_monthly_day(5, MONDAY)
        self.assertTrue(resolution.valid)
        self.assertEqual(resolution.date, date(2026, 10, 5))

    def test_day_missing_from_current_month(self) -> None:
        resolution = resolve_monthly_day(31, date(2026, 11, 10))
        self.assertFalse(resolution.valid)
        self.assertEqual(resolution.reason, INVALID_DAY_FOR_MONTH)
        self.assertIsNone(resolution.date)

    def test_out_of_range_day_raises(self) -> None:
        with self.assertRaises(ValueError):
            resolve_monthly_day(0, MONDAY)
        with self.assertRaises(ValueError):
            resolve_monthly_day(32, MONDAY)

    def test_digit_strings_resolve_as_monthly_days(self) -> None:
        self.assertEqual(resolve_slot("12", MONDAY).date, date(2026, 10, 12))
        self.assertEqual(resolve_slot(12, MONDAY).date, date(2026, 10, 12))


class ValidateTests(unittest.TestCase):
    def test_elapsed_day_of_current_week_is_valid(self) -> None:
        resolution = validate(resolve_weekday("tuesday", WEDNESDAY), WEDNESDAY)
        self.assertTrue(resolution.valid)

    def test_today_is_valid(self) -> None:
        self.assertTrue(validate(resolve_weekday("monday", MONDAY), MONDAY).valid)

    def test_future_day_is_rejected(self) -> None:
        resolution = validate(resolve_weekday("friday", WEDNESDAY), WEDNESDAY)
        self.assertFalse(resolution.valid)
        self.assertEqual(resolution.reason, FUTURE_DATE)
        self.assertIn("23/10/2026", resolution.message)

    def test_catch_up_day_accepts_whole_week(self) -> None:
        for name in ("monday", "wednesday", "saturday", "sunday"):
            with self.subTest(name=name):
                self.assertTrue(validate(resolve_weekday(name, SUNDAY), SUNDAY).valid)

    def test_custom_catch_up_weekday(self) -> None:
        saturday = date(2026, 10, 24)
        default = validate(resolve_weekday("sunday", saturday), saturday)
        self.assertFalse(default.valid)
        self.assertEqual(default.reason, FUTURE_DATE)
        custom = validate(resolve_weekday("sunday", saturday), saturday, catch_up_weekday=5)
        self.assertTrue(custom.valid)

    def test_sunday_run_rejects_days_from_previous_month(self) -> None:
        resolution = validate(resolve_weekday("monday", SUNDAY_NEXT_MONTH), SUNDAY_NEXT_MONTH)
        self.assertEqual(resolution.date, date(2026, 10, 26))
        self.assertFalse(resolution.valid)
        self.assertEqual(resolution.reason, PAST_MONTH)
        self.assertIn("11/2026", resolution.message)

    def test_week_crossing_into_next_month(self) -> None:
        saturday = date(2026, 10, 31)
        resolution = validate(resolve_weekday("sunday", saturday), saturday)
        self.assertFalse(resolution.valid)
        self.assertEqual(resolution.reason, FUTURE_MONTH)

    def test_invalid_resolution_passes_through(self) -> None:
        resolution = resolve_monthly_day(31, date(2026, 11, 10))
        self.assertIs(validate(resolution, date(2026, 11, 10)), resolution)


class CheckSlotTests(unittest.TestCase):
    def test_valid_slot_resolves_and_validates(self) -> None:
        resolution = check_slot("monday", WEDNESDAY)
        self.assertTrue(resolution.valid)
        self.assertEqual(resolution.date, MONDAY)

    def test_unknown_weekday_comes_back_invalid(self) -> None:
        resolution = check_slot("funday", MONDAY)
        self.assertFalse(resolution.valid)
        self.assertEqual(resolution.reason, INVALID_WEEKDAY)
        self.assertIn("funday", resolution.message)

    def test_out_of_range_day_comes_back_invalid(self) -> None:
        resolution = check_slot(32, MONDAY)
        self.assertFalse(resolution.valid)
        self.assertEqual(resolution.reason, INVALID_DAY_NUMBER)
        self.assertEqual(resolution.slot, "32")

    def test_missing_day_of_month_keeps_its_code(self) -> None:
        self.assertEqual(check_slot(31, date(2026, 11, 10)).reason, INVALID_DAY_FOR_MONTH)

    def test_validation_codes_pass_through(self) -> None:
        self.assertEqual(check_slot("friday", WEDNESDAY).reason, FUTURE_DATE)
        self.assertEqual(check_slot("monday", SUNDAY_NEXT_MONTH).reason, PAST_MONTH)


class ParseRunDateTests(unittest.TestCase):
    def test_iso_date(self) -> None:
        self.assertEqual(parse_run_date("2026-10-19"), MONDAY)

    def test_blank_means_today(self) -> None:
        self.assertEqual(parse_run_date(""), date.today())

    def test_bad_format(self) -> None:
        with self.assertRaises(RuntimeError):
            parse_run_date("19/10/2026")


if __name__ == "__main__":
    unittest.main()
