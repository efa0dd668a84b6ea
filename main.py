import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI

from agents.procedure_agent.service import ProcedureAgentService
from routers.procedure_agent import create_procedure_router


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("procedure_runner")


# Add-on style deployments mount /data for persistence; DATA_DIR overrides it.
DATA_DIR = Path(os.getenv("DATA_DIR", "/data")).resolve()


def _load_addon_options() -> Dict[str, Any]:
    """Load persisted options from <DATA_DIR>/options.json."""
    options_path = DATA_DIR / "options.json"
    if not options_path.exists():
        logger.info("options.json not found; using environment variables or defaults")
        return {}
    try:
        options = json.loads(options_path.read_text(encoding="utf-8"))
        logger.info("Options loaded from %s", options_path)
        return options if isinstance(options, dict) else {}
    except Exception:
        logger.exception("Could not parse %s; using defaults", options_path)
        return {}


ADDON_OPTIONS = _load_addon_options()


def _setting(name: str, default: str = "") -> str:
    """Read a setting from ENV first, then options.json."""
    env_name = name.upper()
    if env_name in os.environ:
        return os.getenv(env_name, default)
    return str(ADDON_OPTIONS.get(name.lower(), default))


def _setting_bool(name: str, default: bool) -> bool:
    raw = _setting(name, "true" if default else "false").strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _setting_number(name: str, default: float) -> float:
    raw = _setting(name, str(default)).strip()
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid numeric setting %s=%r; using %s", name, raw, default)
        return default


# === Security ===
JOB_SECRET = _setting("job_secret", "")

# === Home Assistant webhook ===
HASS_WEBHOOK_URL_FINAL = _setting("hass_webhook_url_final", "")

# === Remote application ===
BASE_URL = _setting("base_url", "")
CLINIC = _setting("clinic", "")
USERNAME = _setting("username", "")
PASSWORD = _setting("password", "")
PATIENT_DATA_FILE = _setting("patient_data_file", str(DATA_DIR / "patients_data.json"))
DEFAULT_PROFESSIONAL = _setting("default_professional", "")
RUN_DATE = _setting("run_date", "")
TIMEZONE = _setting("timezone", "America/Sao_Paulo")

# === Browser / retry ===
HEADLESS = _setting_bool("headless", True)
TIMEOUT_MS = int(_setting_number("timeout_ms", 30_000))
RETRY_ATTEMPTS = int(_setting_number("retry_attempts", 3))
RETRY_DELAY_SECONDS = _setting_number("retry_delay_seconds", 5.0)
UNIT_PAUSE_SECONDS = _setting_number("unit_pause_seconds", 2.0)
SCREENSHOT_ON_ERROR = _setting_bool("screenshot_on_error", True)
CATCH_UP_WEEKDAY = int(_setting_number("catch_up_weekday", 6))


def _apply_timezone() -> None:
    """Set the process timezone so run dates follow the clinic's calendar."""
    os.environ["TZ"] = TIMEZONE
    if hasattr(time, "tzset"):
        time.tzset()
    logger.info("Timezone applied: %s", TIMEZONE)


_apply_timezone()


def missing_config() -> List[str]:
    required = {
        "base_url": BASE_URL,
        "clinic": CLINIC,
        "username": USERNAME,
        "password": PASSWORD,
    }
    return [name for name, value in required.items() if not value]


def build_service(patients_path: Optional[str] = None) -> ProcedureAgentService:
    return ProcedureAgentService(
        data_dir=DATA_DIR,
        base_url=BASE_URL,
        clinic=CLINIC,
        username=USERNAME,
        password=PASSWORD,
        patients_path=Path(patients_path or PATIENT_DATA_FILE),
        webhook_final_url=HASS_WEBHOOK_URL_FINAL,
        logger=logging.getLogger("procedure_runner.procedure_agent"),
        headless=HEADLESS,
        timeout_ms=TIMEOUT_MS,
        retry_attempts=RETRY_ATTEMPTS,
        retry_delay_seconds=RETRY_DELAY_SECONDS,
        unit_pause_seconds=UNIT_PAUSE_SECONDS,
        screenshot_on_error=SCREENSHOT_ON_ERROR,
        default_professional=DEFAULT_PROFESSIONAL,
        run_date=RUN_DATE,
        catch_up_weekday=CATCH_UP_WEEKDAY,
    )


SERVICE = build_service()

APP = FastAPI(title="Procedure Runner")
APP.include_router(create_procedure_router(SERVICE, JOB_SECRET, missing_config))


@APP.get("/health")
def health():
    """Service health and effective configuration (no secrets)."""
    return {
        "ok": True,
        "data_dir": str(DATA_DIR),
        "has_job_secret": bool(JOB_SECRET),
        "has_webhook_final": bool(HASS_WEBHOOK_URL_FINAL),
        "missing_config": missing_config(),
        "patient_data_file": PATIENT_DATA_FILE,
        "timezone": TIMEZONE,
        "running": SERVICE.has_active_run(),
    }


def run_cli(argv: Optional[List[str]] = None) -> int:
    """Run one batch from the command line; non-zero only when setup fails."""
    parser = argparse.ArgumentParser(description="Run the procedure batch once")
    parser.add_argument("--run-date", default="", help="Emulated run date (YYYY-MM-DD)")
    parser.add_argument("--patients", default="", help="Patient JSON file")
    parser.add_argument("--run-id", default="", help="Run identifier")
    args = parser.parse_args(argv)

    missing = missing_config()
    if missing:
        logger.error("Missing configuration: %s", ", ".join(missing))
        return 2

    service = build_service(args.patients) if args.patients else SERVICE
    result = service.run(run_id=args.run_id, run_date=args.run_date)
    counts = result.get("counts") or {}
    logger.info(
        "Run %s finished: completed=%s failed=%s skipped=%s remaining=%s",
        result.get("run_id"),
        counts.get("completed", 0),
        counts.get("failed", 0),
        counts.get("skipped", 0),
        counts.get("remaining", 0),
    )
    return 0 if result.get("ok") else 1


if __name__ == "__main__":
    sys.exit(run_cli())
