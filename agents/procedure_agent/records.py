import json
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from agents.procedure_agent.dates import InvalidWeekday, normalize_weekday


class RecordLoadError(RuntimeError):
    """Raised when the patient list cannot be loaded."""


@dataclass(frozen=True)
class Record:
    """Patient row as consumed by the workflow; never mutated during a run."""

    name: str
    card: str
    birth_date: str = ""
    cpf: str = ""
    mother_name: str = ""
    holder_name: str = ""
    age: Optional[int] = None
    skip: bool = False
    professional: str = ""
    slots: Tuple[Any, ...] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], default_professional: str = "") -> "Record":
        birth_date = str(raw.get("nascimento") or raw.get("birth_date") or "").strip().replace("-", "/")
        age = parse_age(raw.get("idade", raw.get("age")))
        if age is None:
            age = calculate_age(birth_date)
        slots = raw.get("weekdays") or raw.get("monthlyDays") or raw.get("slots") or []
        return cls(
            name=str(raw.get("nome") or raw.get("name") or "").strip().upper(),
            card=str(raw.get("carteirinha") or raw.get("card") or "").strip(),
            birth_date=birth_date,
            cpf=normalize_cpf(raw.get("cpf")),
            mother_name=str(raw.get("nomeDaMae") or raw.get("mother_name") or "").strip(),
            holder_name=str(raw.get("nomeDoTitular") or raw.get("holder_name") or "").strip(),
            age=age,
            skip=_as_bool(raw.get("skip", False)),
            professional=str(raw.get("professional") or default_professional or "").strip(),
            slots=tuple(slots),
        )


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value or "").strip().lower() in {"true", "1", "yes", "sim"}


def parse_age(value: Any) -> Optional[int]:
    """Whole years from an int or a digit string; anything else is unknown."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value or "").strip()
    return int(text) if text.isdigit() else None


def normalize_cpf(value: Any) -> str:
    return re.sub(r"\D", "", str(value or ""))


def calculate_age(birth_date: str, today: Optional[date] = None) -> Optional[int]:
    parts = re.split(r"[-/]", str(birth_date or "").strip())
    if len(parts) != 3:
        return None
    try:
        born = date(int(parts[2]), int(parts[1]), int(parts[0]))
    except ValueError:
        return None
    today = today or date.today()
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age


def parse_weekdays(text: Any) -> List[str]:
    """Parse the free-text attendance days column ("segunda e quarta")."""
    raw = str(text or "").lower()
    if not raw.strip():
        return []
    raw = re.sub(r"\s+e\s+", ",", raw)
    weekdays: List[str] = []
    for piece in raw.split(","):
        piece = " ".join(piece.split())
        if not piece:
            continue
        try:
            weekdays.append(normalize_weekday(piece))
        except InvalidWeekday:
            continue
    return weekdays


def convert_csv_rows(
    rows: Iterable[Dict[str, Any]],
    professional: str,
    today: Optional[date] = None,
) -> List[Dict[str, Any]]:
    converted: List[Dict[str, Any]] = []
    for row in rows:
        name = str(row.get("nome") or "").strip()
        if not name:
            continue
        birth = str(row.get("nascimento") or "").strip()
        converted.append(
            {
                "nome": name.upper(),
                "skip": _as_bool(row.get("skip")),
                "carteirinha": str(row.get("carteirinha") or "").strip() or None,
                "nascimento": birth or None,
                "cpf": normalize_cpf(row.get("cpf")) or None,
                "nomeDaMae": str(row.get("nome da mae") or "").strip() or None,
                "nomeDoTitular": str(row.get("nome do titular") or "").strip() or None,
                "idade": calculate_age(birth, today),
                "weekdays": parse_weekdays(row.get("Dias de atendimento")),
                "professional": professional,
            }
        )
    return converted


def dated_output_name(filename: str, today: Optional[date] = None) -> str:
    suffix = (today or date.today()).strftime("%d_%m")
    if not filename:
        return f"patients_data_{suffix}.json"
    path = Path(filename)
    if path.suffix:
        return str(path.with_name(f"{path.stem}_{suffix}{path.suffix}"))
    return f"{filename}_{suffix}"


class JsonRecordRepository:
    """Loads the ordered patient list from the JSON produced by the converter."""

    def __init__(self, path: Path, logger, default_professional: str = "") -> None:
        self.path = Path(path)
        self.logger = logger
        self.default_professional = default_professional

    def all(self) -> List[Record]:
        if not self.path.exists():
            raise RecordLoadError(f"Patient data file not found: {self.path}")
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except Exception as exc:
            raise RecordLoadError(f"Could not parse patient data file: {self.path}") from exc
        if not isinstance(raw, list):
            raise RecordLoadError("Patient data file must contain a JSON list")

        records: List[Record] = []
        for idx, item in enumerate(raw):
            if not isinstance(item, dict):
                self.logger.warning("Ignoring patient entry %s: not an object", idx)
                continue
            raw_age = item.get("idade", item.get("age"))
            if raw_age not in (None, "") and parse_age(raw_age) is None:
                self.logger.warning(
                    "Patient entry %s has a non-numeric age %r; deriving it from the birth date", idx, raw_age
                )
            record = Record.from_dict(item, default_professional=self.default_professional)
            if not record.name:
                self.logger.warning("Ignoring patient entry %s: empty name", idx)
                continue
            records.append(record)
        self.logger.info("Loaded %s patients from %s", len(records), self.path)
        return records
