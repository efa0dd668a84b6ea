from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

from agents.procedure_agent.records import Record
from agents.procedure_agent.text import fold


def _first(value: str) -> str:
    parts = str(value or "").split()
    return parts[0] if parts else ""


def _last(value: str) -> str:
    parts = str(value or "").split()
    return parts[-1] if parts else ""


def _birth_part(record: Record, index: int) -> str:
    parts = record.birth_date.split("/") if record.birth_date else []
    return parts[index] if len(parts) == 3 else ""


# Each entry: answer kind, phrases that must all appear, answer getter.
QUESTION_CATALOG: Tuple[Tuple[str, Tuple[str, ...], Callable[[Record], str]], ...] = (
    ("mother_first_name", ("primeiro nome", "mae"), lambda r: _first(r.mother_name)),
    ("mother_last_name", ("ultimo nome", "mae"), lambda r: _last(r.mother_name)),
    ("holder_first_name", ("primeiro nome", "titular"), lambda r: _first(r.holder_name)),
    ("holder_last_name", ("ultimo nome", "titular"), lambda r: _last(r.holder_name)),
    ("cpf_first_three", ("tres primeiros", "cpf"), lambda r: r.cpf[:3]),
    ("cpf_fourth_to_sixth", ("quarto, quinto e sexto", "cpf"), lambda r: r.cpf[3:6]),
    ("cpf_last_two", ("dois ultimos", "cpf"), lambda r: r.cpf[-2:] if r.cpf else ""),
    ("age", ("idade", "anos"), lambda r: str(r.age) if r.age is not None else ""),
    ("birth_day", ("dia de nascimento",), lambda r: _birth_part(r, 0)),
    ("birth_month", ("mes de nascimento",), lambda r: _birth_part(r, 1)),
    ("birth_year", ("ano de nascimento",), lambda r: _birth_part(r, 2)),
)


@dataclass(frozen=True)
class ValidationAnswer:
    question: str
    kind: str
    answer: str
    recognized: bool


def answer_question(question: str, record: Record) -> ValidationAnswer:
    folded = fold(question)
    for kind, phrases, getter in QUESTION_CATALOG:
        if all(phrase in folded for phrase in phrases):
            return ValidationAnswer(question=question, kind=kind, answer=getter(record) or "", recognized=True)
    return ValidationAnswer(question=question, kind="unknown", answer="", recognized=False)


def answer_questions(questions: Sequence[str], record: Record, logger) -> List[ValidationAnswer]:
    answers = [answer_question(q, record) for q in questions]
    for item in answers:
        if not item.recognized:
            # Unmapped questions stay blank for manual completion.
            logger.warning("Could not map validation question for %s: %r", record.name, item.question)
    return answers
