import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from agents.procedure_agent.text import fold


class RemoteResponse(str, Enum):
    REGULAR_RELEASE = "regular_release"
    CROSS_COVERAGE_RELEASE = "cross_coverage_release"
    PROCEDURE_SUCCESS = "procedure_success"
    UNKNOWN = "unknown"


REGULAR_RELEASE_TEXT = "Registro sem cartão liberado. Justificativa enviada."
CROSS_COVERAGE_RELEASE_TEXT = (
    "Registro sem cartão liberado para beneficiário de intercambio. "
    "Não é necessário informar a justificativa."
)
PROCEDURE_SUCCESS_TEXT = "realizado com sucesso"

CONFIRMATION_PHRASES = (REGULAR_RELEASE_TEXT, CROSS_COVERAGE_RELEASE_TEXT)

_REGISTRATION_RE = re.compile(r"(\d{12})")
_QUANTITY_PATTERNS = {
    "requested": re.compile(r"Quant\s+Solic:\s*(\d+)", re.IGNORECASE),
    "authorized": re.compile(r"Quant\s+Aut:\s*(\d+)", re.IGNORECASE),
    "completed": re.compile(r"Quant\s+Realiz:\s*(\d+)", re.IGNORECASE),
}


# Order matters: the cross-coverage phrase shares its prefix with the regular one.
_CLASSIFIERS = (
    (RemoteResponse.CROSS_COVERAGE_RELEASE, fold("beneficiário de intercambio")),
    (RemoteResponse.REGULAR_RELEASE, fold(REGULAR_RELEASE_TEXT)),
    (RemoteResponse.PROCEDURE_SUCCESS, fold(PROCEDURE_SUCCESS_TEXT)),
)


def classify_response(text: Any) -> RemoteResponse:
    folded = fold(text)
    if not folded:
        return RemoteResponse.UNKNOWN
    for category, needle in _CLASSIFIERS:
        if needle in folded:
            return category
    return RemoteResponse.UNKNOWN


def extract_registration_number(text: Any) -> Optional[str]:
    match = _REGISTRATION_RE.search(str(text or ""))
    return match.group(1) if match else None


@dataclass(frozen=True)
class AuthorizationQuantities:
    requested: Optional[int] = None
    authorized: Optional[int] = None
    completed: Optional[int] = None

    @property
    def known(self) -> bool:
        return self.requested is not None or self.authorized is not None

    @property
    def remaining(self) -> Optional[int]:
        if self.authorized is None or self.completed is None:
            return None
        return self.authorized - self.completed

    def to_dict(self) -> Dict[str, Optional[int]]:
        return {
            "requested": self.requested,
            "authorized": self.authorized,
            "completed": self.completed,
            "remaining": self.remaining,
        }


def parse_quantities(text: Any) -> AuthorizationQuantities:
    raw = str(text or "")
    values: Dict[str, Optional[int]] = {}
    for key, pattern in _QUANTITY_PATTERNS.items():
        match = pattern.search(raw)
        values[key] = int(match.group(1)) if match else None
    return AuthorizationQuantities(**values)
