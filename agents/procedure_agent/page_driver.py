import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Pattern, Sequence, Union

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from agents.procedure_agent import selectors
from agents.procedure_agent.responses import AuthorizationQuantities, parse_quantities


EXECUTION_STATUS_TEXT = "Em Execução"


@dataclass(frozen=True)
class ContactModalQuery:
    """Is the contact-update modal currently displayed?"""


@dataclass(frozen=True)
class ValidationQuestionsQuery:
    """Texts of the validation question headings, in page order."""


@dataclass(frozen=True)
class ExecutionRowQuery:
    """Find the "Em Execução" row, read its tooltip and open it."""

    status_text: str = EXECUTION_STATUS_TEXT


@dataclass(frozen=True)
class ProfessionalQuery:
    """Click the professional whose name matches case-insensitively."""

    name: str


@dataclass(frozen=True)
class ExecutionRowResult:
    found: bool
    row_index: Optional[int] = None
    quantities: AuthorizationQuantities = field(default_factory=AuthorizationQuantities)


_CONTACT_MODAL_JS = """
(selector) => {
  const modal = document.querySelector(selector);
  if (!modal) return false;
  return window.getComputedStyle(modal).display !== 'none';
}
"""

_QUESTIONS_JS = """
() => Array.from(document.querySelectorAll('h4')).map((h4) => (h4.textContent || '').trim())
"""

_EXECUTION_ROW_JS = """
(statusText) => {
  const rows = document.querySelectorAll('#Form\\\\:guides\\\\:guides_grid tr');
  const tooltips = document.querySelectorAll('[id^="Form:guides:guides_grid:"][id$="content"]');
  for (let i = 0; i < rows.length; i++) {
    const cells = rows[i].querySelectorAll('td');
    if (cells.length < 6) continue;
    if (!(cells[4].textContent || '').includes(statusText)) continue;
    const rowIndex = i - 1;
    let tooltipText = '';
    for (const tooltip of tooltips) {
      if (tooltip.id.includes(`:${rowIndex}:`)) {
        tooltipText = tooltip.textContent || tooltip.innerText || '';
        break;
      }
    }
    const anchors = cells[5].querySelectorAll('a');
    if (anchors.length > 1) {
      anchors[1].click();
      return { clicked: true, rowIndex: rowIndex, tooltipText: tooltipText };
    }
  }
  return { clicked: false, rowIndex: null, tooltipText: '' };
}
"""

_PROFESSIONAL_JS = """
(targetName) => {
  const links = document.querySelectorAll('#Zoom_Professional\\\\:providers a.link');
  const wanted = targetName.trim().toLowerCase();
  for (const link of links) {
    if ((link.textContent || '').trim().toLowerCase() === wanted) {
      link.click();
      return true;
    }
  }
  return false;
}
"""

_ANY_TEXT_JS = """
(phrases) => {
  const text = document.body ? (document.body.textContent || '') : '';
  return phrases.find((p) => text.includes(p)) || false;
}
"""


def execution_row_from_payload(payload: Any) -> ExecutionRowResult:
    data = payload if isinstance(payload, dict) else {}
    if not data.get("clicked"):
        return ExecutionRowResult(found=False)
    row_index = data.get("rowIndex")
    return ExecutionRowResult(
        found=True,
        row_index=int(row_index) if row_index is not None else None,
        quantities=parse_quantities(data.get("tooltipText", "")),
    )


def questions_from_payload(payload: Any) -> List[str]:
    if not isinstance(payload, list):
        return []
    return [str(item).strip() for item in payload]


class PlaywrightPageDriver:
    """Page operations the workflow needs, on top of a sync Playwright page."""

    def __init__(self, page, screenshot_dir: Path, logger, default_timeout_ms: int = 30_000) -> None:
        self.page = page
        self.screenshot_dir = Path(screenshot_dir)
        self.logger = logger
        self.default_timeout_ms = int(default_timeout_ms)

    def _timeout(self, timeout_ms: Optional[int]) -> int:
        return int(timeout_ms) if timeout_ms is not None else self.default_timeout_ms

    def navigate(self, url: str, timeout_ms: Optional[int] = None) -> None:
        self.page.goto(url, wait_until="domcontentloaded", timeout=self._timeout(timeout_ms))

    def wait_for(self, selector: str, timeout_ms: Optional[int] = None) -> bool:
        try:
            self.page.wait_for_selector(selector, timeout=self._timeout(timeout_ms), state="visible")
            return True
        except PlaywrightTimeoutError:
            self.logger.debug("Timeout waiting for selector: %s", selector)
            return False

    def click(
        self,
        selector: str,
        wait_for: Optional[str] = None,
        settle: bool = True,
        timeout_ms: Optional[int] = None,
    ) -> None:
        timeout = self._timeout(timeout_ms)
        self.page.click(selector, timeout=timeout)
        if wait_for:
            self.page.wait_for_selector(wait_for, timeout=timeout)
        elif settle:
            self.page.wait_for_load_state("networkidle", timeout=timeout)

    def fill(self, selector: str, value: str, timeout_ms: Optional[int] = None) -> None:
        self.page.fill(selector, value, timeout=self._timeout(timeout_ms))

    def blur(self, selector: str) -> None:
        self.page.locator(selector).blur()
        # Clicking the page body triggers the server-side field validation.
        self.page.locator("body").click(position={"x": 10, "y": 10})

    def select_option(self, selector: str, value: str, timeout_ms: Optional[int] = None) -> None:
        self.page.select_option(selector, value, timeout=self._timeout(timeout_ms))

    def read_text(self, selector: str, timeout_ms: Optional[int] = None) -> str:
        return (self.page.text_content(selector, timeout=self._timeout(timeout_ms)) or "").strip()

    def wait_for_any_text(self, phrases: Sequence[str], timeout_ms: Optional[int] = None) -> str:
        handle = self.page.wait_for_function(
            _ANY_TEXT_JS,
            arg=list(phrases),
            timeout=self._timeout(timeout_ms),
        )
        return str(handle.json_value() or "")

    def pause(self, ms: int) -> None:
        self.page.wait_for_timeout(max(0, int(ms)))

    def evaluate(self, query: Any) -> Any:
        if isinstance(query, ContactModalQuery):
            return bool(self.page.evaluate(_CONTACT_MODAL_JS, selectors.AUTHORIZATION["contact_modal"]))
        if isinstance(query, ValidationQuestionsQuery):
            return questions_from_payload(self.page.evaluate(_QUESTIONS_JS))
        if isinstance(query, ExecutionRowQuery):
            result = execution_row_from_payload(self.page.evaluate(_EXECUTION_ROW_JS, query.status_text))
            if result.found:
                self.page.wait_for_load_state("networkidle", timeout=10_000)
            return result
        if isinstance(query, ProfessionalQuery):
            return bool(self.page.evaluate(_PROFESSIONAL_JS, query.name))
        raise TypeError(f"Unsupported page query: {type(query).__name__}")

    def has_text(self, pattern: Union[str, Pattern[str]]) -> bool:
        return self.page.get_by_text(pattern).count() > 0

    def screenshot(self, name: str) -> Optional[str]:
        try:
            self.screenshot_dir.mkdir(parents=True, exist_ok=True)
            safe = "".join(ch if (ch.isalnum() or ch in {"-", "_"}) else "_" for ch in str(name or "shot"))
            safe = safe.strip("_") or "shot"
            path = self.screenshot_dir / f"{safe}_{time.strftime('%Y%m%d-%H%M%S')}.png"
            self.page.screenshot(path=str(path), full_page=True)
            self.logger.info("Screenshot saved: %s", path)
            return str(path)
        except Exception:
            self.logger.exception("Failed to take screenshot %s", name)
            return None

