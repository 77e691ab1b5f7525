"""Per-case result reporting keyed by the numeric test-management case id."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import structlog

log = structlog.get_logger()

PASSED = "passed"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass(frozen=True)
class CaseResult:
    case_id: int | None
    title: str
    outcome: str
    duration: float = 0.0
    message: str = ""


@dataclass
class CaseReporter:
    """Collects case results and forwards each one to an optional sink (e.g. a pytest property)."""

    sink: Callable[[CaseResult], None] | None = None
    results: list[CaseResult] = field(default_factory=list)

    def record(
        self, case_id: int | None, title: str, outcome: str, duration: float = 0.0, message: str = ""
    ) -> CaseResult:
        result = CaseResult(case_id=case_id, title=title, outcome=outcome, duration=duration, message=message)
        self.results.append(result)
        log.info("case_result", case_id=case_id, title=title, outcome=outcome, duration_seconds=round(duration, 1))
        if self.sink is not None:
            self.sink(result)
        return result

    def outcome_of(self, case_id: int) -> str | None:
        for result in reversed(self.results):
            if result.case_id == case_id:
                return result.outcome
        return None
