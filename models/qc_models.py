# models/qc_models.py
"""Quality-control findings and results."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import Field, computed_field

from .character_models import StateModel

QCIssueType = Literal["character", "plot", "pacing", "style", "structure", "ending"]
QCSeverity = Literal["critical", "major", "minor"]
QCDimension = Literal["ending", "character", "pacing", "goal", "structure"]

DIMENSION_WEIGHTS: dict[str, float] = {
    "ending": 0.25,
    "character": 0.25,
    "pacing": 0.20,
    "goal": 0.20,
    "structure": 0.10,
}


class QCIssue(StateModel):
    type: QCIssueType
    severity: QCSeverity
    description: str
    location: str | None = None
    suggestion: str | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


class QCResult(StateModel):
    """Outcome of a QC pass.

    ``passed`` is derived: it is true exactly when no issue is critical. The
    composite ``score`` is informational only.
    """

    score: int = Field(100, ge=0, le=100)
    issues: list[QCIssue] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    dimension_scores: dict[str, int] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_now)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def passed(self) -> bool:
        return not any(issue.severity == "critical" for issue in self.issues)

    def issues_by_severity(self, severity: QCSeverity) -> list[QCIssue]:
        return [issue for issue in self.issues if issue.severity == severity]


class DimensionCheck(StateModel):
    """Score and findings for one QC dimension."""

    score: int = Field(100, ge=0, le=100)
    issues: list[QCIssue] = Field(default_factory=list)
    skipped: bool = False


class QuickFormatResult(StateModel):
    """Cheap pre-acceptance check; any reason means the draft must be rewritten."""

    reasons: list[str] = Field(default_factory=list)

    @property
    def needs_rewrite(self) -> bool:
        return bool(self.reasons)


class RepairResult(StateModel):
    success: bool
    repaired_text: str
    remaining_issues: list[QCIssue] = Field(default_factory=list)
    attempts: int = 0
