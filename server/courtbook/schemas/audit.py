"""Reconciliation report schemas."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class AuditOutcome(str, Enum):
    """What happened to a finding."""
    REPAIRED = "repaired"
    DETECTED = "detected"  # repairable, but the run was report-only
    MANUAL_REVIEW = "manual_review"


class AuditFinding(BaseModel):
    """One invariant violation found by the auditor."""

    check: str = Field(..., description="Name of the check that found it")
    entity: str = Field(..., description="transaction, line_item, booking or waitlist_entry")
    entity_id: str
    detail: str
    outcome: AuditOutcome
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None


class AuditReport(BaseModel):
    """Result of one reconciliation run."""

    started_at: datetime
    fix: bool
    findings: list[AuditFinding] = Field(default_factory=list)

    @property
    def repaired(self) -> list[AuditFinding]:
        return [f for f in self.findings if f.outcome == AuditOutcome.REPAIRED]

    @property
    def manual_review(self) -> list[AuditFinding]:
        return [f for f in self.findings if f.outcome == AuditOutcome.MANUAL_REVIEW]

    @property
    def is_clean(self) -> bool:
        return not self.findings
