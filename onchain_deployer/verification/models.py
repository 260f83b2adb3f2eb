"""Verification models for onchain-deployer."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..planner.models import CheckKind


class CheckResult(BaseModel):
    """Outcome of one read-only check."""

    check: CheckKind = Field(..., description="Kind of check")
    target: str = Field(..., description="Logical contract name")
    step_id: Optional[str] = Field(None, description="Verify step that ran it, if any")
    passed: bool = Field(..., description="Whether the check held")
    message: str = Field(..., description="Human-readable result")
    observed: Optional[Any] = Field(None, description="Value read from the ledger")
    expected: Optional[Any] = Field(None, description="Value the check wanted")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="When it ran"
    )


class VerificationWarning(BaseModel):
    """A failed or unreadable check. Non-fatal by construction."""

    check: CheckKind = Field(..., description="Kind of check")
    target: str = Field(..., description="Logical contract name")
    step_id: Optional[str] = Field(None, description="Verify step that ran it, if any")
    message: str = Field(..., description="What went wrong")
    details: Dict[str, Any] = Field(default_factory=dict, description="Observed values")

    @classmethod
    def from_result(cls, result: CheckResult) -> "VerificationWarning":
        return cls(
            check=result.check,
            target=result.target,
            step_id=result.step_id,
            message=result.message,
            details={"observed": result.observed, "expected": result.expected},
        )


class VerificationReport:
    """Results of a batch of checks."""

    def __init__(self, scope: str):
        self.scope = scope
        self.started_at = datetime.now(timezone.utc)
        self.completed_at: Optional[datetime] = None
        self.results: List[CheckResult] = []
        self.warnings: List[VerificationWarning] = []

    def add_result(self, result: CheckResult) -> None:
        """Add a check result, turning failures into warnings."""
        self.results.append(result)
        if not result.passed:
            self.warnings.append(VerificationWarning.from_result(result))

    def complete(self) -> None:
        self.completed_at = datetime.now(timezone.utc)

    @property
    def passed(self) -> bool:
        return not self.warnings
