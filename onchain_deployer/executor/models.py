"""Execution models for onchain-deployer.

This module defines data models for ledger submissions, confirmation
outcomes and the append-only execution log.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from ..exceptions import DeployerError


class ErrorCategory(str, Enum):
    """Classification of a failed submission."""

    INSUFFICIENT_PERMISSION = "insufficient_permission"
    STORAGE_LAYOUT_MISMATCH = "storage_layout_mismatch"
    NOT_A_PROXY = "not_a_proxy"
    NONCE_CONFLICT = "nonce_conflict"
    REVERTED = "reverted"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class OutcomeStatus(str, Enum):
    """What the ledger reports for a submitted operation."""

    CONFIRMED = "confirmed"
    REVERTED = "reverted"


class TransactionHandle(BaseModel):
    """Handle for a submitted, not yet confirmed operation."""

    transaction_hash: str = Field(..., description="Transaction hash")
    nonce: Optional[int] = Field(None, description="Nonce the operation was sent with")
    submitted_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="Submission time"
    )


class Outcome(BaseModel):
    """Confirmation outcome of a submitted operation."""

    status: OutcomeStatus = Field(..., description="Confirmed or reverted")
    transaction_hash: str = Field(..., description="Transaction hash")
    block_number: Optional[int] = Field(None, description="Including block")
    confirmations: int = Field(0, description="Confirmations observed")
    outputs: Dict[str, Any] = Field(
        default_factory=dict, description="Values produced (e.g. a deployed address)"
    )
    error_message: Optional[str] = Field(None, description="Raw revert reason")

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.CONFIRMED


class ExecutionResult(BaseModel):
    """One attempt to execute a step. Records are append-only."""

    step_id: str = Field(..., description="Executed step id")
    workflow: Optional[str] = Field(None, description="Workflow the step belongs to")
    fingerprint: Optional[str] = Field(
        None, description="Fingerprint of the plan and configuration it ran under"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="Record time"
    )
    transaction_hash: Optional[str] = Field(None, description="Transaction hash, if any")
    success: bool = Field(..., description="Whether the step confirmed")
    error_category: Optional[ErrorCategory] = Field(None, description="Failure class")
    error_message: Optional[str] = Field(None, description="Raw failure text")
    outputs: Dict[str, Any] = Field(default_factory=dict, description="Produced values")
    nonce: Optional[int] = Field(None, description="Nonce used")
    attempt: int = Field(1, description="Attempt number for this step")
    duration_seconds: Optional[float] = Field(None, description="Submit-to-outcome time")

    @property
    def is_ambiguous(self) -> bool:
        """A timed-out submission may still land; it needs reconciliation."""
        return self.error_category == ErrorCategory.TIMEOUT


class LedgerError(DeployerError):
    """Raised by ledger adapters when a submission or read is rejected."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "LEDGER_ERROR", details)


class TransactionError(DeployerError):
    """A categorized on-chain rejection or timeout."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        step_id: str,
        transaction_hash: Optional[str] = None,
        raw_error: Optional[str] = None,
    ):
        super().__init__(message, f"TRANSACTION_{category.name}")
        self.category = category
        self.step_id = step_id
        self.transaction_hash = transaction_hash
        self.raw_error = raw_error
        self.details = {
            "category": category.value,
            "step_id": step_id,
            "transaction_hash": transaction_hash,
            "raw_error": raw_error,
        }

    @classmethod
    def from_result(cls, result: ExecutionResult) -> "TransactionError":
        category = result.error_category or ErrorCategory.UNKNOWN
        return cls(
            f"Step '{result.step_id}' failed ({category.value}): {result.error_message}",
            category=category,
            step_id=result.step_id,
            transaction_hash=result.transaction_hash,
            raw_error=result.error_message,
        )


class ExecutionLogError(DeployerError):
    """Raised when a persisted execution log cannot be read back."""

    def __init__(self, message: str, path: str, line: int):
        super().__init__(message, "EXECUTION_LOG_ERROR", {"path": path, "line": line})
