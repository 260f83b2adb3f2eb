"""Safety models for onchain-deployer.

This module defines the state tracked while administrator roles are migrated
from the deployer to their long-term holders.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, Field

from ..exceptions import DeployerError
from ..executor.ledger import role_key


class RoleAction(str, Enum):
    """Direction of a role change."""

    GRANT = "grant"
    REVOKE = "revoke"


class RotationState(str, Enum):
    """Progress of one grant/revoke pair."""

    PENDING = "pending"
    GRANT_SUBMITTED = "grant_submitted"
    GRANT_CONFIRMED = "grant_confirmed"
    REVOKE_SUBMITTED = "revoke_submitted"
    COMPLETE = "complete"
    ABORTED = "aborted"


_ROTATION_TRANSITIONS: Dict[RotationState, FrozenSet[RotationState]] = {
    RotationState.PENDING: frozenset({RotationState.GRANT_SUBMITTED, RotationState.ABORTED}),
    RotationState.GRANT_SUBMITTED: frozenset(
        {RotationState.GRANT_CONFIRMED, RotationState.ABORTED}
    ),
    RotationState.GRANT_CONFIRMED: frozenset(
        {RotationState.REVOKE_SUBMITTED, RotationState.ABORTED}
    ),
    RotationState.REVOKE_SUBMITTED: frozenset({RotationState.COMPLETE}),
    RotationState.COMPLETE: frozenset(),
    RotationState.ABORTED: frozenset(),
}


class RoleAssignment(BaseModel):
    """A role held by an account on one contract."""

    contract: str = Field(..., description="Logical contract name")
    role: str = Field(..., description="Role name or id")
    account: str = Field(..., description="Account address")
    step_id: Optional[str] = Field(None, description="Step that made the change")
    action: RoleAction = Field(RoleAction.GRANT, description="Grant or revoke")
    recorded_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="When it was recorded"
    )

    def matches(self, contract: str, role: str) -> bool:
        return self.contract == contract and role_key(self.role) == role_key(role)


class RotationPair(BaseModel):
    """A revoke that must not run before its paired grant is confirmed."""

    grant_step_id: str = Field(..., description="Grant half of the pair")
    revoke_step_id: str = Field(..., description="Revoke half of the pair")
    contract: str = Field(..., description="Logical contract name")
    state: RotationState = Field(RotationState.PENDING, description="Current state")

    role: Optional[str] = Field(None, description="Role, known once the grant binds")
    grantee: Optional[str] = Field(None, description="Account receiving the role")
    revoked_account: Optional[str] = Field(None, description="Account losing the role")
    reason: Optional[str] = Field(None, description="Why the pair was aborted")

    def advance(self, new_state: RotationState, reason: Optional[str] = None) -> bool:
        """Move to ``new_state`` if the lifecycle allows it.

        Returns:
            True if the state changed
        """
        if new_state == self.state:
            return False
        if new_state not in _ROTATION_TRANSITIONS[self.state]:
            return False
        self.state = new_state
        if reason:
            self.reason = reason
        return True

    @property
    def grant_confirmed(self) -> bool:
        return self.state in (
            RotationState.GRANT_CONFIRMED,
            RotationState.REVOKE_SUBMITTED,
            RotationState.COMPLETE,
        )


class SequencingError(DeployerError):
    """A revoke that was aborted instead of submitted.

    Recorded as a warning on the workflow report; it is not raised.
    """

    def __init__(
        self,
        message: str,
        step_id: str,
        paired_with: Optional[str] = None,
        reason: str = "grant_not_confirmed",
    ):
        super().__init__(message, "SEQUENCING_ERROR")
        self.step_id = step_id
        self.paired_with = paired_with
        self.reason = reason
        self.details = {"step_id": step_id, "paired_with": paired_with, "reason": reason}
