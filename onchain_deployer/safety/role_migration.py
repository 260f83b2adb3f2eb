"""Role migration engine for onchain-deployer.

This module drives grant_role and revoke_role steps. A revoke paired with a
grant is only submitted once that grant is confirmed; otherwise it is aborted
and a SequencingError is recorded. Unpaired revokes of administrator roles are
refused unless another account is known to hold the role. Roles are compared
by key, so DEFAULT_ADMIN_ROLE and its all-zero id are the same role.
"""

from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

import structlog

from ..executor.ledger import Ledger, is_role_id, role_key
from ..executor.models import ExecutionResult, LedgerError
from ..executor.transaction_executor import TransactionExecutor
from ..planner.models import DeploymentStep, StepKind, StepStatus
from .models import RoleAction, RoleAssignment, RotationPair, RotationState, SequencingError

if TYPE_CHECKING:
    from ..planner.deployment_planner import DeploymentPlan

logger = structlog.get_logger(__name__)

DEFAULT_ADMIN_ROLES = ("DEFAULT_ADMIN_ROLE", "ADMIN_ROLE")


class RoleMigrationEngine:
    """Sequences role grants and revokes so no contract loses its last admin."""

    def __init__(
        self,
        executor: TransactionExecutor,
        ledger: Optional[Ledger] = None,
        admin_roles: Optional[Iterable[str]] = None,
        verify_grants_on_chain: bool = False,
    ):
        """Initialize the role migration engine.

        Args:
            executor: Executor used to submit grant and revoke steps
            ledger: Ledger for on-chain grant checks, defaults to the executor's
            admin_roles: Roles whose unpaired revoke needs another holder
            verify_grants_on_chain: Read hasRole for the grantee before revoking
        """
        self.executor = executor
        self.ledger = ledger if ledger is not None else executor.ledger
        self.admin_roles = set(admin_roles or DEFAULT_ADMIN_ROLES)
        self.verify_grants_on_chain = verify_grants_on_chain

        self.pairs: Dict[str, RotationPair] = {}
        self.assignments: List[RoleAssignment] = []
        self.sequencing_errors: List[SequencingError] = []
        self.logger = structlog.get_logger(self.__class__.__name__)

    def register_plan(self, plan: "DeploymentPlan") -> None:
        """Create a rotation pair for every paired revoke in the plan."""
        if plan.admin_roles:
            self.admin_roles = set(plan.admin_roles)
        for step in plan.steps:
            if step.kind == StepKind.REVOKE_ROLE and step.paired_with:
                self.pairs[step.id] = RotationPair(
                    grant_step_id=step.paired_with,
                    revoke_step_id=step.id,
                    contract=step.target.logical_name,
                )
        self.logger.debug("Rotation pairs registered", pairs=sorted(self.pairs))

    def pairs_for_grant(self, grant_step_id: str) -> List[RotationPair]:
        return [pair for pair in self.pairs.values() if pair.grant_step_id == grant_step_id]

    def record_confirmed_grant(self, step: DeploymentStep, arguments: Dict[str, Any]) -> None:
        """Record a grant confirmed earlier, e.g. one restored from the execution log."""
        assignment = RoleAssignment(
            contract=step.target.logical_name,
            role=arguments["role"],
            account=arguments["account"],
            step_id=step.id,
        )
        self.assignments.append(assignment)
        for pair in self.pairs_for_grant(step.id):
            pair.role = assignment.role
            pair.grantee = assignment.account
            pair.advance(RotationState.GRANT_SUBMITTED)
            pair.advance(RotationState.GRANT_CONFIRMED)

    async def execute_grant(
        self,
        step: DeploymentStep,
        arguments: Dict[str, Any],
        plan: Optional["DeploymentPlan"] = None,
    ) -> ExecutionResult:
        """Submit a grant_role step and advance the pairs that wait on it.

        Args:
            step: The grant step
            arguments: Bound arguments with ``role`` and ``account``
            plan: Plan to record outputs into

        Returns:
            ExecutionResult of the grant
        """
        pairs = self.pairs_for_grant(step.id)
        for pair in pairs:
            pair.role = arguments["role"]
            pair.grantee = arguments["account"]
            pair.advance(RotationState.GRANT_SUBMITTED)

        result = await self.executor.execute(step, arguments, plan)

        if result.success:
            self.assignments.append(
                RoleAssignment(
                    contract=step.target.logical_name,
                    role=arguments["role"],
                    account=arguments["account"],
                    step_id=step.id,
                )
            )
            for pair in pairs:
                pair.advance(RotationState.GRANT_CONFIRMED)
            self.logger.info(
                "Role granted",
                step_id=step.id,
                contract=step.target.logical_name,
                role=arguments["role"],
                account=arguments["account"],
            )
        else:
            for pair in pairs:
                pair.advance(RotationState.ABORTED, reason=f"grant '{step.id}' failed")
        return result

    async def execute_revoke(
        self,
        step: DeploymentStep,
        arguments: Dict[str, Any],
        plan: "DeploymentPlan",
    ) -> Optional[ExecutionResult]:
        """Submit a revoke_role step if it is safe to do so.

        Args:
            step: The revoke step
            arguments: Bound arguments with ``role`` and ``account``
            plan: Plan holding the paired grant's status

        Returns:
            ExecutionResult of the revoke, or None if the revoke was aborted
        """
        role = arguments["role"]
        account = arguments["account"]
        contract = step.target.logical_name

        if step.paired_with:
            pair = self.pairs.get(step.id)
            grant = plan.find(step.paired_with)
            if pair is None or grant is None or grant.status != StepStatus.CONFIRMED:
                state = grant.status.value if grant else "missing"
                self.abort_revoke(
                    step,
                    f"Revoke '{step.id}' aborted: paired grant '{step.paired_with}' is {state}",
                    reason="grant_not_confirmed",
                )
                return None
            if not pair.grant_confirmed:
                self.abort_revoke(
                    step,
                    f"Revoke '{step.id}' aborted: rotation is {pair.state.value}",
                    reason="grant_not_confirmed",
                )
                return None
            if pair.grantee and account.lower() == pair.grantee.lower():
                self.abort_revoke(
                    step,
                    f"Revoke '{step.id}' aborted: {account} is the account its grant '{step.paired_with}' promoted",
                    reason="revoke_of_grantee",
                )
                return None
            if self.verify_grants_on_chain and not await self._grant_visible(step, pair):
                self.abort_revoke(
                    step,
                    f"Revoke '{step.id}' aborted: {pair.grantee} does not hold {pair.role} on {contract}",
                    reason="grant_not_on_chain",
                )
                return None
        elif self.is_admin_role(role) and not self._has_other_holder(contract, role, account):
            self.abort_revoke(
                step,
                f"Revoke '{step.id}' aborted: no other confirmed holder of {role} on {contract}",
                reason="last_admin",
            )
            return None

        pair = self.pairs.get(step.id)
        if pair is not None:
            pair.revoked_account = account
            pair.advance(RotationState.REVOKE_SUBMITTED)

        result = await self.executor.execute(step, arguments, plan)

        if result.success:
            self.assignments.append(
                RoleAssignment(
                    contract=contract,
                    role=role,
                    account=account,
                    step_id=step.id,
                    action=RoleAction.REVOKE,
                )
            )
            if pair is not None:
                pair.advance(RotationState.COMPLETE)
            self.logger.info(
                "Role revoked", step_id=step.id, contract=contract, role=role, account=account
            )
        return result

    def abort_revoke(self, step: DeploymentStep, message: str, reason: str) -> SequencingError:
        """Abort a revoke step and record the sequencing warning."""
        step.transition(StepStatus.ABORTED)
        pair = self.pairs.get(step.id)
        if pair is not None:
            pair.advance(RotationState.ABORTED, reason=reason)

        error = SequencingError(message, step_id=step.id, paired_with=step.paired_with, reason=reason)
        self.sequencing_errors.append(error)
        self.logger.warning(
            "Revoke aborted",
            step_id=step.id,
            paired_with=step.paired_with,
            reason=reason,
        )
        return error

    def abort_orphaned_revokes(self, grant_step_id: str, plan: "DeploymentPlan") -> List[str]:
        """Abort pending revokes whose paired grant did not confirm.

        Returns:
            Ids of the aborted revoke steps
        """
        grant = plan.find(grant_step_id)
        state = grant.status.value if grant else "missing"
        aborted = []
        for pair in self.pairs_for_grant(grant_step_id):
            revoke = plan.find(pair.revoke_step_id)
            if revoke is None or revoke.status != StepStatus.PENDING:
                continue
            self.abort_revoke(
                revoke,
                f"Revoke '{revoke.id}' aborted: paired grant '{grant_step_id}' is {state}",
                reason="grant_not_confirmed",
            )
            aborted.append(revoke.id)
        return aborted

    def is_admin_role(self, role: str) -> bool:
        """Whether an unpaired revoke of ``role`` needs another known holder.

        Role ids other than the default admin id cannot be matched to a role
        name, so they are treated as administrator roles.
        """
        key = role_key(role)
        return key in {role_key(admin) for admin in self.admin_roles} or is_role_id(key)

    def holders(self, contract: str, role: str) -> List[str]:
        """Accounts currently known to hold ``role`` on ``contract``."""
        current: Dict[str, bool] = {}
        for assignment in self.assignments:
            if assignment.matches(contract, role):
                current[assignment.account.lower()] = assignment.action == RoleAction.GRANT
        return [account for account, held in current.items() if held]

    def _has_other_holder(self, contract: str, role: str, account: str) -> bool:
        return any(holder != account.lower() for holder in self.holders(contract, role))

    async def _grant_visible(self, step: DeploymentStep, pair: RotationPair) -> bool:
        try:
            held = await self.ledger.read(
                step.target, "hasRole", {"role": pair.role, "account": pair.grantee}
            )
        except LedgerError as e:
            self.logger.warning(
                "hasRole unreadable, relying on confirmed grant",
                step_id=step.id,
                error=str(e),
            )
            return True
        return held is not False
