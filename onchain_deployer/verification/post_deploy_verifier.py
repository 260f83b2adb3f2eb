"""Post-deployment verification for onchain-deployer.

This module performs read-only checks against deployed contracts: role
membership, balances, voting power consistency, ownership and generic reads.
A check that fails or cannot be read produces a warning, never an exception.
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional

import structlog

from ..binder.parameter_binder import ParameterBinder
from ..exceptions import DeployerError
from ..executor.ledger import Ledger
from ..planner.models import CheckKind, CheckSpec
from .models import CheckResult, VerificationReport

if TYPE_CHECKING:
    from ..planner.deployment_planner import DeploymentPlan

logger = structlog.get_logger(__name__)

VOTING_TOTAL_KEY = "total_votes"


class PostDeployVerifier:
    """Runs read-only checks and collects non-fatal warnings."""

    def __init__(self, ledger: Ledger, binder: ParameterBinder):
        """Initialize the verifier.

        Args:
            ledger: Ledger to read from
            binder: Binder used to resolve check parameters
        """
        self.ledger = ledger
        self.binder = binder
        self.logger = structlog.get_logger(self.__class__.__name__)

    async def run_checks(
        self,
        checks: List[CheckSpec],
        plan: "DeploymentPlan",
        scope: str,
        step_id: Optional[str] = None,
    ) -> VerificationReport:
        """Run a batch of checks in order.

        Args:
            checks: Checks to run
            plan: Plan holding contract references and step outputs
            scope: Report label, e.g. a step id or ``workflow``
            step_id: Verify step the checks belong to, if any

        Returns:
            VerificationReport with one result per check
        """
        report = VerificationReport(scope)
        for check in checks:
            report.add_result(await self.run_check(check, plan, step_id))
        report.complete()

        if report.warnings:
            self.logger.warning(
                "Verification finished with warnings",
                scope=scope,
                checks=len(report.results),
                warnings=len(report.warnings),
            )
        else:
            self.logger.info("Verification passed", scope=scope, checks=len(report.results))
        return report

    async def run_check(
        self, check: CheckSpec, plan: "DeploymentPlan", step_id: Optional[str] = None
    ) -> CheckResult:
        """Run one check; failures are reported in the result."""
        try:
            binding = self.binder.bind_check(check, plan)
        except DeployerError as e:
            return self._result(check, step_id, False, f"Check parameters unresolved: {e.message}")

        if not binding.is_ready:
            return self._result(
                check,
                step_id,
                False,
                f"Check waits on unconfirmed steps: {', '.join(binding.waiting_on)}",
            )

        target = plan.contracts[check.target]
        if not target.is_resolved:
            return self._result(check, step_id, False, f"Contract '{check.target}' has no address")

        handlers = {
            CheckKind.HAS_ROLE: self._check_has_role,
            CheckKind.BALANCE: self._check_balance,
            CheckKind.VOTING_POWER: self._check_voting_power,
            CheckKind.OWNER: self._check_owner,
            CheckKind.READ: self._check_read,
        }
        try:
            return await handlers[check.check](check, plan, binding.arguments, step_id)
        except Exception as e:
            self.logger.warning(
                "Check could not be read",
                check=check.check.value,
                target=check.target,
                error=str(e),
            )
            return self._result(check, step_id, False, f"Read failed: {e}")

    async def _check_has_role(
        self, check: CheckSpec, plan: "DeploymentPlan", args: Dict[str, Any], step_id: Optional[str]
    ) -> CheckResult:
        expected = True if check.expect is None else bool(check.expect)
        held = bool(await self.ledger.read(plan.contracts[check.target], "hasRole", args))
        verb = "holds" if held else "does not hold"
        return self._result(
            check,
            step_id,
            held == expected,
            f"{args.get('account')} {verb} {args.get('role')} on {check.target}",
            observed=held,
            expected=expected,
        )

    async def _check_balance(
        self, check: CheckSpec, plan: "DeploymentPlan", args: Dict[str, Any], step_id: Optional[str]
    ) -> CheckResult:
        minimum = check.minimum or 0
        balance = int(await self.ledger.read(plan.contracts[check.target], "balanceOf", args))
        return self._result(
            check,
            step_id,
            balance >= minimum,
            f"Balance of {args.get('account')} on {check.target} is {balance} (minimum {minimum})",
            observed=balance,
            expected=minimum,
        )

    async def _check_voting_power(
        self, check: CheckSpec, plan: "DeploymentPlan", args: Dict[str, Any], step_id: Optional[str]
    ) -> CheckResult:
        breakdown = await self.ledger.read(plan.contracts[check.target], "getVotesBreakdown", args)
        total = int(breakdown[VOTING_TOTAL_KEY])
        components = sum(int(value) for key, value in breakdown.items() if key != VOTING_TOTAL_KEY)

        if total != components:
            return self._result(
                check,
                step_id,
                False,
                f"Total voting power {total} differs from component sum {components}",
                observed=breakdown,
                expected=components,
            )
        if check.minimum is not None and total < check.minimum:
            return self._result(
                check,
                step_id,
                False,
                f"Total voting power {total} is below {check.minimum}",
                observed=breakdown,
                expected=check.minimum,
            )
        return self._result(
            check, step_id, True, f"Voting power of {args.get('account')} is {total}", observed=breakdown
        )

    async def _check_owner(
        self, check: CheckSpec, plan: "DeploymentPlan", args: Dict[str, Any], step_id: Optional[str]
    ) -> CheckResult:
        expected = args.get("expected", check.expect)
        owner = await self.ledger.read(plan.contracts[check.target], check.query or "owner", {})
        passed = expected is None or str(owner).lower() == str(expected).lower()
        return self._result(
            check,
            step_id,
            passed,
            f"Owner of {check.target} is {owner}",
            observed=owner,
            expected=expected,
        )

    async def _check_read(
        self, check: CheckSpec, plan: "DeploymentPlan", args: Dict[str, Any], step_id: Optional[str]
    ) -> CheckResult:
        if not check.query:
            return self._result(check, step_id, False, "Read check has no query")

        value = await self.ledger.read(plan.contracts[check.target], check.query, args)
        if check.expect is not None and not _same_value(value, check.expect):
            return self._result(
                check,
                step_id,
                False,
                f"{check.target}.{check.query} returned {value!r}, expected {check.expect!r}",
                observed=value,
                expected=check.expect,
            )
        if check.minimum is not None and int(value) < check.minimum:
            return self._result(
                check,
                step_id,
                False,
                f"{check.target}.{check.query} returned {value!r}, below {check.minimum}",
                observed=value,
                expected=check.minimum,
            )
        return self._result(
            check, step_id, True, f"{check.target}.{check.query} returned {value!r}", observed=value
        )

    def _result(
        self,
        check: CheckSpec,
        step_id: Optional[str],
        passed: bool,
        message: str,
        observed: Any = None,
        expected: Any = None,
    ) -> CheckResult:
        if check.description and not passed:
            message = f"{check.description}: {message}"
        return CheckResult(
            check=check.check,
            target=check.target,
            step_id=step_id,
            passed=passed,
            message=message,
            observed=observed,
            expected=expected,
        )


def _same_value(observed: Any, expected: Any) -> bool:
    if isinstance(observed, str) and isinstance(expected, str):
        return observed.lower() == expected.lower()
    if isinstance(expected, int) and not isinstance(expected, bool):
        try:
            return int(observed) == expected
        except (TypeError, ValueError):
            return False
    return observed == expected
