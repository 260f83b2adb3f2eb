"""Workflow orchestration for onchain-deployer.

The orchestrator drives a DeploymentPlan to completion: it preflights every
parameter, then repeatedly picks ready steps, binds their arguments and hands
them to the executor, role migration engine or verifier depending on kind.
Failed steps block only their own dependents.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

import structlog

from .binder.models import DeploymentConfig, MissingParameterError, ValidationError
from .binder.parameter_binder import ParameterBinder
from .exceptions import DeployerError
from .executor.execution_log import ExecutionLog
from .executor.ledger import Ledger
from .executor.models import ExecutionResult, TransactionError
from .executor.transaction_executor import TransactionExecutor
from .planner.deployment_planner import DeploymentPlan
from .planner.models import ConfigurationError, DeploymentStep, StepKind, StepStatus
from .safety.models import SequencingError
from .safety.role_migration import RoleMigrationEngine
from .verification.models import VerificationWarning
from .verification.post_deploy_verifier import PostDeployVerifier

logger = structlog.get_logger(__name__)


class WorkflowReport:
    """Final state of a workflow run."""

    def __init__(self, plan: DeploymentPlan, fingerprint: Optional[str] = None):
        self.workflow_name = plan.workflow_name
        self.fingerprint = fingerprint or plan.fingerprint()
        self.started_at = datetime.now(timezone.utc)
        self.completed_at: Optional[datetime] = None

        self.confirmed: List[str] = []
        self.failed: List[str] = []
        self.aborted: List[str] = []
        self.not_attempted: List[str] = []
        self.skipped: List[str] = list(plan.skipped_steps)
        self.restored: List[str] = []
        self.ambiguous: List[str] = []
        self.stale: List[str] = []

        self.results: Dict[str, ExecutionResult] = {}
        self.binding_errors: Dict[str, DeployerError] = {}
        self.verification_warnings: List[VerificationWarning] = []
        self.sequencing_errors: List[SequencingError] = []
        self.cancelled = False

    def complete(self, plan: DeploymentPlan, log: ExecutionLog) -> None:
        """Snapshot step statuses from the plan."""
        self.completed_at = datetime.now(timezone.utc)
        self.confirmed = plan.steps_with_status(StepStatus.CONFIRMED)
        self.failed = plan.steps_with_status(StepStatus.FAILED)
        self.aborted = plan.steps_with_status(StepStatus.ABORTED)
        self.not_attempted = plan.steps_with_status(StepStatus.PENDING) + plan.steps_with_status(
            StepStatus.SUBMITTED
        )

        latest = log.latest_by_step(self.fingerprint)
        self.results = {step_id: latest[step_id] for step_id in plan.order if step_id in latest}

    @property
    def success(self) -> bool:
        """Every included step confirmed."""
        return not (self.failed or self.aborted or self.not_attempted or self.cancelled)

    def failures(self) -> List[TransactionError]:
        """Categorized errors for failed steps that reached the ledger."""
        return [
            TransactionError.from_result(self.results[step_id])
            for step_id in self.failed
            if step_id in self.results and not self.results[step_id].success
        ]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "workflow": self.workflow_name,
            "fingerprint": self.fingerprint,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "success": self.success,
            "cancelled": self.cancelled,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "aborted": self.aborted,
            "skipped": self.skipped,
            "not_attempted": self.not_attempted,
            "restored": self.restored,
            "ambiguous": self.ambiguous,
            "stale": self.stale,
            "failures": [error.to_dict() for error in self.failures()],
            "binding_errors": {
                step_id: error.to_dict() for step_id, error in self.binding_errors.items()
            },
            "sequencing_errors": [error.to_dict() for error in self.sequencing_errors],
            "verification_warnings": [
                warning.model_dump(mode="json") for warning in self.verification_warnings
            ],
        }


class WorkflowOrchestrator:
    """Runs deployment plans against a ledger."""

    def __init__(
        self,
        config: DeploymentConfig,
        ledger: Ledger,
        log: Optional[ExecutionLog] = None,
        confirmation_threshold: int = 1,
        confirmation_timeout: float = 300.0,
        max_parallel_steps: int = 1,
        verify_grants_on_chain: bool = False,
    ):
        """Initialize the orchestrator.

        Args:
            config: Deployment configuration shared with the planner
            ledger: Ledger adapter
            log: Execution log, in-memory if not provided
            confirmation_threshold: Confirmations required per step
            confirmation_timeout: Seconds to wait for each confirmation
            max_parallel_steps: Ready steps to run at once; 1 is sequential
            verify_grants_on_chain: Read hasRole before paired revokes
        """
        self.config = config
        self.ledger = ledger
        self.log = log if log is not None else ExecutionLog()
        self.max_parallel_steps = max(1, max_parallel_steps)

        self.binder = ParameterBinder(config)
        self.executor = TransactionExecutor(
            ledger,
            self.log,
            confirmation_threshold=confirmation_threshold,
            confirmation_timeout=confirmation_timeout,
        )
        self.role_engine = RoleMigrationEngine(
            self.executor, ledger, verify_grants_on_chain=verify_grants_on_chain
        )
        self.verifier = PostDeployVerifier(ledger, self.binder)

        self._cancelled = False
        self.logger = structlog.get_logger(self.__class__.__name__)

    def cancel(self) -> None:
        """Stop before the next step. In-flight submissions are awaited."""
        if not self._cancelled:
            self.logger.warning("Cancellation requested")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    async def run(
        self,
        plan: DeploymentPlan,
        resume: bool = False,
        reconcile: Optional[Iterable[str]] = None,
    ) -> WorkflowReport:
        """Execute a plan.

        Args:
            plan: Planned workflow
            resume: Restore confirmed steps from the execution log first
            reconcile: Timed-out step ids the operator has checked and wants resubmitted

        Returns:
            WorkflowReport describing every step's final state

        Raises:
            ConfigurationError: If the plan references unresolvable contracts
            MissingParameterError: If required configuration is absent
            ValidationError: If a configured value is outside its domain
        """
        self.logger.info(
            "Starting workflow",
            workflow=plan.workflow_name,
            steps=len(plan.steps),
            resume=resume,
            max_parallel_steps=self.max_parallel_steps,
        )
        self.binder.preflight(plan)
        self.role_engine.register_plan(plan)

        fingerprint = plan.fingerprint(self.binder.config_snapshot(plan))
        self.executor.scope_to(plan.workflow_name, fingerprint)
        report = WorkflowReport(plan, fingerprint)
        if resume:
            self._restore(plan, report, set(reconcile or ()))

        while not self._cancelled:
            ready = plan.ready_steps()
            if not ready:
                break
            if self.max_parallel_steps == 1:
                await self._run_step(ready[0], plan, report)
            else:
                batch = ready[: self.max_parallel_steps]
                await asyncio.gather(*(self._run_step(step, plan, report) for step in batch))

        report.cancelled = self._cancelled
        if not self._cancelled and plan.verify_checks:
            verification = await self.verifier.run_checks(plan.verify_checks, plan, scope="workflow")
            report.verification_warnings.extend(verification.warnings)

        report.sequencing_errors = list(self.role_engine.sequencing_errors)
        report.complete(plan, self.log)

        log_method = self.logger.info if report.success else self.logger.error
        log_method(
            "Workflow finished",
            workflow=plan.workflow_name,
            success=report.success,
            confirmed=len(report.confirmed),
            failed=report.failed,
            aborted=report.aborted,
            not_attempted=report.not_attempted,
            warnings=len(report.verification_warnings),
        )
        return report

    async def _run_step(self, step: DeploymentStep, plan: DeploymentPlan, report: WorkflowReport) -> None:
        if step.kind == StepKind.VERIFY:
            await self._run_verify_step(step, plan, report)
            return

        try:
            binding = self.binder.bind(step, plan)
        except (MissingParameterError, ValidationError, ConfigurationError) as e:
            self._fail_before_submission(step, plan, report, e)
            return

        if not binding.is_ready:
            self._fail_before_submission(
                step,
                plan,
                report,
                ConfigurationError(
                    f"Step '{step.id}' is ready but waits on {', '.join(binding.waiting_on)}",
                    details={"step_id": step.id, "waiting_on": binding.waiting_on},
                ),
            )
            return

        if step.kind == StepKind.GRANT_ROLE:
            result = await self.role_engine.execute_grant(step, binding.arguments, plan)
        elif step.kind == StepKind.REVOKE_ROLE:
            result = await self.role_engine.execute_revoke(step, binding.arguments, plan)
        else:
            result = await self.executor.execute(step, binding.arguments, plan)

        if result is None:
            return
        if result.success:
            if step.checks:
                verification = await self.verifier.run_checks(
                    step.checks, plan, scope=step.id, step_id=step.id
                )
                report.verification_warnings.extend(verification.warnings)
        else:
            self._contain_failure(step, plan)

    async def _run_verify_step(
        self, step: DeploymentStep, plan: DeploymentPlan, report: WorkflowReport
    ) -> None:
        verification = await self.verifier.run_checks(step.checks, plan, scope=step.id, step_id=step.id)
        report.verification_warnings.extend(verification.warnings)
        step.transition(StepStatus.CONFIRMED)

    def _fail_before_submission(
        self,
        step: DeploymentStep,
        plan: DeploymentPlan,
        report: WorkflowReport,
        error: DeployerError,
    ) -> None:
        step.transition(StepStatus.FAILED)
        report.binding_errors[step.id] = error
        self.logger.error(
            "Step failed before submission",
            step_id=step.id,
            error_code=error.error_code,
            error=error.message,
        )
        self._contain_failure(step, plan)

    def _contain_failure(self, step: DeploymentStep, plan: DeploymentPlan) -> None:
        if step.kind == StepKind.GRANT_ROLE:
            self.role_engine.abort_orphaned_revokes(step.id, plan)
        blocked = sorted(plan.dependents_of(step.id))
        if blocked:
            self.logger.warning("Dependent steps blocked", step_id=step.id, blocked=blocked)

    def _restore(self, plan: DeploymentPlan, report: WorkflowReport, reconcile: Set[str]) -> None:
        """Rebuild step state from the execution log.

        Only records written under this run's fingerprint are restored. Records
        of the same workflow under another plan or configuration are reported
        as stale and otherwise ignored.
        """
        confirmed = self.log.confirmed(report.fingerprint)
        ambiguous = self.log.ambiguous(report.fingerprint)

        stale = self.log.other_runs(plan.workflow_name, report.fingerprint)
        if stale:
            report.stale = sorted({record.step_id for record in stale})
            self.logger.warning(
                "Execution log holds records from a different plan or configuration, not restoring them",
                workflow=plan.workflow_name,
                fingerprints=sorted({str(record.fingerprint) for record in stale}),
                steps=report.stale,
            )

        for step in plan.steps:
            if step.id in confirmed:
                result = confirmed[step.id]
                if step.kind == StepKind.DEPLOY and "address" in result.outputs:
                    step.target.bind_address(result.outputs["address"])
                plan.record_outputs(step.id, result.outputs)
                step.transition(StepStatus.CONFIRMED)
                report.restored.append(step.id)
                if step.kind == StepKind.GRANT_ROLE:
                    self._restore_grant(step, plan)
            elif step.id in ambiguous:
                report.ambiguous.append(step.id)
                if step.id in reconcile:
                    self.logger.info("Resubmitting reconciled step", step_id=step.id)
                    continue
                step.transition(StepStatus.FAILED)
                self.logger.warning(
                    "Step outcome ambiguous, reconciliation required",
                    step_id=step.id,
                    transaction_hash=ambiguous[step.id].transaction_hash,
                )
                self._contain_failure(step, plan)

        self.logger.info(
            "Restored from execution log",
            workflow=plan.workflow_name,
            restored=len(report.restored),
            ambiguous=report.ambiguous,
        )

    def _restore_grant(self, step: DeploymentStep, plan: DeploymentPlan) -> None:
        try:
            binding = self.binder.bind(step, plan)
        except DeployerError as e:
            self.logger.warning("Cannot rebind restored grant", step_id=step.id, error=e.message)
            return
        if binding.is_ready:
            self.role_engine.record_confirmed_grant(step, binding.arguments)
