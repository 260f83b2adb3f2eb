"""Transaction executor for onchain-deployer.

This module submits one ready step to the ledger, waits for confirmation and
classifies the outcome. Every attempt is appended to the execution log.
"""

import asyncio
import re
import time
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Pattern, Tuple

import structlog

from ..planner.models import DeploymentStep, StepKind, StepStatus
from .execution_log import ExecutionLog
from .ledger import Ledger
from .models import ErrorCategory, ExecutionResult, Outcome, TransactionHandle

if TYPE_CHECKING:
    from ..planner.deployment_planner import DeploymentPlan

logger = structlog.get_logger(__name__)


class ErrorClassifier:
    """Maps raw ledger error text to an ErrorCategory.

    Patterns are tried in order; the first match wins. Permission and proxy
    patterns come before the generic revert pattern because most reverts
    carry an ``execution reverted`` prefix.
    """

    DEFAULT_PATTERNS: List[Tuple[ErrorCategory, str]] = [
        (ErrorCategory.STORAGE_LAYOUT_MISMATCH, r"storage layout|layout is incompatible"),
        (
            ErrorCategory.NOT_A_PROXY,
            r"doesn'?t look like an? (erc ?1967|administered) proxy|not a proxy",
        ),
        (
            ErrorCategory.INSUFFICIENT_PERMISSION,
            r"is missing role|caller is not the owner|unauthori[sz]ed|forbidden|access denied",
        ),
        (
            ErrorCategory.NONCE_CONFLICT,
            r"nonce too (low|high)|nonce has already been used|replacement transaction underpriced",
        ),
        (ErrorCategory.TIMEOUT, r"timed? ?out"),
        (ErrorCategory.REVERTED, r"revert"),
    ]

    def __init__(self, patterns: Optional[List[Tuple[ErrorCategory, str]]] = None):
        self._patterns: List[Tuple[ErrorCategory, Pattern[str]]] = [
            (category, re.compile(expression, re.IGNORECASE))
            for category, expression in (patterns or self.DEFAULT_PATTERNS)
        ]

    def classify(self, raw_error: Optional[str]) -> ErrorCategory:
        if not raw_error:
            return ErrorCategory.UNKNOWN
        for category, pattern in self._patterns:
            if pattern.search(raw_error):
                return category
        return ErrorCategory.UNKNOWN


class NonceAllocator:
    """Hands out sequential nonces for one signing account.

    Holders of ``lock`` submit one at a time. The counter is seeded from the
    ledger's pending nonce and re-seeded after any rejected submission.
    """

    def __init__(self, ledger: Ledger):
        self.ledger = ledger
        self.lock = asyncio.Lock()
        self._next: Optional[int] = None

    async def reserve(self) -> int:
        """Nonce for the next submission; call while holding ``lock``."""
        if self._next is None:
            self._next = await self.ledger.pending_nonce()
        return self._next

    def commit(self) -> None:
        """Mark the reserved nonce as used."""
        if self._next is not None:
            self._next += 1

    def invalidate(self) -> None:
        """Forget the counter so the next reservation re-reads the ledger."""
        self._next = None


class TransactionExecutor:
    """Executes single steps against a ledger. Never retries."""

    def __init__(
        self,
        ledger: Ledger,
        log: Optional[ExecutionLog] = None,
        confirmation_threshold: int = 1,
        confirmation_timeout: float = 300.0,
        classifier: Optional[ErrorClassifier] = None,
    ):
        """Initialize the executor.

        Args:
            ledger: Ledger adapter to submit through
            log: Execution log, in-memory if not provided
            confirmation_threshold: Confirmations required before success
            confirmation_timeout: Seconds to wait for confirmation
            classifier: Error classifier, uses default patterns if not provided
        """
        self.ledger = ledger
        self.log = log if log is not None else ExecutionLog()
        self.confirmation_threshold = confirmation_threshold
        self.confirmation_timeout = confirmation_timeout
        self.classifier = classifier or ErrorClassifier()
        self.nonces = NonceAllocator(ledger)
        self.workflow: Optional[str] = None
        self.fingerprint: Optional[str] = None
        self.logger = structlog.get_logger(self.__class__.__name__)

    def scope_to(self, workflow: str, fingerprint: str) -> None:
        """Tag the records of following attempts with the run they belong to."""
        self.workflow = workflow
        self.fingerprint = fingerprint

    async def execute(
        self,
        step: DeploymentStep,
        arguments: Dict[str, Any],
        plan: Optional["DeploymentPlan"] = None,
    ) -> ExecutionResult:
        """Submit one step and wait for its outcome.

        Args:
            step: Pending step whose dependencies are confirmed
            arguments: Bound, validated call arguments
            plan: Plan to record produced outputs into

        Returns:
            The ExecutionResult appended to the log
        """
        attempt = self.log.attempts(step.id, self.fingerprint) + 1
        started = time.monotonic()
        self.logger.info(
            "Submitting step",
            step_id=step.id,
            operation=step.operation,
            contract=step.target.logical_name,
            attempt=attempt,
        )

        try:
            handle = await self._submit(step, arguments)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._record_failure(
                step, str(e), attempt=attempt, started=started, transaction_hash=None, nonce=None
            )

        step.transition(StepStatus.SUBMITTED)

        try:
            outcome = await asyncio.wait_for(
                self.ledger.await_confirmation(handle, self.confirmation_threshold),
                timeout=self.confirmation_timeout,
            )
        except asyncio.TimeoutError:
            return self._record_failure(
                step,
                f"confirmation timed out after {self.confirmation_timeout} seconds",
                attempt=attempt,
                started=started,
                transaction_hash=handle.transaction_hash,
                nonce=handle.nonce,
                category=ErrorCategory.TIMEOUT,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return self._record_failure(
                step,
                str(e),
                attempt=attempt,
                started=started,
                transaction_hash=handle.transaction_hash,
                nonce=handle.nonce,
            )

        if not outcome.succeeded:
            return self._record_failure(
                step,
                outcome.error_message or "transaction reverted",
                attempt=attempt,
                started=started,
                transaction_hash=outcome.transaction_hash,
                nonce=handle.nonce,
            )

        return self._record_success(step, handle, outcome, attempt, started, plan)

    async def _submit(self, step: DeploymentStep, arguments: Dict[str, Any]) -> TransactionHandle:
        async with self.nonces.lock:
            nonce = await self.nonces.reserve()
            try:
                handle = await self.ledger.submit(step.target, step.operation, arguments, nonce)
            except Exception:
                self.nonces.invalidate()
                raise
            self.nonces.commit()
        self.logger.debug(
            "Step submitted",
            step_id=step.id,
            transaction_hash=handle.transaction_hash,
            nonce=nonce,
        )
        return handle

    def _record_success(
        self,
        step: DeploymentStep,
        handle: TransactionHandle,
        outcome: Outcome,
        attempt: int,
        started: float,
        plan: Optional["DeploymentPlan"],
    ) -> ExecutionResult:
        if step.kind == StepKind.DEPLOY and "address" in outcome.outputs:
            step.target.bind_address(outcome.outputs["address"])
        if plan is not None:
            plan.record_outputs(step.id, outcome.outputs)

        step.transition(StepStatus.CONFIRMED)
        result = self.log.append(
            ExecutionResult(
                step_id=step.id,
                workflow=self.workflow,
                fingerprint=self.fingerprint,
                transaction_hash=outcome.transaction_hash,
                success=True,
                outputs=outcome.outputs,
                nonce=handle.nonce,
                attempt=attempt,
                duration_seconds=time.monotonic() - started,
            )
        )
        self.logger.info(
            "Step confirmed",
            step_id=step.id,
            transaction_hash=outcome.transaction_hash,
            block_number=outcome.block_number,
            outputs=outcome.outputs,
        )
        return result

    def _record_failure(
        self,
        step: DeploymentStep,
        raw_error: str,
        attempt: int,
        started: float,
        transaction_hash: Optional[str],
        nonce: Optional[int],
        category: Optional[ErrorCategory] = None,
    ) -> ExecutionResult:
        category = category or self.classifier.classify(raw_error)
        step.transition(StepStatus.FAILED)
        result = self.log.append(
            ExecutionResult(
                step_id=step.id,
                workflow=self.workflow,
                fingerprint=self.fingerprint,
                transaction_hash=transaction_hash,
                success=False,
                error_category=category,
                error_message=raw_error,
                nonce=nonce,
                attempt=attempt,
                duration_seconds=time.monotonic() - started,
            )
        )
        self.logger.error(
            "Step failed",
            step_id=step.id,
            error_category=category.value,
            transaction_hash=transaction_hash,
            error=raw_error,
        )
        return result
