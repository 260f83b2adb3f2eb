"""Parameter binding for planned steps.

This module turns each step's parameter sources (literals, configuration keys
and outputs of earlier steps) into typed call arguments immediately before
submission, and preflights a whole plan so that configuration problems surface
before anything reaches the ledger.
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

import structlog

from ..planner.models import (
    CheckSpec,
    ConfigurationError,
    DeploymentStep,
    EnvironmentSource,
    LiteralSource,
    ParameterSpec,
    StepOutputSource,
    StepStatus,
)
from .models import (
    BindingResult,
    BindingStatus,
    DeploymentConfig,
    MissingParameterError,
)
from .validators import ParameterValidator

if TYPE_CHECKING:
    from ..planner.deployment_planner import DeploymentPlan

logger = structlog.get_logger(__name__)

_NOT_READY = object()


class ParameterBinder:
    """Resolves parameter sources into validated, typed values."""

    def __init__(
        self,
        config: DeploymentConfig,
        validator: Optional[ParameterValidator] = None,
    ):
        """Initialize the binder.

        Args:
            config: Validated deployment configuration
            validator: Domain validator, uses defaults if not provided
        """
        self.config = config
        self.validator = validator or ParameterValidator()
        self.logger = structlog.get_logger(self.__class__.__name__)

    def bind(self, step: DeploymentStep, plan: "DeploymentPlan") -> BindingResult:
        """Bind all parameters of a step.

        Args:
            step: Step whose parameters to bind
            plan: Plan holding step statuses and confirmed outputs

        Returns:
            BindingResult, NOT_READY when a referenced step is not yet confirmed

        Raises:
            MissingParameterError: If configuration keys are absent without default
            ValidationError: If a value is outside its domain
        """
        return self._bind_mapping(step.id, step.params, plan)

    def bind_check(self, check: CheckSpec, plan: "DeploymentPlan") -> BindingResult:
        """Bind the parameters of a read-only verification check."""
        return self._bind_mapping(f"check:{check.target}", check.params, plan)

    def preflight(self, plan: "DeploymentPlan") -> None:
        """Validate every parameter that can be resolved before execution.

        Binds configuration-sourced contract addresses and checks every
        literal and configuration parameter of every step and check. Outputs
        of other steps are skipped; they are checked when their step binds.

        Raises:
            MissingParameterError: Listing every absent key across the plan
            ValidationError: For the first out-of-domain value found
        """
        self.logger.info(
            "Preflighting plan",
            workflow=plan.workflow_name,
            steps=len(plan.steps),
            config_source=self.config.source_description,
        )

        missing = sorted(self._missing_keys(plan))
        if missing:
            self.logger.error("Required configuration missing", keys=missing)
            raise MissingParameterError(
                f"Missing required configuration: {', '.join(missing)}", keys=missing
            )

        for name, spec in plan.contract_sources.items():
            address = self._resolve_immediate(f"{name}.address", spec, step_id=None)
            plan.contracts[name].bind_address(address)

        for step in plan.steps:
            for param_name, spec in step.params.items():
                if not spec.is_deferred:
                    self._resolve_immediate(param_name, spec, step_id=step.id)
            for check in step.checks:
                self._preflight_check(check, step.id)

        for check in plan.verify_checks:
            self._preflight_check(check, None)

        self.logger.info("Preflight passed", workflow=plan.workflow_name)

    def _preflight_check(self, check: CheckSpec, step_id: Optional[str]) -> None:
        for param_name, spec in check.params.items():
            if not spec.is_deferred:
                self._resolve_immediate(param_name, spec, step_id=step_id)

    def config_snapshot(self, plan: "DeploymentPlan") -> Dict[str, Any]:
        """Configuration values the plan reads, keyed by name."""
        keys = sorted({source.key for source in self._environment_sources(plan)})
        return {key: self.config.get(key) for key in keys if self.config.has(key)}

    def _environment_sources(self, plan: "DeploymentPlan") -> List[EnvironmentSource]:
        specs: List[ParameterSpec] = list(plan.contract_sources.values())
        for step in plan.steps:
            specs.extend(step.params.values())
            for check in step.checks:
                specs.extend(check.params.values())
        for check in plan.verify_checks:
            specs.extend(check.params.values())
        return [spec.source for spec in specs if isinstance(spec.source, EnvironmentSource)]

    def _missing_keys(self, plan: "DeploymentPlan") -> List[str]:
        required = [
            source.key for source in self._environment_sources(plan) if not source.has_default
        ]
        return self.config.missing(required)

    def _bind_mapping(
        self,
        owner_id: str,
        params: Dict[str, ParameterSpec],
        plan: "DeploymentPlan",
    ) -> BindingResult:
        arguments: Dict[str, Any] = {}
        waiting_on: List[str] = []
        missing: List[str] = []

        for name, spec in params.items():
            source = spec.source
            if isinstance(source, EnvironmentSource):
                if not self.config.has(source.key) and not source.has_default:
                    missing.append(source.key)
                    continue

            if isinstance(source, StepOutputSource):
                ready, raw = self._resolve_output(source, plan)
                if not ready:
                    waiting_on.append(source.step_id)
                    continue
                arguments[name] = self.validator.coerce(name, raw, spec.domain, owner_id)
            else:
                arguments[name] = self._resolve_immediate(name, spec, owner_id)

        if missing:
            raise MissingParameterError(
                f"Step '{owner_id}' is missing configuration: {', '.join(sorted(missing))}",
                keys=sorted(missing),
                step_id=owner_id,
            )

        if waiting_on:
            self.logger.debug(
                "Binding deferred", step_id=owner_id, waiting_on=sorted(set(waiting_on))
            )
            return BindingResult(
                step_id=owner_id,
                status=BindingStatus.NOT_READY,
                waiting_on=sorted(set(waiting_on)),
            )

        return BindingResult(step_id=owner_id, status=BindingStatus.READY, arguments=arguments)

    def _resolve_immediate(
        self, name: str, spec: ParameterSpec, step_id: Optional[str]
    ) -> Any:
        source = spec.source
        if isinstance(source, LiteralSource):
            raw = source.value
        elif isinstance(source, EnvironmentSource):
            if self.config.has(source.key):
                raw = self.config.get(source.key)
            elif source.has_default:
                raw = source.default
            else:
                raise MissingParameterError(
                    f"Configuration key '{source.key}' is not set",
                    keys=[source.key],
                    step_id=step_id,
                )
        else:
            raise ConfigurationError(
                f"Parameter '{name}' depends on step '{source.step_id}' and cannot be resolved up front"
            )
        return self.validator.coerce(name, raw, spec.domain, step_id)

    def _resolve_output(
        self, source: StepOutputSource, plan: "DeploymentPlan"
    ) -> Tuple[bool, Any]:
        producer = plan.find(source.step_id)
        if producer is None:
            raise ConfigurationError(
                f"Output reference to unknown step '{source.step_id}'",
                details={"step_id": source.step_id},
            )
        if producer.status != StepStatus.CONFIRMED:
            return False, _NOT_READY

        outputs = plan.outputs.get(source.step_id, {})
        if source.output not in outputs:
            raise ConfigurationError(
                f"Step '{source.step_id}' confirmed without producing '{source.output}'",
                details={"step_id": source.step_id, "available": sorted(outputs)},
            )
        return True, outputs[source.output]
