"""Deployment planning for onchain-deployer.

This module validates a workflow definition against the deployment
configuration and produces a DeploymentPlan: an acyclic step graph with a
deterministic execution order. All checks happen here, before any network
effect.
"""

import hashlib
import heapq
import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import structlog

from ..binder.models import DeploymentConfig
from .models import (
    DEFAULT_OPERATIONS,
    CheckSpec,
    ConfigurationError,
    ContractReference,
    DeploymentStep,
    OperationSpec,
    ParameterSpec,
    StepKind,
    StepOutputSource,
    StepStatus,
    WorkflowDefinition,
)

logger = structlog.get_logger(__name__)

_WHITE, _GREY, _BLACK = 0, 1, 2


class DeploymentPlan:
    """A validated, ordered step graph for one workflow run."""

    def __init__(
        self,
        workflow_name: str,
        steps: List[DeploymentStep],
        contracts: Dict[str, ContractReference],
        contract_sources: Dict[str, ParameterSpec],
        skipped_steps: List[str],
        verify_checks: List[CheckSpec],
        admin_roles: List[str],
    ):
        self.workflow_name = workflow_name
        self._steps: Dict[str, DeploymentStep] = {step.id: step for step in steps}
        self.contracts = contracts
        self.contract_sources = contract_sources
        self.skipped_steps = skipped_steps
        self.verify_checks = verify_checks
        self.admin_roles = admin_roles
        self.outputs: Dict[str, Dict[str, Any]] = {}

        self._dependents: Dict[str, Set[str]] = {step.id: set() for step in steps}
        for step in steps:
            for dependency in step.depends_on:
                self._dependents[dependency].add(step.id)

    @property
    def steps(self) -> List[DeploymentStep]:
        """Steps in resolved execution order."""
        return list(self._steps.values())

    @property
    def order(self) -> List[str]:
        return list(self._steps)

    def get(self, step_id: str) -> DeploymentStep:
        try:
            return self._steps[step_id]
        except KeyError:
            raise ConfigurationError(f"Unknown step '{step_id}'") from None

    def find(self, step_id: str) -> Optional[DeploymentStep]:
        return self._steps.get(step_id)

    def is_ready(self, step: DeploymentStep) -> bool:
        """A pending step whose dependencies have all confirmed."""
        return step.status == StepStatus.PENDING and all(
            self._steps[dependency].status == StepStatus.CONFIRMED
            for dependency in step.depends_on
        )

    def ready_steps(self) -> List[DeploymentStep]:
        return [step for step in self._steps.values() if self.is_ready(step)]

    def dependents_of(self, step_id: str) -> Set[str]:
        """All steps whose dependency set transitively includes step_id."""
        seen: Set[str] = set()
        stack = list(self._dependents.get(step_id, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current])
        return seen

    def record_outputs(self, step_id: str, outputs: Dict[str, Any]) -> None:
        self.outputs[step_id] = dict(outputs)

    def steps_with_status(self, status: StepStatus) -> List[str]:
        return [step.id for step in self._steps.values() if step.status == status]

    def fingerprint(self, config: Optional[Mapping[str, Any]] = None) -> str:
        """Stable digest of the plan's structure, independent of run state.

        Args:
            config: Configuration values the plan reads; when given they are
                part of the digest, so a changed value yields a new fingerprint
        """
        payload = [
            {
                "id": step.id,
                "kind": step.kind.value,
                "target": step.target.logical_name,
                "operation": step.operation,
                "depends_on": sorted(step.depends_on),
                "params": {
                    name: spec.model_dump(mode="json") for name, spec in step.params.items()
                },
            }
            for step in self._steps.values()
        ]
        document: Dict[str, Any] = {"workflow": self.workflow_name, "steps": payload}
        if config is not None:
            document["config"] = {key: str(value) for key, value in config.items()}
        encoded = json.dumps(document, sort_keys=True, default=str)
        return hashlib.sha256(encoded.encode()).hexdigest()[:16]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "workflow": self.workflow_name,
            "fingerprint": self.fingerprint(),
            "order": self.order,
            "skipped": list(self.skipped_steps),
            "steps": [
                {
                    "id": step.id,
                    "kind": step.kind.value,
                    "operation": step.operation,
                    "target": step.target.logical_name,
                    "depends_on": sorted(step.depends_on),
                    "status": step.status.value,
                }
                for step in self._steps.values()
            ],
        }


class DeploymentPlanner:
    """Builds validated step graphs from workflow definitions."""

    def __init__(self, config: DeploymentConfig):
        """Initialize the planner.

        Args:
            config: Deployment configuration used to evaluate inclusion predicates
        """
        self.config = config
        self.logger = structlog.get_logger(self.__class__.__name__)

    def plan(self, workflow: WorkflowDefinition) -> DeploymentPlan:
        """Validate a workflow and resolve its execution order.

        Args:
            workflow: Declarative workflow definition

        Returns:
            DeploymentPlan with steps in execution order

        Raises:
            ConfigurationError: On unknown references, omitted dependencies or cycles
        """
        self.logger.info(
            "Planning workflow", workflow=workflow.name, operations=len(workflow.steps)
        )

        self._check_unique_ids(workflow.steps)
        definitions = {op.id: op for op in workflow.steps}
        index = {op.id: position for position, op in enumerate(workflow.steps)}

        included = [
            op
            for op in workflow.steps
            if op.when is None or op.when.evaluate(self.config.values)
        ]
        included_ids = {op.id for op in included}
        skipped = [op.id for op in workflow.steps if op.id not in included_ids]
        if skipped:
            self.logger.info("Steps omitted by predicate", workflow=workflow.name, skipped=skipped)

        contracts, contract_sources = self._build_contracts(workflow, included)

        dependencies: Dict[str, Set[str]] = {}
        for op in included:
            deps = self._collect_dependencies(op, contracts)
            for dependency in sorted(deps):
                if dependency in included_ids:
                    continue
                if dependency in definitions:
                    raise ConfigurationError(
                        f"Step '{op.id}' depends on '{dependency}', which is omitted by its predicate",
                        details={"step_id": op.id, "dependency": dependency},
                    )
                raise ConfigurationError(
                    f"Step '{op.id}' references unknown step '{dependency}'",
                    details={"step_id": op.id, "dependency": dependency},
                )
            dependencies[op.id] = deps

        for op in included:
            if op.paired_with:
                self._check_pairing(op, definitions[op.paired_with])

        for check in workflow.verify:
            self._check_target_known(check.target, contracts, "verify section")

        self._detect_cycles(included, dependencies)
        order = self._topological_order(included, dependencies, index)

        steps = [
            DeploymentStep(
                id=op.id,
                kind=op.kind,
                target=contracts[op.target],
                operation=op.operation or DEFAULT_OPERATIONS.get(op.kind, op.kind.value),
                depends_on=frozenset(dependencies[op.id]),
                params=op.params,
                paired_with=op.paired_with,
                checks=op.checks,
                description=op.description,
            )
            for op in (definitions[step_id] for step_id in order)
        ]

        plan = DeploymentPlan(
            workflow_name=workflow.name,
            steps=steps,
            contracts=contracts,
            contract_sources=contract_sources,
            skipped_steps=skipped,
            verify_checks=list(workflow.verify),
            admin_roles=list(workflow.admin_roles),
        )

        self.logger.info(
            "Workflow planned",
            workflow=workflow.name,
            steps=len(steps),
            skipped=len(skipped),
            fingerprint=plan.fingerprint(),
        )
        return plan

    def _check_unique_ids(self, operations: List[OperationSpec]) -> None:
        seen: Set[str] = set()
        for op in operations:
            if op.id in seen:
                raise ConfigurationError(f"Duplicate step id '{op.id}'", details={"step_id": op.id})
            seen.add(op.id)

    def _build_contracts(
        self, workflow: WorkflowDefinition, included: List[OperationSpec]
    ) -> Tuple[Dict[str, ContractReference], Dict[str, ParameterSpec]]:
        contracts: Dict[str, ContractReference] = {}
        for name, spec in workflow.contracts.items():
            contracts[name] = ContractReference(
                logical_name=name, capability=spec.capability, artifact=spec.artifact
            )

        for op in included:
            self._check_target_known(op.target, contracts, f"step '{op.id}'")
            for check in op.checks:
                self._check_target_known(check.target, contracts, f"step '{op.id}'")
            if op.kind != StepKind.DEPLOY:
                continue
            reference = contracts[op.target]
            if reference.produced_by is not None:
                raise ConfigurationError(
                    f"Contract '{op.target}' is deployed by both '{reference.produced_by}' and '{op.id}'",
                    details={"contract": op.target},
                )
            reference.produced_by = op.id

        contract_sources: Dict[str, ParameterSpec] = {}
        used = {op.target for op in included}
        used.update(check.target for op in included for check in op.checks)
        used.update(check.target for check in workflow.verify)

        for name, spec in workflow.contracts.items():
            reference = contracts[name]
            if reference.produced_by is not None:
                continue
            if spec.address is not None:
                contract_sources[name] = spec.address
            elif name in used:
                raise ConfigurationError(
                    f"Contract '{name}' has neither an included deploy step nor a configured address",
                    details={"contract": name},
                )

        return contracts, contract_sources

    def _check_target_known(
        self, target: str, contracts: Dict[str, ContractReference], where: str
    ) -> None:
        if target not in contracts:
            raise ConfigurationError(
                f"Unknown contract '{target}' referenced by {where}",
                details={"contract": target},
            )

    def _collect_dependencies(
        self, op: OperationSpec, contracts: Dict[str, ContractReference]
    ) -> Set[str]:
        deps = set(op.depends_on)
        deps.update(self._output_references(op.params.values()))
        for check in op.checks:
            deps.update(self._output_references(check.params.values()))
            producer = contracts[check.target].produced_by
            if producer and producer != op.id:
                deps.add(producer)

        producer = contracts[op.target].produced_by
        if producer and producer != op.id:
            deps.add(producer)
        if op.paired_with:
            deps.add(op.paired_with)
        return deps

    def _output_references(self, specs: Iterable[ParameterSpec]) -> Set[str]:
        return {
            spec.source.step_id for spec in specs if isinstance(spec.source, StepOutputSource)
        }

    def _check_pairing(self, revoke: OperationSpec, grant: OperationSpec) -> None:
        if grant.kind != StepKind.GRANT_ROLE:
            raise ConfigurationError(
                f"Revoke '{revoke.id}' is paired with '{grant.id}', which is not a grant_role step",
                details={"step_id": revoke.id, "paired_with": grant.id},
            )
        if grant.target != revoke.target:
            raise ConfigurationError(
                f"Revoke '{revoke.id}' and grant '{grant.id}' target different contracts",
                details={"step_id": revoke.id, "paired_with": grant.id},
            )
        if grant.params["role"].model_dump() != revoke.params["role"].model_dump():
            raise ConfigurationError(
                f"Revoke '{revoke.id}' and grant '{grant.id}' name different roles",
                details={"step_id": revoke.id, "paired_with": grant.id},
            )

    def _detect_cycles(
        self, operations: List[OperationSpec], dependencies: Dict[str, Set[str]]
    ) -> None:
        """Depth-first search with three-colour marking."""
        colour = {op.id: _WHITE for op in operations}
        path: List[str] = []

        def visit(node: str) -> None:
            colour[node] = _GREY
            path.append(node)
            for dependency in sorted(dependencies[node]):
                if colour[dependency] == _GREY:
                    cycle = path[path.index(dependency):] + [dependency]
                    raise ConfigurationError(
                        f"Dependency cycle detected: {' -> '.join(cycle)}",
                        details={"cycle": cycle},
                    )
                if colour[dependency] == _WHITE:
                    visit(dependency)
            path.pop()
            colour[node] = _BLACK

        for op in operations:
            if colour[op.id] == _WHITE:
                visit(op.id)

    def _topological_order(
        self,
        operations: List[OperationSpec],
        dependencies: Dict[str, Set[str]],
        index: Dict[str, int],
    ) -> List[str]:
        """Kahn's algorithm; ties resolve to definition order."""
        remaining = {op.id: len(dependencies[op.id]) for op in operations}
        dependents: Dict[str, List[str]] = {op.id: [] for op in operations}
        for op in operations:
            for dependency in dependencies[op.id]:
                dependents[dependency].append(op.id)

        heap = [(index[step_id], step_id) for step_id, count in remaining.items() if count == 0]
        heapq.heapify(heap)
        order: List[str] = []

        while heap:
            _, step_id = heapq.heappop(heap)
            order.append(step_id)
            for dependent in dependents[step_id]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(heap, (index[dependent], dependent))

        return order
