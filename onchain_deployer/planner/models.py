"""Planning models for onchain-deployer.

This module defines the declarative workflow definition (what an operator
writes) and the planned step graph (what the orchestrator executes).
"""

from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from ..exceptions import DeployerError


class StepKind(str, Enum):
    """Closed set of step kinds a workflow can contain."""

    DEPLOY = "deploy"
    CONFIGURE = "configure"
    GRANT_ROLE = "grant_role"
    REVOKE_ROLE = "revoke_role"
    TRANSFER = "transfer"
    VERIFY = "verify"
    UPGRADE = "upgrade"


class StepStatus(str, Enum):
    """Lifecycle status of a planned step."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ABORTED = "aborted"


class ParameterDomain(str, Enum):
    """Value domains a bound parameter is validated against."""

    ANY = "any"
    STRING = "string"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    AMOUNT = "amount"
    BASIS_POINTS = "basis_points"
    DURATION = "duration"
    ADDRESS = "address"
    ROLE = "role"


# Default ledger operation invoked for each kind when a step names none.
DEFAULT_OPERATIONS: Dict[StepKind, str] = {
    StepKind.DEPLOY: "deploy",
    StepKind.GRANT_ROLE: "grantRole",
    StepKind.REVOKE_ROLE: "revokeRole",
    StepKind.TRANSFER: "transferOwnership",
    StepKind.UPGRADE: "upgradeProxy",
}

ROLE_STEP_KINDS = frozenset({StepKind.GRANT_ROLE, StepKind.REVOKE_ROLE})


class LiteralSource(BaseModel):
    """A value written directly into the workflow definition."""

    source: Literal["literal"] = "literal"
    value: Any = Field(..., description="Literal value")


class EnvironmentSource(BaseModel):
    """A value looked up in the deployment configuration."""

    source: Literal["environment"] = "environment"
    key: str = Field(..., description="Configuration key")
    default: Optional[Any] = Field(None, description="Fallback when the key is absent")

    @property
    def has_default(self) -> bool:
        """Whether a default was declared (``None`` is a legal default)."""
        return "default" in self.model_fields_set


class StepOutputSource(BaseModel):
    """A value produced by an earlier step once it is confirmed."""

    source: Literal["step_output"] = "step_output"
    step_id: str = Field(..., description="Producing step id")
    output: str = Field("address", description="Output field of the producing step")


ParameterSource = Annotated[
    Union[LiteralSource, EnvironmentSource, StepOutputSource],
    Field(discriminator="source"),
]


class ParameterSpec(BaseModel):
    """A parameter source together with the domain its value must satisfy.

    Workflow files may use a shorthand form::

        buy_tax: {env: BUY_TAX, type: basis_points}
        router: {step: deploy_router, output: address}
        supply: {value: 1000000, type: amount}
        label: "plain literal"
    """

    source: ParameterSource
    domain: ParameterDomain = Field(ParameterDomain.ANY, description="Value domain")

    @model_validator(mode="before")
    @classmethod
    def expand_shorthand(cls, data: Any) -> Any:
        """Expand the compact YAML forms into the tagged representation."""
        if not isinstance(data, dict):
            return {"source": {"source": "literal", "value": data}}
        if "source" in data:
            return data

        data = dict(data)
        domain = data.pop("type", data.pop("domain", ParameterDomain.ANY))

        if "env" in data:
            source: Dict[str, Any] = {"source": "environment", "key": data["env"]}
            if "default" in data:
                source["default"] = data["default"]
        elif "step" in data:
            source = {
                "source": "step_output",
                "step_id": data["step"],
                "output": data.get("output", data.get("field", "address")),
            }
        elif "value" in data:
            source = {"source": "literal", "value": data["value"]}
        else:
            # A mapping without a recognised key is itself a literal value
            # (struct-like arguments such as launch parameters).
            return {"source": {"source": "literal", "value": data}, "domain": domain}

        return {"source": source, "domain": domain}

    @property
    def is_deferred(self) -> bool:
        """Whether resolution waits for another step to confirm."""
        return isinstance(self.source, StepOutputSource)


class StepCondition(BaseModel):
    """Inclusion predicate evaluated against the deployment configuration."""

    env: str = Field(..., description="Configuration key to inspect")
    equals: Optional[str] = Field(None, description="Include when the value equals this")
    present: Optional[bool] = Field(
        None, description="Include when the key is (or is not) set"
    )

    def evaluate(self, values: Dict[str, Any]) -> bool:
        """Evaluate the predicate against configuration values."""
        raw = values.get(self.env)
        is_set = raw is not None and str(raw).strip() != ""

        if self.present is not None:
            return is_set == self.present
        if self.equals is not None:
            return is_set and str(raw).strip() == self.equals
        return is_set and str(raw).strip().lower() in {"1", "true", "yes", "on"}


class CheckKind(str, Enum):
    """Read-only check kinds supported by the verification stage."""

    HAS_ROLE = "has_role"
    BALANCE = "balance"
    VOTING_POWER = "voting_power"
    OWNER = "owner"
    READ = "read"


class CheckSpec(BaseModel):
    """A read-only sanity check against a deployed contract."""

    check: CheckKind = Field(..., description="Kind of check")
    target: str = Field(..., description="Logical contract name")
    query: Optional[str] = Field(None, description="Read query for generic checks")
    params: Dict[str, ParameterSpec] = Field(default_factory=dict)
    expect: Optional[Any] = Field(None, description="Expected value")
    minimum: Optional[int] = Field(None, description="Lower bound for numeric reads")
    description: Optional[str] = Field(None, description="Human-readable description")


class ContractSpec(BaseModel):
    """Declaration of a contract taking part in a workflow."""

    capability: str = Field("generic", description="Capability tag")
    artifact: Optional[str] = Field(None, description="Contract artifact name")
    address: Optional[ParameterSpec] = Field(
        None, description="Address source for contracts that already exist"
    )

    @field_validator("address")
    @classmethod
    def force_address_domain(cls, value: Optional[ParameterSpec]) -> Optional[ParameterSpec]:
        if value is not None:
            value.domain = ParameterDomain.ADDRESS
        return value


class OperationSpec(BaseModel):
    """One named operation in a workflow definition."""

    id: str = Field(..., description="Unique step id")
    kind: StepKind = Field(..., description="Step kind")
    target: str = Field(..., description="Logical name of the target contract")
    operation: Optional[str] = Field(None, description="Ledger operation name")
    depends_on: List[str] = Field(default_factory=list)
    params: Dict[str, ParameterSpec] = Field(default_factory=dict)
    when: Optional[StepCondition] = Field(None, description="Inclusion predicate")
    paired_with: Optional[str] = Field(
        None, description="Grant step a revoke is conditioned on"
    )
    checks: List[CheckSpec] = Field(default_factory=list)
    description: Optional[str] = None

    @model_validator(mode="after")
    def validate_kind_shape(self) -> "OperationSpec":
        if self.kind in ROLE_STEP_KINDS:
            missing = [name for name in ("role", "account") if name not in self.params]
            if missing:
                raise ValueError(
                    f"{self.kind.value} step '{self.id}' requires params: {', '.join(missing)}"
                )
            self.params["role"].domain = ParameterDomain.ROLE
            self.params["account"].domain = ParameterDomain.ADDRESS
        if self.paired_with and self.kind != StepKind.REVOKE_ROLE:
            raise ValueError(f"Only revoke_role steps may set paired_with ('{self.id}')")
        if self.kind == StepKind.CONFIGURE and not self.operation:
            raise ValueError(f"configure step '{self.id}' must name an operation")
        return self


class WorkflowDefinition(BaseModel):
    """A complete declarative workflow."""

    name: str = Field(..., description="Workflow name")
    description: str = Field("", description="What the workflow does")
    contracts: Dict[str, ContractSpec] = Field(default_factory=dict)
    steps: List[OperationSpec] = Field(default_factory=list)
    verify: List[CheckSpec] = Field(default_factory=list)
    admin_roles: List[str] = Field(
        default_factory=lambda: ["DEFAULT_ADMIN_ROLE", "ADMIN_ROLE"],
        description="Roles whose holders administer a contract",
    )


class ContractReference(BaseModel):
    """Runtime handle for a contract; the address is a write-once cell."""

    logical_name: str = Field(..., description="Logical contract name")
    capability: str = Field("generic", description="Capability tag")
    artifact: Optional[str] = Field(None, description="Contract artifact name")
    address: Optional[str] = Field(None, description="Resolved address")
    produced_by: Optional[str] = Field(None, description="Deploy step producing it")

    @property
    def is_resolved(self) -> bool:
        return self.address is not None

    def bind_address(self, address: str) -> None:
        """Set the address once; rebinding to a different value is an error."""
        if self.address is not None:
            if self.address.lower() == address.lower():
                return
            raise ConfigurationError(
                f"Contract '{self.logical_name}' is already bound to {self.address}",
                details={
                    "contract": self.logical_name,
                    "bound_address": self.address,
                    "rejected_address": address,
                },
            )
        self.address = address

    def __str__(self) -> str:
        return f"{self.logical_name}@{self.address or '<unresolved>'}"


_ALLOWED_TRANSITIONS: Dict[StepStatus, FrozenSet[StepStatus]] = {
    StepStatus.PENDING: frozenset(
        {StepStatus.SUBMITTED, StepStatus.FAILED, StepStatus.ABORTED, StepStatus.CONFIRMED}
    ),
    StepStatus.SUBMITTED: frozenset({StepStatus.CONFIRMED, StepStatus.FAILED}),
    StepStatus.CONFIRMED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.ABORTED: frozenset(),
}


class DeploymentStep(BaseModel):
    """A planned step. Only its status changes after planning."""

    id: str
    kind: StepKind
    target: ContractReference
    operation: str
    depends_on: FrozenSet[str] = Field(default_factory=frozenset)
    params: Dict[str, ParameterSpec] = Field(default_factory=dict)
    paired_with: Optional[str] = None
    checks: List[CheckSpec] = Field(default_factory=list)
    description: Optional[str] = None
    status: StepStatus = StepStatus.PENDING

    def transition(self, new_status: StepStatus) -> None:
        """Move to a new status, rejecting transitions the lifecycle forbids."""
        if new_status == self.status:
            return
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise StepStateError(
                f"Step '{self.id}' cannot move from {self.status.value} to {new_status.value}",
                step_id=self.id,
            )
        self.status = new_status

    @property
    def is_terminal(self) -> bool:
        return self.status in (StepStatus.CONFIRMED, StepStatus.FAILED, StepStatus.ABORTED)

    def __str__(self) -> str:
        return f"{self.id} [{self.kind.value} {self.operation} -> {self.target.logical_name}]"


class ConfigurationError(DeployerError):
    """Raised for malformed workflows or unresolved references."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONFIGURATION_ERROR", details)


class StepStateError(DeployerError):
    """Raised when a step is driven through a forbidden status change."""

    def __init__(self, message: str, step_id: str):
        super().__init__(message, "STEP_STATE_ERROR", {"step_id": step_id})
