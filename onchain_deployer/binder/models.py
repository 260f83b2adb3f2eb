"""Binding models for onchain-deployer.

This module defines the validated deployment configuration object and the
errors and results produced while binding parameters.
"""

import os
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, Field

from ..exceptions import DeployerError


class DeploymentConfig(BaseModel):
    """Named configuration values for one workflow run.

    Constructed once up front and passed explicitly to the planner and the
    binder. Values are kept as given (usually strings from the environment);
    typing happens at bind time against each parameter's domain.
    """

    values: Dict[str, Any] = Field(default_factory=dict, description="Named values")
    source_description: str = Field("explicit", description="Where the values came from")

    @classmethod
    def from_environment(
        cls,
        env_file: Optional[str] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "DeploymentConfig":
        """Build configuration from a .env file, the process environment and overrides.

        Later sources win: .env file < environment < overrides.

        Args:
            env_file: Optional path to a dotenv file
            overrides: Explicit values (e.g. from the command line)
            environ: Environment mapping, defaults to ``os.environ``

        Returns:
            DeploymentConfig with merged values
        """
        values: Dict[str, Any] = {}
        sources: List[str] = []

        if env_file:
            values.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
            sources.append(f"dotenv:{env_file}")

        values.update(dict(os.environ if environ is None else environ))
        sources.append("environment")

        if overrides:
            values.update(overrides)
            sources.append("overrides")

        return cls(values=values, source_description="+".join(sources))

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def has(self, key: str) -> bool:
        """Whether a key is present with a non-empty value."""
        value = self.values.get(key)
        return value is not None and str(value).strip() != ""

    def missing(self, keys: Iterable[str]) -> List[str]:
        """Return the keys that are absent or empty."""
        return sorted({key for key in keys if not self.has(key)})


class BindingStatus(str, Enum):
    """Outcome of binding a step's parameters."""

    READY = "ready"
    NOT_READY = "not_ready"


class BindingResult(BaseModel):
    """Result of binding one step's parameters."""

    step_id: str = Field(..., description="Bound step id")
    status: BindingStatus = Field(..., description="Binding outcome")
    arguments: Dict[str, Any] = Field(default_factory=dict, description="Typed arguments")
    waiting_on: List[str] = Field(
        default_factory=list, description="Step ids whose outputs are not yet confirmed"
    )

    @property
    def is_ready(self) -> bool:
        return self.status == BindingStatus.READY


class MissingParameterError(DeployerError):
    """Raised when a required configuration value is absent."""

    def __init__(self, message: str, keys: List[str], step_id: Optional[str] = None):
        super().__init__(message, "MISSING_PARAMETER")
        self.keys = keys
        self.step_id = step_id
        self.details = {"keys": keys, "step_id": step_id}


class ValidationError(DeployerError):
    """Raised when a resolved value falls outside its domain."""

    def __init__(
        self,
        message: str,
        parameter: str,
        domain: str,
        value: Any = None,
        step_id: Optional[str] = None,
    ):
        super().__init__(message, "VALIDATION_ERROR")
        self.parameter = parameter
        self.domain = domain
        self.value = value
        self.step_id = step_id
        self.details = {
            "parameter": parameter,
            "domain": domain,
            "value": repr(value),
            "step_id": step_id,
        }
