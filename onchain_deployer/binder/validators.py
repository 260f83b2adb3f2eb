"""Domain validation for bound parameters.

Every resolved value is coerced into the Python type of its domain or
rejected with a ValidationError before anything is submitted.
"""

import re
from typing import Any, Optional

import structlog

from ..planner.models import ParameterDomain
from .models import ValidationError

logger = structlog.get_logger(__name__)


class DomainRules:
    """Limits and patterns applied by the parameter validator."""

    MAX_BASIS_POINTS = 10000

    ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
    ROLE_NAME_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*_ROLE$")
    ROLE_ID_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
    INTEGER_PATTERN = re.compile(r"^[+-]?\d+$")

    ZERO_ADDRESS = "0x" + "0" * 40

    # Values that stand in for configuration nobody filled in
    PLACEHOLDER_PATTERNS = [
        r".*placeholder.*",
        r".*your[_-].*",
        r"^<.*>$",
        r"^0x\.\.\.$",
        r"^(todo|tbd|changeme|xxx+)$",
    ]

    TRUE_VALUES = {"true", "1", "yes", "on"}
    FALSE_VALUES = {"false", "0", "no", "off"}


class ParameterValidator:
    """Coerces resolved values into their declared domains."""

    def __init__(self, rules: Optional[DomainRules] = None):
        """Initialize the validator.

        Args:
            rules: Domain rules, uses defaults if not provided
        """
        self.rules = rules or DomainRules()
        self._placeholders = [
            re.compile(pattern, re.IGNORECASE) for pattern in self.rules.PLACEHOLDER_PATTERNS
        ]

    def coerce(
        self,
        name: str,
        value: Any,
        domain: ParameterDomain,
        step_id: Optional[str] = None,
    ) -> Any:
        """Validate a value against a domain and return its typed form.

        Args:
            name: Parameter name (for error reporting)
            value: Resolved raw value
            domain: Domain the value must satisfy
            step_id: Owning step id (for error reporting)

        Returns:
            The value converted to the domain's Python type

        Raises:
            ValidationError: If the value is outside the domain
        """
        if domain == ParameterDomain.ANY:
            return value

        handler = {
            ParameterDomain.STRING: self._coerce_string,
            ParameterDomain.INTEGER: self._coerce_integer,
            ParameterDomain.BOOLEAN: self._coerce_boolean,
            ParameterDomain.AMOUNT: self._coerce_non_negative,
            ParameterDomain.DURATION: self._coerce_non_negative,
            ParameterDomain.BASIS_POINTS: self._coerce_basis_points,
            ParameterDomain.ADDRESS: self._coerce_address,
            ParameterDomain.ROLE: self._coerce_role,
        }[domain]

        try:
            return handler(value)
        except (TypeError, ValueError) as e:
            logger.debug(
                "Parameter rejected",
                parameter=name,
                domain=domain.value,
                step_id=step_id,
                reason=str(e),
            )
            raise ValidationError(
                f"Parameter '{name}' of step '{step_id}' is not a valid {domain.value}: {e}",
                parameter=name,
                domain=domain.value,
                value=value,
                step_id=step_id,
            ) from e

    def is_placeholder(self, value: Any) -> bool:
        """Check whether a value looks like an unfilled placeholder."""
        if not isinstance(value, str):
            return False
        text = value.strip()
        return any(pattern.match(text) for pattern in self._placeholders)

    def _coerce_string(self, value: Any) -> str:
        if value is None:
            raise ValueError("value is empty")
        return str(value)

    def _coerce_integer(self, value: Any) -> int:
        if isinstance(value, bool) or value is None:
            raise TypeError(f"expected an integer, got {type(value).__name__}")
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(f"{value} is not a whole number")
            return int(value)
        text = str(value).strip().replace("_", "")
        if not self.rules.INTEGER_PATTERN.match(text):
            raise ValueError(f"'{value}' is not an integer")
        return int(text)

    def _coerce_non_negative(self, value: Any) -> int:
        number = self._coerce_integer(value)
        if number < 0:
            raise ValueError(f"{number} is negative")
        return number

    def _coerce_basis_points(self, value: Any) -> int:
        number = self._coerce_integer(value)
        if not 0 <= number <= self.rules.MAX_BASIS_POINTS:
            raise ValueError(
                f"{number} is outside [0, {self.rules.MAX_BASIS_POINTS}] basis points"
            )
        return number

    def _coerce_boolean(self, value: Any) -> bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in self.rules.TRUE_VALUES:
            return True
        if text in self.rules.FALSE_VALUES:
            return False
        raise ValueError(f"'{value}' is not a boolean")

    def _coerce_address(self, value: Any) -> str:
        if not isinstance(value, str):
            raise TypeError(f"expected an address string, got {type(value).__name__}")
        text = value.strip()
        if self.is_placeholder(text):
            raise ValueError(f"'{text}' is a placeholder, not an address")
        if not self.rules.ADDRESS_PATTERN.match(text):
            raise ValueError(f"'{text}' does not match 0x followed by 40 hex characters")
        if text.lower() == self.rules.ZERO_ADDRESS:
            raise ValueError("the zero address is not a usable address")
        return text

    def _coerce_role(self, value: Any) -> str:
        if not isinstance(value, str):
            raise TypeError(f"expected a role name or id, got {type(value).__name__}")
        text = value.strip()
        if self.rules.ROLE_NAME_PATTERN.match(text) or self.rules.ROLE_ID_PATTERN.match(text):
            return text
        raise ValueError(f"'{text}' is neither a role name nor a 32-byte role id")
