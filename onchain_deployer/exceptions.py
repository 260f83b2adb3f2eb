"""Base exception for onchain-deployer."""

from typing import Any, Dict, Optional


class DeployerError(Exception):
    """Base exception for all orchestration errors."""

    def __init__(
        self,
        message: str,
        error_code: str = "DEPLOYER_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }
