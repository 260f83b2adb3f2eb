"""Workflow definition loading.

Workflows are YAML documents; a set of them ships with the package under
``onchain_deployer/workflows``.
"""

from importlib import resources
from pathlib import Path
from typing import Any, Dict, List, Union

import pydantic
import structlog
import yaml

from .models import ConfigurationError, WorkflowDefinition

logger = structlog.get_logger(__name__)

BUNDLED_PACKAGE = "onchain_deployer.workflows"


def parse_workflow(document: Dict[str, Any], origin: str = "<memory>") -> WorkflowDefinition:
    """Validate a workflow document.

    Raises:
        ConfigurationError: If the document is malformed
    """
    if not isinstance(document, dict):
        raise ConfigurationError(f"Workflow {origin} must be a mapping", details={"origin": origin})
    try:
        return WorkflowDefinition.model_validate(document)
    except pydantic.ValidationError as e:
        raise ConfigurationError(
            f"Invalid workflow definition in {origin}: {e.error_count()} error(s)",
            details={"origin": origin, "errors": e.errors(include_url=False)},
        ) from e


def load_workflow(path: Union[str, Path]) -> WorkflowDefinition:
    """Load a workflow definition from a YAML file."""
    path = Path(path)
    try:
        document = yaml.safe_load(path.read_text())
    except OSError as e:
        raise ConfigurationError(f"Cannot read workflow file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Workflow file {path} is not valid YAML: {e}") from e

    workflow = parse_workflow(document, origin=str(path))
    logger.debug("Workflow loaded", workflow=workflow.name, path=str(path))
    return workflow


def list_bundled_workflows() -> List[str]:
    """Names of the workflows shipped with the package."""
    return sorted(
        entry.name[: -len(".yaml")]
        for entry in resources.files(BUNDLED_PACKAGE).iterdir()
        if entry.name.endswith(".yaml")
    )


def load_bundled_workflow(name: str) -> WorkflowDefinition:
    """Load a workflow shipped with the package by name."""
    resource = resources.files(BUNDLED_PACKAGE).joinpath(f"{name}.yaml")
    if not resource.is_file():
        raise ConfigurationError(
            f"Unknown workflow '{name}'",
            details={"available": list_bundled_workflows()},
        )
    try:
        document = yaml.safe_load(resource.read_text())
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Bundled workflow '{name}' is not valid YAML: {e}") from e
    return parse_workflow(document, origin=f"bundled:{name}")
