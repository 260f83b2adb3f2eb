"""onchain-deployer command line interface.

One ``run-<workflow>`` command is registered per bundled workflow, plus
``run --file`` for workflow files, ``plan`` for dry runs, ``workflows`` to list
the bundled definitions and ``log`` to inspect an execution log.

Exit codes: 0 when every included step confirmed, 1 when the run finished
incomplete (failed, aborted or blocked steps), 2 when configuration or
validation errors stopped the run before any submission.
"""

import asyncio
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

import structlog
import typer
from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .binder.models import DeploymentConfig
from .binder.parameter_binder import ParameterBinder
from .exceptions import DeployerError
from .executor.execution_log import ExecutionLog
from .executor.ledger import Ledger, SimulatedLedger, load_ledger
from .orchestrator import WorkflowOrchestrator, WorkflowReport
from .planner.deployment_planner import DeploymentPlanner
from .planner.models import WorkflowDefinition
from .planner.workflow_loader import list_bundled_workflows, load_bundled_workflow, load_workflow

# Load environment variables
load_dotenv()

EXIT_INCOMPLETE = 1
EXIT_CONFIGURATION = 2

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging on stderr."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper(), force=True)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


class OrchestratorSettings(BaseModel):
    """Runtime settings for the orchestrator."""

    # Confirmation
    confirmation_threshold: int = Field(
        default_factory=lambda: int(os.getenv("CONFIRMATION_THRESHOLD", "1")),
        description="Confirmations required before a step counts as confirmed",
    )
    confirmation_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CONFIRMATION_TIMEOUT_SECONDS", "300")),
        description="Seconds to wait for a confirmation before classifying a timeout",
    )

    # Execution
    execution_log_path: Optional[str] = Field(
        default_factory=lambda: os.getenv("EXECUTION_LOG_PATH", "deployments/execution-log.jsonl"),
        description="JSON-lines execution log used for auditing and resume",
    )
    max_parallel_steps: int = Field(
        default_factory=lambda: int(os.getenv("MAX_PARALLEL_STEPS", "1")),
        description="Independent ready steps to run at once",
    )
    verify_grants_on_chain: bool = Field(
        default_factory=lambda: os.getenv("VERIFY_GRANTS_ON_CHAIN", "false").lower() == "true",
        description="Read hasRole for the grantee before each paired revoke",
    )

    # Ledger
    ledger_factory: Optional[str] = Field(
        default_factory=lambda: os.getenv("LEDGER_FACTORY"),
        description="Ledger adapter factory as 'module:callable'",
    )
    simulate: bool = Field(
        default_factory=lambda: os.getenv("SIMULATE_LEDGER", "false").lower() == "true",
        description="Use the in-memory simulated ledger",
    )

    # Logging
    log_level: str = Field(
        default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"),
        description="Log level for structured logs on stderr",
    )


def _parse_overrides(assignments: Optional[List[str]]) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    for assignment in assignments or []:
        key, separator, value = assignment.partition("=")
        if not separator or not key:
            raise typer.BadParameter(f"Expected KEY=VALUE, got '{assignment}'", param_hint="--set")
        overrides[key.strip()] = value
    return overrides


def _build_ledger(settings: OrchestratorSettings) -> Ledger:
    if settings.simulate:
        return SimulatedLedger()
    if settings.ledger_factory:
        return load_ledger(settings.ledger_factory)
    raise DeployerError(
        "No ledger configured: set LEDGER_FACTORY or pass --simulate",
        "LEDGER_NOT_CONFIGURED",
    )


def _report_error(error: DeployerError) -> None:
    typer.echo(f"error [{error.error_code}]: {error.message}", err=True)
    for key, value in error.details.items():
        if value not in (None, [], {}):
            typer.echo(f"  {key}: {value}", err=True)


def _print_report(report: WorkflowReport, as_json: bool) -> None:
    if as_json:
        typer.echo(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        status = "complete" if report.success else "incomplete"
        typer.echo(f"Workflow {report.workflow_name} {status} ({report.fingerprint})")
        typer.echo(f"  confirmed:     {len(report.confirmed)}")
        for label, steps in (
            ("restored", report.restored),
            ("skipped", report.skipped),
            ("failed", report.failed),
            ("aborted", report.aborted),
            ("not attempted", report.not_attempted),
        ):
            if steps:
                typer.echo(f"  {label + ':':<14} {', '.join(steps)}")

    for error in report.failures():
        typer.echo(
            f"step {error.step_id} failed [{error.category.value}]"
            f" tx={error.transaction_hash or '-'}: {error.raw_error}",
            err=True,
        )
    for step_id, error in report.binding_errors.items():
        typer.echo(f"step {step_id} failed before submission [{error.error_code}]: {error.message}", err=True)
    for step_id in report.ambiguous:
        if step_id in report.failed:
            typer.echo(
                f"step {step_id} timed out earlier and may have landed; "
                f"check the ledger, then rerun with --reconcile {step_id}",
                err=True,
            )
    for error in report.sequencing_errors:
        typer.echo(f"warning [{error.error_code}]: {error.message}", err=True)
    for warning in report.verification_warnings:
        typer.echo(f"warning [verification {warning.check.value}]: {warning.message}", err=True)
    if report.cancelled:
        typer.echo("run cancelled before completion", err=True)


def _execute_workflow(
    workflow: WorkflowDefinition,
    env_file: Optional[Path],
    assignments: Optional[List[str]],
    resume: bool,
    reconcile: Optional[List[str]],
    log_path: Optional[Path],
    simulate: bool,
    as_json: bool,
) -> None:
    settings = OrchestratorSettings()
    if simulate:
        settings.simulate = True
    if log_path is not None:
        settings.execution_log_path = str(log_path)

    try:
        config = DeploymentConfig.from_environment(
            env_file=str(env_file) if env_file else None,
            overrides=_parse_overrides(assignments),
        )
        plan = DeploymentPlanner(config).plan(workflow)
        orchestrator = WorkflowOrchestrator(
            config,
            _build_ledger(settings),
            log=ExecutionLog(settings.execution_log_path),
            confirmation_threshold=settings.confirmation_threshold,
            confirmation_timeout=settings.confirmation_timeout_seconds,
            max_parallel_steps=settings.max_parallel_steps,
            verify_grants_on_chain=settings.verify_grants_on_chain,
        )

        async def run() -> WorkflowReport:
            loop = asyncio.get_running_loop()
            try:
                loop.add_signal_handler(signal.SIGINT, orchestrator.cancel)
            except (NotImplementedError, RuntimeError):
                logger.debug("SIGINT handler unavailable")
            return await orchestrator.run(plan, resume=resume, reconcile=reconcile)

        report = asyncio.run(run())
    except DeployerError as e:
        _report_error(e)
        raise typer.Exit(code=EXIT_CONFIGURATION)

    _print_report(report, as_json)
    if not report.success:
        raise typer.Exit(code=EXIT_INCOMPLETE)


def _register_workflow_command(app: typer.Typer, name: str) -> None:
    @app.command(name=f"run-{name}", help=f"Run the bundled '{name}' workflow.")
    def run_bundled(
        env_file: Optional[Path] = typer.Option(None, "--env-file", "-e", help="dotenv file"),
        assignments: Optional[List[str]] = typer.Option(
            None, "--set", "-s", help="Configuration override KEY=VALUE"
        ),
        resume: bool = typer.Option(False, "--resume", help="Resume from the execution log"),
        reconcile: Optional[List[str]] = typer.Option(
            None, "--reconcile", help="Resubmit a timed-out step after checking the ledger"
        ),
        log_path: Optional[Path] = typer.Option(None, "--log", help="Execution log path"),
        simulate: bool = typer.Option(False, "--simulate", help="Use the simulated ledger"),
        as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    ) -> None:
        try:
            workflow = load_bundled_workflow(name)
        except DeployerError as e:
            _report_error(e)
            raise typer.Exit(code=EXIT_CONFIGURATION)
        _execute_workflow(
            workflow, env_file, assignments, resume, reconcile, log_path, simulate, as_json
        )


def create_app() -> typer.Typer:
    """Create the Typer CLI application."""
    app = typer.Typer(
        name="onchain-deployer",
        help="Orchestrates contract deployment and role migration workflows",
        add_completion=False,
    )

    @app.callback()
    def setup() -> None:
        configure_logging(OrchestratorSettings().log_level)

    @app.command()
    def workflows() -> None:
        """List the bundled workflows."""
        for name in list_bundled_workflows():
            workflow = load_bundled_workflow(name)
            typer.echo(f"{name:<16} {workflow.description or ''}".rstrip())

    @app.command()
    def plan(
        name: Optional[str] = typer.Argument(None, help="Bundled workflow name"),
        file: Optional[Path] = typer.Option(None, "--file", "-f", help="Workflow YAML file"),
        env_file: Optional[Path] = typer.Option(None, "--env-file", "-e", help="dotenv file"),
        assignments: Optional[List[str]] = typer.Option(
            None, "--set", "-s", help="Configuration override KEY=VALUE"
        ),
        as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON"),
    ) -> None:
        """Plan and preflight a workflow without submitting anything."""
        try:
            workflow = _select_workflow(name, file)
            config = DeploymentConfig.from_environment(
                env_file=str(env_file) if env_file else None,
                overrides=_parse_overrides(assignments),
            )
            deployment_plan = DeploymentPlanner(config).plan(workflow)
            ParameterBinder(config).preflight(deployment_plan)
        except DeployerError as e:
            _report_error(e)
            raise typer.Exit(code=EXIT_CONFIGURATION)

        if as_json:
            typer.echo(json.dumps(deployment_plan.to_dict(), indent=2))
            return
        typer.echo(f"Plan for {deployment_plan.workflow_name} ({deployment_plan.fingerprint()})")
        for position, step in enumerate(deployment_plan.steps, start=1):
            after = f" after {', '.join(sorted(step.depends_on))}" if step.depends_on else ""
            typer.echo(f"{position:>3}. {step}{after}")
        if deployment_plan.skipped_steps:
            typer.echo(f"skipped: {', '.join(deployment_plan.skipped_steps)}")

    @app.command()
    def run(
        file: Path = typer.Option(..., "--file", "-f", help="Workflow YAML file"),
        env_file: Optional[Path] = typer.Option(None, "--env-file", "-e", help="dotenv file"),
        assignments: Optional[List[str]] = typer.Option(
            None, "--set", "-s", help="Configuration override KEY=VALUE"
        ),
        resume: bool = typer.Option(False, "--resume", help="Resume from the execution log"),
        reconcile: Optional[List[str]] = typer.Option(
            None, "--reconcile", help="Resubmit a timed-out step after checking the ledger"
        ),
        log_path: Optional[Path] = typer.Option(None, "--log", help="Execution log path"),
        simulate: bool = typer.Option(False, "--simulate", help="Use the simulated ledger"),
        as_json: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    ) -> None:
        """Run a workflow from a YAML file."""
        try:
            workflow = load_workflow(file)
        except DeployerError as e:
            _report_error(e)
            raise typer.Exit(code=EXIT_CONFIGURATION)
        _execute_workflow(
            workflow, env_file, assignments, resume, reconcile, log_path, simulate, as_json
        )

    for name in list_bundled_workflows():
        _register_workflow_command(app, name)

    @app.command()
    def log(
        log_path: Optional[Path] = typer.Option(None, "--log", help="Execution log path"),
        step: Optional[str] = typer.Option(None, "--step", help="Only show one step"),
    ) -> None:
        """Show the records of an execution log."""
        path = log_path or Path(OrchestratorSettings().execution_log_path or "")
        if not path.is_file():
            typer.echo(f"error: no execution log at {path}", err=True)
            raise typer.Exit(code=EXIT_CONFIGURATION)
        try:
            records = ExecutionLog(path).records
        except DeployerError as e:
            _report_error(e)
            raise typer.Exit(code=EXIT_CONFIGURATION)
        for record in records:
            if step and record.step_id != step:
                continue
            if record.success:
                outcome = "confirmed"
            else:
                category = record.error_category.value if record.error_category else "unknown"
                outcome = f"failed[{category}]"
            typer.echo(
                f"{record.timestamp.isoformat()} {record.step_id} #{record.attempt} "
                f"{outcome} tx={record.transaction_hash or '-'}"
            )

    return app


def _select_workflow(name: Optional[str], file: Optional[Path]) -> WorkflowDefinition:
    if file is not None:
        return load_workflow(file)
    if name is None:
        raise typer.BadParameter("Pass a bundled workflow name or --file")
    return load_bundled_workflow(name)


def main() -> None:
    """Main entry point for onchain-deployer."""
    app = create_app()
    app()


if __name__ == "__main__":
    main()
