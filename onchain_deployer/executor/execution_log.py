"""Append-only execution log.

Every execution attempt is recorded as one ExecutionResult. With a path the
log is persisted as JSON lines and can be reloaded to resume a workflow
without re-submitting confirmed steps.
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import pydantic
import structlog

from .models import ExecutionLogError, ExecutionResult

logger = structlog.get_logger(__name__)


class ExecutionLog:
    """Append-only, monotonically timestamped record of execution attempts."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        """Initialize the log, loading existing records from ``path``.

        Args:
            path: JSON-lines file to persist to; in-memory only when omitted
        """
        self.path = Path(path) if path else None
        self._records: List[ExecutionResult] = []
        self.logger = structlog.get_logger(self.__class__.__name__)

        if self.path and self.path.exists():
            self._records, torn = self._read(self.path)
            if torn:
                self._rewrite()
            self.logger.info(
                "Execution log loaded", path=str(self.path), records=len(self._records)
            )

    def append(self, result: ExecutionResult) -> ExecutionResult:
        """Append a record, keeping timestamps monotonic.

        Returns:
            The record as stored
        """
        if self._records and result.timestamp < self._records[-1].timestamp:
            result = result.model_copy(update={"timestamp": self._records[-1].timestamp})

        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(result.model_dump_json() + "\n")
                handle.flush()

        self._records.append(result)
        return result

    @property
    def records(self) -> Tuple[ExecutionResult, ...]:
        return tuple(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def scoped(self, fingerprint: Optional[str] = None) -> List[ExecutionResult]:
        """Records written under ``fingerprint``, or all records when it is None."""
        if fingerprint is None:
            return list(self._records)
        return [record for record in self._records if record.fingerprint == fingerprint]

    def results_for(self, step_id: str, fingerprint: Optional[str] = None) -> List[ExecutionResult]:
        return [record for record in self.scoped(fingerprint) if record.step_id == step_id]

    def attempts(self, step_id: str, fingerprint: Optional[str] = None) -> int:
        return len(self.results_for(step_id, fingerprint))

    def latest_by_step(self, fingerprint: Optional[str] = None) -> Dict[str, ExecutionResult]:
        """Most recent record per step, in first-seen order."""
        latest: Dict[str, ExecutionResult] = {}
        for record in self.scoped(fingerprint):
            latest[record.step_id] = record
        return latest

    def confirmed(self, fingerprint: Optional[str] = None) -> Dict[str, ExecutionResult]:
        """Steps whose most recent attempt confirmed."""
        latest = self.latest_by_step(fingerprint)
        return {step_id: r for step_id, r in latest.items() if r.success}

    def ambiguous(self, fingerprint: Optional[str] = None) -> Dict[str, ExecutionResult]:
        """Steps whose most recent attempt timed out and may still land."""
        latest = self.latest_by_step(fingerprint)
        return {step_id: r for step_id, r in latest.items() if r.is_ambiguous}

    def other_runs(self, workflow: str, fingerprint: str) -> List[ExecutionResult]:
        """Records of ``workflow`` written under a different plan or configuration."""
        return [
            record
            for record in self._records
            if record.workflow == workflow and record.fingerprint != fingerprint
        ]

    def _read(self, path: Path) -> Tuple[List[ExecutionResult], bool]:
        records: List[ExecutionResult] = []
        torn = False
        lines = path.read_text(encoding="utf-8").splitlines()
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(ExecutionResult.model_validate_json(line))
            except pydantic.ValidationError as e:
                if number == len(lines):
                    # A crash mid-write leaves at most one torn final line.
                    self.logger.warning("Dropping torn final log line", path=str(path), line=number)
                    torn = True
                    continue
                raise ExecutionLogError(
                    f"Execution log {path} is corrupt at line {number}",
                    path=str(path),
                    line=number,
                ) from e
        return records, torn

    def _rewrite(self) -> None:
        assert self.path is not None
        content = "".join(record.model_dump_json() + "\n" for record in self._records)
        self.path.write_text(content, encoding="utf-8")
