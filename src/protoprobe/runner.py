# src/protoprobe/runner.py
"""Scenario runner.

Drives a scenario's steps strictly in order against one connection handle
and records one Observation per step. Step failures are captured into the
run result: the remaining steps are skipped, a best-effort rollback is
attempted and recorded, and nothing is retried.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .backends import ConnectionHandle, TransactionController, open_connection
from .config import BackendTarget
from .errors import ProtoprobeError, is_infrastructure_error
from .scenario import (
    Commit,
    Deallocate,
    Execute,
    ExecuteKind,
    FlushBatch,
    InspectPreparedStatements,
    Prepare,
    Scenario,
    SetTransactionMode,
    Statement,
    Step,
    describe_step,
)

logger = logging.getLogger(__name__)

IMPLICIT_BEGIN = "implicit-begin"
ROLLBACK = "rollback"
CONNECT = "connect"
AUTO_COMMIT = "auto-commit"


@dataclass(frozen=True)
class Observation:
    """Recorded outcome of one step (or of a synthetic event between steps)."""

    index: int
    step: Optional[int]
    action: str
    description: str = ""
    ok: bool = True
    row_count: Optional[int] = None
    rows: Optional[Tuple[Tuple[Any, ...], ...]] = None
    columns: Optional[Tuple[str, ...]] = None
    update_count: Optional[int] = None
    batch_counts: Optional[Tuple[int, ...]] = None
    listing: Optional[Tuple[Tuple[Any, ...], ...]] = None
    detail: Mapping[str, Any] = field(default_factory=dict)
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    duration: float = 0.0

    @property
    def synthetic(self) -> bool:
        return self.step is None

    def summary(self) -> str:
        """One-line outcome, used by the reporter."""
        if not self.ok:
            return f"ERROR {self.error_kind}: {self.error_message}"
        parts = []
        if self.rows is not None:
            parts.append(f"{self.row_count} row(s) {list(self.rows)!r}")
        elif self.listing is not None:
            parts.append(f"{self.row_count} prepared statement(s) {list(self.listing)!r}")
        if self.batch_counts is not None:
            parts.append(f"batch counts {list(self.batch_counts)!r}")
        elif self.update_count is not None and self.rows is None:
            parts.append(f"{self.update_count} row(s) affected")
        if self.detail:
            parts.append(', '.join(f"{key}={value!r}" for key, value in sorted(self.detail.items())))
        return '; '.join(parts) if parts else "ok"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'index': self.index,
            'step': self.step,
            'action': self.action,
            'description': self.description,
            'ok': self.ok,
            'row_count': self.row_count,
            'rows': [list(row) for row in self.rows] if self.rows is not None else None,
            'columns': list(self.columns) if self.columns is not None else None,
            'update_count': self.update_count,
            'batch_counts': list(self.batch_counts) if self.batch_counts is not None else None,
            'listing': [list(row) for row in self.listing] if self.listing is not None else None,
            'detail': dict(self.detail),
            'error_kind': self.error_kind,
            'error_message': self.error_message,
            'duration': round(self.duration, 6),
        }


@dataclass(frozen=True)
class RunResult:
    """Observations of one scenario against one target, in emission order."""

    scenario: str
    target: str
    observations: Tuple[Observation, ...] = ()
    server_version: Optional[str] = None
    isolation_level: Optional[str] = None
    aborted: bool = False
    infrastructure_failure: bool = False
    skipped: Optional[str] = None

    @property
    def failures(self) -> Tuple[Observation, ...]:
        return tuple(observation for observation in self.observations if not observation.ok)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scenario': self.scenario,
            'target': self.target,
            'server_version': self.server_version,
            'isolation_level': self.isolation_level,
            'aborted': self.aborted,
            'infrastructure_failure': self.infrastructure_failure,
            'skipped': self.skipped,
            'observations': [observation.to_dict() for observation in self.observations],
        }


class _RunRecorder:
    """Append-only collector of observations for a single run."""

    def __init__(self, scenario: str, target: str, server_version: Optional[str] = None):
        self.scenario = scenario
        self.target = target
        self.server_version = server_version
        self.isolation_level: Optional[str] = None
        self._observations: List[Observation] = []

    def record(self, step: Optional[int], action: str, description: str, duration: float,
               error: Optional[ProtoprobeError] = None, **fields) -> Observation:
        if error is not None:
            fields.update(ok=False, error_kind=error.kind, error_message=str(error))
        observation = Observation(index=len(self._observations), step=step, action=action,
                                  description=description, duration=duration, **fields)
        self._observations.append(observation)
        return observation

    def result(self, aborted: bool = False, infrastructure_failure: bool = False,
               skipped: Optional[str] = None) -> RunResult:
        return RunResult(
            scenario=self.scenario,
            target=self.target,
            observations=tuple(self._observations),
            server_version=self.server_version,
            isolation_level=self.isolation_level,
            aborted=aborted,
            infrastructure_failure=infrastructure_failure,
            skipped=skipped,
        )


class ScenarioRunner:
    """Runs scenarios against connection handles, one step at a time."""

    def __init__(self, connector: Callable[[BackendTarget], ConnectionHandle] = open_connection):
        self._connector = connector

    def run_target(self, scenario: Scenario, target: BackendTarget) -> RunResult:
        """Open a connection for ``target``, run ``scenario`` on it and always close it."""
        start = time.perf_counter()
        try:
            handle = self._connector(target)
        except ProtoprobeError as e:
            logger.error(f"[{target.name}] Cannot run '{scenario.name}': {e}")
            recorder = _RunRecorder(scenario.name, target.name)
            recorder.record(None, CONNECT, f"connect {target.describe()}",
                            time.perf_counter() - start, error=e)
            return recorder.result(aborted=True, infrastructure_failure=is_infrastructure_error(e))
        with handle:
            return self.run(scenario, handle)

    def run(self, scenario: Scenario, handle: ConnectionHandle) -> RunResult:
        """Execute every step of ``scenario`` in order on ``handle``."""
        target = handle.target.name
        recorder = _RunRecorder(scenario.name, target, handle.server_version)

        missing = scenario.requirements - handle.capabilities
        if missing:
            reason = f"missing capabilities: {', '.join(sorted(c.value for c in missing))}"
            logger.info(f"[{target}] Skipping '{scenario.name}', {reason}")
            return recorder.result(skipped=reason)

        recorder.isolation_level = self._isolation_level(handle)
        logger.info(f"[{target}] Running scenario '{scenario.name}'")
        transactions = TransactionController(handle)
        failure: Optional[ProtoprobeError] = None

        for step_index, step in enumerate(scenario.steps):
            description = describe_step(step)
            was_in_transaction = handle.in_transaction
            start = time.perf_counter()
            try:
                fields = self._dispatch(step, handle, transactions)
            except ProtoprobeError as e:
                logger.warning(f"[{target}] Step {step_index} ({description}) failed: {e}")
                recorder.record(step_index, step.action, description, time.perf_counter() - start, error=e)
                failure = e
                break
            duration = time.perf_counter() - start

            if not was_in_transaction and self._may_begin_implicitly(step) and handle.in_transaction:
                # The driver or server opened a transaction the harness never asked for
                logger.info(f"[{target}] Implicit transaction start observed before step {step_index}")
                recorder.record(None, IMPLICIT_BEGIN, f"transaction opened implicitly by {description}", 0.0)
            recorder.record(step_index, step.action, description, duration, **fields)

        if failure is None:
            start = time.perf_counter()
            try:
                detail = transactions.finish()
                if detail is not None:
                    recorder.record(None, AUTO_COMMIT, "close explicit transaction at scenario end",
                                    time.perf_counter() - start, detail=detail)
            except ProtoprobeError as e:
                recorder.record(None, AUTO_COMMIT, "close explicit transaction at scenario end",
                                time.perf_counter() - start, error=e)
                failure = e

        if failure is not None:
            self._rollback(transactions, recorder)

        logger.info(f"[{target}] Scenario '{scenario.name}' "
                    f"{'aborted' if failure is not None else 'completed'}")
        return recorder.result(
            aborted=failure is not None,
            infrastructure_failure=failure is not None and is_infrastructure_error(failure),
        )

    @staticmethod
    def _isolation_level(handle: ConnectionHandle) -> Optional[str]:
        try:
            return handle.isolation_level()
        except ProtoprobeError as e:
            logger.warning(f"[{handle.target.name}] Cannot read the transaction isolation level: {e}")
            return None

    @staticmethod
    def _may_begin_implicitly(step: Step) -> bool:
        # Plain statements and mode switches may open transactions on purpose
        return not isinstance(step, (Statement, SetTransactionMode))

    def _rollback(self, transactions: TransactionController, recorder: _RunRecorder) -> None:
        """Best-effort rollback after a failed step; failures are recorded, never raised."""
        start = time.perf_counter()
        try:
            transactions.rollback()
        except ProtoprobeError as e:
            logger.warning(f"[{recorder.target}] Rollback failed: {e}")
            recorder.record(None, ROLLBACK, "rollback after failure", time.perf_counter() - start, error=e)
            return
        recorder.record(None, ROLLBACK, "rollback after failure", time.perf_counter() - start)

    def _dispatch(self, step: Step, handle: ConnectionHandle,
                  transactions: TransactionController) -> Dict[str, Any]:
        """Perform one step and return the observation fields it produced."""
        if isinstance(step, Statement):
            result = handle.execute_statement(step.sql)
            fields: Dict[str, Any] = {'update_count': result.update_count}
            if result.rows is not None:
                fields.update(rows=tuple(result.rows), row_count=len(result.rows),
                              columns=tuple(result.columns or ()))
            return fields

        if isinstance(step, Prepare):
            result = handle.prepare(step.handle, step.sql, step.params)
            return {'detail': result.detail}

        if isinstance(step, Execute):
            if step.kind is ExecuteKind.BATCH:
                depth = handle.add_batch(step.handle, step.values)
                return {'detail': {'queued': depth}}
            query = step.kind is ExecuteKind.QUERY
            for _ in range(step.repeat):
                result = handle.execute(step.handle, step.values, query=query)
            detail = dict(result.detail)
            if step.repeat > 1:
                detail['executions'] = step.repeat
            if query:
                return {'rows': tuple(result.rows), 'row_count': len(result.rows),
                        'columns': tuple(result.columns or ()), 'detail': detail}
            return {'update_count': result.update_count, 'detail': detail}

        if isinstance(step, FlushBatch):
            result = handle.flush_batch(step.handle)
            return {'batch_counts': tuple(result.batch_counts or ()), 'update_count': result.update_count,
                    'detail': result.detail}

        if isinstance(step, SetTransactionMode):
            return {'detail': transactions.enter(step.mode)}

        if isinstance(step, Commit):
            return {'detail': transactions.commit()}

        if isinstance(step, Deallocate):
            return {'detail': handle.deallocate(step.handle).detail}

        if isinstance(step, InspectPreparedStatements):
            listing = handle.list_prepared_statements()
            return {'listing': tuple(listing), 'row_count': len(listing)}

        raise TypeError(f"Unknown step type: {type(step).__name__}")
