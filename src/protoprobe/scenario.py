# src/protoprobe/scenario.py
"""Scenario and step definitions.

Scenarios are pure data: an ordered tuple of steps plus the backend
capabilities they need. They carry no connection state and can be run
against any number of backends.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, Optional, Tuple, Union

from .errors import ScenarioDefinitionError
from .types import ParamType

ALL = "all"


class Capability(str, Enum):
    """Backend features a scenario may depend on."""
    PREPARED_STATEMENT_INTROSPECTION = "introspection:prepared-statements"
    SERVER_PREPARED_STATEMENTS = "server-prepared-statements"


class ExecuteKind(str, Enum):
    QUERY = "query"
    UPDATE = "update"
    BATCH = "batch"


class TransactionMode(str, Enum):
    NONE = "none"
    EXPLICIT_BEGIN = "explicit-begin"
    AUTOCOMMIT_OFF = "autocommit-off"


@dataclass(frozen=True)
class Statement:
    """Plain statement sent without preparing it (fixture setup, DDL)."""
    sql: str
    action = "statement"


@dataclass(frozen=True)
class Prepare:
    handle: str
    sql: str
    params: Tuple[ParamType, ...] = ()
    action = "prepare"


@dataclass(frozen=True)
class Execute:
    handle: str
    values: Tuple[Any, ...] = ()
    kind: ExecuteKind = ExecuteKind.QUERY
    repeat: int = 1
    action = "execute"


@dataclass(frozen=True)
class FlushBatch:
    handle: str
    action = "flush-batch"


@dataclass(frozen=True)
class SetTransactionMode:
    mode: TransactionMode
    action = "set-transaction-mode"


@dataclass(frozen=True)
class Commit:
    action = "commit"


@dataclass(frozen=True)
class Deallocate:
    handle: str = ALL
    action = "deallocate"


@dataclass(frozen=True)
class InspectPreparedStatements:
    action = "inspect-prepared-statements"


Step = Union[Statement, Prepare, Execute, FlushBatch, SetTransactionMode, Commit,
             Deallocate, InspectPreparedStatements]


def describe_step(step: Step) -> str:
    """Short human-readable label for reports and logs."""
    if isinstance(step, Statement):
        return f"statement {step.sql!r}"
    if isinstance(step, Prepare):
        types = ', '.join(param.value for param in step.params)
        return f"prepare {step.handle} = {step.sql!r} ({types})"
    if isinstance(step, Execute):
        repeat = f" x{step.repeat}" if step.repeat > 1 else ""
        return f"execute {step.handle} {list(step.values)!r} as {step.kind.value}{repeat}"
    if isinstance(step, FlushBatch):
        return f"flush batch {step.handle}"
    if isinstance(step, SetTransactionMode):
        return f"set transaction mode {step.mode.value}"
    if isinstance(step, Deallocate):
        return f"deallocate {step.handle}"
    return step.action


@dataclass(frozen=True)
class Scenario:
    """A named, ordered sequence of steps."""

    name: str
    steps: Tuple[Step, ...]
    description: str = ""
    requires: FrozenSet[Capability] = field(default_factory=frozenset)

    def __post_init__(self):
        object.__setattr__(self, 'steps', tuple(self.steps))
        object.__setattr__(self, 'requires', frozenset(self.requires))
        self.validate()

    @property
    def requirements(self) -> FrozenSet[Capability]:
        """Declared requirements plus those implied by the steps."""
        implied = set(self.requires)
        if any(isinstance(step, InspectPreparedStatements) for step in self.steps):
            implied.add(Capability.PREPARED_STATEMENT_INTROSPECTION)
        return frozenset(implied)

    def validate(self) -> None:
        """Check the step sequence is runnable.

        Raises:
            ScenarioDefinitionError: A handle is used before it is prepared or after
                it is released, a batch is never flushed, or a transaction mode
                that needs a commit never gets one.
        """
        if not self.name:
            raise ScenarioDefinitionError("Scenario needs a name")

        live = set()
        pending_batches = set()
        mode: Optional[TransactionMode] = None

        for index, step in enumerate(self.steps):
            where = f"scenario '{self.name}' step {index}"
            if isinstance(step, Prepare):
                if step.handle == ALL:
                    raise ScenarioDefinitionError(f"{where}: '{ALL}' is reserved")
                if step.handle in live:
                    raise ScenarioDefinitionError(f"{where}: handle '{step.handle}' already prepared")
                live.add(step.handle)
            elif isinstance(step, Execute):
                if step.handle not in live:
                    raise ScenarioDefinitionError(f"{where}: unknown handle '{step.handle}'")
                if step.repeat < 1:
                    raise ScenarioDefinitionError(f"{where}: repeat must be at least 1")
                if step.kind is ExecuteKind.BATCH:
                    if step.repeat != 1:
                        raise ScenarioDefinitionError(f"{where}: batch bindings cannot repeat")
                    pending_batches.add(step.handle)
            elif isinstance(step, FlushBatch):
                if step.handle not in pending_batches:
                    raise ScenarioDefinitionError(f"{where}: nothing queued for '{step.handle}'")
                pending_batches.discard(step.handle)
            elif isinstance(step, Deallocate):
                if step.handle == ALL:
                    live.clear()
                elif step.handle not in live:
                    raise ScenarioDefinitionError(f"{where}: unknown handle '{step.handle}'")
                else:
                    live.discard(step.handle)
            elif isinstance(step, SetTransactionMode):
                if mode in (TransactionMode.EXPLICIT_BEGIN, TransactionMode.AUTOCOMMIT_OFF):
                    raise ScenarioDefinitionError(
                        f"{where}: transaction mode '{mode.value}' must be committed first")
                mode = step.mode if step.mode is not TransactionMode.NONE else None
            elif isinstance(step, Commit):
                if mode is None:
                    raise ScenarioDefinitionError(f"{where}: commit outside an explicit transaction")
                mode = None

        if pending_batches:
            raise ScenarioDefinitionError(
                f"scenario '{self.name}': batch never flushed for {', '.join(sorted(pending_batches))}")
        if mode is TransactionMode.AUTOCOMMIT_OFF:
            raise ScenarioDefinitionError(
                f"scenario '{self.name}': autocommit-off mode requires an explicit commit step")
