# src/protoprobe/__init__.py
"""
Protocol-compatibility harness for SQL backends.

This package exercises the prepared-statement lifecycle and transaction
boundaries identically against several backends and compares what they do:
- Backend targets and layered configuration loading
- Connection handles for Postgres-wire targets (psycopg) and MySQL/MariaDB
  targets (mysql-connector-python, server-side prepared cursors)
- Scenario definitions as pure data, and a catalog of named scenarios
- A scenario runner that records ordered observations per step
- A reporter that renders runs and diffs two backends step by step

Architecture:
- ConnectionHandle: backend-neutral session contract, one per scenario run
- ScenarioRunner: drives steps, captures failures locally, never retries
- Matrix: runs every scenario against every target, sequentially or with
  one worker per target
"""

__version__ = "1.0.0"

from .backends import ConnectionHandle, open_connection
from .catalog import get_scenario, list_scenarios
from .config import BackendTarget, load_targets
from .errors import (
    ConfigurationError,
    ConnectionError,
    ConnectionErrorKind,
    ExecutionError,
    PrepareError,
    ProtoprobeError,
    ScenarioDefinitionError,
    TimeoutError,
    UnsupportedStepError,
)
from .matrix import Matrix, MatrixResult
from .report import Divergence, DivergenceKind, diff, render
from .runner import Observation, RunResult, ScenarioRunner
from .scenario import (
    Capability,
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
    TransactionMode,
)
from .types import ParamType


__all__ = [
    # Configuration
    'BackendTarget',
    'load_targets',

    # Connections
    'ConnectionHandle',
    'open_connection',

    # Scenarios
    'Scenario',
    'Statement',
    'Prepare',
    'Execute',
    'ExecuteKind',
    'FlushBatch',
    'SetTransactionMode',
    'TransactionMode',
    'Commit',
    'Deallocate',
    'InspectPreparedStatements',
    'Capability',
    'ParamType',
    'get_scenario',
    'list_scenarios',

    # Running and reporting
    'ScenarioRunner',
    'Observation',
    'RunResult',
    'Matrix',
    'MatrixResult',
    'Divergence',
    'DivergenceKind',
    'diff',
    'render',

    # Errors
    'ProtoprobeError',
    'ConfigurationError',
    'ConnectionError',
    'ConnectionErrorKind',
    'PrepareError',
    'ExecutionError',
    'TimeoutError',
    'UnsupportedStepError',
    'ScenarioDefinitionError',
]
