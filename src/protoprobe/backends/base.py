# src/protoprobe/backends/base.py
"""Backend-neutral connection handle.

A ConnectionHandle wraps one driver connection to one BackendTarget. The
shared logic lives here (handle registry, arity checks, parameter binding,
batch queues, error translation entry points); the driver-specific pieces are
the ``_do_*`` hooks implemented by each backend.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from ..config import BackendTarget
from ..dialect import count_placeholders, translate_placeholders
from ..errors import ConnectionError, PrepareError, ProtoprobeError, UnsupportedStepError
from ..scenario import ALL, Capability
from ..types import ParamType, bind_values, normalize_row

# Per-row result code for backends that cannot report counts in batch mode
UNKNOWN_COUNT = -2


@dataclass
class PreparedStatement:
    """A statement registered on a connection under a scenario-level handle name."""
    handle: str
    sql: str
    params: Tuple[ParamType, ...]
    driver_sql: str
    driver_object: Any = None


@dataclass
class StatementResult:
    """What one backend call produced, already normalised."""
    rows: Optional[List[Tuple[Any, ...]]] = None
    columns: Optional[List[str]] = None
    update_count: Optional[int] = None
    batch_counts: Optional[List[int]] = None
    detail: Dict[str, Any] = field(default_factory=dict)


class ConnectionHandle(ABC):
    """An open, authenticated session to one backend target.

    Owned by exactly one scenario run; use it as a context manager so it is
    closed on every exit path.
    """

    placeholder: str = "?"
    driver_error: type = Exception

    BEGIN_SQL = "START TRANSACTION"
    ISOLATION_SQL: Optional[str] = None

    def __init__(self, target: BackendTarget, logger: Optional[logging.Logger] = None):
        self.target = target
        self.logger = logger or logging.getLogger(f"protoprobe.backends.{target.kind}")
        self._connection = None
        self._autocommit: Optional[bool] = None
        self._prepared: Dict[str, PreparedStatement] = {}
        self._batches: Dict[str, List[Tuple[Any, ...]]] = {}

    def log(self, level: int, msg: str) -> None:
        self.logger.log(level, f"[{self.target.name}] {msg}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> "ConnectionHandle":
        """Connect and force autocommit on, whatever the driver default is."""
        self._connect()
        try:
            self.set_autocommit(True)
        except ProtoprobeError:
            self.close()
            raise
        self.log(logging.INFO, f"Connected to {self.target.describe()}, server version {self.server_version}")
        return self

    def close(self) -> None:
        if self._connection is None:
            return
        self._batches.clear()
        try:
            self._disconnect()
        except self.driver_error as e:
            self.log(logging.WARNING, f"Error while closing connection: {e}")
        finally:
            self._connection = None
            self._prepared.clear()
        self.log(logging.INFO, "Disconnected")

    @property
    def is_open(self) -> bool:
        return self._connection is not None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    @property
    def autocommit(self) -> Optional[bool]:
        return self._autocommit

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        return frozenset()

    # ------------------------------------------------------------------
    # Statement lifecycle
    # ------------------------------------------------------------------

    def prepare(self, handle: str, sql: str, params: Sequence[ParamType] = ()) -> StatementResult:
        """Register a parameterised statement under ``handle``.

        Raises:
            PrepareError: Placeholder count differs from the declared schema, or
                the backend rejects the statement
        """
        self._ensure_connected()
        placeholders = count_placeholders(sql)
        if placeholders != len(params):
            raise PrepareError(
                f"Parameter count mismatch: statement has {placeholders} placeholders "
                f"but {len(params)} parameter types were declared"
            )
        statement = PreparedStatement(
            handle=handle,
            sql=sql,
            params=tuple(params),
            driver_sql=translate_placeholders(sql, self.placeholder),
        )
        self.log(logging.DEBUG, f"Preparing {handle}: {statement.driver_sql}")
        detail = self._call(self._do_prepare, statement) or {}
        self._prepared[handle] = statement
        return StatementResult(detail=detail)

    def execute(self, handle: str, values: Sequence[Any], query: bool = True) -> StatementResult:
        """Bind values to a prepared statement and execute it.

        Query results are fully drained; updates report the affected row count.
        """
        statement = self._get_prepared(handle)
        params = self._bind(statement, values)
        self.log(logging.DEBUG, f"Executing {handle} with {params!r}")
        result = self._call(self._do_execute, statement, params)
        if query:
            if result.rows is None:
                result.rows = []
            result.rows = [normalize_row(row) for row in result.rows]
        return result

    def add_batch(self, handle: str, values: Sequence[Any]) -> int:
        """Queue a binding for the next flush; returns the queue depth."""
        statement = self._get_prepared(handle)
        params = self._bind(statement, values)
        queue = self._batches.setdefault(handle, [])
        queue.append(params)
        return len(queue)

    def flush_batch(self, handle: str) -> StatementResult:
        """Send every queued binding of ``handle`` and return per-row result codes."""
        statement = self._get_prepared(handle)
        batch = self._batches.pop(handle, [])
        self.log(logging.DEBUG, f"Flushing batch of {len(batch)} bindings for {handle}")
        return self._call(self._do_batch, statement, batch)

    def execute_statement(self, sql: str) -> StatementResult:
        """Send a plain statement without preparing it."""
        self._ensure_connected()
        self.log(logging.DEBUG, f"Executing statement: {sql}")
        result = self._call(self._do_statement, sql)
        if result.rows is not None:
            result.rows = [normalize_row(row) for row in result.rows]
        return result

    def deallocate(self, handle: str = ALL) -> StatementResult:
        """Release one prepared handle, or every prepared statement of the session."""
        self._ensure_connected()
        if handle == ALL:
            statements = list(self._prepared.values())
            detail = self._call(self._do_deallocate_all, statements) or {}
            self._prepared.clear()
            self._batches.clear()
        else:
            statement = self._get_prepared(handle)
            detail = self._call(self._do_deallocate, statement) or {}
            self._prepared.pop(handle, None)
            self._batches.pop(handle, None)
        return StatementResult(detail=detail)

    def list_prepared_statements(self) -> List[Tuple[Any, ...]]:
        """Raw listing of the session's live prepared statements, in backend order."""
        if Capability.PREPARED_STATEMENT_INTROSPECTION not in self.capabilities:
            raise UnsupportedStepError(f"{self.target.kind} offers no prepared statement introspection")
        self._ensure_connected()
        return [normalize_row(row) for row in self._call(self._do_list_prepared)]

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def set_autocommit(self, enabled: bool) -> None:
        self._ensure_connected()
        self._call(self._do_set_autocommit, enabled)
        self._autocommit = enabled
        self.log(logging.DEBUG, f"Autocommit set to {enabled}")

    def begin(self) -> None:
        """Open a transaction with a plain START TRANSACTION statement."""
        self.execute_statement(self.BEGIN_SQL)

    def commit(self) -> None:
        self._ensure_connected()
        self._call(self._do_commit)

    def rollback(self) -> None:
        self._ensure_connected()
        self._call(self._do_rollback)

    @property
    @abstractmethod
    def in_transaction(self) -> bool:
        """Whether the server reports an open transaction on this session."""

    @property
    @abstractmethod
    def server_version(self) -> str:
        """Server version as reported by the backend."""

    def isolation_level(self) -> Optional[str]:
        """Session transaction isolation level, or None when the backend offers no query for it."""
        sql = self._isolation_sql()
        if sql is None:
            return None
        rows = self.execute_statement(sql).rows or []
        return str(rows[0][0]) if rows else None

    def _isolation_sql(self) -> Optional[str]:
        return self.ISOLATION_SQL

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_connected(self) -> None:
        if self._connection is None:
            raise ConnectionError(f"No open connection to {self.target.name}")

    def _get_prepared(self, handle: str) -> PreparedStatement:
        self._ensure_connected()
        try:
            return self._prepared[handle]
        except KeyError:
            raise PrepareError(f"Unknown prepared statement handle '{handle}'")

    def _bind(self, statement: PreparedStatement, values: Sequence[Any]) -> Tuple[Any, ...]:
        if len(values) != len(statement.params):
            raise PrepareError(
                f"Incorrect number of arguments for {statement.handle}: "
                f"expected {len(statement.params)}, got {len(values)}"
            )
        try:
            return bind_values(statement.params, values)
        except (TypeError, ValueError) as e:
            raise PrepareError(f"Cannot bind parameters for {statement.handle}: {e}")

    def _call(self, func, *args):
        """Invoke a driver hook, translating driver errors into the harness taxonomy."""
        try:
            return func(*args)
        except self.driver_error as e:
            translated = self._translate_error(e)
            self.log(logging.DEBUG, f"{type(e).__name__} translated to {translated.kind}: {e}")
            raise translated from e

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _connect(self) -> None:
        """Open the driver connection. Raises ConnectionError or TimeoutError."""

    @abstractmethod
    def _disconnect(self) -> None:
        pass

    @abstractmethod
    def _translate_error(self, error: Exception) -> ProtoprobeError:
        pass

    @abstractmethod
    def _do_prepare(self, statement: PreparedStatement) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def _do_execute(self, statement: PreparedStatement, params: Tuple[Any, ...]) -> StatementResult:
        pass

    @abstractmethod
    def _do_batch(self, statement: PreparedStatement, batch: List[Tuple[Any, ...]]) -> StatementResult:
        pass

    @abstractmethod
    def _do_statement(self, sql: str) -> StatementResult:
        pass

    @abstractmethod
    def _do_deallocate(self, statement: PreparedStatement) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def _do_deallocate_all(self, statements: List[PreparedStatement]) -> Optional[Dict[str, Any]]:
        pass

    def _do_list_prepared(self) -> List[Tuple[Any, ...]]:
        raise UnsupportedStepError(f"{self.target.kind} offers no prepared statement introspection")

    @abstractmethod
    def _do_set_autocommit(self, enabled: bool) -> None:
        pass

    @abstractmethod
    def _do_commit(self) -> None:
        pass

    @abstractmethod
    def _do_rollback(self) -> None:
        pass
