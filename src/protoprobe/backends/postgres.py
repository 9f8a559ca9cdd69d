# src/protoprobe/backends/postgres.py
"""Postgres-wire connection handle built on psycopg 3.

psycopg uses the extended query protocol for every parameterised execute and
promotes a statement to a named server-side prepared statement once it has
been executed ``prepare_threshold`` times on the connection. Those names are
what ``pg_prepared_statements`` lists and what DEALLOCATE takes.
"""

import logging
import math
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple

import psycopg
from psycopg import errors as pg_errors
from psycopg.pq import TransactionStatus

from ..config import BackendTarget
from ..dialect import NUMBERED, PYFORMAT, format_identifier, rewrite_batched_insert, translate_placeholders
from ..errors import (
    ConnectionError,
    ConnectionErrorKind,
    ExecutionError,
    PrepareError,
    ProtoprobeError,
    TimeoutError,
)
from ..scenario import Capability
from .base import UNKNOWN_COUNT, ConnectionHandle, PreparedStatement, StatementResult


class PostgresConnectionHandle(ConnectionHandle):
    """Connection handle for Postgres and Postgres-compatible proxies."""

    placeholder = PYFORMAT
    driver_error = psycopg.Error

    INSPECT_SQL = "SELECT name, statement FROM pg_prepared_statements"
    LOOKUP_SQL = "SELECT name FROM pg_prepared_statements WHERE statement = %s"
    PROBE_SAVEPOINT = "protoprobe_probe"
    ISOLATION_SQL = "SHOW transaction_isolation"

    _AUTH_SQLSTATES = ("28000", "28P01")
    _TIMEOUT_SQLSTATES = ("57014",)
    # 08P01 is raised when a Bind message carries the wrong number of parameters,
    # 26000 when a statement name is unknown
    _PREPARE_SQLSTATES = ("08P01", "07001", "26000")

    def __init__(self, target: BackendTarget, logger: Optional[logging.Logger] = None):
        super().__init__(target, logger)
        # Texts released with a single DEALLOCATE. psycopg only forgets its
        # cached server name on DEALLOCATE ALL, so these must not be auto-prepared again.
        self._released_sql: Set[str] = set()

    def _prepare_connection_args(self) -> Dict[str, Any]:
        """Prepare psycopg connection arguments from the target"""
        target_args = self.target.to_dict()
        connection_args = {
            'host': target_args['host'],
            'port': target_args['port'],
            'dbname': target_args['database'],
            'user': target_args['username'],
            'password': target_args['password'],
            'sslmode': target_args.get('sslmode', 'disable'),
            'connect_timeout': max(1, math.ceil(self.target.timeout)),
            # A dead peer fails commit, rollback and close after about the target timeout
            'keepalives': 1,
            'keepalives_idle': max(1, math.ceil(self.target.timeout)),
            'keepalives_interval': 1,
            'keepalives_count': 3,
            'tcp_user_timeout': int(self.target.timeout * 1000),
        }
        # Some proxies reject startup options, so the server-side timeout can be turned off
        if self.target.option('server_timeout', True):
            connection_args['options'] = f"-c statement_timeout={int(self.target.timeout * 1000)}"
        return connection_args

    def _connect(self) -> None:
        try:
            self._connection = psycopg.connect(
                autocommit=True,
                prepare_threshold=self.target.option('prepare_threshold', 5),
                **self._prepare_connection_args(),
            )
        except psycopg.Error as e:
            raise self._translate_connect_error(e) from e

    def _disconnect(self) -> None:
        self._connection.close()
        self._released_sql.clear()

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        capabilities = set()
        if self.target.option('introspection', True):
            capabilities.add(Capability.PREPARED_STATEMENT_INTROSPECTION)
        if self.target.option('prepare_threshold', 5) is not None:
            capabilities.add(Capability.SERVER_PREPARED_STATEMENTS)
        return frozenset(capabilities)

    @property
    def in_transaction(self) -> bool:
        if self._connection is None:
            return False
        return self._connection.info.transaction_status in (TransactionStatus.INTRANS, TransactionStatus.INERROR)

    @property
    def server_version(self) -> str:
        if self._connection is None:
            return "unknown"
        version = self._connection.info.parameter_status('server_version')
        if version:
            return version
        number = self._connection.info.server_version
        return f"{number // 10000}.{number % 10000}"

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------

    def _translate_connect_error(self, error: psycopg.Error) -> ProtoprobeError:
        message = str(error).strip()
        lowered = message.lower()
        sqlstate = getattr(error, 'sqlstate', None)
        if 'timeout expired' in lowered:
            return TimeoutError(f"Connecting to {self.target.name} timed out: {message}")
        if sqlstate in self._AUTH_SQLSTATES or 'authentication failed' in lowered:
            return ConnectionError(message, ConnectionErrorKind.AUTH_FAILED, sqlstate=sqlstate)
        return ConnectionError(message, ConnectionErrorKind.UNREACHABLE, sqlstate=sqlstate)

    def _translate_error(self, error: Exception) -> ProtoprobeError:
        """Map psycopg errors to the harness taxonomy"""
        message = str(error).strip()
        sqlstate = getattr(error, 'sqlstate', None) or ""

        if isinstance(error, pg_errors.QueryCanceled) or sqlstate in self._TIMEOUT_SQLSTATES:
            return TimeoutError(message, sqlstate=sqlstate)
        if sqlstate in self._PREPARE_SQLSTATES or sqlstate.startswith('42'):
            return PrepareError(message, sqlstate=sqlstate)
        if (self._connection is not None and self._connection.closed) or sqlstate.startswith('08') \
                or (isinstance(error, psycopg.OperationalError) and not sqlstate):
            return ConnectionError(message, ConnectionErrorKind.UNREACHABLE, sqlstate=sqlstate or None)
        if isinstance(error, psycopg.ProgrammingError) and not sqlstate:
            # Client-side rejection, e.g. placeholder/parameter count disagreement
            return PrepareError(message)
        return ExecutionError(message, sqlstate=sqlstate or None)

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    def _collect(self, cursor) -> StatementResult:
        if cursor.description is not None:
            return StatementResult(
                rows=cursor.fetchall(),
                columns=[column.name for column in cursor.description],
                update_count=cursor.rowcount,
            )
        return StatementResult(update_count=cursor.rowcount)

    def _do_prepare(self, statement: PreparedStatement) -> Optional[Dict[str, Any]]:
        # psycopg parses on first execute and names the statement server-side
        # once the prepare threshold is reached; nothing is sent here.
        self.log(logging.DEBUG, f"Registered {statement.handle}, "
                                f"prepare_threshold={self.target.option('prepare_threshold', 5)}")
        return None

    def _prepare_mode(self, statement: PreparedStatement) -> Optional[bool]:
        """``prepare`` argument for psycopg: None lets the threshold decide."""
        return False if statement.driver_sql in self._released_sql else None

    def _rewritten_batch_sql(self, statement: PreparedStatement, rows: int) -> Optional[str]:
        if not self.target.option('rewrite_batched_inserts', False):
            return None
        if not statement.sql.lstrip().lower().startswith('insert'):
            return None
        try:
            return rewrite_batched_insert(statement.driver_sql, rows)
        except ValueError as e:
            # Statements that cannot be folded are sent row by row
            self.log(logging.DEBUG, f"Batch of {statement.handle} not rewritten: {e}")
            return None

    def _do_execute(self, statement: PreparedStatement, params: Tuple[Any, ...]) -> StatementResult:
        with self._connection.cursor() as cursor:
            cursor.execute(statement.driver_sql, params, prepare=self._prepare_mode(statement))
            return self._collect(cursor)

    def _do_batch(self, statement: PreparedStatement, batch: List[Tuple[Any, ...]]) -> StatementResult:
        if not batch:
            return StatementResult(batch_counts=[], update_count=0)
        sql = self._rewritten_batch_sql(statement, len(batch))
        with self._connection.cursor() as cursor:
            if sql is not None:
                cursor.execute(sql, [value for params in batch for value in params])
                # One multi-row statement: the server only reports the total
                return StatementResult(
                    batch_counts=[UNKNOWN_COUNT] * len(batch),
                    update_count=cursor.rowcount,
                    detail={'rewritten': True},
                )
            counts = []
            for params in batch:
                cursor.execute(statement.driver_sql, params, prepare=self._prepare_mode(statement))
                counts.append(cursor.rowcount)
            detail = {'rewritten': False} if self.target.option('rewrite_batched_inserts', False) else {}
            return StatementResult(batch_counts=counts, update_count=sum(counts), detail=detail)

    def _do_statement(self, sql: str) -> StatementResult:
        with self._connection.cursor() as cursor:
            cursor.execute(sql, prepare=False)
            return self._collect(cursor)

    def _server_statement_name(self, statement: PreparedStatement) -> Optional[str]:
        """Name under which the server holds this statement, if it was promoted."""
        server_text = translate_placeholders(statement.sql, NUMBERED)
        with self._connection.cursor() as cursor:
            cursor.execute(self.LOOKUP_SQL, (server_text,), prepare=False)
            row = cursor.fetchone()
        return row[0] if row else None

    def _try_statement(self, sql: str) -> bool:
        """Run a statement that may be rejected, without poisoning an open transaction."""
        guarded = self.in_transaction or not self._autocommit
        with self._connection.cursor() as cursor:
            if guarded:
                cursor.execute(f"SAVEPOINT {self.PROBE_SAVEPOINT}", prepare=False)
            try:
                cursor.execute(sql, prepare=False)
            except pg_errors.InvalidSqlStatementName as e:
                self.log(logging.DEBUG, f"Rejected: {sql}: {str(e).strip()}")
                if guarded:
                    cursor.execute(f"ROLLBACK TO SAVEPOINT {self.PROBE_SAVEPOINT}", prepare=False)
                return False
            if guarded:
                cursor.execute(f"RELEASE SAVEPOINT {self.PROBE_SAVEPOINT}", prepare=False)
            return True

    def _do_deallocate(self, statement: PreparedStatement) -> Optional[Dict[str, Any]]:
        name = self._server_statement_name(statement)
        if name is None:
            self.log(logging.DEBUG, f"{statement.handle} was never promoted to a server statement")
            return {'identifier_kind': 'name', 'server_prepared': False}

        detail: Dict[str, Any] = {'identifier_kind': 'name', 'server_prepared': True}
        self._released_sql.add(statement.driver_sql)
        swapped = name.swapcase()
        if swapped != name and self._try_statement(f"DEALLOCATE {format_identifier(swapped)}"):
            # Quoted identifier matched with the wrong case
            detail['case_sensitive'] = False
            return detail
        detail['case_sensitive'] = True

        detail['unquoted_accepted'] = self._try_statement(f"DEALLOCATE {name}")
        if not detail['unquoted_accepted']:
            with self._connection.cursor() as cursor:
                cursor.execute(f"DEALLOCATE {format_identifier(name)}", prepare=False)
        return detail

    def _do_deallocate_all(self, statements: List[PreparedStatement]) -> Optional[Dict[str, Any]]:
        with self._connection.cursor() as cursor:
            cursor.execute("DEALLOCATE ALL", prepare=False)
        self._released_sql.clear()
        return {'identifier_kind': 'name'}

    def _do_list_prepared(self) -> List[Tuple[Any, ...]]:
        with self._connection.cursor() as cursor:
            cursor.execute(self.INSPECT_SQL, prepare=False)
            return cursor.fetchall()

    def _do_set_autocommit(self, enabled: bool) -> None:
        self._connection.autocommit = enabled

    def _do_commit(self) -> None:
        self._connection.commit()

    def _do_rollback(self) -> None:
        self._connection.rollback()
