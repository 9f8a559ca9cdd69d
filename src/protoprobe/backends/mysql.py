# src/protoprobe/backends/mysql.py
"""MySQL and MariaDB connection handle built on mysql-connector-python.

Statements are prepared server-side through prepared cursors (binary
protocol, COM_STMT_PREPARE / COM_STMT_EXECUTE / COM_STMT_CLOSE). The driver
sends the prepare on the first execute of a cursor, so statement rejections
surface on that execute. There is no client-side emulation fallback unless a
target explicitly disables server-side preparation.
"""

import logging
import math
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import mysql.connector
from mysql.connector.errors import Error as MySQLError, ProgrammingError

from ..config import MARIA
from ..dialect import PYFORMAT, QMARK
from ..errors import (
    ConnectionError,
    ConnectionErrorKind,
    ExecutionError,
    PrepareError,
    ProtoprobeError,
    TimeoutError,
)
from ..scenario import Capability
from .base import ConnectionHandle, PreparedStatement, StatementResult


class MySQLConnectionHandle(ConnectionHandle):
    """Connection handle for MySQL and MariaDB targets."""

    driver_error = MySQLError

    INSPECT_SQL = (
        "SELECT STATEMENT_ID, SQL_TEXT FROM performance_schema.prepared_statements_instances "
        "WHERE OWNER_THREAD_ID = (SELECT THREAD_ID FROM performance_schema.threads "
        "WHERE PROCESSLIST_ID = CONNECTION_ID())"
    )

    _AUTH_ERRNOS = (1044, 1045, 1698, 2059)
    # ER_QUERY_TIMEOUT (MySQL max_execution_time), ER_STATEMENT_TIMEOUT (MariaDB max_statement_time)
    _TIMEOUT_ERRNOS = (3024, 1969)
    _LOST_CONNECTION_ERRNOS = (2003, 2005, 2006, 2013, 2055)
    # Parse errors, unknown table/column, wrong argument count, not preparable
    _PREPARE_ERRNOS = (1064, 1146, 1054, 1210, 1295, 1149)

    def __init__(self, target, logger=None):
        super().__init__(target, logger)
        self._server_prepared = bool(target.option('server_prepared', True))
        if not self._server_prepared and not target.option('emulate_unsupported', False):
            self.log(logging.WARNING, "server_prepared is off: statements are interpolated client-side")
        self.placeholder = QMARK if self._server_prepared else PYFORMAT

    @property
    def is_maria(self) -> bool:
        return self.target.kind == MARIA

    def _isolation_sql(self) -> Optional[str]:
        # MariaDB only gained the transaction_isolation alias in 11.1
        return "SELECT @@tx_isolation" if self.is_maria else "SELECT @@transaction_isolation"

    def _timeout_init_command(self) -> Optional[str]:
        if not self.target.option('server_timeout', True):
            return None
        if self.is_maria:
            return f"SET SESSION max_statement_time={self.target.timeout:g}"
        return f"SET SESSION max_execution_time={int(self.target.timeout * 1000)}"

    def _prepare_connection_args(self) -> Dict[str, Any]:
        """Prepare mysql-connector connection arguments from the target"""
        target_args = self.target.to_dict()
        connection_args = {
            'host': target_args['host'],
            'port': target_args['port'],
            'user': target_args['username'],
            'password': target_args['password'] or '',
            'database': target_args['database'],
            'ssl_disabled': bool(target_args.get('ssl_disabled', True)),
            'autocommit': True,
            'use_pure': True,
            # The pure Python protocol applies this to every socket read, not only the handshake
            'connection_timeout': max(1, math.ceil(self.target.timeout)),
        }
        init_command = self._timeout_init_command()
        if init_command:
            connection_args['init_command'] = init_command
        return connection_args

    def _connect(self) -> None:
        try:
            self._connection = mysql.connector.connect(**self._prepare_connection_args())
        except MySQLError as e:
            raise self._translate_connect_error(e) from e

    def _disconnect(self) -> None:
        self._connection.close()

    @property
    def capabilities(self) -> FrozenSet[Capability]:
        capabilities = set()
        if self._server_prepared:
            capabilities.add(Capability.SERVER_PREPARED_STATEMENTS)
        if self.target.option('performance_schema', False):
            capabilities.add(Capability.PREPARED_STATEMENT_INTROSPECTION)
        return frozenset(capabilities)

    @property
    def in_transaction(self) -> bool:
        if self._connection is None:
            return False
        return bool(self._connection.in_transaction)

    @property
    def server_version(self) -> str:
        if self._connection is None:
            return "unknown"
        return self._connection.get_server_info()

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------

    def _translate_connect_error(self, error: MySQLError) -> ProtoprobeError:
        errno = getattr(error, 'errno', None)
        message = str(error)
        if 'timed out' in message.lower():
            return TimeoutError(f"Connecting to {self.target.name} timed out: {message}")
        if errno in self._AUTH_ERRNOS:
            return ConnectionError(message, ConnectionErrorKind.AUTH_FAILED, sqlstate=getattr(error, 'sqlstate', None))
        return ConnectionError(message, ConnectionErrorKind.UNREACHABLE, sqlstate=getattr(error, 'sqlstate', None))

    def _translate_error(self, error: Exception) -> ProtoprobeError:
        """Map mysql-connector errors to the harness taxonomy"""
        errno = getattr(error, 'errno', None)
        sqlstate = getattr(error, 'sqlstate', None)
        message = str(error)

        if errno in self._TIMEOUT_ERRNOS or 'timed out' in message.lower():
            return TimeoutError(message, sqlstate=sqlstate)
        if errno in self._LOST_CONNECTION_ERRNOS:
            return ConnectionError(message, ConnectionErrorKind.UNREACHABLE, sqlstate=sqlstate)
        if errno in self._PREPARE_ERRNOS:
            return PrepareError(message, sqlstate=sqlstate)
        if isinstance(error, ProgrammingError) and 'number of arguments' in message.lower():
            return PrepareError(message, sqlstate=sqlstate)
        return ExecutionError(message, sqlstate=sqlstate)

    # ------------------------------------------------------------------
    # Driver hooks
    # ------------------------------------------------------------------

    def _collect(self, cursor) -> StatementResult:
        if cursor.with_rows:
            return StatementResult(
                rows=cursor.fetchall(),
                columns=list(cursor.column_names),
                update_count=cursor.rowcount,
            )
        return StatementResult(update_count=cursor.rowcount)

    def _do_prepare(self, statement: PreparedStatement) -> Optional[Dict[str, Any]]:
        statement.driver_object = self._connection.cursor(prepared=self._server_prepared)
        return None

    def _do_execute(self, statement: PreparedStatement, params: Tuple[Any, ...]) -> StatementResult:
        cursor = statement.driver_object
        cursor.execute(statement.driver_sql, params)
        return self._collect(cursor)

    def _do_batch(self, statement: PreparedStatement, batch: List[Tuple[Any, ...]]) -> StatementResult:
        cursor = statement.driver_object
        counts = []
        for params in batch:
            cursor.execute(statement.driver_sql, params)
            counts.append(cursor.rowcount)
        return StatementResult(batch_counts=counts, update_count=sum(counts))

    def _do_statement(self, sql: str) -> StatementResult:
        cursor = self._connection.cursor()
        try:
            cursor.execute(sql)
            return self._collect(cursor)
        finally:
            cursor.close()

    def _do_deallocate(self, statement: PreparedStatement) -> Optional[Dict[str, Any]]:
        # Statement ids are numeric protocol ids, so identifier case never applies
        statement.driver_object.close()
        return {'identifier_kind': 'numeric'}

    def _do_deallocate_all(self, statements: List[PreparedStatement]) -> Optional[Dict[str, Any]]:
        for statement in statements:
            statement.driver_object.close()
        return {'identifier_kind': 'numeric'}

    def _do_list_prepared(self) -> List[Tuple[Any, ...]]:
        return self._do_statement(self.INSPECT_SQL).rows or []

    def _do_set_autocommit(self, enabled: bool) -> None:
        self._connection.autocommit = enabled

    def _do_commit(self) -> None:
        self._connection.commit()

    def _do_rollback(self) -> None:
        self._connection.rollback()
