# src/protoprobe/backends/__init__.py
"""Connection handles per backend family and the connector that opens them."""

import logging
from typing import Dict, Type

from ..config import MARIA, MYSQL, POSTGRES, BackendTarget
from ..errors import ConnectionError, ConnectionErrorKind
from .base import UNKNOWN_COUNT, ConnectionHandle, PreparedStatement, StatementResult
from .mysql import MySQLConnectionHandle
from .postgres import PostgresConnectionHandle
from .transaction import TransactionController, TransactionState

logger = logging.getLogger(__name__)

CONNECTORS: Dict[str, Type[ConnectionHandle]] = {
    POSTGRES: PostgresConnectionHandle,
    MYSQL: MySQLConnectionHandle,
    MARIA: MySQLConnectionHandle,
}


def open_connection(target: BackendTarget) -> ConnectionHandle:
    """Open a session to ``target`` with autocommit forced on.

    Raises:
        ConnectionError: Unsupported target kind, unreachable server or rejected credentials
        TimeoutError: Connecting took longer than the target's timeout
    """
    handle_class = CONNECTORS.get(target.kind)
    if handle_class is None:
        raise ConnectionError(f"No connector for target kind '{target.kind}'",
                              ConnectionErrorKind.UNSUPPORTED_TARGET)
    logger.debug(f"Opening {target.describe()} with {handle_class.__name__}")
    return handle_class(target).open()


__all__ = [
    'CONNECTORS',
    'open_connection',
    'ConnectionHandle',
    'PreparedStatement',
    'StatementResult',
    'UNKNOWN_COUNT',
    'PostgresConnectionHandle',
    'MySQLConnectionHandle',
    'TransactionController',
    'TransactionState',
]
