# src/protoprobe/backends/transaction.py
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import ExecutionError
from ..scenario import TransactionMode
from .base import ConnectionHandle


class TransactionState(Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class TransactionController:
    """Applies transaction modes to a connection handle.

    ``explicit-begin`` sends START TRANSACTION / COMMIT as plain statements on
    an autocommit connection. ``autocommit-off`` only toggles the connection
    and commits through the driver; whether the driver then injects a BEGIN
    on its own is left for the runner to observe.
    """

    COMMIT_SQL = "COMMIT"

    def __init__(self, handle: ConnectionHandle, logger: Optional[logging.Logger] = None):
        self._handle = handle
        self._logger = logger or logging.getLogger(__name__)
        self._mode = TransactionMode.NONE
        self._state = TransactionState.INACTIVE

    def log(self, level: int, msg: str) -> None:
        self._logger.log(level, f"[{self._handle.target.name}] {msg}")

    @property
    def mode(self) -> TransactionMode:
        return self._mode

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state == TransactionState.ACTIVE

    def enter(self, mode: TransactionMode) -> Dict[str, Any]:
        """Switch to ``mode``; returns what the harness itself sent."""
        if self.is_active:
            raise ExecutionError(f"Cannot switch to {mode.value} while a {self._mode.value} transaction is open")

        issued: List[str] = []
        if mode is TransactionMode.NONE:
            if self._handle.autocommit is not True:
                self._handle.set_autocommit(True)
            self._state = TransactionState.INACTIVE
        elif mode is TransactionMode.EXPLICIT_BEGIN:
            self._handle.begin()
            issued.append(self._handle.BEGIN_SQL)
            self._state = TransactionState.ACTIVE
        else:
            self._handle.set_autocommit(False)
            self._state = TransactionState.ACTIVE

        self._mode = mode
        self.log(logging.DEBUG, f"Entered transaction mode {mode.value}")
        return {'issued': issued, 'autocommit': self._handle.autocommit}

    def commit(self) -> Dict[str, Any]:
        """End the open explicit transaction and return to autocommit."""
        if not self.is_active:
            raise ExecutionError("No explicit transaction to commit")

        issued: List[str] = []
        if self._mode is TransactionMode.EXPLICIT_BEGIN:
            self._handle.execute_statement(self.COMMIT_SQL)
            issued.append(self.COMMIT_SQL)
        else:
            self._handle.commit()
            self._handle.set_autocommit(True)

        self._state = TransactionState.COMMITTED
        self._mode = TransactionMode.NONE
        self.log(logging.DEBUG, "Committed transaction")
        return {'issued': issued, 'autocommit': self._handle.autocommit}

    def finish(self) -> Optional[Dict[str, Any]]:
        """Close an explicit-begin pair left open at scenario end."""
        if self.is_active and self._mode is TransactionMode.EXPLICIT_BEGIN:
            return self.commit()
        return None

    def rollback(self) -> None:
        """Roll back whatever is open on the connection."""
        self._handle.rollback()
        self._state = TransactionState.ROLLED_BACK
        self._mode = TransactionMode.NONE
        self.log(logging.DEBUG, "Rolled back transaction")
