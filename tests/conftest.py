# tests/conftest.py
"""Shared fixtures: an in-memory connection handle that understands the
statements used by the built-in scenarios, so the runner, matrix and
reporter can be exercised without a database."""

import copy
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from protoprobe.backends.base import ConnectionHandle, PreparedStatement, StatementResult
from protoprobe.config import BackendTarget, build_target
from protoprobe.dialect import QMARK
from protoprobe.errors import ConnectionError, ExecutionError, PrepareError, TimeoutError
from protoprobe.scenario import Capability


class FakeDriverError(Exception):
    def __init__(self, message: str, kind: str = "execution"):
        super().__init__(message)
        self.kind = kind


ERROR_CLASSES = {
    'prepare': PrepareError,
    'execution': ExecutionError,
    'timeout': TimeoutError,
    'connection': ConnectionError,
}

ALL_CAPABILITIES = frozenset(Capability)


class FakeConnectionHandle(ConnectionHandle):
    """Connection handle backed by a dictionary of dogs.

    ``implicit_begin`` mimics drivers that open a transaction on the first
    statement after autocommit is turned off. ``failures`` maps SQL text to
    the driver error kind raised when that statement runs.
    """

    placeholder = QMARK
    driver_error = FakeDriverError
    ISOLATION_SQL = "show transaction_isolation"

    def __init__(self, target: BackendTarget, capabilities=ALL_CAPABILITIES, implicit_begin: bool = True,
                 failures: Optional[Dict[str, str]] = None, batch_unknown: bool = False,
                 row_order: Optional[Callable[[List[Tuple[Any, ...]]], List[Tuple[Any, ...]]]] = None):
        super().__init__(target)
        self._capabilities = frozenset(capabilities)
        self.implicit_begin = implicit_begin
        self.failures = dict(failures or {})
        self.batch_unknown = batch_unknown
        self.row_order = row_order
        self.dogs: Dict[int, str] = {}
        self.executed: List[str] = []
        self.server_statements: Dict[str, str] = {}
        self._in_transaction = False
        self._snapshot: Optional[Dict[int, str]] = None
        self.closed = False

    # Session state -----------------------------------------------------

    def _connect(self) -> None:
        if self.failures.get('<connect>'):
            raise ERROR_CLASSES[self.failures['<connect>']](f"cannot reach {self.target.host}")
        self._connection = object()

    def _disconnect(self) -> None:
        self.closed = True

    @property
    def capabilities(self):
        return self._capabilities

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    @property
    def server_version(self) -> str:
        return "fake-1.0"

    def _translate_error(self, error: Exception):
        return ERROR_CLASSES[error.kind](str(error))

    def _begin(self) -> None:
        if not self._in_transaction:
            self._in_transaction = True
            self._snapshot = copy.deepcopy(self.dogs)

    def _run(self, sql: str, params: Tuple[Any, ...] = ()) -> StatementResult:
        self.executed.append(sql)
        if sql in self.failures:
            raise FakeDriverError(f"forced failure: {sql}", self.failures[sql])
        if self._autocommit is False and self.implicit_begin:
            self._begin()

        lowered = sql.strip().lower()
        if lowered == self.ISOLATION_SQL:
            return StatementResult(rows=[("read committed",)], columns=['transaction_isolation'])
        if lowered == "start transaction":
            self._begin()
            return StatementResult(update_count=0)
        if lowered == "commit":
            self._in_transaction = False
            self._snapshot = None
            return StatementResult(update_count=0)
        if lowered.startswith(("drop table", "create table")):
            if "dogs" in lowered:
                self.dogs.clear()
            return StatementResult(update_count=0)
        if lowered == "insert into dogs values(1, 'kidnap', now())":
            self.dogs[1] = 'kidnap'
            return StatementResult(update_count=1)
        if lowered.startswith("insert into") and "dogs" not in lowered:
            return StatementResult(update_count=lowered.count('('))

        handler = STATEMENT_HANDLERS.get(sql)
        if handler is None:
            raise FakeDriverError(f"syntax error in {sql}", "prepare")
        result = handler(self.dogs, params)
        if result.rows is not None and self.row_order is not None:
            result.rows = self.row_order(result.rows)
        return result

    # Driver hooks ------------------------------------------------------

    def _do_prepare(self, statement: PreparedStatement):
        # Like the real drivers, nothing reaches the server until the first execute
        self.server_statements[statement.handle] = statement.sql
        return None

    def _do_execute(self, statement: PreparedStatement, params):
        return self._run(statement.sql, params)

    def _do_batch(self, statement: PreparedStatement, batch):
        counts = [self._run(statement.sql, params).update_count for params in batch]
        if self.batch_unknown:
            return StatementResult(batch_counts=[-2] * len(counts), update_count=sum(counts))
        return StatementResult(batch_counts=counts, update_count=sum(counts))

    def _do_statement(self, sql: str):
        return self._run(sql)

    def _do_deallocate(self, statement: PreparedStatement):
        self.server_statements.pop(statement.handle, None)
        return {'identifier_kind': 'name', 'case_sensitive': False}

    def _do_deallocate_all(self, statements):
        self.server_statements.clear()
        return {'identifier_kind': 'name'}

    def _do_list_prepared(self):
        return [(f"S_{index}", sql) for index, sql in enumerate(self.server_statements.values(), start=1)]

    def _do_set_autocommit(self, enabled: bool) -> None:
        if enabled and self._in_transaction:
            self._do_commit()

    def _do_commit(self) -> None:
        self._in_transaction = False
        self._snapshot = None

    def _do_rollback(self) -> None:
        if self._snapshot is not None:
            self.dogs = self._snapshot
        self._in_transaction = False
        self._snapshot = None


def _select_name(dogs, params):
    (dog_id,) = params
    return StatementResult(rows=[(dogs[dog_id],)] if dog_id in dogs else [], columns=['name'])


def _select_row(dogs, params):
    (dog_id,) = params
    return StatementResult(rows=[(dog_id, dogs[dog_id])] if dog_id in dogs else [], columns=['id', 'name'])


def _select_from(dogs, params):
    (base_id,) = params
    return StatementResult(rows=[(key, dogs[key]) for key in sorted(dogs) if key >= base_id],
                           columns=['id', 'name'])


def _insert_rando(dogs, params):
    dogs[params[0]] = 'rando'
    return StatementResult(update_count=1)


def _insert_row(dogs, params):
    dogs[params[0]] = params[1]
    return StatementResult(update_count=1)


def _delete(dogs, params):
    return StatementResult(update_count=1 if dogs.pop(params[0], None) is not None else 0)


def _rename(dogs, params):
    name, dog_id = params[0], params[-1]
    if dog_id not in dogs:
        return StatementResult(update_count=0)
    dogs[dog_id] = name
    return StatementResult(update_count=1)


def _distinct_ints(dogs, params):
    return StatementResult(rows=[(10, 0), (20, 0)], columns=['col0', 'col1'])


STATEMENT_HANDLERS = {
    "select name from dogs where id = ?": _select_name,
    "select id, name from dogs where id = ?": _select_row,
    "select id, name from dogs where id >= ? order by id": _select_from,
    "insert into dogs values(?, 'rando', now())": _insert_rando,
    "insert into dogs values(?, ?, ?)": _insert_row,
    "delete from dogs where id = ?": _delete,
    "update dogs set name = ?  where id = ?": _rename,
    "update dogs set name = ?, birth_date = ? where id = ?": _rename,
    "select distinct i.c2 as col0, i.c1 as col1 from ints as i where i.c1 = ?": _distinct_ints,
}


@pytest.fixture
def fake_target():
    return build_target("fake", {'kind': 'postgres', 'port': 15432, 'timeout': 5})


@pytest.fixture
def make_handle(fake_target):
    """Factory for open fake handles; keyword arguments go to FakeConnectionHandle."""
    def factory(target=None, **kwargs):
        return FakeConnectionHandle(target or fake_target, **kwargs).open()
    return factory


@pytest.fixture
def fake_connector():
    """Connector factory for runners: ``fake_connector(**handle_options)``."""
    def factory(**kwargs):
        opened = []

        def connect(target):
            options = kwargs.get(target.name, kwargs.get('default', {}))
            handle = FakeConnectionHandle(target, **options).open()
            opened.append(handle)
            return handle
        connect.opened = opened
        return connect
    return factory


@pytest.fixture
def fake_handle_class():
    return FakeConnectionHandle
