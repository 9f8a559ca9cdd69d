# src/protoprobe/catalog.py
"""Named scenario catalog.

Built-in scenarios are registered at import time. Additional scenarios can be
loaded from a YAML file whose ``scenarios`` mapping holds, per scenario, a
``steps`` list of single-key mappings, for example::

    scenarios:
      lookup:
        description: Select a seeded row
        steps:
          - statement: "create table t (id int)"
          - prepare: {handle: q, sql: "select id from t where id = ?", params: [integer]}
          - execute: {handle: q, values: [1]}
          - deallocate: all
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Sequence

import yaml

from .errors import ConfigurationError, ScenarioDefinitionError
from .scenario import (
    ALL,
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
    Step,
    TransactionMode,
)
from .types import NOW, ParamType

logger = logging.getLogger(__name__)

# Scenario name -> scenario mapping table
SCENARIOS: Dict[str, Scenario] = {}

INTEGER, TEXT, TIMESTAMP = ParamType.INTEGER, ParamType.TEXT, ParamType.TIMESTAMP
QUERY, UPDATE, BATCH = ExecuteKind.QUERY, ExecuteKind.UPDATE, ExecuteKind.BATCH

DOGS_FIXTURE = (
    Statement("drop table if exists dogs"),
    Statement("create table dogs (id int, name varchar(64), birth_date timestamp default CURRENT_TIMESTAMP)"),
    Statement("insert into dogs values(1, 'kidnap', now())"),
)

INTS_FIXTURE = (
    Statement("drop table if exists ints"),
    Statement("create table ints (c1 int, c2 int)"),
    Statement("insert into ints values (0, 10), (0, 10), (0, 20), (1, 11)"),
)

TASKS_FIXTURE = (
    Statement("drop table if exists tasks"),
    Statement("create table tasks (id int, contact_id int, title varchar(64))"),
    Statement("insert into tasks values (1, 1, 'call'), (2, 1, 'write'), (3, 2, 'visit')"),
)

INSERT_DELETE_ID = 71234133
MISSING_ID = 90134136
BATCH_BASE_ID = 581800
BATCH_SIZE = 4


def register_scenario(scenario: Scenario) -> Scenario:
    """Register a scenario under its name; later registrations replace earlier ones."""
    if scenario.name in SCENARIOS:
        logger.debug(f"Replacing scenario '{scenario.name}'")
    SCENARIOS[scenario.name] = scenario
    return scenario


def get_scenario(name: str) -> Scenario:
    try:
        return SCENARIOS[name]
    except KeyError:
        raise ConfigurationError(
            f"Unknown scenario '{name}'. Available scenarios: {', '.join(sorted(SCENARIOS))}")


def list_scenarios() -> List[Scenario]:
    """Registered scenarios in registration order."""
    return list(SCENARIOS.values())


def _scenario(name: str, description: str, *steps: Step, fixture: Sequence[Step] = DOGS_FIXTURE,
              requires=frozenset()) -> Scenario:
    return register_scenario(Scenario(name=name, steps=tuple(fixture) + steps,
                                      description=description, requires=requires))


def _alternate(handles: Sequence[str], values: Sequence[Any], rounds: int) -> List[Step]:
    return [Execute(handle, tuple(values)) for _ in range(rounds) for handle in handles]


def _verify(handle: str, row_id: int, columns: str = "id, name") -> List[Step]:
    return [
        Prepare(handle, f"select {columns} from dogs where id = ?", (INTEGER,)),
        Execute(handle, (row_id,)),
    ]


def _insert_delete(mode: TransactionMode) -> List[Step]:
    steps: List[Step] = [
        SetTransactionMode(mode),
        Prepare("insert", "insert into dogs values(?, 'rando', now())", (INTEGER,)),
        Execute("insert", (INSERT_DELETE_ID,), UPDATE),
        Prepare("delete", "delete from dogs where id = ?", (INTEGER,)),
        Execute("delete", (INSERT_DELETE_ID,), UPDATE),
    ]
    if mode is not TransactionMode.NONE:
        steps.append(Commit())
    return steps + _verify("verify", INSERT_DELETE_ID)


def _alternating_pair() -> List[Step]:
    return [
        Prepare("names", "select name from dogs where id = ?", (INTEGER,)),
        Prepare("rows", "select id, name from dogs where id = ?", (INTEGER,)),
        *_alternate(("names", "rows"), (1,), 100),
    ]


def _register_builtin_scenarios() -> None:
    _scenario(
        "prepared-statement-lifecycle",
        "Two statements executed alternately 100 times each, then single and full deallocation "
        "with the server's prepared statement listing inspected in between",
        *_alternating_pair(),
        InspectPreparedStatements(),
        Deallocate("names"),
        InspectPreparedStatements(),
        Deallocate(ALL),
        InspectPreparedStatements(),
        requires={Capability.SERVER_PREPARED_STATEMENTS},
    )
    _scenario(
        "prepared-statement-reuse",
        "Two statements executed alternately 100 times each, then single and full deallocation",
        *_alternating_pair(),
        Deallocate("names"),
        Execute("rows", (1,)),
        Deallocate(ALL),
        requires={Capability.SERVER_PREPARED_STATEMENTS},
    )
    _scenario(
        "simple-select",
        "Select by id on an autocommit connection; no transaction should be opened",
        SetTransactionMode(TransactionMode.NONE),
        Prepare("select", "select name from dogs where id = ?", (INTEGER,)),
        Execute("select", (1,)),
        Deallocate("select"),
    )
    _scenario(
        "simple-select-autocommit-off",
        "Select by id with autocommit off; the client library may open a transaction on its own",
        SetTransactionMode(TransactionMode.AUTOCOMMIT_OFF),
        Prepare("select", "select name from dogs where id = ?", (INTEGER,)),
        Execute("select", (1,)),
        Deallocate("select"),
        Commit(),
    )
    _scenario(
        "update-name",
        "Rename the seeded row to fido",
        Prepare("update", "update dogs set name = ?  where id = ?", (TEXT, INTEGER)),
        Execute("update", ("fido", 1), UPDATE),
        *_verify("verify", 1, "name"),
    )
    _scenario(
        "update-name-and-timestamp",
        "Rename the seeded row to fido and bind a timestamp parameter",
        Prepare("update", "update dogs set name = ?, birth_date = ? where id = ?", (TEXT, TIMESTAMP, INTEGER)),
        Execute("update", ("fido", NOW, 1), UPDATE),
        *_verify("verify", 1, "name"),
    )
    for suffix, mode in (("none", TransactionMode.NONE),
                         ("explicit", TransactionMode.EXPLICIT_BEGIN),
                         ("autocommit-off", TransactionMode.AUTOCOMMIT_OFF)):
        _scenario(
            f"insert-delete-{suffix}",
            f"Insert and delete id {INSERT_DELETE_ID} in transaction mode {mode.value}",
            *_insert_delete(mode),
        )
    _scenario(
        "no-data-read",
        f"Select an id that does not exist ({MISSING_ID})",
        Prepare("select", "select name from dogs where id = ?", (INTEGER,)),
        Execute("select", (MISSING_ID,)),
    )
    _scenario(
        "batched-inserts",
        f"Queue {BATCH_SIZE} inserts from id {BATCH_BASE_ID} and send them as one batch",
        Prepare("insert", "insert into dogs values(?, ?, ?)", (INTEGER, TEXT, TIMESTAMP)),
        *[Execute("insert", (BATCH_BASE_ID + i, f"t_{BATCH_BASE_ID + i}", NOW), BATCH)
          for i in range(BATCH_SIZE)],
        FlushBatch("insert"),
        Prepare("verify", "select id, name from dogs where id >= ? order by id", (INTEGER,)),
        Execute("verify", (BATCH_BASE_ID,)),
    )
    _scenario(
        "table-aliasing",
        "Distinct select through a table alias with aliased columns",
        Prepare("alias", "select distinct i.c2 as col0, i.c1 as col1 from ints as i where i.c1 = ?", (INTEGER,)),
        Execute("alias", (0,)),
        fixture=DOGS_FIXTURE + INTS_FIXTURE,
    )
    _scenario(
        "foreign-key-lookup",
        "Quoted-identifier lookup by foreign key as emitted by an ORM, executed 100 times",
        Prepare("lookup",
                "select * from `tasks` where `tasks`.`contact_id` = ? and `tasks`.`contact_id` is not null",
                (INTEGER,)),
        Execute("lookup", (1,), QUERY, repeat=100),
        fixture=DOGS_FIXTURE + TASKS_FIXTURE,
    )


# ----------------------------------------------------------------------
# Scenario files
# ----------------------------------------------------------------------

def _value(value: Any) -> Any:
    return NOW if value == "NOW" else value


def _mapping(body: Any, key: str) -> Mapping[str, Any]:
    """Accept both ``action: value`` shorthand and ``action: {key: value, ...}``."""
    if isinstance(body, Mapping):
        return body
    if body is None:
        return {}
    return {key: body}


def _build_prepare(body: Mapping[str, Any]) -> Prepare:
    try:
        params = tuple(ParamType(param) for param in body.get('params', ()))
    except ValueError as e:
        raise ScenarioDefinitionError(f"Invalid parameter type: {e}")
    return Prepare(body['handle'], body['sql'], params)


def _build_execute(body: Mapping[str, Any]) -> Execute:
    try:
        kind = ExecuteKind(body.get('kind', ExecuteKind.QUERY.value))
    except ValueError as e:
        raise ScenarioDefinitionError(f"Invalid execute kind: {e}")
    values = tuple(_value(value) for value in body.get('values', ()))
    return Execute(body['handle'], values, kind, int(body.get('repeat', 1)))


def _build_transaction_mode(body: Mapping[str, Any]) -> SetTransactionMode:
    try:
        return SetTransactionMode(TransactionMode(body['mode']))
    except ValueError as e:
        raise ScenarioDefinitionError(f"Invalid transaction mode: {e}")


STEP_BUILDERS: Dict[str, Callable[[Mapping[str, Any]], Step]] = {
    Statement.action: lambda body: Statement(body['sql']),
    Prepare.action: _build_prepare,
    Execute.action: _build_execute,
    FlushBatch.action: lambda body: FlushBatch(body['handle']),
    SetTransactionMode.action: _build_transaction_mode,
    Commit.action: lambda body: Commit(),
    Deallocate.action: lambda body: Deallocate(body.get('handle', ALL)),
    InspectPreparedStatements.action: lambda body: InspectPreparedStatements(),
}

# Key used when a step is written as ``action: value``
SHORTHAND_KEYS = {
    Statement.action: 'sql',
    FlushBatch.action: 'handle',
    SetTransactionMode.action: 'mode',
    Deallocate.action: 'handle',
}


def step_from_dict(data: Mapping[str, Any]) -> Step:
    if not isinstance(data, Mapping) or len(data) != 1:
        raise ScenarioDefinitionError(f"A step must be a mapping with exactly one action, got {data!r}")
    action, body = next(iter(data.items()))
    builder = STEP_BUILDERS.get(action)
    if builder is None:
        raise ScenarioDefinitionError(
            f"Unknown step action '{action}'. Valid actions: {', '.join(STEP_BUILDERS)}")
    try:
        return builder(_mapping(body, SHORTHAND_KEYS.get(action, 'handle')))
    except KeyError as e:
        raise ScenarioDefinitionError(f"Step '{action}' is missing {e}")
    except (TypeError, ValueError) as e:
        raise ScenarioDefinitionError(f"Step '{action}' is malformed: {e}")


def scenario_from_dict(name: str, data: Mapping[str, Any]) -> Scenario:
    """Build a scenario from its file representation.

    Raises:
        ScenarioDefinitionError: Unknown actions, missing fields or an invalid step sequence
    """
    if not isinstance(data, Mapping) or 'steps' not in data:
        raise ScenarioDefinitionError(f"Scenario '{name}' needs a 'steps' list")
    try:
        requires = frozenset(Capability(value) for value in data.get('requires') or ())
    except (TypeError, ValueError) as e:
        raise ScenarioDefinitionError(f"Scenario '{name}': invalid capability: {e}")
    if not isinstance(data['steps'] or [], list):
        raise ScenarioDefinitionError(f"Scenario '{name}': 'steps' must be a list")
    steps = [step_from_dict(step) for step in data['steps'] or ()]
    try:
        return Scenario(name=name, steps=tuple(steps), description=data.get('description', ''), requires=requires)
    except TypeError as e:
        raise ScenarioDefinitionError(f"Scenario '{name}' is malformed: {e}")


def load_scenario_file(path: Path) -> List[Scenario]:
    """Load and register every scenario of a YAML scenario file."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Scenario file not found: {path}")
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Cannot parse scenario file {path}: {e}")

    if not isinstance(data, dict) or 'scenarios' not in data:
        raise ConfigurationError(f"Scenario file {path} does not contain 'scenarios' key")
    if not isinstance(data['scenarios'], dict):
        raise ScenarioDefinitionError(f"Scenario file {path}: 'scenarios' must map names to scenarios")
    loaded = [register_scenario(scenario_from_dict(name, body)) for name, body in data['scenarios'].items()]
    logger.info(f"Loaded {len(loaded)} scenario(s) from {path}")
    return loaded


_register_builtin_scenarios()
