# src/protoprobe/dialect.py
"""Placeholder handling shared by the backends.

Scenarios write positional placeholders as ``?``. psycopg expects ``%s`` (and
literal ``%`` escaped as ``%%``); mysql-connector prepared cursors accept
``?`` as-is. Placeholders inside quoted literals or identifiers are left
alone.
"""

import re
from typing import List, Tuple

QMARK = "?"
PYFORMAT = "%s"
NUMBERED = "$n"

_VALUES_RE = re.compile(r"\bvalues\s*(\(.*\))\s*;?\s*$", re.IGNORECASE | re.DOTALL)


def _scan(sql: str) -> List[Tuple[str, str]]:
    """Split SQL into ('text'|'quoted'|'param', chunk) parts."""
    parts = []
    current = []
    quote = None
    i = 0
    while i < len(sql):
        char = sql[i]
        if quote:
            current.append(char)
            if char == quote:
                # Doubled quote is an escaped quote inside the literal
                if i + 1 < len(sql) and sql[i + 1] == quote:
                    current.append(sql[i + 1])
                    i += 2
                    continue
                parts.append(('quoted', ''.join(current)))
                current = []
                quote = None
        elif char in ("'", '"', '`'):
            if current:
                parts.append(('text', ''.join(current)))
            current = [char]
            quote = char
        elif char == QMARK:
            if current:
                parts.append(('text', ''.join(current)))
                current = []
            parts.append(('param', char))
        else:
            current.append(char)
        i += 1
    if current:
        parts.append(('quoted' if quote else 'text', ''.join(current)))
    return parts


def count_placeholders(sql: str) -> int:
    """Number of positional placeholders outside quoted sections."""
    return sum(1 for kind, _ in _scan(sql) if kind == 'param')


def translate_placeholders(sql: str, placeholder: str) -> str:
    """Rewrite ``?`` placeholders into the driver's style.

    For the ``%s`` style every literal percent sign is doubled so the driver
    does not mistake it for a placeholder. The ``$n`` style produces the text
    Postgres itself stores for statements prepared over the wire.
    """
    if placeholder == QMARK:
        return sql
    result = []
    position = 0
    for kind, chunk in _scan(sql):
        if kind == 'param':
            position += 1
            result.append(f"${position}" if placeholder == NUMBERED else placeholder)
        elif placeholder == PYFORMAT:
            result.append(chunk.replace('%', '%%'))
        else:
            result.append(chunk)
    return ''.join(result)


def rewrite_batched_insert(sql: str, rows: int) -> str:
    """Fold ``rows`` bindings of a single-row INSERT into one multi-row INSERT.

    ``insert into t values(?, ?)`` with 3 rows becomes
    ``insert into t values(?, ?), (?, ?), (?, ?)``.

    Raises:
        ValueError: The statement is not a single-row ``INSERT ... VALUES (...)``
    """
    if rows < 1:
        raise ValueError("Cannot rewrite an empty batch")
    if not sql.lstrip().lower().startswith('insert'):
        raise ValueError(f"Only INSERT statements can be rewritten: {sql}")
    match = _VALUES_RE.search(sql)
    if not match:
        raise ValueError(f"INSERT statement has no VALUES list: {sql}")
    row_sql = match.group(1)
    return sql[:match.start(1)] + ', '.join([row_sql] * rows)


def format_identifier(identifier: str) -> str:
    """Quote an identifier the standard SQL way."""
    escaped = identifier.replace('"', '""')
    return f'"{escaped}"'
