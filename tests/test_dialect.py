# tests/test_dialect.py
import pytest

from protoprobe.dialect import (
    NUMBERED,
    PYFORMAT,
    QMARK,
    count_placeholders,
    format_identifier,
    rewrite_batched_insert,
    translate_placeholders,
)


def test_count_placeholders_ignores_quoted_sections():
    assert count_placeholders("select name from dogs where id = ?") == 1
    assert count_placeholders("insert into dogs values(?, '?', ?)") == 2
    assert count_placeholders('select "what?" from t where a = ? and b = ?') == 2
    assert count_placeholders("select 'it''s ?' from t") == 0


def test_translate_to_pyformat_escapes_percent():
    sql = "select name from dogs where name like '%o' and id = ?"
    assert translate_placeholders(sql, PYFORMAT) == "select name from dogs where name like '%%o' and id = %s"


def test_translate_to_numbered():
    sql = "update dogs set name = ?, birth_date = ? where id = ?"
    assert translate_placeholders(sql, NUMBERED) == "update dogs set name = $1, birth_date = $2 where id = $3"


def test_qmark_is_left_untouched():
    sql = "select * from `tasks` where `tasks`.`contact_id` = ?"
    assert translate_placeholders(sql, QMARK) == sql


def test_rewrite_batched_insert():
    assert rewrite_batched_insert("insert into dogs values(%s, %s)", 3) == \
        "insert into dogs values(%s, %s), (%s, %s), (%s, %s)"


@pytest.mark.parametrize("sql, rows", [
    ("update dogs set name = %s", 2),
    ("insert into dogs select * from other", 2),
    ("insert into dogs values(%s)", 0),
])
def test_rewrite_batched_insert_rejects(sql, rows):
    with pytest.raises(ValueError):
        rewrite_batched_insert(sql, rows)


def test_format_identifier():
    assert format_identifier("S_1") == '"S_1"'
    assert format_identifier('a"b') == '"a""b"'
