# tests/test_types.py
import datetime
from decimal import Decimal

import pytest

from protoprobe.types import NOW, ParamType, bind_values, normalize_row, normalize_value


def test_bind_values_coerces_by_schema():
    bound = bind_values((ParamType.INTEGER, ParamType.TEXT, ParamType.TIMESTAMP),
                        ("42", 581800, "2024-01-02T03:04:05"))
    assert bound == (42, "581800", datetime.datetime(2024, 1, 2, 3, 4, 5))


def test_now_is_resolved_from_client_clock_at_bind_time():
    before = datetime.datetime.now().replace(microsecond=0)
    (value,) = bind_values((ParamType.TIMESTAMP,), (NOW,))
    after = datetime.datetime.now()
    assert isinstance(value, datetime.datetime)
    assert before <= value <= after
    assert value.microsecond == 0
    assert repr(NOW) == "NOW"


def test_aware_timestamps_become_naive_utc():
    aware = datetime.datetime(2024, 1, 1, 12, 0, tzinfo=datetime.timezone(datetime.timedelta(hours=2)))
    assert ParamType.TIMESTAMP.to_database(aware) == datetime.datetime(2024, 1, 1, 10, 0)


def test_null_binds_as_null():
    assert bind_values((ParamType.INTEGER,), (None,)) == (None,)


@pytest.mark.parametrize("param_type, value", [
    (ParamType.INTEGER, True),
    (ParamType.INTEGER, "abc"),
    (ParamType.TIMESTAMP, 12),
])
def test_invalid_values_raise(param_type, value):
    with pytest.raises((TypeError, ValueError)):
        param_type.to_database(value)


def test_normalize_value():
    assert normalize_value(b"fido") == "fido"
    assert normalize_value(bytearray(b"\xff")) == "ff"
    assert normalize_value(True) == 1
    assert normalize_value(Decimal("3")) == 3
    assert normalize_value(Decimal("3.50")) == "3.50"
    assert normalize_value(datetime.date(2024, 1, 2)) == "2024-01-02"
    assert normalize_row([1, b"x", None]) == (1, "x", None)
