"""
Cell and column coercion helpers.

All strategies that change the type of a column go through cast_series, so a
column declared as Int64 holds pandas' nullable Int64, a Boolean column the
nullable "boolean" dtype, and so on. Missing cells stay missing.
"""

from __future__ import annotations

import datetime
import math
import typing

import pandas as pd

from .errors import CastingError
from .semantics import OutputDataType

DATE_FORMATS = ("%Y-%m-%d", "%Y.%m.%d", "%m/%d/%Y", "%d-%m-%Y", "%d.%m.%Y", "%Y")
DATETIME_FORMATS = (
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
)

_TRUE_STRINGS = {"1", "true", "t", "yes", "y"}
_FALSE_STRINGS = {"0", "false", "f", "no", "n"}

# pandas.api.types.infer_dtype result -> declared output type
_INFERRED_TYPES = {
    "string": OutputDataType.STRING,
    "empty": OutputDataType.STRING,
    "integer": OutputDataType.INT64,
    "floating": OutputDataType.FLOAT64,
    "mixed-integer-float": OutputDataType.FLOAT64,
    "decimal": OutputDataType.FLOAT64,
    "boolean": OutputDataType.BOOLEAN,
    "date": OutputDataType.DATE,
    "datetime": OutputDataType.DATETIME,
    "datetime64": OutputDataType.DATETIME,
}


def is_missing(value: typing.Any) -> bool:
    """True for None, NaN, NaT and pandas NA (but not for empty strings)."""
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        # list-like cells are never "missing"
        return False


def stringify(value: typing.Any) -> str:
    """
    Text form of a cell: whole floats lose their ".0" so that 12.0 and 12 read the same.
    """
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    return str(value)


def infer_output_type(series: pd.Series) -> typing.Optional[OutputDataType]:
    """Best-effort mapping of a column's content onto an OutputDataType; None if mixed."""
    inferred = pd.api.types.infer_dtype(series, skipna=True)
    return _INFERRED_TYPES.get(inferred)


def parse_date(text: str) -> typing.Optional[datetime.date]:
    for fmt in DATE_FORMATS:
        try:
            return datetime.datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_datetime(text: str) -> typing.Optional[datetime.datetime]:
    """Parse a datetime; a bare date is read as midnight of that day."""
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.datetime.strptime(text, fmt)
        except ValueError:
            continue
    date = parse_date(text)
    if date is not None:
        return datetime.datetime.combine(date, datetime.time())
    return None


def _to_bool(value: typing.Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    s = str(value).strip().lower()
    if s in _TRUE_STRINGS:
        return True
    if s in _FALSE_STRINGS:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _to_int(value: typing.Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"not an integer: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if value.is_integer():
            return int(value)
        raise ValueError(f"not a whole number: {value!r}")
    s = str(value).strip()
    try:
        return int(s)
    except ValueError:
        number = float(s)
        if number.is_integer():
            return int(number)
        raise


def _to_date(value: typing.Any) -> datetime.date:
    if isinstance(value, datetime.datetime):
        return value.date()
    if isinstance(value, datetime.date):
        return value
    parsed = parse_date(stringify(value).strip())
    if parsed is None:
        raise ValueError(f"not a date: {value!r}")
    return parsed


def _to_datetime(value: typing.Any) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time())
    parsed = parse_datetime(str(value).strip())
    if parsed is None:
        raise ValueError(f"not a datetime: {value!r}")
    return parsed


_CONVERTERS: dict[OutputDataType, typing.Callable[[typing.Any], typing.Any]] = {
    OutputDataType.BOOLEAN: _to_bool,
    OutputDataType.STRING: stringify,
    OutputDataType.FLOAT64: float,
    OutputDataType.INT64: _to_int,
    OutputDataType.DATE: _to_date,
    OutputDataType.DATETIME: _to_datetime,
}


def cast_value(value: typing.Any, target: OutputDataType) -> typing.Any:
    """
    Convert one non-missing cell to `target`. Raises ValueError/TypeError if impossible.
    """
    return _CONVERTERS[target](value)


def cast_series(series: pd.Series, target: OutputDataType, column: typing.Optional[str] = None) -> pd.Series:
    """
    Convert a whole column to `target`, keeping missing cells missing.

    Raises
    ------
    CastingError
        On the first cell that cannot be converted.
    """
    name = column if column is not None else str(series.name)
    converted: list[typing.Any] = []
    for value in series:
        if is_missing(value) or (
            target is not OutputDataType.STRING and isinstance(value, str) and not value.strip()
        ):
            converted.append(None)
            continue
        try:
            converted.append(cast_value(value, target))
        except (ValueError, TypeError, OverflowError) as e:
            raise CastingError(name, value, target.value) from e

    if target is OutputDataType.BOOLEAN:
        return pd.Series(converted, index=series.index, name=series.name, dtype="boolean")
    if target is OutputDataType.INT64:
        return pd.Series(converted, index=series.index, name=series.name, dtype="Int64")
    if target is OutputDataType.FLOAT64:
        return pd.Series(converted, index=series.index, name=series.name, dtype="Float64")
    if target is OutputDataType.DATETIME:
        return pd.to_datetime(pd.Series(converted, index=series.index, name=series.name, dtype=object))
    return pd.Series(converted, index=series.index, name=series.name, dtype=object)
