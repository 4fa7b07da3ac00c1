from __future__ import annotations

import json
import math
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, Sequence

from endpoint_sql.composite_key import parse_iso_datetime
from endpoint_sql.field_lookup import CaseInsensitiveFieldLookup, resolve_field

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

_DATE_FORMATS = ("%Y/%m/%d",)


class ValueKind(Enum):
    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    NULL = "null"
    ARRAY = "array"
    OBJECT = "object"


def kind_of(value: Any) -> ValueKind:
    """
    Classify a decoded JSON value. Anything outside the JSON model (plus dates) is a TypeError.
    """
    if value is None:
        return ValueKind.NULL
    # bool before int: bool is an int subclass.
    if isinstance(value, bool):
        return ValueKind.BOOLEAN
    if isinstance(value, int):
        return ValueKind.INTEGER
    if isinstance(value, (float, Decimal)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (date, datetime)):
        return ValueKind.DATE
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    if isinstance(value, dict):
        return ValueKind.OBJECT
    raise TypeError(f"Unsupported value type: {type(value).__name__}")


def _json_default(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_text(value: Any) -> str | None:
    kind = kind_of(value)
    if kind is ValueKind.NULL:
        return None
    if kind is ValueKind.BOOLEAN:
        return "true" if value else "false"
    if kind is ValueKind.DATE:
        return value.isoformat()
    if kind in (ValueKind.ARRAY, ValueKind.OBJECT):
        return json.dumps(value, separators=(",", ":"), sort_keys=True, default=_json_default)
    return str(value)


def parse_date(text: str) -> datetime | None:
    text = text.strip()
    if not text:
        return None
    try:
        return parse_iso_datetime(text)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _in_int32(value: int) -> bool:
    return INT32_MIN <= value <= INT32_MAX


def get_object_parameter(record, name: str, *, lookup: CaseInsensitiveFieldLookup | None = None) -> tuple[bool, Any]:
    return resolve_field(record, name, lookup)


def get_string_parameter(record, name: str, *, lookup: CaseInsensitiveFieldLookup | None = None) -> tuple[bool, str | None]:
    found, value = resolve_field(record, name, lookup)
    if not found:
        return False, None
    try:
        return True, to_text(value)
    except (TypeError, ValueError):
        return False, None


def get_date_parameter(record, name: str, *, lookup: CaseInsensitiveFieldLookup | None = None) -> tuple[bool, date | None]:
    found, value = resolve_field(record, name, lookup)
    if not found:
        return False, None
    try:
        kind = kind_of(value)
    except TypeError:
        return False, None
    if kind is ValueKind.DATE:
        return True, value
    if kind is ValueKind.STRING:
        parsed = parse_date(value)
        if parsed is not None:
            return True, parsed
    return False, None


def get_integer_parameter(record, name: str, *, lookup: CaseInsensitiveFieldLookup | None = None) -> tuple[bool, int | None]:
    found, value = resolve_field(record, name, lookup)
    if not found:
        return False, None
    try:
        kind = kind_of(value)
    except TypeError:
        return False, None

    if kind is ValueKind.INTEGER:
        candidate = value
    elif kind is ValueKind.STRING:
        try:
            candidate = int(value.strip())
        except ValueError:
            return False, None
    elif kind is ValueKind.NUMBER:
        if isinstance(value, float) and not math.isfinite(value):
            return False, None
        if isinstance(value, Decimal) and not value.is_finite():
            return False, None
        candidate = int(value)
    else:
        return False, None

    if not _in_int32(candidate):
        return False, None
    return True, candidate


def get_array_parameter(record, name: str, *, lookup: CaseInsensitiveFieldLookup | None = None) -> tuple[bool, list | None]:
    found, value = resolve_field(record, name, lookup)
    if found and isinstance(value, list):
        return True, value
    return False, None


def get_parameters(
    record,
    fields: Sequence[str] | Mapping[str, str],
    *,
    lookup: CaseInsensitiveFieldLookup | None = None,
) -> dict[str, Any]:
    """
    Collect the values present in `record`.

    A sequence of field names keys the result by field name; a mapping of
    field name -> column name keys it by column.
    """
    pairs = fields.items() if isinstance(fields, Mapping) else ((f, f) for f in fields)
    params: dict[str, Any] = {}
    for field_name, target in pairs:
        found, value = get_object_parameter(record, field_name, lookup=lookup)
        if found:
            params[target] = value
    return params
