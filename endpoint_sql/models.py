from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence


@dataclass(frozen=True)
class ParameterCondition:
    """
    SQL contributed to the WHERE clause depending on whether a request field is present.

    Fragments are written by the endpoint author and reference bound values as `:Name`.
    """
    name: str
    sql_when_present: str | None = None
    sql_when_absent: str | None = None
    bind_parameter: bool = True
    default_value: Any = None


@dataclass(frozen=True)
class FieldMapping:
    """
    Request field -> storage column, with required/key/default metadata.
    """
    request_field: str
    storage_column: str
    required: bool = False
    is_key: bool = False
    default_value: Any = None


def _pick(values: Sequence | None, i: int, default):
    if values is not None and i < len(values):
        return values[i]
    return default


def create_parameter_conditions(
    names: Sequence[str],
    when_present: Sequence[str | None],
    when_absent: Sequence[str | None] | None = None,
    bind_flags: Sequence[bool] | None = None,
    defaults: Sequence[Any] | None = None,
) -> list[ParameterCondition]:
    """
    Build conditions from parallel sequences. Optional sequences may be shorter than `names`.
    """
    if len(when_present) != len(names):
        raise ValueError("names and when_present must have the same length.")
    return [
        ParameterCondition(
            name=name,
            sql_when_present=when_present[i],
            sql_when_absent=_pick(when_absent, i, None),
            bind_parameter=bool(_pick(bind_flags, i, True)),
            default_value=_pick(defaults, i, None),
        )
        for i, name in enumerate(names)
    ]


def create_field_mappings(
    request_fields: Sequence[str],
    storage_columns: Sequence[str],
    required_flags: Sequence[bool] | None = None,
    defaults: Sequence[Any] | None = None,
    key_flags: Sequence[bool] | None = None,
) -> list[FieldMapping]:
    if len(storage_columns) != len(request_fields):
        raise ValueError("request_fields and storage_columns must have the same length.")
    return [
        FieldMapping(
            request_field=field,
            storage_column=storage_columns[i],
            required=bool(_pick(required_flags, i, False)),
            is_key=bool(_pick(key_flags, i, False)),
            default_value=_pick(defaults, i, None),
        )
        for i, field in enumerate(request_fields)
    ]
