from __future__ import annotations

from psycopg2 import errorcodes


class ConfigurationError(ValueError):
    """
    Raised when an endpoint definition is unusable (bad template, invalid identifier, no key mapping).
    """


class BatchSizeError(ValueError):
    """
    Raised when a batch exceeds the configured record ceiling.
    """


_PGCODE_DESCRIPTIONS = {
    errorcodes.UNIQUE_VIOLATION: "duplicate key value",
    errorcodes.NOT_NULL_VIOLATION: "missing value for a non-nullable column",
    errorcodes.FOREIGN_KEY_VIOLATION: "foreign key violation",
    errorcodes.CHECK_VIOLATION: "check constraint violation",
    errorcodes.UNDEFINED_COLUMN: "unknown column",
    errorcodes.UNDEFINED_TABLE: "unknown table",
    errorcodes.QUERY_CANCELED: "statement timeout",
    errorcodes.STRING_DATA_RIGHT_TRUNCATION: "value too long for column",
    errorcodes.NUMERIC_VALUE_OUT_OF_RANGE: "numeric value out of range",
    errorcodes.INVALID_TEXT_REPRESENTATION: "invalid value",
    errorcodes.INVALID_DATETIME_FORMAT: "invalid date/time value",
    errorcodes.DATETIME_FIELD_OVERFLOW: "invalid date/time value",
}


def describe_error(exc: BaseException) -> str:
    """
    Short, schema-free description of an exception suitable for a response body.

    Driver messages can echo SQL text and constraint/index names, so only the
    SQLSTATE-derived description (or the exception type) is exposed.
    """
    if isinstance(exc, (ConfigurationError, BatchSizeError)):
        return str(exc)

    pgcode = getattr(exc, "pgcode", None)
    if pgcode:
        described = _PGCODE_DESCRIPTIONS.get(pgcode)
        if described:
            return described
        if pgcode.startswith("22"):
            return "invalid value"
        if pgcode.startswith("08"):
            return "connection failure"
        return f"storage error (SQLSTATE {pgcode})"

    return type(exc).__name__


def error_response(reason: str) -> dict[str, str]:
    return {"Result": "KO", "Reason": reason}
