from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Sequence

DELIMITER = "\x1f"
NULL_SENTINEL = "\x00"
_ESCAPE = "\x1b"
_VALUE_TAG = "="


def parse_iso_datetime(text: str) -> datetime:
	"""
	datetime.fromisoformat, also accepting a trailing `Z` for UTC.
	"""
	text = text.strip()
	if text[-1:] in ("Z", "z"):
		text = text[:-1] + "+00:00"
	return datetime.fromisoformat(text)


def key_text(value: Any) -> str:
	"""
	Textual form used for key comparison, so request values and fetched column values agree.
	"""
	if isinstance(value, bool):
		return "true" if value else "false"
	if isinstance(value, float) and value.is_integer():
		return str(int(value))
	if isinstance(value, Decimal):
		if value.is_finite() and value == value.to_integral_value():
			return str(int(value))
		return str(value.normalize())
	if isinstance(value, datetime):
		if value.utcoffset() is not None:
			value = value.astimezone(timezone.utc)
		return value.isoformat()
	if isinstance(value, date):
		return value.isoformat()
	return str(value)


def coerce_to(value: Any, target: type | None) -> Any:
	"""
	Convert a request value to the type its column was read back as.

	Values that do not convert are returned unchanged and simply fail to match.
	"""
	if value is None or target is None or isinstance(value, bool) or isinstance(value, target):
		return value
	try:
		if issubclass(target, bool):
			return value
		if issubclass(target, datetime):
			if isinstance(value, str):
				return parse_iso_datetime(value)
			if isinstance(value, date):
				return datetime(value.year, value.month, value.day)
		elif issubclass(target, date):
			if isinstance(value, str):
				parsed = parse_iso_datetime(value)
				return parsed.date()
			if isinstance(value, datetime):
				return value.date()
		elif issubclass(target, Decimal):
			if isinstance(value, (str, int, float)):
				return Decimal(str(value).strip())
		elif issubclass(target, int):
			if isinstance(value, str):
				return int(value.strip())
			if isinstance(value, (float, Decimal)) and value == int(value):
				return int(value)
		elif issubclass(target, float):
			if isinstance(value, (str, int, Decimal)):
				return float(value)
	except (ValueError, TypeError, InvalidOperation, OverflowError):
		return value
	return value


def _escape(text: str) -> str:
	return text.replace(_ESCAPE, _ESCAPE + _ESCAPE).replace(DELIMITER, _ESCAPE + "d")


def encode(values: Iterable[Any], types: Sequence[type | None] | None = None) -> str:
	"""
	Join ordered key values into one comparison string.

	Non-null parts are tagged and escaped, so no part can contain a raw
	delimiter and no non-null value can equal the null sentinel. With `types`,
	each value is first coerced to the matching column type.
	"""
	values = list(values)
	if types:
		values = [coerce_to(v, types[i] if i < len(types) else None) for i, v in enumerate(values)]
	parts = []
	for value in values:
		if value is None:
			parts.append(NULL_SENTINEL)
		else:
			parts.append(_VALUE_TAG + _escape(key_text(value)))
	return DELIMITER.join(parts)


def encode_record(column_values: Mapping[str, Any], key_columns: Sequence[str]) -> str:
	return encode(column_values.get(c) for c in key_columns)


def display_key(column_values: Mapping[str, Any], key_columns: Sequence[str]) -> str:
	"""
	Human-readable key used to prefix per-record error messages.
	"""
	return ",".join(
		"" if column_values.get(c) is None else key_text(column_values[c])
		for c in key_columns
	)
