import re

from psycopg2 import sql

from endpoint_sql.errors import ConfigurationError

MAX_IDENTIFIER_LENGTH = 128

_PART = r"(?:[A-Za-z_][A-Za-z0-9_]*|\[[A-Za-z_][A-Za-z0-9_ ]*\])"
_IDENTIFIER_RE = re.compile(rf"^{_PART}(?:\.{_PART})*$")
_PART_RE = re.compile(_PART)
_FORBIDDEN = ("--", "/*", "*/", ";", "'", '"', "`")


def is_valid_identifier(name) -> bool:
	"""
	Allow-list check for table/column names taken from endpoint configuration.

	Accepted: 'Users', 'dbo.Users', '[User Orders]', 'sales.[Order Lines]'.
	"""
	if not isinstance(name, str) or not name:
		return False
	if len(name) > MAX_IDENTIFIER_LENGTH:
		return False
	if any(token in name for token in _FORBIDDEN):
		return False
	return _IDENTIFIER_RE.match(name) is not None


def validate_identifier(name, label: str = "identifier") -> str:
	if not is_valid_identifier(name):
		raise ConfigurationError(f"Invalid {label}: {name!r}")
	return name


def _split_parts(name: str) -> list[str]:
	return [m.group(0) for m in _PART_RE.finditer(name)]


def render_identifier(name: str) -> sql.Composable:
	"""
	Build the SQL for a validated identifier.

	Plain parts are emitted as written so they fold the same way as names in
	hand-written fragments; bracketed parts become quoted identifiers.
	"""
	validate_identifier(name)
	parts = _split_parts(name)
	if not any(p.startswith("[") for p in parts):
		return sql.SQL(name)
	rendered = [
		sql.Identifier(p[1:-1]) if p.startswith("[") else sql.SQL(p)
		for p in parts
	]
	return sql.SQL(".").join(rendered)


def bare_name(name: str) -> str:
	"""
	Last part of a possibly qualified identifier, without brackets.
	"""
	part = _split_parts(name)[-1] if is_valid_identifier(name) else name
	return part[1:-1] if part.startswith("[") else part


def identifier_text(name: str) -> str:
	"""
	Plain-text form of a validated identifier for string templates; bracketed parts become double-quoted.
	"""
	validate_identifier(name)
	return ".".join(
		f'"{p[1:-1]}"' if p.startswith("[") else p
		for p in _split_parts(name)
	)


def is_simple_name(name) -> bool:
	"""
	True for an unqualified, unbracketed name usable as a `:name` placeholder.
	"""
	return is_valid_identifier(name) and "." not in name and not name.startswith("[")
