import logging
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence
from psycopg2 import sql

from endpoint_sql import composite_key
from endpoint_sql.errors import describe_error
from endpoint_sql.identifiers import render_identifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExistenceResult:
	"""
	Composite keys already stored for one batch.

	`column_types` holds the Python type the driver returned for each key
	column, so request values can be coerced before they are compared.
	`degraded` is True when the check itself failed and every record is
	treated as new.
	"""
	keys: frozenset = frozenset()
	degraded: bool = False
	column_types: tuple = ()

	def __contains__(self, key: str) -> bool:
		return key in self.keys

	def __len__(self) -> int:
		return len(self.keys)

	def key_of(self, values: Sequence[Any]) -> str:
		return composite_key.encode(values, self.column_types)


def _usable(candidate: Mapping[str, Any], key_columns: Sequence[str]) -> bool:
	return all(candidate.get(c) is not None for c in key_columns)


def build_existence_query(table: str, key_columns: Sequence[str], candidates: Iterable[Mapping[str, Any]]) -> tuple[sql.Composed | None, dict[str, Any]]:
	"""
	One SELECT DISTINCT over the key columns with an OR of per-record equality groups.

	Returns (None, {}) when no candidate carries every key column.
	"""
	groups: list[sql.Composable] = []
	params: dict[str, Any] = {}
	for rec_idx, candidate in enumerate(candidates):
		if not _usable(candidate, key_columns):
			continue
		parts = []
		for pos, column in enumerate(key_columns):
			name = f"k{rec_idx}_{pos}"
			params[name] = candidate[column]
			parts.append(sql.SQL("{} = {}").format(render_identifier(column), sql.Placeholder(name)))
		groups.append(sql.SQL("({})").format(sql.SQL(" AND ").join(parts)))

	if not groups:
		return None, {}

	query = sql.SQL("SELECT DISTINCT {cols} FROM {tbl} WHERE {conds}").format(
		cols=sql.SQL(", ").join(render_identifier(c) for c in key_columns),
		tbl=render_identifier(table),
		conds=sql.SQL(" OR ").join(groups),
	)
	return query, params


def check_existing_keys(client, table: str, key_columns: Sequence[str], candidates: Iterable[Mapping[str, Any]]) -> ExistenceResult:
	"""
	Fetch the subset of candidate keys that already exist, in a single round trip.

	Any failure yields an empty, degraded result instead of raising.
	"""
	query, params = build_existence_query(table, key_columns, candidates)
	if query is None:
		return ExistenceResult()

	found: set[str] = set()
	types: list[type | None] = [None] * len(key_columns)
	try:
		with client.open_query(query, params) as handle:
			while not handle.end_of_set:
				values = [handle.value(i) for i in range(len(key_columns))]
				for i, value in enumerate(values):
					if types[i] is None and value is not None:
						types[i] = type(value)
				found.add(composite_key.encode(values))
				handle.next()
	except Exception as exc:
		logger.warning(
			"Bulk existence check on %s failed (%s); treating %s candidate(s) as new",
			table, describe_error(exc), len(params) // max(len(key_columns), 1),
		)
		return ExistenceResult(degraded=True)

	logger.debug("Existence check on %s matched %s key(s)", table, len(found))
	return ExistenceResult(keys=frozenset(found), column_types=tuple(types))
