import logging
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Sequence

from endpoint_sql.errors import ConfigurationError
from endpoint_sql.field_lookup import CaseInsensitiveFieldLookup
from endpoint_sql.models import FieldMapping, ParameterCondition
from endpoint_sql.parameters import get_object_parameter

logger = logging.getLogger(__name__)

WHERE_MARKER = "{WHERE}"

_MARKER_RE = re.compile(re.escape(WHERE_MARKER), flags=re.IGNORECASE)
_WHERE_RE = re.compile(r"\bWHERE\b", flags=re.IGNORECASE)


@dataclass(frozen=True)
class BuiltQuery:
	"""
	Final SQL text (with `:name` placeholders) and the values to bind.
	"""
	sql: str
	params: dict[str, Any] = field(default_factory=dict)
	provided: tuple[str, ...] = ()


def _normalize_conditions(conditions) -> list[ParameterCondition]:
	if conditions is None:
		return []
	items = conditions.values() if isinstance(conditions, Mapping) else conditions
	normalized: list[ParameterCondition] = []
	for c in items:
		if not isinstance(c, ParameterCondition):
			raise ConfigurationError(f"Unsupported condition entry: {c!r}")
		if not c.name or not str(c.name).strip():
			raise ConfigurationError("ParameterCondition.name cannot be empty.")
		normalized.append(c)
	return normalized


def _normalize_mappings(field_mappings) -> dict[str, FieldMapping]:
	if not field_mappings:
		return {}
	items = field_mappings.values() if isinstance(field_mappings, Mapping) else field_mappings
	return {m.request_field: m for m in items}


class ConditionalQueryBuilder:
	"""
	Splice request-driven WHERE conditions into a query template.

		builder = ConditionalQueryBuilder(
			"SELECT OrderId, Status FROM Orders {WHERE} ORDER BY OrderId",
			[ParameterCondition("Status", "Status = :Status", "Status IS NOT NULL")],
		)
		built = builder.build({"status": "Active"})
	"""

	def __init__(
		self,
		template: str,
		conditions: Sequence[ParameterCondition] | Mapping[str, ParameterCondition] | None = None,
		*,
		default_where: Optional[str] = None,
		field_mappings: Sequence[FieldMapping] | Mapping[str, FieldMapping] | None = None,
		lookup: CaseInsensitiveFieldLookup | None = None,
	):
		if not isinstance(template, str) or not template.strip():
			raise ConfigurationError("Query template must be a non-empty string.")
		marker_count = len(_MARKER_RE.findall(template))
		if marker_count > 1:
			raise ConfigurationError(
				f"Query template contains {marker_count} {WHERE_MARKER} markers; at most one is allowed."
			)
		self.template = template
		self.conditions = _normalize_conditions(conditions)
		self.default_where = default_where.strip() if default_where and default_where.strip() else None
		self._mappings = _normalize_mappings(field_mappings)
		self._mappings_folded = {k.casefold(): v for k, v in self._mappings.items()}
		self._lookup = lookup

	def _bind_name(self, field_name: str) -> str:
		mapping = self._mappings.get(field_name) or self._mappings_folded.get(field_name.casefold())
		return mapping.storage_column if mapping is not None else field_name

	def _splice(self, clause: str) -> str:
		marker = _MARKER_RE.search(self.template)
		if marker is not None:
			keyword = "AND" if _WHERE_RE.search(self.template[:marker.start()]) else "WHERE"
			return self.template[:marker.start()] + f"{keyword} {clause}" + self.template[marker.end():]
		keyword = "AND" if _WHERE_RE.search(self.template) else "WHERE"
		return f"{self.template.rstrip()} {keyword} {clause}"

	def _strip_marker(self) -> str:
		return _MARKER_RE.sub("", self.template)

	def build(self, record) -> BuiltQuery:
		where_parts: list[str] = []
		params: dict[str, Any] = {}
		provided: list[str] = []

		for c in self.conditions:
			found, value = get_object_parameter(record, c.name, lookup=self._lookup)
			if found:
				provided.append(c.name)
				if c.sql_when_present:
					where_parts.append(c.sql_when_present)
					if c.bind_parameter:
						params[self._bind_name(c.name)] = value
			else:
				if c.sql_when_absent:
					where_parts.append(c.sql_when_absent)
				if c.default_value is not None and c.bind_parameter:
					params[self._bind_name(c.name)] = c.default_value

		if where_parts:
			final_sql = self._splice(" AND ".join(where_parts))
		elif self.default_where:
			final_sql = self._splice(self.default_where)
		else:
			final_sql = self._strip_marker()

		logger.debug("Built query with %s condition(s), provided=%s", len(where_parts), provided)
		return BuiltQuery(sql=final_sql, params=params, provided=tuple(provided))
