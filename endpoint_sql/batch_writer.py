import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

from endpoint_sql import composite_key
from endpoint_sql.errors import BatchSizeError, ConfigurationError, describe_error, error_response
from endpoint_sql.existence import ExistenceResult, check_existing_keys
from endpoint_sql.field_lookup import CaseInsensitiveFieldLookup
from endpoint_sql.identifiers import bare_name, validate_identifier
from endpoint_sql.models import FieldMapping
from endpoint_sql.parameters import get_object_parameter

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZE = 1000
DEFAULT_RECORDS_FIELD = "Records"


class Outcome(Enum):
	INSERTED = "inserted"
	UPDATED = "updated"
	REJECTED_EXISTS = "rejected-exists"
	ERROR = "error"
	SKIPPED = "skipped"


@dataclass
class BatchResult:
	"""
	Counts and per-record error strings for one batch call.
	"""
	records: int = 0
	inserted: int = 0
	updated: int = 0
	error_details: list[str] = field(default_factory=list)
	outcomes: list[Outcome] = field(default_factory=list)
	failed_columns: int = 0
	existence_degraded: bool = False

	@property
	def errors(self) -> int:
		return len(self.error_details)

	@property
	def status(self) -> str:
		if self.errors == 0:
			return "OK"
		if self.records > 0 and self.errors >= self.records:
			return "KO"
		return "PARTIAL"

	@property
	def message(self) -> str:
		return (
			f"Processed {self.records} records: {self.inserted} inserted, "
			f"{self.updated} updated, {self.errors} errors."
		)

	def add_error(self, outcome: Outcome, detail: str) -> None:
		self.outcomes.append(outcome)
		self.error_details.append(detail)

	def to_response(self) -> dict[str, Any]:
		return {
			"Result": self.status,
			"Inserted": self.inserted,
			"Updated": self.updated,
			"Errors": self.errors,
			"ErrorDetails": list(self.error_details),
			"Message": self.message,
		}


class BatchUpsertWriter:
	"""
	Insert-or-update a batch of request records with one bulk existence check.

		writer = BatchUpsertWriter(
			"Articles",
			create_field_mappings(["ArticleId", "Title"], ["ArticleId", "Title"], key_flags=[True]),
			allow_updates=True,
		)
		response = writer.execute(client, {"Records": [{"ArticleId": 1, "Title": "Hello"}]})

	Records are written one statement at a time in input order; only the
	existence check is batched.
	"""

	def __init__(
		self,
		table: str,
		field_mappings: Sequence[FieldMapping] | Mapping[str, FieldMapping],
		allow_updates: bool = False,
		*,
		max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
		records_field: str = DEFAULT_RECORDS_FIELD,
		lookup: CaseInsensitiveFieldLookup | None = None,
	):
		self.table = validate_identifier(table, "table name")
		items = field_mappings.values() if isinstance(field_mappings, Mapping) else field_mappings
		self.mappings: list[FieldMapping] = list(items or [])
		if not self.mappings:
			raise ConfigurationError("At least one field mapping is required.")

		seen: set[str] = set()
		for m in self.mappings:
			if not isinstance(m, FieldMapping):
				raise ConfigurationError(f"Unsupported field mapping entry: {m!r}")
			if not m.request_field or not str(m.request_field).strip():
				raise ConfigurationError("FieldMapping.request_field cannot be empty.")
			validate_identifier(m.storage_column, "column name")
			folded = bare_name(m.storage_column).casefold()
			if folded in seen:
				raise ConfigurationError(f"Storage column mapped more than once: {m.storage_column!r}")
			seen.add(folded)

		self.key_columns = [m.storage_column for m in self.mappings if m.is_key]
		if not self.key_columns:
			raise ConfigurationError(f"No key mapping declared for table {table!r}; mark at least one FieldMapping with is_key=True.")
		if not isinstance(max_batch_size, int) or isinstance(max_batch_size, bool) or max_batch_size <= 0:
			raise ConfigurationError("max_batch_size must be a positive integer.")

		self.allow_updates = bool(allow_updates)
		self.max_batch_size = max_batch_size
		self.records_field = records_field
		self._lookup = lookup
		self._key_set = set(self.key_columns)

	def __repr__(self) -> str:
		return f"<BatchUpsertWriter table={self.table} keys={','.join(self.key_columns)} updates={self.allow_updates}>"

	# ---------- Input shaping ----------
	def normalize_records(self, payload) -> list:
		"""
		A list is a batch; an object carrying a list under the records field is a
		batch; any other object is a one-record batch.
		"""
		if isinstance(payload, (list, tuple)):
			return list(payload)
		if isinstance(payload, dict):
			found, value = get_object_parameter(payload, self.records_field, lookup=self._lookup)
			if found and isinstance(value, list):
				return value
			if found and isinstance(value, dict):
				return [value]
			return [payload]
		raise ValueError("Payload must be an object or an array of objects.")

	def _extract(self, record, number: int) -> tuple[dict[str, Any] | None, str | None]:
		if not isinstance(record, dict):
			return None, f"Record {number} skipped - not an object"

		missing = []
		for m in self.mappings:
			if m.required:
				found, value = get_object_parameter(record, m.request_field, lookup=self._lookup)
				if not found or value is None:
					missing.append(m.request_field)
		if missing:
			return None, f"Record {number} skipped - Missing required parameters: {', '.join(missing)}"

		values: dict[str, Any] = {}
		for m in self.mappings:
			found, value = get_object_parameter(record, m.request_field, lookup=self._lookup)
			if found:
				values[m.storage_column] = value
			elif m.default_value is not None:
				values[m.storage_column] = m.default_value
		return values, None

	# ---------- Per-record writes ----------
	def _insert(self, appender: Callable[[], Any], values: dict[str, Any], label: str, result: BatchResult) -> Outcome:
		try:
			target = appender()
			target.begin_append()
			for column, value in values.items():
				target.replace(column, value)
			if target.failed_columns:
				result.failed_columns += len(target.failed_columns)
			ok, message = target.save()
		except Exception as exc:
			result.add_error(Outcome.ERROR, f"{label} - Insert error: {describe_error(exc)}")
			return Outcome.ERROR
		if not ok:
			result.add_error(Outcome.ERROR, f"{label} - Save error: {message}")
			return Outcome.ERROR
		result.inserted += 1
		result.outcomes.append(Outcome.INSERTED)
		return Outcome.INSERTED

	def _update(self, client, values: dict[str, Any], label: str, result: BatchResult) -> Outcome:
		updates = {c: v for c, v in values.items() if c not in self._key_set}
		if not updates:
			logger.debug("Record %s has no non-key columns; counted as updated", label)
			result.updated += 1
			result.outcomes.append(Outcome.UPDATED)
			return Outcome.UPDATED

		keys = {c: values[c] for c in self.key_columns}
		try:
			affected = client.update_where(self.table, updates, keys)
		except Exception as exc:
			result.add_error(Outcome.ERROR, f"{label} - Update error: {describe_error(exc)}")
			return Outcome.ERROR
		if not affected:
			result.add_error(Outcome.ERROR, f"{label} - Update error: no matching record")
			return Outcome.ERROR
		result.updated += 1
		result.outcomes.append(Outcome.UPDATED)
		return Outcome.UPDATED

	def _write_one(
		self,
		client,
		appender: Callable[[], Any],
		values: dict[str, Any],
		existence: ExistenceResult,
		existing: set[str],
		result: BatchResult,
	) -> None:
		label = composite_key.display_key(values, self.key_columns)
		key_values = [values.get(c) for c in self.key_columns]
		missing = [c for c, v in zip(self.key_columns, key_values) if v is None]
		if missing:
			result.add_error(Outcome.ERROR, f"{label} - Missing key value(s): {', '.join(missing)}")
			return

		key = existence.key_of(key_values)
		if key in existing:
			if not self.allow_updates:
				result.add_error(Outcome.REJECTED_EXISTS, f"{label} - Record already exists and updates are not allowed")
				return
			logger.debug("Updating %s in %s", label, self.table)
			self._update(client, values, label, result)
			return

		logger.debug("Inserting %s into %s", label, self.table)
		if self._insert(appender, values, label, result) is Outcome.INSERTED:
			existing.add(key)

	# ---------- Entry points ----------
	def run(self, client, payload) -> BatchResult:
		"""
		Process a batch and return the BatchResult.

		Raises BatchSizeError (before any storage access) or ValueError for an
		unusable payload; everything per-record is reported in the result.
		Inserts share one appender, opened on the first insert and released
		when the batch ends.
		"""
		records = self.normalize_records(payload)
		if len(records) > self.max_batch_size:
			raise BatchSizeError(
				f"Batch contains {len(records)} records; the maximum is {self.max_batch_size}."
			)

		result = BatchResult(records=len(records))
		extracted: list[dict[str, Any]] = []
		for number, record in enumerate(records, start=1):
			values, error = self._extract(record, number)
			if error is not None:
				result.add_error(Outcome.SKIPPED, error)
				continue
			extracted.append(values)

		existence = check_existing_keys(client, self.table, self.key_columns, extracted) if extracted else ExistenceResult()
		result.existence_degraded = existence.degraded
		existing = set(existence.keys)

		with ExitStack() as stack:
			opened: list[Any] = []

			def appender():
				if not opened:
					opened.append(stack.enter_context(client.open_append(self.table)))
				return opened[0]

			for values in extracted:
				self._write_one(client, appender, values, existence, existing, result)

		logger.debug(
			"Batch on %s: %s inserted, %s updated, %s errors",
			self.table, result.inserted, result.updated, result.errors,
		)
		return result

	def execute(self, client, payload) -> dict[str, Any]:
		"""
		Endpoint entry point: always returns a response dict.
		"""
		try:
			return self.run(client, payload).to_response()
		except (BatchSizeError, ValueError) as exc:
			logger.warning("Batch on %s rejected: %s", self.table, exc)
			return error_response(str(exc))
		except Exception as exc:
			logger.exception("Batch operation on %s failed", self.table)
			return error_response(f"Batch operation failed: {describe_error(exc)}")
