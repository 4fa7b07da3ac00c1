import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from threading import RLock
from typing import Any, Iterable, Iterator, Mapping, Optional, Sequence
from psycopg2 import sql
from psycopg2.extras import Json
from psycopg2.pool import ThreadedConnectionPool

from endpoint_sql.errors import describe_error
from endpoint_sql.identifiers import bare_name, render_identifier

logger = logging.getLogger(__name__)

_NAMED_PARAM_RE = re.compile(
	r"""'(?:[^']|'')*'|"(?:[^"]|"")*"|::|:(?P<name>[A-Za-z_][A-Za-z0-9_]*)|%"""
)


def to_pyformat(query: str) -> str:
	"""
	Translate `:name` placeholders into psycopg2's `%(name)s` style.

	Quoted literals and identifiers are left untouched apart from doubling `%`,
	`::` casts are preserved, and bare `%` characters are escaped.
	"""
	def _replace(match: re.Match) -> str:
		token = match.group(0)
		if match.group("name"):
			return f"%({match.group('name')})s"
		if token == "%":
			return "%%"
		if token[0] in "'\"":
			return token.replace("%", "%%")
		return token

	return _NAMED_PARAM_RE.sub(_replace, query)


def adapt_value(value: Any) -> Any:
	if isinstance(value, dict):
		return Json(value)
	return value


def _prepare_params(params) -> dict | list:
	if params is None:
		return []
	if isinstance(params, Mapping):
		return {k: adapt_value(v) for k, v in params.items()}
	return [adapt_value(v) for v in params]


class QueryHandle:
	"""
	Forward-only cursor over one statement's result set.

	Lifecycle: open() -> iterate with end_of_set / value() / next() -> close() -> dispose().
	Use PSQLClient.open_query() so close and dispose always run.
	"""

	def __init__(self, client: "PSQLClient", query, params=None):
		self._client = client
		self._query = query
		self._params = params
		self._conn = None
		self._cur = None
		self._row: tuple | None = None
		self._failed = False
		self.fields: list[str] = []
		self._field_index: dict[str, int] = {}

	@property
	def active(self) -> bool:
		return self._cur is not None

	@property
	def end_of_set(self) -> bool:
		return self._row is None

	def open(self) -> "QueryHandle":
		if self.active:
			return self
		self._conn = self._client.acquire()
		query_text = self._client.render(self._conn, self._query)
		self._cur = self._conn.cursor()
		try:
			self._cur.execute(query_text, _prepare_params(self._params))
		except Exception:
			self._failed = True
			raise
		if self._cur.description is not None:
			self.fields = [d[0] for d in self._cur.description]
			self._field_index = {}
			for i, name in enumerate(self.fields):
				self._field_index.setdefault(name, i)
				self._field_index.setdefault(name.casefold(), i)
			self._row = self._cur.fetchone()
		return self

	def value(self, field: str | int) -> Any:
		if self._row is None:
			raise LookupError("No current row.")
		if isinstance(field, int):
			return self._row[field]
		idx = self._field_index.get(field)
		if idx is None:
			idx = self._field_index.get(field.casefold())
		if idx is None:
			raise KeyError(field)
		return self._row[idx]

	def next(self) -> None:
		if self._row is not None:
			self._row = self._cur.fetchone()

	def rows(self, exclude: Iterable[str] | None = None) -> list[dict]:
		"""
		Drain the remaining rows into dicts, dropping `exclude` fields (case-insensitive).
		"""
		excluded = {f.casefold() for f in (exclude or [])}
		keep = [(i, name) for i, name in enumerate(self.fields) if name.casefold() not in excluded]
		out: list[dict] = []
		while not self.end_of_set:
			out.append({name: self._row[i] for i, name in keep})
			self.next()
		return out

	def close(self) -> None:
		if self._cur is None:
			return
		try:
			self._cur.close()
		finally:
			self._cur = None
			self._row = None
			if self._failed:
				self._conn.rollback()
			else:
				self._conn.commit()

	def dispose(self) -> None:
		if self._conn is not None:
			conn, self._conn = self._conn, None
			self._client.release(conn)


class RecordAppender:
	"""
	Insert handle: begin_append(), replace() per column, then save().

	Columns the table does not have are rejected by replace() and counted in
	failed_columns instead of failing the whole record.
	"""

	def __init__(self, client: "PSQLClient", table: str):
		self._client = client
		self.table = table
		self._conn = None
		self._columns: dict[str, str] = {}
		self._values: dict[str, Any] = {}
		self.failed_columns: list[str] = []

	@property
	def active(self) -> bool:
		return self._conn is not None

	def open(self) -> "RecordAppender":
		if self.active:
			return self
		self._conn = self._client.acquire()
		query = sql.SQL("SELECT * FROM {tbl} WHERE 1=0").format(tbl=render_identifier(self.table))
		try:
			with self._conn.cursor() as cur:
				cur.execute(self._client.render(self._conn, query), [])
				names = [d[0] for d in (cur.description or [])]
			self._conn.commit()
		except Exception:
			self._conn.rollback()
			raise
		self._columns = {name.casefold(): name for name in names}
		return self

	def begin_append(self) -> None:
		self._values = {}
		self.failed_columns = []

	def replace(self, column: str, value: Any) -> bool:
		if bare_name(column).casefold() not in self._columns:
			self.failed_columns.append(column)
			logger.debug("Column %s not found on %s; value skipped", column, self.table)
			return False
		self._values[column] = value
		return True

	def save(self) -> tuple[bool, str]:
		if not self._values:
			return False, "No columns could be assigned"
		columns = list(self._values.keys())
		query = sql.SQL("INSERT INTO {tbl} ({fields}) VALUES ({placeholders})").format(
			tbl=render_identifier(self.table),
			fields=sql.SQL(", ").join(render_identifier(c) for c in columns),
			placeholders=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
		)
		try:
			self._client.run_statement(self._conn, query, [self._values[c] for c in columns])
		except Exception as exc:
			logger.debug("Insert into %s failed: %s", self.table, type(exc).__name__)
			return False, describe_error(exc)
		return True, "Record saved"

	def close(self) -> None:
		self._values = {}

	def dispose(self) -> None:
		if self._conn is not None:
			conn, self._conn = self._conn, None
			self._client.release(conn)


@dataclass(frozen=True)
class ConnectionSettings:
	"""
	Connection parameters for one pool; also the key of the shared-client registry.

	Extra psycopg2 connect arguments (sslmode, options="-c statement_timeout=5000", ...)
	are kept in `extra` as sorted pairs (unhashable values keyed by repr) and passed
	to psycopg2 unchanged from `raw_extra`.
	"""
	database: str = "postgres"
	user: str = "postgres"
	password: Optional[str] = field(default=None, repr=False)
	host: Optional[str] = None
	port: Optional[int] = None
	minconn: int = 1
	maxconn: int = 10
	extra: tuple[tuple[str, Any], ...] = ()
	raw_extra: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

	@classmethod
	def of(cls, **kwargs) -> "ConnectionSettings":
		known = {f: kwargs.pop(f) for f in ("database", "user", "password", "host", "port", "minconn", "maxconn") if f in kwargs}
		extra = []
		for key in sorted(kwargs):
			value = kwargs[key]
			try:
				hash(value)
			except TypeError:
				value = repr(value)
			extra.append((key, value))
		return cls(**known, extra=tuple(extra), raw_extra=dict(kwargs))

	def connect_kwargs(self) -> dict[str, Any]:
		out: dict[str, Any] = {"database": self.database, "user": self.user}
		for name in ("password", "host", "port"):
			value = getattr(self, name)
			if value is not None:
				out[name] = value
		out.update(self.raw_extra or dict(self.extra))
		return out

	def label(self) -> str:
		port = f":{self.port}" if self.port else ""
		return f"{self.user}@{self.host or ''}{port}/{self.database}"


class PSQLClient:
	"""
	Pooled PostgreSQL client; the storage collaborator for readers and batch writers.

		client = PSQLClient(database="WebsiteDev", user="postgres", host="localhost",
			options="-c statement_timeout=5000")

	`PSQLClient.get(...)` returns one shared client per distinct ConnectionSettings;
	`PSQLClient.closeall()` closes every shared pool.
	"""

	_shared: dict[ConnectionSettings, "PSQLClient"] = {}
	_shared_lock = RLock()

	def __init__(self, settings: ConnectionSettings | None = None, **kwargs):
		self.settings = settings if settings is not None else ConnectionSettings.of(**kwargs)
		self._closed = False
		self._state_lock = RLock()
		logger.debug("Opening pool for %s", self.settings.label())
		self.pool = ThreadedConnectionPool(
			self.settings.minconn,
			self.settings.maxconn,
			**self.settings.connect_kwargs()
		)

	@classmethod
	def get(cls, **kwargs) -> "PSQLClient":
		settings = ConnectionSettings.of(**kwargs)
		with cls._shared_lock:
			client = cls._shared.get(settings)
			if client is None or client._closed:
				client = cls(settings)
				cls._shared[settings] = client
			return client

	@classmethod
	def closeall(cls) -> None:
		with cls._shared_lock:
			clients, cls._shared = list(cls._shared.values()), {}
		for client in clients:
			try:
				client.close()
			except Exception:
				logger.exception("Error closing pool for %s", client.settings.label())

	def __repr__(self) -> str:
		return f"<PSQLClient {self.settings.label()} pool={self.settings.minconn}-{self.settings.maxconn}>"

	# ---------- Pool ----------
	def close(self) -> None:
		with self._state_lock:
			if self._closed:
				return
			self._closed = True
		with self.__class__._shared_lock:
			if self.__class__._shared.get(self.settings) is self:
				del self.__class__._shared[self.settings]
		self.pool.closeall()

	def acquire(self):
		with self._state_lock:
			if self._closed:
				raise RuntimeError("PSQLClient is closed.")
		return self.pool.getconn()

	def release(self, conn) -> None:
		try:
			self.pool.putconn(conn)
		except Exception:
			# A pool closed underneath an open handle has nothing left to return to.
			if not self._closed:
				raise

	# ---------- Statements ----------
	@staticmethod
	def render(conn, query) -> str:
		return query if isinstance(query, str) else query.as_string(conn)

	@staticmethod
	def collect_rows(cur) -> list[dict] | None:
		if cur.description is None:
			return None
		names = [d[0] for d in cur.description]
		return [dict(zip(names, row)) for row in cur.fetchall()]

	def run_statement(self, conn, query, params=None) -> list[dict] | None:
		"""
		Execute one statement on a checked-out connection and commit it; roll back and re-raise on failure.
		"""
		try:
			with conn.cursor() as cur:
				cur.execute(self.render(conn, query), _prepare_params(params))
				rows = self.collect_rows(cur)
			conn.commit()
		except Exception:
			conn.rollback()
			raise
		return rows

	@contextmanager
	def open_query(self, query, params=None) -> Iterator[QueryHandle]:
		"""
		Open a forward-only result handle; the cursor is closed and the
		connection returned to the pool on every exit path.

			with client.open_query("SELECT id FROM t WHERE a = %(a)s", {"a": 1}) as q:
				while not q.end_of_set:
					print(q.value("id"))
					q.next()
		"""
		handle = QueryHandle(self, query, params)
		try:
			handle.open()
			yield handle
		except Exception:
			handle._failed = True
			raise
		finally:
			try:
				handle.close()
			finally:
				handle.dispose()

	@contextmanager
	def open_append(self, table: str) -> Iterator[RecordAppender]:
		"""
		Insert handle for `table`; reuse it for many records with begin_append() per record.
		"""
		appender = RecordAppender(self, table)
		try:
			appender.open()
			yield appender
		finally:
			try:
				appender.close()
			finally:
				appender.dispose()

	def update_where(self, table: str, updates: Mapping[str, Any], keys: Mapping[str, Any]) -> int:
		"""
		UPDATE `updates` on the rows whose columns equal every `keys` value; returns the matched row count.
		"""
		if not updates:
			raise ValueError("No columns to update.")
		if not keys:
			raise ValueError("No key columns to match on.")

		def assignments(pairs: Mapping[str, Any]) -> list[sql.Composable]:
			return [sql.SQL("{} = {}").format(render_identifier(c), sql.Placeholder()) for c in pairs]

		query = sql.SQL("UPDATE {tbl} SET {sets} WHERE {conds} RETURNING 1").format(
			tbl=render_identifier(table),
			sets=sql.SQL(", ").join(assignments(updates)),
			conds=sql.SQL(" AND ").join(assignments(keys)),
		)
		conn = self.acquire()
		try:
			rows = self.run_statement(conn, query, [*updates.values(), *keys.values()])
		finally:
			self.release(conn)
		return len(rows or [])


def fetch_rows(client: PSQLClient, query, params=None, *, exclude: Sequence[str] | None = None) -> list[dict]:
	"""
	Run a read and return every row as a dict, without `exclude` fields.
	"""
	with client.open_query(query, params) as handle:
		return handle.rows(exclude)
