import sys
import unittest
from pathlib import Path
from unittest import mock

REPO_ROOT = Path(__file__).resolve().parents[1]
for _path in (REPO_ROOT, REPO_ROOT / "tests"):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

from psycopg2 import sql  # noqa: E402
from psycopg2.extras import Json  # noqa: E402

from endpoint_sql.psql_client import ConnectionSettings, PSQLClient, adapt_value, fetch_rows, to_pyformat  # noqa: E402
from pg_fakes import FakeConnection, PgError, RecordingPool, make_client  # noqa: E402


class PSQLClientTestCase(unittest.TestCase):
    def tearDown(self):
        PSQLClient.closeall()
        RecordingPool.instances.clear()

    def client_with(self, responder):
        pool = RecordingPool(1, 2, connection=FakeConnection(responder))
        return make_client(pool=pool), pool


class TestCacheAndLifecycle(PSQLClientTestCase):
    def test_settings_split_known_and_extra_arguments(self):
        settings = ConnectionSettings.of(database="db", user="u", port=5432, b=2, a=[1, 2])
        self.assertEqual((settings.database, settings.user, settings.port), ("db", "u", 5432))
        self.assertEqual(settings.extra, (("a", "[1, 2]"), ("b", 2)))
        self.assertEqual(
            settings.connect_kwargs(),
            {"database": "db", "user": "u", "port": 5432, "a": [1, 2], "b": 2},
        )
        self.assertEqual(settings, ConnectionSettings.of(b=2, a=[1, 2], port=5432, user="u", database="db"))
        self.assertNotIn("secret", repr(ConnectionSettings.of(password="secret")))

    def test_shared_clients_close_and_closeall(self):
        with mock.patch("endpoint_sql.psql_client.ThreadedConnectionPool", RecordingPool):
            first = PSQLClient.get(database="db", user="u")
            second = PSQLClient.get(database="db", user="u")
            self.assertIs(first, second)
            self.assertIsNot(first, PSQLClient.get(database="other", user="u"))

            first.close()
            first.close()
            self.assertNotIn(first.settings, PSQLClient._shared)
            self.assertEqual(first.pool.closeall_calls, 1)

            third = PSQLClient.get(database="db", user="u")
            self.assertIsNot(first, third)
            PSQLClient.closeall()
            self.assertEqual(PSQLClient._shared, {})
            self.assertEqual(third.pool.closeall_calls, 1)

    def test_statement_timeout_is_passed_to_pool(self):
        with mock.patch("endpoint_sql.psql_client.ThreadedConnectionPool", RecordingPool):
            client = PSQLClient(database="db", user="u", options="-c statement_timeout=5000")
        self.assertEqual(client.pool.kwargs["options"], "-c statement_timeout=5000")
        self.assertEqual((client.pool.minconn, client.pool.maxconn), (1, 10))

    def test_repr(self):
        with mock.patch("endpoint_sql.psql_client.ThreadedConnectionPool", RecordingPool):
            client = PSQLClient.get(database="mydb", user="alice", host="db.local", port=5432, minconn=2, maxconn=8)
        self.assertEqual(repr(client), "<PSQLClient alice@db.local:5432/mydb pool=2-8>")

    def test_acquire_and_release(self):
        closed_client = make_client(pool=RecordingPool(1, 2))
        closed_client._closed = True
        with self.assertRaisesRegex(RuntimeError, "closed"):
            closed_client.acquire()
        self.assertEqual(closed_client.pool.getconn_calls, 0)

        pool = RecordingPool(1, 2)
        pool.raise_on_put = RuntimeError("put failed")
        client = make_client(pool=pool)
        self.assertIs(client.acquire(), pool.connection)
        with self.assertRaisesRegex(RuntimeError, "put failed"):
            client.release(pool.connection)

        client._closed = True
        client.release(pool.connection)
        self.assertEqual(len(pool.putconn_calls), 2)


class TestPyformat(unittest.TestCase):
    def test_named_placeholders(self):
        self.assertEqual(
            to_pyformat("SELECT * FROM t WHERE a = :a AND b LIKE :B_2"),
            "SELECT * FROM t WHERE a = %(a)s AND b LIKE %(B_2)s",
        )

    def test_casts_literals_and_percent(self):
        self.assertEqual(
            to_pyformat("SELECT x::text FROM t WHERE n LIKE 'a:b%' AND p = :p AND r % 2 = 0"),
            "SELECT x::text FROM t WHERE n LIKE 'a:b%%' AND p = %(p)s AND r %% 2 = 0",
        )

    def test_quoted_identifiers_and_escaped_quotes(self):
        self.assertEqual(
            to_pyformat('SELECT "a:b" FROM t WHERE s = \'it\'\':s\' AND v = :v'),
            'SELECT "a:b" FROM t WHERE s = \'it\'\':s\' AND v = %(v)s',
        )

    def test_adapt_value_wraps_dicts(self):
        self.assertIsInstance(adapt_value({"a": 1}), Json)
        self.assertEqual(adapt_value([1, 2]), [1, 2])
        self.assertEqual(adapt_value("x"), "x")


class TestExecution(PSQLClientTestCase):
    def test_render_and_collect_rows(self):
        self.assertEqual(PSQLClient.render(None, "SELECT 1"), "SELECT 1")
        self.assertEqual(PSQLClient.render(None, sql.SQL("SELECT 2")), "SELECT 2")

        conn = FakeConnection(lambda q, p: (["id", "name"], [(1, "A"), (2, "B")]))
        cur = conn.cursor()
        cur.execute("SELECT", [])
        self.assertEqual(
            PSQLClient.collect_rows(cur),
            [{"id": 1, "name": "A"}, {"id": 2, "name": "B"}],
        )
        cur_none = FakeConnection().cursor()
        cur_none.execute("UPDATE", [])
        self.assertIsNone(PSQLClient.collect_rows(cur_none))

    def test_run_statement_commit_and_rollback(self):
        client = make_client()
        conn_ok = FakeConnection(lambda q, p: (["id"], [(1,)]))
        self.assertEqual(client.run_statement(conn_ok, "SELECT 1", [7]), [{"id": 1}])
        self.assertEqual((conn_ok.commit_calls, conn_ok.rollback_calls), (1, 0))

        conn_fail = FakeConnection(lambda q, p: RuntimeError("boom"))
        with self.assertRaisesRegex(RuntimeError, "boom"):
            client.run_statement(conn_fail, "SELECT 1", [7])
        self.assertEqual((conn_fail.commit_calls, conn_fail.rollback_calls), (0, 1))

    def test_dict_params_are_adapted(self):
        client = make_client()
        conn = FakeConnection()
        client.run_statement(conn, "INSERT INTO t (meta) VALUES (%(meta)s)", {"meta": {"a": 1}})
        _, params = conn.executed[0]
        self.assertIsInstance(params["meta"], Json)

    def test_update_where(self):
        client, pool = self.client_with(lambda q, p: (["?column?"], [(1,)]))
        affected = client.update_where("Articles", {"Title": "New", "Body": "b"}, {"ArticleId": 3, "Lang": "en"})
        self.assertEqual(affected, 1)
        query, params = pool.connection.executed[0]
        self.assertEqual(query, "UPDATE Articles SET Title = %s, Body = %s WHERE ArticleId = %s AND Lang = %s RETURNING 1")
        self.assertEqual(params, ["New", "b", 3, "en"])
        self.assertEqual(pool.putconn_calls, [pool.connection])
        self.assertEqual(pool.connection.commit_calls, 1)

        client_none, _ = self.client_with(lambda q, p: (["?column?"], []))
        self.assertEqual(client_none.update_where("Articles", {"Title": "x"}, {"ArticleId": 9}), 0)

    def test_update_where_requires_columns(self):
        client, pool = self.client_with(lambda q, p: None)
        with self.assertRaisesRegex(ValueError, "No columns"):
            client.update_where("Articles", {}, {"ArticleId": 1})
        with self.assertRaisesRegex(ValueError, "No key columns"):
            client.update_where("Articles", {"Title": "x"}, {})
        self.assertEqual(pool.getconn_calls, 0)

    def test_update_where_releases_on_failure(self):
        client, pool = self.client_with(lambda q, p: PgError("23502"))
        with self.assertRaises(PgError):
            client.update_where("Articles", {"Title": None}, {"ArticleId": 1})
        self.assertEqual(pool.putconn_calls, [pool.connection])
        self.assertEqual(pool.connection.rollback_calls, 1)


class TestQueryHandle(PSQLClientTestCase):
    def test_forward_only_iteration(self):
        client, pool = self.client_with(lambda q, p: (["ArticleId", "title"], [(1, "A"), (2, "B")]))
        seen = []
        with client.open_query("SELECT ArticleId, title FROM Articles WHERE a = %(a)s", {"a": 1}) as handle:
            self.assertTrue(handle.active)
            self.assertEqual(handle.fields, ["ArticleId", "title"])
            while not handle.end_of_set:
                seen.append((handle.value("articleid"), handle.value("Title"), handle.value(1)))
                handle.next()
            with self.assertRaises(LookupError):
                handle.value("ArticleId")
        self.assertEqual(seen, [(1, "A", "A"), (2, "B", "B")])
        self.assertFalse(handle.active)
        conn = pool.connection
        self.assertTrue(all(c.closed for c in conn.cursors))
        self.assertEqual(pool.putconn_calls, [conn])
        self.assertEqual(conn.commit_calls, 1)

    def test_unknown_field_raises_key_error(self):
        client, _ = self.client_with(lambda q, p: (["id"], [(1,)]))
        with client.open_query("SELECT id FROM t") as handle:
            with self.assertRaises(KeyError):
                handle.value("missing")

    def test_rows_excludes_fields_case_insensitively(self):
        client, _ = self.client_with(lambda q, p: (["id", "secret", "name"], [(1, "s", "A")]))
        with client.open_query("SELECT * FROM t") as handle:
            self.assertEqual(handle.rows(["SECRET"]), [{"id": 1, "name": "A"}])
            self.assertTrue(handle.end_of_set)

    def test_released_when_execute_fails(self):
        client, pool = self.client_with(lambda q, p: PgError("42703"))
        with self.assertRaises(PgError):
            with client.open_query("SELECT nope FROM t"):
                pass
        conn = pool.connection
        self.assertTrue(all(c.closed for c in conn.cursors))
        self.assertEqual(pool.putconn_calls, [conn])
        self.assertEqual(conn.rollback_calls, 1)
        self.assertEqual(conn.commit_calls, 0)

    def test_released_when_caller_raises(self):
        client, pool = self.client_with(lambda q, p: (["id"], [(1,)]))
        with self.assertRaisesRegex(RuntimeError, "caller"):
            with client.open_query("SELECT id FROM t"):
                raise RuntimeError("caller")
        self.assertEqual(pool.putconn_calls, [pool.connection])
        self.assertEqual(pool.connection.rollback_calls, 1)

    def test_composed_query_with_named_placeholders(self):
        client, pool = self.client_with(lambda q, p: (["id"], []))
        query = sql.SQL("SELECT id FROM t WHERE id = {}").format(sql.Placeholder("k0_0"))
        self.assertEqual(fetch_rows(client, query, {"k0_0": 5}), [])
        self.assertEqual(pool.connection.executed[0], ("SELECT id FROM t WHERE id = %(k0_0)s", {"k0_0": 5}))


class TestRecordAppender(PSQLClientTestCase):
    def responder(self, failure=None):
        def respond(query, params):
            if query.startswith("SELECT * FROM"):
                return ["ArticleId", "title", "meta"], []
            if failure is not None:
                return failure
            return None
        return respond

    def test_insert_matches_columns_case_insensitively(self):
        client, pool = self.client_with(self.responder())
        with client.open_append("Articles") as appender:
            appender.begin_append()
            self.assertTrue(appender.replace("ArticleId", 1))
            self.assertTrue(appender.replace("Title", "Hello"))
            self.assertTrue(appender.replace("Meta", {"k": "v"}))
            self.assertFalse(appender.replace("Unknown", "x"))
            self.assertEqual(appender.failed_columns, ["Unknown"])
            self.assertEqual(appender.save(), (True, "Record saved"))

        conn = pool.connection
        columns_query, insert = conn.executed
        self.assertEqual(columns_query, ("SELECT * FROM Articles WHERE 1=0", []))
        self.assertEqual(insert[0], "INSERT INTO Articles (ArticleId, Title, Meta) VALUES (%s, %s, %s)")
        self.assertEqual(insert[1][:2], [1, "Hello"])
        self.assertIsInstance(insert[1][2], Json)
        self.assertEqual(pool.putconn_calls, [conn])

    def test_save_reports_described_error(self):
        client, pool = self.client_with(self.responder(PgError("23505")))
        with client.open_append("Articles") as appender:
            appender.begin_append()
            appender.replace("ArticleId", 1)
            ok, message = appender.save()
        self.assertFalse(ok)
        self.assertEqual(message, "duplicate key value")
        self.assertEqual(pool.connection.rollback_calls, 1)
        self.assertEqual(pool.putconn_calls, [pool.connection])

    def test_save_without_columns(self):
        client, _ = self.client_with(self.responder())
        with client.open_append("Articles") as appender:
            appender.begin_append()
            appender.replace("Nope", 1)
            self.assertEqual(appender.save(), (False, "No columns could be assigned"))

    def test_begin_append_resets_state(self):
        client, _ = self.client_with(self.responder())
        with client.open_append("Articles") as appender:
            appender.begin_append()
            appender.replace("Nope", 1)
            appender.begin_append()
            self.assertEqual(appender.failed_columns, [])

    def test_released_when_column_lookup_fails(self):
        client, pool = self.client_with(lambda q, p: PgError("42P01"))
        with self.assertRaises(PgError):
            with client.open_append("Missing"):
                pass
        self.assertEqual(pool.putconn_calls, [pool.connection])
        self.assertEqual(pool.connection.rollback_calls, 1)


if __name__ == "__main__":
    unittest.main()
