import threading
import time
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import psycopg2
import psycopg2.errors
import psycopg2.extensions
import pytest

from core.errors import DimensionMismatchError, VectorStoreError
from providers.impl.vector_pgvector import ANN_INDEX_NAME, PgVectorStore, is_degradable_index_error


class FakeCursor:
    def __init__(self, conn: "FakeConn"):
        self.conn = conn
        self.rowcount = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def _maybe_fail(self, sql: str) -> None:
        for needle, exc in self.conn.fail_on.items():
            if needle in sql:
                raise exc

    def execute(self, sql: str, params: Any = None) -> None:
        self.conn.executed.append((sql, params))
        self._maybe_fail(sql)
        self.rowcount = self.conn.rowcount

    def executemany(self, sql: str, rows: List[Any]) -> None:
        self.conn.executed_many.append((sql, list(rows)))
        self._maybe_fail(sql)

    def fetchall(self):
        return list(self.conn.rows)


class FakeConn:
    """Mimics psycopg2's `with conn:` commit/rollback behaviour."""

    def __init__(self):
        self.executed: List[Any] = []
        self.executed_many: List[Any] = []
        self.fail_on: Dict[str, Exception] = {}
        self.rows: List[Any] = []
        self.rowcount = 0
        self.commits = 0
        self.rollbacks = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.commits += 1
        else:
            self.rollbacks += 1
        return False

    def cursor(self):
        return FakeCursor(self)


class FakePool:
    def __init__(self, conn: Optional[FakeConn] = None):
        self.conn = conn or FakeConn()
        self.gets = 0
        self.puts = 0

    def getconn(self):
        self.gets += 1
        return self.conn

    def putconn(self, conn):
        self.puts += 1

    def closeall(self):
        pass


def _store(index_kind: str = "ivfflat", **kw) -> PgVectorStore:
    return PgVectorStore(dimension=3, index_kind=index_kind, pool=FakePool(), **kw)


def test_dimension_checked_before_any_io():
    store = _store()

    with pytest.raises(DimensionMismatchError):
        store.upsert_document_chunks("c1", "d1", ["a"], [[1.0, 2.0]])
    with pytest.raises(DimensionMismatchError):
        store.query_similar("c1", [1.0], 3)

    assert store._pool.gets == 0


def test_upsert_deletes_then_inserts_in_one_transaction():
    store = _store()
    conn = store._pool.conn

    n = store.upsert_document_chunks("c1", "d1", ["first", "second"], [[1, 0, 0], [0, 1, 0]])

    assert n == 2
    assert "DELETE FROM document_chunks" in conn.executed[0][0]
    assert conn.executed[0][1] == ("c1", "d1")
    sql, rows = conn.executed_many[0]
    assert "INSERT INTO document_chunks" in sql
    assert [r[3] for r in rows] == [0, 1]
    assert [r[4] for r in rows] == ["first", "second"]
    assert rows[0][5] == "[1.0,0.0,0.0]"
    assert (conn.commits, conn.rollbacks) == (1, 0)
    assert store._pool.puts == 1


def test_failed_insert_rolls_back_and_wraps_error():
    store = _store()
    conn = store._pool.conn
    conn.fail_on["INSERT INTO"] = psycopg2.OperationalError("server closed the connection")

    with pytest.raises(VectorStoreError, match="insert chunk"):
        store.upsert_document_chunks("c1", "d1", ["a"], [[1, 0, 0]])

    assert (conn.commits, conn.rollbacks) == (0, 1)
    assert store._pool.puts == 1


def test_empty_upsert_only_deletes():
    store = _store()
    conn = store._pool.conn

    assert store.upsert_document_chunks("c1", "d1", [], []) == 0
    assert len(conn.executed) == 1
    assert conn.executed_many == []
    assert conn.commits == 1


def test_timeout_sets_local_statement_timeout():
    store = _store()
    conn = store._pool.conn

    store.upsert_document_chunks("c1", "d1", [], [], timeout=1.5)

    assert conn.executed[0] == ("SET LOCAL statement_timeout = %s", (1500,))


def test_query_similar_binds_vector_and_parses_rows():
    store = _store()
    conn = store._pool.conn
    conn.rows = [("id-1", "d1", 0, "hello", 0.8), ("id-2", "d2", 3, "world", None)]

    hits = store.query_similar("c1", [1, 0, 0], 2)

    sql, params = conn.executed[-1]
    assert "embedding <=> %s::vector" in sql
    assert params == ("[1.0,0.0,0.0]", "c1", "[1.0,0.0,0.0]", 2)
    assert [(h.id, h.document_id, h.chunk_index, h.content) for h in hits] == [
        ("id-1", "d1", 0, "hello"),
        ("id-2", "d2", 3, "world"),
    ]
    assert hits[0].score == pytest.approx(0.8)
    assert hits[1].score is None
    assert all(h.conversation_id == "c1" for h in hits)


def test_delete_conversation_returns_rowcount():
    store = _store()
    store._pool.conn.rowcount = 7

    assert store.delete_conversation("c1") == 7


def test_degradable_index_failure_leaves_store_usable():
    store = _store()
    conn = store._pool.conn
    conn.fail_on["USING ivfflat"] = psycopg2.errors.ProgramLimitExceeded("memory required is 120 MB")

    store.ensure_schema()

    assert store.ann_index_ready is False
    assert any("CREATE TABLE IF NOT EXISTS document_chunks" in sql for sql, _ in conn.executed)
    # table setup committed, index attempt rolled back on its own
    assert (conn.commits, conn.rollbacks) == (1, 1)


def test_other_index_failure_is_fatal():
    store = _store()
    store._pool.conn.fail_on["USING ivfflat"] = psycopg2.OperationalError("connection reset")

    with pytest.raises(VectorStoreError, match="create ivfflat index"):
        store.ensure_schema()


def test_schema_failure_is_fatal():
    store = _store()
    store._pool.conn.fail_on["CREATE EXTENSION"] = psycopg2.OperationalError("permission denied")

    with pytest.raises(VectorStoreError, match="ensure schema"):
        store.ensure_schema()


def test_index_created_when_engine_accepts():
    store = _store(index_kind="hnsw")
    conn = store._pool.conn

    store.ensure_schema()

    assert store.ann_index_ready is True
    index_sql = [sql for sql, _ in conn.executed if ANN_INDEX_NAME in sql]
    assert len(index_sql) == 1
    assert "USING hnsw (embedding vector_cosine_ops)" in index_sql[0]


def test_index_disabled():
    store = _store(index_kind="none")
    conn = store._pool.conn

    store.ensure_schema()

    assert store.ann_index_ready is False
    assert not any(ANN_INDEX_NAME in sql for sql, _ in conn.executed)


def test_degradable_classification():
    assert is_degradable_index_error(psycopg2.errors.FeatureNotSupported("nope"))
    assert is_degradable_index_error(psycopg2.errors.UndefinedObject("operator class does not exist"))
    assert not is_degradable_index_error(psycopg2.OperationalError("connection reset"))
    assert not is_degradable_index_error(ValueError("x"))


def test_vector_literal_keeps_small_components():
    store = _store()
    conn = store._pool.conn

    store.upsert_document_chunks("c1", "d1", ["tiny"], [[1.2345e-6, 3e-10, -0.125]])

    literal = conn.executed_many[0][1][0][5]
    assert [float(x) for x in literal.strip("[]").split(",")] == [1.2345e-6, 3e-10, -0.125]


class SlowPooledConn(FakeConn):
    """Connection handed out by a real ThreadedConnectionPool."""

    closed = 0

    def __init__(self, tracker: Dict[str, int], lock: threading.Lock):
        super().__init__()
        self.info = SimpleNamespace(transaction_status=psycopg2.extensions.TRANSACTION_STATUS_IDLE)
        self._tracker = tracker
        self._lock = lock

    def __enter__(self):
        with self._lock:
            self._tracker["active"] += 1
            self._tracker["peak"] = max(self._tracker["peak"], self._tracker["active"])
        time.sleep(0.05)
        return self

    def __exit__(self, exc_type, exc, tb):
        with self._lock:
            self._tracker["active"] -= 1
        return super().__exit__(exc_type, exc, tb)

    def close(self):
        self.closed = 1

    def rollback(self):
        pass


def test_callers_wait_for_a_free_pooled_connection(monkeypatch):
    tracker = {"active": 0, "peak": 0}
    lock = threading.Lock()
    monkeypatch.setattr(psycopg2, "connect", lambda *a, **kw: SlowPooledConn(tracker, lock))

    store = PgVectorStore(dsn="postgres://test", dimension=3, max_connections=4)
    errors: List[BaseException] = []

    def query():
        try:
            store.query_similar("c1", [1.0, 0.0, 0.0], 3)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=query) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert tracker["peak"] <= 4


def test_connection_wait_is_bounded_by_timeout():
    store = PgVectorStore(dimension=3, max_connections=1, pool=FakePool())
    holding = threading.Event()
    release = threading.Event()

    def hold_connection():
        with store._transaction():
            holding.set()
            release.wait(5)

    t = threading.Thread(target=hold_connection)
    t.start()
    holding.wait(5)
    try:
        with pytest.raises(VectorStoreError, match="acquire connection"):
            store.query_similar("c1", [1.0, 0.0, 0.0], 3, timeout=0.05)
    finally:
        release.set()
        t.join()

    # the slot is usable again once released
    assert store.query_similar("c1", [1.0, 0.0, 0.0], 3) == []
