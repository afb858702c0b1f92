from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional, Sequence

import psycopg2
import psycopg2.errors
from psycopg2.pool import ThreadedConnectionPool

from core.errors import DimensionMismatchError, ValidationError, VectorStoreError
from providers.vectorstore import Chunk, VectorStore

log = logging.getLogger(__name__)

TABLE = "document_chunks"
ANN_INDEX_NAME = "document_chunks_embedding_idx"

# Engine rejections that only cost query latency: the ANN index can't be built
# (yet) but a sequential scan still answers correctly.
_DEGRADABLE_INDEX_ERRORS = (
    psycopg2.errors.ProgramLimitExceeded,
    psycopg2.errors.FeatureNotSupported,
    psycopg2.errors.InsufficientResources,
    psycopg2.errors.InvalidParameterValue,
    psycopg2.errors.UndefinedObject,
)


def _vector_literal(vec: Sequence[float]) -> str:
    # pgvector accepts: '[1,2,3]'::vector
    # repr round-trips each component exactly
    return "[" + ",".join(repr(float(x)) for x in (vec or [])) + "]"


def is_degradable_index_error(exc: BaseException) -> bool:
    return isinstance(exc, _DEGRADABLE_INDEX_ERRORS)


class PgVectorStore(VectorStore):
    """
    pgvector-backed VectorStore using table: document_chunks

    Schema:
      document_chunks(
        id uuid primary key,
        conversation_id text,
        document_id text,
        chunk_index int,
        content text,
        embedding vector(D),
        created_at timestamptz
      )

    Writes replace a document's whole chunk set inside one transaction, so a
    reader sees either the previous set or the new one.
    """

    def __init__(
        self,
        dsn: str = "",
        dimension: int = 768,
        max_connections: int = 4,
        index_kind: str = "ivfflat",
        ivfflat_lists: int = 100,
        statement_timeout_ms: int = 0,
        pool: Any = None,
    ):
        if dimension <= 0:
            raise ValidationError("dimension must be positive")
        self.dimension = int(dimension)
        self.index_kind = (index_kind or "ivfflat").strip().lower()
        self.ivfflat_lists = max(1, int(ivfflat_lists))
        self.statement_timeout_ms = max(0, int(statement_timeout_ms))
        self.ann_index_ready = False

        # ThreadedConnectionPool raises when exhausted instead of blocking, so
        # callers queue here for one of the max_connections slots
        self._slots = threading.BoundedSemaphore(max(1, int(max_connections)))

        if pool is not None:
            self._pool = pool
        else:
            try:
                self._pool = ThreadedConnectionPool(1, max(1, int(max_connections)), dsn)
            except psycopg2.Error as exc:
                raise VectorStoreError(f"connect database: {exc}") from exc

    def close(self) -> None:
        self._pool.closeall()

    # -----------------------------------------------------------------
    # connection / transaction plumbing
    # -----------------------------------------------------------------

    @contextmanager
    def _transaction(self, timeout: Optional[float] = None) -> Iterator[Any]:
        """
        Yield a cursor inside a transaction.

        Commits on normal exit. Any exception (including KeyboardInterrupt or a
        statement_timeout cancellation) rolls the whole transaction back.

        Waits for a free pooled connection; with a timeout the wait is bounded
        by it and expiry raises VectorStoreError.
        """
        if not self._slots.acquire(timeout=None if timeout is None else max(0.0, float(timeout))):
            raise VectorStoreError(f"acquire connection: no free connection within {timeout}s")
        try:
            conn = self._pool.getconn()
            try:
                with conn:
                    with conn.cursor() as cur:
                        timeout_ms = self._timeout_ms(timeout)
                        if timeout_ms > 0:
                            cur.execute("SET LOCAL statement_timeout = %s", (timeout_ms,))
                        yield cur
            finally:
                self._pool.putconn(conn)
        finally:
            self._slots.release()

    def _timeout_ms(self, timeout: Optional[float]) -> int:
        if timeout is None:
            return self.statement_timeout_ms
        return max(1, int(float(timeout) * 1000))

    def _check_dimension(self, vec: Sequence[float], what: str = "vector") -> None:
        if len(vec) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(vec), what=what)

    # -----------------------------------------------------------------
    # schema
    # -----------------------------------------------------------------

    def ensure_schema(self) -> None:
        statements = [
            "CREATE EXTENSION IF NOT EXISTS vector",
            f"""
            CREATE TABLE IF NOT EXISTS {TABLE} (
              id UUID PRIMARY KEY,
              conversation_id TEXT NOT NULL,
              document_id TEXT NOT NULL,
              chunk_index INT NOT NULL,
              content TEXT NOT NULL,
              embedding vector({self.dimension}) NOT NULL,
              created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """,
            f"CREATE INDEX IF NOT EXISTS {TABLE}_conversation_idx ON {TABLE} (conversation_id)",
            f"CREATE INDEX IF NOT EXISTS {TABLE}_document_idx ON {TABLE} (document_id)",
        ]
        try:
            with self._transaction() as cur:
                for sql in statements:
                    cur.execute(sql)
        except psycopg2.Error as exc:
            raise VectorStoreError(f"ensure schema: {exc}") from exc

        self.ensure_ann_index()

    def _ann_index_sql(self) -> Optional[str]:
        if self.index_kind == "ivfflat":
            return (
                f"CREATE INDEX IF NOT EXISTS {ANN_INDEX_NAME} ON {TABLE} "
                f"USING ivfflat (embedding vector_cosine_ops) WITH (lists = {self.ivfflat_lists})"
            )
        if self.index_kind == "hnsw":
            return (
                f"CREATE INDEX IF NOT EXISTS {ANN_INDEX_NAME} ON {TABLE} "
                "USING hnsw (embedding vector_cosine_ops)"
            )
        return None

    def ensure_ann_index(self) -> bool:
        """
        Best-effort approximate index. Runs in its own transaction so a
        rejection can't undo the table setup.

        Returns whether the index is in place.
        """
        sql = self._ann_index_sql()
        if sql is None:
            log.info("ANN index disabled (VECTOR_INDEX=none); similarity queries use a full scan")
            self.ann_index_ready = False
            return False

        try:
            with self._transaction() as cur:
                cur.execute(sql)
        except psycopg2.Error as exc:
            if not is_degradable_index_error(exc):
                raise VectorStoreError(f"create {self.index_kind} index: {exc}") from exc
            log.warning(
                "%s index not created (%s: %s); similarity queries fall back to a full scan",
                self.index_kind,
                type(exc).__name__,
                str(exc).strip(),
            )
            self.ann_index_ready = False
            return False

        self.ann_index_ready = True
        return True

    # -----------------------------------------------------------------
    # writes
    # -----------------------------------------------------------------

    def upsert_document_chunks(
        self,
        conversation_id: str,
        document_id: str,
        contents: Sequence[str],
        vectors: Sequence[Sequence[float]],
        *,
        timeout: Optional[float] = None,
    ) -> int:
        if len(contents) != len(vectors):
            raise ValidationError(
                f"contents and vectors length mismatch: {len(contents)} contents, {len(vectors)} vectors"
            )
        for vec in vectors:
            self._check_dimension(vec)

        now = datetime.now(timezone.utc)
        rows = [
            (str(uuid.uuid4()), conversation_id, document_id, idx, content, _vector_literal(vec), now)
            for idx, (content, vec) in enumerate(zip(contents, vectors))
        ]

        try:
            with self._transaction(timeout) as cur:
                try:
                    cur.execute(
                        f"DELETE FROM {TABLE} WHERE conversation_id = %s AND document_id = %s",
                        (conversation_id, document_id),
                    )
                except psycopg2.Error as exc:
                    raise VectorStoreError(f"delete existing chunks: {exc}") from exc

                if rows:
                    try:
                        cur.executemany(
                            f"""
                            INSERT INTO {TABLE} (id, conversation_id, document_id, chunk_index, content, embedding, created_at)
                            VALUES (%s, %s, %s, %s, %s, %s::vector, %s)
                            """,
                            rows,
                        )
                    except psycopg2.Error as exc:
                        raise VectorStoreError(f"insert chunk: {exc}") from exc
        except psycopg2.Error as exc:
            # begin / statement_timeout setup / commit
            raise VectorStoreError(f"upsert document chunks: {exc}") from exc

        log.debug(
            "replaced chunks conversation=%s document=%s count=%s",
            conversation_id,
            document_id,
            len(rows),
        )
        return len(rows)

    def delete_conversation(self, conversation_id: str, *, timeout: Optional[float] = None) -> int:
        try:
            with self._transaction(timeout) as cur:
                cur.execute(f"DELETE FROM {TABLE} WHERE conversation_id = %s", (conversation_id,))
                deleted = cur.rowcount
        except psycopg2.Error as exc:
            raise VectorStoreError(f"delete conversation chunks: {exc}") from exc
        return max(0, int(deleted or 0))

    # -----------------------------------------------------------------
    # reads
    # -----------------------------------------------------------------

    def query_similar(
        self,
        conversation_id: str,
        query_vector: Sequence[float],
        limit: int,
        *,
        timeout: Optional[float] = None,
    ) -> List[Chunk]:
        self._check_dimension(query_vector, what="embedding")
        if int(limit) <= 0:
            raise ValidationError("limit must be positive")

        qv = _vector_literal(query_vector)

        # cosine distance operator: <=>  (lower = closer)
        sql = f"""
        SELECT
          id,
          document_id,
          chunk_index,
          content,
          (1 - (embedding <=> %s::vector)) AS score
        FROM {TABLE}
        WHERE conversation_id = %s
        ORDER BY embedding <=> %s::vector
        LIMIT %s
        """

        out: List[Chunk] = []
        try:
            with self._transaction(timeout) as cur:
                cur.execute(sql, (qv, conversation_id, qv, int(limit)))
                for row in cur.fetchall():
                    out.append(
                        Chunk(
                            id=str(row[0]),
                            conversation_id=conversation_id,
                            document_id=row[1],
                            chunk_index=int(row[2]),
                            content=row[3],
                            score=float(row[4]) if row[4] is not None else None,
                        )
                    )
        except psycopg2.Error as exc:
            raise VectorStoreError(f"query similar chunks: {exc}") from exc
        return out
