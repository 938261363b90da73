"""
Fragment Store with PostgreSQL + pgvector

Read-only similarity search over paragraph-level fragments of indexed
judgments. Each fragment row joins to its parent source so the citation
and court can be shown without a second lookup. Indexing and schema
management happen elsewhere; this module never writes.
"""

import os
import logging
import threading
from typing import Optional, Protocol
from dataclasses import dataclass, field
from contextlib import contextmanager

import numpy as np

try:
    import psycopg2
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

logger = logging.getLogger(__name__)


@dataclass
class FragmentStoreConfig:
    """Configuration for the fragment store."""
    connection_string: Optional[str] = None
    fragments_table: str = "source_fragments"
    sources_table: str = "sources"
    pool_min_connections: int = 1
    pool_max_connections: int = 10
    use_pooling: bool = True


@dataclass
class Fragment:
    """A paragraph-level excerpt of an indexed legal document."""
    id: str
    source_id: str
    paragraph_number: int
    content: str
    embedding: list[float] = field(default_factory=list)
    token_count: Optional[int] = None


@dataclass
class RankedFragment:
    """A fragment matched against one query.

    ``similarity`` is cosine-derived in [0, 1]; ``citation`` and ``court``
    are copied from the parent source. Never persisted.
    """
    id: str
    source_id: str
    paragraph_number: int
    content: str
    similarity: float
    citation: str
    court: str = "Unknown"
    token_count: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "paragraph_num": self.paragraph_number,
            "content": self.content,
            "similarity": self.similarity,
            "citation": self.citation,
            "court": self.court,
        }


class FragmentMatcher(Protocol):
    """Anything the retriever can similarity-search."""

    def match(
        self,
        query_embedding: list[float],
        threshold: float,
        count: int,
    ) -> list[RankedFragment]:
        ...


def _row_to_fragment(row: dict) -> RankedFragment:
    return RankedFragment(
        id=str(row["id"]),
        source_id=str(row["source_id"]),
        paragraph_number=int(row.get("paragraph_num") or 0),
        content=row.get("content") or "",
        similarity=float(row["similarity"]),
        citation=row.get("citation") or "",
        court=row.get("court") or "Unknown",
        token_count=row.get("token_count"),
    )


class FragmentStore:
    """
    PostgreSQL fragment store with pgvector.

    Features:
    - Cosine similarity search with threshold and top-K
    - Denormalized citation/court from the parent source
    - Optional connection pooling
    """

    def __init__(self, config: Optional[FragmentStoreConfig] = None):
        """
        Initialize fragment store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or FragmentStoreConfig()
        self._conn = None
        self._pool = None
        # Connects lazily from asyncio.to_thread workers
        self._connect_lock = threading.Lock()
        self._connection_string = (
            self.config.connection_string or
            os.getenv("DATABASE_URL") or
            os.getenv("POSTGRES_URL") or
            "postgresql://localhost:5432/litigation"
        )

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        if psycopg2 is None:
            raise ImportError(
                "psycopg2 not installed. Run: pip install psycopg2-binary"
            )
        from psycopg2.extras import RealDictCursor

        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(
                    self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                logger.info("Connected to PostgreSQL with pgvector (single connection)")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _is_connected(self) -> bool:
        return self._conn is not None or self._pool is not None

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a database connection.

        Connects lazily and returns pooled connections when done.
        """
        if not self._is_connected():
            with self._connect_lock:
                if not self._is_connected():
                    self.connect()
        if self._pool:
            conn = self._pool.getconn()
            try:
                yield conn
            finally:
                self._pool.putconn(conn)
        else:
            if self._conn.closed:
                with self._connect_lock:
                    if self._conn.closed:
                        logger.warning("Connection closed, reconnecting...")
                        self.connect()
            yield self._conn

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    def match(
        self,
        query_embedding: list[float],
        threshold: float,
        count: int,
    ) -> list[RankedFragment]:
        """
        Nearest fragments with similarity >= threshold, best first.

        Args:
            query_embedding: Query embedding vector
            threshold: Minimum cosine similarity (0-1)
            count: Maximum number of fragments

        Returns:
            List of RankedFragment objects, descending similarity
        """
        f = self.config.fragments_table
        s = self.config.sources_table
        sql = f"""
        SELECT
            fr.id,
            fr.source_id,
            fr.paragraph_num,
            fr.content,
            fr.token_count,
            src.citation,
            COALESCE(src.court, 'Unknown') AS court,
            1 - (fr.embedding <=> %s::vector) AS similarity
        FROM {f} fr
        JOIN {s} src ON src.id = fr.source_id
        WHERE fr.embedding IS NOT NULL
          AND 1 - (fr.embedding <=> %s::vector) >= %s
        ORDER BY fr.embedding <=> %s::vector
        LIMIT %s
        """
        params = [query_embedding, query_embedding, threshold, query_embedding, count]

        with self.get_connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(sql, params)
                    rows = cur.fetchall()
                # Read-only transaction; release any snapshot
                conn.rollback()
            except Exception:
                conn.rollback()
                raise

        return [_row_to_fragment(dict(row)) for row in rows]


class InMemoryFragmentStore:
    """
    Fragment store held in process memory.

    Cosine similarity is computed with numpy, as pgvector's
    ``1 - (a <=> b)``, with negative scores floored at 0. Useful for
    local development and tests.
    """

    def __init__(self):
        self._fragments: list[Fragment] = []
        self._sources: dict[str, dict] = {}

    def add_source(self, source_id: str, citation: str, court: Optional[str] = None) -> None:
        self._sources[source_id] = {"citation": citation, "court": court or "Unknown"}

    def add_fragment(self, fragment: Fragment) -> None:
        if not fragment.embedding:
            raise ValueError(f"Fragment {fragment.id} has no embedding")
        if self._fragments and len(fragment.embedding) != len(self._fragments[0].embedding):
            raise ValueError(
                f"Fragment {fragment.id} has {len(fragment.embedding)} dimensions, "
                f"expected {len(self._fragments[0].embedding)}"
            )
        self._fragments.append(fragment)

    def __len__(self) -> int:
        return len(self._fragments)

    @staticmethod
    def _cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
        norm = float(np.linalg.norm(a) * np.linalg.norm(b))
        if norm == 0:
            return 0.0
        cosine = float(np.dot(a, b)) / norm
        return max(0.0, min(1.0, cosine))

    def match(
        self,
        query_embedding: list[float],
        threshold: float,
        count: int,
    ) -> list[RankedFragment]:
        query = np.asarray(query_embedding, dtype=float)
        scored = []
        for fragment in self._fragments:
            similarity = self._cosine_similarity(query, np.asarray(fragment.embedding, dtype=float))
            if similarity < threshold:
                continue
            source = self._sources.get(fragment.source_id, {})
            scored.append(RankedFragment(
                id=fragment.id,
                source_id=fragment.source_id,
                paragraph_number=fragment.paragraph_number,
                content=fragment.content,
                similarity=similarity,
                citation=source.get("citation", ""),
                court=source.get("court", "Unknown"),
                token_count=fragment.token_count,
            ))

        scored.sort(key=lambda r: r.similarity, reverse=True)
        return scored[:count]
