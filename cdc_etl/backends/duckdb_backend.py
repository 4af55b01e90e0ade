"""
DuckDBBackend - embedded analytical store for the warehouse sink.

Features:
- Parameterized query execution (SQL injection safe)
- Arrow table output, converted to rows on demand
- Explicit transactions with rollback on failure
- One lock per connection so statements from worker threads never interleave
- Performance metrics
"""

from typing import Any, List, Dict, Optional, Sequence
import os
import threading
import time
import logging
from contextlib import contextmanager

import duckdb
import pyarrow as pa

logger = logging.getLogger(__name__)


class DuckDBBackend:
    """
    DuckDB backend with parameterization and Arrow support.
    """

    def __init__(
        self,
        uri: str = ":memory:",
        read_only: bool = False,
        threads: Optional[int] = None,
        memory_limit: Optional[str] = None,
        connection: Optional["duckdb.DuckDBPyConnection"] = None,
    ):
        """
        Initialize DuckDB backend.

        Args:
            uri: Database path or ":memory:" for in-memory
            read_only: Open in read-only mode
            threads: Number of threads (None = auto)
            memory_limit: Memory limit (e.g., "4GB")
            connection: Optional existing DuckDB connection
        """
        self.uri = uri
        if connection:
            self.con = connection
        else:
            if uri != ":memory:":
                directory = os.path.dirname(os.path.abspath(uri))
                os.makedirs(directory, exist_ok=True)
            self.con = duckdb.connect(database=uri, read_only=read_only)

        if threads is not None:
            self.con.execute(f"SET threads={int(threads)}")

        if memory_limit is not None:
            self.con.execute(f"SET memory_limit='{memory_limit}'")

        self.lock = threading.RLock()

        # Track query stats
        self._query_count = 0
        self._total_time = 0.0

    def execute(self, query: Dict[str, Any]) -> pa.Table:
        """
        Execute a query and return the result as a PyArrow Table.

        Args:
            query: A dictionary containing the 'sql' and 'params'.

        Returns:
            A PyArrow Table with the query result.
        """
        sql = query.get("sql")
        params = query.get("params", [])

        start_time = time.time()

        with self.lock:
            try:
                result = self.con.execute(sql, params).fetch_arrow_table()
            except Exception as e:
                logger.error("Error executing query: %s (params=%s): %s", sql, params, e)
                raise

            self._query_count += 1
            self._total_time += (time.time() - start_time)

        return result

    def fetch_rows(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute a query and return the result as a list of dicts."""
        return self.execute({"sql": sql, "params": params or []}).to_pylist()

    def run(self, sql: str, params: Optional[Sequence[Any]] = None):
        """Execute a statement that returns no rows (DDL, DML)."""
        start_time = time.time()
        with self.lock:
            self.con.execute(sql, list(params or []))
            self._query_count += 1
            self._total_time += (time.time() - start_time)

    def get_stats(self) -> Dict[str, Any]:
        """
        Get backend performance statistics.
        """
        avg_time = self._total_time / self._query_count if self._query_count > 0 else 0

        return {
            "query_count": self._query_count,
            "total_time": self._total_time,
            "avg_query_time": avg_time,
            "uri": self.uri
        }

    @contextmanager
    def transaction(self):
        """
        Context manager for transactions. Holds the connection lock for the
        whole unit of work.

        Example:
            >>> with backend.transaction():
            ...     backend.run("INSERT INTO ...")
            ...     backend.run("UPDATE ...")
        """
        with self.lock:
            self.con.execute("BEGIN TRANSACTION")
            try:
                yield
                self.con.execute("COMMIT")
            except Exception:
                self.con.execute("ROLLBACK")
                raise

    def ping(self) -> bool:
        if self.con is None:
            return False
        try:
            with self.lock:
                self.con.execute("SELECT 1").fetchone()
            return True
        except duckdb.Error as e:
            logger.warning("DuckDB ping failed: %s", e)
            return False

    def close(self):
        """Close database connection"""
        if getattr(self, "con", None) is not None:
            with self.lock:
                self.con.close()
                self.con = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


# ========== Helper Functions ==========

def create_backend_from_uri(uri: str, **kwargs) -> DuckDBBackend:
    """
    Factory function to create backend from URI.

    Supports:
        - ":memory:" - in-memory database
        - "path/to/db.duckdb" - persistent file
        - "duckdb:///path/to/db.duckdb" - URI format
    """
    if uri.startswith("duckdb://"):
        uri = uri.replace("duckdb://", "")
        if uri.startswith("/"):
            uri = uri[1:]  # Remove leading slash for relative paths

    return DuckDBBackend(uri, **kwargs)
