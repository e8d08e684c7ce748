"""
PostgreSQL sink: binary COPY streamed from the channel.

Each load (or each lane, with one connection per partition) runs in its own
transaction with synchronous_commit off, so a failed COPY leaves no rows.
"""
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional

import psycopg2
from psycopg2 import pool
from psycopg2.extensions import connection as Connection

from .channel import ChannelReader
from .config import ERR_COUNT_MISMATCH, LoaderConfig, MSG_ROLLBACK, MSG_SORTING, SINK_POSTGRES
from .encoding import CopyBinaryEncoder
from .metrics import MetricsCollector
from .sink import SinkError, SortRequest, SortResult, StreamingUploadSink

DEFAULT_WORK_MEM = "64MB"
COPY_READ_SIZE = 1024 * 1024


def _pg_message(error: psycopg2.Error) -> str:
    return (error.pgerror or str(error)).strip()


class PostgresSink(StreamingUploadSink):
    """
    Loads (sort_key, payload) BYTEA rows with COPY ... FROM STDIN BINARY.

    Connections come from a ThreadedConnectionPool so concurrent lanes each
    hold their own; no connection is ever shared between threads.
    """

    name = SINK_POSTGRES
    encoder = CopyBinaryEncoder()
    supports_lanes = True

    def __init__(
        self,
        config: LoaderConfig,
        metrics: Optional[MetricsCollector] = None,
        connection_pool: Optional[pool.AbstractConnectionPool] = None
    ):
        super().__init__(config, metrics)
        if connection_pool is None and not config.database_url:
            raise ValueError("database_url is required for the postgres sink")
        self._pool = connection_pool

    @property
    def pool(self) -> pool.AbstractConnectionPool:
        if self._pool is None:
            size = self.config.thread_count + 1
            try:
                self._pool = pool.ThreadedConnectionPool(
                    minconn=1,
                    maxconn=size,
                    dsn=self.config.database_url,
                )
            except psycopg2.Error as e:
                self.logger.error("Failed to create connection pool", error=str(e))
                raise SinkError(f"PostgreSQL error: {_pg_message(e)}") from e
            self.logger.info("Database connection pool created", size=size)
        return self._pool

    @contextmanager
    def get_connection(self) -> Connection:
        """
        Borrow a pooled connection for one transaction.
        Commits on success, rolls back on any exception.
        """
        conn = self.pool.getconn()
        try:
            conn.autocommit = False
            yield conn
            conn.commit()
        except Exception:
            self.logger.warning(MSG_ROLLBACK, sink=self.name)
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    def prepare(self) -> None:
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        f"CREATE UNLOGGED TABLE IF NOT EXISTS {self.config.table} "
                        "(sort_key BYTEA, payload BYTEA)"
                    )
        except psycopg2.Error as e:
            raise SinkError(f"PostgreSQL error: {_pg_message(e)}") from e
        self.logger.info("Table ready", sink=self.name, table=self.config.table)

    def upload(self, stream: ChannelReader) -> int:
        copy_sql = f"COPY {self.config.table} (sort_key, payload) FROM STDIN BINARY"

        self.metrics.start_timer("postgres_copy")
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SET LOCAL synchronous_commit = off")
                    cur.copy_expert(copy_sql, stream, size=COPY_READ_SIZE)
                    # -1 when the server did not report a count
                    if cur.rowcount >= 0 and cur.rowcount != stream.rows:
                        raise SinkError(
                            f"{ERR_COUNT_MISMATCH}: COPY reported {cur.rowcount} rows, "
                            f"streamed {stream.rows}"
                        )
        except psycopg2.Error as e:
            raise SinkError(f"PostgreSQL error: {_pg_message(e)}") from e
        finally:
            self.metrics.stop_timer("postgres_copy")

        return stream.rows

    def count_rows(self) -> int:
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) FROM {self.config.table}")
                return cur.fetchone()[0]

    def sort(self, request: SortRequest) -> SortResult:
        """
        Sort by key in a read-only transaction.

        With an output path the ordered rows are exported as binary COPY to
        that local file; otherwise the ordered query is counted.
        """
        work_mem = request.work_mem or request.memory_limit or DEFAULT_WORK_MEM
        query = f"SELECT sort_key, payload FROM {self.config.table} ORDER BY sort_key"
        if request.offset:
            query += f" OFFSET {int(request.offset)}"

        output = Path(request.output) if request.output is not None else None
        try:
            total = self.count_rows()
            self.logger.info("Table statistics", table=self.config.table, rows=total)

            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SET LOCAL transaction_read_only = on")
                    self.logger.info("Setting work_mem", value=work_mem)
                    cur.execute("SET LOCAL work_mem = %s", (work_mem,))
                    cur.execute("SET LOCAL temp_file_limit = -1")
                    if request.temp_tablespace:
                        self.logger.info("Setting temp_tablespaces", value=request.temp_tablespace)
                        cur.execute("SET LOCAL temp_tablespaces = %s", (request.temp_tablespace,))

                    self.logger.info(MSG_SORTING, sink=self.name, table=self.config.table)
                    start = time.perf_counter()
                    if output is None:
                        cur.execute(
                            f"SELECT COUNT(*), SUM(OCTET_LENGTH(payload)) FROM ({query}) AS sorted"
                        )
                        rows, payload_bytes = cur.fetchone()
                        seconds = time.perf_counter() - start
                        self.logger.info("Count result:", rows=rows, payload_bytes=payload_bytes or 0)
                    else:
                        with open(output, "wb") as fh:
                            cur.copy_expert(f"COPY ({query}) TO STDOUT WITH (FORMAT binary)", fh)
                        seconds = time.perf_counter() - start
                        rows = cur.rowcount
                        if rows < 0:
                            cur.execute(f"SELECT COUNT(*) FROM ({query}) AS sorted")
                            rows = cur.fetchone()[0]
        except psycopg2.Error as e:
            raise SinkError(f"PostgreSQL error: {_pg_message(e)}") from e

        self.logger.info(f"TIMING: {seconds:.2f} seconds")
        return SortResult(rows=rows, seconds=seconds, output=output)

    def close(self) -> None:
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None
