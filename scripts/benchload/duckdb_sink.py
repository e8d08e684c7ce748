"""
DuckDB direct-append sink.

The consumer thread owns the only connection. Each RowBinary batch is
decoded into a two-column Arrow table and inserted in one statement.
"""
import time
from pathlib import Path
from typing import Optional

import duckdb
import pyarrow as pa

from .config import ERR_DESTINATION_EXISTS, LoaderConfig, MSG_SORTING, SINK_DUCKDB
from .encoding import Batch
from .metrics import MetricsCollector
from .sink import DirectAppendSink, SinkError, SortRequest, SortResult

_BATCH_VIEW = "benchload_batch"

_SCHEMA = pa.schema([
    ("sort_key", pa.binary()),
    ("payload", pa.binary()),
])


def _quote(value: str) -> str:
    return str(value).replace("'", "''")


class DuckDBSink(DirectAppendSink):
    """Appends into a local DuckDB database file (or memory when no path)."""

    name = SINK_DUCKDB

    def __init__(
        self,
        config: LoaderConfig,
        metrics: Optional[MetricsCollector] = None,
        allow_existing: bool = False
    ):
        super().__init__(config, metrics)
        self.allow_existing = allow_existing
        self.path: Optional[Path] = Path(config.duckdb_path) if config.duckdb_path else None
        self._con: Optional[duckdb.DuckDBPyConnection] = None

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        if self._con is None:
            target = str(self.path) if self.path else ":memory:"
            self._con = duckdb.connect(target)
            self.logger.debug("DuckDB connection opened", database=target)
        return self._con

    def prepare(self) -> None:
        if self.path is not None and self.path.exists() and self._con is None:
            if not self.allow_existing:
                raise SinkError(
                    f"{ERR_DESTINATION_EXISTS}: {self.path}. "
                    "Remove it or pass allow_existing to append."
                )
            self.logger.warning("Appending to existing database", path=str(self.path))

        self.connection.execute(
            f"CREATE TABLE IF NOT EXISTS {self.config.table} (sort_key BLOB, payload BLOB)"
        )
        self.logger.info("Table ready", sink=self.name, table=self.config.table)

    def begin(self) -> None:
        self.connection.begin()

    def write_batch(self, batch: Batch) -> None:
        keys = []
        values = []
        for key, value in self.encoder.decode(batch.data):
            keys.append(key)
            values.append(value)

        table = pa.Table.from_arrays(
            [pa.array(keys, type=pa.binary()), pa.array(values, type=pa.binary())],
            schema=_SCHEMA,
        )

        con = self.connection
        self.metrics.start_timer("duckdb_insert")
        con.register(_BATCH_VIEW, table)
        try:
            con.execute(
                f"INSERT INTO {self.config.table} SELECT sort_key, payload FROM {_BATCH_VIEW}"
            )
        except duckdb.Error as e:
            raise SinkError(f"DuckDB error: {e}") from e
        finally:
            con.unregister(_BATCH_VIEW)
            self.metrics.stop_timer("duckdb_insert")

    def commit(self) -> None:
        try:
            self.connection.commit()
        except duckdb.Error as e:
            raise SinkError(f"DuckDB error: {e}") from e

    def rollback(self) -> None:
        if self._con is None:
            return
        try:
            self._con.rollback()
        except duckdb.TransactionException as e:
            # Failed commits leave no open transaction
            self.logger.debug("Nothing to roll back", error=str(e))

    def finish(self) -> None:
        if self.path is not None:
            self.connection.execute("CHECKPOINT")

    def count_rows(self) -> int:
        return self.connection.execute(f"SELECT COUNT(*) FROM {self.config.table}").fetchone()[0]

    def sort(self, request: SortRequest) -> SortResult:
        """
        Sort the table by key inside DuckDB.

        With an output path the ordered rows are written to Parquet and counted
        back from the file; otherwise the ordered query is only counted.
        """
        if self.path is not None and not self.path.exists():
            raise SinkError(f"Database file {self.path} does not exist")

        con = self.connection
        if request.temp_dir:
            self.logger.info("Setting temp_directory", value=request.temp_dir)
            con.execute(f"SET temp_directory = '{_quote(request.temp_dir)}'")
        if request.memory_limit:
            self.logger.info("Setting memory_limit", value=request.memory_limit)
            con.execute(f"SET memory_limit = '{_quote(request.memory_limit)}'")
        if request.threads:
            con.execute(f"SET threads TO {int(request.threads)}")

        query = f"SELECT sort_key, payload FROM {self.config.table} ORDER BY sort_key"
        if request.offset:
            query += f" OFFSET {int(request.offset)}"

        self.logger.info(MSG_SORTING, sink=self.name, table=self.config.table)
        start = time.perf_counter()
        try:
            if request.output is not None:
                output = Path(request.output)
                con.execute(
                    f"COPY ({query}) TO '{_quote(str(output))}' (FORMAT PARQUET)"
                )
                seconds = time.perf_counter() - start
                rows = con.execute(
                    f"SELECT COUNT(*) FROM read_parquet('{_quote(str(output))}')"
                ).fetchone()[0]
            else:
                output = None
                # Aggregating payload keeps it in the sorted projection
                rows, payload_bytes = con.execute(
                    f"SELECT COUNT(*), SUM(OCTET_LENGTH(payload)) FROM ({query})"
                ).fetchone()
                seconds = time.perf_counter() - start
                self.logger.info("Count result:", rows=rows, payload_bytes=payload_bytes or 0)
        except duckdb.Error as e:
            raise SinkError(f"DuckDB error: {e}") from e

        self.logger.info(f"TIMING: {seconds:.2f} seconds")
        return SortResult(rows=rows, seconds=seconds, output=output)

    def close(self) -> None:
        if self._con is not None:
            self._con.close()
            self._con = None
