"""Shared fixtures: temporary input files, a captured logger and sink fakes."""

import io
import threading
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pytest

from benchload.config import LoaderConfig
from benchload.encoding import RowBinaryEncoder, iter_copy_tuples
from benchload.logger import LogLevel, StructuredLogger, set_logger
from benchload.partition import index_path_for
from benchload.records import pack_variable_record

Record = Tuple[bytes, bytes]


class CapturedLog:
    """Logger output split the way StructuredLogger splits it."""

    def __init__(self) -> None:
        self.out = io.StringIO()
        self.err = io.StringIO()

    @property
    def text(self) -> str:
        return self.out.getvalue() + self.err.getvalue()


@pytest.fixture(autouse=True)
def captured_log():
    log = CapturedLog()
    set_logger(StructuredLogger(min_level=LogLevel.DEBUG, out=log.out, err=log.err))
    yield log
    set_logger(None)


@pytest.fixture
def write_gensort(tmp_path: Path):
    """Factory writing gensort files from (10-byte key, 90-byte payload) pairs."""

    def _write(records: Sequence[Record], name: str = "input.gensort", extra: bytes = b"") -> Path:
        path = tmp_path / name
        with open(path, "wb") as f:
            for key, value in records:
                assert len(key) == 10 and len(value) == 90
                f.write(key + value)
            f.write(extra)
        return path

    return _write


@pytest.fixture
def write_kvbin(tmp_path: Path):
    """Factory writing kvbin records and, optionally, an index of record starts."""

    def _write(
        records: Sequence[Record],
        name: str = "input.kvbin",
        index_every: int = 0,
        extra_offsets: Sequence[int] = (),
        tail: bytes = b"",
    ) -> Path:
        path = tmp_path / name
        offsets: List[int] = []
        position = 0
        with open(path, "wb") as f:
            for i, (key, value) in enumerate(records):
                if index_every and i % index_every == 0:
                    offsets.append(position)
                data = pack_variable_record(key, value)
                f.write(data)
                position += len(data)
            f.write(tail)

        if index_every or extra_offsets:
            with open(index_path_for(path), "wb") as f:
                for offset in list(offsets) + list(extra_offsets):
                    f.write(offset.to_bytes(8, "little"))
        return path

    return _write


@pytest.fixture
def abc_records() -> List[Record]:
    return [
        (b"AAAAAAAAAA", b"1" * 90),
        (b"BBBBBBBBBB", b"2" * 90),
        (b"CCCCCCCCCC", b"3" * 90),
    ]


@pytest.fixture
def numbered_records() -> List[Record]:
    """Distinct fixed-size records, handy for multi-thread loads."""
    return [
        (f"K{i:09d}".encode(), bytes([i % 256]) * 90)
        for i in range(1000)
    ]


@pytest.fixture
def config() -> LoaderConfig:
    return LoaderConfig(batch_rows=16, channel_depth=2, flush_every=2, progress_every=100)


# Sink fakes


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "", content: bytes = b"") -> None:
        self.status_code = status_code
        self.ok = status_code < 400
        self.text = text
        self.content = content
        self.headers = {}
        self.closed = False

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def close(self) -> None:
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class FakeClickHouseSession:
    """
    Stands in for requests.Session against the ClickHouse HTTP interface.

    Request bodies are consumed by iteration, as requests does for a body
    without a length, and decoded as RowBinary.
    """

    def __init__(self, error: Optional[str] = None, insert_error: Optional[str] = None) -> None:
        self.error = error
        self.insert_error = insert_error
        self.queries: List[str] = []
        self.headers: List[dict] = []
        self.rows: List[Record] = []
        self.closed = False
        self.responses: List[FakeResponse] = []

    def post(self, url, params=None, data=None, headers=None, timeout=None, stream=False):
        query = params["query"]
        self.queries.append(query)
        self.headers.append(headers or {})

        if data is not None:
            body = b"".join(data)
            if self.error or self.insert_error:
                return FakeResponse(500, self.error or self.insert_error)
            self.rows.extend(RowBinaryEncoder().decode(body))
            return FakeResponse()

        if self.error:
            return FakeResponse(500, self.error)
        if query.startswith("SELECT count()"):
            return FakeResponse(text=f"{len(self.rows)}\n")
        if query.startswith("EXPLAIN"):
            return FakeResponse(text="Expression\n  Sorting\n    ReadFromMergeTree\n")
        if "FORMAT Native" in query:
            resp = FakeResponse(content=b"native-bytes")
            self.responses.append(resp)
            return resp
        return FakeResponse()

    def close(self) -> None:
        self.closed = True


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self.conn = conn
        self.rowcount = -1
        self._result = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def execute(self, sql, params=None) -> None:
        self.conn.statements.append((sql, params))
        self.rowcount = -1
        if sql.startswith("SELECT COUNT"):
            total = len(self.conn.pool.rows)
            if " OFFSET " in sql:
                total -= int(sql.split(" OFFSET ")[1].split(")")[0])
            total = max(total, 0)
            if "SUM(OCTET_LENGTH(payload))" in sql:
                payload = sum(len(v) for _, v in self.conn.pool.rows[len(self.conn.pool.rows) - total:])
                self._result = (total, payload)
            else:
                self._result = (total,)

    def fetchone(self):
        return self._result

    def copy_expert(self, sql, file, size=8192) -> None:
        self.conn.statements.append((sql, None))
        if "FROM STDIN" in sql:
            chunks = []
            while True:
                chunk = file.read(size)
                if not chunk:
                    break
                chunks.append(chunk)
            rows = list(iter_copy_tuples(b"".join(chunks)))
            self.conn.pending.extend(rows)
            self.rowcount = len(rows)
        else:
            file.write(b"PGCOPY")
            self.rowcount = len(self.conn.pool.rows)


class FakeConnection:
    def __init__(self, pool: "FakePool") -> None:
        self.pool = pool
        self.autocommit = True
        self.statements: List[tuple] = []
        self.pending: List[tuple] = []

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def commit(self) -> None:
        with self.pool.lock:
            self.pool.rows.extend(self.pending)
            self.pool.commits += 1
        self.pending = []

    def rollback(self) -> None:
        self.pending = []
        with self.pool.lock:
            self.pool.rollbacks += 1


class FakePool:
    """In-process stand-in for psycopg2's ThreadedConnectionPool."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.rows: List[tuple] = []
        self.connections: List[FakeConnection] = []
        self.commits = 0
        self.rollbacks = 0
        self.in_use = 0
        self.max_in_use = 0
        self.closed = False

    def getconn(self) -> FakeConnection:
        conn = FakeConnection(self)
        with self.lock:
            self.connections.append(conn)
            self.in_use += 1
            self.max_in_use = max(self.max_in_use, self.in_use)
        return conn

    def putconn(self, conn: FakeConnection) -> None:
        with self.lock:
            self.in_use -= 1

    def closeall(self) -> None:
        self.closed = True

    def statements(self) -> List[str]:
        return [sql for conn in self.connections for sql, _ in conn.statements]


@pytest.fixture
def clickhouse_session() -> FakeClickHouseSession:
    return FakeClickHouseSession()


@pytest.fixture
def postgres_pool() -> FakePool:
    return FakePool()
