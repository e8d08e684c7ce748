"""
ClickHouse streaming-upload sink over the HTTP interface.

The whole load is one POST of `INSERT INTO <table> FORMAT RowBinary` whose
body is the channel stream; requests sends it chunked since the stream has
no length.
"""
import time
from pathlib import Path
from typing import Dict, List, Optional

import requests

from .channel import ChannelReader
from .config import LoaderConfig, MSG_SORTING, SINK_CLICKHOUSE
from .metrics import MetricsCollector
from .sink import SinkError, SortRequest, SortResult, StreamingUploadSink

DEFAULT_SORT_MEMORY = "1GB"


def parse_memory_to_bytes(value: str) -> int:
    """Parse "1GB" / "512MB" (or "1G" / "512M") into bytes."""
    text = value.strip().upper()
    for suffixes, scale in ((("GB", "G"), 1024 ** 3), (("MB", "M"), 1024 ** 2)):
        for suffix in suffixes:
            if text.endswith(suffix):
                number = text[:-len(suffix)].strip()
                try:
                    return int(float(number) * scale)
                except ValueError:
                    raise ValueError(f"Invalid memory size: {value!r}") from None
    raise ValueError(
        f"Unsupported memory format {value!r}. Use GB or MB (e.g., '1GB', '512MB')"
    )


class ClickHouseSink(StreamingUploadSink):
    """Streams RowBinary rows into a MergeTree table."""

    name = SINK_CLICKHOUSE

    def __init__(
        self,
        config: LoaderConfig,
        metrics: Optional[MetricsCollector] = None,
        session: Optional[requests.Session] = None
    ):
        super().__init__(config, metrics)
        self.url = config.clickhouse_url.rstrip("/") + "/"
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {}
        if self.config.clickhouse_user:
            headers["X-ClickHouse-User"] = self.config.clickhouse_user
        if self.config.clickhouse_password:
            headers["X-ClickHouse-Key"] = self.config.clickhouse_password
        return headers

    def _post(self, query: str, data=None, stream: bool = False) -> requests.Response:
        params = {"query": query, "database": self.config.clickhouse_database}
        resp = self.session.post(
            self.url,
            params=params,
            data=data,
            headers=self._headers(),
            timeout=self.config.http_timeout,
            stream=stream,
        )
        if not resp.ok:
            text = resp.text or "Unknown error"
            resp.close()
            raise SinkError(f"ClickHouse error: {text}")
        return resp

    def execute(self, query: str) -> str:
        """Run a statement and return the response body."""
        return self._post(query).text

    def prepare(self) -> None:
        self.logger.info("Creating table if not exists", table=self.config.table)
        self.execute(
            f"CREATE TABLE IF NOT EXISTS {self.config.table} ("
            "sort_key String, payload String"
            ") ENGINE = MergeTree ORDER BY tuple()"
        )

    def upload(self, stream: ChannelReader) -> int:
        self.metrics.start_timer("clickhouse_insert")
        try:
            resp = self._post(f"INSERT INTO {self.config.table} FORMAT RowBinary", data=stream)
        finally:
            self.metrics.stop_timer("clickhouse_insert")

        summary = resp.headers.get("X-ClickHouse-Summary")
        if summary:
            self.logger.debug("Insert summary", summary=summary)
        return stream.rows

    def count_rows(self) -> int:
        return int(self.execute(f"SELECT count() FROM {self.config.table}").strip())

    def _settings(self, request: SortRequest) -> List[str]:
        max_bytes = parse_memory_to_bytes(request.memory_limit or DEFAULT_SORT_MEMORY)
        settings = []
        if request.threads:
            self.logger.info("Setting max_threads", value=request.threads)
            settings.append(f"max_threads = {int(request.threads)}")
        settings.append(f"max_bytes_before_external_sort = {max_bytes}")
        settings.append("max_bytes_ratio_before_external_sort = 0")
        self.logger.info("Setting max_bytes_before_external_sort", bytes=max_bytes)
        return settings

    def sort(self, request: SortRequest) -> SortResult:
        """
        Run ORDER BY sort_key inside ClickHouse with external-sort settings.

        Without an output path the result is discarded with FORMAT Null;
        with one, the sorted rows are streamed back in Native format and
        written to that file.
        """
        table = self.config.table
        total = self.count_rows()
        self.logger.info("Table statistics", table=table, rows=total)

        select = f"SELECT sort_key, payload FROM {table} ORDER BY sort_key"
        if request.offset:
            select += f" OFFSET {int(request.offset)} ROWS"
        select += " SETTINGS " + ", ".join(self._settings(request))

        plan = self.execute(f"EXPLAIN {select}")
        self.logger.section("QUERY PLAN")
        for line in plan.splitlines():
            self.logger.info(line)

        self.logger.info(MSG_SORTING, sink=self.name, table=table)
        output = Path(request.output) if request.output is not None else None
        start = time.perf_counter()
        if output is None:
            self.execute(f"{select} FORMAT Null")
        else:
            with self._post(f"{select} FORMAT Native", stream=True) as resp:
                with open(output, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=1024 * 1024):
                        fh.write(chunk)
        seconds = time.perf_counter() - start

        self.logger.info(f"TIMING: {seconds:.2f} seconds")
        return SortResult(rows=max(total - request.offset, 0), seconds=seconds, output=output)

    def close(self) -> None:
        self.session.close()
