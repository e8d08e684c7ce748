"""
Configuration management for the bulk loader.
Handles environment variables, constants, and runtime tuning parameters.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv


# Input formats
FORMAT_GENSORT = "gensort"
FORMAT_KVBIN = "kvbin"
INPUT_FORMATS = (FORMAT_GENSORT, FORMAT_KVBIN)

# Sinks
SINK_DUCKDB = "duckdb"
SINK_CLICKHOUSE = "clickhouse"
SINK_POSTGRES = "postgres"
SINKS = (SINK_DUCKDB, SINK_CLICKHOUSE, SINK_POSTGRES)

# Gensort record layout
GENSORT_KEY_SIZE = 10
GENSORT_PAYLOAD_SIZE = 90
GENSORT_RECORD_SIZE = GENSORT_KEY_SIZE + GENSORT_PAYLOAD_SIZE

# Offset index companion file: <input> + INDEX_SUFFIX
INDEX_SUFFIX = ".idx"

DEFAULT_TABLE = "bench_data"
DEFAULT_CLICKHOUSE_URL = "http://localhost:8123"
DEFAULT_CLICKHOUSE_DATABASE = "default"

# Performance profiles: (threads, batch_rows, channel_depth)
PROFILES = {
    "safe": (1, 10_000, 2),
    "balanced": (4, 100_000, 4),
    "fast": (16, 200_000, 4),
}


@dataclass
class LoaderConfig:
    """Central configuration for a load or sort run."""

    # Destination
    table: str = DEFAULT_TABLE
    duckdb_path: Optional[Path] = None
    clickhouse_url: str = DEFAULT_CLICKHOUSE_URL
    clickhouse_database: str = DEFAULT_CLICKHOUSE_DATABASE
    clickhouse_user: Optional[str] = None
    clickhouse_password: Optional[str] = None
    database_url: Optional[str] = None

    # Performance tuning
    thread_count: int = 1
    batch_rows: int = 100_000
    batch_bytes: int = 8 * 1024 * 1024
    channel_depth: int = 4
    flush_every: int = 16
    progress_every: int = 1_000_000
    read_buffer_bytes: int = 4 * 1024 * 1024

    # HTTP
    http_timeout: float = 3600.0

    # Kvbin without an index: read the whole file into memory and split it
    preload: bool = False

    # PostgreSQL: one connection and one COPY per partition
    connection_per_partition: bool = False

    def validate(self) -> "LoaderConfig":
        """Reject knobs that cannot produce a working pipeline."""
        if self.thread_count < 1:
            raise ValueError(f"thread_count must be >= 1, got {self.thread_count}")
        if self.batch_rows < 1:
            raise ValueError(f"batch_rows must be >= 1, got {self.batch_rows}")
        if self.batch_bytes < 1:
            raise ValueError(f"batch_bytes must be >= 1, got {self.batch_bytes}")
        if self.channel_depth < 1:
            raise ValueError(f"channel_depth must be >= 1, got {self.channel_depth}")
        if self.flush_every < 1:
            raise ValueError(f"flush_every must be >= 1, got {self.flush_every}")
        return self

    def channel_capacity(self, producers: int) -> int:
        """Bounded channel size: a few in-flight batches per producer."""
        return self.channel_depth * max(1, producers)

    @classmethod
    def from_env(
        cls,
        profile: str = "custom",
        env_file: Optional[Path] = None
    ) -> "LoaderConfig":
        """
        Load configuration from environment variables.

        Args:
            profile: Performance profile - "safe", "balanced", "fast", or "custom"
            env_file: Explicit .env file (defaults to .env.local, then .env)
        """
        if env_file is None:
            env_file = Path.cwd() / ".env.local"
            if not env_file.exists():
                env_file = Path.cwd() / ".env"

        if env_file.exists():
            load_dotenv(env_file)

        config = cls(
            table=os.getenv("BENCHLOAD_TABLE", DEFAULT_TABLE),
            clickhouse_url=os.getenv("CLICKHOUSE_URL", DEFAULT_CLICKHOUSE_URL),
            clickhouse_database=os.getenv("CLICKHOUSE_DATABASE", DEFAULT_CLICKHOUSE_DATABASE),
            clickhouse_user=os.getenv("CLICKHOUSE_USER"),
            clickhouse_password=os.getenv("CLICKHOUSE_PASSWORD"),
            database_url=os.getenv("DATABASE_URL"),
        )

        duckdb_path = os.getenv("DUCKDB_PATH")
        if duckdb_path:
            config.duckdb_path = Path(duckdb_path)

        if profile != "custom":
            if profile not in PROFILES:
                raise ValueError(
                    f"Unknown profile {profile!r}, expected one of: "
                    f"{', '.join(sorted(PROFILES))}, custom"
                )
            config.thread_count, config.batch_rows, config.channel_depth = PROFILES[profile]

        return config


# Message constants
MSG_PLANNING = "Planning partitions"
MSG_LOADING = "Starting load"
MSG_LOAD_COMPLETE = "Load completed successfully"
MSG_SORTING = "Running external sort"
MSG_ROLLBACK = "Rolling back transaction"

# Error messages
ERR_TRUNCATED = "Truncated record"
ERR_CHANNEL_CLOSED = "Send on closed channel"
ERR_COUNT_MISMATCH = "Row count mismatch"
ERR_DESTINATION_EXISTS = "Destination already exists"

# Worker outcome kinds
KIND_FAILED = "failed"
KIND_PANICKED = "panicked"
