#!/usr/bin/env python3
"""
Command line entry point for the bulk loader.
Subcommands: load, sort, generate.
"""
import sys
import argparse
from pathlib import Path
from typing import List, Optional

from .config import (
    FORMAT_GENSORT,
    FORMAT_KVBIN,
    INPUT_FORMATS,
    LoaderConfig,
    MSG_PLANNING,
    PROFILES,
    SINK_DUCKDB,
    SINK_POSTGRES,
    SINKS,
)
from .generate import generate_gensort, generate_kvbin
from .logger import LogLevel, StructuredLogger, get_logger, set_logger
from .metrics import MetricsCollector
from .partition import plan_input
from .pipeline import LoadPipeline
from .sink import SortRequest, make_sink


def build_config(args) -> LoaderConfig:
    """Environment first, then the named profile, then explicit flags."""
    config = LoaderConfig.from_env(profile=args.profile)

    if args.table:
        config.table = args.table
    if args.db:
        if args.sink == SINK_DUCKDB:
            config.duckdb_path = Path(args.db)
        elif args.sink == SINK_POSTGRES:
            config.database_url = args.db
    if args.url:
        config.clickhouse_url = args.url
    if args.database:
        config.clickhouse_database = args.database

    if args.threads is not None:
        config.thread_count = args.threads
    if getattr(args, "batch_size", None) is not None:
        config.batch_rows = args.batch_size
    if getattr(args, "channel_depth", None) is not None:
        config.channel_depth = args.channel_depth
    if getattr(args, "flush_every", None) is not None:
        config.flush_every = args.flush_every

    if getattr(args, "preload", False):
        config.preload = True
    if getattr(args, "connection_per_partition", False):
        config.connection_per_partition = True

    return config.validate()


def load_command(args):
    """Load an input file into a sink."""
    logger = get_logger()
    logger.section("BULK LOAD")
    metrics = MetricsCollector()

    try:
        config = build_config(args)
        logger.info(
            "Configuration loaded",
            sink=args.sink,
            profile=args.profile,
            threads=config.thread_count,
            batch_rows=config.batch_rows,
        )

        logger.info(MSG_PLANNING, format=args.format, input=args.input)
        plan = plan_input(args.format, args.input, config.thread_count, preload=config.preload)
        logger.info(
            "Plan ready",
            partitions=len(plan.partitions),
            sequential=plan.sequential,
            file_size=plan.file_size,
        )

        options = {}
        if args.sink == SINK_DUCKDB and args.append:
            options["allow_existing"] = True

        with make_sink(args.sink, config, metrics, **options) as sink:
            result = LoadPipeline(config, plan, sink, metrics).run()

        print(metrics.format_summary())
        logger.success(
            f"Successfully loaded {result.rows} rows",
            table=config.table,
            rows_per_second=f"{result.rows_per_second:.0f}",
        )
        return 0

    except KeyboardInterrupt:
        logger.warning("Operation cancelled by user")
        return 130
    except Exception as e:
        logger.error("Load failed", error=str(e))
        return 1


def sort_command(args):
    """Ask the sink engine to sort a loaded table by key."""
    logger = get_logger()
    logger.section("EXTERNAL SORT")

    try:
        config = build_config(args)
        request = SortRequest(
            output=Path(args.output) if args.output else None,
            memory_limit=args.memory_limit,
            offset=args.offset,
            threads=args.threads,
            temp_dir=args.temp_dir,
            work_mem=args.work_mem,
            temp_tablespace=args.temp_tablespace,
        )

        with make_sink(args.sink, config) as sink:
            result = sink.sort(request)

        logger.success(
            "External sorting completed successfully",
            rows=result.rows,
            seconds=f"{result.seconds:.2f}",
            output=str(result.output) if result.output else None,
        )
        return 0

    except KeyboardInterrupt:
        logger.warning("Operation cancelled by user")
        return 130
    except Exception as e:
        logger.error("Sort failed", error=str(e))
        return 1


def generate_command(args):
    """Write a synthetic input file."""
    logger = get_logger()
    logger.section("GENERATE TEST DATA")

    try:
        if args.format == FORMAT_GENSORT:
            generate_gensort(args.output, args.num_records, seed=args.seed, progress=True)
        else:
            generate_kvbin(
                args.output,
                args.num_records,
                index_every=args.index_every,
                seed=args.seed,
                progress=True,
            )
        return 0

    except KeyboardInterrupt:
        logger.warning("Operation cancelled by user")
        return 130
    except Exception as e:
        logger.error("Generation failed", error=str(e))
        return 1


def _add_sink_arguments(parser: argparse.ArgumentParser):
    parser.add_argument(
        '--sink',
        choices=SINKS,
        required=True,
        help='Destination engine'
    )
    parser.add_argument(
        '--db',
        type=str,
        help='DuckDB database file, or PostgreSQL connection string'
    )
    parser.add_argument(
        '--url',
        type=str,
        help='ClickHouse HTTP URL (default from CLICKHOUSE_URL)'
    )
    parser.add_argument(
        '--database',
        type=str,
        help='ClickHouse database name'
    )
    parser.add_argument(
        '--table',
        type=str,
        help='Table name (default from BENCHLOAD_TABLE or bench_data)'
    )
    parser.add_argument(
        '--threads',
        type=int,
        help='Producer threads for load, engine threads for sort'
    )


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bulk ingestion benchmark loader",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    # Global options
    parser.add_argument(
        '--profile',
        choices=sorted(PROFILES) + ['custom'],
        default='custom',
        help='Performance profile'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Load
    load_parser = subparsers.add_parser('load', help='Load an input file into a sink')
    _add_sink_arguments(load_parser)
    load_parser.add_argument(
        '--format',
        choices=INPUT_FORMATS,
        default=FORMAT_GENSORT,
        help='Input record format'
    )
    load_parser.add_argument(
        '--input',
        type=str,
        required=True,
        help='Input file path'
    )
    load_parser.add_argument(
        '--batch-size',
        type=int,
        help='Records per batch'
    )
    load_parser.add_argument(
        '--channel-depth',
        type=int,
        help='In-flight batches per producer'
    )
    load_parser.add_argument(
        '--flush-every',
        type=int,
        help='Commit interval in batches (duckdb)'
    )
    load_parser.add_argument(
        '--preload',
        action='store_true',
        help='kvbin without index: read the file into memory and split it'
    )
    load_parser.add_argument(
        '--connection-per-partition',
        action='store_true',
        help='postgres: one connection and COPY per partition'
    )
    load_parser.add_argument(
        '--append',
        action='store_true',
        help='duckdb: allow loading into an existing database file'
    )

    # Sort
    sort_parser = subparsers.add_parser('sort', help='Run an engine-side sort by key')
    _add_sink_arguments(sort_parser)
    sort_parser.add_argument(
        '--output',
        type=str,
        help='Write sorted rows here (Parquet, Native or binary COPY by sink)'
    )
    sort_parser.add_argument(
        '--memory-limit',
        type=str,
        help='Engine memory budget, e.g. 1GB or 512MB'
    )
    sort_parser.add_argument(
        '--offset',
        type=int,
        default=0,
        help='Skip this many leading sorted rows'
    )
    sort_parser.add_argument(
        '--temp-dir',
        type=str,
        help='duckdb: spill directory'
    )
    sort_parser.add_argument(
        '--work-mem',
        type=str,
        help='postgres: work_mem for the sort'
    )
    sort_parser.add_argument(
        '--temp-tablespace',
        type=str,
        help='postgres: temp_tablespaces for the sort'
    )

    # Generate
    gen_parser = subparsers.add_parser('generate', help='Write a synthetic input file')
    gen_parser.add_argument(
        '--format',
        choices=INPUT_FORMATS,
        default=FORMAT_GENSORT,
        help='Record format to generate'
    )
    gen_parser.add_argument(
        '--output',
        type=str,
        required=True,
        help='Output file path'
    )
    gen_parser.add_argument(
        '--num-records',
        type=int,
        required=True,
        help='Number of records'
    )
    gen_parser.add_argument(
        '--index-every',
        type=int,
        default=0,
        help=f'{FORMAT_KVBIN}: write an offset index entry every N records'
    )
    gen_parser.add_argument(
        '--seed',
        type=int,
        help='Random seed'
    )

    return parser


def main(argv: Optional[List[str]] = None):
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    # Setup logger
    log_level = LogLevel.DEBUG if args.verbose else LogLevel.INFO
    set_logger(StructuredLogger(min_level=log_level, show_thread=args.verbose))

    if args.command == 'load':
        return load_command(args)
    elif args.command == 'sort':
        return sort_command(args)
    elif args.command == 'generate':
        return generate_command(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
