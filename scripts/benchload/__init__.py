"""
Bulk-ingestion benchmarking pipeline.

Partitioned, backpressure-bounded loading of gensort and kvbin record
files into DuckDB, ClickHouse and PostgreSQL, with exact row accounting.
"""

__version__ = "0.3.0"
