# bulkstore/ingest/database.py
#
# Database collaborator: the only module that talks to DuckDB.
#
# Design decisions:
#   - One connection per Database object, opened lazily on first use and
#     released by close(). The connection is not shared across threads.
#   - Files are loaded with DuckDB's native readers (read_csv, read_parquet), so
#     bulk rows never pass through Python memory.
#   - Semi-structured JSON is the exception: polars parses and flattens it,
#     writes a staging Parquet file, and DuckDB reads that file.
#   - Every loader failure is re-raised as SchemaError with the file and table
#     named; the caller decides what to roll back.
#
# ADR: Why f-string SQL?
#   Table functions and DDL cannot take bound parameters for identifiers or file
#   paths. Identifiers go through quote_ident() and paths through
#   sql_literal(), so embedded quotes cannot break out of the statement.
from __future__ import annotations

import gzip
import json
import tempfile
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

import duckdb
import polars as pl

from bulkstore.catalog.models import ResourceFormat, data_suffixes
from bulkstore.errors import SchemaError

_MAX_SNIFF_LINES = 1000


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def csv_delimiter(path: Path) -> str:
    suffixes = data_suffixes(path.name)
    return "\t" if (".tsv" in suffixes or ".txt" in suffixes) else ","


def sniff_comment_header(path: Path, delimiter: str) -> tuple[int, list[str] | None]:
    """Inspect the leading ``#`` lines of a delimited text file.

    Returns:
        (number of leading comment lines, header columns or None). A last
        comment line containing the delimiter, such as ``#CHROM\\tPOS``, is the
        header; its columns are returned with the ``#`` marker removed.
    """
    suffixes = data_suffixes(path.name)
    if suffixes.endswith(".zst"):
        return 0, None
    opener = gzip.open if suffixes.endswith(".gz") else open
    comments: list[str] = []
    with opener(path, "rt", encoding="utf-8", errors="replace") as fh:
        for line in fh:
            if not line.startswith("#") or len(comments) >= _MAX_SNIFF_LINES:
                break
            comments.append(line.rstrip("\r\n"))
    if comments and delimiter in comments[-1]:
        return len(comments), comments[-1].lstrip("#").split(delimiter)
    return len(comments), None


def flatten_json(path: Path) -> pl.DataFrame:
    """Parse a JSON or JSON-lines file into a flat DataFrame.

    Nested objects become dotted columns. A top-level object holding a list of
    records (for example ``{"hits": [...]}``) is unwrapped to that list.
    """
    suffixes = data_suffixes(path.name)
    opener = gzip.open if suffixes.endswith(".gz") else open
    with opener(path, "rt", encoding="utf-8") as fh:
        if ".jsonl" in suffixes:
            records = [json.loads(line) for line in fh if line.strip()]
        else:
            data = json.load(fh)
            if isinstance(data, dict):
                nested = [v for v in data.values() if isinstance(v, list)]
                records = nested[0] if len(nested) == 1 else [data]
            else:
                records = data
    if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
        raise ValueError("JSON content is not a list of objects")
    return pl.json_normalize(records, separator=".")


class Database:
    """Scoped DuckDB connection with the loaders the ingestion engine needs."""

    def __init__(self, path: Path | str) -> None:
        self.path = path
        self._conn: duckdb.DuckDBPyConnection | None = None

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            if str(self.path) != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = duckdb.connect(str(self.path))
        return self._conn

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> Database:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # SQL
    # ------------------------------------------------------------------

    def execute(self, sql: str, params: Sequence[Any] | None = None) -> list[tuple[Any, ...]]:
        result = self.connection.execute(sql, params) if params is not None else self.connection.execute(sql)
        return result.fetchall() if result.description else []

    def query(self, sql: str, params: Sequence[Any] | None = None) -> pl.DataFrame:
        """Run *sql* and return the result as a polars DataFrame."""
        result = self.connection.execute(sql, params) if params is not None else self.connection.execute(sql)
        columns = [col[0] for col in result.description or []]
        return pl.DataFrame(result.fetchall(), schema=columns, orient="row")

    @contextmanager
    def transaction(self) -> Iterator[None]:
        self.connection.execute("BEGIN TRANSACTION")
        try:
            yield
        except BaseException:
            self.connection.execute("ROLLBACK")
            raise
        self.connection.execute("COMMIT")

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    def tables(self) -> list[str]:
        """Names of persistent tables and views in the database, sorted."""
        rows = self.execute(
            "SELECT table_name AS name FROM duckdb_tables() WHERE NOT temporary AND NOT internal "
            "UNION ALL "
            "SELECT view_name AS name FROM duckdb_views() WHERE NOT temporary AND NOT internal "
            "ORDER BY name"
        )
        return [row[0] for row in rows]

    def table_exists(self, table_name: str) -> bool:
        rows = self.execute(
            "SELECT COUNT(*) FROM duckdb_tables() WHERE table_name = ? AND NOT temporary",
            [table_name],
        )
        return bool(rows and rows[0][0])

    def view_exists(self, view_name: str) -> bool:
        rows = self.execute(
            "SELECT COUNT(*) FROM duckdb_views() WHERE view_name = ? AND NOT temporary AND NOT internal",
            [view_name],
        )
        return bool(rows and rows[0][0])

    def view_definition(self, view_name: str) -> str | None:
        """SQL DuckDB stored for *view_name*, or None when no such view exists."""
        rows = self.execute(
            "SELECT sql FROM duckdb_views() WHERE view_name = ? AND NOT temporary AND NOT internal",
            [view_name],
        )
        return rows[0][0] if rows else None

    def create_view(self, view_name: str, table_name: str) -> None:
        """Point *view_name* at every column of *table_name*, replacing any prior view."""
        self.connection.execute(
            f"CREATE OR REPLACE VIEW {quote_ident(view_name)} AS SELECT * FROM {quote_ident(table_name)}"  # noqa: S608
        )

    def drop_table(self, table_name: str) -> None:
        self.connection.execute(f"DROP TABLE IF EXISTS {quote_ident(table_name)}")

    def row_count(self, table_name: str) -> int:
        row = self.connection.execute(f"SELECT COUNT(*) FROM {quote_ident(table_name)}").fetchone()  # noqa: S608
        return int(row[0]) if row else 0

    def load_file_as_table(self, path: Path, table_name: str, fmt: ResourceFormat) -> int:
        """Create *table_name* from the file at *path* and return its row count.

        Tabular files are read with read_csv after skipping leading ``#``
        comment lines; a commented header supplies the column names without its
        ``#``. JSON is flattened with polars first. Binary payloads are read as
        Parquet.

        Raises:
            SchemaError: if the file cannot be parsed or the table created.
        """
        target = quote_ident(table_name)
        try:
            if fmt is ResourceFormat.TABULAR:
                delimiter = csv_delimiter(path)
                skip, columns = sniff_comment_header(path, delimiter)
                if columns is None:
                    header = "header=true"
                else:
                    names = ", ".join(sql_literal(c) for c in columns)
                    header = f"header=false, names=[{names}]"
                self.connection.execute(
                    f"CREATE TABLE {target} AS SELECT * FROM read_csv("  # noqa: S608
                    f"{sql_literal(path.as_posix())}, delim={sql_literal(delimiter)}, "
                    f"{header}, skip={skip})"
                )
            elif fmt is ResourceFormat.JSON:
                self._load_via_parquet(flatten_json(path), target)
            else:
                self.connection.execute(
                    f"CREATE TABLE {target} AS SELECT * FROM read_parquet({sql_literal(path.as_posix())})"  # noqa: S608
                )
            return self.row_count(table_name)
        except (duckdb.Error, pl.exceptions.PolarsError, ValueError, OSError) as exc:
            raise SchemaError(f"Cannot load {path.name} into {table_name}: {exc}") from exc

    def temporary_table(self, df: pl.DataFrame, table_name: str) -> str:
        """Register *df* as a temporary table for joins against stored tables.

        The table disappears when the connection closes.
        """
        try:
            self._load_via_parquet(df, quote_ident(table_name), temporary=True)
        except (duckdb.Error, pl.exceptions.PolarsError, OSError) as exc:
            raise SchemaError(f"Cannot register temporary table {table_name}: {exc}") from exc
        return table_name

    def _load_via_parquet(self, df: pl.DataFrame, target: str, *, temporary: bool = False) -> None:
        kind = "OR REPLACE TEMP TABLE" if temporary else "TABLE"
        with tempfile.TemporaryDirectory(prefix="bulkstore-") as tmp:
            staging = Path(tmp) / "staging.parquet"
            df.write_parquet(staging)
            self.connection.execute(
                f"CREATE {kind} {target} AS SELECT * FROM read_parquet({sql_literal(staging.as_posix())})"  # noqa: S608
            )
