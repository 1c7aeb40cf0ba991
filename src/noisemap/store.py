"""
Relational spatial store backed by sqlite3.

Geometries are stored as WKB blobs in columns whose declared type is a
geometry type (``POINT``, ``POLYGON``, ``GEOMETRY``, ...). The connection gets
a few SQL functions so that queries can filter on bounding boxes:

- ``ST_EnvelopesIntersect(geom, other)``: 1 when the bounding boxes of two WKB
  geometries intersect (touching boxes included), like PostGIS ``&&``.
- ``ST_XMin`` / ``ST_YMin`` / ``ST_XMax`` / ``ST_YMax``: bounds of a WKB blob.

Table metadata (geometry columns, integer primary key) is probed once per
table and cached for the lifetime of the store.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from shapely import wkb
from shapely.errors import ShapelyError
from shapely.geometry.base import BaseGeometry

from .config import DEFAULT_FETCH_SIZE
from .envelope import Envelope
from .errors import ConfigurationError, DataSourceError

logger = logging.getLogger(__name__)

GEOMETRY_TYPES = frozenset(
    base + suffix
    for base in (
        "GEOMETRY",
        "POINT",
        "LINESTRING",
        "POLYGON",
        "MULTIPOINT",
        "MULTILINESTRING",
        "MULTIPOLYGON",
        "GEOMETRYCOLLECTION",
    )
    for suffix in ("", "Z", "M", "ZM")
)
INTEGER_TYPES = frozenset({"INTEGER", "INT", "BIGINT", "SMALLINT", "MEDIUMINT", "TINYINT", "INT8"})

GeometryRow = Tuple[Optional[BaseGeometry], sqlite3.Row]


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def to_wkb(geometry: BaseGeometry) -> bytes:
    return wkb.dumps(geometry)


def read_wkb(blob: Optional[bytes]) -> Optional[BaseGeometry]:
    if blob is None:
        return None
    return wkb.loads(bytes(blob))


# ---------------------------------------------------------------- SQL functions
def _blob_bounds(blob: Optional[bytes]) -> Optional[Tuple[float, float, float, float]]:
    geometry = read_wkb(blob)
    if geometry is None or geometry.is_empty:
        return None
    return geometry.bounds


def _envelopes_intersect(blob_a: Optional[bytes], blob_b: Optional[bytes]) -> int:
    a = _blob_bounds(blob_a)
    b = _blob_bounds(blob_b)
    if a is None or b is None:
        return 0
    return int(not (b[0] > a[2] or b[2] < a[0] or b[1] > a[3] or b[3] < a[1]))


def _bound_function(index: int):
    def bound(blob: Optional[bytes]) -> Optional[float]:
        bounds = _blob_bounds(blob)
        return None if bounds is None else bounds[index]

    return bound


def register_spatial_functions(connection: sqlite3.Connection) -> None:
    connection.create_function("ST_EnvelopesIntersect", 2, _envelopes_intersect, deterministic=True)
    for index, name in enumerate(("ST_XMin", "ST_YMin", "ST_XMax", "ST_YMax")):
        connection.create_function(name, 1, _bound_function(index), deterministic=True)


@dataclass(frozen=True)
class TableInfo:
    name: str
    columns: Tuple[str, ...]
    geometry_columns: Tuple[str, ...]
    primary_key: Optional[str]

    def find_column(self, name: str) -> Optional[str]:
        """Case-insensitive column lookup returning the declared spelling."""
        lowered = name.lower()
        for column in self.columns:
            if column.lower() == lowered:
                return column
        return None


class SpatialStore:
    """
    Capability wrapper around one sqlite3 connection.

    A store is single-writer: concurrent cells must each open their own.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self.connection = connection
        self.connection.row_factory = sqlite3.Row
        register_spatial_functions(self.connection)
        self._tables: Dict[str, TableInfo] = {}

    @classmethod
    def connect(cls, database: str | Any, **kwargs: Any) -> SpatialStore:
        """Open a connection in autocommit mode."""
        kwargs.setdefault("isolation_level", None)
        try:
            connection = sqlite3.connect(str(database), **kwargs)
        except sqlite3.Error as exc:
            raise DataSourceError(f"Cannot open spatial store {database}: {exc}") from exc
        return cls(connection)

    def close(self) -> None:
        self.connection.close()

    def __enter__(self) -> SpatialStore:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------ metadata
    def table_info(self, table: str) -> TableInfo:
        info = self._tables.get(table)
        if info is not None:
            return info
        rows = self._execute(f"PRAGMA table_info({quote_identifier(table)})").fetchall()
        if not rows:
            raise DataSourceError(f"Table {table} does not exist")
        columns = tuple(row["name"] for row in rows)
        geometry_columns = tuple(
            row["name"] for row in rows if (row["type"] or "").upper() in GEOMETRY_TYPES
        )
        pk_rows = [row for row in rows if row["pk"]]
        primary_key = None
        if len(pk_rows) == 1 and (pk_rows[0]["type"] or "").upper() in INTEGER_TYPES:
            primary_key = pk_rows[0]["name"]
        info = TableInfo(table, columns, geometry_columns, primary_key)
        self._tables[table] = info
        logger.debug("Table %s: geometry=%s pk=%s", table, geometry_columns, primary_key)
        return info

    def geometry_columns(self, table: str) -> List[str]:
        return list(self.table_info(table).geometry_columns)

    def geometry_column(self, table: str) -> str:
        """First geometry column of ``table``."""
        columns = self.table_info(table).geometry_columns
        if not columns:
            raise ConfigurationError(f"Table {table} must contain a geometry column")
        return columns[0]

    def integer_primary_key(self, table: str) -> Optional[str]:
        return self.table_info(table).primary_key

    def find_column(self, table: str, name: str) -> Optional[str]:
        return self.table_info(table).find_column(name)

    def has_column(self, table: str, name: str) -> bool:
        return self.find_column(table, name) is not None

    # ------------------------------------------------------------------ queries
    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            return self.connection.execute(sql, params)
        except sqlite3.Error as exc:
            raise DataSourceError(f"Query failed: {sql}: {exc}") from exc

    def query_envelope(
        self,
        table: str,
        envelope: Envelope,
        columns: Optional[Sequence[str]] = None,
        *,
        fetch_size: int = DEFAULT_FETCH_SIZE,
    ) -> Iterator[GeometryRow]:
        """
        Stream ``(geometry, row)`` for rows whose geometry bounding box
        intersects ``envelope``.

        ``columns`` lists the auxiliary columns to select next to the geometry
        column; ``None`` selects every column. Rows are pulled ``fetch_size``
        at a time from a forward-only cursor.
        """
        geom_column = self.geometry_column(table)
        if columns is None:
            select = "*"
        else:
            wanted = [geom_column] + [c for c in columns if c.lower() != geom_column.lower()]
            select = ", ".join(quote_identifier(c) for c in wanted)
        sql = (
            f"SELECT {select} FROM {quote_identifier(table)} "
            f"WHERE ST_EnvelopesIntersect({quote_identifier(geom_column)}, ?)"
        )
        cursor = self._execute(sql, (to_wkb(envelope.to_polygon()),))
        cursor.arraysize = fetch_size
        try:
            while True:
                try:
                    rows = cursor.fetchmany(fetch_size)
                except sqlite3.Error as exc:
                    raise DataSourceError(f"Fetch failed on {table}: {exc}") from exc
                if not rows:
                    break
                for row in rows:
                    try:
                        geometry = read_wkb(row[geom_column])
                    except ShapelyError as exc:
                        raise DataSourceError(f"Invalid geometry in {table}: {exc}") from exc
                    yield geometry, row
        finally:
            cursor.close()

    def table_envelope(self, table: str) -> Envelope:
        """Bounding box of every geometry of ``table`` (null if empty)."""
        geom = quote_identifier(self.geometry_column(table))
        row = self._execute(
            f"SELECT MIN(ST_XMin({geom})), MIN(ST_YMin({geom})), "
            f"MAX(ST_XMax({geom})), MAX(ST_YMax({geom})) FROM {quote_identifier(table)}"
        ).fetchone()
        if row is None or row[0] is None:
            return Envelope.null()
        return Envelope(row[0], row[1], row[2], row[3])

    # ------------------------------------------------------------------ transactions
    @property
    def autocommit(self) -> bool:
        return self.connection.isolation_level is None

    @autocommit.setter
    def autocommit(self, value: bool) -> None:
        if value:
            if self.connection.in_transaction:
                self.connection.commit()
            self.connection.isolation_level = None
        else:
            self.connection.isolation_level = "DEFERRED"

    @contextmanager
    def transaction_scope(self) -> Iterator[SpatialStore]:
        """
        Run the body inside an explicit transaction.

        Streaming cursors need one; when the connection is in autocommit mode
        it is switched off for the body and switched back on afterwards,
        whatever way the body exits.
        """
        auto_commit = self.autocommit
        if auto_commit:
            self.autocommit = False
            self._execute("BEGIN")
        try:
            yield self
        except BaseException:
            if auto_commit and self.connection.in_transaction:
                self.connection.rollback()
            raise
        else:
            if auto_commit and self.connection.in_transaction:
                self.connection.commit()
        finally:
            if auto_commit:
                self.autocommit = True

    # ------------------------------------------------------------------ writing
    def create_table(
        self,
        table: str,
        columns: Sequence[Tuple[str, str]],
        *,
        primary_key: Optional[str] = None,
    ) -> None:
        """Create ``table`` from ``(name, declared type)`` pairs."""
        parts = []
        for name, declared in columns:
            definition = f"{quote_identifier(name)} {declared}"
            if primary_key is not None and name == primary_key:
                definition += " PRIMARY KEY"
            parts.append(definition)
        self._execute(f"CREATE TABLE {quote_identifier(table)} ({', '.join(parts)})")
        self._tables.pop(table, None)

    def insert_rows(self, table: str, rows: Iterable[Mapping[str, Any]]) -> int:
        """Insert mappings, encoding shapely geometries as WKB."""
        count = 0
        with self.transaction_scope():
            for row in rows:
                names = list(row)
                values = [to_wkb(v) if isinstance(v, BaseGeometry) else v for v in row.values()]
                sql = (
                    f"INSERT INTO {quote_identifier(table)} "
                    f"({', '.join(quote_identifier(n) for n in names)}) "
                    f"VALUES ({', '.join('?' for _ in names)})"
                )
                self._execute(sql, values)
                count += 1
        return count


__all__ = [
    "GEOMETRY_TYPES",
    "SpatialStore",
    "TableInfo",
    "quote_identifier",
    "read_wkb",
    "register_spatial_functions",
    "to_wkb",
]
