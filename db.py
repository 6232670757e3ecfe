import re
from contextlib import contextmanager

import psycopg2
import psycopg2.extras

from errors import PersistenceError

_IDENT = re.compile(r"^[a-z_][a-z0-9_]*$")


def _ident(name: str) -> str:
    if not _IDENT.match(name or ""):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


def _where(filters: dict) -> tuple[str, list]:
    """Build a WHERE clause: lists become IN, None becomes IS NULL."""
    clauses, params = [], []
    for column, value in filters.items():
        column = _ident(column)
        if value is None:
            clauses.append(f"{column} IS NULL")
        elif isinstance(value, (list, tuple, set, frozenset)):
            values = list(value)
            if not values:
                clauses.append("FALSE")
                continue
            clauses.append(f"{column} = ANY(%s)")
            params.append(values)
        else:
            clauses.append(f"{column} = %s")
            params.append(value)
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


class Table:
    """Row access to one table through the owning Database's connection."""

    def __init__(self, db: "Database", name: str):
        self.db = db
        self.name = _ident(name)

    def _execute(self, sql: str, params=None, fetch: bool = False):
        try:
            with self.db.conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute(sql, params)
                if fetch:
                    return [dict(row) for row in cursor.fetchall()]
                return cursor.rowcount
        except psycopg2.Error as e:
            # Leave the connection usable for the next independent step.
            self.db.conn.rollback()
            raise PersistenceError(f"{self.name}: {e.pgerror or e}") from e

    def select(self, columns, *, limit: int | None = None, order_by: str | None = None, **filters) -> list[dict]:
        cols = ", ".join(_ident(c) for c in columns)
        where, params = _where(filters)
        sql = f"SELECT {cols} FROM {self.name}{where}"
        if order_by:
            column, _, direction = order_by.partition(" ")
            direction = direction.strip().upper()
            if direction not in ("", "ASC", "DESC"):
                raise ValueError(f"Invalid sort direction: {direction!r}")
            sql += f" ORDER BY {_ident(column)} {direction}".rstrip()
        if limit is not None:
            sql += " LIMIT %s"
            params.append(int(limit))
        return self._execute(sql, params, fetch=True)

    def first(self, columns, **filters) -> dict | None:
        rows = self.select(columns, limit=1, **filters)
        return rows[0] if rows else None

    def insert(self, row: dict) -> int:
        cols = [_ident(c) for c in row]
        placeholders = ", ".join(["%s"] * len(cols))
        sql = f"INSERT INTO {self.name} ({', '.join(cols)}) VALUES ({placeholders})"
        return self._execute(sql, list(row.values()))

    def upsert(self, row: dict, on_conflict: str) -> int:
        """Insert ``row``; on key conflict overwrite only the columns supplied."""
        key = _ident(on_conflict)
        if key not in row:
            raise ValueError(f"Upsert row is missing conflict key {key!r}")
        cols = [_ident(c) for c in row]
        placeholders = ", ".join(["%s"] * len(cols))
        updates = [f"{c} = EXCLUDED.{c}" for c in cols if c != key]
        sql = f"INSERT INTO {self.name} ({', '.join(cols)}) VALUES ({placeholders}) ON CONFLICT ({key})"
        if updates:
            sql += " DO UPDATE SET " + ", ".join(updates)
        else:
            sql += " DO NOTHING"
        return self._execute(sql, list(row.values()))

    def update(self, values: dict, **filters) -> int:
        if not values:
            return 0
        sets = ", ".join(f"{_ident(c)} = %s" for c in values)
        where, params = _where(filters)
        sql = f"UPDATE {self.name} SET {sets}{where}"
        return self._execute(sql, list(values.values()) + params)

    def append_unique(self, column: str, value, **filters) -> int:
        """Add ``value`` to an array column in one statement; no-op if present."""
        column = _ident(column)
        where, params = _where(filters)
        guard = f"NOT (%s = ANY(COALESCE({column}, '{{}}')))"
        where = f"{where} AND {guard}" if where else f" WHERE {guard}"
        sql = f"UPDATE {self.name} SET {column} = array_append(COALESCE({column}, '{{}}'), %s){where}"
        return self._execute(sql, [value] + params + [value])

    def remove_value(self, column: str, value, **filters) -> int:
        column = _ident(column)
        where, params = _where(filters)
        sql = f"UPDATE {self.name} SET {column} = array_remove(COALESCE({column}, '{{}}'), %s){where}"
        return self._execute(sql, [value] + params)


class Database:
    """A psycopg2 connection viewed as a set of tables with explicit transactions."""

    def __init__(self, conn):
        self.conn = conn

    def table(self, name: str) -> Table:
        return Table(self, name)

    @contextmanager
    def transaction(self):
        try:
            yield self
            self.conn.commit()
        except psycopg2.Error as e:
            self.conn.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            self.conn.rollback()
            raise
