"""PostgreSQL access to previously assigned sequential ids."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Mapping, Tuple

from psycopg2 import sql
from psycopg2.extensions import connection as PgConnection

from ..fees.repository import savepoint
from .models import SequenceScope


class PostgresSequenceStore:
    """Reads sequential ids straight from the numbered tables.

    ``tables`` maps a scope entity to the ``(table, owner_column)`` holding
    its records. The store works on a caller-owned connection: the advisory
    lock taken on that connection stays held until the caller commits the
    insert that carries the new id.
    """

    def __init__(
        self,
        conn: PgConnection,
        *,
        tables: Mapping[str, Tuple[str, str]],
        column: str = "sequential_id",
    ) -> None:
        self._conn = conn
        self._tables = dict(tables)
        self._column = column

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with savepoint(self._conn, "sequential_id"):
            yield

    def _table_for(self, scope: SequenceScope) -> Tuple[sql.Identifier, sql.Identifier]:
        try:
            table, owner_column = self._tables[scope.entity]
        except KeyError as exc:
            raise LookupError(f"No sequenced table registered for {scope.entity!r}") from exc
        return sql.Identifier(table), sql.Identifier(owner_column)

    def max_sequential_id(self, scope: SequenceScope) -> int:
        table, owner_column = self._table_for(scope)
        query = sql.SQL("SELECT COALESCE(MAX({column}), 0) FROM {table} WHERE {owner} = %s").format(
            column=sql.Identifier(self._column),
            table=table,
            owner=owner_column,
        )
        with self._conn.cursor() as cursor:
            cursor.execute(query, (scope.owner_id,))
            row = cursor.fetchone()
        return int(row[0]) if row else 0

    def exists(self, scope: SequenceScope, value: int) -> bool:
        table, owner_column = self._table_for(scope)
        query = sql.SQL("SELECT 1 FROM {table} WHERE {owner} = %s AND {column} = %s LIMIT 1").format(
            column=sql.Identifier(self._column),
            table=table,
            owner=owner_column,
        )
        with self._conn.cursor() as cursor:
            cursor.execute(query, (scope.owner_id, value))
            return cursor.fetchone() is not None

    def record(self, scope: SequenceScope, value: int) -> None:
        # The insert that follows in the caller's transaction claims the value.
        return None


__all__ = ["PostgresSequenceStore"]
