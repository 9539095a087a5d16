"""In-memory table store for tests and local dry runs."""

import threading
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .base import Continuation, TablePage, TableSource
from .odata import format_entity
from ..errors import NotFoundError
from ..models.record import PreciseTimestamp, TypedValue, utcnow


class InMemoryTableSource(TableSource):
    """
    Table store kept in a dictionary.

    Entities are stored in the same OData JSON shape the Table service
    returns and scanned in (PartitionKey, RowKey) order, with continuation
    tokens pointing at the next row, like the real service.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[Tuple[str, str], Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def create_table(self, table: str) -> None:
        with self._lock:
            self._tables.setdefault(table, {})

    def delete_table(self, table: str) -> None:
        with self._lock:
            self._tables.pop(table, None)

    def insert(
        self,
        table: str,
        partition_key: str,
        row_key: str,
        properties: Dict[str, TypedValue]
    ) -> Dict[str, Any]:
        """Insert or replace an entity and return its stored form."""
        entity = format_entity(
            partition_key,
            row_key,
            properties,
            etag=f'W/"datetime\'{uuid.uuid4()}\'"',
            timestamp=PreciseTimestamp(utcnow()),
        )
        with self._lock:
            self._tables.setdefault(table, {})[(partition_key, row_key)] = entity
        return entity

    def insert_raw(self, table: str, entity: Dict[str, Any]) -> None:
        with self._lock:
            key = (entity["PartitionKey"], entity["RowKey"])
            self._tables.setdefault(table, {})[key] = dict(entity)

    def _rows(self, table: str) -> List[Tuple[Tuple[str, str], Dict[str, Any]]]:
        with self._lock:
            if table not in self._tables:
                raise NotFoundError(f"Table {table} not found", status_code=404)
            return sorted(self._tables[table].items(), key=lambda item: item[0])

    def query_page(
        self,
        table: str,
        continuation: Optional[Continuation] = None,
        page_size: int = 1000
    ) -> TablePage:
        rows = self._rows(table)
        if continuation:
            start = (continuation.next_partition_key or "", continuation.next_row_key or "")
            rows = [row for row in rows if row[0] >= start]

        page = rows[:page_size]
        next_page = None
        if len(rows) > page_size:
            next_pk, next_rk = rows[page_size][0]
            next_page = Continuation(next_pk, next_rk)

        return TablePage(entities=[dict(entity) for _, entity in page], continuation=next_page)

    def find_by_property(self, table: str, name: str, value: str) -> List[Dict[str, Any]]:
        try:
            rows = self._rows(table)
        except NotFoundError:
            return []
        matches = []
        for _, entity in rows:
            if name not in entity:
                continue
            stored = str(entity[name])
            if entity.get(f"{name}@odata.type") == "Edm.Guid":
                stored, value_cmp = stored.lower(), value.lower()
            else:
                value_cmp = value
            if stored == value_cmp:
                matches.append(dict(entity))
        return matches
