"""In-memory document store for tests and dry runs."""

import json
import threading
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .base import DocumentStore, StoredDocument
from ..errors import ConflictError, NotFoundError, PreconditionFailedError, StoreError


class InMemoryDocumentStore(DocumentStore):
    """
    Thread-safe document store with Cosmos DB write semantics.

    Every successful write is appended to ``writes`` so tests can count
    how many writers actually landed a document.
    """

    def __init__(self):
        self._items: Dict[str, Dict[Tuple[str, str], Tuple[Dict[str, Any], str]]] = {}
        self._lock = threading.Lock()
        self.writes: List[Tuple[str, str, str]] = []  # (operation, container, id)

    def _parse(self, body: bytes) -> Dict[str, Any]:
        try:
            document = json.loads(body)
        except ValueError as e:
            raise StoreError(f"Document is not valid JSON: {e}", status_code=400) from e
        if not isinstance(document, dict) or not isinstance(document.get("id"), str):
            raise StoreError("Document must be an object with a string id", status_code=400)
        return document

    def _stored(self, partition_key: str, document: Dict[str, Any], etag: str) -> StoredDocument:
        body = dict(document)
        body["_etag"] = etag
        body["_ts"] = int(time.time())
        return StoredDocument(id=document["id"], partition_key=partition_key, body=body, etag=etag)

    def _write(self, operation: str, container: str, partition_key: str, document: Dict[str, Any]) -> StoredDocument:
        etag = f'"{uuid.uuid4()}"'
        self._items.setdefault(container, {})[(partition_key, document["id"])] = (document, etag)
        self.writes.append((operation, container, document["id"]))
        return self._stored(partition_key, document, etag)

    def read_item(self, container: str, item_id: str, partition_key: str) -> Optional[StoredDocument]:
        with self._lock:
            entry = self._items.get(container, {}).get((partition_key, item_id))
        if entry is None:
            return None
        document, etag = entry
        return self._stored(partition_key, dict(document), etag)

    def create_item(self, container: str, partition_key: str, body: bytes) -> StoredDocument:
        document = self._parse(body)
        with self._lock:
            if (partition_key, document["id"]) in self._items.get(container, {}):
                raise ConflictError(f"Document {document['id']} already exists", status_code=409)
            return self._write("create", container, partition_key, document)

    def upsert_item(self, container: str, partition_key: str, body: bytes) -> StoredDocument:
        document = self._parse(body)
        with self._lock:
            return self._write("upsert", container, partition_key, document)

    def replace_item(
        self,
        container: str,
        item_id: str,
        partition_key: str,
        body: bytes,
        if_match: Optional[str] = None
    ) -> StoredDocument:
        document = self._parse(body)
        with self._lock:
            entry = self._items.get(container, {}).get((partition_key, item_id))
            if entry is None:
                raise NotFoundError(f"Document {item_id} not found", status_code=404)
            if if_match is not None and entry[1] != if_match:
                raise PreconditionFailedError(f"Document {item_id} was modified", status_code=412)
            return self._write("replace", container, partition_key, document)

    def delete_item(
        self,
        container: str,
        item_id: str,
        partition_key: str,
        if_match: Optional[str] = None
    ) -> bool:
        with self._lock:
            items = self._items.get(container, {})
            entry = items.get((partition_key, item_id))
            if entry is None:
                return False
            if if_match is not None and entry[1] != if_match:
                raise PreconditionFailedError(f"Document {item_id} was modified", status_code=412)
            del items[(partition_key, item_id)]
            self.writes.append(("delete", container, item_id))
            return True

    def documents(self, container: str) -> Dict[str, Dict[str, Any]]:
        """Snapshot of a container keyed by document id."""
        with self._lock:
            return {item_id: dict(doc) for (_, item_id), (doc, _) in self._items.get(container, {}).items()}
