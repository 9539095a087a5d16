"""Base interface for the target document store."""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


def encode_body(body: Dict[str, Any]) -> bytes:
    """Serialize a document body for the store."""
    return json.dumps(body, ensure_ascii=False, allow_nan=False).encode("utf-8")


@dataclass
class StoredDocument:
    """A document as returned by the target store."""
    id: str
    partition_key: str
    body: Dict[str, Any] = field(default_factory=dict)
    etag: Optional[str] = None


class DocumentStore(ABC):
    """
    Access to a partitioned document store.

    Writes take the raw document bytes plus an explicit partition key;
    the store assigns its own system properties (``_etag``, ``_ts``, ...).
    """

    @abstractmethod
    def read_item(self, container: str, item_id: str, partition_key: str) -> Optional[StoredDocument]:
        """
        Read a document, or None when it does not exist.

        Raises:
            StoreError: the store could not be reached or refused the read
        """
        pass

    @abstractmethod
    def create_item(self, container: str, partition_key: str, body: bytes) -> StoredDocument:
        """
        Insert a document that must not exist yet.

        Raises:
            ConflictError: a document with the same id exists
        """
        pass

    @abstractmethod
    def upsert_item(self, container: str, partition_key: str, body: bytes) -> StoredDocument:
        """Create or replace a document."""
        pass

    @abstractmethod
    def replace_item(
        self,
        container: str,
        item_id: str,
        partition_key: str,
        body: bytes,
        if_match: Optional[str] = None
    ) -> StoredDocument:
        """
        Replace an existing document.

        Raises:
            NotFoundError: the document does not exist
            PreconditionFailedError: ``if_match`` differs from the current ETag
        """
        pass

    @abstractmethod
    def delete_item(
        self,
        container: str,
        item_id: str,
        partition_key: str,
        if_match: Optional[str] = None
    ) -> bool:
        """
        Delete a document. Returns False when it did not exist.

        Raises:
            PreconditionFailedError: ``if_match`` differs from the current ETag
        """
        pass

    def validate_connection(self) -> bool:
        """Validate the connection to the target store."""
        return True

    def close(self) -> None:
        """Release network resources."""
