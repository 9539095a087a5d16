"""Loaders writing migrated documents to the target store."""

from .base import DocumentStore, StoredDocument, encode_body
from .cosmos import CosmosDocumentStore
from .importer import DocumentImporter
from .memory import InMemoryDocumentStore

__all__ = [
    "DocumentStore",
    "StoredDocument",
    "encode_body",
    "CosmosDocumentStore",
    "DocumentImporter",
    "InMemoryDocumentStore",
]
