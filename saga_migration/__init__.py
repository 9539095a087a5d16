"""
Saga Migration

Tooling for moving saga state from the Azure Table saga persister to
Azure Cosmos DB during a one-time cutover.

Supports:
- Streaming extraction of saga rows from Azure Table Storage
- Lossless mapping of typed table properties into JSON documents
- Derived document ids shared by exporter, importer and runtime lookups
- Atomic per-record export files and idempotent bulk import
- Dual-store saga lookups during the migration window
- Optional pessimistic locking of saga creation per business key
"""

__version__ = "0.1.0"
