"""
Saga persistence for the live application during the migration window.

A single ``SagaPersister`` interface is assembled once at configuration
time from two independent choices:

- where lookups go: the target store only, or the target store first and
  the legacy table store on a miss
- how new sagas are created: an unguarded upsert, or a create under a lock
  scoped to the saga's business key
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import requests

from .locking import InProcessKeyLock, KeyLockManager, LeaseKeyLock
from ..errors import (
    ConfigurationError,
    ConflictError,
    NotFoundError,
    PreconditionFailedError,
    SagaConcurrencyError,
    SagaLookupError,
    StoreError,
)
from ..extractors.base import TableSource
from ..extractors.odata import parse_entity
from ..loaders.base import DocumentStore, encode_body
from ..models.migration import LockingMode, PersistenceOptions, TargetConfig
from ..models.record import TypedValue
from ..services.identity import derive, key_value_to_string
from ..services.type_mapper import (
    METADATA_PROPERTY,
    SCHEMA_VERSION,
    TypeMapper,
    document_body,
    document_state,
)

logger = logging.getLogger(__name__)


class RecordOrigin(str, Enum):
    """Store a saga record was read from."""
    TARGET = "target"
    SOURCE = "source"


@dataclass(frozen=True)
class SagaKey:
    """Business key of a saga: its type and the value of its correlation property."""
    type_full_name: str
    key_property: str
    value: str

    @classmethod
    def from_typed(cls, type_full_name: str, key_property: str, value: TypedValue) -> "SagaKey":
        return cls(type_full_name, key_property, key_value_to_string(value))

    @property
    def document_id(self) -> str:
        """Derived id, also used as the partition key."""
        return derive(self.type_full_name, self.key_property, self.value)

    @property
    def type_name(self) -> str:
        """Short type name; the legacy persister names tables after it."""
        return self.type_full_name.replace("+", ".").rsplit(".", 1)[-1]


@dataclass
class SagaRecord:
    """Saga state as seen by the application."""
    key: SagaKey
    state: Dict[str, Any] = field(default_factory=dict)
    origin: RecordOrigin = RecordOrigin.TARGET
    etag: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    # False when a create found the saga already present and returned it
    created: bool = False

    @property
    def id(self) -> str:
        return self.key.document_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "type_full_name": self.key.type_full_name,
            "key_property": self.key.key_property,
            "key_value": self.key.value,
            "origin": self.origin.value,
            "etag": self.etag,
            "state": self.state,
        }


class LookupStrategy(ABC):
    """Resolves a business key to a saga record."""

    name = "base"

    @abstractmethod
    def find(self, persister: "SagaPersister", key: SagaKey) -> Optional[SagaRecord]:
        pass


class TargetOnlyLookup(LookupStrategy):
    """Migration disabled: the target store is the only store."""

    name = "target_only"

    def find(self, persister: "SagaPersister", key: SagaKey) -> Optional[SagaRecord]:
        return persister.read_target(key)


class DualLookup(LookupStrategy):
    """
    Migration enabled: query the target store, then the legacy table store.

    The source is only ever read. When both stores hold the key the target
    copy wins and the source is not consulted; contents are never merged.
    """

    name = "dual"

    def __init__(
        self,
        source: TableSource,
        mapper: Optional[TypeMapper] = None,
        tables: Optional[Dict[str, str]] = None,
        index_partition_prefix: Optional[str] = "Index_"
    ):
        """
        Initialize the dual lookup.

        Args:
            source: Legacy table store
            mapper: Mapper turning legacy rows into document state
            tables: type full name -> table, when a table is not named after the type
            index_partition_prefix: Partition key prefix of secondary index rows
        """
        self.source = source
        self.mapper = mapper or TypeMapper()
        self.tables = dict(tables or {})
        self.index_partition_prefix = index_partition_prefix

    def table_for(self, key: SagaKey) -> str:
        return self.tables.get(key.type_full_name, key.type_name)

    def find(self, persister: "SagaPersister", key: SagaKey) -> Optional[SagaRecord]:
        record = persister.read_target(key)
        if record is not None:
            logger.debug(f"Saga {record.id} resolved from the target store; source not consulted")
            return record
        return self.read_source(key)

    def read_source(self, key: SagaKey) -> Optional[SagaRecord]:
        table = self.table_for(key)
        try:
            entities = self.source.find_by_property(table, key.key_property, key.value)
        except (StoreError, requests.RequestException) as e:
            raise SagaLookupError(f"Table store unreachable while resolving {key.value} in {table}: {e}") from e

        rows = [
            parse_entity(entity, table)
            for entity in entities
            if not (self.index_partition_prefix
                    and str(entity.get("PartitionKey", "")).startswith(self.index_partition_prefix))
        ]
        if not rows:
            return None
        if len(rows) > 1:
            refs = ", ".join(row.source_ref for row in rows)
            raise SagaLookupError(f"{key.key_property}={key.value} matches several rows in {table}: {refs}")

        document = self.mapper.to_document(rows[0], key.document_id, key.type_full_name, key.key_property)
        if document.errors:
            raise document.errors[0]

        logger.info(f"Saga {key.document_id} found in legacy table {table}, not migrated yet")
        return SagaRecord(
            key=key,
            state=document_state(document.body, self.mapper.partition_key_property),
            origin=RecordOrigin.SOURCE,
            etag=None,
            metadata=document.body[METADATA_PROPERTY],
        )


class CreateStrategy(ABC):
    """Writes a saga that is not yet present in the target store."""

    name = "base"

    @abstractmethod
    def create(
        self,
        persister: "SagaPersister",
        key: SagaKey,
        state: Dict[str, Any],
        metadata: Dict[str, Any]
    ) -> SagaRecord:
        pass


class OptimisticCreate(CreateStrategy):
    """
    Unguarded create-or-replace.

    Concurrent creates for the same key all succeed and the last write
    wins, so two writers can each believe they created the saga.
    """

    name = "optimistic"

    def create(
        self,
        persister: "SagaPersister",
        key: SagaKey,
        state: Dict[str, Any],
        metadata: Dict[str, Any]
    ) -> SagaRecord:
        return persister.write_new(key, state, metadata, upsert=True)


class PessimisticCreate(CreateStrategy):
    """Create under a per-key lock after re-checking the target store."""

    name = "pessimistic"

    def __init__(self, locks: KeyLockManager, timeout: float = 10.0):
        self.locks = locks
        self.timeout = timeout

    def create(
        self,
        persister: "SagaPersister",
        key: SagaKey,
        state: Dict[str, Any],
        metadata: Dict[str, Any]
    ) -> SagaRecord:
        with self.locks.hold(key.document_id, self.timeout):
            existing = persister.read_target(key)
            if existing is not None:
                logger.debug(f"Saga {existing.id} was created concurrently; returning the stored copy")
                return existing
            return persister.write_new(key, state, metadata, upsert=False)


class SagaPersister:
    """
    Find, create, save and complete sagas by business key.

    Usage:
        persister = build_persister(options, store, target, source=table_source)
        record = persister.find_by_key(key) or persister.create(key, {"MyId": "..."})
        record.state["Status"] = "Completed"
        persister.save(record)
    """

    def __init__(
        self,
        store: DocumentStore,
        target: TargetConfig,
        lookup: Optional[LookupStrategy] = None,
        creator: Optional[CreateStrategy] = None
    ):
        """
        Initialize the persister.

        Args:
            store: Target document store
            target: Container routing and partition key property
            lookup: Lookup strategy, target only by default
            creator: Create strategy, optimistic by default
        """
        self.store = store
        self.target = target
        self.lookup = lookup or TargetOnlyLookup()
        self.creator = creator or OptimisticCreate()

    @property
    def variant(self) -> str:
        return f"{self.lookup.name}+{self.creator.name}"

    def container_for(self, key: SagaKey) -> str:
        return self.target.container_for(key.type_name)

    def find_by_key(self, key: SagaKey) -> Optional[SagaRecord]:
        """
        Resolve a saga, or None when no store holds it.

        Raises:
            SagaLookupError: a store could not be queried
        """
        return self.lookup.find(self, key)

    def create(self, key: SagaKey, initial_state: Dict[str, Any]) -> SagaRecord:
        """
        Create a saga in the target store.

        Raises:
            LockTimeoutError: the per-key lock could not be acquired in time
        """
        return self.creator.create(self, key, dict(initial_state), self._new_metadata(key))

    def save(self, record: SagaRecord) -> SagaRecord:
        """
        Persist changes to a saga.

        A record read from the legacy table is written to the target store
        as a new saga; the table row is left untouched.

        Raises:
            SagaConcurrencyError: the saga changed since it was read
        """
        if record.origin == RecordOrigin.SOURCE:
            saved = self.creator.create(self, record.key, dict(record.state), dict(record.metadata))
            if not saved.created:
                raise SagaConcurrencyError(f"Saga {record.id} was created in the target store meanwhile")
            record.origin = RecordOrigin.TARGET
            record.etag = saved.etag
            record.created = True
            return record

        body = encode_body(self._body(record.key, record.state, record.metadata))
        try:
            stored = self.store.replace_item(
                self.container_for(record.key), record.id, record.id, body, if_match=record.etag
            )
        except (PreconditionFailedError, NotFoundError) as e:
            raise SagaConcurrencyError(f"Saga {record.id} changed since it was read: {e}") from e

        record.etag = stored.etag
        return record

    def complete(self, record: SagaRecord) -> None:
        """
        Remove a finished saga.

        Raises:
            SagaConcurrencyError: the saga changed since it was read
        """
        if record.origin == RecordOrigin.SOURCE:
            logger.debug(f"Saga {record.id} completed before migration; the legacy row is left as is")
            return

        try:
            self.store.delete_item(self.container_for(record.key), record.id, record.id, if_match=record.etag)
        except PreconditionFailedError as e:
            raise SagaConcurrencyError(f"Saga {record.id} changed since it was read: {e}") from e

    def read_target(self, key: SagaKey) -> Optional[SagaRecord]:
        document_id = key.document_id
        try:
            stored = self.store.read_item(self.container_for(key), document_id, document_id)
        except StoreError as e:
            raise SagaLookupError(f"Document store unreachable while resolving {document_id}: {e}") from e

        if stored is None:
            return None
        return SagaRecord(
            key=key,
            state=document_state(stored.body, self.target.partition_key_property),
            origin=RecordOrigin.TARGET,
            etag=stored.etag,
            metadata=stored.body.get(METADATA_PROPERTY, {}),
        )

    def write_new(
        self,
        key: SagaKey,
        state: Dict[str, Any],
        metadata: Dict[str, Any],
        upsert: bool
    ) -> SagaRecord:
        document_id = key.document_id
        container = self.container_for(key)
        body = encode_body(self._body(key, state, metadata))

        try:
            if upsert:
                stored = self.store.upsert_item(container, document_id, body)
            else:
                stored = self.store.create_item(container, document_id, body)
        except ConflictError as e:
            raise SagaConcurrencyError(f"Saga {document_id} already exists: {e}") from e

        logger.debug(f"Created saga {document_id} in {container}")
        return SagaRecord(
            key=key,
            state=state,
            origin=RecordOrigin.TARGET,
            etag=stored.etag,
            metadata=metadata,
            created=True,
        )

    def _body(self, key: SagaKey, state: Dict[str, Any], metadata: Dict[str, Any]) -> Dict[str, Any]:
        reserved = {"id", self.target.partition_key_property, METADATA_PROPERTY} & set(state)
        if reserved:
            raise ValueError(f"Saga state must not contain {sorted(reserved)}")
        return document_body(key.document_id, state, metadata, self.target.partition_key_property)

    def _new_metadata(self, key: SagaKey) -> Dict[str, Any]:
        return {
            "SchemaVersion": SCHEMA_VERSION,
            "TypeFullName": key.type_full_name,
            "KeyProperty": key.key_property,
        }


def build_persister(
    options: PersistenceOptions,
    store: DocumentStore,
    target: TargetConfig,
    source: Optional[TableSource] = None,
    mapper: Optional[TypeMapper] = None,
    locks: Optional[KeyLockManager] = None,
    tables: Optional[Dict[str, str]] = None
) -> SagaPersister:
    """
    Assemble the persister variant selected by ``options``.

    Raises:
        ConfigurationError: migration mode without a table store, or an unknown lock backend
    """
    if options.migration_mode:
        if source is None:
            raise ConfigurationError("Migration mode needs the legacy table store")
        lookup: LookupStrategy = DualLookup(
            source,
            mapper or TypeMapper(partition_key_property=target.partition_key_property),
            tables=tables,
        )
    else:
        lookup = TargetOnlyLookup()

    if options.locking == LockingMode.PESSIMISTIC:
        if locks is None:
            locks = _build_locks(options, store, target)
        creator: CreateStrategy = PessimisticCreate(locks, options.lock_timeout)
    else:
        creator = OptimisticCreate()

    persister = SagaPersister(store, target, lookup, creator)
    logger.info(f"Saga persistence configured as {persister.variant}")
    return persister


def _build_locks(options: PersistenceOptions, store: DocumentStore, target: TargetConfig) -> KeyLockManager:
    if options.lock_backend == "in_process":
        return InProcessKeyLock()
    if options.lock_backend == "lease":
        container = options.lease_container or target.container
        if not container:
            raise ConfigurationError("Lease locking needs lease_container or a default container")
        return LeaseKeyLock(
            store,
            container,
            lease_duration=options.lease_duration,
            poll_interval=options.lock_poll_interval,
        )
    raise ConfigurationError(f"Unknown lock backend: {options.lock_backend}")
