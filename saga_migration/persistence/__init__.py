"""Runtime saga persistence with dual lookup and per-key locking."""

from .adapter import (
    CreateStrategy,
    DualLookup,
    LookupStrategy,
    OptimisticCreate,
    PessimisticCreate,
    RecordOrigin,
    SagaKey,
    SagaPersister,
    SagaRecord,
    TargetOnlyLookup,
    build_persister,
)
from .locking import InProcessKeyLock, KeyLockManager, LeaseKeyLock

__all__ = [
    "CreateStrategy",
    "DualLookup",
    "LookupStrategy",
    "OptimisticCreate",
    "PessimisticCreate",
    "RecordOrigin",
    "SagaKey",
    "SagaPersister",
    "SagaRecord",
    "TargetOnlyLookup",
    "build_persister",
    "InProcessKeyLock",
    "KeyLockManager",
    "LeaseKeyLock",
]
