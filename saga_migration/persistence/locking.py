"""Per business key locks for the pessimistic create path."""

import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from ..errors import ConflictError, LockTimeoutError, NotFoundError, PreconditionFailedError
from ..loaders.base import DocumentStore, encode_body

logger = logging.getLogger(__name__)


class KeyLockManager(ABC):
    """
    Mutual exclusion scoped to a single business key.

    Locks for different keys never wait on each other. Waiting is bounded
    and a timeout is raised to the caller, never retried here.
    """

    @abstractmethod
    def acquire(self, key: str, timeout: float) -> Any:
        """
        Acquire the lock for ``key`` and return a token for ``release``.

        Raises:
            LockTimeoutError: the lock was not acquired within ``timeout`` seconds
        """
        pass

    @abstractmethod
    def release(self, key: str, token: Any) -> None:
        """Release a lock acquired with ``acquire``."""
        pass

    @contextmanager
    def hold(self, key: str, timeout: float) -> Iterator[None]:
        """
        Hold the lock for the duration of a ``with`` block.

        A failed release is raised after a clean block. When the block itself
        raised, the release failure is logged and the block's error propagates.
        """
        token = self.acquire(key, timeout)
        try:
            yield
        except BaseException:
            try:
                self.release(key, token)
            except Exception as e:
                logger.error(f"Failed to release lock for {key}: {e}")
            raise
        self.release(key, token)


class _LockEntry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = threading.Lock()
        self.refs = 0


class InProcessKeyLock(KeyLockManager):
    """
    Per-key locks shared by the threads of one process.

    Entries are reference counted and dropped once nobody holds or waits
    for them, so the registry does not grow with the number of keys seen.
    """

    def __init__(self):
        self._entries: Dict[str, _LockEntry] = {}
        self._guard = threading.Lock()

    @property
    def active_keys(self) -> int:
        with self._guard:
            return len(self._entries)

    def acquire(self, key: str, timeout: float) -> _LockEntry:
        with self._guard:
            entry = self._entries.setdefault(key, _LockEntry())
            entry.refs += 1

        if not entry.lock.acquire(timeout=timeout):
            self._unref(key, entry)
            raise LockTimeoutError(key, timeout)
        return entry

    def release(self, key: str, token: _LockEntry) -> None:
        token.lock.release()
        self._unref(key, token)

    def _unref(self, key: str, entry: _LockEntry) -> None:
        with self._guard:
            entry.refs -= 1
            if entry.refs == 0 and self._entries.get(key) is entry:
                del self._entries[key]


class LeaseKeyLock(KeyLockManager):
    """
    Per-key locks shared by every process that uses the same document store.

    A lock is a lease document created with insert-if-absent semantics.
    Leases expire after ``lease_duration`` seconds so a crashed holder
    cannot block a key forever; an expired lease is taken over with an
    If-Match replace, and released with an If-Match delete.
    """

    LEASE_PREFIX = "lease-"

    def __init__(
        self,
        store: DocumentStore,
        container: str,
        lease_duration: float = 30.0,
        poll_interval: float = 0.05,
        owner: Optional[str] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize the lease lock manager.

        Args:
            store: Document store holding the lease documents
            container: Container for lease documents
            lease_duration: Seconds after which an unreleased lease may be taken over
            poll_interval: Seconds between attempts while the lease is held elsewhere
            owner: Name recorded on leases held by this instance
            clock: Wall clock used for lease expiry
        """
        self.store = store
        self.container = container
        self.lease_duration = lease_duration
        self.poll_interval = poll_interval
        self.owner = owner or f"saga-migration-{uuid.uuid4()}"
        self._clock = clock

    def lease_id(self, key: str) -> str:
        return f"{self.LEASE_PREFIX}{key}"

    def _lease_body(self, lease_id: str, key: str) -> bytes:
        return encode_body({
            "id": lease_id,
            "key": key,
            "owner": self.owner,
            "token": str(uuid.uuid4()),
            "expiresAt": self._clock() + self.lease_duration,
        })

    def acquire(self, key: str, timeout: float) -> Tuple[str, Optional[str]]:
        lease_id = self.lease_id(key)
        deadline = time.monotonic() + timeout

        while True:
            try:
                stored = self.store.create_item(self.container, lease_id, self._lease_body(lease_id, key))
                return lease_id, stored.etag
            except ConflictError:
                taken = self._take_over_expired(lease_id, key)
                if taken is not None:
                    return taken

            if time.monotonic() >= deadline:
                raise LockTimeoutError(key, timeout)
            time.sleep(self.poll_interval)

    def _take_over_expired(self, lease_id: str, key: str) -> Optional[Tuple[str, Optional[str]]]:
        current = self.store.read_item(self.container, lease_id, lease_id)
        if current is None or current.body.get("expiresAt", 0) > self._clock():
            return None

        try:
            stored = self.store.replace_item(
                self.container,
                lease_id,
                lease_id,
                self._lease_body(lease_id, key),
                if_match=current.etag,
            )
        except (PreconditionFailedError, NotFoundError):
            logger.debug(f"Lost the race for expired lease {lease_id}")
            return None

        logger.warning(f"Took over expired lease on {key} from {current.body.get('owner')}")
        return lease_id, stored.etag

    def release(self, key: str, token: Tuple[str, Optional[str]]) -> None:
        lease_id, etag = token
        try:
            self.store.delete_item(self.container, lease_id, lease_id, if_match=etag)
        except PreconditionFailedError:
            logger.warning(f"Lease on {key} expired and was taken over before release")
