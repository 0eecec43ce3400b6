"""
Document store for the ledger.

Records are plain dicts held per collection and keyed by primary key. All
mutations go through a UnitOfWork opened with `unit_of_work(*scopes)`: the
scopes (``user:<id>``, ``withdrawal:<id>``...) are locked for the duration,
writes are staged and only become visible on commit. An exception inside the
block discards everything staged, so a credit never lands without its
transaction row and reward record.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .exceptions import LedgerServiceError, StorageUnavailable

logger = logging.getLogger(__name__)

COLLECTIONS = (
    "users",
    "transactions",
    "reward_records",
    "daily_progress",
    "withdrawals",
    "missions",
    "mission_progress",
    "offer_completions",
)


def _matches(doc: dict, filters: dict) -> bool:
    return all(doc.get(field) == value for field, value in filters.items())


@contextmanager
def storage_errors(operation: str) -> Iterator[None]:
    """Re-raise backend failures as the retryable StorageUnavailable."""
    try:
        yield
    except LedgerServiceError:
        raise
    except Exception as e:
        logger.error("Storage %s failed: %s", operation, e)
        raise StorageUnavailable(f"Storage {operation} failed, try again") from e


class UnitOfWork:
    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage
        # None marks a staged delete
        self._staged: dict[tuple[str, str], Optional[dict]] = {}
        self._written: set[tuple[str, str]] = set()

    def get(self, collection: str, key: str) -> Optional[dict]:
        if (collection, key) in self._staged:
            return self._staged[(collection, key)]
        with storage_errors(f"read of {collection}/{key}"):
            doc = self._storage.get(collection, key)
        if doc is not None:
            # Later reads in this unit see our own modifications.
            self._staged[(collection, key)] = doc
        return doc

    def insert_if_absent(self, collection: str, key: str, doc: dict) -> tuple[dict, bool]:
        existing = self.get(collection, key)
        if existing is not None:
            return existing, False
        self.put(collection, key, doc)
        return doc, True

    def put(self, collection: str, key: str, doc: dict) -> None:
        self._staged[(collection, key)] = doc
        self._written.add((collection, key))

    def update(self, collection: str, key: str, **fields) -> dict:
        doc = self.get(collection, key)
        if doc is None:
            raise KeyError(f"{collection}/{key}")
        doc.update(fields)
        self._written.add((collection, key))
        return doc

    def delete(self, collection: str, key: str) -> None:
        self._staged[(collection, key)] = None
        self._written.add((collection, key))

    def query(self, collection: str, **filters) -> list[dict]:
        seen = {}
        with storage_errors(f"query of {collection}"):
            for doc_key, doc in self._storage.items(collection):
                seen[doc_key] = doc
        for (coll, doc_key), doc in self._staged.items():
            if coll == collection:
                seen[doc_key] = doc
        return [doc for doc in seen.values() if doc is not None and _matches(doc, filters)]

    def commit(self) -> None:
        writes = {k: self._staged[k] for k in self._written}
        if writes:
            with storage_errors("commit"):
                self._storage.write_many(writes)
        self._staged.clear()
        self._written.clear()


class InMemoryStorage:
    def __init__(self, lock_timeout: float = 10.0):
        self._data: dict[str, dict[str, dict]] = {name: {} for name in COLLECTIONS}
        self._scope_locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self.lock_timeout = lock_timeout

    # ---- reads ---------------------------------------------------------

    def get(self, collection: str, key: str) -> Optional[dict]:
        doc = self._data[collection].get(key)
        return copy.deepcopy(doc) if doc is not None else None

    def items(self, collection: str) -> list[tuple[str, dict]]:
        return [(k, copy.deepcopy(v)) for k, v in list(self._data[collection].items())]

    def query(self, collection: str, **filters) -> list[dict]:
        return [doc for _, doc in self.items(collection) if _matches(doc, filters)]

    # ---- writes --------------------------------------------------------

    def write_many(self, writes: dict[tuple[str, str], Optional[dict]]) -> None:
        copies = {k: copy.deepcopy(doc) for k, doc in writes.items()}
        for (collection, key), doc in copies.items():
            if doc is None:
                self._data[collection].pop(key, None)
            else:
                self._data[collection][key] = doc

    def _lock_for(self, scope: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._scope_locks.get(scope)
            if lock is None:
                lock = self._scope_locks[scope] = threading.Lock()
            return lock

    @contextmanager
    def unit_of_work(self, *scopes: str) -> Iterator[UnitOfWork]:
        # Sorted acquisition order keeps multi-scope units deadlock free.
        acquired = []
        try:
            for scope in sorted(set(scopes)):
                lock = self._lock_for(scope)
                if not lock.acquire(timeout=self.lock_timeout):
                    logger.warning("Timed out waiting for scope %s", scope)
                    raise StorageUnavailable(f"Could not lock {scope}, try again")
                acquired.append(lock)
            uow = UnitOfWork(self)
            yield uow
            uow.commit()
        finally:
            for lock in reversed(acquired):
                lock.release()
