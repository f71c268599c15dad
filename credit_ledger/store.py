"""
Ledger Store contract and its in-memory implementation.

The engine only talks to a ``LedgerStore``. Keyed documents (one credit record
per account, referral claims) are versioned so mutations can be expressed as
optimistic read-modify-write; log collections are append-only.
"""

import copy
import logging
import threading
from typing import Any, Callable, Optional, Protocol

from .exceptions import StoreUnavailableError, TransactionConflictError

logger = logging.getLogger(__name__)

ACCOUNTS = "account_credits"
TRANSACTIONS = "credit_transactions"
REFERRAL_CLAIMS = "referral_claims"

DEFAULT_MAX_RETRIES = 25

UpdateFn = Callable[[Optional[dict]], dict]
Listener = Callable[[Optional[dict]], None]


class Subscription:
    """Handle returned by ``subscribe``; call ``unsubscribe`` to stop delivery."""

    def __init__(self, store: "InMemoryLedgerStore", collection: str, key: str, callback: Listener):
        self._store = store
        self.collection = collection
        self.key = key
        self.callback = callback
        self.active = True
        # sequence of the last commit handed to callback; older ones are dropped
        self.last_sequence = -1
        self._delivery_lock = threading.RLock()

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._store._remove_listener(self)


class LedgerStore(Protocol):
    def get(self, collection: str, key: str) -> Optional[dict]:  # pragma: no cover - Protocol
        ...

    def create(self, collection: str, key: str, value: dict) -> bool:  # pragma: no cover - Protocol
        """Store ``value`` only if ``key`` is absent. Returns False if it existed."""
        ...

    def atomic_update(self, collection: str, key: str, fn: UpdateFn) -> dict:  # pragma: no cover - Protocol
        """Apply ``fn`` to the current value without losing concurrent updates.

        ``fn`` receives None for a missing key and aborts the update by raising.
        """
        ...

    def delete(self, collection: str, key: str) -> bool:  # pragma: no cover - Protocol
        ...

    def append(self, collection: str, value: dict) -> None:  # pragma: no cover - Protocol
        ...

    def find_by_field(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> list[dict]:  # pragma: no cover - Protocol
        ...

    def list_all(self, collection: str) -> list[dict]:  # pragma: no cover - Protocol
        ...

    def subscribe(self, collection: str, key: str, callback: Listener) -> Subscription:  # pragma: no cover - Protocol
        ...


class InMemoryLedgerStore:
    def __init__(self, max_retries: int = DEFAULT_MAX_RETRIES):
        self.max_retries = max_retries
        self.available = True
        self._lock = threading.Lock()
        self._docs: dict[str, dict[str, tuple[int, dict]]] = {}
        self._logs: dict[str, list[dict]] = {}
        self._listeners: dict[tuple[str, str], list[Subscription]] = {}
        # bumped on every committed write or delete, never reset
        self._sequence = 0

    def set_available(self, available: bool) -> None:
        self.available = available

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError("Ledger store is unavailable")

    def get(self, collection: str, key: str) -> Optional[dict]:
        value, _ = self.get_versioned(collection, key)
        return value

    def get_versioned(self, collection: str, key: str) -> tuple[Optional[dict], int]:
        """Current value and version; version 0 means the key is absent."""
        self._check_available()
        with self._lock:
            entry = self._docs.get(collection, {}).get(key)
            if entry is None:
                return None, 0
            version, value = entry
            return copy.deepcopy(value), version

    def compare_and_swap(self, collection: str, key: str, expected_version: int, value: dict) -> bool:
        self._check_available()
        with self._lock:
            docs = self._docs.setdefault(collection, {})
            entry = docs.get(key)
            current_version = entry[0] if entry else 0
            if current_version != expected_version:
                return False
            docs[key] = (current_version + 1, copy.deepcopy(value))
            self._sequence += 1
            sequence = self._sequence
        self._notify(collection, key, value, sequence)
        return True

    def create(self, collection: str, key: str, value: dict) -> bool:
        return self.compare_and_swap(collection, key, 0, value)

    def atomic_update(self, collection: str, key: str, fn: UpdateFn) -> dict:
        for attempt in range(1, self.max_retries + 1):
            current, version = self.get_versioned(collection, key)
            updated = fn(current)
            if self.compare_and_swap(collection, key, version, updated):
                return copy.deepcopy(updated)
            logger.debug(
                "Version conflict on %s/%s (attempt %d), retrying", collection, key, attempt
            )
        raise TransactionConflictError(
            f"Gave up updating {collection}/{key} after {self.max_retries} conflicting attempts"
        )

    def delete(self, collection: str, key: str) -> bool:
        self._check_available()
        with self._lock:
            removed = self._docs.get(collection, {}).pop(key, None) is not None
            if removed:
                self._sequence += 1
            sequence = self._sequence
        if removed:
            self._notify(collection, key, None, sequence)
        return removed

    def append(self, collection: str, value: dict) -> None:
        self._check_available()
        with self._lock:
            self._logs.setdefault(collection, []).append(copy.deepcopy(value))

    def find_by_field(
        self, collection: str, field: str, value: Any, limit: Optional[int] = None
    ) -> list[dict]:
        matches = [doc for doc in self.list_all(collection) if doc.get(field) == value]
        return matches[:limit] if limit is not None else matches

    def list_all(self, collection: str) -> list[dict]:
        """Keyed documents followed by log entries, in insertion order."""
        self._check_available()
        with self._lock:
            docs = [value for _, value in self._docs.get(collection, {}).values()]
            logs = list(self._logs.get(collection, []))
            return copy.deepcopy(docs + logs)

    def subscribe(self, collection: str, key: str, callback: Listener) -> Subscription:
        """Register ``callback`` for committed changes to one key.

        The current value (None if absent) is delivered immediately. Deliveries
        reach ``callback`` one at a time in commit order; a change that commits
        while a newer one has already been delivered is skipped.
        """
        self._check_available()
        subscription = Subscription(self, collection, key, callback)
        with self._lock:
            self._listeners.setdefault((collection, key), []).append(subscription)
            entry = self._docs.get(collection, {}).get(key)
            current = copy.deepcopy(entry[1]) if entry else None
            sequence = self._sequence
        self._deliver(subscription, current, sequence)
        return subscription

    def _remove_listener(self, subscription: Subscription) -> None:
        with self._lock:
            listeners = self._listeners.get((subscription.collection, subscription.key), [])
            if subscription in listeners:
                listeners.remove(subscription)

    def _notify(self, collection: str, key: str, value: Optional[dict], sequence: int) -> None:
        with self._lock:
            listeners = list(self._listeners.get((collection, key), []))
        for subscription in listeners:
            self._deliver(subscription, copy.deepcopy(value), sequence)

    def _deliver(self, subscription: Subscription, value: Optional[dict], sequence: int) -> None:
        with subscription._delivery_lock:
            if not subscription.active:
                return
            if sequence <= subscription.last_sequence:
                logger.debug(
                    "Skipping stale delivery for %s/%s", subscription.collection, subscription.key
                )
                return
            subscription.last_sequence = sequence
            try:
                subscription.callback(value)
            except Exception:
                logger.exception(
                    "Subscriber callback failed for %s/%s", subscription.collection, subscription.key
                )
