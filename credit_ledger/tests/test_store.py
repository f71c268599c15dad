"""
Unit Tests for the in-memory Ledger Store
"""

import logging
import threading
import time

import pytest

from credit_ledger.exceptions import (
    InsufficientCreditsError,
    StoreUnavailableError,
    TransactionConflictError,
)
from credit_ledger.store import InMemoryLedgerStore


COLLECTION = "docs"
LOG = "log"


class TestKeyedDocuments:
    """Tests for versioned documents."""

    def test_create_if_absent(self):
        """Create succeeds once per key."""
        store = InMemoryLedgerStore()

        assert store.create(COLLECTION, "k", {"n": 1})
        assert not store.create(COLLECTION, "k", {"n": 2})
        assert store.get(COLLECTION, "k") == {"n": 1}

    def test_compare_and_swap_checks_version(self):
        """Stale versions are refused."""
        store = InMemoryLedgerStore()
        store.create(COLLECTION, "k", {"n": 1})
        _, version = store.get_versioned(COLLECTION, "k")

        assert store.compare_and_swap(COLLECTION, "k", version, {"n": 2})
        assert not store.compare_and_swap(COLLECTION, "k", version, {"n": 3})
        assert store.get(COLLECTION, "k") == {"n": 2}

    def test_returned_values_are_copies(self):
        """Callers cannot mutate stored state by reference."""
        store = InMemoryLedgerStore()
        store.create(COLLECTION, "k", {"n": 1})

        value = store.get(COLLECTION, "k")
        value["n"] = 99

        assert store.get(COLLECTION, "k") == {"n": 1}

    def test_atomic_update_applies_function(self):
        store = InMemoryLedgerStore()
        store.create(COLLECTION, "k", {"n": 1})

        updated = store.atomic_update(COLLECTION, "k", lambda cur: {"n": cur["n"] + 1})

        assert updated == {"n": 2}
        assert store.get(COLLECTION, "k") == {"n": 2}

    def test_atomic_update_abort_leaves_value(self):
        """Raising inside the update function aborts it."""
        store = InMemoryLedgerStore()
        store.create(COLLECTION, "k", {"n": 1})

        def refuse(current):
            raise InsufficientCreditsError(current["n"], 5)

        with pytest.raises(InsufficientCreditsError):
            store.atomic_update(COLLECTION, "k", refuse)
        assert store.get(COLLECTION, "k") == {"n": 1}

    def test_atomic_update_retries_then_gives_up(self):
        """Persistent conflicts end in TransactionConflictError."""
        store = InMemoryLedgerStore(max_retries=3)
        store.create(COLLECTION, "k", {"n": 0})
        calls = []

        def contended(current):
            calls.append(current["n"])
            # a competing writer commits between our read and our swap
            _, version = store.get_versioned(COLLECTION, "k")
            store.compare_and_swap(COLLECTION, "k", version, {"n": current["n"] + 100})
            return {"n": current["n"] + 1}

        with pytest.raises(TransactionConflictError):
            store.atomic_update(COLLECTION, "k", contended)
        assert len(calls) == 3

    def test_delete(self):
        store = InMemoryLedgerStore()
        store.create(COLLECTION, "k", {"n": 1})

        assert store.delete(COLLECTION, "k")
        assert not store.delete(COLLECTION, "k")
        assert store.create(COLLECTION, "k", {"n": 2})


class TestLogsAndQueries:
    """Tests for append-only collections and field queries."""

    def test_append_and_find(self):
        store = InMemoryLedgerStore()
        store.append(LOG, {"account_id": "a", "amount": 1})
        store.append(LOG, {"account_id": "b", "amount": 2})
        store.append(LOG, {"account_id": "a", "amount": 3})

        matches = store.find_by_field(LOG, "account_id", "a")

        assert [m["amount"] for m in matches] == [1, 3]
        assert store.find_by_field(LOG, "account_id", "a", limit=1) == [{"account_id": "a", "amount": 1}]
        assert len(store.list_all(LOG)) == 3

    def test_find_keyed_documents(self):
        store = InMemoryLedgerStore()
        store.create(COLLECTION, "a", {"code": "X"})
        store.create(COLLECTION, "b", {"code": "Y"})

        assert store.find_by_field(COLLECTION, "code", "Y") == [{"code": "Y"}]
        assert store.find_by_field(COLLECTION, "code", "Z") == []


class TestSubscriptions:
    """Tests for change subscriptions."""

    def test_subscribe_and_unsubscribe(self):
        store = InMemoryLedgerStore()
        seen = []

        subscription = store.subscribe(COLLECTION, "k", seen.append)
        store.create(COLLECTION, "k", {"n": 1})
        store.atomic_update(COLLECTION, "k", lambda cur: {"n": 2})
        store.create(COLLECTION, "other", {"n": 9})
        subscription.unsubscribe()
        store.atomic_update(COLLECTION, "k", lambda cur: {"n": 3})

        assert seen == [None, {"n": 1}, {"n": 2}]

    def test_failing_subscriber_is_logged(self, caplog):
        """Subscriber errors are logged and the write still commits."""
        store = InMemoryLedgerStore()
        store.create(COLLECTION, "k", {"n": 1})

        def broken(value):
            if value["n"] > 1:
                raise RuntimeError("boom")

        store.subscribe(COLLECTION, "k", broken)
        with caplog.at_level(logging.ERROR, logger="credit_ledger.store"):
            store.atomic_update(COLLECTION, "k", lambda cur: {"n": 2})

        assert store.get(COLLECTION, "k") == {"n": 2}
        assert "Subscriber callback failed" in caplog.text

    def test_slow_callback_keeps_commit_order(self):
        """A later commit waits for the earlier delivery to finish."""
        store = InMemoryLedgerStore()
        store.create(COLLECTION, "k", {"n": 1})
        seen = []
        in_callback = threading.Event()

        def slow(value):
            if value["n"] == 2:
                in_callback.set()
                time.sleep(0.3)
            seen.append(value["n"])

        store.subscribe(COLLECTION, "k", slow)
        writer = threading.Thread(target=store.atomic_update, args=(COLLECTION, "k", lambda cur: {"n": 2}))
        writer.start()
        assert in_callback.wait(timeout=5)
        store.atomic_update(COLLECTION, "k", lambda cur: {"n": 3})
        writer.join()

        assert seen == [1, 2, 3]

    def test_stale_delivery_is_dropped(self):
        """A change overtaken by a newer delivery never reaches the callback."""
        newer_delivered = threading.Event()

        class DelayedNotifyStore(InMemoryLedgerStore):
            def _notify(self, collection, key, value, sequence):
                if value is not None and value["n"] == 2:
                    newer_delivered.wait(timeout=5)
                super()._notify(collection, key, value, sequence)

        store = DelayedNotifyStore()
        store.create(COLLECTION, "k", {"n": 1})
        seen = []

        def record(value):
            seen.append(value["n"])
            if value["n"] == 3:
                newer_delivered.set()

        store.subscribe(COLLECTION, "k", record)
        writer = threading.Thread(target=store.atomic_update, args=(COLLECTION, "k", lambda cur: {"n": 2}))
        writer.start()
        while store.get(COLLECTION, "k")["n"] != 2:
            time.sleep(0.01)
        store.atomic_update(COLLECTION, "k", lambda cur: {"n": 3})
        writer.join()

        assert seen == [1, 3]
        assert store.get(COLLECTION, "k") == {"n": 3}


class TestAvailability:
    """Tests for simulated outages."""

    def test_unavailable_store_raises(self):
        store = InMemoryLedgerStore()
        store.set_available(False)

        with pytest.raises(StoreUnavailableError):
            store.get(COLLECTION, "k")
        with pytest.raises(StoreUnavailableError):
            store.append(LOG, {})
