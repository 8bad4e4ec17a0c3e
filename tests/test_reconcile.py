"""
Unit tests for reconciliation between the session table and the backend.
"""

import asyncio
import logging
import os
import sys
import uuid
from datetime import timedelta

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import stored_record
from sessionbox.modules.config import SessionConfig
from sessionbox.modules.session import SessionHandle, SessionStore
from sessionbox.modules.session.record import utcnow


def flags(store, token, *names):
    return store.table.tap(token, lambda record: tuple(getattr(record, n) for n in names))


# =============================================================================
# Write-through
# =============================================================================


class TestWriteThrough:
    @pytest.mark.asyncio
    async def test_dirty_storable_record_is_saved(self, persistent_store, fake_backend):
        token = persistent_store.mint_token()
        await SessionHandle(persistent_store, token).set("user-id", 42)

        stats = await persistent_store.reconcile()

        assert stats.saved == 1
        assert token in fake_backend.rows
        assert flags(persistent_store, token, "dirty", "persisted") == (False, True)

    @pytest.mark.asyncio
    async def test_clean_record_is_not_rewritten(self, persistent_store, fake_backend):
        token = persistent_store.mint_token()
        await persistent_store.reconcile()
        fake_backend.calls.clear()

        stats = await persistent_store.reconcile()

        assert stats.saved == 0
        assert "save" not in fake_backend.calls

    @pytest.mark.asyncio
    async def test_saved_payload_round_trips(self, persistent_store, fake_backend):
        token = persistent_store.mint_token()
        session = SessionHandle(persistent_store, token)
        await session.set("cart", ["apple"])
        await session.set_longterm(True)
        await persistent_store.reconcile()

        loaded = await fake_backend.load(token)

        assert loaded.data == {"cart": '["apple"]'}
        assert loaded.longterm is True
        assert loaded.storable is True

    @pytest.mark.asyncio
    async def test_save_failure_keeps_record_dirty(self, persistent_store, fake_backend, caplog):
        token = persistent_store.mint_token()
        fake_backend.fail.add("save")

        with caplog.at_level(logging.ERROR):
            stats = await persistent_store.reconcile()

        assert stats.failed >= 1
        assert flags(persistent_store, token, "dirty") == (True,)
        assert "Reconciliation of session" in caplog.text

        fake_backend.fail.clear()
        await persistent_store.reconcile()
        assert token in fake_backend.rows

    @pytest.mark.asyncio
    async def test_mutation_during_save_stays_dirty(self, persistent_store, fake_backend):
        token = persistent_store.mint_token()
        session = SessionHandle(persistent_store, token)

        async def mutate(record):
            await session.set("late", True)

        fake_backend.on_save = mutate
        await persistent_store.reconcile()

        assert "late" not in fake_backend.rows[token]
        assert flags(persistent_store, token, "dirty") == (True,)

        fake_backend.on_save = None
        await persistent_store.reconcile()
        assert "late" in fake_backend.rows[token]
        assert flags(persistent_store, token, "dirty") == (False,)

    @pytest.mark.asyncio
    async def test_cancelled_save_leaves_record_dirty(self, persistent_store, fake_backend):
        token = persistent_store.mint_token()
        blocker = asyncio.Event()
        started = asyncio.Event()

        async def hang(record):
            started.set()
            await blocker.wait()

        fake_backend.on_save = hang
        task = asyncio.create_task(persistent_store.reconcile_one(token))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert token not in fake_backend.rows
        assert flags(persistent_store, token, "dirty") == (True,)

    @pytest.mark.asyncio
    async def test_memory_only_store_never_touches_backend(self, memory_store):
        token = memory_store.mint_token()
        await SessionHandle(memory_store, token).set("user-id", 1)

        stats = await memory_store.reconcile()

        assert stats.saved == 0
        assert memory_store.table.contains(token)


# =============================================================================
# Storable Flag
# =============================================================================


class TestStorable:
    @pytest.mark.asyncio
    async def test_unstorable_record_is_never_written(self, persistent_store, fake_backend):
        token = persistent_store.mint_token()
        session = SessionHandle(persistent_store, token)
        await session.set_store(False)
        await session.set("user-id", 1)

        await persistent_store.reconcile()

        assert token not in fake_backend.rows
        assert "save" not in fake_backend.calls

    @pytest.mark.asyncio
    async def test_set_store_false_removes_stored_copy(self, persistent_store, fake_backend):
        token = persistent_store.mint_token()
        session = SessionHandle(persistent_store, token)
        await persistent_store.reconcile()
        assert token in fake_backend.rows

        await session.set_store(False)
        stats = await persistent_store.reconcile()

        assert stats.unstored == 1
        assert token not in fake_backend.rows
        assert flags(persistent_store, token, "persisted") == (False,)

    @pytest.mark.asyncio
    async def test_idle_unstorable_record_is_evicted_without_write(self, persistent_store, fake_backend):
        token = persistent_store.mint_token()

        def make_idle(record):
            record.storable = False
            record.accessed = utcnow() - timedelta(hours=2)

        persistent_store.table.tap(token, make_idle)

        stats = await persistent_store.reconcile()

        assert stats.evicted == 1
        assert not persistent_store.table.contains(token)
        assert "save" not in fake_backend.calls


# =============================================================================
# Memory Eviction and Expiry
# =============================================================================


class TestEviction:
    @pytest.mark.asyncio
    async def test_idle_clean_record_is_evicted_and_reloadable(self, persistent_store, fake_backend):
        token = persistent_store.mint_token()
        await SessionHandle(persistent_store, token).set("user-id", 5)
        await persistent_store.reconcile()

        persistent_store.table.tap(
            token, lambda record: setattr(record, "accessed", utcnow() - timedelta(hours=2))
        )
        stats = await persistent_store.reconcile()

        assert stats.evicted == 1
        assert not persistent_store.table.contains(token)

        assert await persistent_store.resolve(token) == token
        assert await SessionHandle(persistent_store, token).get("user-id", int) == 5

    @pytest.mark.asyncio
    async def test_referenced_record_is_not_evicted(self, persistent_store):
        token = persistent_store.mint_token()
        await persistent_store.reconcile()

        def in_use(record):
            record.accessed = utcnow() - timedelta(hours=2)
            record.handles = 1

        persistent_store.table.tap(token, in_use)
        stats = await persistent_store.reconcile()

        assert stats.evicted == 0
        assert persistent_store.table.contains(token)

    @pytest.mark.asyncio
    async def test_idle_records_stay_without_persistence(self, memory_store):
        token = memory_store.mint_token()
        memory_store.table.tap(
            token, lambda record: setattr(record, "accessed", utcnow() - timedelta(hours=2))
        )

        await memory_store.reconcile()

        assert memory_store.table.contains(token)

    @pytest.mark.asyncio
    async def test_expired_record_leaves_memory(self, memory_store):
        token = memory_store.mint_token()
        memory_store.table.tap(
            token, lambda record: setattr(record, "expires", utcnow() - timedelta(seconds=1))
        )

        stats = await memory_store.reconcile()

        assert stats.expired == 1
        assert not memory_store.table.contains(token)

    @pytest.mark.asyncio
    async def test_backend_expiry_purge_is_rate_limited(self, persistent_store, fake_backend):
        expired = stored_record(str(uuid.uuid4()))
        expired.expires = utcnow() - timedelta(minutes=1)
        fake_backend.put(expired)

        first = await persistent_store.reconcile()
        second = await persistent_store.reconcile()

        assert first.purged == 1
        assert second.purged == 0
        assert fake_backend.calls.count("delete_expired") == 1

    @pytest.mark.asyncio
    async def test_failed_backend_delete_keeps_destroyed_session_dead(self, persistent_store, fake_backend):
        token = persistent_store.mint_token()
        session = SessionHandle(persistent_store, token)
        await session.set("user-id", 42)
        await persistent_store.reconcile()
        assert token in fake_backend.rows

        await session.destroy()
        fake_backend.fail.add("delete")
        stats = await persistent_store.reconcile()

        assert stats.destroyed == 0
        assert stats.failed >= 1
        assert flags(persistent_store, token, "destroy") == (True,)
        assert await persistent_store.resolve(token) != token

        fake_backend.fail.clear()
        stats = await persistent_store.reconcile()

        assert stats.destroyed == 1
        assert token not in fake_backend.rows
        assert not persistent_store.table.contains(token)
        assert await persistent_store.resolve(token) != token

    @pytest.mark.asyncio
    async def test_destroy_without_persistence(self, memory_store):
        token = memory_store.mint_token()
        await SessionHandle(memory_store, token).destroy()

        stats = await memory_store.reconcile_one(token)

        assert stats.destroyed == 1
        assert not memory_store.table.contains(token)


# =============================================================================
# Background Task
# =============================================================================


class TestBackgroundReconciliation:
    @pytest.mark.asyncio
    async def test_periodic_pass_writes_through(self, fake_backend):
        store = SessionStore(
            SessionConfig(reconcile_interval=0.01, reconcile_on_release=False),
            backend=fake_backend,
        )
        token = store.mint_token()

        store.start()
        for _ in range(100):
            if token in fake_backend.rows:
                break
            await asyncio.sleep(0.01)
        await store.stop()

        assert token in fake_backend.rows
        assert store._task is None

    @pytest.mark.asyncio
    async def test_stop_runs_final_pass(self, fake_backend):
        store = SessionStore(
            SessionConfig(reconcile_interval=3600, reconcile_on_release=False),
            backend=fake_backend,
        )
        store.start()
        token = store.mint_token()

        await store.stop()

        assert token in fake_backend.rows

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, persistent_store, fake_backend):
        await persistent_store.stop()
        assert fake_backend.calls == []
