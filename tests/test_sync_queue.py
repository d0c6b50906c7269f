"""Tests for the offline sync queue manager."""

import asyncio

import pytest

from core.exceptions import OfflineSyncError
from services.offline_cache import FailedLog, FailedSyncRepository, SyncKind


def payload(record_id: str, **fields):
    return {"id": record_id, **fields}


class TestEnqueue:
    async def test_queue_length_reflects_enqueue_immediately(self, make_sync_manager):
        manager = make_sync_manager(online=True)

        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))

        status = manager.get_sync_status()
        assert status["queue_length"] == 1
        assert status["is_online"] is True

    async def test_online_enqueue_syncs_in_background(self, make_sync_manager, remote):
        manager = make_sync_manager(online=True)

        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        await manager.wait_idle()

        assert remote.applied == ["user-1"]
        assert manager.get_sync_status()["queue_length"] == 0

    async def test_payload_is_a_snapshot(self, make_sync_manager):
        manager = make_sync_manager(online=False)
        record = payload("user-1", name="Ada")

        item = manager.enqueue(SyncKind.UPDATE, "user", record)
        record["name"] = "Changed"

        assert item.payload["name"] == "Ada"
        assert item.id.startswith("sync_")


class TestSyncPass:
    async def test_short_circuits_return_zero_counts(self, make_sync_manager):
        offline = make_sync_manager(online=False)
        offline.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        assert await offline.sync() == {"success": 0, "failed": 0}
        assert offline.get_sync_status()["queue_length"] == 1

        empty = make_sync_manager(online=True)
        assert await empty.sync() == {"success": 0, "failed": 0}

    async def test_concurrent_second_sync_is_a_no_op(self, make_sync_manager, remote):
        manager = make_sync_manager(online=False)
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        remote.gate = asyncio.Event()

        # The online signal starts the first pass in the background
        manager.handle_online()
        await asyncio.sleep(0)
        assert manager.is_syncing

        assert await manager.sync() == {"success": 0, "failed": 0}

        remote.gate.set()
        await manager.wait_idle()
        assert remote.applied == ["user-1"]
        assert manager.is_syncing is False

    async def test_items_are_processed_in_chunks_of_batch_size(self, make_sync_manager, remote):
        manager = make_sync_manager(online=False, batch_size=3)
        for i in range(1, 6):
            manager.enqueue(SyncKind.CREATE, "job", payload(f"job-{i}"))

        manager.handle_online()
        await manager.wait_idle()

        assert remote.concurrency_at_start == [1, 2, 3, 1, 2]
        assert remote.applied == [f"job-{i}" for i in range(1, 6)]

    async def test_items_cleared_mid_pass_are_not_sent(self, make_sync_manager, remote):
        manager = make_sync_manager(online=False, batch_size=1)
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        manager.enqueue(SyncKind.CREATE, "user", payload("user-2"))
        remote.gate = asyncio.Event()
        manager.is_online = True

        pass_task = asyncio.create_task(manager.sync())
        while not remote.concurrency_at_start:
            await asyncio.sleep(0)
        await manager.clear_queue()
        remote.gate.set()

        assert await pass_task == {"success": 1, "failed": 0}
        assert remote.applied == ["user-1"]
        assert "user-2" not in remote.attempts
        assert manager.queue == []

    async def test_going_offline_preserves_queue(self, make_sync_manager):
        manager = make_sync_manager(online=True)
        manager.handle_offline()

        manager.enqueue(SyncKind.DELETE, "job", payload("job-1"))
        await manager.wait_idle()

        assert manager.get_sync_status()["queue_length"] == 1
        assert manager.is_online is False


class TestRetries:
    async def test_failing_max_retries_times_then_succeeding_stays_out_of_failed_log(
            self, make_sync_manager, remote):
        remote.failures = {"user-1": 3}
        manager = make_sync_manager(online=True, max_retries=3)

        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        await manager.wait_idle()

        assert remote.attempts["user-1"] == 4
        assert remote.applied == ["user-1"]
        status = manager.get_sync_status()
        assert status["queue_length"] == 0
        assert status["failed_items"] == 0

    async def test_failing_max_retries_plus_one_times_reaches_failed_log(
            self, make_sync_manager, remote):
        remote.failures = {"user-1": 4}
        manager = make_sync_manager(online=True, max_retries=3)

        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        await manager.wait_idle()

        assert remote.attempts["user-1"] == 4
        status = manager.get_sync_status()
        assert status["queue_length"] == 0
        assert status["failed_items"] == 1

        [failed] = await manager.get_failed_items()
        assert failed.record_id == "user-1"
        assert failed.retry_count == 4
        assert "scripted failure 4" in failed.last_error

    async def test_backoff_keeps_item_queued_but_gated(self, make_sync_manager, remote, clock):
        remote.failures = {"user-1": 1}
        manager = make_sync_manager(online=True, retry_delay_seconds=60)
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))

        # Only the first background pass; the retry timer sleeps for a minute
        await asyncio.gather(*manager._background)

        [item] = manager.queue
        assert item.retry_count == 1
        assert item.next_attempt_at == clock.now + 60
        assert manager.get_sync_status()["pending_retries"] == 1
        assert await manager.sync() == {"success": 0, "failed": 0}

        clock.advance(60)
        assert await manager.sync() == {"success": 1, "failed": 0}
        await manager.stop()

    async def test_retry_failed_items_requeues_and_syncs(self, make_sync_manager, remote):
        remote.failures = {"user-1": 1}
        manager = make_sync_manager(online=True, max_retries=0)
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        await manager.wait_idle()
        assert manager.get_sync_status()["failed_items"] == 1

        result = await manager.retry_failed_items()

        assert result == {"success": 1, "failed": 0}
        assert remote.applied == ["user-1"]
        assert manager.get_sync_status()["failed_items"] == 0
        assert await manager.get_failed_items() == []

    async def test_failed_log_is_durable(self, make_sync_manager, remote, database):
        remote.failures = {"user-1": 1}
        manager = make_sync_manager(online=True, max_retries=0)
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        await manager.wait_idle()

        reloaded = FailedLog(FailedSyncRepository(database))

        assert await reloaded.load() == 1
        [item] = await reloaded.items()
        assert item.record_id == "user-1"
        assert item.kind == SyncKind.CREATE

    async def test_failed_at_comes_from_injected_clock(self, make_sync_manager, remote,
                                                       failed_log, clock):
        remote.failures = {"user-1": 1}
        manager = make_sync_manager(online=False, max_retries=0)
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        clock.advance(30)
        manager.is_online = True

        await manager.sync()

        [record] = await failed_log.repository.get_all()
        assert record.failed_at == clock.now


class TestForceSync:
    async def test_force_sync_offline_raises_without_touching_queue(self, make_sync_manager):
        manager = make_sync_manager(online=False)
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        before = list(manager.queue)

        with pytest.raises(OfflineSyncError, match="Cannot sync while offline"):
            await manager.force_sync()

        assert manager.queue == before
        assert manager.queue[0].retry_count == 0

    async def test_force_sync_online_drains(self, make_sync_manager, remote):
        manager = make_sync_manager(online=False)
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        manager.is_online = True

        assert await manager.force_sync() == {"success": 1, "failed": 0}


class TestConnectivity:
    async def test_online_signal_triggers_sync(self, make_sync_manager, remote):
        manager = make_sync_manager(online=False)
        await manager.start()
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))

        manager.connectivity.go_online()
        await manager.wait_idle()

        assert remote.applied == ["user-1"]

    async def test_visible_signal_syncs_only_when_online(self, make_sync_manager, remote):
        manager = make_sync_manager(online=False)
        await manager.start()
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))

        manager.connectivity.become_visible()
        await manager.wait_idle()
        assert remote.applied == []

        manager.connectivity.go_online()
        manager.connectivity.become_visible()
        await manager.wait_idle()
        assert remote.applied == ["user-1"]

    async def test_stop_unsubscribes(self, make_sync_manager, remote):
        manager = make_sync_manager(online=False)
        await manager.start()
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        await manager.stop()

        manager.connectivity.go_online()
        await manager.wait_idle()

        assert remote.applied == []
        assert manager.is_online is False


class TestConflictPolicy:
    async def test_last_write_wins_drops_superseded_updates(self, make_sync_manager, remote, clock):
        manager = make_sync_manager(online=False)
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1", v=0))
        clock.advance(1)
        manager.enqueue(SyncKind.UPDATE, "user", payload("user-1", v=1))
        clock.advance(1)
        manager.enqueue(SyncKind.UPDATE, "user", payload("user-1", v=2))
        clock.advance(1)
        manager.enqueue(SyncKind.UPDATE, "user", payload("user-2", v=1))
        manager.is_online = True

        result = await manager.sync()

        assert result == {"success": 3, "failed": 0}
        assert remote.applied == ["user-1", "user-1", "user-2"]
        assert manager.queue == []

    async def test_client_wins_replays_everything(self, make_sync_manager, remote, clock):
        manager = make_sync_manager(online=False, conflict_resolution="client-wins")
        for version in range(3):
            clock.advance(1)
            manager.enqueue(SyncKind.UPDATE, "user", payload("user-1", v=version))
        manager.is_online = True

        assert await manager.sync() == {"success": 3, "failed": 0}


class TestClearQueue:
    async def test_clear_queue_drops_pending_and_failed(self, make_sync_manager, remote):
        remote.failures = {"user-1": 1}
        manager = make_sync_manager(online=True, max_retries=0)
        manager.enqueue(SyncKind.CREATE, "user", payload("user-1"))
        await manager.wait_idle()
        manager.handle_offline()
        manager.enqueue(SyncKind.CREATE, "user", payload("user-2"))

        await manager.clear_queue()

        status = manager.get_sync_status()
        assert status["queue_length"] == 0
        assert status["failed_items"] == 0
