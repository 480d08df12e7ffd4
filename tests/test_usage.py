"""
Tests for the usage statistics store: counting, snapshots and persistence.
"""

import asyncio
import json
import threading

import pytest

from gateway.usage import UsageSnapshot, UsageStoreService


class TestRecordRequest:
    def test_counts_total_and_key(self, usage_store):
        usage_store.record_request("trivia")
        usage_store.record_request("trivia")
        usage_store.record_request(None)
        usage_store.record_request("")

        snapshot = usage_store.snapshot()
        assert snapshot.total_requests == 4
        assert dict(snapshot.usage_by_key) == {"trivia": 2}

    def test_concurrent_threads_lose_no_increments(self, usage_store):
        keys = ["trivia", "gemini-vision", None, "echo"]
        per_thread = 500

        def worker(key):
            for _ in range(per_thread):
                usage_store.record_request(key)

        threads = [threading.Thread(target=worker, args=(k,)) for k in keys for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        snapshot = usage_store.snapshot()
        assert snapshot.total_requests == len(threads) * per_thread
        assert sum(snapshot.usage_by_key.values()) == 12 * per_thread
        assert snapshot.usage_by_key["trivia"] == 4 * per_thread

    @pytest.mark.asyncio
    async def test_concurrent_tasks_lose_no_increments(self, usage_store):
        async def hit(key):
            await asyncio.sleep(0)
            usage_store.record_request(key)

        await asyncio.gather(*(hit("trivia" if i % 2 else "echo") for i in range(200)))

        snapshot = usage_store.snapshot()
        assert snapshot.total_requests == 200
        assert sum(snapshot.usage_by_key.values()) == 200


class TestSnapshot:
    def test_snapshot_is_a_frozen_copy(self, usage_store):
        usage_store.record_request("trivia")
        snapshot = usage_store.snapshot()
        usage_store.record_request("trivia")

        assert snapshot.usage_by_key["trivia"] == 1
        with pytest.raises(TypeError):
            snapshot.usage_by_key["trivia"] = 10

    def test_most_used_key(self, usage_store):
        assert usage_store.most_used_key() is None

        usage_store.record_request("echo")
        usage_store.record_request("trivia")
        usage_store.record_request("trivia")
        assert usage_store.most_used_key() == "trivia"

    def test_most_used_tie_goes_to_first_seen(self, usage_store):
        usage_store.record_request("echo")
        usage_store.record_request("trivia")
        usage_store.record_request("trivia")
        usage_store.record_request("echo")
        assert usage_store.most_used_key() == "echo"


class TestPersistence:
    def test_persist_writes_documented_layout(self, usage_store):
        usage_store.record_request("trivia")
        usage_store.record_request(None)

        assert usage_store.persist() is True
        data = json.loads(usage_store.path.read_text())
        assert data == {"totalRequests": 2, "usageCounts": {"trivia": 1}}

    def test_persist_then_restore_round_trip(self, usage_store, tmp_path):
        for key in ("trivia", "trivia", "echo", None):
            usage_store.record_request(key)
        before = usage_store.snapshot()
        usage_store.persist()

        restored_store = UsageStoreService(tmp_path / "db.json")
        restored = restored_store.restore()

        assert restored == before
        assert restored_store.snapshot() == before

    def test_persist_leaves_no_temp_files(self, usage_store, tmp_path):
        usage_store.record_request("trivia")
        usage_store.persist()
        usage_store.persist()
        assert sorted(p.name for p in tmp_path.iterdir()) == ["db.json"]

    def test_restore_missing_file_starts_at_zero(self, usage_store):
        snapshot = usage_store.restore()
        assert snapshot == UsageSnapshot()
        assert usage_store.snapshot().total_requests == 0

    @pytest.mark.parametrize(
        "content",
        [
            "not valid json}",
            "[1, 2, 3]",
            '{"totalRequests": "many", "usageCounts": {}}',
            '{"totalRequests": 3, "usageCounts": {"trivia": -1}}',
            '{"totalRequests": 3, "usageCounts": []}',
        ],
    )
    def test_restore_corrupt_file_starts_at_zero(self, usage_store, content):
        usage_store.path.write_text(content)

        snapshot = usage_store.restore()

        assert snapshot.total_requests == 0
        assert dict(snapshot.usage_by_key) == {}

    def test_restore_replaces_in_memory_counters(self, usage_store):
        usage_store.path.write_text('{"totalRequests": 7, "usageCounts": {"trivia": 5}}')
        usage_store.record_request("echo")

        usage_store.restore()

        assert usage_store.snapshot().total_requests == 7
        assert dict(usage_store.snapshot().usage_by_key) == {"trivia": 5}

    def test_persist_failure_is_not_fatal(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("")
        store = UsageStoreService(blocker / "db.json")
        store.record_request("trivia")

        assert store.persist() is False
        assert store.snapshot().total_requests == 1


class TestBackgroundFlush:
    @pytest.mark.asyncio
    async def test_periodic_flush_and_final_flush(self, usage_store):
        usage_store.record_request("trivia")
        usage_store.start(interval=0.01)

        for _ in range(100):
            if usage_store.path.exists():
                break
            await asyncio.sleep(0.01)
        assert usage_store.path.exists()

        usage_store.record_request("trivia")
        assert await usage_store.stop() is True

        data = json.loads(usage_store.path.read_text())
        assert data["usageCounts"]["trivia"] == 2

    @pytest.mark.asyncio
    async def test_stop_without_start_still_flushes(self, usage_store):
        usage_store.record_request("echo")
        assert await usage_store.stop() is True
        assert json.loads(usage_store.path.read_text())["totalRequests"] == 1
