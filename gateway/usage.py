"""
Usage statistics store

In-memory request counters backed by a JSON snapshot file:

    {"totalRequests": 12, "usageCounts": {"trivia": 9, "gemini-vision": 3}}

The file is rewritten wholesale on every flush (temp file + rename) and read
back once at startup.
"""

import asyncio
import json
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

import structlog

from gateway.errors import PersistenceError

logger = structlog.get_logger()

DEFAULT_FLUSH_INTERVAL = 10.0


@dataclass(frozen=True)
class UsageSnapshot:
    """Immutable copy of the counters at one point in time"""

    total_requests: int = 0
    usage_by_key: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))

    def to_dict(self) -> Dict[str, Any]:
        """Layout of the durable snapshot file"""
        return {
            "totalRequests": self.total_requests,
            "usageCounts": dict(self.usage_by_key),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "UsageSnapshot":
        if not isinstance(data, dict):
            raise ValueError("snapshot must be a JSON object")

        total = data.get("totalRequests", 0)
        counts = data.get("usageCounts", {})
        if not _is_count(total):
            raise ValueError(f"invalid totalRequests: {total!r}")
        if not isinstance(counts, dict):
            raise ValueError("usageCounts must be an object")
        for key, count in counts.items():
            if not _is_count(count):
                raise ValueError(f"invalid count for {key!r}: {count!r}")

        return cls(total_requests=total, usage_by_key=MappingProxyType(dict(counts)))


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


class UsageStoreService:
    """
    Request counters shared by every in-flight request.

    All counter access goes through ``_lock`` so increments from the event
    loop and from threadpool handlers never interleave. ``_flush_lock`` keeps
    the periodic flush and the shutdown flush from writing at the same time.
    """

    def __init__(self, path: Union[str, Path]) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._total_requests = 0
        self._usage: Dict[str, int] = {}
        self._flush_task: Optional[asyncio.Task] = None

    def record_request(self, key: Optional[str] = None) -> None:
        """Count one request, attributing it to ``key`` when one is given."""
        with self._lock:
            self._total_requests += 1
            if key:
                self._usage[key] = self._usage.get(key, 0) + 1

    def snapshot(self) -> UsageSnapshot:
        with self._lock:
            return UsageSnapshot(
                total_requests=self._total_requests,
                usage_by_key=MappingProxyType(dict(self._usage)),
            )

    def most_used_key(self) -> Optional[str]:
        """Key with the highest count; the first-seen key wins a tie."""
        return most_used_key(self.snapshot())

    def _load(self, snapshot: UsageSnapshot) -> None:
        with self._lock:
            self._total_requests = snapshot.total_requests
            self._usage = dict(snapshot.usage_by_key)

    def restore(self) -> UsageSnapshot:
        """
        Load counters from the snapshot file.

        A missing file starts from zero. An unreadable or corrupt file is
        logged and also starts from zero.
        """
        try:
            snapshot = self._read()
        except PersistenceError as e:
            logger.error("Usage snapshot unreadable, starting from zero", path=str(self.path), error=str(e))
            snapshot = UsageSnapshot()

        self._load(snapshot)
        logger.info(
            "Usage statistics restored",
            path=str(self.path),
            total_requests=snapshot.total_requests,
            keys=len(snapshot.usage_by_key),
        )
        return snapshot

    def _read(self) -> UsageSnapshot:
        if not self.path.exists():
            return UsageSnapshot()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return UsageSnapshot.from_dict(data)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to read {self.path}: {e}") from e

    def persist(self) -> bool:
        """
        Write the current counters to the snapshot file.

        Failures are logged and reported through the return value; the
        in-memory counters stay authoritative until the next successful flush.
        """
        with self._flush_lock:
            snapshot = self.snapshot()
            try:
                self._write(snapshot)
            except PersistenceError as e:
                logger.error("Failed to save usage statistics", path=str(self.path), error=str(e))
                return False

        logger.debug("Usage statistics saved", path=str(self.path), total_requests=snapshot.total_requests)
        return True

    def _write(self, snapshot: UsageSnapshot) -> None:
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(snapshot.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except OSError as e:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise PersistenceError(f"Failed to write {self.path}: {e}") from e

    async def _flush_periodically(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            # Run the file write off the event loop
            await asyncio.to_thread(self.persist)

    def start(self, interval: float = DEFAULT_FLUSH_INTERVAL) -> None:
        """Start the background flush loop on the running event loop."""
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._flush_task = asyncio.create_task(self._flush_periodically(interval))
        logger.info("Usage statistics flush started", interval=interval, path=str(self.path))

    async def stop(self) -> bool:
        """Stop the background flush loop and write a final snapshot."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
            self._flush_task = None
        return await asyncio.to_thread(self.persist)


def most_used_key(snapshot: UsageSnapshot) -> Optional[str]:
    best_key = None
    best_count = 0
    for key, count in snapshot.usage_by_key.items():
        if count > best_count:
            best_key, best_count = key, count
    return best_key
