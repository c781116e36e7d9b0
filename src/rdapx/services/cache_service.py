"""
TTL cache for RDAP responses with in-flight request coalescing.

Records live in memory and, when a directory is configured, on disk as one
JSON file per key. The directory may be deleted at any time; missing or
unreadable files are treated as cache misses.
"""

import base64
import hashlib
import json
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import anyio
import structlog

from ..config import Config

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CacheRecord:
    """A cached response. Negative records carry error_kind and a detail payload."""

    key: str
    payload: bytes
    fetched_at: float
    ttl: float
    error_kind: Optional[str] = None
    url: Optional[str] = None
    hops: int = 0

    @property
    def expires_at(self) -> float:
        return self.fetched_at + self.ttl

    def is_valid(self, now: float) -> bool:
        return now < self.expires_at

    def to_json(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "fetched_at": self.fetched_at,
            "ttl": self.ttl,
            "error_kind": self.error_kind,
            "url": self.url,
            "hops": self.hops,
        }

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "CacheRecord":
        return cls(
            key=data["key"],
            payload=base64.b64decode(data["payload"]),
            fetched_at=float(data["fetched_at"]),
            ttl=float(data["ttl"]),
            error_kind=data.get("error_kind"),
            url=data.get("url"),
            hops=int(data.get("hops", 0)),
        )


class _Flight:
    """State shared between the leader and waiters of one in-flight call."""

    def __init__(self) -> None:
        self.done = anyio.Event()
        self.result: Any = None
        self.error: Optional[Exception] = None
        self.abandoned = False
        self.waiters = 0


class TTLCache:
    """Time-bounded cache with a single in-flight fetch per key."""

    def __init__(
        self,
        directory: Optional[Path] = None,
        max_size: int = 10000,
        clock: Callable[[], float] = time.time,
    ):
        self.directory = Path(directory) if directory is not None else None
        self.max_size = max_size
        self._clock = clock
        self._memory: dict[str, CacheRecord] = {}
        self._inflight: dict[str, _Flight] = {}

        self.hits = 0
        self.misses = 0
        self.coalesced = 0
        self.stores = 0

    @classmethod
    def from_config(cls, config: Config) -> "TTLCache":
        return cls(directory=config.cache_directory, max_size=config.cache_max_size)

    def _path_for(self, key: str) -> Optional[anyio.Path]:
        if self.directory is None:
            return None
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return anyio.Path(self.directory) / f"{digest}.json"

    async def get(self, key: str) -> Optional[CacheRecord]:
        """Return a valid record for key, or None. Expired records are never returned."""
        now = self._clock()

        record = self._memory.get(key)
        if record is None:
            record = await self._read_disk(key)
            if record is not None and record.is_valid(now):
                self._remember(record)

        if record is None or not record.is_valid(now):
            self.misses += 1
            return None

        self.hits += 1
        return record

    async def put(
        self,
        key: str,
        payload: bytes,
        ttl: float,
        error_kind: Optional[str] = None,
        url: Optional[str] = None,
        hops: int = 0,
    ) -> Optional[CacheRecord]:
        """Store payload under key, replacing whatever was there."""
        if ttl <= 0:
            await self.invalidate(key)
            return None

        record = CacheRecord(
            key=key,
            payload=payload,
            fetched_at=self._clock(),
            ttl=ttl,
            error_kind=error_kind,
            url=url,
            hops=hops,
        )
        self._memory.pop(key, None)
        self._remember(record)
        await self._write_disk(record)
        self.stores += 1
        return record

    async def invalidate(self, key: str) -> None:
        """Remove key from memory and disk."""
        self._memory.pop(key, None)
        path = self._path_for(key)
        if path is None:
            return
        try:
            await path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Failed to remove cache file", key=key, error=str(e))

    async def purge_expired(self) -> int:
        """Drop every expired record. Returns the number removed."""
        now = self._clock()
        removed = 0

        for key in [k for k, r in self._memory.items() if not r.is_valid(now)]:
            del self._memory[key]
            removed += 1

        if self.directory is None:
            return removed

        directory = anyio.Path(self.directory)
        if not await directory.is_dir():
            return removed

        async for path in directory.glob("*.json"):
            record = await self._load_file(path)
            if record is None or not record.is_valid(now):
                try:
                    await path.unlink(missing_ok=True)
                    removed += 1
                except OSError as e:
                    logger.warning("Failed to purge cache file", path=str(path), error=str(e))

        logger.debug("Purged expired cache records", removed=removed)
        return removed

    async def singleflight(self, key: str, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run fn for key unless a call for the same key is already running.

        Concurrent callers wait for the running call and share its result or
        re-raise its exception.
        """
        while (flight := self._inflight.get(key)) is not None:
            flight.waiters += 1
            self.coalesced += 1
            logger.debug("Waiting on in-flight lookup", key=key)
            await flight.done.wait()
            if flight.abandoned:
                # leader was cancelled; contend for leadership again
                continue
            if flight.error is not None:
                raise flight.error
            return flight.result

        flight = _Flight()
        self._inflight[key] = flight
        try:
            flight.result = await fn()
            return flight.result
        except Exception as e:
            flight.error = e
            raise
        except BaseException:
            flight.abandoned = True
            raise
        finally:
            del self._inflight[key]
            flight.done.set()

    def stats(self) -> dict[str, Any]:
        return {
            "size": len(self._memory),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "coalesced": self.coalesced,
            "stores": self.stores,
            "in_flight": len(self._inflight),
        }

    def _remember(self, record: CacheRecord) -> None:
        self._memory[record.key] = record
        while len(self._memory) > self.max_size:
            oldest = next(iter(self._memory))
            del self._memory[oldest]

    async def _read_disk(self, key: str) -> Optional[CacheRecord]:
        path = self._path_for(key)
        if path is None:
            return None
        record = await self._load_file(path)
        if record is not None and record.key != key:
            return None
        return record

    async def _load_file(self, path: anyio.Path) -> Optional[CacheRecord]:
        try:
            raw = await path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Failed to read cache file", path=str(path), error=str(e))
            return None

        try:
            return CacheRecord.from_json(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.debug("Ignoring corrupt cache file", path=str(path), error=str(e))
            return None

    async def _write_disk(self, record: CacheRecord) -> None:
        path = self._path_for(record.key)
        if path is None:
            return

        tmp = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            await path.parent.mkdir(parents=True, exist_ok=True)
            await tmp.write_text(json.dumps(record.to_json()), encoding="utf-8")
            await tmp.replace(path)
        except OSError as e:
            logger.warning("Failed to write cache file", key=record.key, error=str(e))
        finally:
            # runs on cancellation too; after a successful replace tmp is gone
            with anyio.CancelScope(shield=True):
                try:
                    await tmp.unlink(missing_ok=True)
                except OSError as e:
                    logger.warning("Failed to remove temporary cache file", path=str(tmp), error=str(e))
