"""
Idempotency & Concurrency Coordinator

Guarantees that a seal hash is driven by at most one worker at a time and
completed at most once. Three layers back this up:

  1. KeyedLockArena:   per-seal asyncio locks inside one process
  2. LeaseLockArena:   expiring leases in the store across processes,
                       renewed for as long as the item is claimed
  3. Ledger ground truth: a closure already on the source ledger wins over
     whatever the store believes
"""

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Set

from .exceptions import AlreadyProcessed, LeaseLost
from .ledgers.base import SourceLedger
from .logger import get_logger, short_hash
from .store import WorkItemStore
from .types import WorkItem, WorkStatus

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  LOCK ARENAS
# ══════════════════════════════════════════════════════════════════════

class _Entry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.refs = 0


class KeyedLockArena:
    """
    Map of key to asyncio.Lock with reference counting.

    Entries exist only while some caller holds or waits on them.
    """

    def __init__(self):
        self._entries: Dict[bytes, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_held(self, key: bytes) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    def _ref(self, key: bytes) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = self._entries[key] = _Entry()
        entry.refs += 1
        return entry

    def _unref(self, key: bytes, entry: _Entry) -> None:
        entry.refs -= 1
        if entry.refs == 0:
            del self._entries[key]

    async def try_claim(self, key: bytes) -> bool:
        """Take the lock only if nobody holds it. Never waits."""
        if self.is_held(key):
            return False
        entry = self._ref(key)
        # uncontended acquire completes without yielding
        await entry.lock.acquire()
        return True

    async def acquire(self, key: bytes) -> None:
        entry = self._ref(key)
        try:
            await entry.lock.acquire()
        except BaseException:
            self._unref(key, entry)
            raise

    def release(self, key: bytes) -> None:
        entry = self._entries[key]
        entry.lock.release()
        self._unref(key, entry)

    @asynccontextmanager
    async def hold(self, key: bytes) -> AsyncIterator[None]:
        """Blocking exclusive section for ``key``."""
        await self.acquire(key)
        try:
            yield
        finally:
            self.release(key)


class LeaseLockArena:
    """
    Cross-process claims backed by store leases, layered over a local
    KeyedLockArena.

    A claimed lease is renewed every third of its ttl by ``keep_alive``.
    When a renewal is refused the key lands in ``lost`` and the holder must
    stop writing.
    """

    def __init__(self, store: WorkItemStore, owner: Optional[str] = None, ttl: float = 300.0):
        self.store = store
        self.owner = owner or f"relayer-{uuid.uuid4().hex[:12]}"
        self.ttl = ttl
        self.local = KeyedLockArena()
        self.lost: Set[bytes] = set()

    async def try_claim(self, key: bytes) -> bool:
        if not await self.local.try_claim(key):
            return False
        try:
            acquired = await self.store.acquire_lease(key.hex(), self.owner, self.ttl)
        except BaseException:
            self.local.release(key)
            raise
        if not acquired:
            self.local.release(key)
        else:
            self.lost.discard(key)
        return acquired

    async def renew(self, key: bytes) -> bool:
        return await self.store.acquire_lease(key.hex(), self.owner, self.ttl)

    async def keep_alive(self, key: bytes) -> None:
        """Renew the lease until cancelled or refused."""
        while True:
            await asyncio.sleep(self.ttl / 3)
            try:
                renewed = await self.renew(key)
            except Exception as e:
                logger.warning(f"Lease renewal for seal={short_hash(key)} failed: {e}")
                continue
            if not renewed:
                self.lost.add(key)
                logger.error(f"Lease for seal={short_hash(key)} taken over by another instance")
                return

    def release(self, key: bytes) -> None:
        self.local.release(key)

    async def release_lease(self, key: bytes) -> None:
        self.lost.discard(key)
        await self.store.release_lease(key.hex(), self.owner)


# ══════════════════════════════════════════════════════════════════════
#  COORDINATOR
# ══════════════════════════════════════════════════════════════════════

class Coordinator:
    """
    Owns work item state transitions.

    Usage:
        async with coordinator.claim(seal_hash) as item:
            ...
            await coordinator.record(item, WorkStatus.VERIFIED, verify_tx=tx)
    """

    def __init__(self, store: WorkItemStore, source: SourceLedger, locks=None):
        self.store = store
        self.source = source
        self.locks = locks if locks is not None else KeyedLockArena()

    async def offer(self, item: WorkItem) -> bool:
        """
        Register a newly observed item.

        Returns True if the item is new and should be queued. Known items
        are dropped; a FAILED or CLOSED item is never revived.
        """
        inserted = await self.store.insert_item(item)
        if inserted:
            logger.info(f"Observed seal={short_hash(item.seal_hash)} tx={item.source_tx_ref}")
        else:
            logger.debug(f"Dropping re-observed seal={short_hash(item.seal_hash)}")
        return inserted

    async def pending_items(self, page_size: int = 500) -> AsyncIterator[WorkItem]:
        """Every non-terminal item, for resuming after a restart."""
        after = ""
        while True:
            page = await self.store.list_unfinished(after=after, limit=page_size)
            for item in page:
                yield item
            if len(page) < page_size:
                return
            after = page[-1].seal_hash_hex

    @asynccontextmanager
    async def claim(self, seal_hash: bytes) -> AsyncIterator[WorkItem]:
        """
        Exclusive access to one work item for the whole pipeline.

        With a LeaseLockArena the lease is kept alive until the block exits.

        Raises:
            AlreadyProcessed: if another worker holds the seal hash, or the
                item is already complete in the store or on the ledger
            KeyError: if the seal hash was never offered
        """
        hex_hash = seal_hash.hex()
        if not await self.locks.try_claim(seal_hash):
            raise AlreadyProcessed(hex_hash, "in progress")
        heartbeat = None
        if isinstance(self.locks, LeaseLockArena):
            heartbeat = asyncio.create_task(self.locks.keep_alive(seal_hash))
        try:
            item = await self.store.get_item(seal_hash)
            if item is None:
                raise KeyError(f"Unknown seal hash {hex_hash}")
            if item.status.is_terminal:
                raise AlreadyProcessed(hex_hash, item.status.name)

            closure = await self.source.get_closure(seal_hash)
            if closure is not None:
                if item.mint_reference and closure.destination_reference != item.mint_reference:
                    logger.warning(
                        f"seal={short_hash(seal_hash)} closed on source ledger with "
                        f"{closure.destination_reference}, not our mint {item.mint_reference}"
                    )
                item.transition(WorkStatus.CLOSED)
                if not item.mint_reference:
                    item.mint_reference = closure.destination_reference
                await self.store.save_item(item)
                raise AlreadyProcessed(hex_hash, "closed on source ledger")

            yield item
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                await asyncio.gather(heartbeat, return_exceptions=True)
            self.locks.release(seal_hash)
            if isinstance(self.locks, LeaseLockArena):
                await self.locks.release_lease(seal_hash)

    def check_held(self, item: WorkItem) -> None:
        """
        Raises:
            LeaseLost: if the lease on ``item`` was taken over
        """
        if isinstance(self.locks, LeaseLockArena) and item.seal_hash in self.locks.lost:
            raise LeaseLost(item.seal_hash_hex)

    async def record(self, item: WorkItem, status: WorkStatus, **evidence) -> None:
        """Apply progress evidence, advance the status and persist."""
        self.check_held(item)
        for name, value in evidence.items():
            if not hasattr(item, name):
                raise AttributeError(f"WorkItem has no field {name}")
            setattr(item, name, value)
        moved = item.transition(status)
        await self.store.save_item(item)
        if moved:
            logger.info(f"seal={short_hash(item.seal_hash)} -> {status.name}")

    async def save(self, item: WorkItem) -> None:
        self.check_held(item)
        await self.store.save_item(item)

    async def fail(self, item: WorkItem, reason: str) -> None:
        """Move an item to FAILED. Already-terminal items are left alone."""
        if item.status.is_terminal:
            return
        self.check_held(item)
        item.fail(reason)
        await self.store.save_item(item)
        logger.error(f"seal={short_hash(item.seal_hash)} FAILED: {reason}")
