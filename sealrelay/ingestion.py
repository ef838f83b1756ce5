"""
Event Ingestion & Work Queue

Two pollers feed the relayer:

  EventIngestor:     reads sealing events from the source ledger from a
                      durable forward-only cursor and offers them to the
                      coordinator as work items
  EnvelopeIngester:  fetches guardian-signed deposit envelopes per emitter
                      by sequence and hands new ones to the source ledger,
                      which turns them into sealing events. A sequence the
                      guardians have not signed yet is re-polled with
                      exponential backoff per emitter

Both run a fixed-interval loop until a stop event is set. A failed poll is
logged and retried on the next tick.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from .constants import GUARDIAN_BACKOFF_MAX, INGESTION_BATCH_SIZE, INGESTION_POLL_INTERVAL
from .coordinator import Coordinator
from .exceptions import LedgerCallFailed, MalformedPayload, MalformedSealBytes, RelayerException
from .ledgers.base import GuardianNetwork, MetadataResolver, SourceLedger
from .logger import get_logger, short_hash
from .protocol.envelope import decode_deposit_payload, decode_envelope
from .retry import backoff_delay
from .store import WorkItemStore
from .types import Cursor, RejectedEvent, SealedEvent, WorkItem

logger = get_logger(__name__)

OnItem = Callable[[WorkItem], Awaitable[None]]


async def _run_loop(poll: Callable[[], Awaitable[bool]], stop_event: asyncio.Event, interval: float, label: str) -> None:
    """Call ``poll`` every ``interval`` seconds; a True result polls again at once."""
    logger.info(f"[{label}] started (interval {interval:.1f}s)")
    while not stop_event.is_set():
        more = False
        try:
            more = await poll()
        except (RelayerException, OSError) as e:
            logger.warning(f"[{label}] poll failed: {e}")
        if more:
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info(f"[{label}] stopped")


# ══════════════════════════════════════════════════════════════════════
#  SOURCE EVENTS
# ══════════════════════════════════════════════════════════════════════

class EventIngestor:
    """
    Turns source-ledger sealing events into work items.

    Args:
        on_item: awaited for every newly offered item (the engine enqueues it)
        resolver: optional metadata resolver used when an event carries no
            display metadata
    """

    def __init__(
        self,
        source: SourceLedger,
        coordinator: Coordinator,
        store: WorkItemStore,
        *,
        on_item: Optional[OnItem] = None,
        resolver: Optional[MetadataResolver] = None,
        cursor_name: str = "source-events",
        batch_size: int = INGESTION_BATCH_SIZE,
        interval: float = INGESTION_POLL_INTERVAL,
    ):
        self.source = source
        self.coordinator = coordinator
        self.store = store
        self.on_item = on_item
        self.resolver = resolver
        self.cursor_name = cursor_name
        self.batch_size = batch_size
        self.interval = interval
        self.has_more = False

    async def poll_once(self) -> List[WorkItem]:
        """
        Read one page of events after the durable cursor.

        Returns:
            Items that were new to the coordinator
        """
        cursor = await self.store.get_cursor(self.cursor_name)
        page = await self.source.query_sealed_events(cursor, self.batch_size)

        offered = []
        for event in page.events:
            item = await self._to_item(event)
            if item is None:
                continue
            if await self.coordinator.offer(item):
                offered.append(item)
                if self.on_item is not None:
                    await self.on_item(item)

        self.has_more = page.has_next_page
        if page.events:
            advanced = Cursor(token=page.next_token, position=cursor.position + len(page.events))
            if not await self.store.save_cursor(self.cursor_name, advanced):
                logger.warning(f"[ingestion] ignored stale cursor write at position {advanced.position}")
        return offered

    async def _to_item(self, event: SealedEvent) -> Optional[WorkItem]:
        try:
            item = event.to_work_item()
        except MalformedSealBytes as e:
            declared = event.declared_seal_hash.hex() if event.declared_seal_hash else ""
            await self.store.record_rejected_event(RejectedEvent(
                event_id=event.event_id,
                reason=f"{type(e).__name__}: {e}",
                seal_hash=declared,
                tx_ref=event.tx_ref,
                recorded_at=int(time.time()),
            ))
            logger.error(f"[ingestion] rejected event {event.event_id or event.tx_ref}: {e}")
            return None

        if self.resolver is not None and not item.metadata.name:
            try:
                item.metadata = await self.resolver.resolve(
                    item.fields.source_chain_id, item.fields.source_contract, item.fields.token_id
                )
            except LedgerCallFailed as e:
                logger.debug(f"[ingestion] metadata lookup failed for seal={short_hash(item.seal_hash)}: {e}")
        return item

    async def run(self, stop_event: asyncio.Event) -> None:
        async def poll() -> bool:
            await self.poll_once()
            return self.has_more

        await _run_loop(poll, stop_event, self.interval, "ingestion")


# ══════════════════════════════════════════════════════════════════════
#  GUARDIAN ENVELOPES
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Emitter:
    chain_id: int
    address: bytes

    @property
    def key(self) -> str:
        return f"{self.chain_id}:{self.address.hex()}"

    @classmethod
    def parse(cls, value: str) -> 'Emitter':
        """Parse ``<chain_id>:<32-byte hex address>``."""
        chain, _, address = value.partition(":")
        raw = bytes.fromhex(address[2:] if address.startswith("0x") else address)
        if len(raw) != 32:
            raise ValueError(f"Emitter address must be 32 bytes, got {len(raw)}")
        return cls(chain_id=int(chain), address=raw)


class EnvelopeIngester:
    """Relays guardian-signed deposit envelopes into the source ledger."""

    def __init__(
        self,
        guardians: GuardianNetwork,
        source: SourceLedger,
        store: WorkItemStore,
        emitters: List[Emitter],
        *,
        batch_size: int = INGESTION_BATCH_SIZE,
        interval: float = INGESTION_POLL_INTERVAL,
        max_backoff: float = GUARDIAN_BACKOFF_MAX,
    ):
        self.guardians = guardians
        self.source = source
        self.store = store
        self.emitters = list(emitters)
        self.batch_size = batch_size
        self.interval = interval
        self.max_backoff = max_backoff
        self.submitted = 0
        self._misses: Dict[str, int] = {}
        self._next_poll: Dict[str, float] = {}

    async def poll_once(self) -> int:
        """
        Fetch consecutive envelopes for every emitter.

        Returns:
            Number of envelopes submitted to the source ledger
        """
        submitted = 0
        for emitter in self.emitters:
            submitted += await self._poll_emitter(emitter)
        self.submitted += submitted
        return submitted

    async def _poll_emitter(self, emitter: Emitter) -> int:
        if time.monotonic() < self._next_poll.get(emitter.key, 0.0):
            return 0

        submitted = 0
        fetched = False
        sequence = await self.store.get_emitter_sequence(emitter.key)
        for _ in range(self.batch_size):
            raw = await self.guardians.fetch_envelope(emitter.chain_id, emitter.address, sequence)
            if raw is None:
                self._back_off(emitter, fetched)
                break
            fetched = True
            if await self._relay(emitter, sequence, raw):
                submitted += 1
            sequence += 1
            await self.store.save_emitter_sequence(emitter.key, sequence)
        return submitted

    def _back_off(self, emitter: Emitter, fetched: bool) -> None:
        misses = 1 if fetched else self._misses.get(emitter.key, 0) + 1
        self._misses[emitter.key] = misses
        delay = backoff_delay(misses, self.interval, self.max_backoff)
        self._next_poll[emitter.key] = time.monotonic() + delay
        if misses > 1:
            logger.debug(f"[envelopes] {emitter.key} not signed yet, next poll in {delay:.1f}s")

    async def _relay(self, emitter: Emitter, sequence: int, raw: bytes) -> bool:
        label = f"{emitter.chain_id}/{emitter.address.hex()[:16]}/{sequence}"
        try:
            envelope = decode_envelope(raw)
            if envelope.emitter_chain != emitter.chain_id or envelope.emitter_address != emitter.address:
                raise MalformedPayload(f"envelope emitter {envelope.emitter_chain} does not match {emitter.key}")
            decode_deposit_payload(envelope.payload)
        except MalformedPayload as e:
            await self.store.record_rejected_event(RejectedEvent(
                event_id=f"envelope:{label}",
                reason=f"MalformedPayload: {e}",
                recorded_at=int(time.time()),
            ))
            logger.error(f"[envelopes] rejected {label}: {e}")
            return False

        digest = envelope.body_digest()
        if await self.source.is_envelope_consumed(digest):
            logger.debug(f"[envelopes] {label} already consumed")
            return False

        tx_ref = await self.source.submit_envelope(raw)
        logger.info(f"[envelopes] submitted {label} digest={short_hash(digest)} tx={tx_ref}")
        return True

    async def run(self, stop_event: asyncio.Event) -> None:
        async def poll() -> bool:
            await self.poll_once()
            return False

        await _run_loop(poll, stop_event, self.interval, "envelopes")
