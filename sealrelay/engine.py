"""
Relayer Engine

Wires the pipeline together and runs it:

    ingestion → queue → worker:
        claim → sign → verify → mint (+ transfer) → close → record

Workers are asyncio tasks pulling seal hashes from a bounded queue. Each item
is processed under the coordinator's claim for the whole pipeline and every
stage is re-entrant, so an item can be picked up again at whatever status it
reached.

Fatal errors fail the item. Non-fatal errors leave it at its last status and
requeue it with backoff until ``max_item_retries`` pickups have been used.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from .closure import ClosurePublisher
from .config import RelayerConfig
from .constants import RELAYER_VERSION
from .coordinator import Coordinator, KeyedLockArena, LeaseLockArena
from .crypto import Keypair
from .exceptions import AlreadyProcessed, RelayerException
from .finalizer import DestinationFinalizer
from .ingestion import Emitter, EnvelopeIngester, EventIngestor
from .ledgers.base import (
    CustodyLedger,
    DestinationLedger,
    GuardianNetwork,
    MetadataResolver,
    NullMetadataResolver,
    SourceLedger,
)
from .logger import get_logger, short_hash
from .retry import backoff_delay
from .signing import SigningOrchestrator
from .store import WorkItemStore, open_store
from .types import WorkItem, WorkStatus

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  LEDGER WIRING
# ══════════════════════════════════════════════════════════════════════

@dataclass
class Ledgers:
    """Every external client the engine needs, built once and injected."""
    source: SourceLedger
    custody: CustodyLedger
    destination: DestinationLedger
    closer: Keypair
    guardians: Optional[GuardianNetwork] = None
    resolver: MetadataResolver = field(default_factory=NullMetadataResolver)
    closeables: List[Any] = field(default_factory=list)

    async def close(self) -> None:
        for client in self.closeables:
            await client.close()


def build_simulated_ledgers(config: RelayerConfig) -> Ledgers:
    """In-memory ledgers that enforce the on-chain rules."""
    from .ledgers.memory import (
        InMemoryCustodyLedger,
        InMemoryDestinationLedger,
        InMemoryGuardianNetwork,
        InMemorySourceLedger,
    )

    custody = InMemoryCustodyLedger(presign_ready_after=1, sign_ready_after=1)
    destination = InMemoryDestinationLedger()
    closer = Keypair.from_secret(config.closure.secret) if config.closure.secret else destination.keypair
    source = InMemorySourceLedger(
        allowed_closers=set(config.closure.allowed_closers) or {closer.address},
        attestation_pubkey=custody.attestation_pubkey,
    )
    return Ledgers(
        source=source,
        custody=custody,
        destination=destination,
        closer=closer,
        guardians=InMemoryGuardianNetwork(),
    )


def build_live_ledgers(config: RelayerConfig) -> Ledgers:
    """JSON-RPC clients for Sui (source + custody) and Solana (destination)."""
    from .ledgers.guardian import WormholeGuardianClient
    from .ledgers.metadata import HttpMetadataResolver
    from .ledgers.rpc import JsonRpcClient
    from .ledgers.solana import SolanaDestinationLedger
    from .ledgers.sui import IkaCustodyLedger, SuiSourceLedger, SuiTransactor

    timeout = config.ledger.timeout
    closeables: List[Any] = []

    sui_key = Keypair.from_secret(config.source.secret)
    sui_rpc = JsonRpcClient(config.source.rpc_url, ledger="sui", timeout=timeout)
    closeables.append(sui_rpc)
    transactor = SuiTransactor(sui_rpc, sui_key, config.source.gas_budget)
    source = SuiSourceLedger(
        transactor,
        config.source.package_id,
        config.source.registry_id,
        reborn_table_id=config.source.reborn_table_id,
        processed_envelopes_table_id=config.source.processed_envelopes_table_id,
        orchestrator_state_id=config.source.orchestrator_state_id,
        wormhole_state_id=config.source.wormhole_state_id,
        close_with_evidence=config.closure.close_with_evidence,
    )

    custody_transactor = transactor
    if config.custody.rpc_url and config.custody.rpc_url != config.source.rpc_url:
        custody_rpc = JsonRpcClient(config.custody.rpc_url, ledger="ika", timeout=timeout)
        closeables.append(custody_rpc)
        # same account, so transactions still go out one at a time
        custody_transactor = SuiTransactor(custody_rpc, sui_key, config.source.gas_budget, lock=transactor.lock)
    custody = IkaCustodyLedger(
        custody_transactor,
        config.custody.package_id,
        config.custody.coordinator_id,
        config.custody.dwallet_id,
        config.custody.sessions_table_id,
    )

    solana_key = Keypair.from_secret(config.destination.secret)
    solana_rpc = JsonRpcClient(config.destination.rpc_url, ledger="solana", timeout=timeout)
    closeables.append(solana_rpc)
    destination = SolanaDestinationLedger(
        solana_rpc,
        config.destination.program_id,
        solana_key,
        mpl_core_program_id=config.destination.mpl_core_program_id,
        commitment=config.destination.commitment,
        confirmation_interval=config.destination.confirmation_interval,
        confirmation_timeout=config.destination.confirmation_timeout,
    )

    guardians = None
    if config.guardian.enabled:
        guardians = WormholeGuardianClient(config.guardian.api_url, timeout=timeout)
        closeables.append(guardians)

    resolver: MetadataResolver = NullMetadataResolver()
    if config.ingestion.metadata_url:
        resolver = HttpMetadataResolver(config.ingestion.metadata_url, timeout=timeout)
        closeables.append(resolver)

    closer = Keypair.from_secret(config.closure.secret) if config.closure.secret else solana_key
    return Ledgers(
        source=source,
        custody=custody,
        destination=destination,
        closer=closer,
        guardians=guardians,
        resolver=resolver,
        closeables=closeables,
    )


# ══════════════════════════════════════════════════════════════════════
#  ENGINE
# ══════════════════════════════════════════════════════════════════════

class RelayerEngine:

    def __init__(self, config: RelayerConfig, store: WorkItemStore, ledgers: Ledgers):
        self.config = config
        self.store = store
        self.ledgers = ledgers

        if config.store.use_leases:
            locks = LeaseLockArena(store, ttl=config.store.lease_ttl)
        else:
            locks = KeyedLockArena()
        self.coordinator = Coordinator(store, ledgers.source, locks)

        retry_policy = dict(
            max_attempts=config.ledger.max_attempts,
            backoff_base=config.ledger.backoff_base,
            backoff_max=config.ledger.backoff_max,
        )
        self.orchestrator = SigningOrchestrator(
            ledgers.custody,
            store,
            poll_interval=config.signing.poll_interval,
            poll_timeout=config.signing.poll_timeout,
            restarts=config.signing.restarts,
            **retry_policy,
        )
        self.finalizer = DestinationFinalizer(
            ledgers.destination,
            bind_recipient=config.destination.bind_recipient,
            **retry_policy,
        )
        self.closure = ClosurePublisher(
            ledgers.source,
            ledgers.closer,
            allowed_closers=config.closure.allowed_closers,
            **retry_policy,
        )
        self.ingestor = EventIngestor(
            ledgers.source,
            self.coordinator,
            store,
            on_item=self.enqueue,
            resolver=ledgers.resolver,
            cursor_name=config.ingestion.cursor_name,
            batch_size=config.ingestion.batch_size,
            interval=config.ingestion.poll_interval,
        )
        self.envelopes: Optional[EnvelopeIngester] = None
        if ledgers.guardians is not None and config.guardian.emitters:
            self.envelopes = EnvelopeIngester(
                ledgers.guardians,
                ledgers.source,
                store,
                [Emitter.parse(e) for e in config.guardian.emitters],
                batch_size=config.ingestion.batch_size,
                interval=config.guardian.poll_interval,
                max_backoff=config.guardian.max_backoff,
            )

        self.queue: asyncio.Queue = asyncio.Queue(maxsize=config.relayer.queue_size)
        self.stop_event = asyncio.Event()
        self.started_at: Optional[float] = None
        self.completed = 0
        self._queued: Set[bytes] = set()
        self._workers: List[asyncio.Task] = []
        self._pollers: List[asyncio.Task] = []
        self._timers: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self.started_at is not None and not self.stop_event.is_set()

    # ── Queue ───────────────────────────────────────────────────────

    async def enqueue(self, item: WorkItem) -> None:
        await self.enqueue_hash(item.seal_hash)

    async def enqueue_hash(self, seal_hash: bytes) -> None:
        if seal_hash in self._queued:
            return
        self._queued.add(seal_hash)
        await self.queue.put(seal_hash)

    def _requeue_later(self, seal_hash: bytes, attempts: int) -> None:
        delay = backoff_delay(attempts, self.config.ledger.backoff_base, self.config.ledger.backoff_max)

        async def later():
            await asyncio.sleep(delay)
            if not self.stop_event.is_set():
                await self.enqueue_hash(seal_hash)

        task = asyncio.create_task(later())
        self._timers.add(task)
        task.add_done_callback(self._timers.discard)
        logger.info(f"[engine] seal={short_hash(seal_hash)} requeued in {delay:.2f}s")

    # ── Pipeline ────────────────────────────────────────────────────

    async def process(self, seal_hash: bytes) -> WorkItem:
        """
        Drive one item as far as it will go.

        Fatal errors fail the item and are not raised. Non-fatal errors are
        raised with the item left at its last status, unless this pickup was
        the last one allowed, in which case the item fails.

        Raises:
            AlreadyProcessed: if the item is claimed elsewhere or complete
        """
        async with self.coordinator.claim(seal_hash) as item:
            item.attempts += 1
            await self.coordinator.save(item)
            try:
                await self._advance(item)
            except AlreadyProcessed:
                raise
            except RelayerException as e:
                reason = f"{type(e).__name__}: {e}"
                if e.fatal:
                    await self.coordinator.fail(item, reason)
                elif item.attempts > self.config.relayer.max_item_retries:
                    await self.coordinator.fail(item, f"gave up after {item.attempts} attempts, last error {reason}")
                else:
                    raise
            return item

    def _stopping(self, item: WorkItem) -> bool:
        if not self.stop_event.is_set():
            return False
        logger.info(f"[engine] seal={short_hash(item.seal_hash)} paused at {item.status.name} for shutdown")
        return True

    async def _advance(self, item: WorkItem) -> None:
        """Run the remaining stages, stopping at a stage boundary on shutdown."""
        if item.status == WorkStatus.OBSERVED:
            await self.coordinator.record(item, WorkStatus.SIGNING)

        if item.status == WorkStatus.SIGNING and not item.signature:
            # verified elsewhere, or verified before a crash lost the signature
            if await self.finalizer.verification_record(item) is not None:
                logger.info(f"[engine] seal={short_hash(item.seal_hash)} already verified, skipping signing")
                await self.coordinator.record(item, WorkStatus.VERIFIED)
            else:
                signature = await self.orchestrator.sign(item)
                await self.coordinator.record(item, WorkStatus.SIGNING, signature=signature)
            if self._stopping(item):
                return

        if item.status == WorkStatus.SIGNING:
            outcome = await self.finalizer.verify(item, item.signature)
            await self.coordinator.record(item, WorkStatus.VERIFIED, verify_tx=outcome.tx_ref)
            if self._stopping(item):
                return

        if item.status == WorkStatus.VERIFIED:
            minted = await self.finalizer.mint(item)
            await self.coordinator.record(
                item,
                WorkStatus.MINTED,
                mint_reference=minted.mint_reference,
                mint_tx=minted.tx_ref,
                transfer_tx=minted.transfer_tx,
            )
            if self._stopping(item):
                return

        if item.status == WorkStatus.MINTED:
            closed = await self.closure.close(item)
            await self.coordinator.record(item, WorkStatus.CLOSED, close_tx=closed.tx_ref)
            self.completed += 1

    async def _worker(self, index: int) -> None:
        while not self.stop_event.is_set():
            try:
                seal_hash = await asyncio.wait_for(self.queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            self._queued.discard(seal_hash)
            try:
                await self.process(seal_hash)
            except AlreadyProcessed as e:
                logger.info(f"[worker-{index}] {e}")
            except RelayerException as e:
                logger.warning(f"[worker-{index}] seal={short_hash(seal_hash)} {type(e).__name__}: {e}")
                item = await self.store.get_item(seal_hash)
                self._requeue_later(seal_hash, item.attempts if item else 1)
            except Exception:
                logger.exception(f"[worker-{index}] unexpected error on seal={short_hash(seal_hash)}")
            finally:
                self.queue.task_done()

    # ── Lifecycle ───────────────────────────────────────────────────

    async def start(self, ingest: bool = True) -> None:
        """Start workers, re-enqueue unfinished items, then start pollers unless ``ingest`` is False."""
        self.stop_event.clear()
        self.started_at = time.time()

        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self.config.relayer.worker_count)
        ]

        # workers already consume, so more pending items than queue slots cannot block
        resumed = 0
        async for item in self.coordinator.pending_items():
            await self.enqueue(item)
            resumed += 1
        if resumed:
            logger.info(f"[engine] resuming {resumed} unfinished items")

        self._pollers = []
        if ingest:
            self._pollers.append(asyncio.create_task(self.ingestor.run(self.stop_event)))
        if ingest and self.envelopes is not None:
            self._pollers.append(asyncio.create_task(self.envelopes.run(self.stop_event)))
        logger.info(
            f"[engine] started: {self.config.relayer.worker_count} workers, "
            f"source={self.ledgers.source.name} destination={self.ledgers.destination.name}"
        )

    async def stop(self) -> None:
        """
        Stop ingestion and let workers finish the stage they are in.

        Workers still busy after ``relayer.shutdown_timeout`` are cancelled;
        their items resume from the last recorded status on the next start.
        """
        self.stop_event.set()
        for task in list(self._timers):
            task.cancel()
        if self._workers:
            _, busy = await asyncio.wait(self._workers, timeout=self.config.relayer.shutdown_timeout)
            if busy:
                logger.warning(f"[engine] cancelling {len(busy)} workers still mid-stage")
                for task in busy:
                    task.cancel()
        await asyncio.gather(*self._pollers, *self._workers, *self._timers, return_exceptions=True)
        self._pollers, self._workers = [], []
        logger.info(f"[engine] stopped ({self.completed} items closed this run)")

    async def close(self) -> None:
        await self.ledgers.close()
        await self.store.close()

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until the queue is empty and no retry is pending."""
        async def _drain():
            while True:
                await self.queue.join()
                if not self._timers:
                    return
                await asyncio.sleep(0.05)

        await asyncio.wait_for(_drain(), timeout=timeout)

    # ── Health ──────────────────────────────────────────────────────

    async def health_report(self) -> Dict[str, Any]:
        """Overall status (healthy / degraded / unhealthy) with per-service detail."""
        services = {
            "source": await self.ledgers.source.check_connection(),
            "custody": await self.ledgers.custody.check_connection(),
            "destination": await self.ledgers.destination.check_connection(),
        }
        up = sum(services.values())
        if not self.running or up == 0:
            status = "unhealthy"
        elif up < len(services):
            status = "degraded"
        else:
            status = "healthy"
        return {
            "status": status,
            "version": RELAYER_VERSION,
            "running": self.running,
            "uptime": int(time.time() - self.started_at) if self.started_at else 0,
            "services": {name: "up" if ok else "down" for name, ok in services.items()},
            "queue": {
                "size": self.queue.qsize(),
                "workers": len(self._workers),
                "pending_retries": len(self._timers),
            },
        }

    async def stats(self) -> Dict[str, Any]:
        stats = await self.store.stats()
        stats["completed_this_run"] = self.completed
        stats["queue_size"] = self.queue.qsize()
        return stats


async def create_engine(config: RelayerConfig) -> RelayerEngine:
    """Open the configured store and build ledgers for live or simulated mode."""
    config.validate()
    store = await open_store(config.store.backend, config.store.path)
    if config.relayer.simulate:
        ledgers = build_simulated_ledgers(config)
    else:
        ledgers = build_live_ledgers(config)
    return RelayerEngine(config, store, ledgers)
