"""
Closure Publisher

Writes ``(seal_hash, destination_reference)`` back to the source ledger once
the reborn asset exists, completing the cycle.

Every write carries Ed25519 evidence by the relaying identity over
``CLOSURE_DOMAIN || seal_hash || destination_reference`` and is refused
locally when that identity is not on the closer allow-list.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from .constants import LEDGER_BACKOFF_BASE, LEDGER_BACKOFF_MAX, LEDGER_MAX_ATTEMPTS
from .crypto import Keypair, closure_message
from .exceptions import InvalidStatusTransition, ReplayRejected, UnauthorizedCloser
from .ledgers.base import SourceLedger
from .logger import get_logger, short_hash
from .retry import call_with_backoff
from .types import ClosureRecord, WorkItem

logger = get_logger(__name__)


@dataclass
class ClosureOutcome:
    destination_reference: str
    tx_ref: str = ""
    already: bool = False


class ClosurePublisher:

    def __init__(
        self,
        source: SourceLedger,
        identity: Keypair,
        *,
        allowed_closers: Iterable[str] = (),
        max_attempts: int = LEDGER_MAX_ATTEMPTS,
        backoff_base: float = LEDGER_BACKOFF_BASE,
        backoff_max: float = LEDGER_BACKOFF_MAX,
    ):
        self.source = source
        self.identity = identity
        # empty allow-list means the relaying identity alone
        self.allowed_closers = set(allowed_closers) or {identity.address}
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    @property
    def closer(self) -> str:
        return self.identity.address

    @property
    def authorized(self) -> bool:
        return self.closer in self.allowed_closers

    def evidence(self, seal_hash: bytes, destination_reference: str) -> bytes:
        return self.identity.sign(closure_message(seal_hash, destination_reference))

    async def _existing(self, item: WorkItem, reference: str) -> Optional[ClosureRecord]:
        existing = await call_with_backoff(
            lambda: self.source.get_closure(item.seal_hash),
            label=f"{self.source.name}.get_closure",
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_max,
        )
        if existing is not None and existing.destination_reference != reference:
            raise ReplayRejected(
                f"seal={item.seal_hash_hex} already closed as {existing.destination_reference}, "
                f"refusing {reference}"
            )
        return existing

    async def close(self, item: WorkItem, destination_reference: Optional[str] = None) -> ClosureOutcome:
        """
        Publish the closure for a minted item.

        Raises:
            UnauthorizedCloser: if the relaying identity is not allowed to close
            ReplayRejected: if the seal is closed with another reference
            InvalidStatusTransition: if there is no minted reference yet
        """
        reference = destination_reference or item.mint_reference
        if not reference:
            raise InvalidStatusTransition(f"seal={item.seal_hash_hex} has no minted reference to publish")

        existing = await self._existing(item, reference)
        if existing is not None:
            logger.info(f"[closure] seal={short_hash(item.seal_hash)} already closed")
            return ClosureOutcome(destination_reference=reference, tx_ref=existing.tx_ref, already=True)

        if not self.authorized:
            raise UnauthorizedCloser(f"{self.closer} is not on the closer allow-list")

        evidence = self.evidence(item.seal_hash, reference)

        async def submit() -> str:
            found = await self.source.get_closure(item.seal_hash)
            if found is not None and found.destination_reference == reference:
                return found.tx_ref
            return await self.source.mark_closed(item.seal_hash, reference, evidence, self.closer)

        tx_ref = await call_with_backoff(
            submit,
            label=f"{self.source.name}.mark_closed",
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_max,
        )
        logger.info(f"[closure] seal={short_hash(item.seal_hash)} closed as {reference} tx={tx_ref}")
        return ClosureOutcome(destination_reference=reference, tx_ref=tx_ref)
