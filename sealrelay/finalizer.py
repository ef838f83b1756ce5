"""
Destination Finalizer

Verifies the threshold signature on the destination ledger and mints the
reborn asset. Every step reads ledger state before writing, so re-invoking
it for an item that already got further is a no-op:

  - verify: an existing verification record short-circuits the submission
  - mint:   a record that already carries a minted asset returns it
  - transfer: an asset already owned by the recipient is left alone
"""

from dataclasses import dataclass
from typing import Optional

from .constants import LEDGER_BACKOFF_BASE, LEDGER_BACKOFF_MAX, LEDGER_MAX_ATTEMPTS, MAX_NAME_LENGTH, MAX_URI_LENGTH
from .exceptions import LedgerCallFailed, ReplayRejected
from .ledgers.base import DestinationLedger
from .logger import get_logger, short_hash
from .retry import call_with_backoff
from .types import VerificationRecord, WorkItem

logger = get_logger(__name__)


@dataclass
class VerifyOutcome:
    record: VerificationRecord
    tx_ref: str = ""
    already: bool = False


@dataclass
class MintOutcome:
    mint_reference: str
    tx_ref: str = ""
    transfer_tx: str = ""
    already: bool = False


def reborn_name(item: WorkItem) -> str:
    name = item.metadata.name or f"Reborn {item.seal_hash.hex()[:8]}"
    return name.encode()[:MAX_NAME_LENGTH].decode("utf-8", errors="ignore")


def reborn_uri(item: WorkItem) -> str:
    return item.metadata.uri.encode()[:MAX_URI_LENGTH].decode("utf-8", errors="ignore")


class DestinationFinalizer:
    """
    Args:
        destination: destination ledger client
        bind_recipient: write ``item.recipient`` into the verification record
            instead of the relaying identity (no transfer afterwards)
    """

    def __init__(
        self,
        destination: DestinationLedger,
        *,
        bind_recipient: bool = False,
        max_attempts: int = LEDGER_MAX_ATTEMPTS,
        backoff_base: float = LEDGER_BACKOFF_BASE,
        backoff_max: float = LEDGER_BACKOFF_MAX,
    ):
        self.destination = destination
        self.bind_recipient = bind_recipient
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    async def _call(self, call, label: str):
        return await call_with_backoff(
            call,
            label=label,
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_max,
        )

    async def verification_record(self, item: WorkItem) -> Optional[VerificationRecord]:
        record = await self._call(
            lambda: self.destination.get_verification_record(item.seal_hash),
            f"{self.destination.name}.get_verification_record",
        )
        if record is not None and bytes(record.attestation_pubkey) != item.fields.attestation_pubkey:
            raise ReplayRejected(
                f"Verification record for {item.seal_hash_hex} names a different attestation key"
            )
        return record

    def _verify_recipient(self, item: WorkItem) -> str:
        if self.bind_recipient and item.recipient:
            return item.recipient
        return self.destination.relayer_identity

    async def verify(self, item: WorkItem, signature: bytes) -> VerifyOutcome:
        """
        Ensure a verification record exists for ``item``.

        Raises:
            LedgerCallFailed: if the ledger rejects the transaction or stays
                unreachable past the retry ceiling
            ConfirmationTimeout: if the transaction is not confirmed in time
        """
        record = await self.verification_record(item)
        if record is not None:
            logger.info(f"[finalizer] seal={short_hash(item.seal_hash)} already verified")
            return VerifyOutcome(record=record, tx_ref=item.verify_tx, already=True)

        recipient = self._verify_recipient(item)

        async def submit() -> str:
            # a retry after an unconfirmed send may find the record already there
            if await self.destination.get_verification_record(item.seal_hash) is not None:
                return ""
            return await self.destination.submit_verify(item, signature, recipient)

        tx_ref = await self._call(submit, f"{self.destination.name}.verify")
        record = await self.verification_record(item)
        if record is None:
            raise LedgerCallFailed(
                f"Verification of {item.seal_hash_hex} confirmed but no record found",
                ledger=self.destination.name,
            )
        return VerifyOutcome(record=record, tx_ref=tx_ref or item.verify_tx)

    async def mint(self, item: WorkItem) -> MintOutcome:
        """
        Mint the reborn asset for a verified item and hand it to the
        recipient.

        Raises:
            LedgerCallFailed: if the item has no verification record
        """
        record = await self.verification_record(item)
        if record is None:
            raise LedgerCallFailed(
                f"Seal {item.seal_hash_hex} is not verified on {self.destination.name}",
                ledger=self.destination.name,
                exhausted=True,
            )

        if record.minted:
            logger.info(f"[finalizer] seal={short_hash(item.seal_hash)} already minted as {record.mint}")
            outcome = MintOutcome(mint_reference=record.mint, tx_ref=item.mint_tx, already=True)
        else:
            name, uri = reborn_name(item), reborn_uri(item)

            async def submit():
                current = await self.destination.get_verification_record(item.seal_hash)
                if current is not None and current.minted:
                    return None
                return await self.destination.submit_mint(item, name, uri)

            receipt = await self._call(submit, f"{self.destination.name}.mint")
            if receipt is None:
                record = await self.verification_record(item)
                outcome = MintOutcome(mint_reference=record.mint, tx_ref=item.mint_tx, already=True)
            else:
                outcome = MintOutcome(mint_reference=receipt.mint_reference, tx_ref=receipt.tx_ref)

        outcome.transfer_tx = await self.transfer(item, record, outcome.mint_reference)
        return outcome

    async def transfer(self, item: WorkItem, record: VerificationRecord, mint_reference: str) -> str:
        """Move the asset to ``item.recipient`` when it differs from the record's recipient."""
        if not item.recipient or item.recipient == record.recipient:
            return item.transfer_tx
        owner = await self._call(
            lambda: self.destination.get_asset_owner(mint_reference),
            f"{self.destination.name}.get_asset_owner",
        )
        if owner == item.recipient:
            return item.transfer_tx
        tx_ref = await self._call(
            lambda: self.destination.transfer_asset(mint_reference, item.recipient),
            f"{self.destination.name}.transfer",
        )
        logger.info(f"[finalizer] seal={short_hash(item.seal_hash)} asset {mint_reference} -> {item.recipient}")
        return tx_ref
