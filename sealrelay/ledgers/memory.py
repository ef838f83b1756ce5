"""
In-memory ledgers.

Self-contained implementations of every ledger interface, used by
simulation mode (``sealrelay run --simulate``) and by the test suite. They
enforce the same rules the on-chain programs do: signatures are checked
with Ed25519, verification records and closures are write-once, and minting
requires a verification record.
"""

import itertools
import time
from typing import Dict, List, Optional, Set, Tuple

from ..constants import CHAIN_SUI
from ..crypto import Keypair, closure_message, to_pubkey_bytes, verify_signature
from ..exceptions import LedgerCallFailed, MalformedPayload, ReplayRejected, UnauthorizedCloser
from ..logger import get_logger, short_hash
from ..protocol.envelope import decode_deposit_payload, decode_envelope
from ..protocol.seal_hash import SealFields, compute_seal_hash
from ..types import (
    ClosureRecord,
    Cursor,
    EventPage,
    MintReceipt,
    SealedEvent,
    SealMetadata,
    SessionStatus,
    VerificationRecord,
    WorkItem,
)
from .base import CustodyLedger, DestinationLedger, GuardianNetwork, SourceLedger

logger = get_logger(__name__)

_tx_counter = itertools.count(1)


def _tx_ref(prefix: str) -> str:
    return f"{prefix}-{next(_tx_counter):06d}"


# ══════════════════════════════════════════════════════════════════════
#  SOURCE
# ══════════════════════════════════════════════════════════════════════

class InMemorySourceLedger(SourceLedger):
    """Seal registry with an append-only event log."""

    def __init__(self, allowed_closers: Optional[Set[str]] = None, attestation_pubkey: bytes = b""):
        self.events: List[SealedEvent] = []
        self.closures: Dict[bytes, ClosureRecord] = {}
        self.consumed_envelopes: Set[bytes] = set()
        self.allowed_closers = set(allowed_closers or ())
        self.attestation_pubkey = attestation_pubkey
        self.close_calls = 0
        self._nonce = itertools.count(1)

    @property
    def name(self) -> str:
        return "memory-source"

    def seal(
        self,
        fields: SealFields,
        metadata: Optional[SealMetadata] = None,
        recipient: Optional[str] = None,
    ) -> SealedEvent:
        """Record a sealing and emit its event."""
        event = SealedEvent(
            source_chain_id=fields.source_chain_id,
            source_contract=fields.source_contract,
            token_id=fields.token_id,
            attestation_pubkey=fields.attestation_pubkey,
            nonce=fields.nonce,
            declared_seal_hash=compute_seal_hash(fields),
            metadata=metadata or SealMetadata(),
            tx_ref=_tx_ref("seal"),
            recipient=recipient,
        )
        return self.emit(event)

    def emit(self, event: SealedEvent) -> SealedEvent:
        if not event.event_id:
            event.event_id = f"evt-{len(self.events)}"
        self.events.append(event)
        return event

    async def query_sealed_events(self, cursor: Cursor, limit: int) -> EventPage:
        start = int(cursor.token) if cursor.token else 0
        page = self.events[start:start + limit]
        end = start + len(page)
        return EventPage(
            events=list(page),
            next_token=str(end),
            has_next_page=end < len(self.events),
        )

    async def get_closure(self, seal_hash: bytes) -> Optional[ClosureRecord]:
        return self.closures.get(bytes(seal_hash))

    async def mark_closed(self, seal_hash: bytes, destination_reference: str, evidence: bytes, closer: str) -> str:
        self.close_calls += 1
        seal_hash = bytes(seal_hash)

        if self.allowed_closers and closer not in self.allowed_closers:
            raise UnauthorizedCloser(f"{closer} may not publish closures")
        if not verify_signature(to_pubkey_bytes(closer), closure_message(seal_hash, destination_reference), evidence):
            raise UnauthorizedCloser(f"Closure evidence from {closer} does not verify")

        existing = self.closures.get(seal_hash)
        if existing is not None:
            if existing.destination_reference != destination_reference:
                raise ReplayRejected(
                    f"seal={short_hash(seal_hash)} already closed as {existing.destination_reference}"
                )
            return existing.tx_ref

        record = ClosureRecord(
            seal_hash=seal_hash,
            destination_reference=destination_reference,
            closer=closer,
            tx_ref=_tx_ref("close"),
        )
        self.closures[seal_hash] = record
        return record.tx_ref

    async def submit_envelope(self, envelope: bytes) -> str:
        """Consume a deposit envelope and emit the resulting sealing event."""
        decoded = decode_envelope(envelope)
        digest = decoded.body_digest()
        if digest in self.consumed_envelopes:
            raise LedgerCallFailed("Envelope already consumed", ledger=self.name, exhausted=True)
        deposit = decode_deposit_payload(decoded.payload)
        if len(self.attestation_pubkey) != 32:
            raise MalformedPayload("No attestation key configured for deposits")

        self.consumed_envelopes.add(digest)
        fields = SealFields(
            source_chain_id=deposit.source_chain_id,
            source_contract=deposit.source_contract,
            token_id=deposit.token_id,
            attestation_pubkey=self.attestation_pubkey,
            nonce=int.from_bytes(deposit.seal_nonce[-8:], "big"),
        )
        event = self.seal(fields)
        return event.tx_ref

    async def is_envelope_consumed(self, digest: bytes) -> bool:
        return bytes(digest) in self.consumed_envelopes


# ══════════════════════════════════════════════════════════════════════
#  CUSTODY
# ══════════════════════════════════════════════════════════════════════

class InMemoryCustodyLedger(CustodyLedger):
    """
    Signing network backed by a single local key.

    ``presign_ready_after`` / ``sign_ready_after`` set how many status polls
    a session stays PENDING. Request keys listed in ``stalled_presigns``
    never complete, and ``reject_signs`` makes every sign session REJECTED.
    """

    def __init__(
        self,
        keypair: Optional[Keypair] = None,
        presign_ready_after: int = 0,
        sign_ready_after: int = 0,
    ):
        self.keypair = keypair or Keypair.generate()
        self.presign_ready_after = presign_ready_after
        self.sign_ready_after = sign_ready_after
        self.stalled_presigns: Set[str] = set()
        self.stall_all_presigns = False
        self.reject_signs = False
        self.presign_requests: List[str] = []
        self.sign_requests: List[str] = []
        self._sessions: Dict[str, Dict] = {}
        self._by_key: Dict[str, str] = {}
        self._ids = itertools.count(1)

    @property
    def name(self) -> str:
        return "memory-custody"

    @property
    def attestation_pubkey(self) -> bytes:
        return self.keypair.public_key

    def _open(self, kind: str, request_key: str, **extra) -> str:
        handle = f"{kind}-{next(self._ids)}"
        self._sessions[handle] = {"kind": kind, "key": request_key, "polls": 0, **extra}
        self._by_key[f"{kind}:{request_key}"] = handle
        return handle

    def _poll(self, handle: str, kind: str) -> Dict:
        session = self._sessions.get(handle)
        if session is None or session["kind"] != kind:
            raise LedgerCallFailed(f"Unknown {kind} session {handle}", ledger=self.name)
        session["polls"] += 1
        return session

    async def request_presign(self, request_key: str) -> str:
        self.presign_requests.append(request_key)
        return self._open("presign", request_key)

    async def find_presign(self, request_key: str) -> Optional[str]:
        return self._by_key.get(f"presign:{request_key}")

    async def get_presign_status(self, handle: str) -> SessionStatus:
        session = self._poll(handle, "presign")
        if self.stall_all_presigns or session["key"] in self.stalled_presigns:
            return SessionStatus.PENDING
        if session["polls"] > self.presign_ready_after:
            return SessionStatus.COMPLETED
        return SessionStatus.PENDING

    async def request_sign(self, presign_handle: str, message: bytes, request_key: str) -> str:
        if presign_handle not in self._sessions:
            raise LedgerCallFailed(f"Unknown presign {presign_handle}", ledger=self.name)
        self.sign_requests.append(request_key)
        return self._open("sign", request_key, message=bytes(message))

    async def find_sign(self, request_key: str) -> Optional[str]:
        return self._by_key.get(f"sign:{request_key}")

    async def get_sign_status(self, handle: str) -> SessionStatus:
        session = self._poll(handle, "sign")
        if self.reject_signs:
            return SessionStatus.REJECTED
        if session["polls"] > self.sign_ready_after:
            return SessionStatus.COMPLETED
        return SessionStatus.PENDING

    async def get_signature(self, handle: str) -> bytes:
        session = self._sessions.get(handle)
        if session is None or session["kind"] != "sign":
            raise LedgerCallFailed(f"Unknown sign session {handle}", ledger=self.name)
        return self.keypair.sign(session["message"])


# ══════════════════════════════════════════════════════════════════════
#  DESTINATION
# ══════════════════════════════════════════════════════════════════════

class InMemoryDestinationLedger(DestinationLedger):
    """Destination program with write-once verification records."""

    def __init__(self, keypair: Optional[Keypair] = None):
        self.keypair = keypair or Keypair.generate()
        self.records: Dict[bytes, VerificationRecord] = {}
        self.owners: Dict[str, str] = {}
        self.verify_submissions = 0
        self.mint_submissions = 0
        self.transfers: List[Tuple[str, str]] = []

    @property
    def name(self) -> str:
        return "memory-destination"

    @property
    def relayer_identity(self) -> str:
        return self.keypair.address

    async def get_verification_record(self, seal_hash: bytes) -> Optional[VerificationRecord]:
        return self.records.get(bytes(seal_hash))

    async def submit_verify(self, item: WorkItem, signature: bytes, recipient: str) -> str:
        self.verify_submissions += 1
        if item.seal_hash in self.records:
            raise LedgerCallFailed("Verification record already exists", ledger=self.name, exhausted=True)
        if not verify_signature(item.fields.attestation_pubkey, item.seal_hash, signature):
            raise LedgerCallFailed("Ed25519 signature check failed", ledger=self.name, exhausted=True)

        self.records[item.seal_hash] = VerificationRecord(
            seal_hash=item.seal_hash,
            source_chain_id=item.fields.source_chain_id,
            source_contract=item.fields.source_contract,
            token_id=item.fields.token_id,
            attestation_pubkey=item.fields.attestation_pubkey,
            recipient=recipient,
            verified_at=int(time.time()),
        )
        return _tx_ref("verify")

    async def submit_mint(self, item: WorkItem, name: str, uri: str) -> MintReceipt:
        self.mint_submissions += 1
        record = self.records.get(item.seal_hash)
        if record is None:
            raise LedgerCallFailed("Seal not verified", ledger=self.name, exhausted=True)
        if record.minted:
            raise LedgerCallFailed("Already minted", ledger=self.name, exhausted=True)

        mint = Keypair.generate().address
        record.mint = mint
        record.minted = True
        self.owners[mint] = record.recipient
        return MintReceipt(mint_reference=mint, tx_ref=_tx_ref("mint"))

    async def get_asset_owner(self, mint_reference: str) -> Optional[str]:
        return self.owners.get(mint_reference)

    async def transfer_asset(self, mint_reference: str, recipient: str) -> str:
        owner = self.owners.get(mint_reference)
        if owner != self.relayer_identity:
            raise LedgerCallFailed(
                f"Asset {mint_reference} is not held by the relayer", ledger=self.name, exhausted=True
            )
        self.owners[mint_reference] = recipient
        self.transfers.append((mint_reference, recipient))
        return _tx_ref("transfer")


# ══════════════════════════════════════════════════════════════════════
#  GUARDIANS
# ══════════════════════════════════════════════════════════════════════

class InMemoryGuardianNetwork(GuardianNetwork):
    """Envelopes published by (chain, emitter, sequence)."""

    def __init__(self):
        self.envelopes: Dict[Tuple[int, bytes, int], bytes] = {}

    def publish(self, chain_id: int, emitter: bytes, sequence: int, envelope: bytes) -> None:
        self.envelopes[(chain_id, bytes(emitter), sequence)] = bytes(envelope)

    async def fetch_envelope(self, chain_id: int, emitter: bytes, sequence: int) -> Optional[bytes]:
        return self.envelopes.get((chain_id, bytes(emitter), sequence))


def demo_fields(index: int, attestation_pubkey: bytes, chain_id: int = CHAIN_SUI) -> SealFields:
    """Deterministic seal fields for simulation runs."""
    return SealFields(
        source_chain_id=chain_id,
        source_contract=bytes.fromhex("ab" * 32),
        token_id=index.to_bytes(32, "big"),
        attestation_pubkey=attestation_pubkey,
        nonce=index,
    )
