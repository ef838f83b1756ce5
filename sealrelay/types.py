"""
Seal Relayer Types

Core data structures flowing through the relay pipeline.

Defines:
  - WorkStatus with its forward-only transition rule
  - SealMetadata (advisory, never part of the seal hash)
  - WorkItem, the unit of work keyed by seal hash
  - SigningState / SigningSession for the two-round signing protocol
  - SealedEvent / EventPage / Cursor for source-ledger ingestion
  - VerificationRecord / ClosureRecord / MintReceipt read back from ledgers
"""

import json
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, List, Optional

from .exceptions import InvalidStatusTransition, MalformedSealBytes, SealHashMismatch
from .protocol.seal_hash import SealFields, compute_seal_hash


# ══════════════════════════════════════════════════════════════════════
#  WORK STATUS
# ══════════════════════════════════════════════════════════════════════

class WorkStatus(IntEnum):
    """Processing status of a work item. Only ever moves forward."""
    OBSERVED = 0   # Seen on the source ledger
    SIGNING  = 1   # Threshold signature in progress
    VERIFIED = 2   # Verification record exists on the destination
    MINTED   = 3   # Reborn asset minted
    CLOSED   = 4   # Source ledger notified
    FAILED   = 9   # Terminal failure, carries a reason

    @property
    def is_terminal(self) -> bool:
        return self in (WorkStatus.CLOSED, WorkStatus.FAILED)


def check_transition(current: WorkStatus, new: WorkStatus) -> None:
    """
    Raise InvalidStatusTransition unless ``current -> new`` is allowed.

    Forward moves are allowed, any non-terminal status may fail, and
    CLOSED / FAILED accept nothing further. Same-status moves are no-ops
    and are not checked here.
    """
    if current == new:
        return
    if current.is_terminal:
        raise InvalidStatusTransition(
            f"{current.name} is terminal, cannot move to {new.name}"
        )
    if new == WorkStatus.FAILED:
        return
    if new < current:
        raise InvalidStatusTransition(
            f"Status may not move backward: {current.name} -> {new.name}"
        )


# ══════════════════════════════════════════════════════════════════════
#  METADATA
# ══════════════════════════════════════════════════════════════════════

@dataclass
class SealMetadata:
    """Advisory display metadata. Never hashed, never trusted."""
    name: str = ""
    description: str = ""
    uri: str = ""
    collection: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "uri": self.uri,
            "collection": self.collection,
        }

    @classmethod
    def from_dict(cls, d: Optional[Dict[str, Any]]) -> 'SealMetadata':
        d = d or {}
        return cls(
            name=str(d.get("name", "") or ""),
            description=str(d.get("description", "") or ""),
            uri=str(d.get("uri", "") or ""),
            collection=str(d.get("collection", "") or ""),
        )


# ══════════════════════════════════════════════════════════════════════
#  WORK ITEM
# ══════════════════════════════════════════════════════════════════════

_IMMUTABLE_FIELDS = ("seal_hash", "fields")


@dataclass
class WorkItem:
    """
    A single seal-and-rebirth cycle.

    ``seal_hash`` and ``fields`` are fixed at creation; only the status and
    the progress evidence change afterwards.

    Attributes:
        seal_hash: 32-byte SHA-256 of the encoded seal fields
        fields: Protocol fields committed by the hash
        metadata: Display metadata for the reborn asset
        source_tx_ref: Source-ledger transaction that sealed the asset
        recipient: End recipient on the destination ledger, if any
        status: Current WorkStatus
        failure_reason: Set when status is FAILED
        signature: Threshold signature over the seal hash
        verify_tx / mint_tx / transfer_tx / close_tx: Ledger transaction refs
        mint_reference: Address of the minted asset
        attempts: Number of times the engine has picked the item up
    """
    seal_hash: bytes
    fields: SealFields
    metadata: SealMetadata = field(default_factory=SealMetadata)
    source_tx_ref: str = ""
    recipient: Optional[str] = None
    status: WorkStatus = WorkStatus.OBSERVED
    failure_reason: str = ""
    signature: Optional[bytes] = None
    verify_tx: str = ""
    mint_reference: str = ""
    mint_tx: str = ""
    transfer_tx: str = ""
    close_tx: str = ""
    attempts: int = 0
    created_at: int = 0
    updated_at: int = 0

    def __post_init__(self):
        expected = compute_seal_hash(self.fields)
        if bytes(self.seal_hash) != expected:
            raise SealHashMismatch(
                f"Declared seal hash {bytes(self.seal_hash).hex()} does not match "
                f"fields hash {expected.hex()}"
            )
        now = int(time.time())
        if not self.created_at:
            self.created_at = now
        if not self.updated_at:
            self.updated_at = self.created_at

    def __setattr__(self, name, value):
        if name in _IMMUTABLE_FIELDS and name in self.__dict__:
            raise AttributeError(f"WorkItem.{name} is immutable")
        super().__setattr__(name, value)

    @classmethod
    def create(
        cls,
        fields: SealFields,
        metadata: Optional[SealMetadata] = None,
        source_tx_ref: str = "",
        recipient: Optional[str] = None,
        declared_seal_hash: Optional[bytes] = None,
    ) -> 'WorkItem':
        """
        Build a new OBSERVED item, computing its seal hash.

        Raises:
            MalformedSealBytes: if the fields cannot be encoded
            SealHashMismatch: if ``declared_seal_hash`` disagrees
        """
        seal_hash = compute_seal_hash(fields)
        if declared_seal_hash is not None and bytes(declared_seal_hash) != seal_hash:
            raise SealHashMismatch(
                f"Declared seal hash {bytes(declared_seal_hash).hex()} does not match "
                f"fields hash {seal_hash.hex()}"
            )
        return cls(
            seal_hash=seal_hash,
            fields=fields,
            metadata=metadata or SealMetadata(),
            source_tx_ref=source_tx_ref,
            recipient=recipient,
        )

    @property
    def seal_hash_hex(self) -> str:
        return self.seal_hash.hex()

    def transition(self, status: WorkStatus, reason: str = "") -> bool:
        """
        Move to ``status``. Returns False for a same-status no-op.

        Raises:
            InvalidStatusTransition: on a backward or post-terminal move
        """
        if status == self.status:
            return False
        check_transition(self.status, status)
        self.status = status
        if status == WorkStatus.FAILED:
            self.failure_reason = reason or "unknown"
        self.updated_at = int(time.time())
        return True

    def fail(self, reason: str) -> bool:
        return self.transition(WorkStatus.FAILED, reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seal_hash": self.seal_hash.hex(),
            "fields": self.fields.to_dict(),
            "metadata": self.metadata.to_dict(),
            "source_tx_ref": self.source_tx_ref,
            "recipient": self.recipient,
            "status": self.status.name,
            "failure_reason": self.failure_reason,
            "signature": self.signature.hex() if self.signature else None,
            "verify_tx": self.verify_tx,
            "mint_reference": self.mint_reference,
            "mint_tx": self.mint_tx,
            "transfer_tx": self.transfer_tx,
            "close_tx": self.close_tx,
            "attempts": self.attempts,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> 'WorkItem':
        signature = d.get("signature")
        return cls(
            seal_hash=bytes.fromhex(d["seal_hash"]),
            fields=SealFields.from_dict(d["fields"]),
            metadata=SealMetadata.from_dict(d.get("metadata")),
            source_tx_ref=d.get("source_tx_ref", ""),
            recipient=d.get("recipient"),
            status=WorkStatus[d.get("status", "OBSERVED")],
            failure_reason=d.get("failure_reason", ""),
            signature=bytes.fromhex(signature) if signature else None,
            verify_tx=d.get("verify_tx", ""),
            mint_reference=d.get("mint_reference", ""),
            mint_tx=d.get("mint_tx", ""),
            transfer_tx=d.get("transfer_tx", ""),
            close_tx=d.get("close_tx", ""),
            attempts=d.get("attempts", 0),
            created_at=d.get("created_at", 0),
            updated_at=d.get("updated_at", 0),
        )


# ══════════════════════════════════════════════════════════════════════
#  SIGNING SESSION
# ══════════════════════════════════════════════════════════════════════

class SessionStatus(IntEnum):
    """Status of a custody-network session as reported by the ledger."""
    PENDING   = 0
    COMPLETED = 1
    REJECTED  = 2


class SigningState(IntEnum):
    IDLE              = 0
    PRESIGN_REQUESTED = 1
    PRESIGN_READY     = 2
    SIGN_REQUESTED    = 3
    SIGN_READY        = 4
    DONE              = 5


@dataclass
class SigningSession:
    """
    Per-item signing progress. Discarded once the signature is copied into
    the WorkItem; only the handles are checkpointed.
    """
    seal_hash: bytes
    attempt: int = 1
    state: SigningState = SigningState.IDLE
    presign_handle: str = ""
    presign_state: SessionStatus = SessionStatus.PENDING
    sign_handle: str = ""
    sign_state: SessionStatus = SessionStatus.PENDING
    signature: Optional[bytes] = None

    @property
    def request_key(self) -> str:
        """Deterministic key for a round; reused on resubmission."""
        return f"{self.seal_hash.hex()}:{self.attempt}"

    def to_checkpoint(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt,
            "state": self.state.name,
            "presign_handle": self.presign_handle,
            "sign_handle": self.sign_handle,
        }

    @classmethod
    def from_checkpoint(cls, seal_hash: bytes, d: Dict[str, Any]) -> 'SigningSession':
        return cls(
            seal_hash=seal_hash,
            attempt=int(d.get("attempt", 1)),
            state=SigningState[d.get("state", "IDLE")],
            presign_handle=d.get("presign_handle", ""),
            sign_handle=d.get("sign_handle", ""),
        )


# ══════════════════════════════════════════════════════════════════════
#  INGESTION
# ══════════════════════════════════════════════════════════════════════

@dataclass
class SealedEvent:
    """
    A sealing event as read from the source ledger, before validation.

    Values are kept raw so a malformed event can still be recorded.
    """
    source_chain_id: int
    source_contract: bytes
    token_id: bytes
    attestation_pubkey: bytes
    nonce: int
    declared_seal_hash: Optional[bytes] = None
    metadata: SealMetadata = field(default_factory=SealMetadata)
    tx_ref: str = ""
    event_id: str = ""
    recipient: Optional[str] = None
    parse_error: str = ""

    def to_fields(self) -> SealFields:
        return SealFields(
            source_chain_id=self.source_chain_id,
            source_contract=bytes(self.source_contract),
            token_id=bytes(self.token_id),
            attestation_pubkey=bytes(self.attestation_pubkey),
            nonce=self.nonce,
        )

    def to_work_item(self) -> WorkItem:
        """
        Raises:
            MalformedSealBytes: on invalid fields or a seal hash mismatch
        """
        if self.parse_error:
            raise MalformedSealBytes(self.parse_error)
        return WorkItem.create(
            self.to_fields(),
            metadata=self.metadata,
            source_tx_ref=self.tx_ref,
            recipient=self.recipient,
            declared_seal_hash=self.declared_seal_hash,
        )


@dataclass(frozen=True)
class Cursor:
    """
    Durable ingestion position.

    ``token`` is the opaque ledger cursor; ``position`` counts events
    consumed and only ever grows.
    """
    token: Optional[str] = None
    position: int = 0

    def to_json(self) -> str:
        return json.dumps({"token": self.token, "position": self.position})

    @classmethod
    def from_json(cls, raw: Optional[str]) -> 'Cursor':
        if not raw:
            return cls()
        d = json.loads(raw)
        return cls(token=d.get("token"), position=int(d.get("position", 0)))


@dataclass
class EventPage:
    events: List[SealedEvent] = field(default_factory=list)
    next_token: Optional[str] = None
    has_next_page: bool = False


@dataclass
class RejectedEvent:
    """A source event that could not become a WorkItem."""
    event_id: str
    reason: str
    seal_hash: str = ""
    tx_ref: str = ""
    recorded_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "status": WorkStatus.FAILED.name,
            "reason": self.reason,
            "seal_hash": self.seal_hash,
            "tx_ref": self.tx_ref,
            "recorded_at": self.recorded_at,
        }


# ══════════════════════════════════════════════════════════════════════
#  LEDGER RECORDS
# ══════════════════════════════════════════════════════════════════════

@dataclass
class VerificationRecord:
    """Destination-ledger record created by a successful verify."""
    seal_hash: bytes
    source_chain_id: int
    source_contract: bytes
    token_id: bytes
    attestation_pubkey: bytes
    recipient: str
    mint: str = ""
    minted: bool = False
    verified_at: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seal_hash": self.seal_hash.hex(),
            "source_chain_id": self.source_chain_id,
            "source_contract": self.source_contract.hex(),
            "token_id": self.token_id.hex(),
            "attestation_pubkey": self.attestation_pubkey.hex(),
            "recipient": self.recipient,
            "mint": self.mint,
            "minted": self.minted,
            "verified_at": self.verified_at,
        }


@dataclass
class MintReceipt:
    mint_reference: str
    tx_ref: str = ""


@dataclass
class ClosureRecord:
    """Source-ledger record that a seal's rebirth has been published."""
    seal_hash: bytes
    destination_reference: str
    closer: str = ""
    tx_ref: str = ""
