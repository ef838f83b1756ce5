"""
Cross-Chain Message Decoder

Decodes the guardian-signed envelope that carries deposit notifications
between ledgers, and the fixed-size deposit record inside it.

Envelope wire format (multi-byte integers big-endian):

    Header
        version             u8      (must be 1)
        guardian_set_index  u32
        signature_count     u8
        signatures          count x (guardian_index u8 + signature 65)
    Body
        timestamp           u32
        nonce               u32
        emitter_chain       u16
        emitter_address     32
        sequence            u64
        consistency_level   u8
        payload             remaining bytes

Deposit payload (exactly 171 bytes):

    payload_id 1 | source_chain 2 | contract 32 | token_id 32 | depositor 32 |
    custodial_address 32 | deposit_block 8 | seal_nonce 32

No trust verification happens here; the destination program checks guardian
signatures.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from eth_utils import keccak

from ..constants import (
    DEPOSIT_PAYLOAD_ID,
    DEPOSIT_PAYLOAD_LENGTH,
    ENVELOPE_BODY_FIXED_LENGTH,
    ENVELOPE_VERSION,
    GUARDIAN_SIGNATURE_LENGTH,
)
from ..exceptions import MalformedPayload


_HEADER_FIXED_LENGTH = 6  # version + guardian_set_index + signature_count
_SIGNATURE_ENTRY_LENGTH = 1 + GUARDIAN_SIGNATURE_LENGTH


# ══════════════════════════════════════════════════════════════════════
#  DATA STRUCTURES
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class GuardianSignature:
    guardian_index: int
    signature: bytes


@dataclass(frozen=True)
class SignedEnvelope:
    """
    A decoded guardian envelope.

    ``body`` keeps the raw body bytes so the digest is computed over exactly
    what the guardians signed.
    """
    version: int
    guardian_set_index: int
    signatures: Tuple[GuardianSignature, ...]
    timestamp: int
    nonce: int
    emitter_chain: int
    emitter_address: bytes
    sequence: int
    consistency_level: int
    payload: bytes
    body: bytes = field(repr=False, default=b"")

    def body_digest(self) -> bytes:
        """Double keccak-256 of the body, as signed by the guardians."""
        return keccak(keccak(self.body))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "guardian_set_index": self.guardian_set_index,
            "signatures": [
                {"guardian_index": s.guardian_index, "signature": s.signature.hex()}
                for s in self.signatures
            ],
            "timestamp": self.timestamp,
            "nonce": self.nonce,
            "emitter_chain": self.emitter_chain,
            "emitter_address": self.emitter_address.hex(),
            "sequence": self.sequence,
            "consistency_level": self.consistency_level,
            "payload": self.payload.hex(),
            "digest": self.body_digest().hex(),
        }


@dataclass(frozen=True)
class DepositNotification:
    """
    Deposit record reported by the source-side custody contract.

    Attributes:
        source_chain_id: Chain the NFT was deposited on
        source_contract: 32-byte contract address (left padded)
        token_id: 32-byte token id
        depositor: 32-byte depositor address
        custodial_address: Address holding the NFT in custody
        deposit_block: Block number of the deposit
        seal_nonce: 32-byte nonce chosen by the depositor
    """
    source_chain_id: int
    source_contract: bytes
    token_id: bytes
    depositor: bytes
    custodial_address: bytes
    deposit_block: int
    seal_nonce: bytes
    payload_id: int = DEPOSIT_PAYLOAD_ID

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payload_id": self.payload_id,
            "source_chain_id": self.source_chain_id,
            "source_contract": self.source_contract.hex(),
            "token_id": self.token_id.hex(),
            "depositor": self.depositor.hex(),
            "custodial_address": self.custodial_address.hex(),
            "deposit_block": self.deposit_block,
            "seal_nonce": self.seal_nonce.hex(),
        }


# ══════════════════════════════════════════════════════════════════════
#  DECODING
# ══════════════════════════════════════════════════════════════════════

def decode_envelope(data: bytes) -> SignedEnvelope:
    """
    Parse a guardian envelope.

    Raises:
        MalformedPayload: on an unknown version or truncated input
    """
    data = bytes(data)
    if len(data) < _HEADER_FIXED_LENGTH:
        raise MalformedPayload(f"Envelope too short: {len(data)} bytes")

    version = data[0]
    if version != ENVELOPE_VERSION:
        raise MalformedPayload(f"Unsupported envelope version {version}")
    guardian_set_index = int.from_bytes(data[1:5], "big")
    signature_count = data[5]

    offset = _HEADER_FIXED_LENGTH
    signatures_end = offset + signature_count * _SIGNATURE_ENTRY_LENGTH
    if signatures_end + ENVELOPE_BODY_FIXED_LENGTH > len(data):
        raise MalformedPayload(
            f"Envelope truncated: {signature_count} signatures need "
            f"{signatures_end + ENVELOPE_BODY_FIXED_LENGTH} bytes, got {len(data)}"
        )

    signatures: List[GuardianSignature] = []
    for _ in range(signature_count):
        signatures.append(GuardianSignature(
            guardian_index=data[offset],
            signature=data[offset + 1:offset + _SIGNATURE_ENTRY_LENGTH],
        ))
        offset += _SIGNATURE_ENTRY_LENGTH

    body = data[offset:]
    timestamp = int.from_bytes(body[0:4], "big")
    nonce = int.from_bytes(body[4:8], "big")
    emitter_chain = int.from_bytes(body[8:10], "big")
    emitter_address = body[10:42]
    sequence = int.from_bytes(body[42:50], "big")
    consistency_level = body[50]
    payload = body[ENVELOPE_BODY_FIXED_LENGTH:]

    return SignedEnvelope(
        version=version,
        guardian_set_index=guardian_set_index,
        signatures=tuple(signatures),
        timestamp=timestamp,
        nonce=nonce,
        emitter_chain=emitter_chain,
        emitter_address=emitter_address,
        sequence=sequence,
        consistency_level=consistency_level,
        payload=payload,
        body=body,
    )


def decode_deposit_payload(payload: bytes) -> DepositNotification:
    """
    Parse the 171-byte deposit record.

    Raises:
        MalformedPayload: if the length is not exactly 171 or the payload id
            is not a deposit
    """
    payload = bytes(payload)
    if len(payload) != DEPOSIT_PAYLOAD_LENGTH:
        raise MalformedPayload(
            f"Deposit payload must be {DEPOSIT_PAYLOAD_LENGTH} bytes, got {len(payload)}"
        )
    payload_id = payload[0]
    if payload_id != DEPOSIT_PAYLOAD_ID:
        raise MalformedPayload(f"Unknown payload id {payload_id}")

    return DepositNotification(
        payload_id=payload_id,
        source_chain_id=int.from_bytes(payload[1:3], "big"),
        source_contract=payload[3:35],
        token_id=payload[35:67],
        depositor=payload[67:99],
        custodial_address=payload[99:131],
        deposit_block=int.from_bytes(payload[131:139], "big"),
        seal_nonce=payload[139:171],
    )


# ══════════════════════════════════════════════════════════════════════
#  ENCODING
# ══════════════════════════════════════════════════════════════════════

def _fixed(value: bytes, size: int, name: str) -> bytes:
    value = bytes(value)
    if len(value) > size:
        raise MalformedPayload(f"{name} longer than {size} bytes")
    return value.rjust(size, b"\x00")


def encode_deposit_payload(notification: DepositNotification) -> bytes:
    """Encode a deposit record. Short address fields are left padded."""
    return b"".join((
        notification.payload_id.to_bytes(1, "big"),
        notification.source_chain_id.to_bytes(2, "big"),
        _fixed(notification.source_contract, 32, "source_contract"),
        _fixed(notification.token_id, 32, "token_id"),
        _fixed(notification.depositor, 32, "depositor"),
        _fixed(notification.custodial_address, 32, "custodial_address"),
        notification.deposit_block.to_bytes(8, "big"),
        _fixed(notification.seal_nonce, 32, "seal_nonce"),
    ))


def encode_envelope_body(
    *,
    timestamp: int,
    nonce: int,
    emitter_chain: int,
    emitter_address: bytes,
    sequence: int,
    consistency_level: int,
    payload: bytes,
) -> bytes:
    return b"".join((
        timestamp.to_bytes(4, "big"),
        nonce.to_bytes(4, "big"),
        emitter_chain.to_bytes(2, "big"),
        _fixed(emitter_address, 32, "emitter_address"),
        sequence.to_bytes(8, "big"),
        consistency_level.to_bytes(1, "big"),
        bytes(payload),
    ))


def encode_envelope(
    body: bytes,
    signatures: List[GuardianSignature] = (),
    guardian_set_index: int = 0,
) -> bytes:
    """Assemble an envelope from a body and its guardian signatures."""
    header = [
        ENVELOPE_VERSION.to_bytes(1, "big"),
        guardian_set_index.to_bytes(4, "big"),
        len(signatures).to_bytes(1, "big"),
    ]
    for sig in signatures:
        if len(sig.signature) != GUARDIAN_SIGNATURE_LENGTH:
            raise MalformedPayload(
                f"Guardian signature must be {GUARDIAN_SIGNATURE_LENGTH} bytes"
            )
        header.append(sig.guardian_index.to_bytes(1, "big"))
        header.append(sig.signature)
    return b"".join(header) + bytes(body)
