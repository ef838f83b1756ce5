"""
Seal Hash Codec

Deterministic byte encoding of the cross-chain seal identifier. The source
ledger program computes the same bytes on-chain, so the layout is fixed:

    Offset   Size  Field                  Encoding
    0        2     source_chain_id        u16 big-endian
    2        2     destination_chain_id   u16 big-endian (constant)
    4        1     source_contract_len    u8
    5        N     source_contract        raw bytes
    5+N      1     token_id_len           u8
    6+N      M     token_id               raw bytes
    6+N+M    32    attestation_pubkey     Ed25519 public key
    38+N+M   8     nonce                  u64 big-endian

Total length is 46 + N + M. The seal hash is SHA-256 over these bytes.
"""

import hashlib
from dataclasses import dataclass
from typing import Union

from ..constants import (
    ATTESTATION_PUBKEY_LENGTH,
    CHAIN_BITCOIN,
    CHAIN_ETHEREUM,
    CHAIN_NEAR,
    CHAIN_SOLANA,
    CHAIN_SUI,
    CHAIN_APTOS,
    DESTINATION_CHAIN_ID,
    MAX_CHAIN_ID,
    MAX_CONTRACT_LENGTH,
    MAX_NONCE,
    MAX_TOKEN_ID_LENGTH,
    SEAL_FIXED_LENGTH,
)
from ..exceptions import MalformedSealBytes


@dataclass(frozen=True)
class SealFields:
    """
    The protocol fields a seal hash commits to.

    Attributes:
        source_chain_id: Chain the asset was sealed on (u16)
        source_contract: Contract / collection identifier (at most 64 bytes)
        token_id: Token identifier (at most 64 bytes)
        attestation_pubkey: 32-byte key of the custody signer
        nonce: 64-bit replay nonce
    """
    source_chain_id: int
    source_contract: bytes
    token_id: bytes
    attestation_pubkey: bytes
    nonce: int

    @property
    def destination_chain_id(self) -> int:
        return DESTINATION_CHAIN_ID

    def validate(self) -> None:
        """Raise MalformedSealBytes if any field cannot be encoded."""
        if not isinstance(self.source_chain_id, int) or not 0 <= self.source_chain_id <= MAX_CHAIN_ID:
            raise MalformedSealBytes(f"source_chain_id out of u16 range: {self.source_chain_id!r}")
        if len(self.source_contract) > MAX_CONTRACT_LENGTH:
            raise MalformedSealBytes(
                f"Source contract too long: {len(self.source_contract)} bytes (max {MAX_CONTRACT_LENGTH})"
            )
        if len(self.token_id) > MAX_TOKEN_ID_LENGTH:
            raise MalformedSealBytes(
                f"Token ID too long: {len(self.token_id)} bytes (max {MAX_TOKEN_ID_LENGTH})"
            )
        if len(self.attestation_pubkey) != ATTESTATION_PUBKEY_LENGTH:
            raise MalformedSealBytes(
                f"Attestation pubkey must be {ATTESTATION_PUBKEY_LENGTH} bytes, "
                f"got {len(self.attestation_pubkey)}"
            )
        # bool is an int subclass; a flag is never a nonce
        if isinstance(self.nonce, bool) or not isinstance(self.nonce, int):
            raise MalformedSealBytes(f"nonce must be an integer, got {type(self.nonce).__name__}")
        if not 0 <= self.nonce <= MAX_NONCE:
            raise MalformedSealBytes(f"nonce out of u64 range: {self.nonce}")

    def to_dict(self) -> dict:
        return {
            "source_chain_id": self.source_chain_id,
            "destination_chain_id": self.destination_chain_id,
            "source_contract": self.source_contract.hex(),
            "token_id": self.token_id.hex(),
            "attestation_pubkey": self.attestation_pubkey.hex(),
            "nonce": str(self.nonce),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SealFields":
        return cls(
            source_chain_id=int(d["source_chain_id"]),
            source_contract=bytes.fromhex(d["source_contract"]),
            token_id=bytes.fromhex(d["token_id"]),
            attestation_pubkey=bytes.fromhex(d["attestation_pubkey"]),
            nonce=int(d["nonce"]),
        )


def encode_seal_bytes(fields: SealFields) -> bytes:
    """
    Encode seal fields into the fixed on-chain layout.

    Raises:
        MalformedSealBytes: if a field is out of range
    """
    fields.validate()
    contract = bytes(fields.source_contract)
    token_id = bytes(fields.token_id)
    return b"".join((
        fields.source_chain_id.to_bytes(2, "big"),
        DESTINATION_CHAIN_ID.to_bytes(2, "big"),
        len(contract).to_bytes(1, "big"),
        contract,
        len(token_id).to_bytes(1, "big"),
        token_id,
        bytes(fields.attestation_pubkey),
        fields.nonce.to_bytes(8, "big"),
    ))


def compute_seal_hash(fields: SealFields) -> bytes:
    """SHA-256 digest of the encoded seal bytes (32 bytes)."""
    return hashlib.sha256(encode_seal_bytes(fields)).digest()


def seal_hash_hex(fields: SealFields) -> str:
    return compute_seal_hash(fields).hex()


def decode_seal_bytes(data: bytes) -> SealFields:
    """
    Parse encoded seal bytes back into their fields.

    Field boundaries come from the two length prefixes. Any declared length
    that runs past the buffer, a truncated tail, trailing bytes or a foreign
    destination chain id is rejected.

    Raises:
        MalformedSealBytes: on any layout violation
    """
    data = bytes(data)
    if len(data) < SEAL_FIXED_LENGTH:
        raise MalformedSealBytes(
            f"Seal bytes too short: {len(data)} bytes (min {SEAL_FIXED_LENGTH})"
        )

    offset = 0
    source_chain_id = int.from_bytes(data[offset:offset + 2], "big")
    offset += 2
    destination_chain_id = int.from_bytes(data[offset:offset + 2], "big")
    offset += 2
    if destination_chain_id != DESTINATION_CHAIN_ID:
        raise MalformedSealBytes(
            f"Unexpected destination chain {destination_chain_id}, expected {DESTINATION_CHAIN_ID}"
        )

    contract_len = data[offset]
    offset += 1
    if contract_len > MAX_CONTRACT_LENGTH:
        raise MalformedSealBytes(f"Declared contract length {contract_len} exceeds {MAX_CONTRACT_LENGTH}")
    if offset + contract_len + 1 > len(data):
        raise MalformedSealBytes(
            f"Declared contract length {contract_len} exceeds remaining {len(data) - offset} bytes"
        )
    source_contract = data[offset:offset + contract_len]
    offset += contract_len

    token_len = data[offset]
    offset += 1
    if token_len > MAX_TOKEN_ID_LENGTH:
        raise MalformedSealBytes(f"Declared token id length {token_len} exceeds {MAX_TOKEN_ID_LENGTH}")
    remaining = len(data) - offset
    if token_len > remaining:
        raise MalformedSealBytes(
            f"Declared token id length {token_len} exceeds remaining {remaining} bytes"
        )
    token_id = data[offset:offset + token_len]
    offset += token_len

    tail = len(data) - offset
    if tail != ATTESTATION_PUBKEY_LENGTH + 8:
        raise MalformedSealBytes(
            f"Expected {ATTESTATION_PUBKEY_LENGTH + 8} bytes of pubkey and nonce, found {tail}"
        )
    attestation_pubkey = data[offset:offset + ATTESTATION_PUBKEY_LENGTH]
    offset += ATTESTATION_PUBKEY_LENGTH
    nonce = int.from_bytes(data[offset:offset + 8], "big")

    return SealFields(
        source_chain_id=source_chain_id,
        source_contract=source_contract,
        token_id=token_id,
        attestation_pubkey=attestation_pubkey,
        nonce=nonce,
    )


def encode_token_id(token_id: Union[str, int, bytes], chain_id: int) -> bytes:
    """
    Encode a source-chain token identifier into the bytes committed by the
    seal hash.

    - Ethereum: uint256 as 32 big-endian bytes
    - Sui / Solana / Aptos: 32 raw object bytes (hex string or bytes)
    - Bitcoin: ``txid:index`` as 32 txid bytes + u16 index
    - NEAR: UTF-8 token string
    """
    if chain_id == CHAIN_ETHEREUM:
        if isinstance(token_id, bytes):
            value = int.from_bytes(token_id, "big")
        elif isinstance(token_id, str):
            value = int(token_id, 0) if token_id.startswith(("0x", "0X")) else int(token_id)
        else:
            value = int(token_id)
        if not 0 <= value < (1 << 256):
            raise MalformedSealBytes(f"EVM token id out of uint256 range: {value}")
        return value.to_bytes(32, "big")

    if chain_id in (CHAIN_SUI, CHAIN_SOLANA, CHAIN_APTOS):
        if isinstance(token_id, bytes):
            raw = token_id
        elif isinstance(token_id, str):
            raw = bytes.fromhex(token_id[2:] if token_id.startswith("0x") else token_id)
        else:
            raise MalformedSealBytes(f"Object token id must be hex or bytes, got {type(token_id).__name__}")
        if len(raw) != 32:
            raise MalformedSealBytes(f"Object token id must be 32 bytes, got {len(raw)}")
        return raw

    if chain_id == CHAIN_BITCOIN:
        if isinstance(token_id, bytes):
            return token_id
        txid, sep, index = str(token_id).partition(":")
        if not sep or not txid or not index:
            raise MalformedSealBytes("Bitcoin token id must be txid:index format")
        txid_bytes = bytes.fromhex(txid)
        if len(txid_bytes) != 32:
            raise MalformedSealBytes(f"Bitcoin txid must be 32 bytes, got {len(txid_bytes)}")
        return txid_bytes + int(index).to_bytes(2, "big")

    if chain_id == CHAIN_NEAR:
        if isinstance(token_id, bytes):
            return token_id
        return str(token_id).encode("utf-8")

    raise MalformedSealBytes(f"Unknown source chain: {chain_id}")
