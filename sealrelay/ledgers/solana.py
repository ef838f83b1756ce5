"""
Solana Destination Ledger

Builds and submits the destination program's instructions over Solana
JSON-RPC (``getAccountInfo``, ``getLatestBlockhash``, ``sendTransaction``,
``getSignatureStatuses``).

Program accounts (program-derived addresses):
    config       ["ika_config"]
    record       ["reincarnation", seal_hash]
    mint auth    ["reincarnation_mint", seal_hash]
    collection   ["collection", source_chain u16 LE, source_contract]

``verify_seal`` requires the Ed25519 signature-verify instruction at index 0
of the same transaction; the program reads it through the instructions
sysvar.
"""

import base64
import hashlib
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import base58

from ..constants import (
    COLLECTION_SEED,
    CONFIG_SEED,
    CONFIRMATION_POLL_INTERVAL,
    CONFIRMATION_TIMEOUT,
    MAX_NAME_LENGTH,
    MAX_URI_LENGTH,
    MINT_SEED,
    RECORD_SEED,
)
from ..crypto import Keypair, is_on_curve, to_pubkey_bytes
from ..exceptions import ConfirmationTimeout, LedgerCallFailed
from ..logger import get_logger, short_hash
from ..retry import poll_until
from ..types import MintReceipt, VerificationRecord, WorkItem
from .base import DestinationLedger
from .rpc import JsonRpcClient

logger = get_logger(__name__)


SYSTEM_PROGRAM_ID = bytes(32)
ED25519_PROGRAM_ID = base58.b58decode("Ed25519SigVerify111111111111111111111111111")
SYSVAR_INSTRUCTIONS_ID = base58.b58decode("Sysvar1nstructions1111111111111111111111111")
MPL_CORE_PROGRAM_ID = "CoREENxT6tW1HoK8ypY1SxRMZTcVPm7R94rH4PZNhX7d"

# MPL Core TransferV1 instruction index
MPL_CORE_TRANSFER_V1 = 14

_PDA_MARKER = b"ProgramDerivedAddress"
_MAX_SEED_LENGTH = 32


# ══════════════════════════════════════════════════════════════════════
#  ADDRESSES & DISCRIMINATORS
# ══════════════════════════════════════════════════════════════════════

def anchor_discriminator(name: str) -> bytes:
    """First 8 bytes of sha256("global:<name>")."""
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


def create_program_address(seeds: Sequence[bytes], program_id: bytes) -> Optional[bytes]:
    """Hash seeds into an address; None if the result lies on the curve."""
    hasher = hashlib.sha256()
    for seed in seeds:
        if len(seed) > _MAX_SEED_LENGTH:
            raise ValueError(f"Seed longer than {_MAX_SEED_LENGTH} bytes")
        hasher.update(seed)
    hasher.update(program_id)
    hasher.update(_PDA_MARKER)
    address = hasher.digest()
    return None if is_on_curve(address) else address


def find_program_address(seeds: Sequence[bytes], program_id: bytes) -> Tuple[bytes, int]:
    """Highest-bump off-curve address for ``seeds``."""
    for bump in range(255, -1, -1):
        address = create_program_address(list(seeds) + [bytes([bump])], program_id)
        if address is not None:
            return address, bump
    raise ValueError("Unable to find a viable program address bump")


def _chunk_seed(value: bytes) -> List[bytes]:
    # seeds are capped at 32 bytes; longer contract ids span several seeds
    return [value[i:i + _MAX_SEED_LENGTH] for i in range(0, len(value), _MAX_SEED_LENGTH)] or [b""]


class ProgramAddresses:
    """PDA derivation for the destination program."""

    def __init__(self, program_id: bytes):
        self.program_id = program_id

    def config(self) -> bytes:
        return find_program_address([CONFIG_SEED], self.program_id)[0]

    def record(self, seal_hash: bytes) -> bytes:
        return find_program_address([RECORD_SEED, seal_hash], self.program_id)[0]

    def mint_authority(self, seal_hash: bytes) -> bytes:
        return find_program_address([MINT_SEED, seal_hash], self.program_id)[0]

    def collection(self, source_chain_id: int, source_contract: bytes) -> bytes:
        seeds = [COLLECTION_SEED, source_chain_id.to_bytes(2, "little")] + _chunk_seed(source_contract)
        return find_program_address(seeds, self.program_id)[0]


# ══════════════════════════════════════════════════════════════════════
#  INSTRUCTIONS
# ══════════════════════════════════════════════════════════════════════

@dataclass
class AccountMeta:
    pubkey: bytes
    is_signer: bool = False
    is_writable: bool = False


@dataclass
class Instruction:
    program_id: bytes
    accounts: List[AccountMeta] = field(default_factory=list)
    data: bytes = b""


def _vec(value: bytes) -> bytes:
    return len(value).to_bytes(4, "little") + value


def _borsh_string(value: str, max_bytes: int) -> bytes:
    raw = value.encode("utf-8")[:max_bytes]
    # never split a multi-byte character
    raw = raw.decode("utf-8", errors="ignore").encode("utf-8")
    return _vec(raw)


def ed25519_verify_instruction(public_key: bytes, message: bytes, signature: bytes) -> Instruction:
    """
    Ed25519 precompile instruction with all data inline.

    Layout: count u8 | padding u8 | offsets (7 x u16 LE) | pubkey | signature | message
    """
    header_length = 2 + 14
    pubkey_offset = header_length
    signature_offset = pubkey_offset + 32
    message_offset = signature_offset + 64
    this_instruction = 0xFFFF

    offsets = b"".join(v.to_bytes(2, "little") for v in (
        signature_offset,
        this_instruction,
        pubkey_offset,
        this_instruction,
        message_offset,
        len(message),
        this_instruction,
    ))
    data = bytes([1, 0]) + offsets + bytes(public_key) + bytes(signature) + bytes(message)
    return Instruction(program_id=ED25519_PROGRAM_ID, accounts=[], data=data)


def verify_seal_instruction(
    addresses: ProgramAddresses,
    item: WorkItem,
    payer: bytes,
    recipient: bytes,
) -> Instruction:
    fields = item.fields
    data = b"".join((
        anchor_discriminator("verify_seal"),
        item.seal_hash,
        fields.source_chain_id.to_bytes(2, "little"),
        _vec(fields.source_contract),
        _vec(fields.token_id),
        fields.attestation_pubkey,
        recipient,
    ))
    accounts = [
        AccountMeta(addresses.config()),
        AccountMeta(addresses.collection(fields.source_chain_id, fields.source_contract), is_writable=True),
        AccountMeta(addresses.record(item.seal_hash), is_writable=True),
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(recipient),
        AccountMeta(SYSVAR_INSTRUCTIONS_ID),
        AccountMeta(SYSTEM_PROGRAM_ID),
    ]
    return Instruction(program_id=addresses.program_id, accounts=accounts, data=data)


def mint_reborn_instruction(
    addresses: ProgramAddresses,
    seal_hash: bytes,
    mint: bytes,
    payer: bytes,
    mpl_core_program_id: bytes,
    name: str,
    uri: str,
) -> Instruction:
    data = b"".join((
        anchor_discriminator("mint_reborn"),
        seal_hash,
        _borsh_string(name, MAX_NAME_LENGTH),
        _borsh_string(uri, MAX_URI_LENGTH),
    ))
    accounts = [
        AccountMeta(addresses.record(seal_hash), is_writable=True),
        AccountMeta(addresses.mint_authority(seal_hash)),
        AccountMeta(mint, is_signer=True, is_writable=True),
        AccountMeta(payer),
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(mpl_core_program_id),
        AccountMeta(SYSTEM_PROGRAM_ID),
    ]
    return Instruction(program_id=addresses.program_id, accounts=accounts, data=data)


def transfer_asset_instruction(
    asset: bytes,
    payer: bytes,
    new_owner: bytes,
    mpl_core_program_id: bytes,
) -> Instruction:
    """MPL Core TransferV1; optional accounts are filled with the program id."""
    accounts = [
        AccountMeta(asset, is_writable=True),
        AccountMeta(mpl_core_program_id),
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(payer, is_signer=True),
        AccountMeta(new_owner),
        AccountMeta(mpl_core_program_id),
        AccountMeta(mpl_core_program_id),
    ]
    # compression_proof: Option::None
    data = bytes([MPL_CORE_TRANSFER_V1, 0])
    return Instruction(program_id=mpl_core_program_id, accounts=accounts, data=data)


# ══════════════════════════════════════════════════════════════════════
#  TRANSACTION ENCODING (legacy message format)
# ══════════════════════════════════════════════════════════════════════

def encode_compact_u16(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def compile_message(
    payer: bytes,
    instructions: Sequence[Instruction],
    recent_blockhash: bytes,
) -> Tuple[bytes, List[bytes]]:
    """
    Compile a legacy message.

    Returns:
        (message bytes, ordered signer public keys)
    """
    flags: Dict[bytes, List[bool]] = {payer: [True, True]}
    order: List[bytes] = [payer]

    def add(key: bytes, signer: bool, writable: bool) -> None:
        if key in flags:
            flags[key][0] |= signer
            flags[key][1] |= writable
        else:
            flags[key] = [signer, writable]
            order.append(key)

    for ix in instructions:
        for meta in ix.accounts:
            add(meta.pubkey, meta.is_signer, meta.is_writable)
        add(ix.program_id, False, False)

    signed_writable = [k for k in order if flags[k][0] and flags[k][1]]
    signed_readonly = [k for k in order if flags[k][0] and not flags[k][1]]
    unsigned_writable = [k for k in order if not flags[k][0] and flags[k][1]]
    unsigned_readonly = [k for k in order if not flags[k][0] and not flags[k][1]]
    keys = signed_writable + signed_readonly + unsigned_writable + unsigned_readonly
    index = {k: i for i, k in enumerate(keys)}

    parts = [
        bytes([
            len(signed_writable) + len(signed_readonly),
            len(signed_readonly),
            len(unsigned_readonly),
        ]),
        encode_compact_u16(len(keys)),
        b"".join(keys),
        bytes(recent_blockhash),
        encode_compact_u16(len(instructions)),
    ]
    for ix in instructions:
        parts.append(bytes([index[ix.program_id]]))
        parts.append(encode_compact_u16(len(ix.accounts)))
        parts.append(bytes(index[m.pubkey] for m in ix.accounts))
        parts.append(encode_compact_u16(len(ix.data)))
        parts.append(ix.data)

    return b"".join(parts), signed_writable + signed_readonly


def sign_transaction(message: bytes, signer_keys: List[bytes], keypairs: Sequence[Keypair]) -> Tuple[bytes, str]:
    """
    Sign a compiled message.

    Returns:
        (wire transaction bytes, base58 transaction signature)
    """
    by_key = {kp.public_key: kp for kp in keypairs}
    signatures = []
    for key in signer_keys:
        keypair = by_key.get(key)
        if keypair is None:
            raise ValueError(f"Missing signer {base58.b58encode(key).decode()}")
        signatures.append(keypair.sign(message))
    wire = encode_compact_u16(len(signatures)) + b"".join(signatures) + message
    return wire, base58.b58encode(signatures[0]).decode()


# ══════════════════════════════════════════════════════════════════════
#  RECORD DECODING
# ══════════════════════════════════════════════════════════════════════

RECORD_DISCRIMINATOR = account_discriminator("ReincarnationRecord")


def decode_reincarnation_record(data: bytes) -> VerificationRecord:
    """
    Decode a ReincarnationRecord account.

    Layout: discriminator 8 | seal_hash 32 | source_chain u16 LE |
    source_contract vec | token_id vec | attestation_pubkey 32 |
    recipient 32 | mint 32 | minted bool | verified_at i64 LE | bump u8
    """
    try:
        if data[:8] != RECORD_DISCRIMINATOR:
            raise ValueError("not a ReincarnationRecord account")
        offset = 8
        seal_hash = data[offset:offset + 32]
        offset += 32
        source_chain_id = int.from_bytes(data[offset:offset + 2], "little")
        offset += 2

        contract_len = int.from_bytes(data[offset:offset + 4], "little")
        offset += 4
        source_contract = data[offset:offset + contract_len]
        offset += contract_len

        token_len = int.from_bytes(data[offset:offset + 4], "little")
        offset += 4
        token_id = data[offset:offset + token_len]
        offset += token_len

        attestation_pubkey = data[offset:offset + 32]
        offset += 32
        recipient = data[offset:offset + 32]
        offset += 32
        mint = data[offset:offset + 32]
        offset += 32
        minted = bool(data[offset])
        offset += 1
        verified_at = int.from_bytes(data[offset:offset + 8], "little", signed=True)
        offset += 8
        if offset > len(data):
            raise ValueError("record truncated")
    except (IndexError, ValueError) as e:
        raise LedgerCallFailed(f"Undecodable verification record: {e}", ledger="solana") from e

    return VerificationRecord(
        seal_hash=bytes(seal_hash),
        source_chain_id=source_chain_id,
        source_contract=bytes(source_contract),
        token_id=bytes(token_id),
        attestation_pubkey=bytes(attestation_pubkey),
        recipient=base58.b58encode(bytes(recipient)).decode(),
        mint=base58.b58encode(bytes(mint)).decode() if minted else "",
        minted=minted,
        verified_at=verified_at,
    )


# ══════════════════════════════════════════════════════════════════════
#  CLIENT
# ══════════════════════════════════════════════════════════════════════

class SolanaDestinationLedger(DestinationLedger):
    """Destination program client over Solana JSON-RPC."""

    def __init__(
        self,
        rpc: JsonRpcClient,
        program_id: str,
        keypair: Keypair,
        *,
        mpl_core_program_id: str = MPL_CORE_PROGRAM_ID,
        commitment: str = "confirmed",
        confirmation_interval: float = CONFIRMATION_POLL_INTERVAL,
        confirmation_timeout: float = CONFIRMATION_TIMEOUT,
    ):
        self.rpc = rpc
        self.addresses = ProgramAddresses(to_pubkey_bytes(program_id))
        self.keypair = keypair
        self.mpl_core_program_id = to_pubkey_bytes(mpl_core_program_id)
        self.commitment = commitment
        self.confirmation_interval = confirmation_interval
        self.confirmation_timeout = confirmation_timeout

    @property
    def name(self) -> str:
        return "solana"

    @property
    def relayer_identity(self) -> str:
        return self.keypair.address

    async def check_connection(self) -> bool:
        try:
            await self.rpc.call("getVersion")
            return True
        except LedgerCallFailed as e:
            logger.warning(f"Solana connection check failed: {e}")
            return False

    # ── Reads ───────────────────────────────────────────────────────

    async def get_account_data(self, address: bytes) -> Optional[bytes]:
        result = await self.rpc.call("getAccountInfo", [
            base58.b58encode(address).decode(),
            {"encoding": "base64", "commitment": self.commitment},
        ])
        value = (result or {}).get("value")
        if not value:
            return None
        return base64.b64decode(value["data"][0])

    async def get_verification_record(self, seal_hash: bytes) -> Optional[VerificationRecord]:
        data = await self.get_account_data(self.addresses.record(seal_hash))
        if data is None:
            return None
        return decode_reincarnation_record(data)

    async def get_asset_owner(self, mint_reference: str) -> Optional[str]:
        # MPL Core AssetV1: key u8 | owner 32 | ...
        data = await self.get_account_data(to_pubkey_bytes(mint_reference))
        if data is None or len(data) < 33:
            return None
        return base58.b58encode(data[1:33]).decode()

    # ── Writes ──────────────────────────────────────────────────────

    async def submit_verify(self, item: WorkItem, signature: bytes, recipient: str) -> str:
        instructions = [
            ed25519_verify_instruction(item.fields.attestation_pubkey, item.seal_hash, signature),
            verify_seal_instruction(
                self.addresses, item, self.keypair.public_key, to_pubkey_bytes(recipient)
            ),
        ]
        tx_ref = await self._send(instructions, [self.keypair], label=f"verify {short_hash(item.seal_hash)}")
        logger.info(f"Seal verified on Solana: seal={short_hash(item.seal_hash)} tx={tx_ref}")
        return tx_ref

    async def submit_mint(self, item: WorkItem, name: str, uri: str) -> MintReceipt:
        mint_keypair = Keypair.generate()
        instruction = mint_reborn_instruction(
            self.addresses,
            item.seal_hash,
            mint_keypair.public_key,
            self.keypair.public_key,
            self.mpl_core_program_id,
            name,
            uri,
        )
        tx_ref = await self._send(
            [instruction], [self.keypair, mint_keypair], label=f"mint {short_hash(item.seal_hash)}"
        )
        logger.info(f"Reborn asset minted: seal={short_hash(item.seal_hash)} mint={mint_keypair.address}")
        return MintReceipt(mint_reference=mint_keypair.address, tx_ref=tx_ref)

    async def transfer_asset(self, mint_reference: str, recipient: str) -> str:
        instruction = transfer_asset_instruction(
            to_pubkey_bytes(mint_reference),
            self.keypair.public_key,
            to_pubkey_bytes(recipient),
            self.mpl_core_program_id,
        )
        return await self._send([instruction], [self.keypair], label=f"transfer {mint_reference}")

    async def _send(self, instructions: List[Instruction], signers: List[Keypair], label: str) -> str:
        blockhash_result = await self.rpc.call("getLatestBlockhash", [{"commitment": self.commitment}])
        blockhash = base58.b58decode(blockhash_result["value"]["blockhash"])

        message, signer_keys = compile_message(self.keypair.public_key, instructions, blockhash)
        wire, tx_signature = sign_transaction(message, signer_keys, signers)

        await self.rpc.call("sendTransaction", [
            base64.b64encode(wire).decode(),
            {"encoding": "base64", "preflightCommitment": self.commitment},
        ])
        await self._confirm(tx_signature, label)
        return tx_signature

    async def _confirm(self, tx_signature: str, label: str) -> None:
        async def probe():
            result = await self.rpc.call("getSignatureStatuses", [
                [tx_signature], {"searchTransactionHistory": True},
            ])
            status = ((result or {}).get("value") or [None])[0]
            if not status:
                return None
            if status.get("err"):
                raise LedgerCallFailed(
                    f"{label} failed on-chain: {status['err']}", ledger=self.name, exhausted=True
                )
            if status.get("confirmationStatus") in ("confirmed", "finalized"):
                return status
            return None

        await poll_until(
            probe,
            interval=self.confirmation_interval,
            timeout=self.confirmation_timeout,
            label=f"confirm {label}",
            timeout_exc=ConfirmationTimeout,
        )
