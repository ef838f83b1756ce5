"""
Sui Source & Custody Ledgers

Talks to the seal registry and the custody coordinator over Sui JSON-RPC:

  - ``suix_queryEvents``:            NFTSealed events, cursor paged
  - ``suix_getDynamicFieldObject``:  closure / consumed-envelope / session tables
  - ``unsafe_moveCall``:             builds transaction bytes for a Move call
  - ``sui_executeTransactionBlock``: executes the locally signed transaction
  - ``sui_getObject``:               session state and signature output

Transactions are signed locally: Ed25519 over blake2b-256 of the intent
prefix (0, 0, 0) followed by the transaction bytes.
"""

import asyncio
import base64
import hashlib
import json
from typing import Any, Dict, List, Optional

import base58

from ..constants import CHAIN_SUI
from ..crypto import Keypair, to_pubkey_bytes
from ..exceptions import LedgerCallFailed
from ..logger import get_logger, short_hash
from ..types import (
    ClosureRecord,
    Cursor,
    EventPage,
    SealedEvent,
    SealMetadata,
    SessionStatus,
)
from .base import CustodyLedger, SourceLedger
from .rpc import JsonRpcClient

logger = get_logger(__name__)


_TRANSACTION_INTENT = bytes([0, 0, 0])
_ED25519_FLAG = b"\x00"
CLOCK_OBJECT_ID = "0x6"


# ══════════════════════════════════════════════════════════════════════
#  SIGNING & ENCODING HELPERS
# ══════════════════════════════════════════════════════════════════════

def sui_address(public_key: bytes) -> str:
    """Sui address of an Ed25519 public key."""
    return "0x" + hashlib.blake2b(_ED25519_FLAG + public_key, digest_size=32).hexdigest()


def sign_transaction_bytes(keypair: Keypair, tx_bytes: bytes) -> str:
    """Serialized Sui signature (flag | signature | public key), base64."""
    digest = hashlib.blake2b(_TRANSACTION_INTENT + tx_bytes, digest_size=32).digest()
    signature = keypair.sign(digest)
    return base64.b64encode(_ED25519_FLAG + signature + keypair.public_key).decode()


def decode_move_bytes(value: Any) -> bytes:
    """
    Decode a ``vector<u8>`` / address as rendered in parsedJson: a list of
    ints, a 0x hex string, or base64.
    """
    if isinstance(value, list):
        return bytes(value)
    if isinstance(value, str):
        if value.startswith("0x"):
            return bytes.fromhex(value[2:])
        return base64.b64decode(value, validate=True)
    raise ValueError(f"Cannot decode {type(value).__name__} as bytes")


def parse_sealed_event(event: Dict[str, Any]) -> SealedEvent:
    """
    Turn an NFTSealed event into a SealedEvent.

    Parse failures are kept on the event (``parse_error``) so the ingestor
    can record them.
    """
    event_id_obj = event.get("id") or {}
    event_id = f"{event_id_obj.get('txDigest', '')}:{event_id_obj.get('eventSeq', '')}"
    tx_ref = event_id_obj.get("txDigest", "")
    parsed = event.get("parsedJson") or {}

    try:
        declared = parsed.get("seal_hash")
        pubkey = parsed.get("attestation_pubkey", parsed.get("dwallet_pubkey"))
        return SealedEvent(
            source_chain_id=int(parsed.get("source_chain", CHAIN_SUI)),
            source_contract=decode_move_bytes(parsed["source_contract"]),
            token_id=decode_move_bytes(parsed["token_id"]),
            attestation_pubkey=decode_move_bytes(pubkey),
            nonce=int(parsed["nonce"]),
            declared_seal_hash=decode_move_bytes(declared) if declared is not None else None,
            metadata=SealMetadata(
                name=str(parsed.get("nft_name", "") or ""),
                description=str(parsed.get("nft_description", "") or ""),
                uri=str(parsed.get("metadata_uri", "") or ""),
                collection=str(parsed.get("collection_name", "") or ""),
            ),
            tx_ref=tx_ref,
            event_id=event_id,
            recipient=parsed.get("receiver") or None,
        )
    except (KeyError, TypeError, ValueError) as e:
        return SealedEvent(
            source_chain_id=0,
            source_contract=b"",
            token_id=b"",
            attestation_pubkey=b"",
            nonce=0,
            tx_ref=tx_ref,
            event_id=event_id,
            parse_error=f"Unparseable NFTSealed event: {e!r}",
        )


class SuiTransactor:
    """
    Builds, signs and executes Move calls for one Sui account.

    Calls run one at a time in arrival order: concurrent transactions from
    one account race for gas coins and shared object versions. Transactors
    for the same account must share ``lock``.
    """

    def __init__(
        self,
        rpc: JsonRpcClient,
        keypair: Keypair,
        gas_budget: int = 50_000_000,
        lock: Optional[asyncio.Lock] = None,
    ):
        self.rpc = rpc
        self.keypair = keypair
        self.gas_budget = gas_budget
        self.address = sui_address(keypair.public_key)
        self.lock = lock or asyncio.Lock()

    async def move_call(self, package: str, module: str, function: str, arguments: List[Any]) -> Dict[str, Any]:
        """
        Execute ``package::module::function(arguments)``.

        Raises:
            LedgerCallFailed: if the node rejects or the transaction aborts
        """
        async with self.lock:
            return await self._execute(package, module, function, arguments)

    async def _execute(self, package: str, module: str, function: str, arguments: List[Any]) -> Dict[str, Any]:
        built = await self.rpc.call("unsafe_moveCall", [
            self.address,
            package,
            module,
            function,
            [],
            arguments,
            None,
            str(self.gas_budget),
        ])
        tx_bytes_b64 = built["txBytes"]
        signature = sign_transaction_bytes(self.keypair, base64.b64decode(tx_bytes_b64))

        result = await self.rpc.call("sui_executeTransactionBlock", [
            tx_bytes_b64,
            [signature],
            {"showEffects": True, "showEvents": True, "showObjectChanges": True},
            "WaitForLocalExecution",
        ])
        status = ((result or {}).get("effects") or {}).get("status") or {}
        if status.get("status") != "success":
            raise LedgerCallFailed(
                f"{module}::{function} failed: {status.get('error', 'unknown error')}",
                ledger="sui",
            )
        logger.info(f"Sui {module}::{function} executed: {result.get('digest')}")
        return result

    async def get_dynamic_field(self, parent_id: str, key_type: str, key_value: Any) -> Optional[Dict[str, Any]]:
        """Fields of a table entry, or None when the key is absent."""
        result = await self.rpc.call("suix_getDynamicFieldObject", [
            parent_id, {"type": key_type, "value": key_value},
        ])
        if not result or result.get("error") or not result.get("data"):
            return None
        return ((result["data"].get("content") or {}).get("fields")) or {}


def created_object(result: Dict[str, Any], type_suffix: str, event_field: str) -> Optional[str]:
    """Object id of a created session, from object changes or emitted events."""
    for change in result.get("objectChanges") or []:
        if change.get("type") == "created" and str(change.get("objectType", "")).endswith(type_suffix):
            return change.get("objectId")
    for event in result.get("events") or []:
        value = (event.get("parsedJson") or {}).get(event_field)
        if value:
            return value
    return None


# ══════════════════════════════════════════════════════════════════════
#  SOURCE LEDGER
# ══════════════════════════════════════════════════════════════════════

class SuiSourceLedger(SourceLedger):
    """Seal registry and orchestrator on Sui."""

    def __init__(
        self,
        transactor: SuiTransactor,
        package_id: str,
        registry_id: str,
        *,
        reborn_table_id: str = "",
        processed_envelopes_table_id: str = "",
        orchestrator_state_id: str = "",
        wormhole_state_id: str = "",
        close_with_evidence: bool = False,
    ):
        self.transactor = transactor
        self.rpc = transactor.rpc
        self.package_id = package_id
        self.registry_id = registry_id
        self.reborn_table_id = reborn_table_id
        self.processed_envelopes_table_id = processed_envelopes_table_id
        self.orchestrator_state_id = orchestrator_state_id
        self.wormhole_state_id = wormhole_state_id
        self.close_with_evidence = close_with_evidence
        self.event_type = f"{package_id}::registry::NFTSealed"

    @property
    def name(self) -> str:
        return "sui"

    async def check_connection(self) -> bool:
        try:
            await self.rpc.call("sui_getLatestCheckpointSequenceNumber")
            return True
        except LedgerCallFailed as e:
            logger.warning(f"Sui connection check failed: {e}")
            return False

    async def query_sealed_events(self, cursor: Cursor, limit: int) -> EventPage:
        ledger_cursor = json.loads(cursor.token) if cursor.token else None
        result = await self.rpc.call("suix_queryEvents", [
            {"MoveEventType": self.event_type},
            ledger_cursor,
            limit,
            False,
        ]) or {}

        events = [parse_sealed_event(e) for e in result.get("data") or []]
        next_cursor = result.get("nextCursor")
        return EventPage(
            events=events,
            next_token=json.dumps(next_cursor, sort_keys=True) if next_cursor else cursor.token,
            has_next_page=bool(result.get("hasNextPage")),
        )

    async def get_closure(self, seal_hash: bytes) -> Optional[ClosureRecord]:
        if not self.reborn_table_id:
            raise LedgerCallFailed("source.reborn_table_id is not configured", ledger=self.name, exhausted=True)
        fields = await self.transactor.get_dynamic_field(
            self.reborn_table_id, "vector<u8>", list(seal_hash)
        )
        if fields is None:
            return None
        mint = decode_move_bytes(fields.get("value"))
        return ClosureRecord(
            seal_hash=seal_hash,
            destination_reference=base58.b58encode(mint).decode(),
        )

    async def mark_closed(self, seal_hash: bytes, destination_reference: str, evidence: bytes, closer: str) -> str:
        arguments: List[Any] = [
            self.registry_id,
            list(seal_hash),
            "0x" + to_pubkey_bytes(destination_reference).hex(),
        ]
        if self.close_with_evidence:
            arguments += [list(evidence), list(to_pubkey_bytes(closer))]
        result = await self.transactor.move_call(self.package_id, "registry", "mark_reborn", arguments)
        logger.info(f"Marked reborn on Sui: seal={short_hash(seal_hash)} tx={result.get('digest')}")
        return result.get("digest", "")

    async def submit_envelope(self, envelope: bytes) -> str:
        result = await self.transactor.move_call(self.package_id, "orchestrator", "process_vaa", [
            self.orchestrator_state_id,
            self.wormhole_state_id,
            self.registry_id,
            list(envelope),
            CLOCK_OBJECT_ID,
        ])
        return result.get("digest", "")

    async def is_envelope_consumed(self, digest: bytes) -> bool:
        if not self.processed_envelopes_table_id:
            return False
        fields = await self.transactor.get_dynamic_field(
            self.processed_envelopes_table_id, "vector<u8>", list(digest)
        )
        return fields is not None


# ══════════════════════════════════════════════════════════════════════
#  CUSTODY LEDGER
# ══════════════════════════════════════════════════════════════════════

def session_status(fields: Dict[str, Any]) -> SessionStatus:
    """Map a session object's ``state`` field onto SessionStatus."""
    state = fields.get("state")
    if isinstance(state, dict):
        state = state.get("variant") or state.get("type") or ""
    state = str(state or "")
    if state.endswith("Completed"):
        return SessionStatus.COMPLETED
    if state.endswith("Rejected"):
        return SessionStatus.REJECTED
    return SessionStatus.PENDING


class IkaCustodyLedger(CustodyLedger):
    """
    Distributed signing network reached through a custody coordinator
    package. Sessions are indexed by request key in a coordinator table.
    """

    def __init__(
        self,
        transactor: SuiTransactor,
        package_id: str,
        coordinator_id: str,
        dwallet_id: str,
        sessions_table_id: str,
    ):
        self.transactor = transactor
        self.rpc = transactor.rpc
        self.package_id = package_id
        self.coordinator_id = coordinator_id
        self.dwallet_id = dwallet_id
        self.sessions_table_id = sessions_table_id

    @property
    def name(self) -> str:
        return "ika"

    async def _lookup(self, key: str) -> Optional[str]:
        fields = await self.transactor.get_dynamic_field(
            self.sessions_table_id, "0x1::string::String", key
        )
        if fields is None:
            return None
        return fields.get("value")

    async def _object_fields(self, handle: str) -> Dict[str, Any]:
        result = await self.rpc.call("sui_getObject", [handle, {"showContent": True}])
        data = (result or {}).get("data")
        if not data:
            raise LedgerCallFailed(f"Session object {handle} not found", ledger=self.name)
        return (data.get("content") or {}).get("fields") or {}

    async def request_presign(self, request_key: str) -> str:
        result = await self.transactor.move_call(self.package_id, "custody", "request_presign", [
            self.coordinator_id,
            self.dwallet_id,
            f"presign:{request_key}",
        ])
        handle = created_object(result, "PresignSession", "presign_session_id")
        if not handle:
            raise LedgerCallFailed("Presign session id missing from transaction effects", ledger=self.name)
        return handle

    async def find_presign(self, request_key: str) -> Optional[str]:
        return await self._lookup(f"presign:{request_key}")

    async def get_presign_status(self, handle: str) -> SessionStatus:
        return session_status(await self._object_fields(handle))

    async def request_sign(self, presign_handle: str, message: bytes, request_key: str) -> str:
        result = await self.transactor.move_call(self.package_id, "custody", "request_sign", [
            self.coordinator_id,
            self.dwallet_id,
            presign_handle,
            list(message),
            f"sign:{request_key}",
        ])
        handle = created_object(result, "SignSession", "sign_session_id")
        if not handle:
            raise LedgerCallFailed("Sign session id missing from transaction effects", ledger=self.name)
        return handle

    async def find_sign(self, request_key: str) -> Optional[str]:
        return await self._lookup(f"sign:{request_key}")

    async def get_sign_status(self, handle: str) -> SessionStatus:
        return session_status(await self._object_fields(handle))

    async def get_signature(self, handle: str) -> bytes:
        fields = await self._object_fields(handle)
        signature = fields.get("signature")
        if not signature:
            raise LedgerCallFailed(f"Sign session {handle} has no signature", ledger=self.name)
        return decode_move_bytes(signature)
