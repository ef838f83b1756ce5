"""
Ledger Client Test Suite

Coverage:
  - JSON-RPC and REST transport over httpx (mocked transport)
  - Sui helpers, source ledger and custody coordinator client
  - Solana addresses, instruction and transaction encoding, record decoding
  - Solana destination client send/confirm flow
  - Guardian and metadata HTTP clients
  - In-memory ledger rules
"""

import asyncio
import base64
import hashlib
import json
import os
import sys
from unittest.mock import AsyncMock, MagicMock

import base58
import httpx
import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sealrelay.crypto import Keypair, is_on_curve, verify_signature
from sealrelay.exceptions import ConfirmationTimeout, LedgerCallFailed
from sealrelay.ledgers.guardian import WormholeGuardianClient
from sealrelay.ledgers.memory import InMemoryDestinationLedger, demo_fields
from sealrelay.ledgers.metadata import HttpMetadataResolver
from sealrelay.ledgers.rpc import JsonRpcClient, JsonRpcError
from sealrelay.ledgers.solana import (
    ED25519_PROGRAM_ID,
    RECORD_DISCRIMINATOR,
    ProgramAddresses,
    SolanaDestinationLedger,
    anchor_discriminator,
    compile_message,
    create_program_address,
    decode_reincarnation_record,
    ed25519_verify_instruction,
    encode_compact_u16,
    find_program_address,
    mint_reborn_instruction,
    sign_transaction,
    transfer_asset_instruction,
)
from sealrelay.ledgers.sui import (
    IkaCustodyLedger,
    SuiSourceLedger,
    SuiTransactor,
    created_object,
    decode_move_bytes,
    parse_sealed_event,
    session_status,
    sign_transaction_bytes,
    sui_address,
)
from sealrelay.types import Cursor, SessionStatus, WorkItem

PROGRAM_ID = bytes(range(1, 33))
CUSTODY = Keypair.generate()


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def rpc_reply(request: httpx.Request, result=None, error=None) -> httpx.Response:
    payload = json.loads(request.content)
    body = {"jsonrpc": "2.0", "id": payload["id"]}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    return httpx.Response(200, json=body)


def mock_transactor() -> MagicMock:
    transactor = MagicMock()
    transactor.rpc = MagicMock()
    transactor.rpc.call = AsyncMock()
    transactor.move_call = AsyncMock(return_value={"digest": "Digest1"})
    transactor.get_dynamic_field = AsyncMock(return_value=None)
    return transactor


# ══════════════════════════════════════════════════════════════════════
#  SECTION 1: TRANSPORT
# ══════════════════════════════════════════════════════════════════════

class TestJsonRpcClient:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        seen = []

        def handler(request):
            payload = json.loads(request.content)
            seen.append(payload)
            return rpc_reply(request, result={"ok": True})

        rpc = JsonRpcClient("http://node", ledger="sui", client=mock_client(handler))
        assert await rpc.call("sui_getObject", ["0x1"]) == {"ok": True}
        await rpc.call("sui_getObject")
        assert seen[0]["method"] == "sui_getObject"
        assert seen[0]["params"] == ["0x1"]
        assert seen[1]["params"] == []
        assert seen[1]["id"] == seen[0]["id"] + 1

    @pytest.mark.asyncio
    async def test_error_object(self):
        def handler(request):
            return rpc_reply(request, error={"code": -32602, "message": "bad params"})

        rpc = JsonRpcClient("http://node", ledger="solana", client=mock_client(handler))
        with pytest.raises(JsonRpcError) as exc:
            await rpc.call("getAccountInfo", ["x"])
        assert exc.value.code == -32602
        assert exc.value.ledger == "solana"
        assert "bad params" in str(exc.value)
        assert not exc.value.fatal

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        rpc = JsonRpcClient("http://node", ledger="sui", client=mock_client(lambda r: httpx.Response(500)))
        with pytest.raises(LedgerCallFailed):
            await rpc.call("suix_queryEvents")

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        rpc = JsonRpcClient("http://node", ledger="sui", client=mock_client(handler))
        with pytest.raises(LedgerCallFailed) as exc:
            await rpc.call("suix_queryEvents")
        assert exc.value.ledger == "sui"

    @pytest.mark.asyncio
    async def test_malformed_reply(self):
        rpc = JsonRpcClient("http://node", ledger="sui", client=mock_client(lambda r: httpx.Response(200, json=[1])))
        with pytest.raises(LedgerCallFailed, match="malformed"):
            await rpc.call("sui_getObject")

    @pytest.mark.asyncio
    async def test_close_leaves_shared_client_open(self):
        client = mock_client(lambda r: rpc_reply(r, result=1))
        rpc = JsonRpcClient("http://node", ledger="sui", client=client)
        await rpc.close()
        assert not client.is_closed
        await client.aclose()


class TestGuardianClient:

    @pytest.mark.asyncio
    async def test_fetch(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={"vaaBytes": base64.b64encode(b"\x01signed").decode()})

        guardian = WormholeGuardianClient("http://guardian/", client=mock_client(handler))
        assert await guardian.fetch_envelope(2, b"\xee" * 32, 7) == b"\x01signed"
        assert paths == [f"/api/v1/signed_vaa/2/{'ee' * 32}/7"]

    @pytest.mark.asyncio
    async def test_not_signed_yet(self):
        guardian = WormholeGuardianClient("http://guardian", client=mock_client(lambda r: httpx.Response(404)))
        assert await guardian.fetch_envelope(2, b"\xee" * 32, 7) is None

    @pytest.mark.asyncio
    async def test_server_error(self):
        guardian = WormholeGuardianClient("http://guardian", client=mock_client(lambda r: httpx.Response(503)))
        with pytest.raises(LedgerCallFailed):
            await guardian.fetch_envelope(2, b"\xee" * 32, 7)

    @pytest.mark.asyncio
    async def test_undecodable(self):
        guardian = WormholeGuardianClient(
            "http://guardian", client=mock_client(lambda r: httpx.Response(200, json={"vaaBytes": "abc"}))
        )
        with pytest.raises(LedgerCallFailed, match="undecodable"):
            await guardian.fetch_envelope(2, b"\xee" * 32, 7)


class TestMetadataResolver:

    @pytest.mark.asyncio
    async def test_resolve(self):
        def handler(request):
            assert request.url.path == f"/2/{'ab' * 4}/{'00' * 31}01"
            return httpx.Response(200, json={"name": "Seal #1", "image": "ipfs://img", "collection": "Seals"})

        resolver = HttpMetadataResolver("http://meta", client=mock_client(handler))
        metadata = await resolver.resolve(2, b"\xab" * 4, (1).to_bytes(32, "big"))
        assert metadata.name == "Seal #1"
        assert metadata.uri == "ipfs://img"
        assert metadata.collection == "Seals"
        assert metadata.description == ""

    @pytest.mark.asyncio
    async def test_unknown_token(self):
        resolver = HttpMetadataResolver("http://meta", client=mock_client(lambda r: httpx.Response(404)))
        metadata = await resolver.resolve(2, b"\xab", b"\x01")
        assert metadata.name == ""
        assert metadata.uri == ""


# ══════════════════════════════════════════════════════════════════════
#  SECTION 2: SUI
# ══════════════════════════════════════════════════════════════════════

def sealed_event_json(**overrides) -> dict:
    parsed = {
        "source_chain": "2",
        "source_contract": [0xAB] * 32,
        "token_id": "0x" + "00" * 31 + "01",
        "attestation_pubkey": list(CUSTODY.public_key),
        "nonce": "5",
        "seal_hash": [0x11] * 32,
        "nft_name": "Seal #1",
        "metadata_uri": "https://x/1",
        "receiver": "Recv111",
    }
    parsed.update(overrides)
    return {"id": {"txDigest": "TxA", "eventSeq": "3"}, "parsedJson": parsed}


class TestSuiHelpers:

    def test_address(self):
        address = sui_address(CUSTODY.public_key)
        assert address.startswith("0x")
        assert len(address) == 66
        expected = hashlib.blake2b(b"\x00" + CUSTODY.public_key, digest_size=32).hexdigest()
        assert address == "0x" + expected

    def test_transaction_signature(self):
        raw = base64.b64decode(sign_transaction_bytes(CUSTODY, b"tx-bytes"))
        assert len(raw) == 1 + 64 + 32
        assert raw[0] == 0
        assert raw[65:] == CUSTODY.public_key
        digest = hashlib.blake2b(bytes([0, 0, 0]) + b"tx-bytes", digest_size=32).digest()
        assert verify_signature(CUSTODY.public_key, digest, raw[1:65])

    @pytest.mark.parametrize("value,expected", [
        ([1, 2, 3], b"\x01\x02\x03"),
        ("0x0a0b", b"\x0a\x0b"),
        (base64.b64encode(b"seal").decode(), b"seal"),
        ([], b""),
    ])
    def test_decode_move_bytes(self, value, expected):
        assert decode_move_bytes(value) == expected

    @pytest.mark.parametrize("value", [7, None, "not base64!"])
    def test_decode_move_bytes_rejects(self, value):
        with pytest.raises(ValueError):
            decode_move_bytes(value)

    def test_parse_event(self):
        event = parse_sealed_event(sealed_event_json())
        assert event.parse_error == ""
        assert event.source_chain_id == 2
        assert event.source_contract == b"\xab" * 32
        assert event.token_id == (1).to_bytes(32, "big")
        assert event.attestation_pubkey == CUSTODY.public_key
        assert event.nonce == 5
        assert event.declared_seal_hash == b"\x11" * 32
        assert event.metadata.name == "Seal #1"
        assert event.event_id == "TxA:3"
        assert event.tx_ref == "TxA"
        assert event.recipient == "Recv111"

    def test_parse_event_legacy_pubkey_field(self):
        raw = sealed_event_json()
        raw["parsedJson"]["dwallet_pubkey"] = raw["parsedJson"].pop("attestation_pubkey")
        assert parse_sealed_event(raw).attestation_pubkey == CUSTODY.public_key

    def test_parse_event_failure_kept(self):
        raw = sealed_event_json()
        del raw["parsedJson"]["nonce"]
        event = parse_sealed_event(raw)
        assert "Unparseable" in event.parse_error
        assert event.event_id == "TxA:3"

    @pytest.mark.parametrize("state,expected", [
        ("Completed", SessionStatus.COMPLETED),
        ({"variant": "SignRejected"}, SessionStatus.REJECTED),
        ({"type": "0x1::custody::Completed"}, SessionStatus.COMPLETED),
        ("Requested", SessionStatus.PENDING),
        (None, SessionStatus.PENDING),
    ])
    def test_session_status(self, state, expected):
        assert session_status({"state": state}) == expected

    def test_created_object(self):
        from_changes = {"objectChanges": [
            {"type": "mutated", "objectType": "0x2::coin::Coin", "objectId": "0xcoin"},
            {"type": "created", "objectType": "0xpkg::custody::PresignSession", "objectId": "0xpresign"},
        ]}
        assert created_object(from_changes, "PresignSession", "presign_session_id") == "0xpresign"

        from_events = {"events": [{"parsedJson": {"sign_session_id": "0xsign"}}]}
        assert created_object(from_events, "SignSession", "sign_session_id") == "0xsign"
        assert created_object({}, "SignSession", "sign_session_id") is None


class TestSuiTransactor:

    @pytest.mark.asyncio
    async def test_move_call(self):
        rpc = MagicMock()
        rpc.call = AsyncMock(side_effect=[
            {"txBytes": base64.b64encode(b"built").decode()},
            {"digest": "D1", "effects": {"status": {"status": "success"}}},
        ])
        transactor = SuiTransactor(rpc, CUSTODY)
        result = await transactor.move_call("0xpkg", "registry", "mark_reborn", ["0xreg"])
        assert result["digest"] == "D1"

        build_call, execute_call = rpc.call.await_args_list
        assert build_call.args[0] == "unsafe_moveCall"
        assert build_call.args[1][0] == transactor.address
        assert execute_call.args[0] == "sui_executeTransactionBlock"
        assert execute_call.args[1][1] == [sign_transaction_bytes(CUSTODY, b"built")]

    @pytest.mark.asyncio
    async def test_move_call_abort(self):
        rpc = MagicMock()
        rpc.call = AsyncMock(side_effect=[
            {"txBytes": base64.b64encode(b"built").decode()},
            {"digest": "D1", "effects": {"status": {"status": "failure", "error": "MoveAbort 3"}}},
        ])
        with pytest.raises(LedgerCallFailed, match="MoveAbort 3"):
            await SuiTransactor(rpc, CUSTODY).move_call("0xpkg", "registry", "mark_reborn", [])

    @pytest.mark.asyncio
    async def test_concurrent_calls_run_in_order(self):
        methods = []

        async def handler(request):
            method = json.loads(request.content)["method"]
            methods.append(method)
            await asyncio.sleep(0.01)
            if method == "unsafe_moveCall":
                return rpc_reply(request, result={"txBytes": base64.b64encode(b"built").decode()})
            return rpc_reply(request, result={"digest": "D1", "effects": {"status": {"status": "success"}}})

        rpc = JsonRpcClient("http://node", ledger="sui", client=mock_client(handler))
        transactor = SuiTransactor(rpc, CUSTODY)
        await asyncio.gather(
            transactor.move_call("0xpkg", "registry", "mark_reborn", []),
            transactor.move_call("0xpkg", "registry", "process_vaa", []),
        )
        assert methods == ["unsafe_moveCall", "sui_executeTransactionBlock"] * 2

    @pytest.mark.asyncio
    async def test_shared_lock_across_transactors(self):
        lock = asyncio.Lock()
        first = SuiTransactor(MagicMock(), CUSTODY, lock=lock)
        second = SuiTransactor(MagicMock(), CUSTODY, lock=first.lock)
        assert second.lock is lock
        assert SuiTransactor(MagicMock(), CUSTODY).lock is not lock

    @pytest.mark.asyncio
    async def test_dynamic_field(self):
        rpc = MagicMock()
        rpc.call = AsyncMock(side_effect=[
            {"data": {"content": {"fields": {"value": "0xhandle"}}}},
            {"error": {"code": "dynamicFieldNotFound"}},
        ])
        transactor = SuiTransactor(rpc, CUSTODY)
        assert await transactor.get_dynamic_field("0xtable", "vector<u8>", [1]) == {"value": "0xhandle"}
        assert await transactor.get_dynamic_field("0xtable", "vector<u8>", [2]) is None


class TestSuiSourceLedger:

    def make_ledger(self, transactor, **kwargs) -> SuiSourceLedger:
        kwargs.setdefault("reborn_table_id", "0xtable")
        return SuiSourceLedger(transactor, "0xpkg", "0xregistry", **kwargs)

    @pytest.mark.asyncio
    async def test_query_events_pages_with_cursor(self):
        transactor = mock_transactor()
        next_cursor = {"txDigest": "TxB", "eventSeq": "0"}
        transactor.rpc.call.return_value = {
            "data": [sealed_event_json()],
            "nextCursor": next_cursor,
            "hasNextPage": True,
        }
        ledger = self.make_ledger(transactor)

        page = await ledger.query_sealed_events(Cursor(), 25)
        assert len(page.events) == 1
        assert page.has_next_page
        params = transactor.rpc.call.await_args.args[1]
        assert params[0] == {"MoveEventType": "0xpkg::registry::NFTSealed"}
        assert params[1] is None
        assert params[2] == 25

        await ledger.query_sealed_events(Cursor(token=page.next_token), 25)
        assert transactor.rpc.call.await_args.args[1][1] == next_cursor

    @pytest.mark.asyncio
    async def test_query_events_keeps_cursor_when_empty(self):
        transactor = mock_transactor()
        transactor.rpc.call.return_value = {"data": [], "nextCursor": None, "hasNextPage": False}
        page = await self.make_ledger(transactor).query_sealed_events(Cursor(token='{"a": 1}'), 10)
        assert page.events == []
        assert page.next_token == '{"a": 1}'

    @pytest.mark.asyncio
    async def test_get_closure(self):
        transactor = mock_transactor()
        mint = bytes(range(32))
        transactor.get_dynamic_field.return_value = {"value": list(mint)}
        closure = await self.make_ledger(transactor).get_closure(b"\x11" * 32)
        assert closure.destination_reference == base58.b58encode(mint).decode()
        assert transactor.get_dynamic_field.await_args.args == ("0xtable", "vector<u8>", [0x11] * 32)

    @pytest.mark.asyncio
    async def test_get_closure_absent(self):
        assert await self.make_ledger(mock_transactor()).get_closure(b"\x11" * 32) is None

    @pytest.mark.asyncio
    async def test_get_closure_needs_table(self):
        ledger = self.make_ledger(mock_transactor(), reborn_table_id="")
        with pytest.raises(LedgerCallFailed) as exc:
            await ledger.get_closure(b"\x11" * 32)
        assert exc.value.fatal

    @pytest.mark.asyncio
    async def test_mark_closed(self):
        transactor = mock_transactor()
        mint = Keypair.generate()
        tx = await self.make_ledger(transactor).mark_closed(b"\x11" * 32, mint.address, b"\x22" * 64, CUSTODY.address)
        assert tx == "Digest1"
        package, module, function, arguments = transactor.move_call.await_args.args
        assert (package, module, function) == ("0xpkg", "registry", "mark_reborn")
        assert arguments == ["0xregistry", [0x11] * 32, "0x" + mint.public_key.hex()]

    @pytest.mark.asyncio
    async def test_mark_closed_with_evidence(self):
        transactor = mock_transactor()
        ledger = self.make_ledger(transactor, close_with_evidence=True)
        await ledger.mark_closed(b"\x11" * 32, CUSTODY.address, b"\x22" * 64, CUSTODY.address)
        arguments = transactor.move_call.await_args.args[3]
        assert arguments[3] == [0x22] * 64
        assert arguments[4] == list(CUSTODY.public_key)

    @pytest.mark.asyncio
    async def test_envelopes(self):
        transactor = mock_transactor()
        ledger = self.make_ledger(
            transactor,
            processed_envelopes_table_id="0xprocessed",
            orchestrator_state_id="0xorch",
            wormhole_state_id="0xwormhole",
        )
        assert await ledger.submit_envelope(b"\x01\x02") == "Digest1"
        assert transactor.move_call.await_args.args[2] == "process_vaa"
        assert transactor.move_call.await_args.args[3][3] == [1, 2]

        assert not await ledger.is_envelope_consumed(b"\x33" * 32)
        transactor.get_dynamic_field.return_value = {"value": True}
        assert await ledger.is_envelope_consumed(b"\x33" * 32)

    @pytest.mark.asyncio
    async def test_consumed_without_table(self):
        transactor = mock_transactor()
        assert not await self.make_ledger(transactor).is_envelope_consumed(b"\x33" * 32)
        transactor.get_dynamic_field.assert_not_awaited()


class TestIkaCustodyLedger:

    def make_ledger(self, transactor) -> IkaCustodyLedger:
        return IkaCustodyLedger(transactor, "0xpkg", "0xcoord", "0xdwallet", "0xsessions")

    @pytest.mark.asyncio
    async def test_find_by_request_key(self):
        transactor = mock_transactor()
        transactor.get_dynamic_field.return_value = {"value": "0xpresign"}
        ledger = self.make_ledger(transactor)
        assert await ledger.find_presign("abcd:0") == "0xpresign"
        assert transactor.get_dynamic_field.await_args.args == ("0xsessions", "0x1::string::String", "presign:abcd:0")
        await ledger.find_sign("abcd:0")
        assert transactor.get_dynamic_field.await_args.args[2] == "sign:abcd:0"

    @pytest.mark.asyncio
    async def test_find_missing(self):
        assert await self.make_ledger(mock_transactor()).find_sign("abcd:1") is None

    @pytest.mark.asyncio
    async def test_request_presign(self):
        transactor = mock_transactor()
        transactor.move_call.return_value = {"objectChanges": [
            {"type": "created", "objectType": "0xpkg::custody::PresignSession", "objectId": "0xp1"},
        ]}
        assert await self.make_ledger(transactor).request_presign("abcd:0") == "0xp1"
        assert transactor.move_call.await_args.args[3] == ["0xcoord", "0xdwallet", "presign:abcd:0"]

    @pytest.mark.asyncio
    async def test_request_presign_without_session(self):
        transactor = mock_transactor()
        with pytest.raises(LedgerCallFailed):
            await self.make_ledger(transactor).request_presign("abcd:0")

    @pytest.mark.asyncio
    async def test_request_sign(self):
        transactor = mock_transactor()
        transactor.move_call.return_value = {"events": [{"parsedJson": {"sign_session_id": "0xs1"}}]}
        handle = await self.make_ledger(transactor).request_sign("0xp1", b"\x11" * 32, "abcd:0")
        assert handle == "0xs1"
        arguments = transactor.move_call.await_args.args[3]
        assert arguments[2:] == ["0xp1", [0x11] * 32, "sign:abcd:0"]

    @pytest.mark.asyncio
    async def test_status_and_signature(self):
        transactor = mock_transactor()
        transactor.rpc.call.return_value = {"data": {"content": {"fields": {
            "state": {"variant": "Completed"},
            "signature": list(b"\x44" * 64),
        }}}}
        ledger = self.make_ledger(transactor)
        assert await ledger.get_presign_status("0xp1") == SessionStatus.COMPLETED
        assert await ledger.get_sign_status("0xs1") == SessionStatus.COMPLETED
        assert await ledger.get_signature("0xs1") == b"\x44" * 64

    @pytest.mark.asyncio
    async def test_missing_object(self):
        transactor = mock_transactor()
        transactor.rpc.call.return_value = {"error": {"code": "notExists"}}
        with pytest.raises(LedgerCallFailed, match="not found"):
            await self.make_ledger(transactor).get_sign_status("0xs1")

    @pytest.mark.asyncio
    async def test_signature_not_ready(self):
        transactor = mock_transactor()
        transactor.rpc.call.return_value = {"data": {"content": {"fields": {"state": "Requested"}}}}
        with pytest.raises(LedgerCallFailed, match="no signature"):
            await self.make_ledger(transactor).get_signature("0xs1")


# ══════════════════════════════════════════════════════════════════════
#  SECTION 3: SOLANA ENCODING
# ══════════════════════════════════════════════════════════════════════

class TestProgramAddresses:

    def test_discriminator(self):
        assert anchor_discriminator("verify_seal") == hashlib.sha256(b"global:verify_seal").digest()[:8]
        assert RECORD_DISCRIMINATOR == hashlib.sha256(b"account:ReincarnationRecord").digest()[:8]

    def test_keys_are_on_curve(self):
        assert is_on_curve(Keypair.generate().public_key)
        assert not is_on_curve(b"\x01" * 31)

    def test_find_program_address(self):
        address, bump = find_program_address([b"ika_config"], PROGRAM_ID)
        assert len(address) == 32
        assert 0 <= bump <= 255
        assert not is_on_curve(address)
        assert create_program_address([b"ika_config", bytes([bump])], PROGRAM_ID) == address
        assert find_program_address([b"ika_config"], PROGRAM_ID) == (address, bump)

    def test_seed_too_long(self):
        with pytest.raises(ValueError):
            create_program_address([b"\x00" * 33], PROGRAM_ID)

    def test_distinct_per_seal(self):
        addresses = ProgramAddresses(PROGRAM_ID)
        assert addresses.record(b"\x01" * 32) != addresses.record(b"\x02" * 32)
        assert addresses.record(b"\x01" * 32) != addresses.mint_authority(b"\x01" * 32)

    def test_collection_with_long_contract(self):
        addresses = ProgramAddresses(PROGRAM_ID)
        long_contract = b"\xab" * 64
        assert addresses.collection(2, long_contract) != addresses.collection(2, b"\xab" * 32)
        assert addresses.collection(2, b"\xab" * 32) != addresses.collection(1, b"\xab" * 32)
        assert len(addresses.collection(2, b"")) == 32


class TestInstructions:

    @pytest.mark.parametrize("value,encoded", [
        (0, b"\x00"),
        (127, b"\x7f"),
        (128, b"\x80\x01"),
        (16383, b"\xff\x7f"),
        (16384, b"\x80\x80\x01"),
    ])
    def test_compact_u16(self, value, encoded):
        assert encode_compact_u16(value) == encoded

    def test_ed25519_instruction_layout(self):
        message = b"\x11" * 32
        signature = CUSTODY.sign(message)
        ix = ed25519_verify_instruction(CUSTODY.public_key, message, signature)
        data = ix.data
        assert ix.program_id == ED25519_PROGRAM_ID
        assert ix.accounts == []
        assert data[0] == 1
        assert len(data) == 16 + 32 + 64 + 32
        signature_offset = int.from_bytes(data[2:4], "little")
        pubkey_offset = int.from_bytes(data[6:8], "little")
        message_offset = int.from_bytes(data[10:12], "little")
        message_size = int.from_bytes(data[12:14], "little")
        assert data[pubkey_offset:pubkey_offset + 32] == CUSTODY.public_key
        assert data[signature_offset:signature_offset + 64] == signature
        assert data[message_offset:message_offset + message_size] == message

    def test_mint_instruction_truncates_strings(self):
        addresses = ProgramAddresses(PROGRAM_ID)
        ix = mint_reborn_instruction(
            addresses, b"\x11" * 32, b"\x02" * 32, b"\x03" * 32, b"\x04" * 32, "N" * 100, "u" * 300
        )
        data = ix.data
        assert data[:8] == anchor_discriminator("mint_reborn")
        assert data[8:40] == b"\x11" * 32
        name_length = int.from_bytes(data[40:44], "little")
        assert name_length == 32
        uri_length = int.from_bytes(data[44 + name_length:48 + name_length], "little")
        assert uri_length == 200

    def test_transfer_instruction(self):
        ix = transfer_asset_instruction(b"\x01" * 32, b"\x02" * 32, b"\x03" * 32, b"\x04" * 32)
        assert ix.program_id == b"\x04" * 32
        assert ix.data == bytes([14, 0])
        assert ix.accounts[0].is_writable
        assert ix.accounts[4].pubkey == b"\x03" * 32


class TestTransactionEncoding:

    def test_compile_orders_accounts(self):
        payer = Keypair.generate()
        asset, new_owner, core = b"\x01" * 32, b"\x03" * 32, b"\x04" * 32
        instructions = [
            ed25519_verify_instruction(CUSTODY.public_key, b"m", CUSTODY.sign(b"m")),
            transfer_asset_instruction(asset, payer.public_key, new_owner, core),
        ]
        message, signers = compile_message(payer.public_key, instructions, b"\x07" * 32)

        assert signers == [payer.public_key]
        # 1 signer, 0 readonly signers, 3 readonly unsigned (ed25519, core, new owner)
        assert message[:3] == bytes([1, 0, 3])
        assert message[3] == 5
        keys = [message[4 + i * 32:4 + (i + 1) * 32] for i in range(5)]
        assert keys[0] == payer.public_key
        assert keys[1] == asset
        assert set(keys[2:]) == {ED25519_PROGRAM_ID, core, new_owner}
        assert message[4 + 5 * 32:4 + 6 * 32] == b"\x07" * 32

    def test_sign_transaction(self):
        payer = Keypair.generate()
        mint = Keypair.generate()
        ix = mint_reborn_instruction(
            ProgramAddresses(PROGRAM_ID), b"\x11" * 32, mint.public_key, payer.public_key, b"\x04" * 32, "n", "u"
        )
        message, signers = compile_message(payer.public_key, [ix], b"\x07" * 32)
        assert signers == [payer.public_key, mint.public_key]

        wire, tx_signature = sign_transaction(message, signers, [mint, payer])
        assert wire[0] == 2
        assert wire[1 + 128:] == message
        assert verify_signature(payer.public_key, message, wire[1:65])
        assert verify_signature(mint.public_key, message, wire[65:129])
        assert tx_signature == base58.b58encode(wire[1:65]).decode()

    def test_missing_signer(self):
        payer = Keypair.generate()
        message, signers = compile_message(payer.public_key, [], b"\x07" * 32)
        with pytest.raises(ValueError, match="Missing signer"):
            sign_transaction(message, signers, [Keypair.generate()])


def encode_record(minted: bool, contract: bytes = b"\xab" * 20) -> bytes:
    return b"".join((
        RECORD_DISCRIMINATOR,
        b"\x11" * 32,
        (2).to_bytes(2, "little"),
        len(contract).to_bytes(4, "little") + contract,
        (1).to_bytes(4, "little") + b"\x09",
        b"\x22" * 32,
        b"\x33" * 32,
        b"\x44" * 32,
        bytes([1 if minted else 0]),
        (1_700_000_000).to_bytes(8, "little", signed=True),
        bytes([254]),
    ))


class TestRecordDecoding:

    def test_minted_record(self):
        record = decode_reincarnation_record(encode_record(minted=True))
        assert record.seal_hash == b"\x11" * 32
        assert record.source_chain_id == 2
        assert record.source_contract == b"\xab" * 20
        assert record.token_id == b"\x09"
        assert record.attestation_pubkey == b"\x22" * 32
        assert record.recipient == base58.b58encode(b"\x33" * 32).decode()
        assert record.mint == base58.b58encode(b"\x44" * 32).decode()
        assert record.minted
        assert record.verified_at == 1_700_000_000

    def test_unminted_record_has_no_mint(self):
        record = decode_reincarnation_record(encode_record(minted=False))
        assert not record.minted
        assert record.mint == ""

    def test_wrong_discriminator(self):
        with pytest.raises(LedgerCallFailed):
            decode_reincarnation_record(b"\x00" * 8 + encode_record(True)[8:])

    def test_truncated(self):
        with pytest.raises(LedgerCallFailed):
            decode_reincarnation_record(encode_record(True)[:80])


# ══════════════════════════════════════════════════════════════════════
#  SECTION 4: SOLANA CLIENT
# ══════════════════════════════════════════════════════════════════════

class FakeSolanaRpc:
    """Answers the calls the destination client makes."""

    def __init__(self, status=None, accounts=None):
        self.status = status if status is not None else {"confirmationStatus": "confirmed", "err": None}
        self.accounts = accounts or {}
        self.sent = []
        self.call = AsyncMock(side_effect=self._call)

    async def _call(self, method, params=None):
        if method == "getLatestBlockhash":
            return {"value": {"blockhash": base58.b58encode(b"\x07" * 32).decode()}}
        if method == "sendTransaction":
            self.sent.append(base64.b64decode(params[0]))
            return "sent"
        if method == "getSignatureStatuses":
            return {"value": [self.status]}
        if method == "getAccountInfo":
            data = self.accounts.get(params[0])
            if data is None:
                return {"value": None}
            return {"value": {"data": [base64.b64encode(data).decode(), "base64"]}}
        if method == "getVersion":
            return {"solana-core": "1.18"}
        raise AssertionError(f"unexpected {method}")


def make_solana(rpc, **kwargs) -> SolanaDestinationLedger:
    kwargs.setdefault("confirmation_interval", 0.001)
    kwargs.setdefault("confirmation_timeout", 0.05)
    return SolanaDestinationLedger(rpc, base58.b58encode(PROGRAM_ID).decode(), Keypair.generate(), **kwargs)


class TestSolanaDestinationLedger:

    @pytest.mark.asyncio
    async def test_submit_verify(self):
        rpc = FakeSolanaRpc()
        ledger = make_solana(rpc)
        item = WorkItem.create(demo_fields(1, CUSTODY.public_key))
        signature = CUSTODY.sign(item.seal_hash)

        tx_ref = await ledger.submit_verify(item, signature, Keypair.generate().address)

        wire = rpc.sent[0]
        assert wire[0] == 1
        message = wire[65:]
        assert verify_signature(ledger.keypair.public_key, message, wire[1:65])
        assert tx_ref == base58.b58encode(wire[1:65]).decode()
        # the precompile check carries the seal hash and custody signature
        assert signature in message
        assert item.seal_hash in message

    @pytest.mark.asyncio
    async def test_submit_mint(self):
        rpc = FakeSolanaRpc()
        receipt = await make_solana(rpc).submit_mint(WorkItem.create(demo_fields(1, CUSTODY.public_key)), "n", "u")
        assert rpc.sent[0][0] == 2
        assert len(base58.b58decode(receipt.mint_reference)) == 32

    @pytest.mark.asyncio
    async def test_failed_on_chain(self):
        rpc = FakeSolanaRpc(status={"err": {"InstructionError": [1, "Custom"]}})
        with pytest.raises(LedgerCallFailed) as exc:
            await make_solana(rpc).transfer_asset(Keypair.generate().address, Keypair.generate().address)
        assert exc.value.fatal

    @pytest.mark.asyncio
    async def test_unconfirmed(self):
        rpc = FakeSolanaRpc(status={"confirmationStatus": "processed", "err": None})
        with pytest.raises(ConfirmationTimeout):
            await make_solana(rpc).transfer_asset(Keypair.generate().address, Keypair.generate().address)

    @pytest.mark.asyncio
    async def test_verification_record(self):
        rpc = FakeSolanaRpc()
        ledger = make_solana(rpc)
        assert await ledger.get_verification_record(b"\x11" * 32) is None

        address = base58.b58encode(ledger.addresses.record(b"\x11" * 32)).decode()
        rpc.accounts[address] = encode_record(minted=True)
        record = await ledger.get_verification_record(b"\x11" * 32)
        assert record.minted

    @pytest.mark.asyncio
    async def test_asset_owner(self):
        rpc = FakeSolanaRpc()
        ledger = make_solana(rpc)
        asset = Keypair.generate().address
        owner = Keypair.generate()
        rpc.accounts[asset] = b"\x01" + owner.public_key + b"\x00" * 10
        assert await ledger.get_asset_owner(asset) == owner.address
        assert await ledger.get_asset_owner(Keypair.generate().address) is None

    @pytest.mark.asyncio
    async def test_check_connection(self):
        rpc = FakeSolanaRpc()
        assert await make_solana(rpc).check_connection()
        rpc.call = AsyncMock(side_effect=LedgerCallFailed("down"))
        assert not await make_solana(rpc).check_connection()


# ══════════════════════════════════════════════════════════════════════
#  SECTION 5: IN-MEMORY DESTINATION RULES
# ══════════════════════════════════════════════════════════════════════

class TestInMemoryDestination:

    @pytest.fixture
    def item(self):
        return WorkItem.create(demo_fields(1, CUSTODY.public_key))

    @pytest.mark.asyncio
    async def test_rejects_bad_signature(self, item):
        ledger = InMemoryDestinationLedger()
        with pytest.raises(LedgerCallFailed) as exc:
            await ledger.submit_verify(item, b"\x00" * 64, "Recv")
        assert exc.value.fatal
        assert ledger.records == {}

    @pytest.mark.asyncio
    async def test_record_is_write_once(self, item):
        ledger = InMemoryDestinationLedger()
        await ledger.submit_verify(item, CUSTODY.sign(item.seal_hash), "Recv")
        with pytest.raises(LedgerCallFailed, match="already exists"):
            await ledger.submit_verify(item, CUSTODY.sign(item.seal_hash), "Other")
        assert ledger.records[item.seal_hash].recipient == "Recv"

    @pytest.mark.asyncio
    async def test_mint_requires_verification(self, item):
        with pytest.raises(LedgerCallFailed, match="not verified"):
            await InMemoryDestinationLedger().submit_mint(item, "n", "u")

    @pytest.mark.asyncio
    async def test_transfer_only_from_relayer(self, item):
        ledger = InMemoryDestinationLedger()
        await ledger.submit_verify(item, CUSTODY.sign(item.seal_hash), "Recv")
        receipt = await ledger.submit_mint(item, "n", "u")
        with pytest.raises(LedgerCallFailed, match="not held"):
            await ledger.transfer_asset(receipt.mint_reference, "Someone")
