"""
Threshold-Sign Orchestrator Tests

Coverage:
  - Happy path: presign then sign, signature verifies over the seal hash
  - Session restart after one timeout, SigningFailed after the second
  - Resume from a stored checkpoint without opening new sessions
  - Rejected sessions and malformed signatures
"""

import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sealrelay.crypto import verify_signature
from sealrelay.exceptions import LedgerCallFailed, PresignTimeout, SigningFailed
from sealrelay.ledgers.memory import InMemoryCustodyLedger, demo_fields
from sealrelay.signing import SigningOrchestrator
from sealrelay.store import InMemoryWorkItemStore
from sealrelay.types import SessionStatus, SigningSession, SigningState, WorkItem


def make_orchestrator(custody, store, **overrides) -> SigningOrchestrator:
    options = dict(poll_interval=0.001, poll_timeout=0.05, backoff_base=0.001, backoff_max=0.001)
    options.update(overrides)
    return SigningOrchestrator(custody, store, **options)


# ══════════════════════════════════════════════════════════════════════
#  SECTION 1: SIGNING FLOW
# ══════════════════════════════════════════════════════════════════════

class TestSigningFlow:

    @pytest.fixture
    def custody(self):
        return InMemoryCustodyLedger(presign_ready_after=2, sign_ready_after=1)

    @pytest.fixture
    def store(self):
        return InMemoryWorkItemStore()

    @pytest.fixture
    def item(self, custody):
        return WorkItem.create(demo_fields(1, custody.attestation_pubkey))

    @pytest.mark.asyncio
    async def test_signature_over_seal_hash(self, custody, store, item):
        signature = await make_orchestrator(custody, store).sign(item)
        assert len(signature) == 64
        assert verify_signature(custody.attestation_pubkey, item.seal_hash, signature)
        assert custody.presign_requests == [f"{item.seal_hash_hex}:1"]
        assert custody.sign_requests == [f"{item.seal_hash_hex}:1"]

    @pytest.mark.asyncio
    async def test_checkpoint_cleared_after_success(self, custody, store, item):
        await make_orchestrator(custody, store).sign(item)
        assert await store.load_signing_checkpoint(item.seal_hash) is None

    @pytest.mark.asyncio
    async def test_existing_signature_short_circuits(self, custody, store, item):
        item.signature = b"\x01" * 64
        assert await make_orchestrator(custody, store).sign(item) == b"\x01" * 64
        assert custody.presign_requests == []

    @pytest.mark.asyncio
    async def test_presign_timeout_restarts_once(self, custody, store, item):
        custody.stalled_presigns.add(f"{item.seal_hash_hex}:1")
        signature = await make_orchestrator(custody, store).sign(item)

        assert verify_signature(custody.attestation_pubkey, item.seal_hash, signature)
        assert custody.presign_requests == [f"{item.seal_hash_hex}:1", f"{item.seal_hash_hex}:2"]
        assert custody.sign_requests == [f"{item.seal_hash_hex}:2"]

    @pytest.mark.asyncio
    async def test_second_timeout_is_fatal(self, custody, store, item):
        custody.stall_all_presigns = True
        with pytest.raises(SigningFailed) as exc:
            await make_orchestrator(custody, store).sign(item)

        assert exc.value.fatal
        assert isinstance(exc.value.__cause__, PresignTimeout)
        assert len(custody.presign_requests) == 2
        assert custody.sign_requests == []

    @pytest.mark.asyncio
    async def test_no_restarts_configured(self, custody, store, item):
        custody.stall_all_presigns = True
        with pytest.raises(SigningFailed):
            await make_orchestrator(custody, store, restarts=0).sign(item)
        assert len(custody.presign_requests) == 1

    @pytest.mark.asyncio
    async def test_rejected_sign_session(self, custody, store, item):
        custody.reject_signs = True
        with pytest.raises(LedgerCallFailed) as exc:
            await make_orchestrator(custody, store).sign(item)
        assert exc.value.fatal
        assert "rejected" in str(exc.value)


# ══════════════════════════════════════════════════════════════════════
#  SECTION 2: RESUME
# ══════════════════════════════════════════════════════════════════════

class TestResume:

    @pytest.mark.asyncio
    async def test_resume_reuses_existing_sessions(self):
        custody = InMemoryCustodyLedger()
        store = InMemoryWorkItemStore()
        item = WorkItem.create(demo_fields(2, custody.attestation_pubkey))

        # a previous run opened the presign and crashed before polling it
        session = SigningSession(seal_hash=item.seal_hash)
        handle = await custody.request_presign(session.request_key)
        session.presign_handle = handle
        session.state = SigningState.PRESIGN_REQUESTED
        await store.save_signing_checkpoint(item.seal_hash, session.to_checkpoint())

        signature = await make_orchestrator(custody, store).sign(item)
        assert verify_signature(custody.attestation_pubkey, item.seal_hash, signature)
        assert len(custody.presign_requests) == 1

    @pytest.mark.asyncio
    async def test_find_before_request(self):
        custody = InMemoryCustodyLedger()
        store = InMemoryWorkItemStore()
        item = WorkItem.create(demo_fields(3, custody.attestation_pubkey))

        # checkpoint was lost, but the sessions exist under the request key
        key = f"{item.seal_hash_hex}:1"
        presign = await custody.request_presign(key)
        await custody.request_sign(presign, item.seal_hash, key)

        await make_orchestrator(custody, store).sign(item)
        assert custody.presign_requests == [key]
        assert custody.sign_requests == [key]

    @pytest.mark.asyncio
    async def test_resume_from_restarted_attempt(self):
        custody = InMemoryCustodyLedger()
        store = InMemoryWorkItemStore()
        item = WorkItem.create(demo_fields(4, custody.attestation_pubkey))
        await store.save_signing_checkpoint(item.seal_hash, {"attempt": 2, "state": "IDLE"})

        custody.stall_all_presigns = True
        with pytest.raises(SigningFailed):
            await make_orchestrator(custody, store).sign(item)
        assert custody.presign_requests == [f"{item.seal_hash_hex}:2"]


# ══════════════════════════════════════════════════════════════════════
#  SECTION 3: CUSTODY MISBEHAVIOUR
# ══════════════════════════════════════════════════════════════════════

class TestCustodyErrors:

    def _custody(self, signature: bytes) -> MagicMock:
        custody = MagicMock()
        custody.name = "mock-custody"
        custody.find_presign = AsyncMock(return_value=None)
        custody.request_presign = AsyncMock(return_value="p1")
        custody.get_presign_status = AsyncMock(return_value=SessionStatus.COMPLETED)
        custody.find_sign = AsyncMock(return_value=None)
        custody.request_sign = AsyncMock(return_value="s1")
        custody.get_sign_status = AsyncMock(return_value=SessionStatus.COMPLETED)
        custody.get_signature = AsyncMock(return_value=signature)
        return custody

    @pytest.mark.asyncio
    async def test_short_signature_rejected(self):
        custody = self._custody(b"\x00" * 63)
        item = WorkItem.create(demo_fields(5, b"\x01" * 32))
        with pytest.raises(LedgerCallFailed) as exc:
            await make_orchestrator(custody, InMemoryWorkItemStore()).sign(item)
        assert exc.value.exhausted

    @pytest.mark.asyncio
    async def test_message_is_seal_hash(self):
        custody = self._custody(b"\x00" * 64)
        item = WorkItem.create(demo_fields(6, b"\x01" * 32))
        await make_orchestrator(custody, InMemoryWorkItemStore()).sign(item)
        custody.request_sign.assert_awaited_once_with("p1", item.seal_hash, f"{item.seal_hash_hex}:1")

    @pytest.mark.asyncio
    async def test_transient_request_errors_retried(self):
        custody = self._custody(b"\x00" * 64)
        custody.request_presign = AsyncMock(side_effect=[LedgerCallFailed("busy"), "p1"])
        item = WorkItem.create(demo_fields(7, b"\x01" * 32))
        assert await make_orchestrator(custody, InMemoryWorkItemStore()).sign(item) == b"\x00" * 64
        assert custody.request_presign.await_count == 2
