"""
Threshold-Sign Orchestrator

Drives the two-round custody protocol for one work item:

    IDLE → PRESIGN_REQUESTED → PRESIGN_READY → SIGN_REQUESTED → SIGN_READY → DONE

Each request carries the deterministic key ``<seal_hash_hex>:<attempt>`` and
the custody client is asked for an existing session under that key before a
new one is opened. Handles are checkpointed in the store as soon as they are
known, so a crashed relayer resumes the same sessions instead of paying for
new ones.

A round that misses its deadline restarts the whole session once under a new
attempt number. A second timeout fails the item.
"""

from typing import Optional

from .constants import (
    LEDGER_BACKOFF_BASE,
    LEDGER_BACKOFF_MAX,
    LEDGER_MAX_ATTEMPTS,
    SIGNATURE_LENGTH,
    SIGNING_POLL_INTERVAL,
    SIGNING_POLL_TIMEOUT,
    SIGNING_SESSION_RESTARTS,
)
from .exceptions import LedgerCallFailed, PollTimeout, PresignTimeout, SignTimeout, SigningFailed
from .ledgers.base import CustodyLedger
from .logger import get_logger, short_hash
from .retry import call_with_backoff, poll_until
from .store import WorkItemStore
from .types import SessionStatus, SigningSession, SigningState, WorkItem

logger = get_logger(__name__)


class SigningOrchestrator:

    def __init__(
        self,
        custody: CustodyLedger,
        store: WorkItemStore,
        *,
        poll_interval: float = SIGNING_POLL_INTERVAL,
        poll_timeout: float = SIGNING_POLL_TIMEOUT,
        restarts: int = SIGNING_SESSION_RESTARTS,
        max_attempts: int = LEDGER_MAX_ATTEMPTS,
        backoff_base: float = LEDGER_BACKOFF_BASE,
        backoff_max: float = LEDGER_BACKOFF_MAX,
    ):
        self.custody = custody
        self.store = store
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.restarts = restarts
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

    async def sign(self, item: WorkItem) -> bytes:
        """
        Obtain the threshold signature over ``item.seal_hash``.

        Returns:
            64-byte Ed25519 signature

        Raises:
            SigningFailed: after the allowed session restarts time out
            LedgerCallFailed: if the custody network rejects a session or
                stays unreachable past the retry ceiling
        """
        if item.signature and len(item.signature) == SIGNATURE_LENGTH:
            return item.signature

        session = await self._load_session(item.seal_hash)
        message = bytes(item.seal_hash)

        while True:
            try:
                signature = await self._drive(session, message)
                break
            except PollTimeout as e:
                if session.attempt > self.restarts:
                    raise SigningFailed(
                        f"Signing for {item.seal_hash_hex} timed out on attempt {session.attempt}: {e}"
                    ) from e
                logger.warning(
                    f"[signing] seal={short_hash(item.seal_hash)} attempt {session.attempt} "
                    f"timed out in {session.state.name}, restarting session"
                )
                session = SigningSession(seal_hash=item.seal_hash, attempt=session.attempt + 1)
                await self._checkpoint(session)

        await self.store.clear_signing_checkpoint(item.seal_hash)
        return signature

    async def _load_session(self, seal_hash: bytes) -> SigningSession:
        checkpoint = await self.store.load_signing_checkpoint(seal_hash)
        if checkpoint is None:
            return SigningSession(seal_hash=seal_hash)
        session = SigningSession.from_checkpoint(seal_hash, checkpoint)
        logger.info(
            f"[signing] seal={short_hash(seal_hash)} resuming attempt {session.attempt} "
            f"from {session.state.name}"
        )
        return session

    async def _checkpoint(self, session: SigningSession) -> None:
        await self.store.save_signing_checkpoint(session.seal_hash, session.to_checkpoint())

    async def _call(self, call, label: str):
        return await call_with_backoff(
            call,
            label=label,
            max_attempts=self.max_attempts,
            base_delay=self.backoff_base,
            max_delay=self.backoff_max,
        )

    async def _drive(self, session: SigningSession, message: bytes) -> bytes:
        key = session.request_key
        tag = short_hash(session.seal_hash)

        if session.state == SigningState.IDLE or not session.presign_handle:
            handle = await self._call(lambda: self.custody.find_presign(key), "custody.find_presign")
            if handle is None:
                handle = await self._call(lambda: self.custody.request_presign(key), "custody.request_presign")
                logger.info(f"[signing] seal={tag} presign requested: {handle}")
            else:
                logger.info(f"[signing] seal={tag} reusing presign {handle}")
            session.presign_handle = handle
            session.state = SigningState.PRESIGN_REQUESTED
            await self._checkpoint(session)

        if session.state == SigningState.PRESIGN_REQUESTED:
            session.presign_state = await self._await_session(
                lambda: self.custody.get_presign_status(session.presign_handle),
                label=f"presign {session.presign_handle}",
                timeout_exc=PresignTimeout,
            )
            session.state = SigningState.PRESIGN_READY
            await self._checkpoint(session)

        if session.state == SigningState.PRESIGN_READY or not session.sign_handle:
            handle = await self._call(lambda: self.custody.find_sign(key), "custody.find_sign")
            if handle is None:
                handle = await self._call(
                    lambda: self.custody.request_sign(session.presign_handle, message, key),
                    "custody.request_sign",
                )
                logger.info(f"[signing] seal={tag} sign requested: {handle}")
            session.sign_handle = handle
            session.state = SigningState.SIGN_REQUESTED
            await self._checkpoint(session)

        if session.state == SigningState.SIGN_REQUESTED:
            session.sign_state = await self._await_session(
                lambda: self.custody.get_sign_status(session.sign_handle),
                label=f"sign {session.sign_handle}",
                timeout_exc=SignTimeout,
            )
            session.state = SigningState.SIGN_READY
            await self._checkpoint(session)

        signature = await self._call(lambda: self.custody.get_signature(session.sign_handle), "custody.get_signature")
        if len(signature) != SIGNATURE_LENGTH:
            raise LedgerCallFailed(
                f"Custody returned a {len(signature)}-byte signature, expected {SIGNATURE_LENGTH}",
                ledger=self.custody.name,
                exhausted=True,
            )
        session.signature = bytes(signature)
        session.state = SigningState.DONE
        logger.info(f"[signing] seal={tag} signature ready")
        return session.signature

    async def _await_session(self, status_call, *, label: str, timeout_exc) -> SessionStatus:
        async def probe() -> Optional[SessionStatus]:
            status = await status_call()
            if status == SessionStatus.REJECTED:
                raise LedgerCallFailed(f"{label} rejected by custody network", ledger=self.custody.name, exhausted=True)
            if status == SessionStatus.COMPLETED:
                return status
            return None

        return await poll_until(
            probe,
            interval=self.poll_interval,
            timeout=self.poll_timeout,
            label=label,
            timeout_exc=timeout_exc,
        )
