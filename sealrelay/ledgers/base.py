"""
Ledger Interfaces

Abstract boundaries between the relayer and the outside world:

  - SourceLedger:      where assets are sealed and closures are recorded
  - CustodyLedger:     the distributed signing network (presign + sign)
  - DestinationLedger: where the attestation is verified and the twin minted
  - GuardianNetwork:   signed cross-chain envelopes
  - MetadataResolver:  advisory display metadata

Concrete clients live beside this module (JSON-RPC clients and in-memory
ledgers). The engine constructs them and injects them into each component.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ..types import (
    ClosureRecord,
    Cursor,
    EventPage,
    MintReceipt,
    SealMetadata,
    SessionStatus,
    VerificationRecord,
    WorkItem,
)


# ══════════════════════════════════════════════════════════════════════
#  SOURCE LEDGER
# ══════════════════════════════════════════════════════════════════════

class SourceLedger(ABC):
    """Ledger holding sealed assets and the seal registry."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    async def check_connection(self) -> bool:
        return True

    @abstractmethod
    async def query_sealed_events(self, cursor: Cursor, limit: int) -> EventPage:
        """Sealing events strictly after ``cursor``, oldest first."""
        ...

    @abstractmethod
    async def get_closure(self, seal_hash: bytes) -> Optional[ClosureRecord]:
        ...

    @abstractmethod
    async def mark_closed(
        self,
        seal_hash: bytes,
        destination_reference: str,
        evidence: bytes,
        closer: str,
    ) -> str:
        """
        Record that ``seal_hash`` was reborn as ``destination_reference``.

        Returns:
            Transaction reference
        """
        ...

    @abstractmethod
    async def submit_envelope(self, envelope: bytes) -> str:
        """Hand a guardian envelope to the source program. Returns a tx ref."""
        ...

    @abstractmethod
    async def is_envelope_consumed(self, digest: bytes) -> bool:
        ...


# ══════════════════════════════════════════════════════════════════════
#  CUSTODY LEDGER
# ══════════════════════════════════════════════════════════════════════

class CustodyLedger(ABC):
    """
    Threshold-signing network.

    Every request carries a deterministic ``request_key``; ``find_*`` returns
    the handle of a session already opened for that key so resubmission is
    safe.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    async def check_connection(self) -> bool:
        return True

    @abstractmethod
    async def request_presign(self, request_key: str) -> str:
        ...

    @abstractmethod
    async def find_presign(self, request_key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def get_presign_status(self, handle: str) -> SessionStatus:
        ...

    @abstractmethod
    async def request_sign(self, presign_handle: str, message: bytes, request_key: str) -> str:
        ...

    @abstractmethod
    async def find_sign(self, request_key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def get_sign_status(self, handle: str) -> SessionStatus:
        ...

    @abstractmethod
    async def get_signature(self, handle: str) -> bytes:
        """Raw signature of a COMPLETED sign session."""
        ...


# ══════════════════════════════════════════════════════════════════════
#  DESTINATION LEDGER
# ══════════════════════════════════════════════════════════════════════

class DestinationLedger(ABC):
    """Ledger where attestations are verified and reborn assets minted."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...

    @property
    @abstractmethod
    def relayer_identity(self) -> str:
        """Address of the relaying account on this ledger."""
        ...

    async def check_connection(self) -> bool:
        return True

    @abstractmethod
    async def get_verification_record(self, seal_hash: bytes) -> Optional[VerificationRecord]:
        ...

    @abstractmethod
    async def submit_verify(self, item: WorkItem, signature: bytes, recipient: str) -> str:
        """
        Submit the signature check and record creation as one transaction and
        wait for confirmation. Returns the transaction reference.
        """
        ...

    @abstractmethod
    async def submit_mint(self, item: WorkItem, name: str, uri: str) -> MintReceipt:
        ...

    @abstractmethod
    async def get_asset_owner(self, mint_reference: str) -> Optional[str]:
        """Current owner of a minted asset, or None if it does not exist."""
        ...

    @abstractmethod
    async def transfer_asset(self, mint_reference: str, recipient: str) -> str:
        ...


# ══════════════════════════════════════════════════════════════════════
#  GUARDIANS & METADATA
# ══════════════════════════════════════════════════════════════════════

class GuardianNetwork(ABC):
    @abstractmethod
    async def fetch_envelope(self, chain_id: int, emitter: bytes, sequence: int) -> Optional[bytes]:
        """Signed envelope bytes, or None while guardians have not signed it."""
        ...

    async def close(self) -> None:
        pass


class MetadataResolver(ABC):
    @abstractmethod
    async def resolve(self, chain_id: int, contract: bytes, token_id: bytes) -> SealMetadata:
        ...


class NullMetadataResolver(MetadataResolver):
    """Resolver that never adds anything."""

    async def resolve(self, chain_id: int, contract: bytes, token_id: bytes) -> SealMetadata:
        return SealMetadata()
