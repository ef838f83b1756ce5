"""
Ledger clients used by the relayer.

Interfaces live in ``base``; JSON-RPC clients in ``sui``, ``solana`` and
``guardian``; in-memory ledgers for simulation and tests in ``memory``.
"""

from .base import (
    CustodyLedger,
    DestinationLedger,
    GuardianNetwork,
    MetadataResolver,
    NullMetadataResolver,
    SourceLedger,
)

__all__ = [
    'CustodyLedger',
    'DestinationLedger',
    'GuardianNetwork',
    'MetadataResolver',
    'NullMetadataResolver',
    'SourceLedger',
]
