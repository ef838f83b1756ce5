"""
Wire formats shared with the on-chain programs: the seal hash and the
guardian envelope.
"""

from .seal_hash import (
    SealFields,
    compute_seal_hash,
    decode_seal_bytes,
    encode_seal_bytes,
    encode_token_id,
    seal_hash_hex,
)
from .envelope import (
    DepositNotification,
    GuardianSignature,
    SignedEnvelope,
    decode_deposit_payload,
    decode_envelope,
    encode_deposit_payload,
    encode_envelope,
    encode_envelope_body,
)

__all__ = [
    'SealFields',
    'compute_seal_hash',
    'decode_seal_bytes',
    'encode_seal_bytes',
    'encode_token_id',
    'seal_hash_hex',
    'DepositNotification',
    'GuardianSignature',
    'SignedEnvelope',
    'decode_deposit_payload',
    'decode_envelope',
    'encode_deposit_payload',
    'encode_envelope',
    'encode_envelope_body',
]
