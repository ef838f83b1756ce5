"""
Seal Relayer Crypto

Ed25519 key management for the relaying identities (destination fee payer,
source-ledger sender) and signature checks used by the in-memory ledgers.
"""

import json
from typing import Union

import base58
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from .constants import CLOSURE_DOMAIN, SIGNATURE_LENGTH
from .exceptions import ConfigurationError


class Keypair:
    """
    Ed25519 keypair.

    Wraps ``cryptography``'s Ed25519PrivateKey and exposes the 32-byte
    public key in the encodings the ledgers use.
    """

    def __init__(self, seed: bytes):
        """
        Args:
            seed: 32-byte private seed

        Raises:
            ConfigurationError: if the seed has the wrong length
        """
        if len(seed) != 32:
            raise ConfigurationError(f"Ed25519 seed must be 32 bytes, got {len(seed)}")
        self._key = Ed25519PrivateKey.from_private_bytes(bytes(seed))
        self._public = self._key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @classmethod
    def generate(cls) -> "Keypair":
        key = Ed25519PrivateKey.generate()
        seed = key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return cls(seed)

    @classmethod
    def from_secret(cls, secret: str) -> "Keypair":
        """
        Parse a secret from configuration.

        Accepts a JSON byte array (Solana CLI keyfile contents), base58
        (64-byte secret key or 32-byte seed) or hex (32-byte seed).
        """
        secret = secret.strip()
        if not secret:
            raise ConfigurationError("Empty keypair secret")
        try:
            if secret.startswith("["):
                raw = bytes(json.loads(secret))
            elif secret.startswith("0x") or (len(secret) == 64 and all(c in "0123456789abcdefABCDEF" for c in secret)):
                raw = bytes.fromhex(secret[2:] if secret.startswith("0x") else secret)
            else:
                raw = base58.b58decode(secret)
        except ValueError as e:
            raise ConfigurationError(f"Unreadable keypair secret: {e}") from e

        if len(raw) == 64:
            keypair = cls(raw[:32])
            if keypair.public_key != raw[32:]:
                raise ConfigurationError("Keypair secret public half does not match its seed")
            return keypair
        return cls(raw)

    @property
    def public_key(self) -> bytes:
        return self._public

    @property
    def address(self) -> str:
        """Base58 public key (Solana address form)."""
        return base58.b58encode(self._public).decode()

    def sign(self, message: bytes) -> bytes:
        return self._key.sign(bytes(message))


def verify_signature(public_key: bytes, message: bytes, signature: bytes) -> bool:
    """True if ``signature`` is a valid Ed25519 signature of ``message``."""
    if len(public_key) != 32 or len(signature) != SIGNATURE_LENGTH:
        return False
    try:
        Ed25519PublicKey.from_public_bytes(bytes(public_key)).verify(bytes(signature), bytes(message))
        return True
    except (InvalidSignature, ValueError):
        return False


def closure_message(seal_hash: bytes, destination_reference: str) -> bytes:
    """Bytes signed by the relaying identity when publishing a closure."""
    return CLOSURE_DOMAIN + bytes(seal_hash) + destination_reference.encode("utf-8")


def to_pubkey_bytes(value: Union[str, bytes]) -> bytes:
    """Decode a base58 or hex 32-byte public key."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif value.startswith("0x"):
        raw = bytes.fromhex(value[2:])
    else:
        raw = base58.b58decode(value)
    if len(raw) != 32:
        raise ValueError(f"Public key must be 32 bytes, got {len(raw)}")
    return raw


# ══════════════════════════════════════════════════════════════════════
#  CURVE CHECK (program-derived addresses must be off-curve)
# ══════════════════════════════════════════════════════════════════════

_P = 2 ** 255 - 19
_D = (-121665 * pow(121666, _P - 2, _P)) % _P
_SQRT_M1 = pow(2, (_P - 1) // 4, _P)


def is_on_curve(point: bytes) -> bool:
    """
    True if ``point`` decompresses to a valid Ed25519 curve point.
    """
    if len(point) != 32:
        return False
    y = int.from_bytes(point, "little") & ((1 << 255) - 1)
    sign = point[31] >> 7
    if y >= _P:
        return False

    y2 = y * y % _P
    u = (y2 - 1) % _P
    v = (_D * y2 + 1) % _P
    x2 = u * pow(v, _P - 2, _P) % _P
    if x2 == 0:
        return sign == 0

    x = pow(x2, (_P + 3) // 8, _P)
    if (x * x - x2) % _P != 0:
        x = x * _SQRT_M1 % _P
    return (x * x - x2) % _P == 0
