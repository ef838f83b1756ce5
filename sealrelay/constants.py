"""
Seal Relayer Constants

This module consolidates all global constants and environment configuration
used throughout the relayer. Constants are organized by category for easy
reference and maintenance.
"""
import ast

from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

RELAYER_DEFAULTS = {
    'SEALRELAY_HEALTH_HOST':           '127.0.0.1',
    'SEALRELAY_HEALTH_PORT':           '3470',
    'SEALRELAY_DB_PATH':               './data/relayer.db',
}

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
    'LOG_INCLUDE_REQUEST_CONTENT':     'False',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024 # 10MB
LOG_MAX_PATH_LENGTH = 320  # Maximum URL path length to log (truncates longer paths)
LOG_BACKUP_COUNT = 5


# WARNING: THE PROTOCOL VALUES BELOW ARE SHARED WITH THE ON-CHAIN PROGRAMS. CHANGING THEM
# PRODUCES SEAL HASHES THAT NO LEDGER WILL ACCEPT.

# ==================================================================================
# CORE PROTOCOL CONSTANTS
# ==================================================================================
RELAYER_VERSION = '1.0.0'

# Chain identifiers used inside the seal hash (u16)
CHAIN_ETHEREUM = 1
CHAIN_SUI = 2
CHAIN_SOLANA = 3
CHAIN_NEAR = 4
CHAIN_BITCOIN = 5
CHAIN_APTOS = 6

# The destination of every rebirth. Never taken from callers or events.
DESTINATION_CHAIN_ID = CHAIN_SOLANA

SEAL_HASH_LENGTH = 32
ATTESTATION_PUBKEY_LENGTH = 32
MAX_CONTRACT_LENGTH = 64
MAX_TOKEN_ID_LENGTH = 64
# 2 + 2 + 1 + 1 + 32 + 8
SEAL_FIXED_LENGTH = 46
MAX_NONCE = (1 << 64) - 1
MAX_CHAIN_ID = (1 << 16) - 1

# Threshold signature produced by the custody network (Ed25519)
SIGNATURE_LENGTH = 64


# ==================================================================================
# CROSS-CHAIN MESSAGE CONSTANTS
# ==================================================================================
ENVELOPE_VERSION = 1
GUARDIAN_SIGNATURE_LENGTH = 65
ENVELOPE_BODY_FIXED_LENGTH = 51  # 4 + 4 + 2 + 32 + 8 + 1

DEPOSIT_PAYLOAD_ID = 1
DEPOSIT_PAYLOAD_LENGTH = 171


# ==================================================================================
# DESTINATION PROGRAM CONSTANTS
# ==================================================================================
CONFIG_SEED = b"ika_config"
RECORD_SEED = b"reincarnation"
MINT_SEED = b"reincarnation_mint"
COLLECTION_SEED = b"collection"

MAX_NAME_LENGTH = 32
MAX_URI_LENGTH = 200

CLOSURE_DOMAIN = b"sealrelay-close-v1"


# ==================================================================================
# POLLING AND RETRY DEFAULTS
# ==================================================================================
SIGNING_POLL_INTERVAL = 3.0      # seconds between session status probes
SIGNING_POLL_TIMEOUT = 120.0     # hard deadline for each signing round
SIGNING_SESSION_RESTARTS = 1     # a timed-out session may be restarted once

CONFIRMATION_POLL_INTERVAL = 1.0
CONFIRMATION_TIMEOUT = 60.0

LEDGER_MAX_ATTEMPTS = 5
LEDGER_BACKOFF_BASE = 0.5
LEDGER_BACKOFF_MAX = 15.0

INGESTION_POLL_INTERVAL = 5.0
INGESTION_BATCH_SIZE = 50

GUARDIAN_POLL_INTERVAL = 2.0
GUARDIAN_BACKOFF_MAX = 60.0

CONNECTION_TIMEOUT = 10.0


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default

class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    def __hash__(self):
        return hash(bool(self))


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
DEFAULTS = RELAYER_DEFAULTS | LOGGER_DEFAULTS
namespace = globals()

def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Avoids exceptions by only calling ast.literal_eval for known literals.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v

for key, default_raw in DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)
