"""
Seal Relayer Configuration

Loads all sections of config.toml at startup.
Environment variables override TOML values.
"""

from .loader import (
    RelayerConfig,
    RelayerSectionConfig,
    SourceConfig,
    CustodyConfig,
    DestinationConfig,
    GuardianConfig,
    SigningConfig,
    LedgerConfig,
    IngestionConfig,
    ClosureConfig,
    StoreConfig,
    HealthConfig,
    load_config,
)

__all__ = [
    "RelayerConfig",
    "RelayerSectionConfig",
    "SourceConfig",
    "CustodyConfig",
    "DestinationConfig",
    "GuardianConfig",
    "SigningConfig",
    "LedgerConfig",
    "IngestionConfig",
    "ClosureConfig",
    "StoreConfig",
    "HealthConfig",
    "load_config",
]
