"""
Seal Relayer TOML Configuration Loader

Loads all sections of config.toml at startup with environment variable overrides.

Environment variable mapping:
    [relayer] worker_count   → SEALRELAY_WORKER_COUNT
    [source] rpc_url         → SEALRELAY_SOURCE_RPC_URL
    [destination] rpc_url    → SEALRELAY_DESTINATION_RPC_URL
    [store] path             → SEALRELAY_DB_PATH
    ...

Keypair secrets MUST come from env vars, never TOML:
    SEALRELAY_SUI_SECRET:      source / custody sender
    SEALRELAY_SOLANA_SECRET:   destination fee payer
    SEALRELAY_CLOSER_SECRET:   closure evidence identity (optional)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from ..constants import (
    CONFIRMATION_POLL_INTERVAL,
    CONFIRMATION_TIMEOUT,
    CONNECTION_TIMEOUT,
    GUARDIAN_BACKOFF_MAX,
    GUARDIAN_POLL_INTERVAL,
    INGESTION_BATCH_SIZE,
    INGESTION_POLL_INTERVAL,
    LEDGER_BACKOFF_BASE,
    LEDGER_BACKOFF_MAX,
    LEDGER_MAX_ATTEMPTS,
    SIGNING_POLL_INTERVAL,
    SIGNING_POLL_TIMEOUT,
    SIGNING_SESSION_RESTARTS,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


# ---------------------------------------------------------------------------
# Section dataclasses: mirror every [section] of config.example.toml
# ---------------------------------------------------------------------------


@dataclass
class RelayerSectionConfig:
    """[relayer] section."""
    name: str = "sealrelay"
    log_level: str = "INFO"
    worker_count: int = 4
    queue_size: int = 1000
    max_item_retries: int = 3
    shutdown_timeout: float = 30.0
    simulate: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayerSectionConfig":
        return cls(
            name=data.get("name", "sealrelay"),
            log_level=data.get("log_level", "INFO"),
            worker_count=data.get("worker_count", 4),
            queue_size=data.get("queue_size", 1000),
            max_item_retries=data.get("max_item_retries", 3),
            shutdown_timeout=data.get("shutdown_timeout", 30.0),
            simulate=data.get("simulate", False),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("SEALRELAY_LOG_LEVEL"):
            self.log_level = v
        if v := os.environ.get("SEALRELAY_WORKER_COUNT"):
            self.worker_count = int(v)
        if v := os.environ.get("SEALRELAY_SIMULATE"):
            self.simulate = _env_bool(v)


@dataclass
class SourceConfig:
    """[source] section: seal registry on Sui."""
    rpc_url: str = ""
    package_id: str = ""
    registry_id: str = ""
    reborn_table_id: str = ""
    processed_envelopes_table_id: str = ""
    orchestrator_state_id: str = ""
    wormhole_state_id: str = ""
    gas_budget: int = 50_000_000
    secret: str = field(default="", repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceConfig":
        return cls(
            rpc_url=data.get("rpc_url", ""),
            package_id=data.get("package_id", ""),
            registry_id=data.get("registry_id", ""),
            reborn_table_id=data.get("reborn_table_id", ""),
            processed_envelopes_table_id=data.get("processed_envelopes_table_id", ""),
            orchestrator_state_id=data.get("orchestrator_state_id", ""),
            wormhole_state_id=data.get("wormhole_state_id", ""),
            gas_budget=data.get("gas_budget", 50_000_000),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("SEALRELAY_SOURCE_RPC_URL"):
            self.rpc_url = v
        if v := os.environ.get("SEALRELAY_SOURCE_PACKAGE_ID"):
            self.package_id = v
        if v := os.environ.get("SEALRELAY_SOURCE_REGISTRY_ID"):
            self.registry_id = v
        if v := os.environ.get("SEALRELAY_SUI_SECRET"):
            self.secret = v


@dataclass
class CustodyConfig:
    """[custody] section: custody coordinator on the source network."""
    rpc_url: str = ""
    package_id: str = ""
    coordinator_id: str = ""
    dwallet_id: str = ""
    sessions_table_id: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustodyConfig":
        return cls(
            rpc_url=data.get("rpc_url", ""),
            package_id=data.get("package_id", ""),
            coordinator_id=data.get("coordinator_id", ""),
            dwallet_id=data.get("dwallet_id", ""),
            sessions_table_id=data.get("sessions_table_id", ""),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("SEALRELAY_CUSTODY_RPC_URL"):
            self.rpc_url = v
        if v := os.environ.get("SEALRELAY_DWALLET_ID"):
            self.dwallet_id = v


@dataclass
class DestinationConfig:
    """[destination] section: Solana program."""
    rpc_url: str = ""
    program_id: str = ""
    mpl_core_program_id: str = "CoREENxT6tW1HoK8ypY1SxRMZTcVPm7R94rH4PZNhX7d"
    commitment: str = "confirmed"
    confirmation_interval: float = CONFIRMATION_POLL_INTERVAL
    confirmation_timeout: float = CONFIRMATION_TIMEOUT
    bind_recipient: bool = False
    secret: str = field(default="", repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DestinationConfig":
        return cls(
            rpc_url=data.get("rpc_url", ""),
            program_id=data.get("program_id", ""),
            mpl_core_program_id=data.get("mpl_core_program_id", "CoREENxT6tW1HoK8ypY1SxRMZTcVPm7R94rH4PZNhX7d"),
            commitment=data.get("commitment", "confirmed"),
            confirmation_interval=data.get("confirmation_interval", CONFIRMATION_POLL_INTERVAL),
            confirmation_timeout=data.get("confirmation_timeout", CONFIRMATION_TIMEOUT),
            bind_recipient=data.get("bind_recipient", False),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("SEALRELAY_DESTINATION_RPC_URL"):
            self.rpc_url = v
        if v := os.environ.get("SEALRELAY_DESTINATION_PROGRAM_ID"):
            self.program_id = v
        if v := os.environ.get("SEALRELAY_SOLANA_SECRET"):
            self.secret = v


@dataclass
class GuardianConfig:
    """[guardian] section: envelope ingestion."""
    enabled: bool = False
    api_url: str = "https://api.wormholescan.io"
    emitters: List[str] = field(default_factory=list)
    poll_interval: float = GUARDIAN_POLL_INTERVAL
    max_backoff: float = GUARDIAN_BACKOFF_MAX

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GuardianConfig":
        return cls(
            enabled=data.get("enabled", False),
            api_url=data.get("api_url", "https://api.wormholescan.io"),
            emitters=data.get("emitters", []),
            poll_interval=data.get("poll_interval", GUARDIAN_POLL_INTERVAL),
            max_backoff=data.get("max_backoff", GUARDIAN_BACKOFF_MAX),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("SEALRELAY_GUARDIAN_API_URL"):
            self.api_url = v
        if v := os.environ.get("SEALRELAY_GUARDIAN_EMITTERS"):
            self.emitters = _env_list(v)


@dataclass
class SigningConfig:
    """[signing] section."""
    poll_interval: float = SIGNING_POLL_INTERVAL
    poll_timeout: float = SIGNING_POLL_TIMEOUT
    restarts: int = SIGNING_SESSION_RESTARTS

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SigningConfig":
        return cls(
            poll_interval=data.get("poll_interval", SIGNING_POLL_INTERVAL),
            poll_timeout=data.get("poll_timeout", SIGNING_POLL_TIMEOUT),
            restarts=data.get("restarts", SIGNING_SESSION_RESTARTS),
        )


@dataclass
class LedgerConfig:
    """[ledger] section: retry policy shared by every ledger call."""
    max_attempts: int = LEDGER_MAX_ATTEMPTS
    backoff_base: float = LEDGER_BACKOFF_BASE
    backoff_max: float = LEDGER_BACKOFF_MAX
    timeout: float = CONNECTION_TIMEOUT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerConfig":
        return cls(
            max_attempts=data.get("max_attempts", LEDGER_MAX_ATTEMPTS),
            backoff_base=data.get("backoff_base", LEDGER_BACKOFF_BASE),
            backoff_max=data.get("backoff_max", LEDGER_BACKOFF_MAX),
            timeout=data.get("timeout", CONNECTION_TIMEOUT),
        )


@dataclass
class IngestionConfig:
    """[ingestion] section."""
    poll_interval: float = INGESTION_POLL_INTERVAL
    batch_size: int = INGESTION_BATCH_SIZE
    cursor_name: str = "source-events"
    metadata_url: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestionConfig":
        return cls(
            poll_interval=data.get("poll_interval", INGESTION_POLL_INTERVAL),
            batch_size=data.get("batch_size", INGESTION_BATCH_SIZE),
            cursor_name=data.get("cursor_name", "source-events"),
            metadata_url=data.get("metadata_url", ""),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("SEALRELAY_POLL_INTERVAL"):
            self.poll_interval = float(v)
        if v := os.environ.get("SEALRELAY_METADATA_URL"):
            self.metadata_url = v


@dataclass
class ClosureConfig:
    """[closure] section."""
    allowed_closers: List[str] = field(default_factory=list)
    close_with_evidence: bool = False
    secret: str = field(default="", repr=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClosureConfig":
        return cls(
            allowed_closers=data.get("allowed_closers", []),
            close_with_evidence=data.get("close_with_evidence", False),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("SEALRELAY_ALLOWED_CLOSERS"):
            self.allowed_closers = _env_list(v)
        if v := os.environ.get("SEALRELAY_CLOSER_SECRET"):
            self.secret = v


@dataclass
class StoreConfig:
    """[store] section."""
    backend: str = "sqlite"
    path: str = "./data/relayer.db"
    use_leases: bool = False
    lease_ttl: float = 300.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoreConfig":
        return cls(
            backend=data.get("backend", "sqlite"),
            path=data.get("path", "./data/relayer.db"),
            use_leases=data.get("use_leases", False),
            lease_ttl=data.get("lease_ttl", 300.0),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("SEALRELAY_STORE_BACKEND"):
            self.backend = v
        if v := os.environ.get("SEALRELAY_DB_PATH"):
            self.path = v


@dataclass
class HealthConfig:
    """[health] section."""
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 3470

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthConfig":
        return cls(
            enabled=data.get("enabled", True),
            host=data.get("host", "127.0.0.1"),
            port=data.get("port", 3470),
        )

    def apply_env(self) -> None:
        if v := os.environ.get("SEALRELAY_HEALTH_HOST"):
            self.host = v
        if v := os.environ.get("SEALRELAY_HEALTH_PORT"):
            self.port = int(v)


# -----------------------------------------------------------------------
# Top-level config
# -----------------------------------------------------------------------

@dataclass
class RelayerConfig:
    """
    Unified relayer configuration.

    Loads every section of config.toml and applies environment variable
    overrides. This is the single source of truth at runtime.
    """
    relayer: RelayerSectionConfig = field(default_factory=RelayerSectionConfig)
    source: SourceConfig = field(default_factory=SourceConfig)
    custody: CustodyConfig = field(default_factory=CustodyConfig)
    destination: DestinationConfig = field(default_factory=DestinationConfig)
    guardian: GuardianConfig = field(default_factory=GuardianConfig)
    signing: SigningConfig = field(default_factory=SigningConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    closure: ClosureConfig = field(default_factory=ClosureConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    health: HealthConfig = field(default_factory=HealthConfig)

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayerConfig":
        """Create RelayerConfig from a parsed TOML dict."""
        return cls(
            relayer=RelayerSectionConfig.from_dict(data.get("relayer", {})),
            source=SourceConfig.from_dict(data.get("source", {})),
            custody=CustodyConfig.from_dict(data.get("custody", {})),
            destination=DestinationConfig.from_dict(data.get("destination", {})),
            guardian=GuardianConfig.from_dict(data.get("guardian", {})),
            signing=SigningConfig.from_dict(data.get("signing", {})),
            ledger=LedgerConfig.from_dict(data.get("ledger", {})),
            ingestion=IngestionConfig.from_dict(data.get("ingestion", {})),
            closure=ClosureConfig.from_dict(data.get("closure", {})),
            store=StoreConfig.from_dict(data.get("store", {})),
            health=HealthConfig.from_dict(data.get("health", {})),
        )

    @classmethod
    def from_file(cls, config_path: str) -> "RelayerConfig":
        """
        Load configuration from a TOML file.

        A missing file yields defaults (with env overrides).
        """
        path = Path(config_path)
        if not path.exists():
            logger.warning("Config file not found: %s, using defaults", config_path)
            cfg = cls()
            cfg.apply_env()
            return cfg

        try:
            with open(path, "rb") as f:
                raw = tomli.load(f)
        except tomli.TOMLDecodeError as e:
            raise ConfigurationError(f"Invalid TOML in {config_path}: {e}") from e

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.relayer.apply_env()
        self.source.apply_env()
        self.custody.apply_env()
        self.destination.apply_env()
        self.guardian.apply_env()
        self.ingestion.apply_env()
        self.closure.apply_env()
        self.store.apply_env()
        self.health.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Live mode additionally requires every ledger endpoint, object id and
        keypair secret.

        Raises:
            ConfigurationError: on invalid config
        """
        if self.relayer.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Invalid log_level: {self.relayer.log_level}")
        if self.relayer.worker_count < 1:
            raise ConfigurationError("worker_count must be >= 1")
        if self.relayer.queue_size < 1:
            raise ConfigurationError("queue_size must be >= 1")
        if self.relayer.max_item_retries < 0:
            raise ConfigurationError("max_item_retries must be >= 0")
        if self.relayer.shutdown_timeout <= 0:
            raise ConfigurationError("shutdown_timeout must be > 0")
        if self.store.backend not in ("memory", "sqlite"):
            raise ConfigurationError(f"Unknown store backend: {self.store.backend}")
        if self.ledger.max_attempts < 1:
            raise ConfigurationError("ledger.max_attempts must be >= 1")
        if self.signing.poll_timeout <= 0 or self.signing.poll_interval <= 0:
            raise ConfigurationError("signing poll interval and timeout must be positive")
        if self.signing.restarts < 0:
            raise ConfigurationError("signing.restarts must be >= 0")
        if self.ingestion.batch_size < 1:
            raise ConfigurationError("ingestion.batch_size must be >= 1")
        for emitter in self.guardian.emitters:
            if ":" not in emitter:
                raise ConfigurationError(f"Emitter must be '<chain_id>:<address hex>': {emitter}")

        if self.relayer.simulate:
            return True

        required = {
            "source.rpc_url": self.source.rpc_url,
            "source.package_id": self.source.package_id,
            "source.registry_id": self.source.registry_id,
            "source.reborn_table_id": self.source.reborn_table_id,
            "custody.package_id": self.custody.package_id,
            "custody.coordinator_id": self.custody.coordinator_id,
            "custody.dwallet_id": self.custody.dwallet_id,
            "custody.sessions_table_id": self.custody.sessions_table_id,
            "destination.rpc_url": self.destination.rpc_url,
            "destination.program_id": self.destination.program_id,
            "SEALRELAY_SUI_SECRET": self.source.secret,
            "SEALRELAY_SOLANA_SECRET": self.destination.secret,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(f"Missing required settings: {', '.join(missing)}")
        if self.guardian.enabled and not self.guardian.emitters:
            raise ConfigurationError("guardian.enabled requires at least one emitter")
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics). Secrets are reported as set/unset only."""
        return {
            "relayer": {
                "name": self.relayer.name,
                "log_level": self.relayer.log_level,
                "worker_count": self.relayer.worker_count,
                "queue_size": self.relayer.queue_size,
                "max_item_retries": self.relayer.max_item_retries,
                "shutdown_timeout": self.relayer.shutdown_timeout,
                "simulate": self.relayer.simulate,
            },
            "source": {
                "rpc_url": self.source.rpc_url,
                "package_id": self.source.package_id,
                "registry_id": self.source.registry_id,
                "secret_set": bool(self.source.secret),
            },
            "custody": {
                "package_id": self.custody.package_id,
                "coordinator_id": self.custody.coordinator_id,
                "dwallet_id": self.custody.dwallet_id,
            },
            "destination": {
                "rpc_url": self.destination.rpc_url,
                "program_id": self.destination.program_id,
                "commitment": self.destination.commitment,
                "bind_recipient": self.destination.bind_recipient,
                "secret_set": bool(self.destination.secret),
            },
            "guardian": {
                "enabled": self.guardian.enabled,
                "api_url": self.guardian.api_url,
                "emitters": list(self.guardian.emitters),
            },
            "signing": {
                "poll_interval": self.signing.poll_interval,
                "poll_timeout": self.signing.poll_timeout,
                "restarts": self.signing.restarts,
            },
            "ledger": {
                "max_attempts": self.ledger.max_attempts,
                "backoff_base": self.ledger.backoff_base,
                "backoff_max": self.ledger.backoff_max,
            },
            "ingestion": {
                "poll_interval": self.ingestion.poll_interval,
                "batch_size": self.ingestion.batch_size,
            },
            "closure": {
                "allowed_closers": list(self.closure.allowed_closers),
                "close_with_evidence": self.closure.close_with_evidence,
            },
            "store": {
                "backend": self.store.backend,
                "path": self.store.path,
                "use_leases": self.store.use_leases,
            },
            "health": {
                "enabled": self.health.enabled,
                "host": self.health.host,
                "port": self.health.port,
            },
        }


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> RelayerConfig:
    """
    Load relayer configuration.

    Resolution order:
        1. Explicit *path* argument
        2. SEALRELAY_CONFIG env var
        3. ./config.toml in current directory
        4. Defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("SEALRELAY_CONFIG", "config.toml")

    return RelayerConfig.from_file(path)
