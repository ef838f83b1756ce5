"""
Configuration Loader Tests

TOML loading, environment overrides, secrets, validation.
"""

import os
import sys

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from sealrelay.config import RelayerConfig, load_config
from sealrelay.exceptions import ConfigurationError

EXAMPLE = os.path.join(ROOT, "config.example.toml")

LIVE_TOML = """
[source]
rpc_url = "http://sui.local"
package_id = "0xpkg"
registry_id = "0xregistry"
reborn_table_id = "0xtable"

[custody]
package_id = "0xcustody"
coordinator_id = "0xcoordinator"
dwallet_id = "0xdwallet"
sessions_table_id = "0xsessions"

[destination]
rpc_url = "http://solana.local"
program_id = "Prog1111111111111111111111111111111111111111"
"""

ENV_VARS = [
    "SEALRELAY_CONFIG",
    "SEALRELAY_LOG_LEVEL",
    "SEALRELAY_WORKER_COUNT",
    "SEALRELAY_SIMULATE",
    "SEALRELAY_SOURCE_RPC_URL",
    "SEALRELAY_SUI_SECRET",
    "SEALRELAY_SOLANA_SECRET",
    "SEALRELAY_CLOSER_SECRET",
    "SEALRELAY_ALLOWED_CLOSERS",
    "SEALRELAY_GUARDIAN_EMITTERS",
    "SEALRELAY_STORE_BACKEND",
    "SEALRELAY_DB_PATH",
    "SEALRELAY_HEALTH_PORT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


# ══════════════════════════════════════════════════════════════════════
#  SECTION 1: LOADING
# ══════════════════════════════════════════════════════════════════════

class TestLoading:

    def test_example_file_loads(self):
        config = RelayerConfig.from_file(EXAMPLE)
        assert config.relayer.worker_count == 4
        assert config.destination.commitment == "confirmed"
        assert config.signing.restarts == 1
        assert config.health.port == 3470
        assert config.relayer.shutdown_timeout == 30.0
        assert config.guardian.max_backoff == 60.0

    def test_missing_file_gives_defaults(self, tmp_path):
        config = RelayerConfig.from_file(str(tmp_path / "absent.toml"))
        assert config.store.backend == "sqlite"
        assert config.relayer.max_item_retries == 3

    def test_invalid_toml(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[relayer\nworker_count = ")
        with pytest.raises(ConfigurationError):
            RelayerConfig.from_file(str(path))

    def test_partial_sections(self):
        config = RelayerConfig.from_dict({"ledger": {"max_attempts": 9}})
        assert config.ledger.max_attempts == 9
        assert config.ledger.backoff_base == 0.5

    def test_load_config_from_env_path(self, tmp_path, monkeypatch):
        path = tmp_path / "relayer.toml"
        path.write_text('[relayer]\nname = "from-env"\n')
        monkeypatch.setenv("SEALRELAY_CONFIG", str(path))
        assert load_config().relayer.name == "from-env"

    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        explicit = tmp_path / "explicit.toml"
        explicit.write_text('[relayer]\nname = "explicit"\n')
        monkeypatch.setenv("SEALRELAY_CONFIG", str(tmp_path / "other.toml"))
        assert load_config(str(explicit)).relayer.name == "explicit"


# ══════════════════════════════════════════════════════════════════════
#  SECTION 2: ENVIRONMENT
# ══════════════════════════════════════════════════════════════════════

class TestEnvironment:

    def test_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("SEALRELAY_WORKER_COUNT", "8")
        monkeypatch.setenv("SEALRELAY_SIMULATE", "yes")
        monkeypatch.setenv("SEALRELAY_SOURCE_RPC_URL", "http://override")
        monkeypatch.setenv("SEALRELAY_GUARDIAN_EMITTERS", "1:aa, 2:bb")
        monkeypatch.setenv("SEALRELAY_HEALTH_PORT", "9000")
        config = RelayerConfig.from_file(EXAMPLE)
        assert config.relayer.worker_count == 8
        assert config.relayer.simulate is True
        assert config.source.rpc_url == "http://override"
        assert config.guardian.emitters == ["1:aa", "2:bb"]
        assert config.health.port == 9000

    def test_secrets_only_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "config.toml"
        path.write_text('[source]\nsecret = "in-file"\n[destination]\nsecret = "in-file"\n')
        config = RelayerConfig.from_file(str(path))
        assert config.source.secret == ""
        assert config.destination.secret == ""

        monkeypatch.setenv("SEALRELAY_SUI_SECRET", "sui-secret")
        monkeypatch.setenv("SEALRELAY_CLOSER_SECRET", "closer-secret")
        config = RelayerConfig.from_file(str(path))
        assert config.source.secret == "sui-secret"
        assert config.closure.secret == "closer-secret"

    def test_secrets_hidden(self, monkeypatch):
        monkeypatch.setenv("SEALRELAY_SOLANA_SECRET", "do-not-print")
        config = RelayerConfig()
        config.apply_env()
        assert "do-not-print" not in repr(config)
        assert "do-not-print" not in str(config.to_dict())
        assert config.to_dict()["destination"]["secret_set"] is True


# ══════════════════════════════════════════════════════════════════════
#  SECTION 3: VALIDATION
# ══════════════════════════════════════════════════════════════════════

class TestValidation:

    def _simulated(self) -> RelayerConfig:
        config = RelayerConfig()
        config.relayer.simulate = True
        return config

    def test_simulated_defaults_valid(self):
        assert self._simulated().validate()

    @pytest.mark.parametrize("section,name,value", [
        ("relayer", "log_level", "LOUD"),
        ("relayer", "worker_count", 0),
        ("relayer", "queue_size", 0),
        ("relayer", "max_item_retries", -1),
        ("relayer", "shutdown_timeout", 0),
        ("store", "backend", "redis"),
        ("ledger", "max_attempts", 0),
        ("signing", "poll_timeout", 0),
        ("signing", "restarts", -1),
        ("ingestion", "batch_size", 0),
    ])
    def test_invalid_values(self, section, name, value):
        config = self._simulated()
        setattr(getattr(config, section), name, value)
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_bad_emitter(self):
        config = self._simulated()
        config.guardian.emitters = ["no-separator"]
        with pytest.raises(ConfigurationError, match="Emitter"):
            config.validate()

    def test_live_requires_ids_and_secrets(self, tmp_path):
        path = tmp_path / "config.toml"
        path.write_text(LIVE_TOML)
        config = RelayerConfig.from_file(str(path))
        with pytest.raises(ConfigurationError) as exc:
            config.validate()
        assert "SEALRELAY_SUI_SECRET" in str(exc.value)
        assert "SEALRELAY_SOLANA_SECRET" in str(exc.value)
        assert "source.rpc_url" not in str(exc.value)

    def test_live_complete(self, tmp_path, monkeypatch):
        path = tmp_path / "config.toml"
        path.write_text(LIVE_TOML)
        monkeypatch.setenv("SEALRELAY_SUI_SECRET", "a")
        monkeypatch.setenv("SEALRELAY_SOLANA_SECRET", "b")
        assert RelayerConfig.from_file(str(path)).validate()

    def test_guardian_needs_emitters(self, tmp_path, monkeypatch):
        path = tmp_path / "config.toml"
        path.write_text(LIVE_TOML + "\n[guardian]\nenabled = true\n")
        monkeypatch.setenv("SEALRELAY_SUI_SECRET", "a")
        monkeypatch.setenv("SEALRELAY_SOLANA_SECRET", "b")
        with pytest.raises(ConfigurationError, match="emitter"):
            RelayerConfig.from_file(str(path)).validate()
