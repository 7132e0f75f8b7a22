"""Tests for export configuration loading and validation.

Tests cover:
- Defaults and derived values (identity_url, export_url)
- Validation collecting every problem into one ConfigurationError
- YAML loading with ${VAR} expansion and relative path resolution
- start_at coercion from YAML timestamps
"""

from datetime import date, datetime, timezone

import pytest

from bulkexport.lib.config import (
    MAX_PROVIDER_WINDOW_DAYS,
    ExportConfig,
    expand_env_vars,
    load_config,
)
from bulkexport.lib.errors import ConfigurationError
from bulkexport.lib.time_utils import EPOCH


def _config(**overrides):
    options = {
        "client_id": "client",
        "client_secret": "secret",
        "base_url": "https://123-ABC-456.mktorest.com/",
    }
    options.update(overrides)
    return ExportConfig(**options)


class TestExportConfigDefaults:
    """Tests for defaults and derived values."""

    def test_defaults(self, monkeypatch):
        """Defaults should match the provider's limits."""
        monkeypatch.delenv("BULK_EXPORT_STATE_DIR", raising=False)
        config = _config()

        assert config.max_window_days == MAX_PROVIDER_WINDOW_DAYS == 31
        assert config.max_concurrent_jobs == 10
        assert config.time_budget_seconds == 300
        assert config.state_dir == ".state"
        assert config.start_at == EPOCH
        assert config.use_id_filter is True

    def test_identity_url_derived_from_base_url(self):
        config = _config()
        assert config.identity_url == "https://123-ABC-456.mktorest.com/identity"

    def test_explicit_identity_url_kept(self):
        config = _config(identity_url="https://auth.example.com")
        assert config.identity_url == "https://auth.example.com"

    def test_export_url(self):
        config = _config(export_path="bulk/v1/activities/export/")
        assert config.export_url == (
            "https://123-ABC-456.mktorest.com/bulk/v1/activities/export"
        )

    def test_state_dir_from_environment(self, monkeypatch):
        monkeypatch.setenv("BULK_EXPORT_STATE_DIR", "/var/lib/bulk-export")
        assert _config().state_dir == "/var/lib/bulk-export"


class TestExportConfigValidation:
    """Tests for configuration validation."""

    def test_collects_all_issues(self):
        """Every problem should be reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            _config(client_id="", max_window_days=45, max_concurrent_jobs=0)

        issues = exc_info.value.issues
        assert "client_id is required" in issues
        assert any("max_window_days" in issue for issue in issues)
        assert any("max_concurrent_jobs" in issue for issue in issues)

    def test_key_column_must_be_exported(self):
        with pytest.raises(ConfigurationError, match="key column 'id'"):
            _config(fields=["email", "createdAt"])

    def test_lock_ttl_must_cover_time_budget(self):
        with pytest.raises(ConfigurationError, match="lock_ttl_seconds"):
            _config(time_budget_seconds=600, lock_ttl_seconds=300)

    def test_invalid_start_at(self):
        with pytest.raises(ConfigurationError, match="start_at"):
            _config(start_at="last tuesday")

    @pytest.mark.parametrize(
        "value",
        [
            "2024-01-01T00:00:00Z",
            datetime(2024, 1, 1),
            date(2024, 1, 1),
        ],
    )
    def test_start_at_coerced_to_utc(self, value):
        """YAML may hand us strings, datetimes or dates."""
        config = _config(start_at=value)
        assert config.start_at == datetime(2024, 1, 1, tzinfo=timezone.utc)

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigurationError, match="unknown option 'batch_size'"):
            ExportConfig.from_dict(
                {
                    "client_id": "c",
                    "client_secret": "s",
                    "base_url": "https://x",
                    "batch_size": 10,
                }
            )

    def test_from_dict_missing_required(self):
        with pytest.raises(ConfigurationError):
            ExportConfig.from_dict({"client_id": "c"})


class TestEnvExpansion:
    """Tests for ${VAR} expansion."""

    def test_expands_braced_and_bare(self, monkeypatch):
        monkeypatch.setenv("EXPORT_HOST", "api.example.com")
        assert expand_env_vars("https://${EXPORT_HOST}/x") == "https://api.example.com/x"
        assert expand_env_vars("$EXPORT_HOST") == "api.example.com"

    def test_missing_variable_kept_when_not_strict(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        assert expand_env_vars("${NOT_SET_ANYWHERE}") == "${NOT_SET_ANYWHERE}"

    def test_missing_variable_raises_when_strict(self, monkeypatch):
        monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
        with pytest.raises(KeyError):
            expand_env_vars("${NOT_SET_ANYWHERE}", strict=True)


class TestLoadConfig:
    """Tests for loading YAML configuration files."""

    def test_load_yaml_with_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("EXPORT_CLIENT_ID", "from-env")
        monkeypatch.setenv("EXPORT_CLIENT_SECRET", "s3cret")
        config_file = tmp_path / "export.yaml"
        config_file.write_text(
            "client_id: ${EXPORT_CLIENT_ID}\n"
            "client_secret: ${EXPORT_CLIENT_SECRET}\n"
            "base_url: https://api.example.com\n"
            "sink_path: ./data/leads.csv\n"
            "state_dir: ./state\n"
            "fields: [id, email, createdAt]\n"
            "start_at: 2024-01-01\n"
            "max_window_days: 7\n"
        )

        config = load_config(config_file)

        assert config.client_id == "from-env"
        assert config.client_secret == "s3cret"
        assert config.fields == ["id", "email", "createdAt"]
        assert config.max_window_days == 7
        assert config.start_at == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert config.sink_path == str(tmp_path / "./data/leads.csv")
        assert config.state_dir == str(tmp_path / "./state")

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config(tmp_path / "missing.yaml")

    def test_unresolved_variable(self, tmp_path, monkeypatch):
        monkeypatch.delenv("MISSING_SECRET", raising=False)
        config_file = tmp_path / "export.yaml"
        config_file.write_text(
            "client_id: c\nclient_secret: ${MISSING_SECRET}\nbase_url: https://x\n"
        )

        with pytest.raises(ConfigurationError, match="Unresolved environment variable"):
            load_config(config_file)

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "export.yaml"
        config_file.write_text("client_id: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            load_config(config_file)

    def test_top_level_must_be_mapping(self, tmp_path):
        config_file = tmp_path / "export.yaml"
        config_file.write_text("- just\n- a list\n")

        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(config_file)
