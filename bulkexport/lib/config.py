"""Configuration for the export coordinator.

All settings live on an explicit ``ExportConfig`` that is passed into the
coordinator. Configuration is usually loaded from a YAML file whose string
values may reference environment variables with ``${VAR_NAME}`` syntax, so
credentials never need to be written to disk.

Example YAML (export.yaml):
    client_id: "${EXPORT_CLIENT_ID}"
    client_secret: "${EXPORT_CLIENT_SECRET}"
    base_url: "https://123-ABC-456.mktorest.com"
    sink_path: "./data/leads.csv"
    fields: [id, email, firstName, lastName, createdAt]
    max_window_days: 31
    max_concurrent_jobs: 10

Usage:
    from bulkexport.lib.config import load_config
    config = load_config("./export.yaml")
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field, fields as dataclass_fields
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from bulkexport.lib.errors import ConfigurationError
from bulkexport.lib.time_utils import EPOCH, parse_timestamp

logger = logging.getLogger(__name__)

__all__ = [
    "ExportConfig",
    "MAX_PROVIDER_WINDOW_DAYS",
    "expand_env_vars",
    "load_config",
    "load_env_file",
]

# The provider rejects createdAt windows wider than this.
MAX_PROVIDER_WINDOW_DAYS = 31

DEFAULT_STATE_DIR = ".state"

ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Returns:
        True if a .env file was found and loaded, False otherwise.
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str, *, strict: bool = False) -> str:
    """Expand ${VAR_NAME} and $VAR_NAME references in a string.

    Args:
        value: String potentially containing env var references
        strict: If True, raise KeyError for missing variables
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        env_value = os.environ.get(var_name)
        if env_value is None:
            if strict:
                raise KeyError(f"Environment variable not set: {var_name}")
            return str(match.group(0))
        return env_value

    return ENV_VAR_PATTERN.sub(replacer, value)


def _expand(value: Any) -> Any:
    if isinstance(value, str):
        return expand_env_vars(value, strict=True)
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(item) for item in value]
    return value


@dataclass
class ExportConfig:
    """Static configuration for one export stream.

    Credentials, sink location and limits are carried here rather than in
    module-level state, so several streams can be coordinated side by side.
    """

    # Credentials
    client_id: str
    client_secret: str

    # Provider endpoints
    base_url: str
    identity_url: Optional[str] = None
    export_path: str = "/bulk/v1/leads/export"

    # Sink and state
    sink_path: str = "./export.csv"
    key_column: str = "id"
    state_dir: str = field(
        default_factory=lambda: os.environ.get("BULK_EXPORT_STATE_DIR", DEFAULT_STATE_DIR)
    )

    # What to export
    fields: List[str] = field(default_factory=lambda: ["id", "createdAt"])
    use_id_filter: bool = True
    start_at: datetime = EPOCH

    # Limits
    max_window_days: int = MAX_PROVIDER_WINDOW_DAYS
    max_concurrent_jobs: int = 10
    time_budget_seconds: float = 300.0
    lock_ttl_seconds: float = 600.0

    # Retry behaviour
    auth_max_attempts: int = 5
    auth_backoff_seconds: float = 2.0
    fetch_max_attempts: int = 3
    fetch_backoff_seconds: float = 5.0
    request_timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_factor: float = 0.5

    def __post_init__(self) -> None:
        self.start_at = self._coerce_start_at(self.start_at)
        if not self.identity_url and self.base_url:
            self.identity_url = self.base_url.rstrip("/") + "/identity"

        errors = self._validate()
        if errors:
            raise ConfigurationError(
                "Invalid export configuration",
                issues=errors,
                suggestion="Fix the configuration and try again.",
            )

    @staticmethod
    def _coerce_start_at(value: Any) -> datetime:
        # YAML turns unquoted timestamps into datetime/date objects
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc)
        if isinstance(value, date):
            return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
        try:
            return parse_timestamp(str(value))
        except ValueError:
            raise ConfigurationError(
                "Invalid export configuration",
                issues=[f"start_at is not an ISO-8601 timestamp: {value!r}"],
            )

    def _validate(self) -> List[str]:
        """Validate configuration and return list of errors."""
        errors: List[str] = []

        if not self.client_id:
            errors.append("client_id is required")
        if not self.client_secret:
            errors.append("client_secret is required")
        if not self.base_url:
            errors.append("base_url is required (e.g., 'https://123-ABC-456.mktorest.com')")
        if not self.sink_path:
            errors.append("sink_path is required")
        if not self.fields:
            errors.append("fields must list at least one column")
        elif self.key_column not in self.fields:
            errors.append(f"fields must include the key column '{self.key_column}'")

        if not 1 <= self.max_window_days <= MAX_PROVIDER_WINDOW_DAYS:
            errors.append(
                f"max_window_days must be between 1 and {MAX_PROVIDER_WINDOW_DAYS}"
            )
        if self.max_concurrent_jobs < 1:
            errors.append("max_concurrent_jobs must be at least 1")
        if self.time_budget_seconds <= 0:
            errors.append("time_budget_seconds must be positive")
        if self.lock_ttl_seconds < self.time_budget_seconds:
            errors.append("lock_ttl_seconds must not be shorter than time_budget_seconds")
        if self.auth_max_attempts < 1:
            errors.append("auth_max_attempts must be at least 1")
        if self.fetch_max_attempts < 1:
            errors.append("fetch_max_attempts must be at least 1")

        return errors

    @property
    def export_url(self) -> str:
        return self.base_url.rstrip("/") + "/" + self.export_path.strip("/")

    @classmethod
    def from_dict(cls, options: Dict[str, Any]) -> "ExportConfig":
        """Build a config from a plain mapping, rejecting unknown keys."""
        known = {f.name for f in dataclass_fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(
                "Invalid export configuration",
                issues=[f"unknown option '{name}'" for name in unknown],
            )
        try:
            return cls(**options)
        except TypeError as exc:
            raise ConfigurationError(
                "Invalid export configuration", issues=[str(exc)]
            ) from exc


def load_config(path: Union[str, Path]) -> ExportConfig:
    """Load and validate an ``ExportConfig`` from a YAML file.

    Relative ``sink_path`` and ``state_dir`` values are resolved against the
    directory containing the YAML file.

    Raises:
        ConfigurationError: If the file is missing, unreadable or invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping at the top level")

    try:
        options = _expand(raw)
    except KeyError as exc:
        raise ConfigurationError(
            f"Unresolved environment variable in {config_path}",
            issues=[str(exc.args[0])],
            suggestion="Export the variable or add it to your .env file.",
        ) from exc

    config_dir = config_path.parent
    for key in ("sink_path", "state_dir"):
        value = options.get(key)
        if isinstance(value, str) and (value.startswith("./") or value.startswith("../")):
            options[key] = str(config_dir / value)

    config = ExportConfig.from_dict(options)
    logger.debug("Loaded export configuration from %s", config_path)
    return config
