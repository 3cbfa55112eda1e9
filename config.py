"""Configuration loader for the nudged daemon.

Loads nudged.toml, applies environment variable overrides for secrets,
validates required fields, and provides typed access to all settings.
Immutable after load — no runtime config reloading.
"""

import logging
import os
import re
import tomllib
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


# Environment variable overrides for secrets
_ENV_OVERRIDES = {
    "NUDGED_ANTHROPIC_KEY": ("api_keys", "anthropic"),
    "NUDGED_OPENAI_KEY": ("api_keys", "openai"),
    "NUDGED_HTTP_TOKEN": ("api_keys", "http_token"),
}

# Provider type → api_keys entry used when a model has no api_key_env
_PROVIDER_KEYS = {
    "anthropic-compat": "anthropic",
    "openai-compat": "openai",
}

_HHMM = re.compile(r"^([01]?\d|2[0-3]):[0-5]\d$")


def _deep_get(d: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if not isinstance(d, dict):
            return default
        d = d.get(key, default)
    return d


def _resolve_path(p: str) -> Path:
    return Path(p).expanduser().resolve()


class Config:
    """Immutable configuration loaded from nudged.toml."""

    def __init__(self, data: dict, config_dir: Path | None = None):
        self._data = data
        self._config_dir = config_dir or Path.cwd()
        self._apply_env_overrides()
        self._validate()

    def _apply_env_overrides(self):
        for env_var, key_path in _ENV_OVERRIDES.items():
            val = os.environ.get(env_var)
            if val:
                section, key = key_path
                if section not in self._data:
                    self._data[section] = {}
                self._data[section][key] = val

    def _validate(self):
        errors = []
        if not _deep_get(self._data, "agent", "name"):
            errors.append("[agent] name is required")
        ch_type = _deep_get(self._data, "channel", "type")
        if not ch_type:
            errors.append("[channel] type is required")
        elif ch_type not in ("telegram", "cli"):
            errors.append(f"[channel] type must be 'telegram' or 'cli', got {ch_type!r}")
        if not _deep_get(self._data, "models", "primary"):
            errors.append("[models.primary] section is required")
        primary = _deep_get(self._data, "models", "primary", default={})
        if not primary.get("provider"):
            errors.append("[models.primary] provider is required")
        if not primary.get("model"):
            errors.append("[models.primary] model is required")
        if ch_type == "telegram":
            tg = _deep_get(self._data, "channel", "telegram", default={})
            if not tg.get("token_env"):
                errors.append("[channel.telegram] token_env is required")
        for key in ("start", "end"):
            value = _deep_get(self._data, "proactive", "quiet_hours", key)
            if value is not None and not (isinstance(value, str) and _HHMM.match(value)):
                errors.append(f"[proactive.quiet_hours] {key} must be HH:MM, got {value!r}")
        if _deep_get(self._data, "proactive", "enabled", default=False):
            if not _deep_get(self._data, "proactive", "target_chat_id"):
                errors.append("[proactive] target_chat_id is required when enabled")
        if _deep_get(self._data, "escalation", "enabled", default=False):
            if not _deep_get(self._data, "escalation", "destination"):
                errors.append("[escalation] destination is required when enabled")
            if not _deep_get(self._data, "escalation", "from_number"):
                errors.append("[escalation] from_number is required when enabled")
        if errors:
            raise ConfigError("Configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    # --- Agent ---

    @property
    def agent_name(self) -> str:
        return self._data["agent"]["name"]

    @property
    def agent_language(self) -> str:
        return _deep_get(self._data, "agent", "language", default="en")

    @property
    def agent_timezone(self) -> str:
        return _deep_get(self._data, "agent", "timezone", default="UTC")

    @property
    def system_prompt(self) -> str:
        return _deep_get(
            self._data, "agent", "system_prompt",
            default=f"You are {self.agent_name}, a concise and friendly personal assistant.",
        )

    # --- Channel ---

    @property
    def channel_type(self) -> str:
        return self._data["channel"]["type"]

    @property
    def telegram_config(self) -> dict:
        return _deep_get(self._data, "channel", "telegram", default={})

    # --- HTTP API ---

    @property
    def http_enabled(self) -> bool:
        return _deep_get(self._data, "http", "enabled", default=False)

    @property
    def http_host(self) -> str:
        return _deep_get(self._data, "http", "host", default="127.0.0.1")

    @property
    def http_port(self) -> int:
        return _deep_get(self._data, "http", "port", default=8100)

    @property
    def http_auth_token(self) -> str:
        return self.api_key("http_token")

    @property
    def http_max_body_bytes(self) -> int:
        return _deep_get(self._data, "http", "max_body_bytes", default=64 * 1024)

    @property
    def http_rate_limit(self) -> int:
        return _deep_get(self._data, "http", "rate_limit", default=30)

    @property
    def http_rate_window(self) -> int:
        return _deep_get(self._data, "http", "rate_window", default=60)

    @property
    def http_status_rate_limit(self) -> int:
        return _deep_get(self._data, "http", "status_rate_limit", default=60)

    # --- Models ---

    def model_config(self, name: str) -> dict:
        cfg = _deep_get(self._data, "models", name, default={})
        if not cfg:
            raise ValueError(f"No model config for '{name}'")
        return cfg

    def model_api_key(self, name: str) -> str:
        """API key for a model: its api_key_env var, else the provider's key."""
        cfg = self.model_config(name)
        env_var = cfg.get("api_key_env", "")
        if env_var:
            return os.environ.get(env_var, "")
        return self.api_key(_PROVIDER_KEYS.get(cfg.get("provider", ""), ""))

    # --- Routing ---

    def route_model(self, source: str) -> str:
        return _deep_get(self._data, "routing", source, default="primary")

    # --- Proactive ---

    @property
    def proactive_enabled(self) -> bool:
        return _deep_get(self._data, "proactive", "enabled", default=False)

    @property
    def check_interval_minutes(self) -> float:
        return _deep_get(self._data, "proactive", "check_interval_minutes", default=5)

    @property
    def cooldown_minutes(self) -> float:
        return _deep_get(self._data, "proactive", "cooldown_minutes", default=15)

    @property
    def reminder_cooldown_minutes(self) -> float:
        return _deep_get(self._data, "proactive", "reminder_cooldown_minutes", default=180)

    @property
    def defer_minutes(self) -> float:
        return _deep_get(self._data, "proactive", "defer_minutes", default=5)

    @property
    def quiet_hours_start(self) -> str:
        return _deep_get(self._data, "proactive", "quiet_hours", "start", default="22:00")

    @property
    def quiet_hours_end(self) -> str:
        return _deep_get(self._data, "proactive", "quiet_hours", "end", default="08:00")

    @property
    def proactive_target_chat_id(self) -> str:
        return str(_deep_get(self._data, "proactive", "target_chat_id", default=""))

    @property
    def proactive_target_user_id(self) -> str:
        """Quiet-mode owner; defaults to the target chat (private chats share ids)."""
        user = _deep_get(self._data, "proactive", "target_user_id", default="")
        return str(user) if user else self.proactive_target_chat_id

    @property
    def gating_timeout(self) -> float:
        return float(_deep_get(self._data, "proactive", "gating_timeout_seconds", default=120))

    # --- Escalation ---

    @property
    def escalation_enabled(self) -> bool:
        return _deep_get(self._data, "escalation", "enabled", default=False)

    @property
    def escalation_urgency_threshold(self) -> int:
        value = int(_deep_get(self._data, "escalation", "urgency_threshold", default=8))
        return max(1, min(10, value))

    @property
    def escalation_destination(self) -> str:
        return _deep_get(self._data, "escalation", "destination", default="")

    @property
    def escalation_from_number(self) -> str:
        return _deep_get(self._data, "escalation", "from_number", default="")

    @property
    def twilio_sid_env(self) -> str:
        return _deep_get(self._data, "escalation", "account_sid_env",
                         default="TWILIO_ACCOUNT_SID")

    @property
    def twilio_token_env(self) -> str:
        return _deep_get(self._data, "escalation", "auth_token_env",
                         default="TWILIO_AUTH_TOKEN")

    # --- Collectors ---

    @property
    def goals_collector_enabled(self) -> bool:
        return _deep_get(self._data, "collectors", "goals", "enabled", default=True)

    @property
    def goals_horizon_days(self) -> int:
        return _deep_get(self._data, "collectors", "goals", "horizon_days", default=3)

    @property
    def vault_collector_enabled(self) -> bool:
        return _deep_get(self._data, "collectors", "vault", "enabled", default=False)

    @property
    def vault_path(self) -> Path:
        return _resolve_path(_deep_get(self._data, "collectors", "vault", "path",
                                       default="~/notes"))

    @property
    def vault_lookback_hours(self) -> float:
        return _deep_get(self._data, "collectors", "vault", "lookback_hours", default=24)

    @property
    def vault_max_items(self) -> int:
        return _deep_get(self._data, "collectors", "vault", "max_items", default=20)

    @property
    def vault_exclude_dirs(self) -> list[str]:
        return _deep_get(self._data, "collectors", "vault", "exclude_dirs",
                         default=[".obsidian", ".trash", ".git"])

    # --- Sessions ---

    @property
    def session_timeout_hours(self) -> float:
        return _deep_get(self._data, "sessions", "timeout_hours", default=4)

    @property
    def history_limit(self) -> int:
        return _deep_get(self._data, "sessions", "history_limit", default=20)

    # --- Behavior ---

    @property
    def error_message(self) -> str:
        return _deep_get(self._data, "behavior", "error_message",
                         default="I'm having trouble connecting right now. Try again in a moment.")

    @property
    def api_retries(self) -> int:
        return _deep_get(self._data, "behavior", "api_retries", default=2)

    @property
    def api_retry_base_delay(self) -> float:
        return float(_deep_get(self._data, "behavior", "api_retry_base_delay", default=2.0))

    # --- Paths ---

    @property
    def state_dir(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "state_dir", default="~/.nudged"))

    @property
    def db_path(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "db",
                                       default="~/.nudged/nudged.db"))

    @property
    def log_file(self) -> Path:
        return _resolve_path(_deep_get(self._data, "paths", "log_file",
                                       default="~/.nudged/nudged.log"))

    # --- Logging ---

    @property
    def log_max_bytes(self) -> int:
        return _deep_get(self._data, "logging", "max_bytes", default=10 * 1024 * 1024)

    @property
    def log_backup_count(self) -> int:
        return _deep_get(self._data, "logging", "backup_count", default=3)

    # --- API Keys ---

    def api_key(self, provider: str) -> str:
        return _deep_get(self._data, "api_keys", provider, default="")


def _load_dotenv(toml_path: Path) -> None:
    """Load .env file from same directory as nudged.toml if it exists."""
    env_file = toml_path.parent / ".env"
    if not env_file.exists():
        return
    with open(env_file, encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, _, val = line.partition("=")
            key = key.strip()
            val = val.strip().strip('"').strip("'")
            # Only set if not already in environment (env takes precedence)
            if key not in os.environ:
                os.environ[key] = val


def load_config(path: str | Path, overrides: dict | None = None) -> Config:
    """Load and validate config from a TOML file.

    Args:
        path: Path to nudged.toml config file.
        overrides: Dict of dotted-key overrides applied to the raw TOML
                   data before validation (e.g. CLI args).
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(f"Config file not found: {p}")
    _load_dotenv(p)
    with open(p, "rb") as f:
        data = tomllib.load(f)
    if overrides:
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            d = data
            for k in keys[:-1]:
                d = d.setdefault(k, {})
            d[keys[-1]] = value
    return Config(data, config_dir=p.parent)
