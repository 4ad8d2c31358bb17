"""Settings from environment variables and an optional YAML file.

Environment variables always win over the file. The file (or every *.yaml
file in a directory) may hold top-level keys plus a `profiles` mapping; the
profile named by ZEROPLEX_PROFILE is layered on top of the top-level keys.

    mode: resolved
    interval: 5m
    features:
      add_reverse_domains: true
      watchdog_hostname: ns1.%domain%
      watchdog_expected_ip: 10.0.0.1
    interface_watch:
      mode: event
      prefix: zt
    filters:
      - type: online
        value: true
    profiles:
      lab:
        dry_run: true
"""

from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from zeroplex.daemon import parse_interval
from zeroplex.filters import FilterRule, parse_filter_rules
from zeroplex.models import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/zeroplex.yaml"
DEFAULT_TOKEN_FILE = "/var/lib/zerotier-one/authtoken.secret"

MODES = ("auto", "networkd", "resolved")
SYNC_MODES = ("once", "watch")
WATCH_MODES = ("event", "poll", "off")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def find_config_files(config_path: str) -> List[str]:
    """Find all .yaml config files in directory or return single file.

    Args:
        config_path: Path to config file or directory

    Returns:
        List of config file paths (excluding .template files)
    """
    path = Path(config_path)
    if path.is_file():
        return [str(path)]
    if path.is_dir():
        return [str(f) for f in sorted(path.glob("*.yaml")) if not f.name.endswith(".template")]
    return []


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def load_config_file(config_path: str, profile: str = "") -> Dict[str, Any]:
    """Load and merge the YAML configuration, applying the named profile."""
    data: Dict[str, Any] = {}
    for config_file in find_config_files(config_path):
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load {config_file}: {e}") from e
        if not isinstance(loaded, dict):
            raise ConfigError(f"{config_file}: top level must be a mapping")
        logger.debug(f"Loaded configuration from {config_file}")
        data = _merge(data, loaded)

    profiles = data.pop("profiles", None) or {}
    if profile:
        if not isinstance(profiles, dict) or profile not in profiles:
            raise ConfigError(f"Profile '{profile}' not found in {config_path}")
        selected = profiles[profile] or {}
        if not isinstance(selected, dict):
            raise ConfigError(f"Profile '{profile}' must be a mapping")
        data = _merge(data, selected)
    return data


@dataclass
class Settings:
    mode: str = "auto"
    log_level: str = "INFO"
    host: str = "http://localhost"
    port: int = 9993
    token_file: str = DEFAULT_TOKEN_FILE
    sync_mode: str = "watch"
    interval: str = "1m"
    dry_run: bool = False
    add_reverse_domains: bool = False
    dns_over_tls: bool = False
    multicast_dns: bool = False
    restore_on_exit: bool = True
    watchdog_ip: str = ""
    watchdog_hostname: str = ""
    watchdog_expected_ip: str = ""
    watchdog_interval: str = "1m"
    resume_watch: bool = True
    auto_restart: bool = True
    reconcile: bool = True
    network_dir: str = "/etc/systemd/network"
    interface_watch: str = "event"
    poll_interval: str = "5s"
    debounce: str = "2s"
    interface_prefix: str = "zt"
    filters: List[FilterRule] = field(default_factory=list)
    config_path: str = DEFAULT_CONFIG_PATH
    profile: str = ""

    @property
    def interval_seconds(self) -> float:
        return parse_interval(self.interval)

    @property
    def poll_interval_seconds(self) -> float:
        return parse_interval(self.poll_interval)

    @property
    def debounce_seconds(self) -> float:
        return parse_interval(self.debounce)

    @property
    def watchdog_interval_seconds(self) -> float:
        return parse_interval(self.watchdog_interval)

    @property
    def watchdog_enabled(self) -> bool:
        return bool(self.watchdog_ip or self.watchdog_hostname)


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from the config file and environment.

    Raises:
        ConfigError: if the file cannot be read or holds malformed values
    """
    env = os.environ if environ is None else environ
    config_path = env.get("ZEROPLEX_CONFIG_PATH", DEFAULT_CONFIG_PATH)
    profile = env.get("ZEROPLEX_PROFILE", "").strip()
    data = load_config_file(config_path, profile)

    features = _section(data, "features")
    networkd = _section(data, "networkd")
    watch = _section(data, "interface_watch")
    defaults = Settings()

    def pick(env_key: str, value: Any, default: Any) -> Any:
        if env_key in env and env[env_key] != "":
            return env[env_key]
        return default if value is None else value

    port_raw = pick("ZEROPLEX_PORT", data.get("port"), defaults.port)
    try:
        port = int(port_raw)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid port: {port_raw!r}") from e

    return Settings(
        mode=str(pick("ZEROPLEX_MODE", data.get("mode"), defaults.mode)).lower().strip(),
        log_level=str(pick("ZEROPLEX_LOG_LEVEL", data.get("log_level"), defaults.log_level)).upper().strip(),
        host=str(pick("ZEROPLEX_HOST", data.get("host"), defaults.host)).strip(),
        port=port,
        token_file=str(pick("ZEROPLEX_TOKEN_FILE", data.get("token_file"), defaults.token_file)),
        sync_mode=str(pick("ZEROPLEX_SYNC_MODE", data.get("sync_mode"), defaults.sync_mode)).lower().strip(),
        interval=str(pick("ZEROPLEX_INTERVAL", data.get("interval"), defaults.interval)),
        dry_run=parse_bool(pick("ZEROPLEX_DRY_RUN", data.get("dry_run"), None), default=False),
        add_reverse_domains=parse_bool(
            pick("ZEROPLEX_ADD_REVERSE_DOMAINS", features.get("add_reverse_domains"), None), default=False
        ),
        dns_over_tls=parse_bool(
            pick("ZEROPLEX_DNS_OVER_TLS", features.get("dns_over_tls"), None), default=False
        ),
        multicast_dns=parse_bool(
            pick("ZEROPLEX_MULTICAST_DNS", features.get("multicast_dns"), None), default=False
        ),
        restore_on_exit=parse_bool(
            pick("ZEROPLEX_RESTORE_ON_EXIT", features.get("restore_on_exit"), None)
        ),
        watchdog_ip=str(pick("ZEROPLEX_WATCHDOG_IP", features.get("watchdog_ip"), "")).strip(),
        watchdog_hostname=str(
            pick("ZEROPLEX_WATCHDOG_HOSTNAME", features.get("watchdog_hostname"), "")
        ).strip(),
        watchdog_expected_ip=str(
            pick("ZEROPLEX_WATCHDOG_EXPECTED_IP", features.get("watchdog_expected_ip"), "")
        ).strip(),
        watchdog_interval=str(
            pick("ZEROPLEX_WATCHDOG_INTERVAL", features.get("watchdog_interval"), defaults.watchdog_interval)
        ),
        resume_watch=parse_bool(pick("ZEROPLEX_RESUME_WATCH", features.get("resume_watch"), None)),
        auto_restart=parse_bool(pick("ZEROPLEX_AUTO_RESTART", networkd.get("auto_restart"), None)),
        reconcile=parse_bool(pick("ZEROPLEX_RECONCILE", networkd.get("reconcile"), None)),
        network_dir=str(pick("ZEROPLEX_NETWORK_DIR", networkd.get("network_dir"), defaults.network_dir)),
        interface_watch=str(
            pick("ZEROPLEX_INTERFACE_WATCH", watch.get("mode"), defaults.interface_watch)
        ).lower().strip(),
        poll_interval=str(watch.get("poll_interval") or defaults.poll_interval),
        debounce=str(pick("ZEROPLEX_DEBOUNCE", watch.get("debounce"), defaults.debounce)),
        interface_prefix=str(
            pick("ZEROPLEX_INTERFACE_WATCH_PREFIX", watch.get("prefix"), defaults.interface_prefix)
        ),
        filters=parse_filter_rules(data.get("filters")),
        config_path=config_path,
        profile=profile,
    )


def validate_settings(settings: Settings) -> List[str]:
    """Return a list of configuration errors (empty when valid)."""
    errors = []

    if settings.mode not in MODES:
        errors.append(f"Unsupported mode: {settings.mode}. Supported: {', '.join(MODES)}")
    if settings.sync_mode not in SYNC_MODES:
        errors.append(f"Invalid sync mode: {settings.sync_mode}. Use 'once' or 'watch'")
    if settings.interface_watch not in WATCH_MODES:
        errors.append(
            f"Invalid interface watch mode: {settings.interface_watch}. "
            f"Supported: {', '.join(WATCH_MODES)}"
        )
    if settings.log_level not in LOG_LEVELS:
        errors.append(f"Invalid log level: {settings.log_level}")
    if not settings.host:
        errors.append("ZeroTier host is required")
    if not 0 < settings.port < 65536:
        errors.append(f"Invalid port: {settings.port}")

    for label, value in (
        ("interval", settings.interval),
        ("poll interval", settings.poll_interval),
        ("debounce", settings.debounce),
        ("watchdog interval", settings.watchdog_interval),
    ):
        try:
            parse_interval(value)
        except ValueError as e:
            errors.append(f"Invalid {label}: {e}")

    if settings.watchdog_hostname and not settings.watchdog_expected_ip:
        errors.append("Watchdog hostname requires a watchdog expected IP")
    for label, value in (
        ("watchdog IP", settings.watchdog_ip),
        ("watchdog expected IP", settings.watchdog_expected_ip),
    ):
        if value:
            try:
                ipaddress.ip_address(value)
            except ValueError:
                errors.append(f"Invalid {label}: {value}")

    if not errors and settings.interface_watch == "poll" and settings.poll_interval_seconds <= 0:
        errors.append("Poll interval must be greater than zero when interface watch mode is 'poll'")

    return errors
