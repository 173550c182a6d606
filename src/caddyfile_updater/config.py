"""Configuration loading.

Settings are read once at startup from environment variables, falling back to
an optional YAML file (``CONFIG_PATH``) and then to built-in defaults. The
resulting ``Settings`` value is immutable and handed to every component.
"""

from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import ConfigError
from .models import ProxyTarget, ReloadKind

logger = logging.getLogger(__name__)

SUPPORTED_DNS_PROVIDERS = ("none", "powerdns", "adguard")

LOCAL_TARGET = "local"
DOCKER_TARGET = "docker"


@dataclass(frozen=True)
class Settings:
    # Local Caddy (terminates TLS, delegates to the docker-side instance)
    local_caddy_bin_path: str = "/usr/local/bin/caddy"
    local_caddy_config_dir: str = "/usr/local/etc"
    local_caddy_snippets_dir: str = ""
    local_caddy_on_docker: bool = False
    local_caddy_container: str = "caddy-local"

    # Docker-side Caddy (reverse proxies to the application containers)
    docker_caddy_bin_path: str = "caddy"
    docker_caddy_config_dir: str = "/etc/caddy"
    docker_caddy_snippets_dir: str = ""
    docker_caddy_container: str = "caddy"
    docker_caddy_secret_env: str = ""
    docker_caddy_upstream: str = "http://localhost:880"

    # Labels and domains
    label_prefix: str = ""
    local_domain_prefix: str = ""
    domain_name: str = ""
    auth_snippet_name: str = "auth-headers"
    snippet_file_prefix: str = "docker"

    # Docker connection and event stream
    docker_base_url: str = ""
    resync_interval_seconds: int = 300
    reconnect_delay_seconds: int = 5

    # DNS
    dns_provider: str = "none"
    dns_target_ip: str = ""
    dns_record_ttl: int = 300
    powerdns_url: str = ""
    powerdns_server: str = "localhost"
    powerdns_api_key: str = ""
    adguard_url: str = ""
    adguard_username: str = ""
    adguard_password: str = ""
    state_path: str = "/data/state.json"

    log_level: str = "INFO"

    @property
    def local_domain(self) -> str:
        return f"{self.local_domain_prefix}.{self.domain_name}"

    @property
    def dns_enabled(self) -> bool:
        return self.dns_provider != "none"

    def docker_target(self) -> ProxyTarget:
        return ProxyTarget(
            name=DOCKER_TARGET,
            kind=ReloadKind.CONTAINER_EXEC,
            bin_path=self.docker_caddy_bin_path,
            config_dir=self.docker_caddy_config_dir,
            snippets_dir=self.docker_caddy_snippets_dir,
            container_name=self.docker_caddy_container,
            secret_env=_parse_secret_env(self.docker_caddy_secret_env),
        )

    def local_target(self) -> ProxyTarget:
        if self.local_caddy_on_docker:
            return ProxyTarget(
                name=LOCAL_TARGET,
                kind=ReloadKind.CONTAINER_EXEC,
                bin_path=self.local_caddy_bin_path,
                config_dir=self.local_caddy_config_dir,
                snippets_dir=self.local_caddy_snippets_dir,
                container_name=self.local_caddy_container,
            )
        return ProxyTarget(
            name=LOCAL_TARGET,
            kind=ReloadKind.HOST_PROCESS,
            bin_path=self.local_caddy_bin_path,
            config_dir=self.local_caddy_config_dir,
            snippets_dir=self.local_caddy_snippets_dir,
        )


# =============================================================================
# Loading
# =============================================================================


def load_settings(
    environ: Optional[Mapping[str, str]] = None, config_path: Optional[str] = None
) -> Settings:
    """Build ``Settings`` from the environment and an optional YAML file.

    Environment variables use the upper-cased field name (``LABEL_PREFIX``);
    YAML keys use the field name itself (``label_prefix``).
    """
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = env.get("CONFIG_PATH", "")

    file_values = _load_yaml_config(config_path) if config_path else {}

    values: Dict[str, Any] = {}
    for f in fields(Settings):
        raw = env.get(f.name.upper())
        if raw is None:
            raw = file_values.get(f.name)
        if raw is None:
            continue
        values[f.name] = _coerce(f.name, raw, f.default)

    values["dns_provider"] = str(values.get("dns_provider", "none")).lower().strip() or "none"
    return Settings(**values)


def _load_yaml_config(config_path: str) -> Dict[str, Any]:
    path = Path(config_path)
    if not path.is_file():
        raise ConfigError(f"Config file {config_path} does not exist")
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {config_path} is not valid YAML: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    known = {f.name for f in fields(Settings)}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown key(s) in {config_path}: {', '.join(unknown)}")
    return {k: v for k, v in data.items() if k in known}


def _coerce(name: str, raw: Any, default: Any) -> Any:
    if isinstance(default, bool):
        return _parse_bool(raw, default=default)
    if isinstance(default, int):
        try:
            return int(raw)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"{name.upper()} must be an integer, got {raw!r}") from e
    return str(raw).strip()


# =============================================================================
# Validation
# =============================================================================


def validate_settings(settings: Settings) -> List[str]:
    """Return every configuration problem; an empty list means the settings are usable."""
    errors: List[str] = []

    required = (
        "local_caddy_snippets_dir",
        "docker_caddy_snippets_dir",
        "label_prefix",
        "local_domain_prefix",
        "domain_name",
    )
    for name in required:
        if not getattr(settings, name):
            errors.append(f"{name.upper()} is required")

    if settings.resync_interval_seconds < 0:
        errors.append("RESYNC_INTERVAL_SECONDS must not be negative")

    if settings.dns_provider not in SUPPORTED_DNS_PROVIDERS:
        errors.append(
            f"Unsupported DNS_PROVIDER: {settings.dns_provider}. "
            f"Supported: {', '.join(SUPPORTED_DNS_PROVIDERS)}"
        )
    elif settings.dns_enabled:
        if not settings.dns_target_ip:
            errors.append("DNS_TARGET_IP is required when a DNS provider is configured")
        else:
            try:
                ipaddress.ip_address(settings.dns_target_ip)
            except ValueError:
                errors.append(f"DNS_TARGET_IP is not an IP address: {settings.dns_target_ip}")

        if settings.dns_provider == "powerdns":
            if not settings.powerdns_url:
                errors.append("POWERDNS_URL is required when DNS_PROVIDER=powerdns")
            if not settings.powerdns_api_key:
                errors.append("POWERDNS_API_KEY is required when DNS_PROVIDER=powerdns")
        elif settings.dns_provider == "adguard":
            if not settings.adguard_url:
                errors.append("ADGUARD_URL is required when DNS_PROVIDER=adguard")
            if not settings.adguard_username or not settings.adguard_password:
                logger.warning("ADGUARD_USERNAME/PASSWORD not set. Using unauthenticated access.")

    try:
        _parse_secret_env(settings.docker_caddy_secret_env)
    except ConfigError as e:
        errors.append(str(e))

    return errors


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_secret_env(value: str) -> Tuple[Tuple[str, str], ...]:
    """Parse ``VAR=FILE_VAR`` pairs, e.g. ``DO_API_KEY=DO_API_KEY_FILE``."""
    pairs: List[Tuple[str, str]] = []
    if not value:
        return ()

    for raw_item in value.split(","):
        item = raw_item.strip()
        if not item:
            continue
        var, sep, file_var = item.partition("=")
        var = var.strip()
        file_var = file_var.strip()
        if not sep or not var.isidentifier() or not file_var.isidentifier():
            raise ConfigError(
                f"Invalid DOCKER_CADDY_SECRET_ENV entry '{item}' (expected VAR=FILE_VAR)"
            )
        pairs.append((var, file_var))

    return tuple(pairs)
