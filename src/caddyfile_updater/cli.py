#!/usr/bin/env python3
"""docker-caddyfile-updater - Caddy snippets from Docker labels

Watches Docker for container events, writes a set of Caddy snippets for two
Caddy instances, then reloads them.

There are two Caddy instances because Docker networking (notably on macOS)
does not retain the client's source IP, which makes it impossible for Caddy
or an auth server behind it to allow/deny by IP range. The "local" instance
runs outside Docker, terminates TLS and delegates to the "docker" instance,
which does the actual reverse proxying to the application containers.

Container labels (under LABEL_PREFIX, e.g. "my.name"):
    {prefix}.app       App name, prepended to the domain (default: container name)
    {prefix}.port      Port the app listens on (mandatory, no default)
    {prefix}.external  "true" to serve on DOMAIN_NAME, otherwise on the local domain
    {prefix}.auth      oidc, headers or none; "headers" imports the auth-headers snippet

Environment variables:

    Local Caddy:
        LOCAL_CADDY_BIN_PATH       Caddy binary (default: /usr/local/bin/caddy)
        LOCAL_CADDY_CONFIG_DIR     Working directory for "caddy reload" (default: /usr/local/etc)
        LOCAL_CADDY_SNIPPETS_DIR   Directory the local snippets are written to (required)
        LOCAL_CADDY_ON_DOCKER      Reload the local Caddy by exec inside a container
                                   (e.g. it runs with host networking) (default: false)
        LOCAL_CADDY_CONTAINER      Container name when LOCAL_CADDY_ON_DOCKER is set
                                   (default: caddy-local)

    Docker Caddy:
        DOCKER_CADDY_BIN_PATH      Caddy binary inside the container (default: caddy)
        DOCKER_CADDY_CONFIG_DIR    Working directory inside the container (default: /etc/caddy)
        DOCKER_CADDY_SNIPPETS_DIR  Host directory mounted into the container (required)
        DOCKER_CADDY_CONTAINER     Container name (default: caddy)
        DOCKER_CADDY_SECRET_ENV    Comma-separated VAR=FILE_VAR pairs exported from files
                                   before reloading, e.g. "DO_API_KEY=DO_API_KEY_FILE"
        DOCKER_CADDY_UPSTREAM      Where the local Caddy delegates to
                                   (default: http://localhost:880)

    Labels and domains:
        LABEL_PREFIX               Label prefix (required)
        LOCAL_DOMAIN_PREFIX        Local domain is {LOCAL_DOMAIN_PREFIX}.{DOMAIN_NAME} (required)
        DOMAIN_NAME                Public domain, e.g. example.com (required)
        AUTH_SNIPPET_NAME          Snippet imported for auth=headers (default: auth-headers)
        SNIPPET_FILE_PREFIX        Prefix of managed snippet files (default: docker)

    Docker:
        DOCKER_BASE_URL            Docker daemon URL (default: from DOCKER_HOST / socket)
        RESYNC_INTERVAL_SECONDS    Full inventory resync interval, 0 to disable (default: 300)
        RECONNECT_DELAY_SECONDS    Delay before reconnecting the event stream (default: 5)

    DNS (optional):
        DNS_PROVIDER               none, powerdns or adguard (default: none)
        DNS_TARGET_IP              Address local-only hosts resolve to
        DNS_RECORD_TTL             Record TTL (default: 300)
        POWERDNS_URL               PowerDNS API base URL, e.g. http://localhost:8081
        POWERDNS_SERVER            PowerDNS server id (default: localhost)
        POWERDNS_API_KEY           PowerDNS API key
        ADGUARD_URL                AdGuard Home base URL
        ADGUARD_USERNAME           Admin username (optional)
        ADGUARD_PASSWORD           Admin password (optional)
        STATE_PATH                 JSON file tracking owned records (default: /data/state.json)

    Runtime:
        CONFIG_PATH                Optional YAML file with the same settings in lower case
        LOG_LEVEL                  DEBUG, INFO, WARNING, ERROR (default: INFO)
"""

from __future__ import annotations

import logging
import signal
import sys

import docker
from docker.errors import DockerException

from .config import DOCKER_TARGET, LOCAL_TARGET, Settings, load_settings, validate_settings
from .dns import DNSReconciler, RecordStateStore, create_dns_provider
from .engine import Reconciler
from .errors import ConfigError
from .reload import ReloadOrchestrator
from .render import SnippetRenderer
from .state import DesiredStateStore
from .sync import SnippetDirectory
from .watcher import DockerEventWatcher

logger = logging.getLogger("caddyfile_updater")


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_docker_client(settings: Settings) -> docker.DockerClient:
    if settings.docker_base_url:
        return docker.DockerClient(base_url=settings.docker_base_url)
    return docker.from_env()


def build_reconciler(settings: Settings, docker_client: docker.DockerClient) -> Reconciler:
    """Wire every component from the immutable settings."""
    dns = None
    provider = create_dns_provider(settings)
    if provider is not None:
        if not provider.test_connection():
            logger.warning(f"Cannot reach {provider.name} yet; DNS will be retried on every pass")
        dns = DNSReconciler(
            provider,
            zone=settings.local_domain,
            target_ip=settings.dns_target_ip,
            state_store=RecordStateStore(settings.state_path),
        )

    return Reconciler(
        store=DesiredStateStore(settings.label_prefix),
        renderer=SnippetRenderer.from_settings(settings),
        docker_snippets=SnippetDirectory(
            DOCKER_TARGET, settings.docker_caddy_snippets_dir, settings.snippet_file_prefix
        ),
        local_snippets=SnippetDirectory(
            LOCAL_TARGET, settings.local_caddy_snippets_dir, settings.snippet_file_prefix
        ),
        reloader=ReloadOrchestrator(
            settings.docker_target(), settings.local_target(), docker_client=docker_client
        ),
        dns=dns,
    )


def main() -> None:
    """Main entry point."""
    try:
        settings = load_settings()
    except ConfigError as e:
        configure_logging("INFO")
        logger.error(str(e))
        sys.exit(1)

    configure_logging(settings.log_level)

    errors = validate_settings(settings)
    if errors:
        for error in errors:
            logger.error(error)
        logger.error("Configuration validation failed")
        sys.exit(1)

    logger.info(f"docker-caddyfile-updater: label prefix '{settings.label_prefix}'")
    logger.info(f"Public domain: {settings.domain_name}, local domain: {settings.local_domain}")
    logger.info(f"Docker snippets: {settings.docker_caddy_snippets_dir}")
    logger.info(f"Local snippets: {settings.local_caddy_snippets_dir}")
    logger.info(f"DNS provider: {settings.dns_provider}")

    try:
        docker_client = create_docker_client(settings)
        watcher = DockerEventWatcher(
            docker_client,
            resync_interval=settings.resync_interval_seconds,
            reconnect_delay=settings.reconnect_delay_seconds,
        )
        watcher.check_connection()
    except DockerException as e:
        logger.error(f"Cannot connect to Docker: {e}")
        sys.exit(1)

    reconciler = build_reconciler(settings, docker_client)

    def shutdown(signum, frame):
        logger.info(f"Signal {signum} received, shutting down after the current pass...")
        reconciler.stop()

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    try:
        reconciler.run(watcher)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        docker_client.close()


if __name__ == "__main__":
    main()
