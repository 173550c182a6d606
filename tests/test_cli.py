"""Unit tests for startup wiring in caddyfile_updater.cli."""

from unittest.mock import MagicMock, patch

import pytest
from docker.errors import DockerException

from caddyfile_updater import cli
from caddyfile_updater.config import Settings
from caddyfile_updater.dns import PowerDNSProvider
from caddyfile_updater.models import ReloadKind


def valid_settings(**overrides) -> Settings:
    values = dict(
        local_caddy_snippets_dir="/srv/local",
        docker_caddy_snippets_dir="/srv/docker",
        label_prefix="my.name",
        local_domain_prefix="local",
        domain_name="example.com",
    )
    values.update(overrides)
    return Settings(**values)


def test_build_reconciler_without_dns() -> None:
    reconciler = cli.build_reconciler(valid_settings(), MagicMock())

    assert reconciler.dns is None
    assert reconciler.docker_snippets.name == "docker"
    assert str(reconciler.local_snippets.path) == "/srv/local"
    assert reconciler.reloader.local_target.kind is ReloadKind.HOST_PROCESS


def test_build_reconciler_keeps_dns_when_provider_unreachable(tmp_path) -> None:
    """An unreachable DNS provider is only a warning; DNS is retried on every pass."""
    settings = valid_settings(
        dns_provider="powerdns",
        dns_target_ip="192.168.1.10",
        powerdns_url="http://pdns:8081",
        powerdns_api_key="key",
        state_path=str(tmp_path / "state.json"),
    )

    with patch.object(PowerDNSProvider, "test_connection", return_value=False):
        reconciler = cli.build_reconciler(settings, MagicMock())

    assert reconciler.dns is not None
    assert reconciler.dns.zone == "local.example.com"
    assert reconciler.dns.target_ip == "192.168.1.10"


def test_main_exits_on_invalid_configuration() -> None:
    with patch.object(cli, "load_settings", return_value=Settings()):
        with pytest.raises(SystemExit) as exc_info:
            cli.main()

    assert exc_info.value.code == 1


def test_main_exits_when_docker_is_unreachable() -> None:
    client = MagicMock()
    client.ping.side_effect = DockerException("socket not found")

    with patch.object(cli, "load_settings", return_value=valid_settings()):
        with patch.object(cli, "create_docker_client", return_value=client):
            with pytest.raises(SystemExit) as exc_info:
                cli.main()

    assert exc_info.value.code == 1
