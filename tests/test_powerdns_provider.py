"""Unit tests for PowerDNSProvider."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from caddyfile_updater.dns import DNSRecord, PowerDNSProvider
from caddyfile_updater.errors import DNSProviderError

ZONE = "local.example.com"
ZONE_URL = "http://pdns.local:8081/api/v1/servers/localhost/zones/local.example.com."


def make_provider() -> PowerDNSProvider:
    return PowerDNSProvider(url="http://pdns.local:8081/", server="localhost", api_key="s3cret")


def response(status_code: int, data=None, text: str = "") -> MagicMock:
    mock = MagicMock()
    mock.status_code = status_code
    mock.text = text
    if isinstance(data, Exception):
        mock.json.side_effect = data
    else:
        mock.json.return_value = data
    return mock


class TestPowerDNSConnection:
    """Tests for PowerDNS connection functionality."""

    def test_api_key_header_is_sent(self) -> None:
        provider = make_provider()

        assert provider._session.headers["X-API-Key"] == "s3cret"
        assert provider.name == "PowerDNS"

    def test_test_connection_hits_server_endpoint(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = MagicMock()

            assert provider.test_connection() is True
            mock_get.assert_called_once_with(
                "http://pdns.local:8081/api/v1/servers/localhost", timeout=5
            )

    def test_test_connection_failure(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.ConnectionError("Connection refused")

            assert provider.test_connection() is False


class TestPowerDNSGetRecords:
    """Tests for PowerDNS get_records functionality."""

    def test_get_records_parses_address_rrsets(self) -> None:
        provider = make_provider()
        zone = {
            "name": "local.example.com.",
            "rrsets": [
                {
                    "name": "app.local.example.com.",
                    "type": "A",
                    "ttl": 300,
                    "records": [{"content": "10.0.0.1", "disabled": False}],
                },
                {
                    "name": "v6.local.example.com.",
                    "type": "AAAA",
                    "ttl": 300,
                    "records": [{"content": "fd00::1", "disabled": False}],
                },
                {
                    "name": "off.local.example.com.",
                    "type": "A",
                    "ttl": 300,
                    "records": [{"content": "10.0.0.9", "disabled": True}],
                },
                {
                    "name": "local.example.com.",
                    "type": "SOA",
                    "ttl": 3600,
                    "records": [{"content": "ns1. hostmaster. 1 10800 3600 604800 3600", "disabled": False}],
                },
            ],
        }

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = response(200, zone)

            records = provider.get_records(ZONE)

            assert records == [
                DNSRecord("app.local.example.com", "10.0.0.1", "A"),
                DNSRecord("v6.local.example.com", "fd00::1", "AAAA"),
            ]
            mock_get.assert_called_once_with(ZONE_URL, timeout=5)

    def test_get_records_missing_zone_raises(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.return_value = response(404, {"error": "Not Found"})

            with pytest.raises(DNSProviderError, match="Zone local.example.com. not found"):
                provider.get_records(ZONE)

    def test_get_records_network_error_raises(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "get") as mock_get:
            mock_get.side_effect = requests.exceptions.Timeout("timed out")

            with pytest.raises(DNSProviderError, match="timed out"):
                provider.get_records(ZONE)


class TestPowerDNSChanges:
    """Tests for PowerDNS rrset PATCH requests."""

    def test_add_record_replaces_rrset(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "patch") as mock_patch:
            mock_patch.return_value = response(204)

            provider.add_record(ZONE, "app.local.example.com", "10.0.0.1")

            mock_patch.assert_called_once_with(
                ZONE_URL,
                json={
                    "rrsets": [
                        {
                            "name": "app.local.example.com.",
                            "type": "A",
                            "ttl": 300,
                            "changetype": "REPLACE",
                            "records": [{"content": "10.0.0.1", "disabled": False}],
                        }
                    ]
                },
                timeout=5,
            )

    def test_delete_record_deletes_rrset(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "patch") as mock_patch:
            mock_patch.return_value = response(204)

            provider.delete_record(ZONE, "app.local.example.com", "fd00::1")

            body = mock_patch.call_args.kwargs["json"]
            assert body == {
                "rrsets": [{"name": "app.local.example.com.", "type": "AAAA", "changetype": "DELETE"}]
            }

    def test_update_across_families_drops_old_type(self) -> None:
        """Moving a name from IPv4 to IPv6 removes the stale A rrset in the same request."""
        provider = make_provider()

        with patch.object(provider._session, "patch") as mock_patch:
            mock_patch.return_value = response(204)

            provider.update_record(ZONE, "app.local.example.com", "10.0.0.1", "fd00::1")

            rrsets = mock_patch.call_args.kwargs["json"]["rrsets"]
            assert [(r["type"], r["changetype"]) for r in rrsets] == [
                ("A", "DELETE"),
                ("AAAA", "REPLACE"),
            ]

    def test_update_same_family_is_single_replace(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "patch") as mock_patch:
            mock_patch.return_value = response(204)

            provider.update_record(ZONE, "app.local.example.com", "10.0.0.1", "10.0.0.2")

            rrsets = mock_patch.call_args.kwargs["json"]["rrsets"]
            assert len(rrsets) == 1
            assert rrsets[0]["records"] == [{"content": "10.0.0.2", "disabled": False}]

    def test_unprocessable_entity_reports_api_error(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "patch") as mock_patch:
            mock_patch.return_value = response(
                422,
                {"error": "RRset app.local.example.com. IN A: Conflicts with pre-existing RRset",
                 "errors": ["conflict"]},
            )

            with pytest.raises(DNSProviderError, match=r"422: RRset .* \[conflict\]"):
                provider.add_record(ZONE, "app.local.example.com", "10.0.0.1")

    def test_unexpected_status_raises(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "patch") as mock_patch:
            mock_patch.return_value = response(401, text="Unauthorized")

            with pytest.raises(DNSProviderError, match="Unexpected 401"):
                provider.delete_record(ZONE, "app.local.example.com", "10.0.0.1")

    def test_error_body_that_is_not_json(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "patch") as mock_patch:
            mock_patch.return_value = response(500, ValueError("no json"), text="Internal Server Error")

            with pytest.raises(DNSProviderError, match="500: Internal Server Error"):
                provider.add_record(ZONE, "app.local.example.com", "10.0.0.1")
