"""Keep host records for local-only routes in an external DNS server.

Supported DNS Providers:
    - powerdns: PowerDNS Authoritative HTTP API (rrsets in a zone)
    - adguard:  AdGuard Home DNS rewrites

Only names this process created (remembered in a small JSON state file) are
ever deleted, so the rest of the zone is left alone.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import requests
from requests.auth import HTTPBasicAuth

from .config import Settings
from .errors import DNSProviderError
from .models import RouteSpec

logger = logging.getLogger(__name__)

# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class DNSRecord:
    """A host record; ``domain`` has no trailing dot."""

    domain: str
    answer: str
    record_type: str = "A"


def record_type_for(answer: str) -> str:
    return "AAAA" if ipaddress.ip_address(answer).version == 6 else "A"


def _fqdn(name: str) -> str:
    return name if name.endswith(".") else f"{name}."


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers.

    Everything except ``test_connection`` raises ``DNSProviderError`` on failure.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Test connection to the DNS provider."""
        pass

    @abstractmethod
    def get_records(self, zone: str) -> List[DNSRecord]:
        """Get the A/AAAA records under ``zone``."""
        pass

    @abstractmethod
    def add_record(self, zone: str, domain: str, answer: str) -> None:
        pass

    @abstractmethod
    def delete_record(self, zone: str, domain: str, answer: str) -> None:
        pass

    def update_record(self, zone: str, domain: str, old_answer: str, new_answer: str) -> None:
        """Point an existing record at a new answer. Default implementation: delete + add."""
        self.delete_record(zone, domain, old_answer)
        self.add_record(zone, domain, new_answer)


class PowerDNSProvider(DNSProvider):
    """PowerDNS Authoritative Server HTTP API provider."""

    BASE_PATH = "api/v1"

    def __init__(self, url: str, server: str, api_key: str, ttl: int = 300, timeout: float = 5.0):
        self._url = url.rstrip("/")
        self._server = server
        self._ttl = ttl
        self._timeout = timeout
        self._session = requests.Session()
        self._session.headers.update({"X-API-Key": api_key})

    @property
    def name(self) -> str:
        return "PowerDNS"

    def _server_url(self) -> str:
        return f"{self._url}/{self.BASE_PATH}/servers/{self._server}"

    def _zone_url(self, zone: str) -> str:
        return f"{self._server_url()}/zones/{_fqdn(zone)}"

    def test_connection(self) -> bool:
        try:
            response = self._session.get(self._server_url(), timeout=self._timeout)
            response.raise_for_status()
            logger.info(f"{self.name} connection successful")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def get_records(self, zone: str) -> List[DNSRecord]:
        try:
            response = self._session.get(self._zone_url(zone), timeout=self._timeout)
        except requests.exceptions.RequestException as e:
            raise DNSProviderError(f"Failed to get zone {zone} from {self.name}: {e}") from e

        if response.status_code == 404:
            raise DNSProviderError(f"Zone {_fqdn(zone)} not found on {self.name} server {self._server}")
        self._check(response, expected=200)

        try:
            data = response.json()
        except ValueError as e:
            raise DNSProviderError(f"Invalid JSON for zone {zone} from {self.name}: {e}") from e

        records: List[DNSRecord] = []
        for rrset in data.get("rrsets") or []:
            if not isinstance(rrset, dict) or rrset.get("type") not in ("A", "AAAA"):
                continue
            domain = str(rrset.get("name", "")).rstrip(".")
            for record in rrset.get("records") or []:
                if record.get("disabled"):
                    continue
                records.append(
                    DNSRecord(domain=domain, answer=str(record.get("content")), record_type=rrset["type"])
                )
        return records

    def add_record(self, zone: str, domain: str, answer: str) -> None:
        self._patch(zone, [self._replace_rrset(domain, answer)])
        logger.info(f"Added DNS record: {domain} -> {answer}")

    def update_record(self, zone: str, domain: str, old_answer: str, new_answer: str) -> None:
        rrsets = [self._replace_rrset(domain, new_answer)]
        old_type = record_type_for(old_answer)
        if old_type != record_type_for(new_answer):
            rrsets.insert(0, self._delete_rrset(domain, old_type))
        self._patch(zone, rrsets)
        logger.info(f"Updated DNS record: {domain} {old_answer} -> {new_answer}")

    def delete_record(self, zone: str, domain: str, answer: str) -> None:
        self._patch(zone, [self._delete_rrset(domain, record_type_for(answer))])
        logger.info(f"Deleted DNS record: {domain} -> {answer}")

    def _replace_rrset(self, domain: str, answer: str) -> Dict[str, Any]:
        return {
            "name": _fqdn(domain),
            "type": record_type_for(answer),
            "ttl": self._ttl,
            "changetype": "REPLACE",
            "records": [{"content": answer, "disabled": False}],
        }

    def _delete_rrset(self, domain: str, record_type: str) -> Dict[str, Any]:
        return {"name": _fqdn(domain), "type": record_type, "changetype": "DELETE"}

    def _patch(self, zone: str, rrsets: List[Dict[str, Any]]) -> None:
        logger.debug(f"Patching {len(rrsets)} rrset(s) in zone {zone}")
        try:
            response = self._session.patch(
                self._zone_url(zone), json={"rrsets": rrsets}, timeout=self._timeout
            )
        except requests.exceptions.RequestException as e:
            raise DNSProviderError(f"Failed to update zone {zone} on {self.name}: {e}") from e
        self._check(response, expected=204)

    def _check(self, response: requests.Response, expected: int) -> None:
        if response.status_code == expected:
            return
        if response.status_code in (400, 422, 500):
            try:
                body = response.json()
                message = body.get("error", "")
                codes = ",".join(body.get("errors") or [])
            except ValueError:
                message, codes = response.text, ""
            raise DNSProviderError(
                f"{self.name} returned {response.status_code}: {message}"
                f"{f' [{codes}]' if codes else ''}"
            )
        raise DNSProviderError(
            f"Unexpected {response.status_code} from {self.name}: {response.text}"
        )


class AdGuardDNSProvider(DNSProvider):
    """AdGuard Home DNS rewrites, restricted to names under the zone."""

    def __init__(self, url: str, username: str, password: str, timeout: float = 5.0):
        self._url = url.rstrip("/")
        self._timeout = timeout
        self._auth = HTTPBasicAuth(username, password) if username and password else None
        self._session = requests.Session()
        if self._auth:
            self._session.auth = self._auth

    @property
    def name(self) -> str:
        return "AdGuard Home"

    def test_connection(self) -> bool:
        try:
            response = self._session.get(f"{self._url}/control/status", timeout=self._timeout)
            response.raise_for_status()
            logger.info(f"{self.name} connection successful")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to connect to {self.name}: {e}")
            return False

    def get_records(self, zone: str) -> List[DNSRecord]:
        try:
            response = self._session.get(f"{self._url}/control/rewrite/list", timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise DNSProviderError(f"Failed to get rewrites from {self.name}: {e}") from e

        suffix = f".{zone.rstrip('.')}"
        records = []
        for r in data or []:
            domain = r.get("domain") if isinstance(r, dict) else None
            answer = r.get("answer") if isinstance(r, dict) else None
            if not isinstance(domain, str) or not isinstance(answer, str):
                logger.warning(f"Skipping malformed rewrite: {r}")
                continue
            if not domain.endswith(suffix):
                continue
            try:
                record_type = record_type_for(answer)
            except ValueError:
                continue
            records.append(DNSRecord(domain=domain, answer=answer, record_type=record_type))
        return records

    def add_record(self, zone: str, domain: str, answer: str) -> None:
        self._post("add", domain, answer)
        logger.info(f"Added DNS rewrite: {domain} -> {answer}")

    def delete_record(self, zone: str, domain: str, answer: str) -> None:
        self._post("delete", domain, answer)
        logger.info(f"Deleted DNS rewrite: {domain} -> {answer}")

    def _post(self, action: str, domain: str, answer: str) -> None:
        try:
            response = self._session.post(
                f"{self._url}/control/rewrite/{action}",
                json={"domain": domain, "answer": answer},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            raise DNSProviderError(f"Failed to {action} rewrite for {domain}: {e}") from e


def create_dns_provider(settings: Settings) -> Optional[DNSProvider]:
    """Factory function for the configured DNS provider; None when DNS is disabled."""
    if settings.dns_provider == "none":
        return None
    if settings.dns_provider == "powerdns":
        return PowerDNSProvider(
            settings.powerdns_url,
            settings.powerdns_server,
            settings.powerdns_api_key,
            ttl=settings.dns_record_ttl,
        )
    if settings.dns_provider == "adguard":
        return AdGuardDNSProvider(
            settings.adguard_url, settings.adguard_username, settings.adguard_password
        )
    raise ValueError(
        f"Unsupported DNS provider: '{settings.dns_provider}'. Supported providers: powerdns, adguard"
    )


# =============================================================================
# State Management
# =============================================================================


class RecordStateStore:
    """Remembers which DNS names this process owns."""

    def __init__(self, path: str):
        self.path = Path(path)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {"version": 1, "records": {}}
        try:
            state = json.loads(self.path.read_text("utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load state file {self.path}: {e}")
            return {"version": 1, "records": {}}
        if not isinstance(state, dict) or not isinstance(state.get("records"), dict):
            logger.warning(f"State file {self.path} has unexpected structure, starting fresh")
            return {"version": 1, "records": {}}
        return state

    def save(self, state: Dict[str, Any]) -> None:
        """Raises ``DNSProviderError`` when the file cannot be written."""
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(state, indent=2, sort_keys=True), "utf-8")
            tmp_path.replace(self.path)
        except OSError as e:
            raise DNSProviderError(f"Failed to save state file {self.path}: {e}") from e


# =============================================================================
# Reconciler
# =============================================================================


class DNSReconciler:
    """Converge host records under the local domain with the local-only routes."""

    def __init__(self, provider: DNSProvider, zone: str, target_ip: str, state_store: RecordStateStore):
        self.provider = provider
        self.zone = zone.rstrip(".")
        self.target_ip = target_ip
        self.state_store = state_store

    def desired_records(self, routes: Iterable[RouteSpec]) -> Dict[str, str]:
        return {f"{r.app}.{self.zone}": self.target_ip for r in routes if not r.external}

    def reconcile(self, routes: Iterable[RouteSpec]) -> bool:
        """Create, update and delete only the records that differ. Returns True iff anything changed.

        Deletions go first, so a route that flips between local-only and public
        is retracted before anything new is added.
        """
        desired = self.desired_records(routes)
        state = self.state_store.load()
        owned: Dict[str, str] = state.setdefault("records", {})

        records_by_domain: Dict[str, List[str]] = {}
        for r in self.provider.get_records(self.zone):
            records_by_domain.setdefault(r.domain, []).append(r.answer)

        changed = False
        try:
            for domain in sorted(set(owned) - set(desired)):
                for answer in records_by_domain.get(domain, []):
                    logger.info(f"Removing record {domain} -> {answer}")
                    self.provider.delete_record(self.zone, domain, answer)
                    changed = True
                del owned[domain]

            for domain, answer in sorted(desired.items()):
                existing = records_by_domain.get(domain, [])
                if existing == [answer]:
                    owned[domain] = answer
                    continue

                if not existing:
                    logger.info(f"Adding record {domain} -> {answer}")
                    self.provider.add_record(self.zone, domain, answer)
                elif len(existing) == 1:
                    if domain not in owned:
                        logger.warning(f"Taking ownership of existing record {domain} -> {existing[0]}")
                    logger.info(f"Updating record {domain}: {existing[0]} -> {answer}")
                    self.provider.update_record(self.zone, domain, existing[0], answer)
                else:
                    logger.warning(f"Found {len(existing)} records for {domain}, consolidating")
                    for old_answer in existing:
                        self.provider.delete_record(self.zone, domain, old_answer)
                    self.provider.add_record(self.zone, domain, answer)
                owned[domain] = answer
                changed = True
        except Exception:
            # Keep the provider error as the one reported; record whatever completed.
            try:
                self.state_store.save(state)
            except DNSProviderError as e:
                logger.error(str(e))
            raise

        self.state_store.save(state)

        return changed
