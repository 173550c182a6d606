"""Exception hierarchy for docker-caddyfile-updater."""

from __future__ import annotations

from typing import Dict


class CaddyfileUpdaterError(Exception):
    """Base class for all errors raised by this package."""


class ConfigError(CaddyfileUpdaterError):
    """Required configuration is missing or invalid."""


class LabelDecodeError(CaddyfileUpdaterError, ValueError):
    """A container carries labels under the prefix that cannot be turned into a route."""


class SyncError(CaddyfileUpdaterError):
    """Writing or deleting snippet files for one target failed."""

    def __init__(self, target: str, message: str):
        super().__init__(f"[{target}] {message}")
        self.target = target


class ReloadError(CaddyfileUpdaterError):
    """One or more proxy targets failed to reload.

    Raised only after every requested target has been attempted.
    """

    def __init__(self, failures: Dict[str, Exception]):
        detail = "; ".join(f"{name}: {err}" for name, err in failures.items())
        super().__init__(f"reload failed for {detail}")
        self.failures = failures


class DNSProviderError(CaddyfileUpdaterError):
    """The DNS provider API call failed or returned an unexpected response."""


class WatcherDisconnect(CaddyfileUpdaterError):
    """The container event stream broke and must be restarted with a snapshot."""


class ReloadCommandFailed(CaddyfileUpdaterError):
    """A single target's reload command could not be run or exited non-zero."""
