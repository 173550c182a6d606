"""Data types shared between the watcher, the state store and the renderers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

# =============================================================================
# Enums
# =============================================================================


class AuthType(Enum):
    """Authentication policy requested by a container's ``auth`` label."""

    NONE = "none"
    HEADERS = "headers"
    OIDC = "oidc"


class ReloadKind(Enum):
    """How a Caddy instance is told to reload.

    HOST_PROCESS:   run ``caddy reload`` as a local subprocess.
    CONTAINER_EXEC: exec ``caddy reload`` inside a running container.
    """

    HOST_PROCESS = "host"
    CONTAINER_EXEC = "container"


# =============================================================================
# Containers and events
# =============================================================================


@dataclass(frozen=True)
class ContainerInfo:
    """The parts of a running container the updater cares about."""

    container_id: str
    name: str
    labels: Dict[str, str] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class ContainerStarted:
    container: ContainerInfo


@dataclass(frozen=True)
class ContainerStopped:
    container_id: str


@dataclass(frozen=True)
class ContainerUpdated:
    """Labels or name changed without the container restarting (e.g. a rename)."""

    container: ContainerInfo


@dataclass(frozen=True)
class InventorySnapshot:
    """Full list of running containers; replaces the desired state wholesale."""

    containers: Tuple[ContainerInfo, ...] = ()


# =============================================================================
# Routes and artifacts
# =============================================================================


@dataclass(frozen=True)
class RouteSpec:
    """A single container's routing request, decoded from its labels."""

    app: str
    port: int
    hostname: str
    external: bool = False
    auth: AuthType = AuthType.NONE


@dataclass(frozen=True)
class Artifact:
    """A generated snippet file for one proxy target."""

    target: str
    name: str
    content: bytes


@dataclass(frozen=True)
class ProxyTarget:
    """Static description of one Caddy instance and how to reload it."""

    name: str
    kind: ReloadKind
    bin_path: str
    config_dir: str
    snippets_dir: str
    container_name: Optional[str] = None
    secret_env: Tuple[Tuple[str, str], ...] = ()
