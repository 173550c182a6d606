"""Decode container labels into routes.

Recognised labels, under the configured prefix (e.g. ``my.name``):

    {prefix}.app       name prepended to the domain (default: container name)
    {prefix}.port      port the app listens on (mandatory)
    {prefix}.external  true to serve on the public domain, otherwise the local one
    {prefix}.auth      none, headers or oidc
"""

from __future__ import annotations

import logging
import re
from typing import Mapping, Optional

from .errors import LabelDecodeError
from .models import AuthType, RouteSpec

logger = logging.getLogger(__name__)

APP_NAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$", re.IGNORECASE)

_TRUE_VALUES = {"1", "true", "yes", "y", "on"}


def decode_labels(
    labels: Optional[Mapping[str, str]], prefix: str, container_name: str
) -> Optional[RouteSpec]:
    """Turn a container's labels into a ``RouteSpec``.

    Returns None when the container carries no labels under ``prefix`` or when
    the port is missing or unusable; such containers are simply not routed.
    Raises ``LabelDecodeError`` when the app name cannot be used as a DNS label.
    """
    if not labels:
        return None

    key_prefix = f"{prefix}."
    ours = {k[len(key_prefix):]: v for k, v in labels.items() if k.startswith(key_prefix)}
    if not ours:
        return None

    app = (ours.get("app") or "").strip() or container_name.lstrip("/")
    if not APP_NAME_RE.match(app):
        raise LabelDecodeError(f"app name '{app}' is not a valid DNS label")

    port = _parse_port(ours.get("port"))
    if port is None:
        logger.info(
            f"Skipping container '{container_name}' (app '{app}'): "
            f"{prefix}.port missing or invalid ({ours.get('port')!r})"
        )
        return None

    external = str(ours.get("external", "")).strip().lower() in _TRUE_VALUES

    return RouteSpec(
        app=app.lower(),
        port=port,
        hostname=container_name.lstrip("/"),
        external=external,
        auth=_parse_auth(ours.get("auth"), container_name),
    )


def _parse_port(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        port = int(str(value).strip())
    except ValueError:
        return None
    if not 0 < port < 65536:
        return None
    return port


def _parse_auth(value: Optional[str], container_name: str) -> AuthType:
    if value is None or not value.strip():
        return AuthType.NONE
    try:
        return AuthType(value.strip().lower())
    except ValueError:
        logger.warning(
            f"Container '{container_name}' has unrecognised auth '{value}', treating as none"
        )
        return AuthType.NONE
