"""Render Caddy snippets for both proxy instances.

The docker-side instance reverse proxies straight to the application
containers. The local instance only terminates TLS and delegates every host
to the docker-side instance. Each app becomes one file per instance, named
``{prefix}-{external|internal}-{app}.caddy``, which the Caddyfiles pull in
with glob imports, e.g.::

    *.example.com {
        import snippets/docker-external-*.caddy
    }
    *.local.example.com {
        import snippets/docker-internal-*.caddy
    }
"""

from __future__ import annotations

import logging
from itertools import groupby
from typing import Iterable, List

from .config import DOCKER_TARGET, LOCAL_TARGET, Settings
from .models import Artifact, AuthType, RouteSpec

logger = logging.getLogger(__name__)

MANAGED_HEADER = "# Managed by docker-caddyfile-updater. Do not edit.\n"


class SnippetRenderer:
    def __init__(
        self,
        *,
        domain_name: str,
        local_domain: str,
        docker_upstream: str,
        auth_snippet_name: str = "auth-headers",
        file_prefix: str = "docker",
    ):
        self.domain_name = domain_name
        self.local_domain = local_domain
        self.docker_upstream = docker_upstream
        self.auth_snippet_name = auth_snippet_name
        self.file_prefix = file_prefix

    @classmethod
    def from_settings(cls, settings: Settings) -> "SnippetRenderer":
        return cls(
            domain_name=settings.domain_name,
            local_domain=settings.local_domain,
            docker_upstream=settings.docker_caddy_upstream,
            auth_snippet_name=settings.auth_snippet_name,
            file_prefix=settings.snippet_file_prefix,
        )

    def artifact_name(self, app: str, external: bool) -> str:
        zone = "external" if external else "internal"
        return f"{self.file_prefix}-{zone}-{app}.caddy"

    def host(self, app: str, external: bool) -> str:
        return f"{app}.{self.domain_name if external else self.local_domain}"

    def render(self, routes: Iterable[RouteSpec]) -> List[Artifact]:
        """Render artifacts for both targets, sorted by (target, name).

        Equal route sets produce byte-identical output regardless of order.
        """
        ordered = sorted(routes, key=lambda r: (r.app, r.hostname, r.port))
        artifacts: List[Artifact] = []

        for app, group in groupby(ordered, key=lambda r: r.app):
            members = list(group)
            lead = members[0]
            self._warn_on_disagreement(app, members)

            name = self.artifact_name(app, lead.external)
            upstreams = " ".join(f"http://{r.hostname}:{r.port}" for r in members)
            artifacts.append(
                Artifact(DOCKER_TARGET, name, self._site_block(lead, upstreams).encode("utf-8"))
            )
            artifacts.append(
                Artifact(
                    LOCAL_TARGET, name, self._site_block(lead, self.docker_upstream).encode("utf-8")
                )
            )

        artifacts.sort(key=lambda a: (a.target, a.name))
        return artifacts

    def _site_block(self, route: RouteSpec, upstreams: str) -> str:
        app = route.app
        lines = [
            MANAGED_HEADER.rstrip("\n"),
            f"@{app} host {self.host(app, route.external)}",
            f"handle @{app} {{",
            "\thandle /metrics {",
            "\t\tabort",
            "\t}",
            "\thandle /metrics/* {",
            "\t\tabort",
            "\t}",
        ]
        if route.auth == AuthType.HEADERS:
            lines.append(f"\timport {self.auth_snippet_name}")
        lines.append(f"\treverse_proxy {upstreams}")
        lines.append("}")
        return "\n".join(lines) + "\n"

    def _warn_on_disagreement(self, app: str, members: List[RouteSpec]) -> None:
        if len(members) < 2:
            return
        policies = {(r.external, r.auth) for r in members}
        if len(policies) > 1:
            lead = members[0]
            logger.warning(
                f"Containers for app '{app}' disagree on external/auth labels; "
                f"using external={lead.external}, auth={lead.auth.value} from '{lead.hostname}'"
            )
