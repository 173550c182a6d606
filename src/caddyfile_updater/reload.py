"""Reload the two Caddy instances after their snippets change.

The docker-side instance is always reloaded before the local one: the local
instance delegates every host to it, so reloading local first would briefly
point traffic at an instance that has not picked up the new routes yet.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
from typing import Any, Callable, Dict, List, Optional

import docker
import requests
from docker.errors import DockerException

from .errors import ReloadCommandFailed, ReloadError
from .models import ProxyTarget, ReloadKind

logger = logging.getLogger(__name__)

RELOAD_TIMEOUT_SECONDS = 60


class ReloadOrchestrator:
    def __init__(
        self,
        docker_target: ProxyTarget,
        local_target: ProxyTarget,
        docker_client: Optional[docker.DockerClient] = None,
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.docker_target = docker_target
        self.local_target = local_target
        self._docker = docker_client
        self._run = run
        self._handlers: Dict[ReloadKind, Callable[[ProxyTarget], None]] = {
            ReloadKind.HOST_PROCESS: self._reload_host_process,
            ReloadKind.CONTAINER_EXEC: self._reload_container_exec,
        }

    def reload(self, docker_changed: bool, local_changed: bool) -> List[str]:
        """Reload the targets whose snippets changed, docker-side first.

        Both requested targets are always attempted. Returns the names of the
        targets that reloaded; raises ``ReloadError`` listing every failure.
        """
        requested = []
        if docker_changed:
            requested.append(self.docker_target)
        if local_changed:
            requested.append(self.local_target)

        reloaded: List[str] = []
        failures: Dict[str, Exception] = {}
        for target in requested:
            try:
                self.reload_target(target)
            except ReloadCommandFailed as e:
                logger.error(f"Failed to reload {target.name} Caddy: {e}")
                failures[target.name] = e
            else:
                reloaded.append(target.name)

        if failures:
            raise ReloadError(failures)
        return reloaded

    def reload_target(self, target: ProxyTarget) -> None:
        logger.info(f"Reloading {target.name} Caddy ({target.kind.value})...")
        self._handlers[target.kind](target)
        logger.info(f"Reloaded {target.name} Caddy")

    # -------------------------------------------------------------------------
    # Host process
    # -------------------------------------------------------------------------

    def _reload_host_process(self, target: ProxyTarget) -> None:
        try:
            result = self._run(
                [target.bin_path, "reload"],
                cwd=target.config_dir,
                capture_output=True,
                text=True,
                timeout=RELOAD_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise ReloadCommandFailed(f"could not run {target.bin_path} reload: {e}") from e

        _log_output(target.name, result.stdout, result.stderr)
        if result.returncode != 0:
            raise ReloadCommandFailed(
                f"{target.bin_path} reload exited with status {result.returncode}"
            )

    # -------------------------------------------------------------------------
    # Container exec
    # -------------------------------------------------------------------------

    def _reload_container_exec(self, target: ProxyTarget) -> None:
        if self._docker is None:
            raise ReloadCommandFailed("no Docker client available for container reload")

        container = self._find_container(target.container_name or "")
        try:
            result = container.exec_run(
                build_exec_command(target), workdir=target.config_dir, demux=True
            )
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ReloadCommandFailed(f"exec in container '{container.name}' failed: {e}") from e

        stdout, stderr = result.output if result.output else (None, None)
        _log_output(target.name, _decode(stdout), _decode(stderr))
        if result.exit_code != 0:
            raise ReloadCommandFailed(
                f"reload inside container '{container.name}' exited with status {result.exit_code}"
            )

    def _find_container(self, name: str) -> Any:
        try:
            candidates = self._docker.containers.list(filters={"name": f"^/?{re.escape(name)}$"})
        except (DockerException, requests.exceptions.RequestException) as e:
            raise ReloadCommandFailed(f"could not list containers: {e}") from e

        matches = [c for c in candidates if c.name.lstrip("/") == name]
        if len(matches) != 1:
            raise ReloadCommandFailed(
                f"expected exactly one running container named '{name}', found {len(matches)}"
            )
        return matches[0]


def build_exec_command(target: ProxyTarget) -> List[str]:
    """Command run inside the container; exports secret env vars from their files first."""
    if not target.secret_env:
        return [target.bin_path, "reload"]

    exports = "; ".join(f'export {var}="$(cat "${file_var}")"' for var, file_var in target.secret_env)
    return ["sh", "-c", f"{exports}; exec {shlex.quote(target.bin_path)} reload"]


def _decode(data: Optional[bytes]) -> str:
    return data.decode("utf-8", errors="replace") if data else ""


def _log_output(target_name: str, stdout: Optional[str], stderr: Optional[str]) -> None:
    for line in (stdout or "").splitlines():
        if line.strip():
            logger.info(f"[{target_name}] {line}")
    for line in (stderr or "").splitlines():
        if line.strip():
            logger.warning(f"[{target_name}] {line}")
