"""The reconciliation loop.

Events are handled strictly one at a time: apply to the desired state,
render, sync both snippet directories, reload what changed, then (best
effort) converge DNS. Failures are contained to the target or subsystem they
happen in and retried on the next pass.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import DOCKER_TARGET, LOCAL_TARGET
from .dns import DNSReconciler
from .errors import DNSProviderError, ReloadError, SyncError
from .models import InventorySnapshot
from .reload import ReloadOrchestrator
from .render import SnippetRenderer
from .state import ContainerEvent, DesiredStateStore
from .sync import SnippetDirectory
from .watcher import DockerEventWatcher

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    """Outcome of one reconciliation pass."""

    state_changed: bool = False
    docker_changed: bool = False
    local_changed: bool = False
    reloaded: List[str] = field(default_factory=list)
    dns_changed: bool = False
    errors: Dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class Reconciler:
    def __init__(
        self,
        *,
        store: DesiredStateStore,
        renderer: SnippetRenderer,
        docker_snippets: SnippetDirectory,
        local_snippets: SnippetDirectory,
        reloader: ReloadOrchestrator,
        dns: Optional[DNSReconciler] = None,
    ):
        self.store = store
        self.renderer = renderer
        self.docker_snippets = docker_snippets
        self.local_snippets = local_snippets
        self.reloader = reloader
        self.dns = dns
        self._stopping = False
        self._watcher: Optional[DockerEventWatcher] = None
        # Targets whose snippets changed but whose reload failed; reloaded on the next pass.
        self._pending_reload = {DOCKER_TARGET: False, LOCAL_TARGET: False}
        self._dns_dirty = dns is not None

    def handle(self, event: ContainerEvent) -> PassResult:
        """Apply one event and run a full reconciliation pass."""
        result = PassResult(state_changed=self.store.apply(event))
        routes = self.store.routes()
        artifacts = self.renderer.render(routes)

        for directory in (self.docker_snippets, self.local_snippets):
            try:
                changed = directory.sync(artifacts)
            except SyncError as e:
                logger.error(f"Snippet sync failed for {directory.name}: {e}")
                result.errors[f"sync:{directory.name}"] = e
                continue
            if directory.name == DOCKER_TARGET:
                result.docker_changed = changed
            else:
                result.local_changed = changed

        docker_reload = result.docker_changed or self._pending_reload[DOCKER_TARGET]
        local_reload = result.local_changed or self._pending_reload[LOCAL_TARGET]
        try:
            result.reloaded = self.reloader.reload(docker_reload, local_reload)
        except ReloadError as e:
            for name, err in e.failures.items():
                result.errors[f"reload:{name}"] = err
            result.reloaded = [
                name
                for name, wanted in ((DOCKER_TARGET, docker_reload), (LOCAL_TARGET, local_reload))
                if wanted and name not in e.failures
            ]
        self._pending_reload = {
            DOCKER_TARGET: f"reload:{DOCKER_TARGET}" in result.errors,
            LOCAL_TARGET: f"reload:{LOCAL_TARGET}" in result.errors,
        }

        if self.dns is not None and (
            result.state_changed or self._dns_dirty or isinstance(event, InventorySnapshot)
        ):
            try:
                result.dns_changed = self.dns.reconcile(routes)
                self._dns_dirty = False
            except DNSProviderError as e:
                logger.error(f"DNS reconciliation failed, will retry on next pass: {e}")
                result.errors["dns"] = e
                self._dns_dirty = True

        if result.state_changed or result.reloaded or result.errors:
            logger.info(
                f"Pass complete: {len(routes)} route(s), "
                f"docker_changed={result.docker_changed}, local_changed={result.local_changed}, "
                f"reloaded={result.reloaded or 'none'}, errors={len(result.errors)}"
            )
        return result

    def run(self, watcher: DockerEventWatcher) -> None:
        """Consume watcher events until ``stop()`` is called."""
        self._watcher = watcher
        if self._stopping:
            watcher.stop()
        for event in watcher.events():
            self.handle(event)
            if self._stopping:
                break
        logger.info("Reconciliation loop stopped")

    def stop(self) -> None:
        """Stop after the in-flight pass completes."""
        self._stopping = True
        if self._watcher is not None:
            self._watcher.stop()
