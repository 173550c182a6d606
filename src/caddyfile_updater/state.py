"""In-memory desired state: which running containers should be routed, and how."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Union

from .errors import LabelDecodeError
from .labels import decode_labels
from .models import (
    ContainerInfo,
    ContainerStarted,
    ContainerStopped,
    ContainerUpdated,
    InventorySnapshot,
    RouteSpec,
)

logger = logging.getLogger(__name__)

ContainerEvent = Union[ContainerStarted, ContainerStopped, ContainerUpdated, InventorySnapshot]


class DesiredStateStore:
    """Maps container id -> RouteSpec.

    Only the reconciliation loop mutates the store; everything else reads the
    sorted list returned by ``routes()``.
    """

    def __init__(self, label_prefix: str):
        self.label_prefix = label_prefix
        self._routes: Dict[str, RouteSpec] = {}

    def __len__(self) -> int:
        return len(self._routes)

    def get(self, container_id: str) -> Optional[RouteSpec]:
        return self._routes.get(container_id)

    def routes(self) -> List[RouteSpec]:
        """Current routes in a stable order, so rendering is deterministic."""
        items = sorted(self._routes.items(), key=lambda kv: (kv[1].app, kv[1].hostname, kv[0]))
        return [route for _, route in items]

    def apply(self, event: ContainerEvent) -> bool:
        """Apply one watcher event. Returns True iff the desired state changed."""
        if isinstance(event, InventorySnapshot):
            return self._replace_all(event.containers)
        if isinstance(event, (ContainerStarted, ContainerUpdated)):
            return self._upsert(event.container)
        if isinstance(event, ContainerStopped):
            removed = self._routes.pop(event.container_id, None)
            if removed is not None:
                logger.info(f"Container {event.container_id[:12]} stopped, retracting app '{removed.app}'")
            return removed is not None
        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    def _decode(self, container: ContainerInfo) -> Optional[RouteSpec]:
        try:
            return decode_labels(container.labels, self.label_prefix, container.name)
        except LabelDecodeError as e:
            logger.warning(
                f"Skipping container '{container.name}' ({container.container_id[:12]}): {e}"
            )
            return None

    def _upsert(self, container: ContainerInfo) -> bool:
        route = self._decode(container)
        previous = self._routes.get(container.container_id)

        if route is None:
            if previous is None:
                logger.debug(f"Container '{container.name}' not exposed via Caddy labels")
                return False
            del self._routes[container.container_id]
            logger.info(f"Container '{container.name}' no longer routable, retracting app '{previous.app}'")
            return True

        if route == previous:
            return False

        self._routes[container.container_id] = route
        logger.info(f"Routing container '{container.name}': {route}")
        return True

    def _replace_all(self, containers: Iterable[ContainerInfo]) -> bool:
        fresh: Dict[str, RouteSpec] = {}
        for container in containers:
            route = self._decode(container)
            if route is not None:
                fresh[container.container_id] = route

        if fresh == self._routes:
            return False

        added = sorted(r.app for cid, r in fresh.items() if cid not in self._routes)
        removed = sorted(r.app for cid, r in self._routes.items() if cid not in fresh)
        logger.info(
            f"Snapshot resync: {len(fresh)} route(s)"
            f"{' +' + ','.join(added) if added else ''}"
            f"{' -' + ','.join(removed) if removed else ''}"
        )
        self._routes = fresh
        return True
