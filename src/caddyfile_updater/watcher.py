"""Turn the Docker event stream into container lifecycle events.

``DockerEventWatcher.events()`` never ends on its own: it yields an inventory
snapshot first, then container events, and yields a fresh snapshot every
``resync_interval`` seconds and after every reconnect, so missed events are
healed by the next snapshot.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterator, Optional

import docker
import requests
from docker.errors import DockerException, NotFound

from .errors import WatcherDisconnect
from .models import (
    ContainerInfo,
    ContainerStarted,
    ContainerStopped,
    ContainerUpdated,
    InventorySnapshot,
)
from .state import ContainerEvent

logger = logging.getLogger(__name__)

START_ACTIONS = {"start"}
STOP_ACTIONS = {"die", "stop", "destroy"}
UPDATE_ACTIONS = {"rename", "update"}


class DockerEventWatcher:
    def __init__(
        self,
        client: docker.DockerClient,
        resync_interval: int = 300,
        reconnect_delay: int = 5,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._client = client
        self.resync_interval = resync_interval
        self.reconnect_delay = reconnect_delay
        self._clock = clock
        self._sleep = sleep
        self._stopping = False
        self._stream: Optional[Any] = None

    def check_connection(self) -> None:
        """Raise DockerException when the daemon cannot be reached."""
        self._client.ping()

    def stop(self) -> None:
        """Make ``events()`` return; safe to call from a signal handler."""
        self._stopping = True
        stream = self._stream
        if stream is not None:
            try:
                stream.close()
            except Exception as e:
                logger.debug(f"Error closing event stream: {e}")

    def snapshot(self) -> InventorySnapshot:
        containers = tuple(
            ContainerInfo(container_id=c.id, name=c.name, labels=dict(c.labels or {}))
            for c in self._client.containers.list(ignore_removed=True)
        )
        logger.info(f"Inventory snapshot: {len(containers)} running container(s)")
        return InventorySnapshot(containers=containers)

    def events(self) -> Iterator[ContainerEvent]:
        while not self._stopping:
            try:
                since = int(self._clock())
                yield self.snapshot()

                while not self._stopping:
                    until = since + self.resync_interval if self.resync_interval else None
                    yield from self._stream_events(since, until)
                    if self._stopping:
                        return
                    if until is None:
                        raise WatcherDisconnect("event stream ended unexpectedly")
                    since = until
                    logger.debug("Periodic resync")
                    yield self.snapshot()

            except (DockerException, requests.exceptions.RequestException, WatcherDisconnect) as e:
                if self._stopping:
                    return
                logger.warning(
                    f"Docker event stream disconnected ({e}); resyncing in {self.reconnect_delay}s"
                )
                self._sleep(self.reconnect_delay)

    def _stream_events(self, since: int, until: Optional[int]) -> Iterator[ContainerEvent]:
        stream = self._client.events(
            decode=True, since=since, until=until, filters={"type": "container"}
        )
        self._stream = stream
        try:
            for raw in stream:
                if self._stopping:
                    return
                event = self._translate(raw)
                if event is not None:
                    yield event
        except Exception:
            # stop() closes the stream under the reader; anything else is a real disconnect
            if self._stopping:
                return
            raise
        finally:
            self._stream = None
            stream.close()

    def _translate(self, raw: Dict[str, Any]) -> Optional[ContainerEvent]:
        if raw.get("Type") != "container":
            return None
        action = str(raw.get("Action") or raw.get("status") or "")
        container_id = (raw.get("Actor") or {}).get("ID") or raw.get("id")
        if not container_id:
            return None

        if action in STOP_ACTIONS:
            logger.debug(f"Container {container_id[:12]} {action}")
            return ContainerStopped(container_id)

        if action in START_ACTIONS or action in UPDATE_ACTIONS:
            info = self._inspect(container_id)
            if info is None:
                return ContainerStopped(container_id) if action in UPDATE_ACTIONS else None
            logger.debug(f"Container '{info.name}' {action}")
            if action in START_ACTIONS:
                return ContainerStarted(info)
            return ContainerUpdated(info)

        return None

    def _inspect(self, container_id: str) -> Optional[ContainerInfo]:
        try:
            container = self._client.containers.get(container_id)
        except NotFound:
            logger.warning(f"Container {container_id[:12]} disappeared before it could be inspected")
            return None
        if container.status != "running":
            logger.debug(f"Container {container_id[:12]} is {container.status}, ignoring")
            return None
        return ContainerInfo(
            container_id=container.id, name=container.name, labels=dict(container.labels or {})
        )
