"""Unit tests for DesiredStateStore."""

import pytest

from caddyfile_updater.models import (
    AuthType,
    ContainerInfo,
    ContainerStarted,
    ContainerStopped,
    ContainerUpdated,
    InventorySnapshot,
)
from caddyfile_updater.state import DesiredStateStore

PREFIX = "my.name"


def container(cid: str, name: str, **fields: str) -> ContainerInfo:
    return ContainerInfo(
        container_id=cid, name=name, labels={f"{PREFIX}.{k}": v for k, v in fields.items()}
    )


# =============================================================================
# Started / Updated
# =============================================================================


def test_started_with_valid_labels_adds_route() -> None:
    store = DesiredStateStore(PREFIX)

    changed = store.apply(ContainerStarted(container("c1", "web", port="8080")))

    assert changed is True
    assert store.get("c1") is not None
    assert store.get("c1").port == 8080


def test_started_twice_is_idempotent() -> None:
    """Applying the same Started event twice changes nothing the second time."""
    store = DesiredStateStore(PREFIX)
    event = ContainerStarted(container("c1", "web", port="8080"))

    assert store.apply(event) is True
    assert store.apply(event) is False
    assert len(store) == 1


def test_started_without_port_adds_nothing() -> None:
    store = DesiredStateStore(PREFIX)

    changed = store.apply(ContainerStarted(container("c1", "web", app="web")))

    assert changed is False
    assert len(store) == 0


def test_started_with_invalid_app_is_skipped() -> None:
    store = DesiredStateStore(PREFIX)

    changed = store.apply(ContainerStarted(container("c1", "web", app="bad name", port="80")))

    assert changed is False
    assert len(store) == 0


def test_updated_labels_replace_route() -> None:
    store = DesiredStateStore(PREFIX)
    store.apply(ContainerStarted(container("c1", "web", port="8080")))

    changed = store.apply(ContainerUpdated(container("c1", "web", port="8080", auth="headers")))

    assert changed is True
    assert store.get("c1").auth == AuthType.HEADERS


def test_updated_dropping_port_retracts_route() -> None:
    """A label change that removes a required field retracts the route."""
    store = DesiredStateStore(PREFIX)
    store.apply(ContainerStarted(container("c1", "web", port="8080")))

    changed = store.apply(ContainerUpdated(container("c1", "web", app="web")))

    assert changed is True
    assert store.get("c1") is None


def test_rename_changes_hostname() -> None:
    store = DesiredStateStore(PREFIX)
    store.apply(ContainerStarted(container("c1", "web-old", app="web", port="80")))

    changed = store.apply(ContainerUpdated(container("c1", "web-new", app="web", port="80")))

    assert changed is True
    assert store.get("c1").hostname == "web-new"


# =============================================================================
# Stopped
# =============================================================================


def test_stopped_removes_route() -> None:
    store = DesiredStateStore(PREFIX)
    store.apply(ContainerStarted(container("c1", "web", port="8080")))

    assert store.apply(ContainerStopped("c1")) is True
    assert len(store) == 0


def test_stopped_unknown_container_is_no_change() -> None:
    store = DesiredStateStore(PREFIX)

    assert store.apply(ContainerStopped("nope")) is False


# =============================================================================
# Snapshot
# =============================================================================


def test_snapshot_replaces_everything() -> None:
    store = DesiredStateStore(PREFIX)
    store.apply(ContainerStarted(container("gone", "old", port="80")))

    changed = store.apply(
        InventorySnapshot(
            (
                container("c1", "web", port="8080"),
                container("c2", "plain"),
                container("c3", "noport", app="noport"),
            )
        )
    )

    assert changed is True
    assert store.get("gone") is None
    assert [r.app for r in store.routes()] == ["web"]


def test_snapshot_applied_twice_is_idempotent() -> None:
    store = DesiredStateStore(PREFIX)
    snapshot = InventorySnapshot(
        (container("c1", "web", port="8080"), container("c2", "api", port="9000"))
    )

    assert store.apply(snapshot) is True
    first = store.routes()
    assert store.apply(snapshot) is False
    assert store.routes() == first


def test_routes_sorted_by_app_regardless_of_insertion_order() -> None:
    a = DesiredStateStore(PREFIX)
    b = DesiredStateStore(PREFIX)
    containers = [
        container("c1", "zeta", port="1"),
        container("c2", "alpha", port="2"),
        container("c3", "mid", port="3"),
    ]

    for c in containers:
        a.apply(ContainerStarted(c))
    for c in reversed(containers):
        b.apply(ContainerStarted(c))

    assert [r.app for r in a.routes()] == ["alpha", "mid", "zeta"]
    assert a.routes() == b.routes()


def test_unsupported_event_type_raises() -> None:
    store = DesiredStateStore(PREFIX)

    with pytest.raises(TypeError):
        store.apply("start")
