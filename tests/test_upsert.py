from __future__ import annotations

import pytest

from profile_manager.controller.upsert import (
    OperationResult,
    add_label,
    controller_ref,
    create_or_update,
    is_controlled_by,
    keep_equal_quantities,
    new_object,
    set_controller_reference,
)
from profile_manager.core.models import NAMESPACE, SERVICE_ACCOUNT
from profile_manager.errors import AlreadyOwnedError, ConflictError


def _owner(name: str = "alice", uid: str = "uid-owner") -> dict:
    return {
        "apiVersion": "kubeflow.org/v1alpha1",
        "kind": "Contributor",
        "metadata": {"name": name, "namespace": "starlord", "uid": uid},
    }


def test_new_object_drops_namespace_for_cluster_scoped_kinds() -> None:
    assert new_object(NAMESPACE, "starlord", "ignored")["metadata"] == {"name": "starlord"}
    assert new_object(SERVICE_ACCOUNT, "alice", "starlord")["metadata"] == {"name": "alice", "namespace": "starlord"}


def test_set_controller_reference_is_idempotent_and_keeps_other_refs() -> None:
    obj = new_object(SERVICE_ACCOUNT, "alice", "starlord")
    obj["metadata"]["ownerReferences"] = [{"apiVersion": "v1", "kind": "ConfigMap", "name": "x"}]

    set_controller_reference(obj, _owner())
    set_controller_reference(obj, _owner())

    refs = obj["metadata"]["ownerReferences"]
    assert len(refs) == 2
    assert refs[-1] == controller_ref(_owner())
    assert refs[-1]["controller"] is True and refs[-1]["blockOwnerDeletion"] is True
    assert is_controlled_by(obj, _owner())


def test_set_controller_reference_rejects_foreign_controller() -> None:
    obj = new_object(SERVICE_ACCOUNT, "alice", "starlord")
    set_controller_reference(obj, _owner("bob", uid="uid-bob"))
    with pytest.raises(AlreadyOwnedError):
        set_controller_reference(obj, _owner())
    assert not is_controlled_by(obj, _owner())


def test_create_or_update_creates_then_is_unchanged(store) -> None:
    def mutate(obj: dict) -> None:
        add_label(obj, "team", "ml")

    res, created = create_or_update(store, new_object(SERVICE_ACCOUNT, "alice", "starlord"), mutate)
    assert res == OperationResult.CREATED
    assert created["metadata"]["labels"] == {"team": "ml"}

    writes = len(store.writes)
    res, _ = create_or_update(store, new_object(SERVICE_ACCOUNT, "alice", "starlord"), mutate)
    assert res == OperationResult.UNCHANGED
    assert len(store.writes) == writes


def test_create_or_update_updates_and_keeps_foreign_fields(store) -> None:
    store.create(
        {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {"name": "alice", "namespace": "starlord", "labels": {"keep": "me"}},
            "secrets": [{"name": "token"}],
        }
    )

    res, updated = create_or_update(
        store, new_object(SERVICE_ACCOUNT, "alice", "starlord"), lambda o: add_label(o, "team", "ml")
    )
    assert res == OperationResult.UPDATED
    assert updated["metadata"]["labels"] == {"keep": "me", "team": "ml"}
    assert updated["secrets"] == [{"name": "token"}]


def test_create_or_update_surfaces_concurrent_write_as_conflict(store) -> None:
    store.create(new_object(SERVICE_ACCOUNT, "alice", "starlord"))

    def mutate(obj: dict) -> None:
        # Another writer sneaks in between our read and our write.
        other = store.get(SERVICE_ACCOUNT, "alice", "starlord")
        add_label(other, "other", "writer")
        store.replace(other)
        add_label(obj, "team", "ml")

    with pytest.raises(ConflictError):
        create_or_update(store, new_object(SERVICE_ACCOUNT, "alice", "starlord"), mutate)

    labels = store.get(SERVICE_ACCOUNT, "alice", "starlord")["metadata"]["labels"]
    assert labels == {"other": "writer"}


def test_keep_equal_quantities_prefers_stored_spelling() -> None:
    desired = {"cpu": "0.5", "memory": "2Gi", "pods": "bad", "services": "10"}
    current = {"cpu": "500m", "memory": "1Gi", "pods": "x"}

    assert keep_equal_quantities(desired, current) == {
        "cpu": "500m",
        "memory": "2Gi",
        "pods": "bad",
        "services": "10",
    }
    assert keep_equal_quantities(desired, None) == desired
