from __future__ import annotations

import dataclasses

import pytest
from conftest import profile_manifest
from fastapi.testclient import TestClient

from profile_manager.api.server import create_app, status_for_error
from profile_manager.core.models import CONTRIBUTOR, PROFILE
from profile_manager.errors import ConflictError, StoreError

BASE = "/kfam/v1"
PROFILE_BODY = {"metadata": {"name": "starlord"}, "spec": {"owner": {"kind": "User", "name": "alice@example.com"}}}


def _as(user: str) -> dict:
    return {"kubeflow-userid": user}


@pytest.fixture
def client(store, config) -> TestClient:
    return TestClient(create_app(store, config))


def test_healthz(client) -> None:
    r = client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_create_profile(client, store) -> None:
    r = client.post(f"{BASE}/profiles", json=PROFILE_BODY)
    assert r.status_code == 200
    assert store.exists(PROFILE, "starlord")

    assert client.post(f"{BASE}/profiles", json=PROFILE_BODY).status_code == 409
    assert client.post(f"{BASE}/profiles", json={"metadata": {"name": "Bad_Name"}}).status_code == 400
    r = client.post(f"{BASE}/profiles", content=b"{not json", headers={"content-type": "application/json"})
    assert r.status_code == 400


def test_delete_profile_requires_admin(client, store) -> None:
    store.create(profile_manifest("starlord", "alice@example.com"))

    r = client.delete(f"{BASE}/profiles/starlord", headers=_as("mallory@example.com"))
    assert r.status_code == 403
    assert store.exists(PROFILE, "starlord")

    assert client.delete(f"{BASE}/profiles/starlord").status_code == 403

    r = client.delete(f"{BASE}/profiles/starlord", headers=_as("alice@example.com"))
    assert r.status_code == 200
    assert not store.exists(PROFILE, "starlord")

    assert client.delete(f"{BASE}/profiles/starlord", headers=_as("alice@example.com")).status_code == 404


def test_cluster_admin_query(client) -> None:
    assert client.get(f"{BASE}/role/clusteradmin").status_code == 400

    r = client.get(f"{BASE}/role/clusteradmin", params={"user": "admin@example.com"})
    assert r.status_code == 200
    assert r.text == "true"
    assert client.get(f"{BASE}/role/clusteradmin", params={"user": "alice@example.com"}).text == "false"


def test_bindings_lifecycle(client, store) -> None:
    store.create(profile_manifest("starlord", "alice@example.com"))
    binding = {"user": {"kind": "User", "name": "bob@example.com"}, "referredNamespace": "starlord"}

    r = client.post(f"{BASE}/bindings", json=binding)
    assert r.status_code == 200
    assert store.exists(CONTRIBUTOR, "bob", "starlord")
    assert client.post(f"{BASE}/bindings", json=binding).status_code == 409

    r = client.get(f"{BASE}/bindings", params={"namespace": "starlord"})
    assert r.status_code == 200
    assert r.json()["bindings"] == [
        {
            "user": {"kind": "User", "name": "bob@example.com"},
            "referredNamespace": "starlord",
            "RoleRef": {"kind": "ClusterRole", "name": "edit"},
        }
    ]

    r = client.request("DELETE", f"{BASE}/bindings", json=binding, headers=_as("bob@example.com"))
    assert r.status_code == 403
    assert store.exists(CONTRIBUTOR, "bob", "starlord")

    r = client.request("DELETE", f"{BASE}/bindings", json=binding, headers=_as("alice@example.com"))
    assert r.status_code == 200
    assert not store.exists(CONTRIBUTOR, "bob", "starlord")


def test_add_binding_rejects_groups(client, store) -> None:
    store.create(profile_manifest("starlord", "alice@example.com"))
    r = client.post(
        f"{BASE}/bindings", json={"user": {"kind": "Group", "name": "ml"}, "referredNamespace": "starlord"}
    )
    assert r.status_code == 400


def test_enforced_add_binding_and_custom_base_url(store, config) -> None:
    store.create(profile_manifest("starlord", "alice@example.com"))
    cfg = dataclasses.replace(
        config, base_url="/access", userid_header="x-user", require_auth_for_add_contributor=True
    )
    c = TestClient(create_app(store, cfg))
    binding = {"user": {"kind": "User", "name": "bob@example.com"}, "referredNamespace": "starlord"}

    assert c.post("/access/v1/bindings", json=binding, headers={"x-user": "bob@example.com"}).status_code == 403
    assert c.post("/access/v1/bindings", json=binding, headers={"x-user": "alice@example.com"}).status_code == 200
    assert c.get(f"{BASE}/bindings").status_code == 404


def test_status_mapping_for_store_failures() -> None:
    assert status_for_error(ConflictError("stale")) == 409
    assert status_for_error(StoreError("boom", status=503)) == 500
