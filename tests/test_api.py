"""HTTP API tests against the seeded order-tiering flow."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from visualflow.api import create_app
from visualflow.config import AppConfig

ROOT = Path(__file__).resolve().parent.parent
SEEDED = "order-tiering"


@pytest.fixture
def client(tmp_path, store, modules, notifier, workflow_runner):
    config_path = tmp_path / "config.ini"
    config_path.write_text("[engine]\nmax_steps = 20\n\n[env]\nallow = STORE_CURRENCY\n", encoding="utf-8")
    config = AppConfig(config_path, ROOT / "flows.yaml")
    app = create_app(
        config=config,
        store=store,
        modules=modules,
        notifier=notifier,
        workflows=workflow_runner,
    )
    with TestClient(app) as test_client:
        yield test_client


def new_flow(**overrides):
    body = {
        "name": "Welcome",
        "status": "active",
        "operations": [{"id": "op-say", "operation_key": "say", "operation_type": "log", "options": {"message": "hi"}}],
        "connections": [{"id": "conn-1", "source_id": "trigger", "target_id": "op-say"}],
    }
    body.update(overrides)
    return body


class TestCatalog:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_operation_types(self, client):
        types = client.get("/operation-types").json()

        assert "condition" in types
        assert "http_request" in types

    def test_operation_catalog(self, client):
        catalog = {item["type"]: item for item in client.get("/operation-catalog").json()}

        assert catalog["condition"]["branching"] is True

    def test_config(self, client):
        body = client.get("/config").json()

        assert body["engine"]["max_steps"] == 20
        assert body["env"]["allow"] == ["STORE_CURRENCY"]

    def test_metadata(self, client):
        body = client.get("/metadata").json()

        assert body["modules"] == [
            {"name": "customers", "data_module": True, "soft_delete": True, "delete": True},
            {"name": "orders", "data_module": True, "soft_delete": False, "delete": True},
            {"name": "reports", "data_module": False, "soft_delete": False, "delete": False},
        ]
        assert {"id": SEEDED, "name": "Order tiering"} in body["triggerable_flows"]
        assert "trigger_flow" in body["operation_types"]
        assert [item["name"] for item in body["data_chain_variables"]] == ["$trigger", "$last", "$input", "$env"]


class TestFlows:
    def test_seeded_flow_is_available(self, client):
        flow = client.get(f"/flows/{SEEDED}").json()

        assert flow["name"] == "Order tiering"
        assert [item["operation_key"] for item in flow["operations"]] == ["check_amount", "tier", "log_small_order"]

    def test_seeding_is_idempotent(self, client, store, modules):
        create_app(config=AppConfig(ROOT / "config.ini", ROOT / "flows.yaml"), store=store, modules=modules)

        assert [flow.id for flow in store.list_flows()] == [SEEDED]

    def test_create_get_list(self, client):
        created = client.post("/flows", json=new_flow(id="welcome"))

        assert created.status_code == 200
        assert client.get("/flows/welcome").json()["name"] == "Welcome"
        assert {flow["id"] for flow in client.get("/flows").json()} == {SEEDED, "welcome"}

    def test_create_duplicate_id(self, client):
        response = client.post("/flows", json=new_flow(id=SEEDED))

        assert response.status_code == 409

    def test_create_with_generated_id(self, client):
        response = client.post("/flows/new", json=new_flow(id="ignored"))

        assert response.status_code == 200
        assert response.json()["id"] != "ignored"

    def test_invalid_flow_lists_problems(self, client):
        body = new_flow(
            operations=[{"id": "op-x", "operation_key": "$last", "operation_type": "send_fax"}],
            connections=[],
        )

        response = client.post("/flows", json=body)

        assert response.status_code == 422
        assert response.json()["detail"] == [
            "Operation key '$last' is reserved",
            "Operation '$last' has unknown type 'send_fax'",
        ]

    def test_update(self, client):
        flow = client.get(f"/flows/{SEEDED}").json()
        flow["name"] = "Order tiering v2"

        response = client.put(f"/flows/{SEEDED}", json=flow)

        assert response.status_code == 200
        assert client.get(f"/flows/{SEEDED}").json()["name"] == "Order tiering v2"

    def test_update_id_mismatch(self, client):
        response = client.put(f"/flows/{SEEDED}", json=new_flow(id="other"))

        assert response.status_code == 400

    def test_update_missing(self, client):
        response = client.put("/flows/missing", json=new_flow(id="missing"))

        assert response.status_code == 404

    def test_duplicate(self, client):
        response = client.post(f"/flows/{SEEDED}/duplicate", json={"name": "Tiering copy"})

        assert response.status_code == 200
        assert response.json()["name"] == "Tiering copy"
        assert response.json()["status"] == "draft"

    def test_delete(self, client):
        assert client.delete(f"/flows/{SEEDED}").json() == {"id": SEEDED, "deleted": True}
        assert client.get(f"/flows/{SEEDED}").status_code == 404
        assert client.delete(f"/flows/{SEEDED}").status_code == 404


class TestExecutions:
    def test_high_value_order(self, client):
        response = client.post(
            f"/flows/{SEEDED}/execute",
            json={"trigger_payload": {"amount": 150, "order_id": "ord_1"}, "triggered_by": "user_1"},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "completed"
        assert body["data_chain"]["tier"] == {"tier": "high", "order_id": "ord_1"}

        logs = client.get(f"/executions/{body['execution_id']}/logs").json()
        assert [(entry["operation_key"], entry["status"]) for entry in logs] == [
            ("check_amount", "success"),
            ("tier", "success"),
        ]

    def test_low_value_order(self, client):
        body = client.post(f"/flows/{SEEDED}/execute", json={"trigger_payload": {"amount": 50}}).json()

        assert body["status"] == "completed"
        assert "tier" not in body["data_chain"]
        assert "log_small_order" in body["data_chain"]

    def test_execution_history(self, client):
        first = client.post(f"/flows/{SEEDED}/execute", json={"trigger_payload": {"amount": 1}}).json()
        second = client.post(f"/flows/{SEEDED}/execute", json={"trigger_payload": {"amount": 2}}).json()

        history = client.get(f"/flows/{SEEDED}/executions").json()

        assert [item["id"] for item in history] == [second["execution_id"], first["execution_id"]]
        stored = client.get(f"/executions/{first['execution_id']}").json()
        assert stored["status"] == "completed"
        assert stored["trigger_data"] == {"amount": 1}

    def test_execute_missing_flow(self, client):
        assert client.post("/flows/missing/execute", json={}).status_code == 404

    def test_execute_draft_flow(self, client):
        client.post("/flows", json=new_flow(id="draft", status="draft"))

        assert client.post("/flows/draft/execute", json={}).status_code == 409

    def test_unknown_execution(self, client):
        assert client.get("/executions/missing").status_code == 404
        assert client.get("/executions/missing/logs").status_code == 404
        assert client.post("/executions/missing/cancel").status_code == 404

    def test_cancel_finished_execution(self, client):
        body = client.post(f"/flows/{SEEDED}/execute", json={"trigger_payload": {"amount": 1}}).json()

        response = client.post(f"/executions/{body['execution_id']}/cancel")

        assert response.status_code == 409
