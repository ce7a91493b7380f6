"""Tests for the HTTP surface: trigger, audit, flow import and the WhatsApp webhook."""
import uuid
import pytest
from fastapi.testclient import TestClient

import api.main as main
from conftest import PHONE, edge, node, qualification_flow_doc


@pytest.fixture
def client():
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def department(client) -> str:
    """Imports the qualification flow under a fresh department code."""
    code = f"dep-{uuid.uuid4().hex[:8]}"
    doc = qualification_flow_doc()
    doc["id"] = f"flow-{code}"
    doc["departmentCode"] = code
    response = client.post("/api/v1/flows", json=doc)
    assert response.status_code == 200
    return code


def wa_body(text: str, msg_id: str, sender: str = PHONE) -> dict:
    return {"entry": [{"changes": [{"value": {
        "contacts": [{"profile": {"name": "Maria"}}],
        "messages": [{"from": sender, "id": msg_id, "type": "text", "text": {"body": text}}],
    }}]}]}


class TestHealth:
    def test_health(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["store"] == "InMemoryExecutionStore"


class TestFlowImport:
    def test_import_returns_camel_case(self, client, department):
        data = client.get(f"/api/v1/flows/flow-{department}").json()
        assert data["departmentCode"] == department
        assert data["isActive"] is True

    def test_listed_by_department(self, client, department):
        flows = client.get("/api/v1/flows", params={"department": department}).json()
        assert [f["id"] for f in flows] == [f"flow-{department}"]

    def test_invalid_graph_rejected(self, client):
        doc = {"id": "broken", "nodes": [node("s", "start")], "edges": [edge("s", "ghost")]}
        response = client.post("/api/v1/flows", json=doc)
        assert response.status_code == 422
        assert any("ghost" in e for e in response.json()["detail"])

    def test_unknown_node_type_rejected(self, client):
        response = client.post("/api/v1/flows", json={"nodes": [node("x", "teleport")]})
        assert response.status_code == 422

    def test_unknown_flow(self, client):
        assert client.get("/api/v1/flows/nope").status_code == 404


class TestTrigger:
    def test_execute_and_audit(self, client, department):
        conversation = f"api:{uuid.uuid4().hex[:8]}"
        response = client.post("/api/v1/flows/execute", json={
            "conversationId": conversation, "phoneIdentity": PHONE,
            "inboundText": "oi", "departmentCode": department,
        })
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "waiting_response"
        assert data["outboundText"].startswith("Olá Maria Souza")

        execution = client.get(f"/api/v1/executions/{data['executionId']}").json()
        assert execution["current_node_id"] == "ask"
        logs = client.get(f"/api/v1/executions/{data['executionId']}/logs").json()
        assert [entry["node_id"] for entry in logs] == ["start", "greet"]

        listed = client.get("/api/v1/executions", params={"conversation_id": conversation}).json()
        assert [e["id"] for e in listed] == [data["executionId"]]

    def test_missing_fields_rejected(self, client):
        assert client.post("/api/v1/flows/execute", json={"inboundText": "oi"}).status_code == 422

    def test_unknown_execution(self, client):
        assert client.get("/api/v1/executions/nope").status_code == 404
        assert client.get("/api/v1/executions/nope/logs").status_code == 404

    def test_resume_requires_paused_execution(self, client):
        assert client.post("/api/v1/executions/nope/resume").status_code == 404


class TestWhatsAppWebhook:
    def test_verification_fails_without_token(self, client):
        params = {"hub.mode": "subscribe", "hub.verify_token": "x", "hub.challenge": "1"}
        assert client.get("/webhooks/whatsapp", params=params).status_code == 403

    def test_inbound_message_runs_flow(self, client, department):
        sender = f"55119{uuid.uuid4().int % 10**8:08d}"
        response = client.post(f"/webhooks/whatsapp?department={department}",
                               json=wa_body("oi", f"wamid.{uuid.uuid4().hex}", sender))
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "waiting_response"
        assert data["outboundText"].startswith("Olá Cliente")

    def test_automation_disabled_is_skipped(self, client, department):
        sender = f"55118{uuid.uuid4().int % 10**8:08d}"
        main.backend_connector.contacts[sender] = {"phone": sender, "name": "Ana", "ai_handling": False}
        response = client.post(f"/webhooks/whatsapp?department={department}",
                               json=wa_body("oi", f"wamid.{uuid.uuid4().hex}", sender))
        assert response.json() == {"status": "skipped", "reason": "automation_disabled"}

    def test_status_callback_acknowledged(self, client):
        body = {"entry": [{"changes": [{"value": {"statuses": [{"status": "delivered"}]}}]}]}
        assert client.post("/webhooks/whatsapp", json=body).json() == {"status": "ok"}

    def test_invalid_json(self, client):
        response = client.post("/webhooks/whatsapp", content=b"{nope",
                               headers={"Content-Type": "application/json"})
        assert response.status_code == 400
