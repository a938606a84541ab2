import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("LLM_PROVIDER", "none")

import pytest
from fastapi.testclient import TestClient

from app.deps import build_services
from app.main import create_app


@pytest.fixture
def client(session_factory, clock, text_generator, customer):
    services = build_services(text_generator, session_factory, clock)
    app = create_app(services=services, init_database=False)
    with TestClient(app) as test_client:
        yield test_client


def _ingest(client, content, role="customer"):
    response = client.post(
        "/tenants/acme/customers/cust-1/messages",
        json={"role": role, "content": content, "platform": "whatsapp"},
    )
    assert response.status_code == 200
    return response.json()


def test_health_and_root(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["database"] == {"ok": True}
    assert health.json()["text_generation"]["status"] == "disabled"

    root = client.get("/")
    assert root.json()["service"] == "DeskMemory"


def test_ingest_and_read_conversation(client):
    result = _ingest(client, "I need urgent help, my order is broken")
    assert result["classification"]["category"] == "support"

    conversation = client.get(f"/conversations/{result['conversation_id']}").json()
    assert conversation["priority"] == "high"

    messages = client.get(f"/conversations/{result['conversation_id']}/messages").json()
    assert [message["seq"] for message in messages] == [1]

    listed = client.get("/tenants/acme/customers/cust-1/conversations").json()
    assert [item["id"] for item in listed] == [result["conversation_id"]]

    tagged = client.get("/tenants/acme/customers/cust-1/conversations", params={"tags": "delivery"}).json()
    assert [item["id"] for item in tagged] == [result["conversation_id"]]


def test_errors_map_to_status_codes(client):
    missing = client.get("/conversations/nope")
    assert missing.status_code == 404
    assert missing.json()["error_type"] == "not_found"

    invalid = client.post("/tenants/acme/customers/cust-1/messages", json={"role": "robot", "content": "hi"})
    assert invalid.status_code == 422
    assert invalid.json()["field"] == "role"


def test_context_endpoint_reports_quality_and_mode(client):
    _ingest(client, "Where is my order?")
    body = client.get("/tenants/acme/customers/cust-1/context").json()
    assert body["quality"]["tier"] == "limited"
    assert body["response_mode"] == "escalate"
    assert len(body["recent_messages"]) == 1


def test_interaction_and_feedback_flow(client):
    recorded = client.post(
        "/tenants/acme/customers/cust-1/interactions",
        json={
            "input": {"content": "Where is my order?", "source": "whatsapp"},
            "analysis": {"category": "delivery", "confidence": 0.5, "topics": ["delivery"]},
        },
    ).json()
    assert recorded["recorded"] is True

    feedback = client.post(f"/learning/{recorded['record_id']}/feedback", json={"rating": 1})
    assert feedback.status_code == 200
    assert feedback.json()["failure_analysis_id"] is not None

    rejected = client.post("/tenants/acme/customers/cust-1/interactions", json={"analysis": {"confidence": 7}})
    assert rejected.json() == {"recorded": False, "record_id": None}

    patterns = client.get("/tenants/acme/learning/patterns").json()
    assert patterns["total_interactions"] == 1


def test_archival_job_endpoint(client, clock):
    from datetime import datetime

    clock.set(datetime(2024, 1, 10, 9, 0, 0))
    _ingest(client, "hello from january")
    clock.set(datetime(2024, 5, 15, 12, 0, 0))

    response = client.post("/jobs/archival", json={"tenant_id": "acme"})
    assert response.status_code == 200
    assert response.json()["results"][0]["summaries_created"] == 1

    refresh = client.post("/jobs/profile-refresh", json={"tenant_id": "acme"})
    assert refresh.json()["refreshed"] == 1

    stats = client.get("/tenants/acme/summaries/statistics").json()
    assert stats["total_summaries"] == 1


def test_admin_command_endpoint(client):
    response = client.post("/tenants/acme/admin/commands", json={"command": "/help"})
    assert response.status_code == 200
    assert response.json()["command"] == "help"

    unknown = client.post("/tenants/acme/admin/commands", json={"command": "/launch"})
    assert unknown.status_code == 422


def test_startup_rebuilds_learning_metrics_from_store(session_factory, clock, text_generator, customer):
    earlier = build_services(text_generator, session_factory, clock)
    earlier.learning.record_interaction(
        "acme",
        customer,
        {
            "input": {"content": "Where is my order?", "source": "whatsapp"},
            "analysis": {"category": "delivery", "confidence": 0.5, "topics": ["delivery"]},
            "response": {"content": "It ships today", "confidence": 0.8},
        },
    )

    restarted = build_services(text_generator, session_factory, clock)
    assert restarted.learning.aggregator.snapshot()["interactions"] == 0

    with TestClient(create_app(services=restarted, init_database=False)) as client:
        stats = client.get("/learning/stats").json()

    assert stats["in_memory"]["interactions"] == 1
    assert stats["in_memory"]["successful_responses"] == 1
    assert stats["in_memory"]["common_topics"] == [{"topic": "delivery", "count": 1}]


def test_message_timestamps_accept_iso_strings(client):
    response = client.post(
        "/tenants/acme/customers/cust-1/messages",
        json={"role": "customer", "content": "Order arrived damaged", "timestamp": "2024-05-15T13:30:00+02:00"},
    )
    assert response.status_code == 200
    conversation_id = response.json()["conversation_id"]

    appended = client.post(
        f"/conversations/{conversation_id}/messages",
        json={"role": "assistant", "content": "Sorry to hear that", "timestamp": "2024-05-15T11:45:00Z"},
    )
    assert appended.status_code == 200

    messages = client.get(f"/conversations/{conversation_id}/messages").json()
    assert [message["timestamp"] for message in messages] == ["2024-05-15T11:30:00", "2024-05-15T11:45:00"]

    malformed = client.post(
        f"/conversations/{conversation_id}/messages",
        json={"role": "assistant", "content": "hi", "timestamp": "yesterday"},
    )
    assert malformed.status_code == 422
    assert malformed.json()["field"] == "timestamp"
