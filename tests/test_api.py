"""
API tests using FastAPI's TestClient with a local-only service.
"""
import pytest
from fastapi.testclient import TestClient

import app.api as api
from services.transaction_service import TransactionService


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(api, "transaction_service", TransactionService(use_remote=False))
    monkeypatch.setattr(api, "jobs", {})
    return TestClient(api.app)


def txn(txn_id, description, amount, date="2024-04-12", **extra):
    return {
        "id": txn_id,
        "description": description,
        "amount": amount,
        "type": "debit" if amount < 0 else "credit",
        "date": date,
        **extra,
    }


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["remote_configured"] is False
    assert body["fallback_mode"] is False


def test_classify_and_apply(client):
    response = client.post("/classify", json={
        "transactions": [
            txn("a", "STARBUCKS STORE 1234", -5.25, extraction_confidence=0.9),
            txn("b", "MYSTERY ITEM", -3.0),
        ],
        "apply": True,
    })
    assert response.status_code == 200
    body = response.json()
    assert [r["source"] for r in body["results"]] == ["pattern", "fallback"]
    applied = body["transactions"][0]
    assert applied["category"] == "Food & Dining"
    assert applied["classification_confidence"] == 0.9
    assert applied["confidence"] == pytest.approx(0.9)


def test_classify_rejects_sign_mismatch(client):
    response = client.post("/classify", json={
        "transactions": [{"id": "a", "description": "X", "amount": -5.0, "type": "credit"}],
    })
    assert response.status_code == 422


def test_bulk_job_lifecycle(client):
    response = client.post("/classify/bulk", json={
        "transactions": [txn("a", "UBER TRIP", -12.0), txn("b", "LYFT RIDE", -9.0)],
        "options": {"inter_chunk_delay": 0},
    })
    assert response.status_code == 202
    job_id = response.json()["job_id"]

    status = client.get(f"/status/{job_id}").json()
    assert status["status"] == "completed"
    assert status["progress"] == 100
    processed = status["result"]["processed_transactions"]
    assert sorted(r["transaction_id"] for r in processed) == ["a", "b"]


def test_unknown_job(client):
    assert client.get("/status/does-not-exist").status_code == 404


def test_duplicates(client):
    response = client.post("/duplicates", json={
        "transactions": [txn("a", "NETFLIX.COM", -15.99), txn("b", "NETFLIX.COM", -15.99)],
    })
    assert response.status_code == 200
    body = response.json()
    assert body["total_duplicates"] == 2
    assert body["duplicate_groups"][0]["duplicate_type"] == "exact"


def test_readiness_classifies_when_needed(client):
    response = client.post("/readiness", json={
        "extraction": {"transactions": [txn("a", "UBER TRIP", -12.0, extraction_confidence=0.95)]},
    })
    assert response.status_code == 200
    body = response.json()
    assert body["recommended_action"] == "auto-export"
    assert body["can_auto_process"] is True


def test_thresholds_roundtrip_and_errors(client):
    assert client.get("/settings/thresholds").json()["auto_processing"] == 0.85

    response = client.put("/settings/thresholds", json={"auto_processing": 0.9})
    assert response.status_code == 200
    assert response.json()["auto_processing"] == 0.9

    response = client.put("/settings/thresholds", json={"auto_processing": 2})
    assert response.status_code == 422
    assert response.json()["error"] == "Invalid confidence thresholds"


def test_duplicate_settings(client):
    response = client.put("/settings/duplicates", json={"comparison_window_days": 5})
    assert response.status_code == 200
    assert client.get("/settings/duplicates").json()["comparison_window_days"] == 5


def test_rules_crud(client):
    rule = {
        "id": "netflix",
        "name": "Netflix",
        "conditions": [{"field": "description", "operator": "contains", "value": "netflix"}],
        "action": {"type": "set_category", "value": "Entertainment"},
    }
    assert client.post("/rules", json=rule).status_code == 201
    assert [r["id"] for r in client.get("/rules").json()] == ["netflix"]

    result = client.post("/classify", json={"transactions": [txn("a", "NETFLIX.COM", -15.99)]}).json()
    assert result["results"][0]["source"] == "user_rule"
    assert result["results"][0]["applied_rule_id"] == "netflix"

    assert client.delete("/rules/netflix").status_code == 204
    assert client.delete("/rules/netflix").status_code == 404


def test_enable_remote_without_client(client):
    response = client.post("/remote/enable")
    assert response.status_code == 422
    assert response.json()["details"] == {"required_key": "OPENAI_API_KEY"}


def test_classify_derives_type_from_amount(client):
    response = client.post("/classify", json={
        "transactions": [{"id": "a", "description": "PAYROLL ACME CORP", "amount": 2500.0}],
        "apply": True,
    })
    assert response.status_code == 200
    assert response.json()["transactions"][0]["type"] == "credit"
