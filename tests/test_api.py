"""
Tests for FastAPI Endpoints

Integration tests for the settlement API.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import ADMIN, REPORTER
from settlement_rail.api.server import app, create_app
from settlement_rail.config import RailConfig


@pytest.fixture
def client():
    """Test client with the lifespan run, so each test gets fresh state."""
    with TestClient(app) as test_client:
        yield test_client


def headers(caller):
    return {"X-API-Key": "test-key-12345", "X-Caller-Id": caller}


def report(client, entity_id, epoch, primary, secondary, caller=REPORTER):
    return client.post(
        "/usage",
        json={
            "entity_id": entity_id,
            "epoch": epoch,
            "primary_units": primary,
            "secondary_units": secondary,
        },
        headers=headers(caller),
    )


def add_rail(client, entity_id, category, lockup):
    return client.post(
        "/rails",
        json={
            "entity_id": entity_id,
            "category": category,
            "rail_id": f"rail-{entity_id}-{category.lower()}",
            "lockup_limit": lockup,
        },
        headers=headers(ADMIN),
    )


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["primary_rate"] == 100
        assert data["secondary_rate"] == 200


class TestUsageEndpoints:
    """Test usage reporting."""

    def test_report_requires_api_key(self, client):
        response = client.post(
            "/usage",
            json={"entity_id": "ds-1", "epoch": 1, "primary_units": 1, "secondary_units": 1},
            headers={"X-Caller-Id": REPORTER},
        )

        assert response.status_code == 422  # Missing header

    def test_invalid_api_key(self, client):
        response = client.post(
            "/usage",
            json={"entity_id": "ds-1", "epoch": 1, "primary_units": 1, "secondary_units": 1},
            headers={"X-API-Key": "wrong-key", "X-Caller-Id": REPORTER},
        )

        assert response.status_code == 401

    def test_report_and_read(self, client):
        response = report(client, "ds-1", 1, 1000, 500)

        assert response.status_code == 200
        assert response.json()["primary_accumulated"] == 100000

        data = client.get("/usage/ds-1").json()
        assert data["secondary_accumulated"] == 100000
        assert data["max_reported_epoch"] == 1

    def test_wrong_caller_forbidden(self, client):
        response = report(client, "ds-1", 1, 1000, 500, caller=ADMIN)

        assert response.status_code == 403
        assert response.json()["error"] == "Unauthorized"

    def test_stale_epoch_is_bad_request(self, client):
        report(client, "ds-1", 2, 1, 1)

        response = report(client, "ds-1", 2, 1, 1)

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidEpoch"

    def test_batch_is_atomic(self, client):
        response = client.post(
            "/usage/batch",
            json={
                "entity_ids": ["ds-1", "ds-1"],
                "epochs": [1, 0],
                "primary_units": [1000, 1000],
                "secondary_units": [500, 500],
            },
            headers=headers(REPORTER),
        )

        assert response.status_code == 400
        assert client.get("/usage/ds-1").json()["max_reported_epoch"] == 0

    def test_batch_records_all(self, client):
        response = client.post(
            "/usage/batch",
            json={
                "entity_ids": ["ds-1", "ds-2"],
                "epochs": [1, 1],
                "primary_units": [1, 2],
                "secondary_units": [3, 4],
            },
            headers=headers(REPORTER),
        )

        assert response.status_code == 200
        assert response.json()["recorded"] == 2


class TestSettlementEndpoints:
    """Test settlement and termination."""

    def test_settle_partial_then_drain(self, client):
        report(client, "ds-1", 1, 1000, 0)
        add_rail(client, "ds-1", "PRIMARY", 50000)

        data = client.post("/settle/primary", json={"entity_ids": ["ds-1"]}).json()

        assert data["total_settled"] == 50000
        assert data["results"][0]["remaining"] == 50000

        data = client.post("/settle/primary", json={"entity_ids": ["ds-1"]}).json()
        assert data["total_settled"] == 0
        assert data["results"][0]["skipped"] == "LOCKUP_EXHAUSTED"

        response = client.post(
            "/rails/rail-ds-1-primary/top-up", json={"amount": 60000}, headers=headers(ADMIN)
        )
        assert response.json() == {"rail_id": "rail-ds-1-primary", "lockup_limit": 60000}

        data = client.post("/settle/primary", json={"entity_ids": ["ds-1"]}).json()
        assert data["total_settled"] == 50000
        assert (data["results"][0]["from_epoch"], data["results"][0]["to_epoch"]) == (1, 1)

    def test_top_up_requires_administrator(self, client):
        add_rail(client, "ds-1", "PRIMARY", 0)

        response = client.post(
            "/rails/rail-ds-1-primary/top-up", json={"amount": 10}, headers=headers(REPORTER)
        )

        assert response.status_code == 403

    def test_top_up_unknown_rail_is_bad_gateway(self, client):
        response = client.post(
            "/rails/rail-missing/top-up", json={"amount": 10}, headers=headers(ADMIN)
        )

        assert response.status_code == 502

    def test_invalid_category(self, client):
        response = client.post("/settle/tertiary", json={"entity_ids": ["ds-1"]})

        assert response.status_code == 400

    def test_terminate(self, client):
        report(client, "ds-1", 1, 1000, 500)
        add_rail(client, "ds-1", "PRIMARY", 10)

        response = client.post(
            "/terminate", json={"entity_id": "ds-1"}, headers=headers(REPORTER)
        )

        assert response.status_code == 200
        assert client.get("/usage/ds-1").json()["primary_accumulated"] == 100000

    def test_terminate_without_rail_is_bad_gateway(self, client):
        response = client.post(
            "/terminate", json={"entity_id": "ds-9"}, headers=headers(REPORTER)
        )

        assert response.status_code == 502


class TestAdministrationEndpoints:
    """Test rate and role changes."""

    def test_set_rate(self, client):
        response = client.put("/rates/secondary", json={"rate": 300}, headers=headers(ADMIN))

        assert response.status_code == 200
        assert response.json()["old_rate"] == 200
        assert client.get("/health").json()["secondary_rate"] == 300

    def test_zero_rate_rejected(self, client):
        response = client.put("/rates/primary", json={"rate": 0}, headers=headers(ADMIN))

        assert response.status_code == 400

    def test_set_reporter(self, client):
        response = client.put(
            "/roles/reporter", json={"identity": "reporter-2"}, headers=headers(ADMIN)
        )

        assert response.json() == {"role": "REPORTER", "old": REPORTER, "new": "reporter-2"}
        assert report(client, "ds-1", 1, 1, 1).status_code == 403
        assert report(client, "ds-1", 1, 1, 1, caller="reporter-2").status_code == 200

    def test_register_rail_requires_administrator(self, client):
        response = client.post(
            "/rails",
            json={"entity_id": "ds-1", "category": "PRIMARY", "rail_id": "r-1"},
            headers=headers(REPORTER),
        )

        assert response.status_code == 403


class TestFactEndpoints:
    """Test the audit trail."""

    def test_facts_and_verification(self, client):
        report(client, "ds-1", 1, 1000, 500)
        add_rail(client, "ds-1", "PRIMARY", 1_000_000)
        client.post("/settle/primary", json={"entity_ids": ["ds-1"]})

        data = client.get("/facts", params={"entity_id": "ds-1"}).json()
        assert [f["fact_type"] for f in data["facts"]] == ["USAGE_REPORTED", "SETTLED"]

        verify = client.get("/facts/verify").json()
        assert verify["valid"] is True
        assert verify["chain_length"] == 2

    def test_invalid_fact_type(self, client):
        assert client.get("/facts", params={"fact_type": "NOPE"}).status_code == 400

    def test_public_key(self, client):
        data = client.get("/public-key").json()

        assert data["algorithm"] == "Ed25519"
        assert "BEGIN PUBLIC KEY" in data["public_key_pem"]


class TestAppFactory:
    """create_app() takes its settings from the given config."""

    def test_cors_origins_from_config(self):
        config = RailConfig(cors_origins=["https://billing.example"])

        with TestClient(create_app(config)) as test_client:
            allowed = test_client.get("/health", headers={"Origin": "https://billing.example"})
            other = test_client.get("/health", headers={"Origin": "https://elsewhere.example"})

        assert allowed.headers["access-control-allow-origin"] == "https://billing.example"
        assert "access-control-allow-origin" not in other.headers

    def test_api_key_from_config(self):
        config = RailConfig(api_key="factory-key", reporter=REPORTER)

        with TestClient(create_app(config)) as test_client:
            response = report(test_client, "ds-1", 1, 1, 1)

        assert response.status_code == 401
