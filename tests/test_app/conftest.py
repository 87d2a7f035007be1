"""Shared fixtures for API endpoint tests."""

import os

import pytest
from fastapi.testclient import TestClient

# Force demo mode before any app imports
os.environ["DEMO_MODE"] = "true"

from src.app.main import create_app  # noqa: E402

TENANT_HEADERS = {"X-Tenant-Id": "demo-tenant"}


@pytest.fixture(scope="session")
def app():
    """Create a FastAPI app instance in demo mode."""
    return create_app()


@pytest.fixture
def client(app):
    """TestClient over a freshly seeded in-memory database.

    The lifespan reseeds on every entry, so each test starts from the
    same demo data.
    """
    with TestClient(app) as c:
        yield c


@pytest.fixture
def headers():
    return dict(TENANT_HEADERS)


@pytest.fixture
def generated(client, headers):
    """Run the daily pass for the demo tenant and return its interventions."""
    r = client.post("/api/interventions/run-daily", headers=headers)
    assert r.status_code == 200
    return client.get("/api/interventions", headers=headers).json()


def pending_for(interventions: list[dict], member_id: str) -> dict:
    """The pending intervention generated for a member."""
    return next(
        i for i in interventions
        if i["member_id"] == member_id and i["status"] == "PENDING_APPROVAL"
    )
