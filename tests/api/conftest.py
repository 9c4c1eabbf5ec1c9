"""
HTTP-layer fixtures.

The in-memory SQLite engine shares one connection between every session,
so API tests seed rows through ``session_scope`` (committed and closed)
rather than the open ``session`` fixture.
"""

import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from billing_api import create_app
from billing_config import BillingConfig, WebhookConfig
from billing_kernel.db.engine import session_scope
from billing_kernel.domain.statuses import ProjectStatus
from billing_kernel.models.project import Project

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def api_config() -> BillingConfig:
    return BillingConfig(webhooks=WebhookConfig(signing_secret=WEBHOOK_SECRET))


@pytest.fixture
def client(engine, clock, api_config):
    app = create_app(api_config, clock=clock)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def seed_project(engine):
    """Factory: commit a project and return its id as a string."""

    def _seed(
        name: str = "Kitchen remodel",
        total_budget: str = "100000.00",
        status: ProjectStatus = ProjectStatus.PLANNING,
    ) -> str:
        with session_scope() as session:
            project = Project(name=name, total_budget=Decimal(total_budget), status=status)
            session.add(project)
            session.flush()
            return str(project.id)

    return _seed


@pytest.fixture
def project_id(seed_project) -> str:
    return seed_project()


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header value for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def post_webhook(client):
    """Sign and deliver an event payload to the webhook endpoint."""

    def _post(event: dict, secret: str = WEBHOOK_SECRET, timestamp: int | None = None):
        body = json.dumps(event).encode("utf-8")
        return client.post(
            "/webhooks/stripe",
            content=body,
            headers={
                "Stripe-Signature": sign_payload(body, secret, timestamp),
                "Content-Type": "application/json",
            },
        )

    return _post


@pytest.fixture
def sign():
    return sign_payload
