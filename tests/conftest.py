"""Pytest fixtures for medorders tests."""

import json
import tempfile
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from medorders.auth import issue_token
from medorders.catalog import ProductCatalog
from medorders.config import Settings
from medorders.models import Role
from medorders.payments import PaymentGateway
from medorders.store import Database
from medorders.users import UserStore


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir):
    return Settings(
        data_dir=temp_dir / "data",
        token_secret="test-token-secret",
        razorpay_key_id="rzp_test_key",
        razorpay_key_secret="rzp-key-secret",
        razorpay_webhook_secret="rzp-webhook-secret",
        razorpay_base_url="https://gateway.test/v1",
    )


@pytest.fixture
def db(settings):
    """An initialized, empty database."""
    database = Database(settings.data_dir)
    database.init()
    return database


@pytest.fixture
def seeded(db):
    """
    Users of every role plus two laboratories with one product each.

    P1 belongs to lab A (price 100, 10 in stock), P2 to lab B (price 50, 5 in stock).
    """
    users = UserStore(db)
    catalog = ProductCatalog(db)

    patient = users.create_user("Asha Patient", Role.USER, email="asha@example.com")
    other_patient = users.create_user("Ravi Patient", Role.USER)
    lab_a = users.create_user("Lab A", Role.LABORATORY)
    lab_b = users.create_user("Lab B", Role.LABORATORY)
    partner = users.create_user("Dev Rider", Role.DELIVERY_PARTNER, phone="9000000001")
    partner2 = users.create_user("Second Rider", Role.DELIVERY_PARTNER)
    admin = users.create_user("Admin", Role.ADMIN)
    lab_a_profile = users.create_lab_profile(lab_a.id, "Lab A Diagnostics", city="Pune")

    p1 = catalog.create_product(lab_a, "Vitamin D test kit", "Home kit", 100.0, 10)
    p2 = catalog.create_product(lab_b, "Glucose strips", "Pack of 50", 50.0, 5)

    return SimpleNamespace(
        patient=patient,
        other_patient=other_patient,
        lab_a=lab_a,
        lab_b=lab_b,
        partner=partner,
        partner2=partner2,
        admin=admin,
        lab_a_profile=lab_a_profile,
        p1=p1,
        p2=p2,
    )


class FakeGatewayBackend:
    """In-memory stand-in for the gateway's REST endpoints, served via httpx.MockTransport."""

    def __init__(self):
        self.orders: list[dict] = []
        self.payments: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []
        self.fail_with: Exception | None = None

    def add_payment(self, payment_id: str, order_id: str, status: str = "captured", **extra):
        self.payments[payment_id] = {
            "id": payment_id,
            "entity": "payment",
            "order_id": order_id,
            "status": status,
            **extra,
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with

        path = request.url.path
        if request.method == "POST" and path.endswith("/orders"):
            body = json.loads(request.content)
            order = {
                "id": f"order_{len(self.orders) + 1}",
                "entity": "order",
                "status": "created",
                **body,
            }
            self.orders.append(order)
            return httpx.Response(200, json=order)

        if request.method == "GET" and "/payments/" in path:
            payment_id = path.rsplit("/", 1)[-1]
            payment = self.payments.get(payment_id)
            if payment is None:
                return httpx.Response(
                    400,
                    json={"error": {"code": "BAD_REQUEST_ERROR", "description": "The id provided does not exist"}},
                )
            return httpx.Response(200, json=payment)

        return httpx.Response(404, json={"error": {"description": "not found"}})


@pytest.fixture
def gateway_backend():
    return FakeGatewayBackend()


@pytest.fixture
def gateway(settings, gateway_backend):
    client = PaymentGateway(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        base_url=settings.razorpay_base_url,
        transport=httpx.MockTransport(gateway_backend.handler),
    )
    yield client
    client.close()


@pytest.fixture
def auth(settings):
    """Build Authorization headers for a user."""
    def headers(user):
        return {"Authorization": f"Bearer {issue_token(user.id, settings.token_secret)}"}

    return headers


@pytest.fixture
def client(settings, db, gateway):
    """Test client wired to the temporary database and the fake gateway."""
    from medorders.api import app, get_app_settings, get_database, get_gateway

    app.dependency_overrides[get_app_settings] = lambda: settings
    app.dependency_overrides[get_database] = lambda: db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()
