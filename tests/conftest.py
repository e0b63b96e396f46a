import json
import os
import tempfile

# Configure before anything imports axbilling.config
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="axbilling-logs-")
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["GUPSHUP_API_KEY"] = "test-key"
os.environ["GUPSHUP_APP_NAME"] = "axbilling-test"
os.environ["GUPSHUP_SOURCE_NUMBER"] = "60100000000"
os.environ["GUPSHUP_WEBHOOK_SECRET"] = "test-secret"
os.environ["PHONE_COUNTRY_CODE"] = "60"
os.environ["OPENROUTER_API_KEY"] = ""
os.environ["FAL_KEY"] = ""
os.environ["CURRENCY"] = "RM"

import pytest
from fastapi.testclient import TestClient

from axbilling.auth import create_token, hash_password
from axbilling.db import Base, SessionLocal, engine
from axbilling.errors import AnalysisFailed
from axbilling.main import app, get_gateway, get_vision_providers
from axbilling.models import Order, User
from axbilling.vision.analysis import VehicleAnalysis
from axbilling.whatsapp.gateway import GupshupGateway

ORDER_CODE = "AX-20250101-0001"
CUSTOMER_NUMBER = "60123456789"


class FakeResponse:
    def __init__(self, status_code=200, body=None):
        self.status_code = status_code
        self._body = body if body is not None else {}

    def json(self):
        return self._body

    @property
    def text(self):
        return json.dumps(self._body)


class RecordingGateway(GupshupGateway):
    """Captures form posts instead of calling Gupshup."""

    def __init__(self, fail=False):
        super().__init__(
            "test-key",
            "axbilling-test",
            "60100000000",
            webhook_secret="test-secret",
            country_code="60",
        )
        self.fail = fail
        self.requests = []

    def _post(self, path, data):
        self.requests.append({"path": path, **data})
        if self.fail:
            return FakeResponse(500, {"status": "error", "message": "upstream down"})
        return FakeResponse(200, {"status": "submitted", "messageId": f"gs-{len(self.requests)}"})

    @property
    def texts(self):
        return [json.loads(r["message"])["text"] for r in self.requests if "message" in r]

    @property
    def destinations(self):
        return [r["destination"] for r in self.requests]


class StubProvider:
    def __init__(self, name, analysis=None, error=None, configured=True):
        self.name = name
        self.analysis = analysis
        self.error = error
        self.configured = configured
        self.calls = []

    def analyze(self, image_url):
        self.calls.append(image_url)
        if self.error:
            raise AnalysisFailed(self.error)
        return self.analysis


@pytest.fixture(autouse=True)
def fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway():
    return RecordingGateway()


@pytest.fixture
def failing_gateway():
    return RecordingGateway(fail=True)


@pytest.fixture
def vision_providers():
    return [
        StubProvider(
            "openrouter",
            VehicleAnalysis(vehicle_type="SUV", make="Honda", color="white", license_plate="WXY 1234",
                            confidence_score=0.9),
        )
    ]


@pytest.fixture
def client(gateway, vision_providers):
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_vision_providers] = lambda: vision_providers
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def make_user(db, role="staff", email=None, **kw):
    u = User(
        email=email or f"{role}@ax.my",
        password_hash=hash_password("pw-123456"),
        role=role,
        **kw,
    )
    db.add(u)
    db.commit()
    db.refresh(u)
    return u


def make_order(db, code=ORDER_CODE, stage="empty", **kw):
    order = Order(order_id=code, order_stage=stage, **kw)
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def make_linked_order(db, code=ORDER_CODE, stage="initiated", number=CUSTOMER_NUMBER, **kw):
    customer = make_user(
        db, role="customer", email=f"{number}@ft.tc", whatsapp_number=number, first_name="Ali"
    )
    order = make_order(
        db, code, stage,
        whatsapp_linked=True, whatsapp_number=number, customer_id=customer.id, **kw
    )
    return order, customer


def auth(user):
    return {"Authorization": f"Bearer {create_token(user.id)}"}


@pytest.fixture
def staff(db):
    return make_user(db, "staff")


@pytest.fixture
def staff_headers(staff):
    return auth(staff)


@pytest.fixture
def admin_headers(db):
    return auth(make_user(db, "admin"))
