import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import src.models  # noqa: F401
from src.config import settings
from src.database import Base, get_db
from src.exceptions import GatewayError, NotFoundError
from src.main import app
from src.payments.gateway import get_gateway, map_gateway_status
from src.payments.schemas import GatewayInitiation, GatewayLookup

RETURN_URL = "http://localhost:8081/(tabs)/lists"


class FakeGateway:
    """Deterministic stand-in for the payment provider"""

    def __init__(self):
        self.statuses = {}
        self.metadata = {}
        self.initiated = []
        self.verify_calls = []
        self.fail_initiate = False
        self.fail_verify = False
        self._counter = 0

    def initiate(self, amount_minor, return_url, order_ref, order_name):
        if self.fail_initiate:
            raise GatewayError("gateway unavailable")
        self._counter += 1
        transaction_id = f"tx{self._counter}"
        self.initiated.append({
            "transaction_id": transaction_id,
            "amount_minor": amount_minor,
            "return_url": return_url,
            "order_ref": order_ref,
            "order_name": order_name,
        })
        self.statuses[transaction_id] = ("Initiated", amount_minor)
        return GatewayInitiation(payment_url=f"https://pay.example.test/{transaction_id}", transaction_id=transaction_id)

    def set_status(self, transaction_id, raw_status, amount_minor=None, metadata=None):
        if amount_minor is None:
            amount_minor = self.statuses.get(transaction_id, (None, 0))[1]
        self.statuses[transaction_id] = (raw_status, amount_minor)
        if metadata is not None:
            self.metadata[transaction_id] = metadata

    def complete(self, transaction_id, amount_minor=None):
        self.set_status(transaction_id, "Completed", amount_minor)

    def verify(self, transaction_id):
        self.verify_calls.append(transaction_id)
        if self.fail_verify:
            raise GatewayError("gateway timed out")
        if transaction_id not in self.statuses:
            raise NotFoundError(f"Transaction {transaction_id} is unknown to the gateway")
        raw_status, amount_minor = self.statuses[transaction_id]
        return GatewayLookup(
            transaction_id=transaction_id,
            status=map_gateway_status(raw_status),
            raw_status=raw_status,
            amount_minor=amount_minor,
            metadata=self.metadata.get(transaction_id, {}),
        )


def reservation_details(**overrides):
    details = {
        "from": "Kathmandu",
        "to": "Pokhara",
        "bus_number_plate": "BA 2 KHA 1234",
        "departure_time": "2026-10-20T07:30:00",
        "estimated_time": "6h 30m",
        "total_price": "500",
        "passengers": ["Sita Sharma", "Ram Thapa"],
    }
    details.update(overrides)
    return details


def make_token(user_id, role="RIDER"):
    return jwt.encode({"sub": user_id, "role": role}, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(session_factory, gateway):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def rider_headers():
    return {"Authorization": f"Bearer {make_token('rider-1')}"}


@pytest.fixture
def other_rider_headers():
    return {"Authorization": f"Bearer {make_token('rider-2')}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {make_token('operator-1', role='ADMIN')}"}
