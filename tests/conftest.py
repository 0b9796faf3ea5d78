import os

# must be set before app.config is imported anywhere
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["SIMULATOR_MIN_LATENCY_MS"] = "1"
os.environ["SIMULATOR_MAX_LATENCY_MS"] = "5"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, select

from app.config import Settings
from app.database import build_engine, create_db_and_tables, get_engine
from app.schemas.orders_schemas import CartData, PaymentMethodIn
from app.services.order_payment_coordinator import OrderPaymentCoordinator
from app.services.order_store import OrderStore
from app.services.payment_store import PaymentStore
from app.utils.token import create_access_token

CUSTOMER_ID = "user-123"
OTHER_CUSTOMER_ID = "user-456"
MERCHANT_ID = "merchant-1"


@pytest.fixture()
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'orders.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def order_store(engine):
    return OrderStore(engine)


@pytest.fixture()
def payment_store(engine):
    return PaymentStore(engine)


@pytest.fixture()
def test_settings():
    return Settings(
        env="test",
        simulator_min_latency_ms=1,
        simulator_max_latency_ms=5,
        gateway_timeout_seconds=5.0,
    )


@pytest.fixture()
def scheduled():
    """Notifications run inline so tests can see them."""
    calls = []

    def schedule(fn, **kwargs):
        calls.append(kwargs["event"])
        fn(**kwargs)

    schedule.calls = calls
    return schedule


@pytest.fixture()
def make_coordinator(order_store, payment_store, test_settings, scheduled):
    def factory(gateway=None, settings=None, schedule=None):
        return OrderPaymentCoordinator(
            order_store,
            payment_store,
            settings=settings or test_settings,
            gateway_factory=(lambda target: gateway) if gateway else None,
            schedule=schedule or scheduled,
        )

    return factory


@pytest.fixture()
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture()
def cart_data():
    """Two pizzas at 12.99 delivered in the US: totals to 32.10."""
    return CartData.model_validate(
        {
            "merchantId": MERCHANT_ID,
            "cartId": "cart-1",
            "items": [
                {
                    "menuItemId": "pizza-margherita",
                    "name": "Margherita",
                    "price": "12.99",
                    "quantity": 2,
                    "customizations": {"crust": "thin", "extras": ["basil"]},
                    "specialInstructions": "Cut in squares",
                }
            ],
            "subtotal": "25.98",
            "taxAmount": "2.08",
            "deliveryFee": "2.99",
            "discountAmount": "0",
            "deliveryAddress": {
                "street": "1 Main St",
                "city": "Austin",
                "state": "TX",
                "postalCode": "78701",
                "latitude": 30.2672,
                "longitude": -97.7431,
            },
            "customerName": "Ada Lovelace",
            "customerEmail": "ada@example.com",
            "merchantName": "Pizza Place",
            "countryCode": "us",
        }
    )


def card(last_four="4242"):
    return PaymentMethodIn(type="card", fingerprint=f"fp_test_{last_four}", brand="visa")


@pytest.fixture()
def card_method():
    return card()


@pytest.fixture()
def paid_order(coordinator, cart_data, card_method):
    return coordinator.create_order_with_payment(cart_data, card_method, CUSTOMER_ID).order


def count_rows(engine, model):
    with Session(engine) as session:
        return len(session.exec(select(model)).all())


def auth_headers(user_id=CUSTOMER_ID, role="customer"):
    token = create_access_token({"sub": user_id, "email": f"{user_id}@example.com", "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def client(engine):
    from app.main import app

    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def order_payload():
    return {
        "cartData": {
            "merchantId": MERCHANT_ID,
            "items": [{"menuItemId": "pizza-margherita", "name": "Margherita", "price": 12.99, "quantity": 2}],
            "subtotal": 25.98,
            "taxAmount": 2.08,
            "deliveryFee": 2.99,
            "deliveryAddress": {"street": "1 Main St", "city": "Austin", "postalCode": "78701"},
            "countryCode": "US",
        },
        "paymentMethod": {"type": "card", "fingerprint": "fp_test_4242", "brand": "visa"},
    }


def amount(value):
    return Decimal(str(value))
