from decimal import Decimal

import pytest
from sqlmodel import Session

from order_engine.catalog import SqlCatalog
from order_engine.context import EngineContext
from order_engine.db import build_engine, create_db_and_tables
from order_engine.kitchen import KitchenService
from order_engine.lifecycle import OrderService
from order_engine.models import (
    DiningTable,
    OrderCreate,
    OrderType,
    Product,
    StaffRole,
    TableSession,
    TableStatus,
)
from order_engine.pricing import PricingService
from order_engine.security import StaffIdentity
from order_engine.settings import Settings
from order_engine.settlement import SettlementService

OWNER_PIN = "1111"
MANAGER_PIN = "2222"
CASHIER_PIN = "3333"


class RecordingBroadcaster:
    def __init__(self):
        self.messages = []

    def publish(self, room, event, payload):
        self.messages.append((room, event, payload))

    def events(self, room=None):
        return [event.value for r, event, _ in self.messages if room is None or r == room]

    def payloads(self, event_name):
        return [payload for _, event, payload in self.messages if event.value == event_name]


class RecordingAuditLogger:
    def __init__(self):
        self.entries = []

    def log_audit(self, event):
        self.entries.append(event)

    def actions(self):
        return [entry.action for entry in self.entries]


class RecordingAlerts:
    def __init__(self):
        self.calls = []
        self.closed = False

    def discount_alert(self, **kwargs):
        self.calls.append(kwargs)

    def close(self):
        self.closed = True


class DictPinVerifier:
    """PIN -> (identity, role)."""

    def __init__(self, pins):
        self.pins = pins

    def verify_pin(self, pin, allowed_roles):
        entry = self.pins.get(pin)
        if entry is None or entry[1] not in allowed_roles:
            return None
        return entry[0]


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'pos.db'}")
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def audit_log():
    return RecordingAuditLogger()


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def pins():
    return DictPinVerifier({
        OWNER_PIN: (StaffIdentity(id=1, name="Olivia Owner"), StaffRole.owner),
        MANAGER_PIN: (StaffIdentity(id=2, name="Max Manager"), StaffRole.manager),
        CASHIER_PIN: (StaffIdentity(id=3, name="Cam Cashier"), StaffRole.cashier),
    })


@pytest.fixture
def test_settings():
    return Settings(_env_file=None)


@pytest.fixture
def ctx(engine, broadcaster, audit_log, alerts, pins, test_settings):
    return EngineContext(
        engine=engine,
        broadcaster=broadcaster,
        audit_logger=audit_log,
        pin_verifier=pins,
        catalog=SqlCatalog(engine),
        alerts=alerts,
        settings=test_settings,
    )


@pytest.fixture
def orders(ctx):
    return OrderService(ctx)


@pytest.fixture
def pricing(ctx):
    return PricingService(ctx)


@pytest.fixture
def settlement(ctx):
    return SettlementService(ctx)


@pytest.fixture
def kitchen(ctx):
    return KitchenService(ctx)


@pytest.fixture
def cashier():
    return StaffIdentity(id=3, name="Cam Cashier")


@pytest.fixture
def seed(engine):
    """Insert rows and hand them back with their ids."""

    def _seed(*rows):
        with Session(engine, expire_on_commit=False) as session:
            session.add_all(rows)
            session.commit()
            for row in rows:
                session.refresh(row)
        return rows[0] if len(rows) == 1 else rows

    return _seed


@pytest.fixture
def load(engine):
    """Fresh read of a row by primary key."""

    def _load(model, pk):
        with Session(engine) as session:
            return session.get(model, pk)

    return _load


@pytest.fixture
def table(seed):
    return seed(DiningTable(name="T1", status=TableStatus.occupied))


@pytest.fixture
def table_session(seed, table):
    return seed(TableSession(table_id=table.id))


@pytest.fixture
def products(seed):
    rows = seed(
        Product(name="Pho Bo", price=Decimal("1000")),
        Product(name="Banh Xeo", price=Decimal("2000")),
        Product(name="Lau Thai", price=Decimal("3000")),
        Product(name="Iced Tea", price=Decimal("150"), display_in_kitchen=False),
        Product(name="Crab Special", price=Decimal("5000"), is_available=False),
    )
    return {row.name: row for row in rows}


@pytest.fixture
def new_order(orders):
    def _new_order(**kwargs):
        kwargs.setdefault("order_type", OrderType.takeaway)
        return orders.create_order(OrderCreate(**kwargs))

    return _new_order


@pytest.fixture
def add_product(orders):
    def _add_product(order_id, product, quantity=1, note=None):
        return orders.add_item(order_id, {"product_id": product.id, "quantity": quantity, "note": note})

    return _add_product
