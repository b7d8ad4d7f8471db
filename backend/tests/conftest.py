"""
Pytest fixtures for ticketing backend tests.

Provides test database setup, domain factories (users, event, ticket
type, orders, tickets), fake HTTP collaborators and a test client.
"""

import json
from datetime import timedelta

import httpx
import pytest

from ticketing import create_app
from ticketing.extensions import db
from ticketing.models import User, Event, TicketType, Order, OrderItem, Ticket
from ticketing.services import session_service
from ticketing.services.notification_service import NotificationClient
from ticketing.services.payment_provider import PaymentProviderClient
from ticketing.time_utils import utcnow


TEST_CONFIG = {
    'TESTING': True,
    'SECRET_KEY': 'test',
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'PAYMENT_PROVIDER_BASE_URL': 'https://provider.test',
    'PAYMENT_PROVIDER_ACCESS_TOKEN': 'test-access-token',
    'NOTIFIER_BASE_URL': '',
    'SITE_URL': 'https://tickets.test',
    'TRANSFER_CUTOFF_HOURS': 2,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# DOMAIN FACTORIES
# =============================================================================


def make_user(email, display_name=None, is_staff=False):
    user = User(email=email, display_name=display_name, is_staff=is_staff, is_active=True)
    db.session.add(user)
    db.session.commit()
    return user


def make_order(user, ticket_type, quantity=3, status='pending'):
    order = Order(user_id=user.id, event_id=ticket_type.event_id, status=status)
    if status == 'paid':
        order.paid_at = utcnow()
    db.session.add(order)
    db.session.flush()
    db.session.add(OrderItem(order_id=order.id, ticket_type_id=ticket_type.id, quantity=quantity))
    db.session.commit()
    return order


@pytest.fixture(scope='function')
def buyer(db_session):
    return make_user("buyer@example.com", "Bea Buyer")


@pytest.fixture(scope='function')
def recipient(db_session):
    return make_user("recipient@example.com", "Rio Recipient")


@pytest.fixture(scope='function')
def outsider(db_session):
    return make_user("outsider@example.com")


@pytest.fixture(scope='function')
def staff_user(db_session):
    return make_user("ops@example.com", "Ops", is_staff=True)


@pytest.fixture(scope='function')
def event(db_session):
    ev = Event(title="Night Market Live", starts_at=utcnow() + timedelta(days=7))
    db_session.add(ev)
    db_session.commit()
    return ev


@pytest.fixture(scope='function')
def ticket_type(db_session, event):
    """General admission: capacity 100, 10 already sold."""
    tt = TicketType(event_id=event.id, name="General", capacity=100, quantity_sold=10)
    db_session.add(tt)
    db_session.commit()
    return tt


@pytest.fixture(scope='function')
def pending_order(db_session, buyer, ticket_type):
    """Pending order with one item of quantity 3."""
    return make_order(buyer, ticket_type, quantity=3)


@pytest.fixture(scope='function')
def paid_order(db_session, buyer, ticket_type):
    return make_order(buyer, ticket_type, quantity=3, status='paid')


@pytest.fixture(scope='function')
def ticket(db_session, buyer, paid_order):
    """One issued ticket held by the buyer."""
    item = paid_order.items[0]
    t = Ticket(
        order_item_id=item.id,
        event_id=paid_order.event_id,
        ticket_type_id=item.ticket_type_id,
        user_id=buyer.id,
        ticket_code="TKTTEST00001",
    )
    db_session.add(t)
    db_session.commit()
    return t


# =============================================================================
# FAKE HTTP COLLABORATORS
# =============================================================================


class FakePaymentAPI:
    """In-memory GET /v1/payments/{id} behind httpx.MockTransport."""

    def __init__(self):
        self.payments = {}
        self.fail_with = None
        self.requests = []

    def add(self, payment_id, status, external_reference):
        self.payments[str(payment_id)] = {
            "id": payment_id,
            "status": status,
            "external_reference": external_reference,
        }

    def handler(self, request):
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"message": "unavailable"})
        payment_id = request.url.path.rsplit("/", 1)[-1]
        payment = self.payments.get(payment_id)
        if payment is None:
            return httpx.Response(404, json={"message": "Payment not found"})
        return httpx.Response(200, json=payment)

    def client(self):
        return PaymentProviderClient(
            "https://provider.test",
            "test-access-token",
            transport=httpx.MockTransport(self.handler),
        )


class FakeNotifier:
    """Records email triggers; answers 500 while `failing` is set."""

    def __init__(self):
        self.calls = []
        self.failing = False

    def handler(self, request):
        if self.failing:
            return httpx.Response(500, json={"error": "smtp down"})
        self.calls.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json={"ok": True})

    def client(self):
        return NotificationClient(
            "https://notifier.test",
            "notifier-key",
            transport=httpx.MockTransport(self.handler),
        )

    def paths(self):
        return [path for path, _ in self.calls]


@pytest.fixture(scope='function')
def payment_api(app, monkeypatch):
    api = FakePaymentAPI()
    monkeypatch.setitem(app.extensions, "payment_provider", api.client())
    return api


@pytest.fixture(scope='function')
def notifier(app, monkeypatch):
    fake = FakeNotifier()
    monkeypatch.setitem(app.extensions, "notifier", fake.client())
    return fake


# =============================================================================
# AUTH HELPERS
# =============================================================================


def get_auth_token(user) -> str:
    """Helper to issue a session token for a user."""
    _, token = session_service.create_session(user.id)
    return token


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def buyer_headers(buyer):
    return auth_headers(get_auth_token(buyer))


@pytest.fixture(scope='function')
def recipient_headers(recipient):
    return auth_headers(get_auth_token(recipient))


@pytest.fixture(scope='function')
def outsider_headers(outsider):
    return auth_headers(get_auth_token(outsider))


@pytest.fixture(scope='function')
def staff_headers(staff_user):
    return auth_headers(get_auth_token(staff_user))
