import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import token_for
from main import app
from schemas import CartItem, ShippingAddress
from services import Services, get_services
from users import to_principal


class FakeProcessor:
    """In-memory stand-in for Stripe hosted checkout."""

    def __init__(self):
        self.configured = True
        self.sessions = {}
        self.created = []

    def create_checkout_session(self, line_items, success_url, cancel_url, metadata, customer_email=None):
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions[session_id] = {
            "id": session_id,
            "payment_status": "unpaid",
            "order_data": metadata["order_data"],
            "customer_email": customer_email,
            "customer_name": None,
        }
        self.created.append({
            "line_items": line_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        })
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def retrieve_session(self, session_id):
        session = self.sessions.get(session_id)
        return dict(session) if session else None

    def pay(self, session_id):
        self.sessions[session_id]["payment_status"] = "paid"


class FakeMailer:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, to, subject, body, attachments=None):
        if self.fail:
            raise ConnectionRefusedError("smtp down")
        self.sent.append({"to": to, "subject": subject, "body": body, "attachments": attachments or []})


class FakeRenderer:
    def render(self, order, customer):
        return b"%PDF-1.4 receipt"


class FakeFilter:
    def clean(self, text):
        return text.replace("darn", "****")


@pytest.fixture
def database():
    return mongomock.MongoClient().db


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def services(database, processor, mailer):
    return Services(database, processor=processor, mailer=mailer, renderer=FakeRenderer(),
                    comment_filter=FakeFilter())


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def address():
    return ShippingAddress(street="1 Track Lane", city="Portland", state="OR", zip_code="97201", country="US")


@pytest.fixture
def make_user(services):
    counter = {"n": 0}

    def _make(is_admin=False, name=None):
        counter["n"] += 1
        n = counter["n"]
        user = services.users.signup(name or f"Runner {n}", f"runner{n}@example.com", "secret123")
        if is_admin:
            user = services.users.update(user["_id"], {"is_admin": True})
        return to_principal(user)

    return _make


@pytest.fixture
def make_product(services, make_user):
    owner = make_user(name="Shop Owner")

    def _make(price=10.0, stock=10, name="Trail Runner", **extra):
        data = {"name": name, "description": "Lightweight shoe", "category": "Shoes",
                "price": price, "stock": stock, **extra}
        return services.catalog.create(owner, data)

    _make.owner = owner
    return _make


@pytest.fixture
def auth_header(services):
    def _header(principal):
        return {"Authorization": f"Bearer {token_for(services.users.get(principal.id))}"}

    return _header


def cart(*pairs):
    return [CartItem(product_id=str(product["_id"]), quantity=qty) for product, qty in pairs]


def stock_of(services, product):
    return services.catalog.get(product["_id"])["stock"]
