"""Shared fixtures for the test suite."""

import os
from decimal import Decimal

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["RATELIMIT_ENABLED"] = "false"
os.environ["EMAIL_ENABLED"] = "false"
os.environ["CONFIG_PATH"] = os.path.join(os.path.dirname(__file__), "does-not-exist.yaml")

from app import create_app  # noqa: E402
from extensions import db  # noqa: E402
from models import (  # noqa: E402
    CommerceSetting,
    Contact,
    Deal,
    PaymentLink,
    Product,
    SubscriptionPlan,
    Tenant,
)
from services.payfast import PayFastGateway  # noqa: E402
from services.quotes import create_quote, send_quote  # noqa: E402

MERCHANT_ID = "10000100"
MERCHANT_KEY = "46f0cd694581a"
PASSPHRASE = "jt7NOE43FZPn"
OTHER_PASSPHRASE = "other-tenant-secret"


class FakeRenderer:
    """Stands in for the PDF renderer and counts render calls."""

    def __init__(self):
        self.calls = 0

    def render(self, quote):
        self.calls += 1
        return b"%PDF-1.4 fake", f"quotes/quote-{quote.quote_number}.pdf"

    def read(self, path):
        return b"%PDF-1.4 fake"


def sign(payload: dict, passphrase: str = PASSPHRASE) -> dict:
    """Return *payload* with a PayFast signature added."""
    data = dict(payload)
    data["signature"] = PayFastGateway(0, MERCHANT_ID, MERCHANT_KEY, passphrase).generate_signature(data)
    return data


def item(**overrides) -> dict:
    data = {
        "name": "Consulting",
        "quantity": 2,
        "unit_price": "100.00",
        "discount": "10",
        "tax_rate": "15",
    }
    data.update(overrides)
    return data


@pytest.fixture
def app(tmp_path):
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["WTF_CSRF_ENABLED"] = False
    application.config["APP_CONFIG"].document_dir = str(tmp_path / "documents")
    yield application


@pytest.fixture
def file_app(tmp_path, monkeypatch):
    """Application backed by an SQLite file, for tests that use several connections."""
    monkeypatch.setenv("DATABASE_URI", f"sqlite:///{tmp_path / 'commerce.db'}")
    application = create_app()
    application.config["TESTING"] = True
    application.config["APP_CONFIG"].document_dir = str(tmp_path / "documents")
    yield application
    with application.app_context():
        db.engine.dispose()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


def seed_sample_data(app):
    """Create two tenants with commerce data. Returns dict of IDs."""
    with app.app_context():
        tenant = Tenant(name="Acme Ltd", slug="acme", email="billing@acme.test")
        other = Tenant(name="Globex", slug="globex", email="billing@globex.test")
        db.session.add_all([tenant, other])
        db.session.flush()

        db.session.add_all([
            CommerceSetting(
                tenant_id=tenant.id,
                payfast_merchant_id=MERCHANT_ID,
                payfast_merchant_key=MERCHANT_KEY,
                payfast_passphrase=PASSPHRASE,
                mode="test",
            ),
            CommerceSetting(
                tenant_id=other.id,
                payfast_merchant_id="10000200",
                payfast_merchant_key="b2c3d4e5f6a7b",
                payfast_passphrase=OTHER_PASSPHRASE,
                mode="test",
            ),
        ])

        contact = Contact(
            tenant_id=tenant.id, first_name="Jane", last_name="Buyer", email="jane@client.test"
        )
        db.session.add(contact)
        db.session.flush()

        deal = Deal(tenant_id=tenant.id, contact_id=contact.id, title="Website rebuild")
        other_deal = Deal(tenant_id=other.id, title="Globex deal")
        product = Product(
            tenant_id=tenant.id,
            name="Support hours",
            description="Monthly support block",
            unit_price=Decimal("50.00"),
            tax_rate=Decimal("15.00"),
        )
        plan = SubscriptionPlan(
            tenant_id=tenant.id,
            name="Pro",
            interval="monthly",
            price=Decimal("299.00"),
            currency="ZAR",
        )
        db.session.add_all([deal, other_deal, product, plan])
        db.session.commit()

        return {
            "tenant_id": tenant.id,
            "other_tenant_id": other.id,
            "contact_id": contact.id,
            "deal_id": deal.id,
            "other_deal_id": other_deal.id,
            "product_id": product.id,
            "plan_id": plan.id,
        }


@pytest.fixture
def sample_data(app):
    return seed_sample_data(app)


@pytest.fixture
def sent_quote(app, sample_data):
    """A sent quote for the sample deal (2 x 100.00, 10% off, 15% tax)."""
    with app.app_context():
        quote = create_quote(
            sample_data["tenant_id"],
            {"deal_id": sample_data["deal_id"], "items": [item()], "currency": "ZAR"},
            app.config["APP_CONFIG"],
        )
        send_quote(sample_data["tenant_id"], quote.id, renderer=FakeRenderer())
        db.session.commit()
        return quote.id


@pytest.fixture
def payment_link(app, sample_data, sent_quote):
    """A pending payment link for the sent quote."""
    with app.app_context():
        link = PaymentLink(
            tenant_id=sample_data["tenant_id"],
            quote_id=sent_quote,
            amount=Decimal("207.00"),
            currency="ZAR",
            description="Website rebuild",
            status="pending",
        )
        db.session.add(link)
        db.session.commit()
        return link.id
