"""SQLAlchemy models for the commerce back-office."""

from __future__ import annotations

from sqlalchemy import text

from extensions import db
from utils import utc_now

# ---------------------------------------------------------------------------
# Tenant
# ---------------------------------------------------------------------------

class Tenant(db.Model):
    """A tenant represents an isolated business entity (company/organization)."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    email = db.Column(db.String(120))
    logo_path = db.Column(db.String(255))
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    commerce_setting = db.relationship(
        "CommerceSetting", backref="tenant", uselist=False, cascade="all, delete-orphan"
    )


VALID_GATEWAY_MODES = {"test", "live"}


class CommerceSetting(db.Model):
    """Per-tenant payment gateway credentials."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), unique=True, nullable=False)
    payment_gateway = db.Column(db.String(30), default="payfast")
    payfast_merchant_id = db.Column(db.String(60))
    payfast_merchant_key = db.Column(db.String(60))
    payfast_passphrase = db.Column(db.String(120))
    mode = db.Column(db.String(10), default="test")
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)


# ---------------------------------------------------------------------------
# Contacts & Products
# ---------------------------------------------------------------------------

class Contact(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    first_name = db.Column(db.String(120), nullable=False)
    last_name = db.Column(db.String(120))
    email = db.Column(db.String(120))
    created_at = db.Column(db.DateTime, default=utc_now)

    @property
    def full_name(self):
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class Product(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    unit_price = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(5, 2, asdecimal=True), default=0)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Deals & Quotes
# ---------------------------------------------------------------------------

class Deal(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    contact_id = db.Column(db.Integer, db.ForeignKey("contact.id"))
    title = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(20), default="open")
    closed_date = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    contact = db.relationship("Contact")
    quotes = db.relationship("Quote", backref="deal", order_by="Quote.id")

    def has_accepted_quotes(self, exclude_quote_id=None) -> bool:
        query = Quote.query.filter_by(deal_id=self.id, status="accepted")
        if exclude_quote_id is not None:
            query = query.filter(Quote.id != exclude_quote_id)
        return db.session.query(query.exists()).scalar()


TERMINAL_QUOTE_STATUSES = {"accepted", "rejected"}
VALID_QUOTE_TYPES = {"primary", "follow_up", "amendment", "renewal"}


class Quote(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    deal_id = db.Column(db.Integer, db.ForeignKey("deal.id"), nullable=False)
    quote_number = db.Column(db.String(60), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="draft")
    quote_type = db.Column(db.String(30), nullable=False, default="primary")
    is_primary = db.Column(db.Boolean, nullable=False, default=False)
    currency = db.Column(db.String(3), nullable=False, default="USD")
    subtotal = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    discount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    tax = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    valid_until = db.Column(db.DateTime)
    notes = db.Column(db.Text)
    pdf_path = db.Column(db.String(255))
    sent_at = db.Column(db.DateTime)
    accepted_at = db.Column(db.DateTime)
    rejected_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    items = db.relationship(
        "QuoteItem",
        backref="quote",
        cascade="all, delete-orphan",
        order_by="QuoteItem.sort_order",
    )

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "quote_number", name="uq_quote_number_tenant"),
        db.Index("ix_quote_deal_status", "deal_id", "status"),
        # At most one primary quote per deal
        db.Index(
            "uq_quote_primary_per_deal",
            "deal_id",
            unique=True,
            sqlite_where=text("is_primary = 1"),
            postgresql_where=text("is_primary"),
        ),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_QUOTE_STATUSES

    @property
    def can_be_modified(self) -> bool:
        return not self.is_terminal

    @property
    def can_be_sent(self) -> bool:
        return not self.is_terminal

    @property
    def can_be_accepted(self) -> bool:
        return self.status == "sent"

    @property
    def can_be_rejected(self) -> bool:
        return self.status == "sent"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "deal_id": self.deal_id,
            "quote_number": self.quote_number,
            "status": self.status,
            "quote_type": self.quote_type,
            "is_primary": self.is_primary,
            "currency": self.currency,
            "subtotal": str(self.subtotal),
            "discount": str(self.discount),
            "tax": str(self.tax),
            "total": str(self.total),
            "valid_until": self.valid_until.isoformat() if self.valid_until else None,
            "notes": self.notes,
            "pdf_path": self.pdf_path,
            "items": [item.to_dict() for item in self.items],
        }


class QuoteItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quote.id"), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("product.id"))
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    discount = db.Column(db.Numeric(5, 2, asdecimal=True), nullable=False, default=0)
    tax_rate = db.Column(db.Numeric(5, 2, asdecimal=True), nullable=False, default=0)
    subtotal = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    discount_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    tax_amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    sort_order = db.Column(db.Integer, default=0)

    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_quote_item_quantity"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "name": self.name,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "discount": str(self.discount),
            "tax_rate": str(self.tax_rate),
            "subtotal": str(self.subtotal),
            "discount_amount": str(self.discount_amount),
            "tax_amount": str(self.tax_amount),
            "total": str(self.total),
            "sort_order": self.sort_order,
        }


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

VALID_ORDER_STATUSES = {"pending", "paid", "failed", "cancelled"}


class Order(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    order_number = db.Column(db.String(60), nullable=False)
    quote_id = db.Column(db.Integer, db.ForeignKey("quote.id"))
    deal_id = db.Column(db.Integer, db.ForeignKey("deal.id"))
    status = db.Column(db.String(20), nullable=False, default="pending")
    currency = db.Column(db.String(3), nullable=False, default="USD")
    subtotal = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    discount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    tax = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    payment_method = db.Column(db.String(30))
    payment_status = db.Column(db.String(20), default="unpaid")
    payment_reference = db.Column(db.String(120))
    paid_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    quote = db.relationship("Quote")
    deal = db.relationship("Deal")

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "order_number", name="uq_order_number_tenant"),
        db.UniqueConstraint("tenant_id", "quote_id", name="uq_order_quote_tenant"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "quote_id": self.quote_id,
            "deal_id": self.deal_id,
            "status": self.status,
            "currency": self.currency,
            "subtotal": str(self.subtotal),
            "discount": str(self.discount),
            "tax": str(self.tax),
            "total": str(self.total),
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "payment_reference": self.payment_reference,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "invoice_id": self.invoice.id if self.invoice else None,
        }


class OrderInvoice(db.Model):
    """Invoice issued for a paid order."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False, unique=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quote.id"))
    invoice_number = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="pending")
    currency = db.Column(db.String(3), nullable=False, default="USD")
    subtotal = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    discount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    tax = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    total = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    payment_reference = db.Column(db.String(120))
    issued_at = db.Column(db.DateTime, default=utc_now)
    paid_at = db.Column(db.DateTime)
    pdf_path = db.Column(db.String(255))
    sent_at = db.Column(db.DateTime)

    order = db.relationship("Order", backref=db.backref("invoice", uselist=False))
    items = db.relationship("OrderInvoiceItem", backref="invoice", cascade="all, delete-orphan")

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "invoice_number", name="uq_order_invoice_number_tenant"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "quote_id": self.quote_id,
            "invoice_number": self.invoice_number,
            "status": self.status,
            "currency": self.currency,
            "subtotal": str(self.subtotal),
            "discount": str(self.discount),
            "tax": str(self.tax),
            "total": str(self.total),
            "payment_reference": self.payment_reference,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "pdf_path": self.pdf_path,
            "items": [item.to_dict() for item in self.items],
        }


class OrderInvoiceItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("order_invoice.id"), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    discount = db.Column(db.Numeric(5, 2, asdecimal=True), default=0)
    tax_rate = db.Column(db.Numeric(5, 2, asdecimal=True), default=0)
    total = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "discount": str(self.discount or 0),
            "tax_rate": str(self.tax_rate or 0),
            "total": str(self.total),
        }


# ---------------------------------------------------------------------------
# Payment links & the transaction ledger
# ---------------------------------------------------------------------------

class PaymentLink(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    quote_id = db.Column(db.Integer, db.ForeignKey("quote.id"))
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"))
    amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="ZAR")
    description = db.Column(db.String(255))
    customer_email = db.Column(db.String(120))
    status = db.Column(db.String(20), nullable=False, default="pending")
    completed_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    quote = db.relationship("Quote")
    order = db.relationship("Order")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quote_id": self.quote_id,
            "order_id": self.order_id,
            "amount": str(self.amount),
            "currency": self.currency,
            "description": self.description,
            "status": self.status,
        }


class Transaction(db.Model):
    """Ledger row for one provider payment notification."""
    __tablename__ = "payment_transaction"

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    payment_provider = db.Column(db.String(30), nullable=False)
    provider_event_id = db.Column(db.String(120), nullable=False)
    amount = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(db.String(20), nullable=False)
    event_type = db.Column(db.String(60), nullable=False)
    raw_payload = db.Column(db.JSON)
    payment_link_id = db.Column(db.Integer, db.ForeignKey("payment_link.id"))
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"))
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"))
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.UniqueConstraint(
            "payment_provider", "provider_event_id", name="uq_transaction_provider_event"
        ),
    )


# ---------------------------------------------------------------------------
# Subscription billing
# ---------------------------------------------------------------------------

class SubscriptionPlan(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    interval = db.Column(db.String(20), nullable=False, default="monthly")
    price = db.Column(db.Numeric(12, 2, asdecimal=True), nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False, default="ZAR")
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=utc_now)


class Subscription(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    plan_id = db.Column(db.Integer, db.ForeignKey("subscription_plan.id"), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="active")
    current_period_start = db.Column(db.DateTime)
    current_period_end = db.Column(db.DateTime)
    # Correlation keys for providers without a stable subscription id
    provider_payment_id = db.Column(db.String(120))
    customer_email = db.Column(db.String(120))
    created_at = db.Column(db.DateTime, default=utc_now)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now)

    plan = db.relationship("SubscriptionPlan")
    invoices = db.relationship(
        "SubscriptionInvoice", backref="subscription", order_by="SubscriptionInvoice.id"
    )

    __table_args__ = (
        db.Index("ix_subscription_provider_payment", "tenant_id", "plan_id", "provider_payment_id"),
        db.Index("ix_subscription_customer_email", "tenant_id", "plan_id", "customer_email"),
    )


class SubscriptionInvoice(db.Model):
    """One row per successful recurring payment.  Amounts in minor units."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), nullable=False, index=True)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), nullable=False)
    transaction_id = db.Column(db.Integer, db.ForeignKey("payment_transaction.id"))
    provider_invoice_id = db.Column(db.String(140), unique=True, nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="paid")
    period_start = db.Column(db.DateTime)
    period_end = db.Column(db.DateTime)
    paid_at = db.Column(db.DateTime)
    raw_payload = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=utc_now)


# ---------------------------------------------------------------------------
# Audit & numbering
# ---------------------------------------------------------------------------

class AuditLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    action = db.Column(db.String(80), nullable=False)
    entity_type = db.Column(db.String(80), nullable=False)
    entity_id = db.Column(db.Integer)
    details = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=utc_now)

    __table_args__ = (
        db.Index("ix_audit_log_created_at", "created_at"),
        db.Index("ix_audit_log_entity", "entity_type", "entity_id"),
    )


class NumberingConfig(db.Model):
    """Tag-based numbering pattern per entity type per tenant.

    Pattern example: ``Q[YY][MM]-[CCCC]`` -> ``Q2601-0001``
    Tags: [YYYY] [YY] [MM] [DD] [C+]
    Counter resets when preceding scope-tags change.
    """
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    entity_type = db.Column(db.String(40), nullable=False)
    pattern = db.Column(db.String(120), default="")

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "entity_type", name="uq_numbering_config_tenant"),
    )


class NumberSequence(db.Model):
    """Sequence counters per entity type, scope, and tenant."""
    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, db.ForeignKey("tenant.id"), index=True)
    entity_type = db.Column(db.String(40), nullable=False)
    scope_key = db.Column(db.String(120), default="")
    last_value = db.Column(db.Integer, default=0)

    __table_args__ = (
        db.UniqueConstraint("tenant_id", "entity_type", "scope_key", name="uq_number_sequence"),
    )
