"""Order synchronisation from quotes, order invoicing and invoice delivery."""

from __future__ import annotations

import datetime
import logging
from typing import Optional

from errors import NotFoundError, ValidationError
from extensions import db
from models import VALID_ORDER_STATUSES, Order, OrderInvoice, OrderInvoiceItem, Quote
from services.audit import log_action
from services.calculator import calculate_line
from services.documents import InvoiceDocumentRenderer, get_invoice_renderer
from services.numbering import generate_unique_number
from services.tenant import tenant_get, tenant_query
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)


def sync_from_quote(quote: Quote) -> Order:
    """Create the order for *quote*, or refresh the existing one's totals."""
    tenant_id = quote.tenant_id
    order = tenant_query(Order, tenant_id).filter_by(quote_id=quote.id).first()
    if order is None:
        number = generate_unique_number(
            tenant_id,
            "order",
            lambda candidate: tenant_query(Order, tenant_id)
            .filter_by(order_number=candidate)
            .first()
            is not None,
        )
        order = Order(
            tenant_id=tenant_id,
            order_number=number,
            quote_id=quote.id,
            deal_id=quote.deal_id,
            status="pending",
        )
        db.session.add(order)
        logger.info("Created order %s from quote %s", number, quote.quote_number)

    order.currency = quote.currency
    order.subtotal = quote.subtotal
    order.discount = quote.discount
    order.tax = quote.tax
    order.total = quote.total
    db.session.flush()
    return order


def update_status(
    order: Order,
    status: str,
    *,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
    payment_status: Optional[str] = None,
    paid_at: Optional[datetime.datetime] = None,
) -> Order:
    if status not in VALID_ORDER_STATUSES:
        raise ValidationError(f"Invalid order status: {status}")
    previous = order.status
    order.status = status
    if payment_method is not None:
        order.payment_method = payment_method
    if payment_reference is not None:
        order.payment_reference = payment_reference
    if payment_status is not None:
        order.payment_status = payment_status
    if status == "paid":
        order.paid_at = as_utc(paid_at) if paid_at else utc_now()
    db.session.flush()

    log_action(
        order.tenant_id, "order_status_changed", "order", order.id,
        f"{previous} -> {status}",
    )
    logger.info("Order %s status %s -> %s", order.order_number, previous, status)
    return order


def issue_invoice(order: Order, paid_at: Optional[datetime.datetime] = None) -> OrderInvoice:
    """Issue the invoice for a paid order.  Issuing twice returns the first."""
    existing = OrderInvoice.query.filter_by(order_id=order.id).first()
    if existing is not None:
        return existing

    tenant_id = order.tenant_id
    number = generate_unique_number(
        tenant_id,
        "order_invoice",
        lambda candidate: tenant_query(OrderInvoice, tenant_id)
        .filter_by(invoice_number=candidate)
        .first()
        is not None,
    )
    invoice = OrderInvoice(
        tenant_id=tenant_id,
        order_id=order.id,
        quote_id=order.quote_id,
        invoice_number=number,
        status="paid" if order.status == "paid" else "pending",
        currency=order.currency,
        subtotal=order.subtotal,
        discount=order.discount,
        tax=order.tax,
        total=order.total,
        payment_reference=order.payment_reference,
        paid_at=as_utc(paid_at) if paid_at else order.paid_at,
    )
    quote = order.quote
    for item in quote.items if quote else []:
        line = calculate_line(item.quantity, item.unit_price, item.discount, item.tax_rate)
        invoice.items.append(
            OrderInvoiceItem(
                tenant_id=tenant_id,
                description=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                discount=item.discount,
                tax_rate=item.tax_rate,
                total=line.total,
            )
        )
    db.session.add(invoice)
    db.session.flush()

    log_action(tenant_id, "order_invoice_issued", "order_invoice", invoice.id, number)
    logger.info("Issued invoice %s for order %s", number, order.order_number)
    return invoice


# ---------------------------------------------------------------------------
# Invoice lookup & delivery
# ---------------------------------------------------------------------------


def get_order(tenant_id: int, order_id: int) -> Order:
    return tenant_get(Order, tenant_id, order_id)


def get_invoice(tenant_id: int, invoice_id: int) -> OrderInvoice:
    return tenant_get(OrderInvoice, tenant_id, invoice_id)


def invoice_for_order(tenant_id: int, order_id: int) -> OrderInvoice:
    order = get_order(tenant_id, order_id)
    if order.invoice is None:
        raise NotFoundError(f"Order {order.order_number} has no invoice")
    return order.invoice


def invoice_for_quote(tenant_id: int, quote_id: int) -> OrderInvoice:
    tenant_get(Quote, tenant_id, quote_id)
    invoice = tenant_query(OrderInvoice, tenant_id).filter_by(quote_id=quote_id).first()
    if invoice is None:
        raise NotFoundError(f"Quote {quote_id} has no invoice")
    return invoice


def invoice_document(
    invoice: OrderInvoice, renderer: Optional[InvoiceDocumentRenderer] = None
) -> bytes:
    """Return the invoice PDF, rendering and recording it when not stored yet."""
    renderer = renderer or get_invoice_renderer()
    content = renderer.read(invoice.pdf_path) if invoice.pdf_path else None
    if content is None:
        content, path = renderer.render(invoice)
        invoice.pdf_path = path
        db.session.flush()
    return content


def invoice_recipient(invoice: OrderInvoice, override: Optional[str] = None) -> str:
    """Pick the delivery address: an explicit one, else the deal's contact."""
    if override is not None:
        recipient = override.strip() if isinstance(override, str) else ""
    else:
        deal = invoice.order.deal if invoice.order else None
        contact = deal.contact if deal else None
        recipient = (contact.email or "") if contact else ""
    if not recipient:
        raise ValidationError("No recipient for invoice", {"email": "required"})
    if "@" not in recipient or len(recipient) > 120:
        raise ValidationError("Invalid recipient", {"email": "must be an email address"})
    return recipient


def mark_invoice_sent(invoice: OrderInvoice, recipient: str) -> OrderInvoice:
    invoice.sent_at = utc_now()
    db.session.flush()
    log_action(
        invoice.tenant_id, "order_invoice_sent", "order_invoice", invoice.id,
        f"Invoice sent to {recipient}",
    )
    logger.info("Invoice %s sent to %s", invoice.invoice_number, recipient)
    return invoice
