"""Payment links and PayFast checkout forms."""

from __future__ import annotations

import logging
from typing import Optional

from config_models import PayFastConfig
from errors import ValidationError
from extensions import db
from models import PaymentLink, Quote, SubscriptionPlan
from services.audit import log_action
from services.payfast import SUBSCRIPTION_PREFIX, PayFastGateway
from services.tenant import tenant_get
from utils import utc_now

logger = logging.getLogger(__name__)

_PAYABLE_QUOTE_STATUSES = ("sent", "accepted")


def create_payment_link(
    tenant_id: int,
    quote_id: int,
    *,
    description: Optional[str] = None,
    customer_email: Optional[str] = None,
) -> PaymentLink:
    """Create a pending link for paying *quote_id* in full."""
    quote = tenant_get(Quote, tenant_id, quote_id)
    if quote.status not in _PAYABLE_QUOTE_STATUSES:
        raise ValidationError(
            f"Quote {quote.quote_number} is {quote.status} and cannot be paid",
            {"quote_id": "quote must be sent or accepted"},
        )
    if quote.total <= 0:
        raise ValidationError("Quote total must be positive", {"quote_id": "nothing to pay"})

    if customer_email is None and quote.deal and quote.deal.contact:
        customer_email = quote.deal.contact.email
    link = PaymentLink(
        tenant_id=tenant_id,
        quote_id=quote.id,
        amount=quote.total,
        currency=quote.currency,
        description=description or f"Quote {quote.quote_number}",
        customer_email=customer_email,
        status="pending",
    )
    db.session.add(link)
    db.session.flush()

    log_action(tenant_id, "payment_link_created", "payment_link", link.id, quote.quote_number)
    logger.info("Payment link %s created for quote %s", link.id, quote.quote_number)
    return link


def build_checkout(link: PaymentLink, cfg: PayFastConfig) -> dict:
    """Signed PayFast form for a pending payment link."""
    if link.status != "pending":
        raise ValidationError(f"Payment link {link.id} is {link.status}")
    gateway = PayFastGateway.for_tenant(link.tenant_id)
    return gateway.checkout_fields(
        cfg,
        m_payment_id=str(link.id),
        amount=link.amount,
        item_name=link.description or f"Payment {link.id}",
        currency=link.currency,
        email=link.customer_email,
    )


def subscription_checkout(
    tenant_id: int,
    plan_id: int,
    cfg: PayFastConfig,
    email: Optional[str] = None,
) -> dict:
    """Signed PayFast form for subscribing to a recurring plan."""
    plan = tenant_get(SubscriptionPlan, tenant_id, plan_id)
    if not plan.is_active:
        raise ValidationError(f"Plan {plan.name} is not available")
    nonce = int(utc_now().timestamp())
    gateway = PayFastGateway.for_tenant(tenant_id)
    return gateway.checkout_fields(
        cfg,
        m_payment_id=f"{SUBSCRIPTION_PREFIX}{plan.id}_{nonce}",
        amount=plan.price,
        item_name=plan.name,
        currency=plan.currency,
        email=email,
        subscription_frequency=plan.interval,
    )
