"""Recurring plan subscriptions: correlation, period rollover and invoices."""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import func

from extensions import db
from models import Subscription, SubscriptionInvoice, SubscriptionPlan, Transaction
from services.calculator import to_minor_units
from services.payfast import PROVIDER, PaymentEvent
from utils import as_utc

logger = logging.getLogger(__name__)

INTERVALS = {
    "weekly": relativedelta(weeks=1),
    "monthly": relativedelta(months=1),
    "yearly": relativedelta(years=1),
}


def interval_delta(interval: Optional[str]) -> relativedelta:
    """Return the period length for *interval*, monthly when unrecognised."""
    delta = INTERVALS.get((interval or "").lower())
    if delta is None:
        logger.warning("Unknown plan interval %r, using monthly", interval)
        return INTERVALS["monthly"]
    return delta


# ---------------------------------------------------------------------------
# Periods & invoices
# ---------------------------------------------------------------------------


def advance(
    subscription: Subscription,
    plan: SubscriptionPlan,
    paid_at: datetime.datetime,
) -> Subscription:
    """Start a new period at *paid_at*.

    The period end is always ``paid_at + interval``; a late payment moves
    the whole period instead of extending the old one.
    """
    paid_at = as_utc(paid_at)
    subscription.status = "active"
    subscription.current_period_start = paid_at
    subscription.current_period_end = paid_at + interval_delta(plan.interval)
    db.session.flush()
    logger.info(
        "Subscription %s advanced to %s - %s",
        subscription.id, subscription.current_period_start, subscription.current_period_end,
    )
    return subscription


def issue_invoice(
    subscription: Subscription,
    txn: Transaction,
    event: PaymentEvent,
    paid_at: datetime.datetime,
) -> SubscriptionInvoice:
    """Record the paid invoice for one recurring payment."""
    invoice = SubscriptionInvoice(
        tenant_id=subscription.tenant_id,
        subscription_id=subscription.id,
        transaction_id=txn.id,
        provider_invoice_id=f"{PROVIDER}_{event.external_payment_id}",
        amount_cents=to_minor_units(event.amount),
        currency=event.currency,
        status="paid",
        period_start=subscription.current_period_start,
        period_end=subscription.current_period_end,
        paid_at=as_utc(paid_at),
        raw_payload=event.raw,
    )
    db.session.add(invoice)
    db.session.flush()
    return invoice


def mark_past_due(subscription: Subscription) -> Subscription:
    """Flag a failed renewal.  Period fields are left untouched."""
    subscription.status = "past_due"
    db.session.flush()
    logger.info("Subscription %s marked past_due", subscription.id)
    return subscription


# ---------------------------------------------------------------------------
# Correlation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CorrelationKey:
    tenant_id: int
    plan_id: int
    external_payment_id: Optional[str]
    customer_email: Optional[str]


def _first_unambiguous(query, strategy: str, key: CorrelationKey) -> Optional[Subscription]:
    matches = query.order_by(Subscription.id).limit(2).all()
    if len(matches) > 1:
        logger.warning(
            "Ambiguous %s match for tenant %s plan %s, using subscription %s",
            strategy, key.tenant_id, key.plan_id, matches[0].id,
        )
    return matches[0] if matches else None


def _scoped(key: CorrelationKey):
    return Subscription.query.filter_by(tenant_id=key.tenant_id, plan_id=key.plan_id)


def by_provider_payment_id(key: CorrelationKey) -> Optional[Subscription]:
    if not key.external_payment_id:
        return None
    query = _scoped(key).filter(Subscription.provider_payment_id == key.external_payment_id)
    return _first_unambiguous(query, "provider payment id", key)


def by_customer_email(key: CorrelationKey) -> Optional[Subscription]:
    if not key.customer_email:
        return None
    query = _scoped(key).filter(
        func.lower(Subscription.customer_email) == key.customer_email.lower()
    )
    return _first_unambiguous(query, "customer email", key)


CORRELATION_STRATEGIES: tuple[Callable[[CorrelationKey], Optional[Subscription]], ...] = (
    by_provider_payment_id,
    by_customer_email,
)


def find_existing(key: CorrelationKey) -> Optional[Subscription]:
    """Try each correlation strategy in priority order."""
    for strategy in CORRELATION_STRATEGIES:
        match = strategy(key)
        if match is not None:
            logger.info(
                "Payment %s correlated to subscription %s via %s",
                key.external_payment_id, match.id, strategy.__name__,
            )
            return match
    return None


def find_or_create(
    tenant_id: int,
    plan: SubscriptionPlan,
    customer_email: Optional[str],
    external_payment_id: str,
    now: datetime.datetime,
) -> tuple[Subscription, bool]:
    """Return the subscription a payment belongs to, creating it if needed."""
    key = CorrelationKey(tenant_id, plan.id, external_payment_id, customer_email)
    subscription = find_existing(key)
    if subscription is not None:
        subscription.provider_payment_id = external_payment_id
        if customer_email and not subscription.customer_email:
            subscription.customer_email = customer_email
        db.session.flush()
        return subscription, False

    now = as_utc(now)
    subscription = Subscription(
        tenant_id=tenant_id,
        plan_id=plan.id,
        status="active",
        current_period_start=now,
        current_period_end=now + interval_delta(plan.interval),
        provider_payment_id=external_payment_id,
        customer_email=customer_email,
    )
    db.session.add(subscription)
    db.session.flush()
    logger.info(
        "Created subscription %s for tenant %s plan %s (%s)",
        subscription.id, tenant_id, plan.id, customer_email or "no email",
    )
    return subscription, True
