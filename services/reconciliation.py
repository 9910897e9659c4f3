"""Webhook reconciliation: turns one provider notification into state changes.

Each notification is processed as a single unit of work.  The ledger insert
gates every business effect, so redeliveries are acknowledged without
touching links, orders, quotes or subscriptions a second time.
"""

from __future__ import annotations

import datetime
import logging
from dataclasses import dataclass
from typing import Callable

from errors import (
    AuthenticationError,
    CommerceError,
    DuplicateEventError,
    NotFoundError,
    ValidationError,
)
from extensions import db
from models import PaymentLink, SubscriptionPlan, Transaction
from services import ledger, orders, subscriptions
from services.audit import log_action
from services.payfast import (
    PROVIDER,
    LinkSubject,
    PayFastGateway,
    PaymentEvent,
    parse_subject,
)
from services.quotes import apply_acceptance
from utils import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Acknowledgment:
    status: str
    message: str
    http_status: int = 200

    def to_dict(self) -> dict:
        return {"status": self.status, "message": self.message}


_WEBHOOK_STATUS = {
    ValidationError: 400,
    AuthenticationError: 400,
    NotFoundError: 404,
}


def _http_status_for(exc: CommerceError) -> int:
    for error_cls, status in _WEBHOOK_STATUS.items():
        if isinstance(exc, error_cls):
            return status
    return 500


class ReconciliationService:
    """Processes PayFast ITN payloads."""

    def __init__(self, clock: Callable[[], datetime.datetime] = utc_now):
        self.clock = clock

    def handle(self, payload: dict) -> Acknowledgment:
        payment_id = payload.get("m_payment_id")
        try:
            ack = self._process(payload)
            db.session.commit()
            return ack
        except DuplicateEventError:
            db.session.rollback()
            return Acknowledgment("duplicate", "Payment already processed")
        except CommerceError as exc:
            db.session.rollback()
            status = _http_status_for(exc)
            log = logger.error if status >= 500 else logger.warning
            log("Rejected %s notification %s: %s", PROVIDER, payment_id, exc.message)
            return Acknowledgment("error", exc.message, status)
        except Exception:
            db.session.rollback()
            logger.exception("Failed to process %s notification %s", PROVIDER, payment_id)
            return Acknowledgment("error", "Processing failed", 500)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _process(self, payload: dict) -> Acknowledgment:
        subject = parse_subject(payload.get("m_payment_id"))

        link = plan = None
        if isinstance(subject, LinkSubject):
            link = db.session.get(PaymentLink, subject.link_id)
            if link is None:
                raise NotFoundError(f"Payment link {subject.link_id} not found")
            tenant_id = link.tenant_id
        else:
            plan = db.session.get(SubscriptionPlan, subject.plan_id)
            if plan is None:
                raise NotFoundError(f"Subscription plan {subject.plan_id} not found")
            tenant_id = plan.tenant_id

        event = PayFastGateway.for_tenant(tenant_id).verify(payload)
        logger.info(
            "Verified %s %s payment %s for tenant %s (%s)",
            PROVIDER, subject.kind, event.external_payment_id, tenant_id, event.status_raw,
        )

        txn, is_new = ledger.record_if_new(
            tenant_id, event, payment_link_id=link.id if link else None
        )
        if not is_new:
            raise DuplicateEventError(PROVIDER, event.external_payment_id)

        now = self.clock()
        if link is not None:
            return self._reconcile_link(tenant_id, link, txn, event, now)
        return self._reconcile_subscription(tenant_id, plan, txn, event, now)

    def _reconcile_link(
        self,
        tenant_id: int,
        link: PaymentLink,
        txn: Transaction,
        event: PaymentEvent,
        now: datetime.datetime,
    ) -> Acknowledgment:
        if event.amount != link.amount:
            logger.warning(
                "Payment %s amount %s differs from link %s amount %s",
                event.external_payment_id, event.amount, link.id, link.amount,
            )
        quote = link.quote
        order = None

        if event.succeeded:
            link.status = "completed"
            link.completed_at = now
            if quote is not None:
                if quote.status == "sent":
                    apply_acceptance(quote, now)
                elif quote.status != "accepted":
                    logger.warning(
                        "Quote %s is %s; payment %s recorded without accepting it",
                        quote.quote_number, quote.status, event.external_payment_id,
                    )
                order = orders.sync_from_quote(quote)
                orders.update_status(
                    order,
                    "paid",
                    payment_method=PROVIDER,
                    payment_reference=event.external_payment_id,
                    payment_status="paid",
                    paid_at=now,
                )
                orders.issue_invoice(order, paid_at=now)
            log_action(
                tenant_id, "payment_completed", "payment_link", link.id,
                event.external_payment_id,
            )
        elif link.status == "completed":
            # A failure that arrives after a completed payment must not undo it
            logger.warning(
                "Ignoring failed payment %s for already completed link %s",
                event.external_payment_id, link.id,
            )
            order = link.order
        else:
            link.status = "cancelled"
            if quote is not None:
                order = orders.sync_from_quote(quote)
                orders.update_status(
                    order,
                    "failed",
                    payment_method=PROVIDER,
                    payment_reference=event.external_payment_id,
                    payment_status="failed",
                )
            log_action(
                tenant_id, "payment_failed", "payment_link", link.id,
                event.external_payment_id,
            )

        if order is not None:
            link.order_id = order.id
            ledger.attach(txn, order_id=order.id)
        db.session.flush()
        return Acknowledgment("success", "ITN processed successfully")

    def _reconcile_subscription(
        self,
        tenant_id: int,
        plan: SubscriptionPlan,
        txn: Transaction,
        event: PaymentEvent,
        now: datetime.datetime,
    ) -> Acknowledgment:
        if event.succeeded:
            subscription, _created = subscriptions.find_or_create(
                tenant_id, plan, event.customer_email, event.external_payment_id, now
            )
            subscriptions.advance(subscription, plan, now)
            subscriptions.issue_invoice(subscription, txn, event, now)
            ledger.attach(txn, subscription_id=subscription.id)
            log_action(
                tenant_id, "subscription_payment_completed", "subscription",
                subscription.id, event.external_payment_id,
            )
            return Acknowledgment("success", "Subscription payment processed successfully")

        key = subscriptions.CorrelationKey(
            tenant_id, plan.id, event.external_payment_id, event.customer_email
        )
        subscription = subscriptions.find_existing(key)
        if subscription is None:
            logger.warning(
                "No subscription found for failed payment %s (tenant %s, plan %s); "
                "nothing marked past_due",
                event.external_payment_id, tenant_id, plan.id,
            )
        else:
            subscriptions.mark_past_due(subscription)
            ledger.attach(txn, subscription_id=subscription.id)
            log_action(
                tenant_id, "subscription_payment_failed", "subscription",
                subscription.id, event.external_payment_id,
            )
        return Acknowledgment("failed", "Subscription payment failed")
