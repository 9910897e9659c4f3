"""Transaction ledger for provider payment notifications.

``(payment_provider, provider_event_id)`` is unique at the storage layer.
Recording must be the first write of its unit of work: a lost insert race
rolls the session back before the winning row is re-read.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import Transaction
from services.payfast import PROVIDER, PaymentEvent

logger = logging.getLogger(__name__)


def find_transaction(provider: str, external_id: str) -> Optional[Transaction]:
    return Transaction.query.filter_by(
        payment_provider=provider, provider_event_id=external_id
    ).first()


def record_if_new(
    tenant_id: int,
    event: PaymentEvent,
    *,
    provider: str = PROVIDER,
    payment_link_id: Optional[int] = None,
) -> tuple[Transaction, bool]:
    """Append *event* to the ledger unless it was already recorded.

    Returns ``(transaction, is_new)``.  When ``is_new`` is False the
    returned row is the earlier one and callers must not apply any further
    effects.
    """
    existing = find_transaction(provider, event.external_payment_id)
    if existing is not None:
        _log_duplicate(tenant_id, provider, event, existing)
        return existing, False

    txn = Transaction(
        tenant_id=tenant_id,
        payment_provider=provider,
        provider_event_id=event.external_payment_id,
        amount=event.amount,
        currency=event.currency,
        status=event.status,
        event_type=event.event_type,
        raw_payload=event.raw,
        payment_link_id=payment_link_id,
    )
    db.session.add(txn)
    try:
        db.session.flush()
    except IntegrityError:
        # Another delivery of the same event committed first
        db.session.rollback()
        existing = find_transaction(provider, event.external_payment_id)
        if existing is None:
            raise
        _log_duplicate(tenant_id, provider, event, existing)
        return existing, False

    logger.info(
        "Recorded %s transaction %s for tenant %s (%s, %s %s)",
        provider, event.external_payment_id, tenant_id,
        event.status, event.amount, event.currency,
    )
    return txn, True


def attach(
    txn: Transaction,
    *,
    order_id: Optional[int] = None,
    subscription_id: Optional[int] = None,
) -> Transaction:
    """Backfill the aggregate a transaction resolved to.

    Only the link columns change; the financial fields never do.
    """
    if order_id is not None:
        txn.order_id = order_id
    if subscription_id is not None:
        txn.subscription_id = subscription_id
    db.session.flush()
    return txn


def _log_duplicate(tenant_id, provider, event, existing) -> None:
    logger.info(
        "Duplicate %s event %s for tenant %s (%s) already recorded as transaction %s",
        provider, event.external_payment_id, tenant_id,
        event.subject.kind, existing.id,
    )
