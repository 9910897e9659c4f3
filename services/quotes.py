"""Quote lifecycle: creation, updates and the draft → sent → accepted/rejected
state machine.

Services flush but never commit; the caller owns the transaction so that
acceptance and its deal update land together.
"""

from __future__ import annotations

import datetime
import logging
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError, OperationalError

from config_models import AppConfig
from errors import PersistenceError, StateTransitionError, ValidationError
from extensions import db
from models import VALID_QUOTE_TYPES, Contact, Deal, Product, Quote, QuoteItem
from services.audit import log_action
from services.calculator import QuoteTotals, calculate_totals
from services.documents import QuoteDocumentRenderer, get_document_renderer
from services.numbering import generate_unique_number
from services.tenant import tenant_get, tenant_query
from utils import as_utc, money, to_decimal, utc_now

logger = logging.getLogger(__name__)

_HUNDRED = Decimal("100")
# Numeric(12, 2) upper bound
_MAX_PRICE = Decimal("10000000000")


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def _parse_quantity(raw) -> Optional[int]:
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    dec = to_decimal(raw)
    if dec is not None and dec == dec.to_integral_value():
        return int(dec)
    return None


def _parse_percent(raw, field: str, errors: dict) -> Decimal:
    if raw is None or raw == "":
        return Decimal("0")
    value = to_decimal(raw)
    if value is None or value < 0 or value > _HUNDRED:
        errors[field] = "must be a number between 0 and 100"
        return Decimal("0")
    if value != money(value):
        errors[field] = "must have at most 2 decimal places"
        return Decimal("0")
    return value


def _validate_items(tenant_id: int, raw_items) -> list[dict]:
    """Normalise raw item payloads, prefilling from the product catalog.

    Prices and percentages must already fit their two-decimal columns, so
    the stored inputs always reproduce the stored totals.
    """
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError("A quote needs at least one item", {"items": "required"})

    errors: dict = {}
    cleaned: list[dict] = []
    for index, raw in enumerate(raw_items):
        prefix = f"items.{index}"
        if not isinstance(raw, dict):
            errors[prefix] = "must be an object"
            continue
        data = dict(raw)

        product_id = data.get("product_id")
        if product_id:
            product = tenant_query(Product, tenant_id).filter_by(
                id=product_id, is_active=True
            ).first()
            if product is None:
                errors[f"{prefix}.product_id"] = "unknown product"
            else:
                if data.get("name") in (None, ""):
                    data["name"] = product.name
                if data.get("description") is None:
                    data["description"] = product.description
                if data.get("unit_price") in (None, ""):
                    data["unit_price"] = product.unit_price
                if data.get("tax_rate") in (None, ""):
                    data["tax_rate"] = product.tax_rate

        name = (data.get("name") or "").strip() if isinstance(data.get("name"), str) else ""
        if not name:
            errors[f"{prefix}.name"] = "required"
        elif len(name) > 255:
            errors[f"{prefix}.name"] = "must be at most 255 characters"

        quantity = _parse_quantity(data.get("quantity", 1))
        if quantity is None or quantity < 1:
            errors[f"{prefix}.quantity"] = "must be an integer of at least 1"

        unit_price = to_decimal(data.get("unit_price"))
        if unit_price is None or unit_price < 0:
            errors[f"{prefix}.unit_price"] = "must be a non-negative number"
        elif unit_price >= _MAX_PRICE:
            errors[f"{prefix}.unit_price"] = "is too large"
        elif unit_price != money(unit_price):
            errors[f"{prefix}.unit_price"] = "must have at most 2 decimal places"

        discount = _parse_percent(data.get("discount"), f"{prefix}.discount", errors)
        tax_rate = _parse_percent(data.get("tax_rate"), f"{prefix}.tax_rate", errors)

        cleaned.append(
            {
                "product_id": product_id or None,
                "name": name,
                "description": data.get("description"),
                "quantity": quantity,
                "unit_price": unit_price,
                "discount": discount,
                "tax_rate": tax_rate,
            }
        )

    if errors:
        raise ValidationError("Invalid quote items", errors)
    return cleaned


def _parse_currency(raw) -> str:
    if not isinstance(raw, str) or len(raw.strip()) != 3 or not raw.strip().isalpha():
        raise ValidationError("Invalid currency", {"currency": "must be a 3-letter code"})
    return raw.strip().upper()


def _parse_valid_until(raw, now: datetime.datetime) -> datetime.datetime:
    if isinstance(raw, datetime.datetime):
        parsed = raw
    elif isinstance(raw, str):
        try:
            parsed = datetime.datetime.fromisoformat(raw.strip())
        except ValueError:
            raise ValidationError(
                "Invalid valid_until", {"valid_until": "must be an ISO date"}
            ) from None
    else:
        raise ValidationError("Invalid valid_until", {"valid_until": "must be an ISO date"})
    parsed = as_utc(parsed)
    if parsed <= now:
        raise ValidationError("Invalid valid_until", {"valid_until": "must be in the future"})
    return parsed


def _parse_quote_type(raw) -> str:
    if raw not in VALID_QUOTE_TYPES:
        raise ValidationError(
            "Invalid quote type",
            {"quote_type": f"must be one of: {', '.join(sorted(VALID_QUOTE_TYPES))}"},
        )
    return raw


# ---------------------------------------------------------------------------
# Totals
# ---------------------------------------------------------------------------


def _replace_items(quote: Quote, items: list[dict]) -> None:
    quote.items.clear()
    for index, data in enumerate(items):
        quote.items.append(
            QuoteItem(
                tenant_id=quote.tenant_id,
                product_id=data["product_id"],
                name=data["name"],
                description=data["description"],
                quantity=data["quantity"],
                unit_price=data["unit_price"],
                discount=data["discount"],
                tax_rate=data["tax_rate"],
                sort_order=index,
            )
        )


def recalculate(quote: Quote) -> QuoteTotals:
    """Recompute item and quote totals from the current items."""
    totals = calculate_totals(quote.items)
    for item, line in zip(quote.items, totals.lines):
        item.subtotal = line.subtotal
        item.discount_amount = line.discount
        item.tax_amount = line.tax
        item.total = line.total
    quote.subtotal = totals.subtotal
    quote.discount = totals.discount
    quote.tax = totals.tax
    quote.total = totals.total
    return totals


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def get_quote(tenant_id: int, quote_id: int) -> Quote:
    return tenant_get(Quote, tenant_id, quote_id)


def create_quote(tenant_id: int, data: dict, app_cfg: AppConfig) -> Quote:
    """Create a draft quote with items and computed totals."""
    now = utc_now()
    deal_id = data.get("deal_id")
    if not deal_id:
        raise ValidationError("deal_id is required", {"deal_id": "required"})
    deal = tenant_query(Deal, tenant_id).filter_by(id=deal_id).first()
    if deal is None:
        raise ValidationError("Unknown deal", {"deal_id": "does not exist"})

    items = _validate_items(tenant_id, data.get("items"))
    currency = _parse_currency(data.get("currency") or app_cfg.default_currency)
    if data.get("valid_until"):
        valid_until = _parse_valid_until(data["valid_until"], now)
    else:
        valid_until = now + datetime.timedelta(days=app_cfg.quote_validity_days)
    quote_type = _parse_quote_type(data.get("quote_type") or "primary")

    number = generate_unique_number(
        tenant_id,
        "quote",
        lambda candidate: tenant_query(Quote, tenant_id)
        .filter_by(quote_number=candidate)
        .first()
        is not None,
    )
    quote = Quote(
        tenant_id=tenant_id,
        deal_id=deal.id,
        quote_number=number,
        status="draft",
        is_primary=False,
        quote_type=quote_type,
        currency=currency,
        valid_until=valid_until,
        notes=data.get("notes"),
    )
    db.session.add(quote)
    _replace_items(quote, items)
    recalculate(quote)
    db.session.flush()

    log_action(tenant_id, "quote_created", "quote", quote.id, quote.quote_number)
    logger.info("Quote %s created for deal %s in tenant %s", quote.quote_number, deal.id, tenant_id)
    return quote


def update_quote(tenant_id: int, quote_id: int, data: dict) -> Quote:
    """Update a non-terminal quote; replacing items invalidates its document."""
    quote = tenant_get(Quote, tenant_id, quote_id)
    if not quote.can_be_modified:
        raise StateTransitionError("Quote", quote.status, ("draft", "sent"))

    if "currency" in data and data["currency"] is not None:
        quote.currency = _parse_currency(data["currency"])
    if data.get("valid_until"):
        quote.valid_until = _parse_valid_until(data["valid_until"], utc_now())
    if data.get("quote_type"):
        quote.quote_type = _parse_quote_type(data["quote_type"])
    if "notes" in data:
        quote.notes = data["notes"]

    if "items" in data:
        items = _validate_items(tenant_id, data["items"])
        _replace_items(quote, items)
        quote.pdf_path = None
    recalculate(quote)
    db.session.flush()

    log_action(tenant_id, "quote_updated", "quote", quote.id, quote.quote_number)
    logger.info("Quote %s updated in tenant %s", quote.quote_number, tenant_id)
    return quote


def send_quote(
    tenant_id: int,
    quote_id: int,
    contact_id: Optional[int] = None,
    renderer: Optional[QuoteDocumentRenderer] = None,
) -> Quote:
    """Mark the quote sent, rendering its document if none is cached."""
    quote = tenant_get(Quote, tenant_id, quote_id)
    if not quote.can_be_sent:
        raise StateTransitionError("Quote", quote.status, ("draft", "sent"))
    if contact_id is not None:
        tenant_get(Contact, tenant_id, contact_id)

    if not quote.pdf_path:
        renderer = renderer or get_document_renderer()
        _content, path = renderer.render(quote)
        quote.pdf_path = path

    quote.status = "sent"
    quote.sent_at = utc_now()
    db.session.flush()

    log_action(
        tenant_id, "quote_sent", "quote", quote.id,
        f"Quote sent to contact {contact_id}" if contact_id else "Quote sent",
    )
    logger.info("Quote %s sent (contact %s)", quote.quote_number, contact_id)
    return quote


def apply_acceptance(quote: Quote, now: Optional[datetime.datetime] = None) -> bool:
    """Accept *quote*, closing its deal when it is the first acceptance.

    The deal row is locked before the prior-acceptance check so that two
    concurrent acceptances for one deal cannot both become primary.  Where
    the database cannot lock rows, the one-primary-per-deal index rejects
    the loser and this raises PersistenceError; retrying then records it
    as a follow-up.  Returns True when the quote became the deal's primary
    quote.
    """
    now = now or utc_now()
    deal = (
        Deal.query.filter_by(id=quote.deal_id, tenant_id=quote.tenant_id)
        .with_for_update()
        .one()
    )
    db.session.refresh(quote)
    if not quote.can_be_accepted:
        raise StateTransitionError("Quote", quote.status, "sent")

    is_first = not deal.has_accepted_quotes(exclude_quote_id=quote.id)
    quote.status = "accepted"
    quote.accepted_at = now
    if is_first:
        quote.is_primary = True
        deal.status = "won"
        deal.closed_date = now
        log_action(quote.tenant_id, "deal_won", "deal", deal.id, "Primary quote accepted")
    else:
        if quote.quote_type in (None, "primary"):
            quote.quote_type = "follow_up"
        log_action(
            quote.tenant_id, "follow_up_quote_accepted", "deal", deal.id,
            f"Follow-up quote {quote.quote_number} accepted",
        )
    number, deal_id = quote.quote_number, deal.id
    try:
        db.session.flush()
    except (IntegrityError, OperationalError) as exc:
        logger.warning("Acceptance of quote %s on deal %s conflicted: %s", number, deal_id, exc)
        raise PersistenceError(
            f"Quote {number} could not be accepted for deal {deal_id}, retry"
        ) from exc

    log_action(quote.tenant_id, "quote_accepted", "quote", quote.id, quote.quote_number)
    logger.info(
        "Quote %s accepted (deal %s, primary=%s, type=%s)",
        quote.quote_number, deal.id, quote.is_primary, quote.quote_type,
    )
    return is_first


def accept_quote(tenant_id: int, quote_id: int) -> Quote:
    quote = tenant_get(Quote, tenant_id, quote_id)
    if not quote.can_be_accepted:
        raise StateTransitionError("Quote", quote.status, "sent")
    apply_acceptance(quote)
    return quote


def reject_quote(tenant_id: int, quote_id: int) -> Quote:
    quote = tenant_get(Quote, tenant_id, quote_id)
    if not quote.can_be_rejected:
        raise StateTransitionError("Quote", quote.status, "sent")
    quote.status = "rejected"
    quote.rejected_at = utc_now()
    db.session.flush()

    log_action(tenant_id, "quote_rejected", "quote", quote.id, quote.quote_number)
    logger.info("Quote %s rejected", quote.quote_number)
    return quote
