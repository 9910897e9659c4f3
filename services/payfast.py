"""PayFast gateway: signature handling and ITN payload parsing.

A gateway instance is always bound to one tenant's merchant credentials.
There is no process-wide fallback secret: a tenant without credentials
cannot have its notifications verified.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, Union
from urllib.parse import quote_plus

from config_models import PayFastConfig
from errors import AuthenticationError, ValidationError
from models import CommerceSetting
from utils import money, to_decimal

logger = logging.getLogger(__name__)

PROVIDER = "payfast"
SUBSCRIPTION_PREFIX = "subscription_"
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_DEFAULT_CURRENCY = "ZAR"

FREQUENCY_CODES = {"weekly": 2, "monthly": 3, "yearly": 6}


# ---------------------------------------------------------------------------
# Payment subjects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LinkSubject:
    link_id: int

    kind = "link"


@dataclass(frozen=True)
class SubscriptionSubject:
    plan_id: int
    nonce: str

    kind = "subscription"


Subject = Union[LinkSubject, SubscriptionSubject]


def parse_subject(m_payment_id) -> Subject:
    """Classify a merchant payment id.

    ``subscription_{plan_id}_{nonce}`` is a recurring plan payment; a bare
    integer is a payment link id.
    """
    if m_payment_id is None or str(m_payment_id).strip() == "":
        raise ValidationError("Missing payment ID")
    raw = str(m_payment_id).strip()
    if raw.startswith(SUBSCRIPTION_PREFIX):
        parts = raw.split("_", 2)
        if len(parts) < 2 or not parts[1].isdigit():
            raise ValidationError(f"Malformed subscription payment ID: {raw}")
        return SubscriptionSubject(plan_id=int(parts[1]), nonce=parts[2] if len(parts) > 2 else "")
    if not raw.isdigit():
        raise ValidationError(f"Malformed payment ID: {raw}")
    return LinkSubject(link_id=int(raw))


# ---------------------------------------------------------------------------
# Normalised event
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentEvent:
    external_payment_id: str
    amount: Decimal
    currency: str
    status_raw: str
    status: str
    subject: Subject
    customer_email: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    @property
    def event_type(self) -> str:
        prefix = "subscription.payment" if self.subject.kind == "subscription" else "payment"
        return f"{prefix}.{self.status_raw.lower()}"


def parse_event(payload: dict, default_currency: str = _DEFAULT_CURRENCY) -> PaymentEvent:
    """Extract a :class:`PaymentEvent` from an ITN payload."""
    subject = parse_subject(payload.get("m_payment_id"))
    external_id = str(payload.get("pf_payment_id") or payload.get("m_payment_id")).strip()

    amount = to_decimal(payload.get("amount_gross"))
    if amount is None:
        raise ValidationError("Invalid or missing amount_gross")

    currency = str(payload.get("currency") or default_currency).strip().upper()
    if not _CURRENCY_RE.match(currency):
        raise ValidationError(f"Invalid currency: {currency}")

    status_raw = str(payload.get("payment_status") or "").strip().upper()
    if not status_raw:
        raise ValidationError("Missing payment_status")

    email = (payload.get("email_address") or "").strip() or None
    return PaymentEvent(
        external_payment_id=external_id,
        amount=money(amount),
        currency=currency,
        status_raw=status_raw,
        status="succeeded" if status_raw == "COMPLETE" else "failed",
        subject=subject,
        customer_email=email,
        raw=dict(payload),
    )


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


def _encode(value) -> str:
    # Values are signed as received; "~" is escaped like the provider does
    return quote_plus(str(value)).replace("~", "%7E")


class PayFastGateway:
    """Signs and verifies PayFast data for a single tenant."""

    def __init__(
        self,
        tenant_id: int,
        merchant_id: str = "",
        merchant_key: str = "",
        passphrase: str = "",
        mode: str = "test",
    ):
        self.tenant_id = tenant_id
        self.merchant_id = merchant_id or ""
        self.merchant_key = merchant_key or ""
        self.passphrase = passphrase or ""
        self.mode = mode or "test"

    @classmethod
    def for_tenant(cls, tenant_id: int) -> "PayFastGateway":
        setting = CommerceSetting.query.filter_by(tenant_id=tenant_id).first()
        if setting is None:
            return cls(tenant_id)
        return cls(
            tenant_id,
            merchant_id=setting.payfast_merchant_id,
            merchant_key=setting.payfast_merchant_key,
            passphrase=setting.payfast_passphrase,
            mode=setting.mode,
        )

    def is_configured(self) -> bool:
        return bool(self.merchant_id and self.merchant_key)

    def configuration_status(self) -> dict:
        return {
            "configured": self.is_configured(),
            "mode": self.mode,
            "has_merchant_id": bool(self.merchant_id),
            "has_merchant_key": bool(self.merchant_key),
            "has_passphrase": bool(self.passphrase),
        }

    def generate_signature(self, data: dict) -> str:
        """MD5 over the sorted, url-encoded non-empty fields plus passphrase."""
        pairs = [
            f"{key}={_encode(value)}"
            for key, value in sorted(data.items())
            if key != "signature" and value is not None and str(value) != ""
        ]
        query = "&".join(pairs)
        if self.passphrase:
            query += f"&passphrase={_encode(self.passphrase)}"
        return hashlib.md5(query.encode("utf-8")).hexdigest()

    def verify_signature(self, payload: dict) -> bool:
        provided = payload.get("signature")
        if not provided:
            return False
        expected = self.generate_signature(payload)
        return hmac.compare_digest(expected, str(provided).strip().lower())

    def verify(self, payload: dict) -> PaymentEvent:
        """Authenticate *payload* and return the parsed event."""
        if not self.is_configured():
            logger.warning("PayFast not configured for tenant %s", self.tenant_id)
            raise AuthenticationError("Payment gateway not configured for tenant")
        if not self.verify_signature(payload):
            logger.warning(
                "Invalid PayFast signature for tenant %s, payment %s",
                self.tenant_id, payload.get("m_payment_id"),
            )
            raise AuthenticationError("Invalid signature")
        return parse_event(payload)

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    def checkout_fields(
        self,
        cfg: PayFastConfig,
        m_payment_id: str,
        amount: Decimal,
        item_name: str,
        currency: str = _DEFAULT_CURRENCY,
        email: Optional[str] = None,
        subscription_frequency: Optional[str] = None,
    ) -> dict:
        """Build the signed form for redirecting a payer to PayFast."""
        if not self.is_configured():
            raise ValidationError("Payment gateway not configured for tenant")
        currency = (currency or _DEFAULT_CURRENCY).upper()
        if not _CURRENCY_RE.match(currency):
            raise ValidationError(f"Invalid currency: {currency}")

        data = {
            "merchant_id": self.merchant_id,
            "merchant_key": self.merchant_key,
            "return_url": cfg.return_url,
            "cancel_url": cfg.cancel_url,
            "notify_url": cfg.notify_url,
            "email_address": email or "",
            "m_payment_id": str(m_payment_id),
            "amount": f"{money(to_decimal(amount)):.2f}",
            "item_name": item_name[:100],
            "currency": currency,
        }
        if subscription_frequency:
            data["subscription_type"] = "1"
            data["frequency"] = str(FREQUENCY_CODES.get(subscription_frequency, 3))
            data["cycles"] = "0"
        data = {k: v for k, v in data.items() if v not in (None, "")}
        data["signature"] = self.generate_signature(data)
        return {"action": cfg.process_url(self.mode), "fields": data}
