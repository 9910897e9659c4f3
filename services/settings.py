"""Per-tenant payment gateway credentials.

Secrets are write-only through the API: reads return the last four
characters only, and audit entries name the changed fields, never values.
"""

from __future__ import annotations

import logging
from typing import Optional

from errors import ValidationError
from extensions import db
from models import VALID_GATEWAY_MODES, CommerceSetting
from services.audit import log_action

logger = logging.getLogger(__name__)

# field -> (max length, min length when set)
_CREDENTIAL_FIELDS = {
    "payfast_merchant_id": (60, 5),
    "payfast_merchant_key": (60, 5),
    "payfast_passphrase": (120, 1),
}


def _mask(value: Optional[str]) -> Optional[str]:
    return f"***{value[-4:]}" if value else None


def get_setting(tenant_id: int) -> CommerceSetting:
    """Return the tenant's settings row, creating an empty one on first use."""
    setting = CommerceSetting.query.filter_by(tenant_id=tenant_id).first()
    if setting is None:
        setting = CommerceSetting(tenant_id=tenant_id, payment_gateway="payfast", mode="test")
        db.session.add(setting)
        db.session.flush()
    return setting


def describe(setting: CommerceSetting) -> dict:
    return {
        "payment_gateway": setting.payment_gateway,
        "mode": setting.mode,
        "payfast_merchant_id": setting.payfast_merchant_id,
        "payfast_merchant_key": _mask(setting.payfast_merchant_key),
        "payfast_passphrase": _mask(setting.payfast_passphrase),
        "has_keys": bool(setting.payfast_merchant_id and setting.payfast_merchant_key),
    }


def _validate(data: dict) -> dict:
    errors: dict = {}
    changes: dict = {}
    for field, (max_len, min_len) in _CREDENTIAL_FIELDS.items():
        if field not in data or data[field] is None:
            continue
        value = data[field]
        if not isinstance(value, str):
            errors[field] = "must be a string"
            continue
        value = value.strip()
        if value and len(value) < min_len:
            errors[field] = f"must be at least {min_len} characters"
        elif len(value) > max_len:
            errors[field] = f"must be at most {max_len} characters"
        else:
            # An empty string clears the credential
            changes[field] = value or None

    if data.get("mode") is not None:
        if data["mode"] not in VALID_GATEWAY_MODES:
            errors["mode"] = f"must be one of: {', '.join(sorted(VALID_GATEWAY_MODES))}"
        else:
            changes["mode"] = data["mode"]

    if errors:
        raise ValidationError("Invalid payment settings", errors)
    return changes


def update_credentials(tenant_id: int, data: dict) -> CommerceSetting:
    """Apply the credential fields present in *data*; absent fields are kept."""
    changes = _validate(data)
    setting = get_setting(tenant_id)
    for field, value in changes.items():
        setattr(setting, field, value)
    db.session.flush()

    log_action(
        tenant_id, "commerce_settings_updated", "commerce_setting", setting.id,
        ", ".join(sorted(changes)) or "no changes",
    )
    logger.info("Commerce settings updated for tenant %s (mode=%s)", tenant_id, setting.mode)
    return setting


def reset_credentials(tenant_id: int) -> CommerceSetting:
    """Clear all credentials and return the tenant to test mode."""
    setting = get_setting(tenant_id)
    setting.payment_gateway = "payfast"
    for field in _CREDENTIAL_FIELDS:
        setattr(setting, field, None)
    setting.mode = "test"
    db.session.flush()

    log_action(tenant_id, "commerce_settings_reset", "commerce_setting", setting.id)
    logger.info("Commerce settings reset for tenant %s", tenant_id)
    return setting
