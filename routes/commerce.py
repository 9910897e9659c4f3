"""Payment link, checkout and gateway settings API."""

from flask import Blueprint, current_app, jsonify, request

from errors import ValidationError
from extensions import csrf, db
from models import PaymentLink
from services.payfast import PayFastGateway
from services.payment_links import build_checkout, create_payment_link, subscription_checkout
from services.settings import describe, get_setting, reset_credentials, update_credentials
from services.tenant import load_request_tenant, require_tenant, tenant_get
from utils import safe_int

commerce_bp = Blueprint("commerce", __name__, url_prefix="/api")
csrf.exempt(commerce_bp)


@commerce_bp.before_request
def resolve_tenant():
    load_request_tenant()


def _json_body() -> dict:
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object")
    return data


@commerce_bp.route("/payment-links", methods=["POST"])
def create_link():
    tid = require_tenant()
    data = _json_body()
    quote_id = safe_int(data.get("quote_id"), 0)
    if not quote_id:
        raise ValidationError("quote_id is required", {"quote_id": "required"})
    link = create_payment_link(
        tid,
        quote_id,
        description=data.get("description"),
        customer_email=data.get("customer_email"),
    )
    db.session.commit()
    return jsonify(link.to_dict()), 201


@commerce_bp.route("/payment-links/<int:link_id>", methods=["GET"])
def link_detail(link_id):
    tid = require_tenant()
    return jsonify(tenant_get(PaymentLink, tid, link_id).to_dict())


@commerce_bp.route("/payment-links/<int:link_id>/checkout", methods=["GET"])
def link_checkout(link_id):
    tid = require_tenant()
    link = tenant_get(PaymentLink, tid, link_id)
    return jsonify(build_checkout(link, current_app.config["PAYFAST_CONFIG"]))


@commerce_bp.route("/subscriptions/checkout", methods=["POST"])
def plan_checkout():
    tid = require_tenant()
    data = _json_body()
    plan_id = safe_int(data.get("plan_id"), 0)
    if not plan_id:
        raise ValidationError("plan_id is required", {"plan_id": "required"})
    return jsonify(
        subscription_checkout(
            tid, plan_id, current_app.config["PAYFAST_CONFIG"], email=data.get("email")
        )
    )


@commerce_bp.route("/commerce/settings/status", methods=["GET"])
def settings_status():
    tid = require_tenant()
    return jsonify(PayFastGateway.for_tenant(tid).configuration_status())


@commerce_bp.route("/commerce/settings", methods=["GET"])
def settings_detail():
    tid = require_tenant()
    setting = get_setting(tid)
    db.session.commit()
    return jsonify(describe(setting))


@commerce_bp.route("/commerce/settings", methods=["PUT"])
def settings_update():
    tid = require_tenant()
    setting = update_credentials(tid, _json_body())
    db.session.commit()
    return jsonify(describe(setting))


@commerce_bp.route("/commerce/settings/reset", methods=["POST"])
def settings_reset():
    tid = require_tenant()
    setting = reset_credentials(tid)
    db.session.commit()
    return jsonify(describe(setting))
