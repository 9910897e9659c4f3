"""Order and order invoice JSON API."""

import io
import logging

from flask import Blueprint, current_app, jsonify, request, send_file

from errors import PersistenceError, ValidationError
from extensions import csrf, db
from mailer import MailerError, send_invoice_email
from models import Tenant
from services.orders import (
    get_invoice,
    get_order,
    invoice_document,
    invoice_for_order,
    invoice_for_quote,
    invoice_recipient,
    mark_invoice_sent,
)
from services.tenant import load_request_tenant, require_tenant

logger = logging.getLogger(__name__)

orders_bp = Blueprint("orders", __name__, url_prefix="/api")
csrf.exempt(orders_bp)


@orders_bp.before_request
def resolve_tenant():
    load_request_tenant()


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object")
    return data


@orders_bp.route("/orders/<int:order_id>", methods=["GET"])
def order_detail(order_id):
    tid = require_tenant()
    return jsonify(get_order(tid, order_id).to_dict())


@orders_bp.route("/orders/<int:order_id>/invoice", methods=["GET"])
def order_invoice(order_id):
    tid = require_tenant()
    return jsonify(invoice_for_order(tid, order_id).to_dict())


@orders_bp.route("/quotes/<int:quote_id>/invoice", methods=["GET"])
def quote_invoice(quote_id):
    tid = require_tenant()
    return jsonify(invoice_for_quote(tid, quote_id).to_dict())


@orders_bp.route("/order-invoices/<int:invoice_id>", methods=["GET"])
def invoice_detail(invoice_id):
    tid = require_tenant()
    return jsonify(get_invoice(tid, invoice_id).to_dict())


@orders_bp.route("/order-invoices/<int:invoice_id>/pdf", methods=["GET"])
def invoice_pdf(invoice_id):
    """Download the invoice document, rendering it on first request."""
    tid = require_tenant()
    invoice = get_invoice(tid, invoice_id)
    content = invoice_document(invoice)
    db.session.commit()
    return send_file(
        io.BytesIO(content),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"invoice-{invoice.invoice_number}.pdf",
    )


@orders_bp.route("/order-invoices/<int:invoice_id>/send", methods=["POST"])
def invoice_send(invoice_id):
    """Email the invoice to the deal contact or to ``email`` in the body."""
    tid = require_tenant()
    data = _json_body()
    invoice = get_invoice(tid, invoice_id)

    email_cfg = current_app.config["EMAIL_CONFIG"]
    if not email_cfg.enabled:
        raise ValidationError("Email delivery is disabled")
    recipient = invoice_recipient(invoice, data.get("email"))

    pdf = invoice_document(invoice)
    db.session.commit()

    tenant = db.session.get(Tenant, tid)
    try:
        send_invoice_email(email_cfg, invoice, recipient, pdf, tenant.name)
    except MailerError as exc:
        logger.warning("Invoice %s email failed: %s", invoice.invoice_number, exc)
        raise PersistenceError("Invoice email delivery failed") from exc

    mark_invoice_sent(invoice, recipient)
    db.session.commit()
    return jsonify(invoice.to_dict())
