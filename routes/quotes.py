"""Quote JSON API."""

import io
import logging

from flask import Blueprint, current_app, jsonify, request, send_file

from errors import ValidationError
from extensions import csrf, db
from mailer import MailerError, send_quote_email
from models import Contact, Tenant
from services.documents import get_document_renderer
from services.quotes import (
    accept_quote,
    create_quote,
    get_quote,
    reject_quote,
    send_quote,
    update_quote,
)
from services.tenant import load_request_tenant, require_tenant, tenant_get

logger = logging.getLogger(__name__)

quotes_bp = Blueprint("quotes", __name__, url_prefix="/api/quotes")
csrf.exempt(quotes_bp)


@quotes_bp.before_request
def resolve_tenant():
    load_request_tenant()


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Expected a JSON object")
    return data


@quotes_bp.route("", methods=["POST"])
def create():
    tid = require_tenant()
    quote = create_quote(tid, _json_body(), current_app.config["APP_CONFIG"])
    db.session.commit()
    return jsonify(quote.to_dict()), 201


@quotes_bp.route("/<int:quote_id>", methods=["GET"])
def detail(quote_id):
    tid = require_tenant()
    return jsonify(get_quote(tid, quote_id).to_dict())


@quotes_bp.route("/<int:quote_id>", methods=["PUT", "PATCH"])
def update(quote_id):
    tid = require_tenant()
    quote = update_quote(tid, quote_id, _json_body())
    db.session.commit()
    return jsonify(quote.to_dict())


@quotes_bp.route("/<int:quote_id>/send", methods=["POST"])
def send(quote_id):
    """Send the quote; email delivery happens after the commit."""
    tid = require_tenant()
    data = _json_body()
    contact_id = data.get("contact_id")
    quote = send_quote(tid, quote_id, contact_id)
    db.session.commit()

    email_cfg = current_app.config["EMAIL_CONFIG"]
    if not email_cfg.enabled:
        return jsonify(quote.to_dict())

    contact = tenant_get(Contact, tid, contact_id) if contact_id else quote.deal.contact
    if contact is None or not contact.email:
        return jsonify(quote.to_dict())

    pdf = get_document_renderer().read(quote.pdf_path)
    tenant = db.session.get(Tenant, tid)
    try:
        if pdf is None:
            raise MailerError(f"Document {quote.pdf_path} missing")
        send_quote_email(email_cfg, quote, contact.email, pdf, tenant.name)
    except MailerError as exc:
        logger.warning("Quote %s sent but email failed: %s", quote.quote_number, exc)
        payload = quote.to_dict()
        payload["warning"] = "Quote sent but email delivery failed"
        return jsonify(payload), 202
    return jsonify(quote.to_dict())


@quotes_bp.route("/<int:quote_id>/accept", methods=["POST"])
def accept(quote_id):
    tid = require_tenant()
    quote = accept_quote(tid, quote_id)
    db.session.commit()
    return jsonify(quote.to_dict())


@quotes_bp.route("/<int:quote_id>/reject", methods=["POST"])
def reject(quote_id):
    tid = require_tenant()
    quote = reject_quote(tid, quote_id)
    db.session.commit()
    return jsonify(quote.to_dict())


@quotes_bp.route("/<int:quote_id>/pdf", methods=["GET"])
def pdf(quote_id):
    """Download the quote document, rendering it on first request."""
    tid = require_tenant()
    quote = get_quote(tid, quote_id)
    renderer = get_document_renderer()
    content = renderer.read(quote.pdf_path) if quote.pdf_path else None
    if content is None:
        content, path = renderer.render(quote)
        quote.pdf_path = path
        db.session.commit()
    return send_file(
        io.BytesIO(content),
        mimetype="application/pdf",
        as_attachment=True,
        download_name=f"quote-{quote.quote_number}.pdf",
    )
