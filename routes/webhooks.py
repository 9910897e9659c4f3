"""Inbound payment provider notifications."""

from flask import Blueprint, jsonify, request

from extensions import csrf, limiter
from services.reconciliation import ReconciliationService

webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/commerce/webhooks")


@webhooks_bp.route("/payfast", methods=["POST"])
@csrf.exempt
@limiter.limit("120 per minute")
def payfast_itn():
    """PayFast ITN endpoint (server-to-server callback)."""
    if request.is_json:
        payload = request.get_json(silent=True) or {}
    else:
        payload = request.form.to_dict()
    if not isinstance(payload, dict):
        payload = {}
    ack = ReconciliationService().handle(payload)
    return jsonify(ack.to_dict()), ack.http_status
