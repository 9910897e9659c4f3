"""Client-facing quote and invoice documents.

HTML is rendered with a sandboxed Jinja2 environment and converted to PDF
with *xhtml2pdf*.  Tenant logos are embedded as data URIs; a logo that
cannot be read is left out rather than failing the document.
"""

from __future__ import annotations

import base64
import io
import logging
import mimetypes
import os
from typing import Optional

from flask import current_app
from jinja2.sandbox import SandboxedEnvironment
from xhtml2pdf import pisa

from errors import PersistenceError
from extensions import db
from models import Tenant

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Default templates
# ---------------------------------------------------------------------------

_DEFAULT_CSS = """
body { font-family: DejaVu Sans, Arial, sans-serif; font-size: 10pt; margin: 20mm; }
h1 { font-size: 14pt; margin-bottom: 10px; }
h2 { font-size: 12pt; margin-top: 15px; }
table { width: 100%; border-collapse: collapse; margin-top: 10px; }
th, td { border: 1px solid #ccc; padding: 4px 8px; text-align: left; }
th { background: #f0f0f0; }
.info-table td { border: none; padding: 2px 8px; }
.info-table { margin-bottom: 10px; }
.total { font-size: 12pt; font-weight: bold; margin-top: 15px; }
.logo { max-height: 60px; max-width: 160px; }
"""

_QUOTE_HTML = """\
{% if logo_data_uri %}<img class="logo" src="{{ logo_data_uri }}" alt="Logo">{% endif %}
<h1>Quote {{ quote.quote_number }}</h1>
<table class="info-table">
  {% if tenant %}<tr><td><strong>From:</strong></td><td>{{ tenant.name }}</td></tr>{% endif %}
  {% if contact %}
  <tr><td><strong>Client:</strong></td><td>{{ contact.full_name }}</td></tr>
  {% if contact.email %}<tr><td><strong>Email:</strong></td><td>{{ contact.email }}</td></tr>{% endif %}
  {% endif %}
  <tr><td><strong>Date:</strong></td><td>{{ quote.created_at.strftime('%Y-%m-%d') if quote.created_at else '' }}</td></tr>
  <tr><td><strong>Valid until:</strong></td><td>{{ quote.valid_until.strftime('%Y-%m-%d') if quote.valid_until else '' }}</td></tr>
</table>
<h2>Items</h2>
<table>
  <thead>
    <tr><th>Item</th><th>Qty</th><th>Unit price</th><th>Discount</th><th>Tax</th><th>Total</th></tr>
  </thead>
  <tbody>
    {% for item in quote.items %}
    <tr>
      <td>{{ item.name }}{% if item.description %}<br><small>{{ item.description }}</small>{% endif %}</td>
      <td>{{ item.quantity }}</td>
      <td>{{ '%.2f'|format(item.unit_price) }} {{ quote.currency }}</td>
      <td>{{ '%.2f'|format(item.discount) }}%</td>
      <td>{{ '%.2f'|format(item.tax_rate) }}%</td>
      <td>{{ '%.2f'|format(item.total) }} {{ quote.currency }}</td>
    </tr>
    {% endfor %}
  </tbody>
</table>
<p>Subtotal: {{ '%.2f'|format(quote.subtotal) }} {{ quote.currency }}</p>
<p>Discount: {{ '%.2f'|format(quote.discount) }} {{ quote.currency }}</p>
<p>Tax: {{ '%.2f'|format(quote.tax) }} {{ quote.currency }}</p>
<p class="total">Total: {{ '%.2f'|format(quote.total) }} {{ quote.currency }}</p>
{% if quote.notes %}<p>{{ quote.notes }}</p>{% endif %}
"""


_INVOICE_HTML = """\
{% if logo_data_uri %}<img class="logo" src="{{ logo_data_uri }}" alt="Logo">{% endif %}
<h1>Invoice {{ invoice.invoice_number }}</h1>
<table class="info-table">
  {% if tenant %}<tr><td><strong>From:</strong></td><td>{{ tenant.name }}</td></tr>{% endif %}
  {% if contact %}
  <tr><td><strong>Bill to:</strong></td><td>{{ contact.full_name }}</td></tr>
  {% if contact.email %}<tr><td><strong>Email:</strong></td><td>{{ contact.email }}</td></tr>{% endif %}
  {% endif %}
  {% if order %}<tr><td><strong>Order:</strong></td><td>{{ order.order_number }}</td></tr>{% endif %}
  {% if quote %}<tr><td><strong>Quote:</strong></td><td>{{ quote.quote_number }}</td></tr>{% endif %}
  <tr><td><strong>Issued:</strong></td><td>{{ invoice.issued_at.strftime('%Y-%m-%d') if invoice.issued_at else '' }}</td></tr>
  {% if invoice.paid_at %}
  <tr><td><strong>Paid:</strong></td><td>{{ invoice.paid_at.strftime('%Y-%m-%d') }}{% if invoice.payment_reference %} (ref {{ invoice.payment_reference }}){% endif %}</td></tr>
  {% endif %}
</table>
<h2>Items</h2>
<table>
  <thead>
    <tr><th>Description</th><th>Qty</th><th>Unit price</th><th>Discount</th><th>Tax</th><th>Total</th></tr>
  </thead>
  <tbody>
    {% for item in invoice.items %}
    <tr>
      <td>{{ item.description }}</td>
      <td>{{ item.quantity }}</td>
      <td>{{ '%.2f'|format(item.unit_price) }} {{ invoice.currency }}</td>
      <td>{{ '%.2f'|format(item.discount or 0) }}%</td>
      <td>{{ '%.2f'|format(item.tax_rate or 0) }}%</td>
      <td>{{ '%.2f'|format(item.total) }} {{ invoice.currency }}</td>
    </tr>
    {% endfor %}
  </tbody>
</table>
<p>Subtotal: {{ '%.2f'|format(invoice.subtotal) }} {{ invoice.currency }}</p>
<p>Discount: {{ '%.2f'|format(invoice.discount) }} {{ invoice.currency }}</p>
<p>Tax: {{ '%.2f'|format(invoice.tax) }} {{ invoice.currency }}</p>
<p class="total">Total: {{ '%.2f'|format(invoice.total) }} {{ invoice.currency }}</p>
<p>Status: {{ invoice.status|upper }}</p>
"""


# ---------------------------------------------------------------------------
# Branding
# ---------------------------------------------------------------------------


def load_tenant_logo(tenant) -> Optional[str]:
    """Return the tenant's logo as a data URI, or None when unavailable."""
    path = getattr(tenant, "logo_path", None) if tenant else None
    if not path:
        return None
    try:
        with open(path, "rb") as fh:
            content = fh.read()
    except OSError as exc:
        logger.warning("Logo for tenant %s unavailable (%s): %s", tenant.id, path, exc)
        return None
    mime = mimetypes.guess_type(path)[0] or "image/png"
    return f"data:{mime};base64,{base64.b64encode(content).decode('ascii')}"


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _render_html(html_template: str, css: str, context: dict) -> str:
    """Render the Jinja2 HTML template wrapped in a full HTML document."""
    env = SandboxedEnvironment()
    tmpl = env.from_string(html_template)
    body = tmpl.render(**context)
    return (
        "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\">"
        f"<style>{css}</style></head><body>{body}</body></html>"
    )


def _html_to_pdf(full_html: str) -> bytes:
    buffer = io.BytesIO()
    status = pisa.CreatePDF(full_html, dest=buffer)
    if status.err:
        raise PersistenceError("PDF rendering failed")
    return buffer.getvalue()


class _DocumentRenderer:
    """Renders one kind of document to PDF and stores it under *document_dir*."""

    template = ""

    def __init__(self, document_dir: str):
        self.document_dir = document_dir

    @staticmethod
    def storage_path(document) -> str:
        raise NotImplementedError

    @staticmethod
    def label(document) -> str:
        raise NotImplementedError

    def context(self, document) -> dict:
        raise NotImplementedError

    def render_html(self, document) -> str:
        tenant = db.session.get(Tenant, document.tenant_id)
        context = self.context(document)
        context.update(tenant=tenant, logo_data_uri=load_tenant_logo(tenant))
        return _render_html(self.template, _DEFAULT_CSS, context)

    def render(self, document) -> tuple[bytes, str]:
        """Render *document*, write the file and return ``(content, path)``."""
        content = _html_to_pdf(self.render_html(document))
        path = self.storage_path(document)
        full_path = os.path.join(self.document_dir, path)
        os.makedirs(os.path.dirname(full_path), exist_ok=True)
        with open(full_path, "wb") as fh:
            fh.write(content)
        logger.info("Rendered %s to %s", self.label(document), full_path)
        return content, path

    def read(self, path: str) -> Optional[bytes]:
        full_path = os.path.join(self.document_dir, path)
        if not os.path.exists(full_path):
            return None
        with open(full_path, "rb") as fh:
            return fh.read()


class QuoteDocumentRenderer(_DocumentRenderer):
    template = _QUOTE_HTML

    @staticmethod
    def storage_path(quote) -> str:
        return f"quotes/quote-{quote.quote_number}.pdf"

    @staticmethod
    def label(quote) -> str:
        return f"quote {quote.quote_number}"

    def context(self, quote) -> dict:
        return {"quote": quote, "contact": quote.deal.contact if quote.deal else None}


class InvoiceDocumentRenderer(_DocumentRenderer):
    template = _INVOICE_HTML

    @staticmethod
    def storage_path(invoice) -> str:
        return f"invoices/invoice-{invoice.invoice_number}.pdf"

    @staticmethod
    def label(invoice) -> str:
        return f"invoice {invoice.invoice_number}"

    def context(self, invoice) -> dict:
        order = invoice.order
        deal = order.deal if order else None
        return {
            "invoice": invoice,
            "order": order,
            "quote": order.quote if order else None,
            "contact": deal.contact if deal else None,
        }


def get_document_renderer() -> QuoteDocumentRenderer:
    """Return a renderer bound to the configured document directory."""
    return QuoteDocumentRenderer(current_app.config["APP_CONFIG"].document_dir)


def get_invoice_renderer() -> InvoiceDocumentRenderer:
    return InvoiceDocumentRenderer(current_app.config["APP_CONFIG"].document_dir)
