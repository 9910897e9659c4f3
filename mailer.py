"""Outbound email for client-facing documents."""

import logging
import smtplib
from email.message import EmailMessage
from socket import gaierror, timeout

from config_models import EmailConfig

logger = logging.getLogger(__name__)


class MailerError(Exception):
    """Exception raised for email sending errors."""

    pass


def send_document_email(
    config: EmailConfig,
    subject: str,
    recipient: str,
    body: str,
    attachment: bytes,
    filename: str,
    cc: str = "",
) -> bool:
    """Send *body* to *recipient* with a PDF attachment.

    Raises:
        MailerError: If the message could not be delivered to the SMTP server.
    """
    if not config.enabled:
        raise MailerError("Email delivery is disabled")
    if not recipient:
        raise MailerError("No recipient address")

    message = EmailMessage()
    message["Subject"] = subject
    message["From"] = config.sender
    message["To"] = recipient
    if cc:
        message["Cc"] = cc
    message.set_content(body)
    message.add_attachment(
        attachment,
        maintype="application",
        subtype="pdf",
        filename=filename,
    )

    try:
        logger.info("Sending email to %s with subject: %s", recipient, subject)
        with smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=30) as server:
            server.starttls()
            if config.smtp_user:
                server.login(config.smtp_user, config.smtp_password)
            server.send_message(message)
        logger.info("Email sent successfully to %s", recipient)
        return True

    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed: %s", e)
        raise MailerError(f"Email authentication failed: {e}") from e

    except smtplib.SMTPRecipientsRefused as e:
        logger.error("Recipients refused: %s", e)
        raise MailerError(f"Email recipients refused: {e}") from e

    except (smtplib.SMTPException, gaierror, timeout, OSError) as e:
        logger.error("Could not send email to %s: %s", recipient, e)
        raise MailerError(f"Failed to send email: {e}") from e


def send_quote_email(config: EmailConfig, quote, recipient: str, pdf: bytes, company: str) -> bool:
    """Email the rendered quote document to the client."""
    body = (
        f"Hello,\n\nplease find attached quote {quote.quote_number} "
        f"for {quote.total:.2f} {quote.currency}"
    )
    if quote.valid_until:
        body += f", valid until {quote.valid_until:%Y-%m-%d}"
    body += f".\n\nKind regards,\n{company}\n"
    return send_document_email(
        config,
        subject=f"Quote {quote.quote_number} from {company}",
        recipient=recipient,
        body=body,
        attachment=pdf,
        filename=f"quote-{quote.quote_number}.pdf",
        cc=config.operator_cc,
    )


def send_invoice_email(config: EmailConfig, invoice, recipient: str, pdf: bytes, company: str) -> bool:
    """Email the rendered order invoice to the client."""
    body = (
        f"Hello,\n\nplease find attached invoice {invoice.invoice_number} "
        f"for {invoice.total:.2f} {invoice.currency}"
    )
    if invoice.paid_at:
        body += f", paid on {invoice.paid_at:%Y-%m-%d}"
    body += f".\n\nKind regards,\n{company}\n"
    return send_document_email(
        config,
        subject=f"Invoice {invoice.invoice_number} from {company}",
        recipient=recipient,
        body=body,
        attachment=pdf,
        filename=f"invoice-{invoice.invoice_number}.pdf",
        cc=config.operator_cc,
    )
