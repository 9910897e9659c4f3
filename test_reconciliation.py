"""Test suite for payments: PayFast gateway, ledger, subscriptions,
webhook reconciliation, the payment link API, order invoices and gateway
settings.
"""

import datetime
import hashlib
from datetime import timezone
from decimal import Decimal

import pytest

from conftest import MERCHANT_ID, MERCHANT_KEY, OTHER_PASSPHRASE, PASSPHRASE, sign
from errors import AuthenticationError, ValidationError
from extensions import db
from mailer import MailerError
from models import (
    AuditLog,
    CommerceSetting,
    Deal,
    Order,
    OrderInvoice,
    PaymentLink,
    Quote,
    Subscription,
    SubscriptionInvoice,
    SubscriptionPlan,
    Tenant,
    Transaction,
)
from services import ledger
from services import orders as order_service
from services import subscriptions
from services.documents import InvoiceDocumentRenderer
from services.payfast import (
    LinkSubject,
    PayFastGateway,
    SubscriptionSubject,
    parse_event,
    parse_subject,
)
from services.quotes import reject_quote
from services.reconciliation import Acknowledgment, ReconciliationService
from utils import as_utc

WEBHOOK_URL = "/api/commerce/webhooks/payfast"


def utc(*args):
    return datetime.datetime(*args, tzinfo=timezone.utc)


def fixed_clock(value):
    return lambda: value


def headers(tenant_id):
    return {"X-Tenant-ID": str(tenant_id)}


def link_payload(link_id, pf_payment_id="1089250", status="COMPLETE", amount="207.00", **extra):
    payload = {
        "m_payment_id": str(link_id),
        "pf_payment_id": pf_payment_id,
        "payment_status": status,
        "item_name": "Website rebuild",
        "amount_gross": amount,
        "amount_fee": "-4.75",
        "amount_net": "202.25",
        "email_address": "jane@client.test",
        "merchant_id": MERCHANT_ID,
    }
    payload.update(extra)
    return sign(payload)


def subscription_payload(plan_id, pf_payment_id, status="COMPLETE", email="john@example.com", passphrase=PASSPHRASE):
    return sign(
        {
            "m_payment_id": f"subscription_{plan_id}_1735689600",
            "pf_payment_id": pf_payment_id,
            "payment_status": status,
            "item_name": "Pro",
            "amount_gross": "299.00",
            "email_address": email,
            "merchant_id": MERCHANT_ID,
        },
        passphrase,
    )


# ---------------------------------------------------------------------------
# PayFast gateway
# ---------------------------------------------------------------------------


class TestPaymentSubject:
    def test_link(self):
        assert parse_subject("42") == LinkSubject(42)

    def test_subscription(self):
        subject = parse_subject("subscription_7_1735689600")
        assert subject == SubscriptionSubject(plan_id=7, nonce="1735689600")
        assert subject.kind == "subscription"

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_missing(self, raw):
        with pytest.raises(ValidationError, match="Missing payment ID"):
            parse_subject(raw)

    @pytest.mark.parametrize("raw", ["abc", "subscription_x_1", "subscription_", "12a"])
    def test_malformed(self, raw):
        with pytest.raises(ValidationError):
            parse_subject(raw)


class TestPaymentEvent:
    def test_parse_complete(self):
        event = parse_event(
            {"m_payment_id": "5", "pf_payment_id": "999", "amount_gross": "10.5", "payment_status": "COMPLETE"}
        )
        assert event.external_payment_id == "999"
        assert event.amount == Decimal("10.50")
        assert event.currency == "ZAR"
        assert event.succeeded
        assert event.event_type == "payment.complete"
        assert event.customer_email is None

    def test_falls_back_to_merchant_payment_id(self):
        event = parse_event({"m_payment_id": "5", "amount_gross": "1.00", "payment_status": "COMPLETE"})
        assert event.external_payment_id == "5"

    def test_non_complete_status_is_failure(self):
        event = parse_event(
            {"m_payment_id": "subscription_1_2", "pf_payment_id": "x", "amount_gross": "1", "payment_status": "FAILED"}
        )
        assert not event.succeeded
        assert event.status == "failed"
        assert event.event_type == "subscription.payment.failed"

    def test_currency_normalised(self):
        event = parse_event(
            {"m_payment_id": "5", "amount_gross": "1", "payment_status": "COMPLETE", "currency": "usd"}
        )
        assert event.currency == "USD"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"amount_gross": "abc"},
            {"amount_gross": ""},
            {"currency": "US"},
            {"payment_status": ""},
        ],
    )
    def test_invalid_fields(self, overrides):
        payload = {"m_payment_id": "5", "amount_gross": "1.00", "payment_status": "COMPLETE"}
        payload.update(overrides)
        with pytest.raises(ValidationError):
            parse_event(payload)


class TestPayFastGateway:
    def gateway(self, passphrase="secret"):
        return PayFastGateway(1, MERCHANT_ID, MERCHANT_KEY, passphrase)

    def test_signature_known_value(self):
        data = {"merchant_id": "10000100", "amount": "100.00", "item_name": "Test Item"}
        expected = hashlib.md5(
            b"amount=100.00&item_name=Test+Item&merchant_id=10000100&passphrase=secret"
        ).hexdigest()
        assert self.gateway().generate_signature(data) == expected

    def test_signature_skips_empty_and_signature(self):
        base = {"merchant_id": "10000100", "amount": "100.00"}
        noisy = dict(base, email_address="", signature="deadbeef")
        assert self.gateway().generate_signature(noisy) == self.gateway().generate_signature(base)

    def test_signature_without_passphrase(self):
        expected = hashlib.md5(b"item_name=a%7Eb+c").hexdigest()
        assert self.gateway("").generate_signature({"item_name": "a~b c"}) == expected

    def test_signature_keeps_surrounding_whitespace(self):
        expected = hashlib.md5(b"amount=100.00&item_name=+Widget+&note=+").hexdigest()
        data = {"amount": "100.00", "item_name": " Widget ", "note": " "}
        assert self.gateway("").generate_signature(data) == expected

    def test_verify_payload_with_padded_value(self):
        payload = {
            "m_payment_id": "3",
            "amount_gross": "5.00",
            "payment_status": "COMPLETE",
            "custom_str1": " ref ",
        }
        payload["signature"] = hashlib.md5(
            b"amount_gross=5.00&custom_str1=+ref+&m_payment_id=3"
            b"&payment_status=COMPLETE&passphrase=secret"
        ).hexdigest()
        assert self.gateway().verify_signature(payload)

    def test_verify_accepts_signed_payload(self):
        gateway = self.gateway()
        payload = {"m_payment_id": "3", "amount_gross": "5.00", "payment_status": "COMPLETE"}
        payload["signature"] = gateway.generate_signature(payload).upper()
        assert gateway.verify(payload).amount == Decimal("5.00")

    def test_verify_rejects_tampering(self):
        gateway = self.gateway()
        payload = {"m_payment_id": "3", "amount_gross": "5.00", "payment_status": "COMPLETE"}
        payload["signature"] = gateway.generate_signature(payload)
        payload["amount_gross"] = "500.00"
        with pytest.raises(AuthenticationError, match="Invalid signature"):
            gateway.verify(payload)

    def test_verify_rejects_missing_signature(self):
        with pytest.raises(AuthenticationError):
            self.gateway().verify({"m_payment_id": "3", "amount_gross": "5.00", "payment_status": "COMPLETE"})

    def test_verify_requires_configuration(self):
        with pytest.raises(AuthenticationError, match="not configured"):
            PayFastGateway(1).verify({"m_payment_id": "3", "signature": "x"})

    def test_for_tenant(self, app, sample_data):
        with app.app_context():
            gateway = PayFastGateway.for_tenant(sample_data["tenant_id"])
            assert gateway.passphrase == PASSPHRASE
            assert gateway.configuration_status() == {
                "configured": True,
                "mode": "test",
                "has_merchant_id": True,
                "has_merchant_key": True,
                "has_passphrase": True,
            }
            assert PayFastGateway.for_tenant(9999).is_configured() is False

    def test_checkout_fields_are_signed(self, app):
        gateway = self.gateway()
        form = gateway.checkout_fields(app.config["PAYFAST_CONFIG"], "12", Decimal("99.5"), "Widget")
        assert form["action"] == "https://sandbox.payfast.co.za/eng/process"
        assert form["fields"]["amount"] == "99.50"
        assert form["fields"]["m_payment_id"] == "12"
        assert gateway.verify_signature(form["fields"])

    def test_checkout_subscription_fields(self, app):
        form = self.gateway().checkout_fields(
            app.config["PAYFAST_CONFIG"], "subscription_1_1", Decimal("299"), "Pro",
            subscription_frequency="yearly",
        )
        assert form["fields"]["subscription_type"] == "1"
        assert form["fields"]["frequency"] == "6"
        assert form["fields"]["cycles"] == "0"

    def test_checkout_requires_configuration(self, app):
        with pytest.raises(ValidationError):
            PayFastGateway(1).checkout_fields(app.config["PAYFAST_CONFIG"], "1", Decimal("1"), "x")


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class TestLedger:
    def event(self, pf_payment_id="777"):
        return parse_event(
            {"m_payment_id": "1", "pf_payment_id": pf_payment_id, "amount_gross": "207.00", "payment_status": "COMPLETE"}
        )

    def test_record_new(self, app, sample_data):
        with app.app_context():
            txn, is_new = ledger.record_if_new(sample_data["tenant_id"], self.event())
            assert is_new is True
            assert txn.id is not None
            assert txn.payment_provider == "payfast"
            assert txn.status == "succeeded"
            assert txn.raw_payload["pf_payment_id"] == "777"

    def test_record_duplicate(self, app, sample_data):
        with app.app_context():
            first, _ = ledger.record_if_new(sample_data["tenant_id"], self.event())
            db.session.commit()
            again, is_new = ledger.record_if_new(sample_data["tenant_id"], self.event())
            assert is_new is False
            assert again.id == first.id
            assert Transaction.query.count() == 1

    def test_lost_insert_race(self, app, sample_data, monkeypatch):
        with app.app_context():
            winner, _ = ledger.record_if_new(sample_data["tenant_id"], self.event())
            db.session.commit()
            winner_id = winner.id

            real_find = ledger.find_transaction
            calls = []

            def stale_find(provider, external_id):
                calls.append(external_id)
                if len(calls) == 1:
                    return None
                return real_find(provider, external_id)

            monkeypatch.setattr(ledger, "find_transaction", stale_find)
            txn, is_new = ledger.record_if_new(sample_data["tenant_id"], self.event())
            assert is_new is False
            assert txn.id == winner_id
            assert Transaction.query.count() == 1

    def test_attach_only_sets_links(self, app, sample_data):
        with app.app_context():
            txn, _ = ledger.record_if_new(sample_data["tenant_id"], self.event())
            plan = db.session.get(SubscriptionPlan, sample_data["plan_id"])
            sub, _ = subscriptions.find_or_create(
                sample_data["tenant_id"], plan, "a@b.test", "777", utc(2025, 1, 1)
            )
            ledger.attach(txn, subscription_id=sub.id)
            assert txn.subscription_id == sub.id
            assert txn.order_id is None
            assert txn.amount == Decimal("207.00")


# ---------------------------------------------------------------------------
# Subscriptions
# ---------------------------------------------------------------------------


class TestSubscriptionPeriods:
    def test_interval_delta(self):
        start = utc(2025, 1, 31)
        assert start + subscriptions.interval_delta("weekly") == utc(2025, 2, 7)
        assert start + subscriptions.interval_delta("monthly") == utc(2025, 2, 28)
        assert start + subscriptions.interval_delta("yearly") == utc(2026, 1, 31)

    def test_unknown_interval_defaults_to_monthly(self):
        assert utc(2025, 1, 1) + subscriptions.interval_delta("fortnightly") == utc(2025, 2, 1)
        assert utc(2025, 1, 1) + subscriptions.interval_delta(None) == utc(2025, 2, 1)

    def test_advance_restarts_period_at_payment(self, app, sample_data):
        with app.app_context():
            plan = db.session.get(SubscriptionPlan, sample_data["plan_id"])
            sub, created = subscriptions.find_or_create(
                sample_data["tenant_id"], plan, "john@example.com", "ABC", utc(2025, 1, 1)
            )
            assert created is True
            subscriptions.mark_past_due(sub)
            subscriptions.advance(sub, plan, utc(2025, 2, 3))
            assert sub.status == "active"
            assert as_utc(sub.current_period_start) == utc(2025, 2, 3)
            assert as_utc(sub.current_period_end) == utc(2025, 3, 3)

    def test_mark_past_due_keeps_period(self, app, sample_data):
        with app.app_context():
            plan = db.session.get(SubscriptionPlan, sample_data["plan_id"])
            sub, _ = subscriptions.find_or_create(
                sample_data["tenant_id"], plan, None, "ABC", utc(2025, 1, 1)
            )
            subscriptions.mark_past_due(sub)
            assert sub.status == "past_due"
            assert as_utc(sub.current_period_end) == utc(2025, 2, 1)


class TestSubscriptionCorrelation:
    def test_by_provider_payment_id_first(self, app, sample_data):
        with app.app_context():
            tid = sample_data["tenant_id"]
            plan = db.session.get(SubscriptionPlan, sample_data["plan_id"])
            by_email, _ = subscriptions.find_or_create(tid, plan, "shared@example.com", "ONE", utc(2025, 1, 1))
            by_id, _ = subscriptions.find_or_create(tid, plan, "other@example.com", "TWO", utc(2025, 1, 1))
            key = subscriptions.CorrelationKey(tid, plan.id, "TWO", "shared@example.com")
            assert subscriptions.find_existing(key).id == by_id.id
            assert by_email.id != by_id.id

    def test_by_email_case_insensitive(self, app, sample_data):
        with app.app_context():
            tid = sample_data["tenant_id"]
            plan = db.session.get(SubscriptionPlan, sample_data["plan_id"])
            sub, _ = subscriptions.find_or_create(tid, plan, "John@Example.com", "ABC", utc(2025, 1, 1))
            match, created = subscriptions.find_or_create(tid, plan, "JOHN@EXAMPLE.COM", "DEF", utc(2025, 2, 3))
            assert created is False
            assert match.id == sub.id
            assert match.provider_payment_id == "DEF"

    def test_scoped_to_plan_and_tenant(self, app, sample_data):
        with app.app_context():
            tid = sample_data["tenant_id"]
            plan = db.session.get(SubscriptionPlan, sample_data["plan_id"])
            other_plan = SubscriptionPlan(tenant_id=tid, name="Basic", interval="monthly", price=Decimal("99"))
            db.session.add(other_plan)
            db.session.flush()
            sub, _ = subscriptions.find_or_create(tid, plan, "john@example.com", "ABC", utc(2025, 1, 1))
            _, created = subscriptions.find_or_create(tid, other_plan, "john@example.com", "ABC2", utc(2025, 1, 1))
            assert created is True
            key = subscriptions.CorrelationKey(sample_data["other_tenant_id"], plan.id, "ABC", "john@example.com")
            assert subscriptions.find_existing(key) is None

    def test_no_keys_no_match(self, app, sample_data):
        with app.app_context():
            key = subscriptions.CorrelationKey(sample_data["tenant_id"], sample_data["plan_id"], None, None)
            assert subscriptions.find_existing(key) is None


# ---------------------------------------------------------------------------
# Reconciliation: payment links
# ---------------------------------------------------------------------------


class TestLinkReconciliation:
    def test_completed_payment(self, app, sample_data, sent_quote, payment_link):
        with app.app_context():
            ack = ReconciliationService().handle(link_payload(payment_link))
            assert ack == Acknowledgment("success", "ITN processed successfully")

            link = db.session.get(PaymentLink, payment_link)
            assert link.status == "completed"
            assert link.completed_at is not None

            quote = db.session.get(Quote, sent_quote)
            assert quote.status == "accepted"
            assert quote.is_primary is True
            assert db.session.get(Deal, sample_data["deal_id"]).status == "won"

            txn = Transaction.query.one()
            assert txn.tenant_id == sample_data["tenant_id"]
            assert txn.provider_event_id == "1089250"
            assert txn.status == "succeeded"
            assert txn.event_type == "payment.complete"
            assert txn.amount == Decimal("207.00")
            assert txn.payment_link_id == link.id
            assert txn.order_id == link.order_id

            order = db.session.get(Order, link.order_id)
            assert order.status == "paid"
            assert order.payment_status == "paid"
            assert order.payment_method == "payfast"
            assert order.payment_reference == "1089250"
            assert order.total == Decimal("207.00")
            assert order.paid_at is not None

            invoice = order.invoice
            assert invoice.invoice_number.startswith("INV-")
            assert invoice.status == "paid"
            assert len(invoice.items) == 1
            assert invoice.items[0].total == Decimal("207.00")

    def test_redelivery_is_acknowledged_once(self, app, sample_data, payment_link):
        with app.app_context():
            service = ReconciliationService()
            payload = link_payload(payment_link)
            acks = [service.handle(payload) for _ in range(3)]
            assert [a.status for a in acks] == ["success", "duplicate", "duplicate"]
            assert all(a.http_status == 200 for a in acks)
            assert acks[1].message == "Payment already processed"

            assert Transaction.query.count() == 1
            assert Order.query.count() == 1
            assert OrderInvoice.query.count() == 1
            assert AuditLog.query.filter_by(action="deal_won").count() == 1
            assert AuditLog.query.filter_by(action="payment_completed").count() == 1

    def test_failed_payment(self, app, sample_data, sent_quote, payment_link):
        with app.app_context():
            ack = ReconciliationService().handle(link_payload(payment_link, status="FAILED"))
            assert ack.status == "success"

            link = db.session.get(PaymentLink, payment_link)
            assert link.status == "cancelled"
            order = db.session.get(Order, link.order_id)
            assert order.status == "failed"
            assert order.payment_status == "failed"
            txn = Transaction.query.one()
            assert txn.status == "failed"
            assert txn.order_id == order.id
            assert db.session.get(Quote, sent_quote).status == "sent"
            assert db.session.get(Deal, sample_data["deal_id"]).status == "open"
            assert OrderInvoice.query.count() == 0

    def test_failure_after_completion_is_ignored(self, app, sample_data, payment_link):
        with app.app_context():
            service = ReconciliationService()
            service.handle(link_payload(payment_link, pf_payment_id="1"))
            ack = service.handle(link_payload(payment_link, pf_payment_id="2", status="FAILED"))
            assert ack.status == "success"

            link = db.session.get(PaymentLink, payment_link)
            assert link.status == "completed"
            assert db.session.get(Order, link.order_id).status == "paid"
            late = Transaction.query.filter_by(provider_event_id="2").one()
            assert late.status == "failed"
            assert late.order_id == link.order_id

    def test_retry_after_failure(self, app, sample_data, sent_quote, payment_link):
        with app.app_context():
            service = ReconciliationService()
            service.handle(link_payload(payment_link, pf_payment_id="1", status="FAILED"))
            service.handle(link_payload(payment_link, pf_payment_id="2"))

            link = db.session.get(PaymentLink, payment_link)
            assert link.status == "completed"
            assert Order.query.count() == 1
            assert db.session.get(Order, link.order_id).status == "paid"
            assert db.session.get(Quote, sent_quote).status == "accepted"

    def test_payment_for_rejected_quote(self, app, sample_data, sent_quote, payment_link):
        with app.app_context():
            reject_quote(sample_data["tenant_id"], sent_quote)
            db.session.commit()
            ack = ReconciliationService().handle(link_payload(payment_link))
            assert ack.status == "success"
            assert db.session.get(Quote, sent_quote).status == "rejected"
            assert db.session.get(Deal, sample_data["deal_id"]).status == "open"
            link = db.session.get(PaymentLink, payment_link)
            assert db.session.get(Order, link.order_id).status == "paid"

    def test_amount_mismatch_still_recorded(self, app, sample_data, payment_link):
        with app.app_context():
            ack = ReconciliationService().handle(link_payload(payment_link, amount="200.00"))
            assert ack.status == "success"
            assert Transaction.query.one().amount == Decimal("200.00")

    def test_crash_rolls_back_everything(self, app, sample_data, sent_quote, payment_link, monkeypatch):
        def boom(order, paid_at=None):
            raise RuntimeError("disk full")

        with app.app_context():
            monkeypatch.setattr(order_service, "issue_invoice", boom)
            ack = ReconciliationService().handle(link_payload(payment_link))
            assert ack == Acknowledgment("error", "Processing failed", 500)
            assert Transaction.query.count() == 0
            assert Order.query.count() == 0
            assert db.session.get(PaymentLink, payment_link).status == "pending"
            assert db.session.get(Quote, sent_quote).status == "sent"

            monkeypatch.undo()
            ack = ReconciliationService().handle(link_payload(payment_link))
            assert ack.status == "success"
            assert OrderInvoice.query.count() == 1


class TestWebhookRejections:
    def test_invalid_signature(self, app, sample_data, payment_link):
        payload = link_payload(payment_link)
        payload["amount_gross"] = "1.00"
        with app.app_context():
            ack = ReconciliationService().handle(payload)
            assert ack == Acknowledgment("error", "Invalid signature", 400)
            assert Transaction.query.count() == 0
            assert db.session.get(PaymentLink, payment_link).status == "pending"

    def test_missing_signature(self, app, sample_data, payment_link):
        payload = link_payload(payment_link)
        del payload["signature"]
        with app.app_context():
            assert ReconciliationService().handle(payload).http_status == 400

    def test_signed_with_other_tenant_secret(self, app, sample_data, payment_link):
        payload = sign(
            {"m_payment_id": str(payment_link), "pf_payment_id": "1", "amount_gross": "207.00", "payment_status": "COMPLETE"},
            OTHER_PASSPHRASE,
        )
        with app.app_context():
            assert ReconciliationService().handle(payload).http_status == 400
            assert Transaction.query.count() == 0

    def test_missing_payment_id(self, app, sample_data):
        with app.app_context():
            ack = ReconciliationService().handle({"payment_status": "COMPLETE"})
            assert ack == Acknowledgment("error", "Missing payment ID", 400)

    def test_malformed_payment_id(self, app, sample_data):
        with app.app_context():
            assert ReconciliationService().handle({"m_payment_id": "order-5"}).http_status == 400

    def test_unknown_link(self, app, sample_data):
        with app.app_context():
            ack = ReconciliationService().handle(link_payload(9999))
            assert ack.http_status == 404

    def test_unknown_plan(self, app, sample_data):
        with app.app_context():
            ack = ReconciliationService().handle(subscription_payload(9999, "ABC"))
            assert ack.http_status == 404

    def test_unconfigured_tenant(self, app, sample_data, payment_link):
        with app.app_context():
            CommerceSetting.query.filter_by(tenant_id=sample_data["tenant_id"]).delete()
            db.session.commit()
            ack = ReconciliationService().handle(link_payload(payment_link))
            assert ack == Acknowledgment("error", "Payment gateway not configured for tenant", 400)

    def test_invalid_amount(self, app, sample_data, payment_link):
        with app.app_context():
            ack = ReconciliationService().handle(link_payload(payment_link, amount="lots"))
            assert ack.http_status == 400
            assert Transaction.query.count() == 0


# ---------------------------------------------------------------------------
# Reconciliation: subscriptions
# ---------------------------------------------------------------------------


class TestSubscriptionReconciliation:
    def test_first_and_renewal_payment(self, app, sample_data):
        plan_id = sample_data["plan_id"]
        with app.app_context():
            ack = ReconciliationService(fixed_clock(utc(2025, 1, 1))).handle(
                subscription_payload(plan_id, "ABC")
            )
            assert ack == Acknowledgment("success", "Subscription payment processed successfully")
            sub = Subscription.query.one()
            assert sub.status == "active"
            assert sub.customer_email == "john@example.com"
            assert as_utc(sub.current_period_start) == utc(2025, 1, 1)
            assert as_utc(sub.current_period_end) == utc(2025, 2, 1)

            ReconciliationService(fixed_clock(utc(2025, 2, 3))).handle(
                subscription_payload(plan_id, "DEF")
            )
            sub = Subscription.query.one()
            assert sub.provider_payment_id == "DEF"
            assert as_utc(sub.current_period_start) == utc(2025, 2, 3)
            assert as_utc(sub.current_period_end) == utc(2025, 3, 3)

            invoices = SubscriptionInvoice.query.order_by(SubscriptionInvoice.id).all()
            assert [i.provider_invoice_id for i in invoices] == ["payfast_ABC", "payfast_DEF"]
            assert all(i.amount_cents == 29900 for i in invoices)
            assert as_utc(invoices[1].period_end) == utc(2025, 3, 3)
            assert all(t.subscription_id == sub.id for t in Transaction.query.all())

    def test_redelivery(self, app, sample_data):
        with app.app_context():
            service = ReconciliationService(fixed_clock(utc(2025, 1, 1)))
            payload = subscription_payload(sample_data["plan_id"], "ABC")
            service.handle(payload)
            assert service.handle(payload).status == "duplicate"
            assert SubscriptionInvoice.query.count() == 1
            assert Subscription.query.count() == 1

    def test_failed_renewal_marks_past_due(self, app, sample_data):
        plan_id = sample_data["plan_id"]
        with app.app_context():
            ReconciliationService(fixed_clock(utc(2025, 1, 1))).handle(subscription_payload(plan_id, "ABC"))
            ack = ReconciliationService(fixed_clock(utc(2025, 2, 1))).handle(
                subscription_payload(plan_id, "GHI", status="FAILED")
            )
            assert ack == Acknowledgment("failed", "Subscription payment failed", 200)

            sub = Subscription.query.one()
            assert sub.status == "past_due"
            assert as_utc(sub.current_period_end) == utc(2025, 2, 1)
            txn = Transaction.query.filter_by(provider_event_id="GHI").one()
            assert txn.status == "failed"
            assert txn.event_type == "subscription.payment.failed"
            assert txn.subscription_id == sub.id
            assert SubscriptionInvoice.query.count() == 1

    def test_failed_first_payment_creates_nothing(self, app, sample_data):
        with app.app_context():
            ack = ReconciliationService().handle(
                subscription_payload(sample_data["plan_id"], "ABC", status="FAILED")
            )
            assert ack.status == "failed"
            assert ack.http_status == 200
            assert Subscription.query.count() == 0
            assert Transaction.query.one().subscription_id is None

    def test_other_tenant_secret_rejected(self, app, sample_data):
        with app.app_context():
            ack = ReconciliationService().handle(
                subscription_payload(sample_data["plan_id"], "ABC", passphrase=OTHER_PASSPHRASE)
            )
            assert ack.http_status == 400
            assert Subscription.query.count() == 0


# ---------------------------------------------------------------------------
# Webhook endpoint
# ---------------------------------------------------------------------------


class TestWebhookRoute:
    def test_form_encoded_notification(self, app, client, sample_data, payment_link):
        resp = client.post(WEBHOOK_URL, data=link_payload(payment_link))
        assert resp.status_code == 200
        assert resp.get_json() == {"status": "success", "message": "ITN processed successfully"}
        with app.app_context():
            assert db.session.get(PaymentLink, payment_link).status == "completed"

    def test_json_notification(self, client, sample_data, payment_link):
        resp = client.post(WEBHOOK_URL, json=link_payload(payment_link))
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "success"

    def test_duplicate_notification(self, client, sample_data, payment_link):
        payload = link_payload(payment_link)
        client.post(WEBHOOK_URL, data=payload)
        resp = client.post(WEBHOOK_URL, data=payload)
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "duplicate"

    def test_bad_signature(self, client, sample_data, payment_link):
        payload = link_payload(payment_link)
        payload["signature"] = "0" * 32
        resp = client.post(WEBHOOK_URL, data=payload)
        assert resp.status_code == 400
        assert resp.get_json() == {"status": "error", "message": "Invalid signature"}

    def test_unknown_link(self, client, sample_data):
        resp = client.post(WEBHOOK_URL, data=link_payload(9999))
        assert resp.status_code == 404

    def test_empty_body(self, client):
        resp = client.post(WEBHOOK_URL)
        assert resp.status_code == 400

    def test_get_not_allowed(self, client):
        assert client.get(WEBHOOK_URL).status_code == 405


# ---------------------------------------------------------------------------
# Payment link & checkout API
# ---------------------------------------------------------------------------


class TestPaymentLinkApi:
    def test_create_link(self, client, sample_data, sent_quote):
        resp = client.post(
            "/api/payment-links",
            json={"quote_id": sent_quote},
            headers={"X-Tenant-ID": str(sample_data["tenant_id"])},
        )
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["amount"] == "207.00"
        assert data["currency"] == "ZAR"
        assert data["status"] == "pending"
        assert data["description"].startswith("Quote Q-")

    def test_create_link_for_draft(self, app, client, sample_data):
        hdrs = {"X-Tenant-ID": str(sample_data["tenant_id"])}
        quote_id = client.post(
            "/api/quotes",
            json={"deal_id": sample_data["deal_id"], "items": [{"name": "x", "unit_price": "5"}]},
            headers=hdrs,
        ).get_json()["id"]
        resp = client.post("/api/payment-links", json={"quote_id": quote_id}, headers=hdrs)
        assert resp.status_code == 422

    def test_create_link_requires_quote(self, client, sample_data):
        resp = client.post(
            "/api/payment-links", json={}, headers={"X-Tenant-ID": str(sample_data["tenant_id"])}
        )
        assert resp.status_code == 422

    def test_create_link_for_other_tenant_quote(self, client, sample_data, sent_quote):
        resp = client.post(
            "/api/payment-links",
            json={"quote_id": sent_quote},
            headers={"X-Tenant-ID": str(sample_data["other_tenant_id"])},
        )
        assert resp.status_code == 404

    def test_link_detail(self, client, sample_data, payment_link):
        resp = client.get(
            f"/api/payment-links/{payment_link}", headers={"X-Tenant-ID": str(sample_data["tenant_id"])}
        )
        assert resp.status_code == 200
        assert resp.get_json()["id"] == payment_link

    def test_checkout(self, app, client, sample_data, payment_link):
        resp = client.get(
            f"/api/payment-links/{payment_link}/checkout",
            headers={"X-Tenant-ID": str(sample_data["tenant_id"])},
        )
        assert resp.status_code == 200
        form = resp.get_json()
        assert form["action"] == "https://sandbox.payfast.co.za/eng/process"
        fields = form["fields"]
        assert fields["m_payment_id"] == str(payment_link)
        assert fields["amount"] == "207.00"
        assert fields["merchant_id"] == MERCHANT_ID
        assert PayFastGateway(sample_data["tenant_id"], MERCHANT_ID, MERCHANT_KEY, PASSPHRASE).verify_signature(fields)

    def test_checkout_completed_link(self, app, client, sample_data, payment_link):
        with app.app_context():
            ReconciliationService().handle(link_payload(payment_link))
        resp = client.get(
            f"/api/payment-links/{payment_link}/checkout",
            headers={"X-Tenant-ID": str(sample_data["tenant_id"])},
        )
        assert resp.status_code == 422

    def test_subscription_checkout(self, client, sample_data):
        resp = client.post(
            "/api/subscriptions/checkout",
            json={"plan_id": sample_data["plan_id"], "email": "john@example.com"},
            headers={"X-Tenant-ID": str(sample_data["tenant_id"])},
        )
        assert resp.status_code == 200
        fields = resp.get_json()["fields"]
        assert fields["m_payment_id"].startswith(f"subscription_{sample_data['plan_id']}_")
        assert fields["amount"] == "299.00"
        assert fields["frequency"] == "3"
        assert fields["email_address"] == "john@example.com"

    def test_settings_status(self, client, sample_data):
        resp = client.get(
            "/api/commerce/settings/status", headers={"X-Tenant-ID": str(sample_data["tenant_id"])}
        )
        assert resp.status_code == 200
        assert resp.get_json()["configured"] is True


# ---------------------------------------------------------------------------
# Order invoice API
# ---------------------------------------------------------------------------


@pytest.fixture
def paid_invoice(app, sample_data, payment_link):
    """The invoice issued when the payment link is paid."""
    with app.app_context():
        ReconciliationService().handle(link_payload(payment_link))
        invoice = OrderInvoice.query.one()
        return {
            "id": invoice.id,
            "order_id": invoice.order_id,
            "quote_id": invoice.quote_id,
            "number": invoice.invoice_number,
        }


class TestOrderInvoiceApi:
    def test_invoice_detail(self, client, sample_data, paid_invoice):
        resp = client.get(f"/api/order-invoices/{paid_invoice['id']}", headers=headers(sample_data["tenant_id"]))
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["invoice_number"] == paid_invoice["number"]
        assert data["status"] == "paid"
        assert data["total"] == "207.00"
        assert data["payment_reference"] == "1089250"
        assert data["sent_at"] is None
        assert data["items"] == [
            {
                "id": data["items"][0]["id"],
                "description": "Consulting",
                "quantity": 2,
                "unit_price": "100.00",
                "discount": "10.00",
                "tax_rate": "15.00",
                "total": "207.00",
            }
        ]

    def test_invoice_by_order_and_quote(self, client, sample_data, paid_invoice):
        hdrs = headers(sample_data["tenant_id"])
        by_order = client.get(f"/api/orders/{paid_invoice['order_id']}/invoice", headers=hdrs)
        by_quote = client.get(f"/api/quotes/{paid_invoice['quote_id']}/invoice", headers=hdrs)
        assert by_order.status_code == 200
        assert by_quote.status_code == 200
        assert by_order.get_json()["id"] == by_quote.get_json()["id"] == paid_invoice["id"]

    def test_order_detail(self, client, sample_data, paid_invoice):
        resp = client.get(f"/api/orders/{paid_invoice['order_id']}", headers=headers(sample_data["tenant_id"]))
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["status"] == "paid"
        assert data["payment_method"] == "payfast"
        assert data["invoice_id"] == paid_invoice["id"]

    def test_order_without_invoice(self, app, client, sample_data, sent_quote):
        with app.app_context():
            order_id = order_service.sync_from_quote(db.session.get(Quote, sent_quote)).id
            db.session.commit()
        hdrs = headers(sample_data["tenant_id"])
        assert client.get(f"/api/orders/{order_id}/invoice", headers=hdrs).status_code == 404
        assert client.get(f"/api/quotes/{sent_quote}/invoice", headers=hdrs).status_code == 404

    def test_other_tenant_invoice(self, client, sample_data, paid_invoice):
        hdrs = headers(sample_data["other_tenant_id"])
        assert client.get(f"/api/order-invoices/{paid_invoice['id']}", headers=hdrs).status_code == 404
        assert client.get(f"/api/orders/{paid_invoice['order_id']}/invoice", headers=hdrs).status_code == 404
        assert client.post(f"/api/order-invoices/{paid_invoice['id']}/send", headers=hdrs).status_code == 404

    def test_render_html(self, app, sample_data, paid_invoice, tmp_path):
        with app.app_context():
            invoice = db.session.get(OrderInvoice, paid_invoice["id"])
            html = InvoiceDocumentRenderer(str(tmp_path)).render_html(invoice)
            assert paid_invoice["number"] in html
            assert invoice.order.order_number in html
            assert "Jane Buyer" in html
            assert "207.00" in html
            assert "PAID" in html

    def test_invoice_pdf(self, app, client, sample_data, paid_invoice):
        resp = client.get(f"/api/order-invoices/{paid_invoice['id']}/pdf", headers=headers(sample_data["tenant_id"]))
        assert resp.status_code == 200
        assert resp.mimetype == "application/pdf"
        assert resp.data.startswith(b"%PDF")
        with app.app_context():
            invoice = db.session.get(OrderInvoice, paid_invoice["id"])
            assert invoice.pdf_path == f"invoices/invoice-{paid_invoice['number']}.pdf"

    def test_send_to_deal_contact(self, app, client, sample_data, paid_invoice, monkeypatch):
        sent = []
        app.config["EMAIL_CONFIG"].enabled = True
        monkeypatch.setattr(
            "routes.orders.send_invoice_email",
            lambda config, invoice, recipient, pdf, company: sent.append((recipient, pdf[:4], company)),
        )
        resp = client.post(f"/api/order-invoices/{paid_invoice['id']}/send", headers=headers(sample_data["tenant_id"]))
        assert resp.status_code == 200
        assert resp.get_json()["sent_at"] is not None
        assert sent == [("jane@client.test", b"%PDF", "Acme Ltd")]
        with app.app_context():
            assert AuditLog.query.filter_by(action="order_invoice_sent").count() == 1

    def test_send_to_explicit_address(self, app, client, sample_data, paid_invoice, monkeypatch):
        sent = []
        app.config["EMAIL_CONFIG"].enabled = True
        monkeypatch.setattr(
            "routes.orders.send_invoice_email",
            lambda config, invoice, recipient, pdf, company: sent.append(recipient),
        )
        resp = client.post(
            f"/api/order-invoices/{paid_invoice['id']}/send",
            json={"email": "ap@client.test"},
            headers=headers(sample_data["tenant_id"]),
        )
        assert resp.status_code == 200
        assert sent == ["ap@client.test"]

    def test_send_invalid_address(self, app, client, sample_data, paid_invoice):
        app.config["EMAIL_CONFIG"].enabled = True
        resp = client.post(
            f"/api/order-invoices/{paid_invoice['id']}/send",
            json={"email": "not-an-address"},
            headers=headers(sample_data["tenant_id"]),
        )
        assert resp.status_code == 422
        assert "email" in resp.get_json()["details"]

    def test_send_with_email_disabled(self, client, sample_data, paid_invoice):
        resp = client.post(f"/api/order-invoices/{paid_invoice['id']}/send", headers=headers(sample_data["tenant_id"]))
        assert resp.status_code == 422

    def test_send_failure(self, app, client, sample_data, paid_invoice, monkeypatch):
        def fail(*args, **kwargs):
            raise MailerError("SMTP down")

        app.config["EMAIL_CONFIG"].enabled = True
        monkeypatch.setattr("routes.orders.send_invoice_email", fail)
        hdrs = headers(sample_data["tenant_id"])
        resp = client.post(f"/api/order-invoices/{paid_invoice['id']}/send", headers=hdrs)
        assert resp.status_code == 500
        assert resp.get_json()["kind"] == "persistence"
        assert client.get(f"/api/order-invoices/{paid_invoice['id']}", headers=hdrs).get_json()["sent_at"] is None


# ---------------------------------------------------------------------------
# Gateway settings API
# ---------------------------------------------------------------------------


class TestCommerceSettingsApi:
    URL = "/api/commerce/settings"

    def test_secrets_are_masked(self, client, sample_data):
        resp = client.get(self.URL, headers=headers(sample_data["tenant_id"]))
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["payfast_merchant_id"] == MERCHANT_ID
        assert data["payfast_merchant_key"] == "***" + MERCHANT_KEY[-4:]
        assert data["payfast_passphrase"] == "***" + PASSPHRASE[-4:]
        assert data["has_keys"] is True
        assert MERCHANT_KEY not in resp.get_data(as_text=True)
        assert PASSPHRASE not in resp.get_data(as_text=True)

    def test_update_keeps_absent_fields(self, app, client, sample_data):
        tid = sample_data["tenant_id"]
        resp = client.put(
            self.URL,
            json={"payfast_merchant_id": "10000999", "payfast_passphrase": "rotated-pass", "mode": "live"},
            headers=headers(tid),
        )
        assert resp.status_code == 200
        assert resp.get_json()["mode"] == "live"
        with app.app_context():
            gateway = PayFastGateway.for_tenant(tid)
            assert gateway.merchant_id == "10000999"
            assert gateway.merchant_key == MERCHANT_KEY
            assert gateway.passphrase == "rotated-pass"
            assert gateway.mode == "live"
            entry = AuditLog.query.filter_by(action="commerce_settings_updated").one()
            assert entry.details == "mode, payfast_merchant_id, payfast_passphrase"

    def test_empty_value_clears_passphrase(self, app, client, sample_data):
        tid = sample_data["tenant_id"]
        resp = client.put(self.URL, json={"payfast_passphrase": ""}, headers=headers(tid))
        assert resp.status_code == 200
        assert resp.get_json()["payfast_passphrase"] is None
        with app.app_context():
            assert PayFastGateway.for_tenant(tid).passphrase == ""

    @pytest.mark.parametrize(
        "body, field",
        [
            ({"mode": "production"}, "mode"),
            ({"payfast_merchant_key": "abc"}, "payfast_merchant_key"),
            ({"payfast_merchant_id": 10000100}, "payfast_merchant_id"),
            ({"payfast_passphrase": "x" * 121}, "payfast_passphrase"),
        ],
    )
    def test_invalid_update(self, app, client, sample_data, body, field):
        resp = client.put(self.URL, json=body, headers=headers(sample_data["tenant_id"]))
        assert resp.status_code == 422
        assert field in resp.get_json()["details"]
        with app.app_context():
            assert PayFastGateway.for_tenant(sample_data["tenant_id"]).mode == "test"

    def test_reset(self, client, sample_data):
        hdrs = headers(sample_data["tenant_id"])
        resp = client.post(f"{self.URL}/reset", headers=hdrs)
        assert resp.status_code == 200
        data = resp.get_json()
        assert data["has_keys"] is False
        assert data["mode"] == "test"
        assert data["payfast_merchant_key"] is None
        assert client.get(f"{self.URL}/status", headers=hdrs).get_json()["configured"] is False

    def test_reset_leaves_other_tenant(self, app, client, sample_data):
        client.post(f"{self.URL}/reset", headers=headers(sample_data["tenant_id"]))
        with app.app_context():
            assert PayFastGateway.for_tenant(sample_data["other_tenant_id"]).is_configured()

    def test_first_configuration(self, app, client, sample_data):
        with app.app_context():
            tenant = Tenant(name="Initech", slug="initech")
            db.session.add(tenant)
            db.session.commit()
            tid = tenant.id
        resp = client.put(
            self.URL,
            json={"payfast_merchant_id": "10000300", "payfast_merchant_key": "c3d4e5f6a7b8c"},
            headers=headers(tid),
        )
        assert resp.status_code == 200
        assert resp.get_json()["has_keys"] is True
        with app.app_context():
            assert CommerceSetting.query.filter_by(tenant_id=tid).count() == 1
