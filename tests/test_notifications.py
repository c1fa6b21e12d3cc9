"""Tests for payment-failure notifications (producer and SMTP sender)."""

from __future__ import annotations

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from billing_sync.jobs.base import Job, RetryPolicy
from billing_sync.jobs.memory import InMemoryJobQueue
from billing_sync.notifications import (
    PAYMENT_FAILURE,
    EmailNotificationSender,
    NotificationDispatcher,
    render,
)
from billing_sync.store.models import BillingCustomer, Invoice
from billing_sync.store.repositories import Repositories

JOB = "billing-notification"


@pytest.fixture()
def repos() -> Repositories:
    repos = Repositories()
    customer = repos.customers.create(
        BillingCustomer(
            external_customer_id="cus_1",
            tenant_id="tenant-a",
            email="billing@acme.test",
            name="Acme",
            currency="eur",
        )
    )
    repos.invoices.create(
        Invoice(
            external_invoice_id="in_1",
            billing_customer_id=customer.id,
            number="INV-0001",
            hosted_invoice_url="https://pay.example.test/in_1",
        )
    )
    return repos


@pytest.fixture()
def queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture()
def dispatcher(queue, repos) -> NotificationDispatcher:
    return NotificationDispatcher(queue, repos, job_type=JOB, policy=RetryPolicy(attempts=3, backoff_seconds=5.0))


class TestDispatcher:
    def test_enqueues_recipient(self, dispatcher, queue):
        job = dispatcher.notify_payment_failure(
            external_customer_id="cus_1",
            external_invoice_id="in_1",
            amount=4999,
            error_message="Your card was declined.",
        )
        assert job is not None
        reserved = queue.reserve(JOB)
        recipient = reserved.payload["recipient"]
        assert reserved.payload["template"] == PAYMENT_FAILURE
        assert recipient["to"] == "billing@acme.test"
        assert recipient["amount"] == 49.99
        assert recipient["currency"] == "eur"
        assert recipient["invoice_number"] == "INV-0001"
        assert recipient["invoice_url"] == "https://pay.example.test/in_1"
        assert reserved.policy.backoff_seconds == 5.0

    def test_unknown_customer_skipped(self, dispatcher, queue):
        assert dispatcher.notify_payment_failure(external_customer_id="cus_x") is None
        assert queue.depth(JOB) == 0

    def test_customer_without_email_skipped(self, dispatcher, queue, repos):
        customer = repos.customers.find_by_external_id("cus_1")
        repos.customers.update(customer.id, email=None)
        assert dispatcher.notify_payment_failure(external_customer_id="cus_1") is None
        assert queue.depth(JOB) == 0

    def test_enqueue_failure_is_swallowed(self, dispatcher, queue):
        with patch.object(queue, "enqueue", side_effect=ConnectionError("redis down")):
            assert dispatcher.notify_payment_failure(external_customer_id="cus_1") is None


class TestRender:
    def test_full_context(self):
        subject, body = render(
            PAYMENT_FAILURE,
            {
                "customer_name": "Acme",
                "amount": 49.99,
                "currency": "usd",
                "error_message": "Your card was declined.",
                "invoice_number": "INV-0001",
                "invoice_url": "https://pay.example.test/in_1",
            },
        )
        assert subject == "Payment failed for invoice INV-0001"
        assert "49.99 USD" in body
        assert "Your card was declined." in body
        assert "https://pay.example.test/in_1" in body

    def test_sparse_context(self):
        subject, body = render(PAYMENT_FAILURE, {"to": "a@b.test"})
        assert subject == "Payment failed"
        assert "Hello there" in body
        assert "your payment" in body

    def test_unknown_template(self):
        with pytest.raises(KeyError):
            render("nope", {})


class TestEmailSender:
    def _job(self, **recipient) -> Job:
        recipient.setdefault("to", "billing@acme.test")
        return Job(job_type=JOB, payload={"template": PAYMENT_FAILURE, "recipient": recipient})

    def _sender(self, **overrides) -> EmailNotificationSender:
        config = {
            "smtp_host": "smtp.example.test",
            "smtp_port": 587,
            "smtp_user": "mailer",
            "smtp_password": "secret",
            "smtp_from": "billing@example.test",
        }
        config.update(overrides)
        return EmailNotificationSender(**config)

    @patch("billing_sync.notifications.smtplib.SMTP")
    def test_sends_over_starttls(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value.__enter__.return_value = server

        self._sender()(self._job(amount=12.5, currency="usd"))

        mock_smtp.assert_called_once_with("smtp.example.test", 587, timeout=15)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        msg = server.send_message.call_args.args[0]
        assert msg["To"] == "billing@acme.test"
        assert msg["From"] == "billing@example.test"
        assert msg["Subject"] == "Payment failed"

    @patch("billing_sync.notifications.smtplib.SMTP")
    def test_smtp_error_propagates(self, mock_smtp):
        server = MagicMock()
        server.send_message.side_effect = smtplib.SMTPException("421 try later")
        mock_smtp.return_value.__enter__.return_value = server
        with pytest.raises(smtplib.SMTPException):
            self._sender()(self._job())

    @patch("billing_sync.notifications.smtplib.SMTP")
    def test_unconfigured_sender_drops(self, mock_smtp):
        sender = self._sender(smtp_host="")
        assert not sender.is_configured
        sender(self._job())
        mock_smtp.assert_not_called()

    @patch("billing_sync.notifications.smtplib.SMTP")
    def test_missing_recipient_drops(self, mock_smtp):
        self._sender()(Job(job_type=JOB, payload={"template": PAYMENT_FAILURE, "recipient": {}}))
        mock_smtp.assert_not_called()

    def test_html_part_is_escaped(self):
        msg = self._sender().format_message(
            PAYMENT_FAILURE, {"to": "a@b.test", "customer_name": "<script>"}
        )
        html = msg.get_payload()[1].get_payload(decode=True).decode()
        assert "<script>" not in html
        assert "&lt;script&gt;" in html
