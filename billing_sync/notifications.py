"""Outbound billing notifications.

``NotificationDispatcher`` is called from reconciliation handlers. It enqueues
an independent job on the notification queue and never raises: a failed
enqueue is logged and the parent reconciliation carries on. There is no
outbox, so a notification can be lost if the queue is unreachable at that
moment.

``EmailNotificationSender`` is the consumer side: it renders the template and
delivers it over SMTP with STARTTLS. SMTP errors propagate so the queue's
retry policy applies.
"""

from __future__ import annotations

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any

from billing_sync.jobs.base import BaseJobQueue, Job, RetryPolicy
from billing_sync.store.repositories import Repositories

logger = logging.getLogger(__name__)

PAYMENT_FAILURE = "payment-failure"

_TEMPLATES: dict[str, dict[str, str]] = {
    PAYMENT_FAILURE: {
        "subject": "Payment failed{invoice_suffix}",
        "body": (
            "Hello {customer_name},\n\n"
            "We could not collect {amount} {currency}{invoice_suffix}.\n"
            "Reason: {error_message}\n\n"
            "{invoice_line}"
        ),
    },
}


class NotificationDispatcher:
    """Best-effort producer of notification jobs."""

    def __init__(
        self,
        queue: BaseJobQueue,
        repos: Repositories,
        *,
        job_type: str = "billing-notification",
        policy: RetryPolicy | None = None,
    ):
        self._queue = queue
        self._repos = repos
        self._job_type = job_type
        self._policy = policy or RetryPolicy(attempts=3, backoff_seconds=5.0)

    @property
    def job_type(self) -> str:
        return self._job_type

    def enqueue(self, template: str, recipient: dict[str, Any]) -> Job | None:
        """Enqueue one notification. Returns None if the enqueue failed."""
        try:
            return self._queue.enqueue(
                self._job_type,
                {"template": template, "recipient": recipient},
                self._policy,
            )
        except Exception:
            logger.exception("Failed to enqueue %s notification (dropped)", template)
            return None

    def notify_payment_failure(
        self,
        *,
        external_customer_id: str,
        external_invoice_id: str | None = None,
        payment_intent_id: str | None = None,
        amount: int | None = None,
        currency: str | None = None,
        error_message: str | None = None,
    ) -> Job | None:
        """Queue a payment-failure email to the customer's billing address."""
        customer = self._repos.customers.find_by_external_id(external_customer_id)
        if customer is None:
            logger.warning(
                "Cannot send payment failure notification: customer %s not found",
                external_customer_id,
            )
            return None
        if not customer.email:
            logger.warning(
                "Cannot send payment failure notification: customer %s has no email",
                external_customer_id,
            )
            return None

        invoice = (
            self._repos.invoices.find_by_external_id(external_invoice_id)
            if external_invoice_id
            else None
        )
        recipient = {
            "to": customer.email,
            "customer_name": customer.name,
            "external_customer_id": external_customer_id,
            "external_invoice_id": external_invoice_id,
            "payment_intent_id": payment_intent_id,
            "error_message": error_message or "Payment failed",
            # Provider amounts are minor units.
            "amount": amount / 100 if amount is not None else None,
            "currency": currency or customer.currency,
            "invoice_url": invoice.hosted_invoice_url if invoice else None,
            "invoice_number": invoice.number if invoice else None,
            "locale": "en",
        }
        job = self.enqueue(PAYMENT_FAILURE, recipient)
        if job is not None:
            logger.info(
                "Queued payment failure notification for customer %s", external_customer_id
            )
        return job


def render(template: str, recipient: dict[str, Any]) -> tuple[str, str]:
    """(subject, plain-text body) for a notification."""
    template_def = _TEMPLATES.get(template)
    if template_def is None:
        raise KeyError(f"Unknown notification template: {template}")
    number = recipient.get("invoice_number")
    url = recipient.get("invoice_url")
    amount = recipient.get("amount")
    context = {
        "customer_name": recipient.get("customer_name") or "there",
        "amount": f"{amount:.2f}" if isinstance(amount, (int, float)) else "your payment",
        "currency": (recipient.get("currency") or "").upper(),
        "error_message": recipient.get("error_message") or "Payment failed",
        "invoice_suffix": f" for invoice {number}" if number else "",
        "invoice_line": f"You can pay the invoice here: {url}\n" if url else "",
    }
    return template_def["subject"].format(**context), template_def["body"].format(**context)


class EmailNotificationSender:
    """Notification job handler delivering over SMTP."""

    def __init__(
        self,
        smtp_host: str = "",
        smtp_port: int = 587,
        smtp_user: str = "",
        smtp_password: str = "",
        smtp_from: str = "",
    ):
        self._host = smtp_host
        self._port = smtp_port
        self._user = smtp_user
        self._password = smtp_password
        self._from = smtp_from or smtp_user

    @property
    def is_configured(self) -> bool:
        return bool(self._host and self._from)

    def format_message(self, template: str, recipient: dict[str, Any]) -> MIMEMultipart:
        subject, text_body = render(template, recipient)
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self._from
        msg["To"] = recipient["to"]
        msg.attach(MIMEText(text_body, "plain"))
        paragraphs = "".join(
            f"<p>{escape(p).replace(chr(10), '<br>')}</p>" for p in text_body.split("\n\n") if p
        )
        msg.attach(MIMEText(f'<div style="font-family: Arial, sans-serif;">{paragraphs}</div>', "html"))
        return msg

    def __call__(self, job: Job) -> None:
        template = job.payload.get("template", "")
        recipient = job.payload.get("recipient") or {}
        if not recipient.get("to"):
            logger.warning("Notification job %s has no recipient; dropping", job.id[:8])
            return
        if not self.is_configured:
            logger.warning(
                "Email not configured (missing SMTP host/from); %s for %s not sent",
                template,
                recipient["to"],
            )
            return

        msg = self.format_message(template, recipient)
        with smtplib.SMTP(self._host, self._port, timeout=15) as server:
            server.starttls()
            if self._user and self._password:
                server.login(self._user, self._password)
            server.send_message(msg)
        logger.info("Sent %s notification to %s", template, recipient["to"])
