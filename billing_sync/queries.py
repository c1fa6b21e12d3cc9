"""Tenant-scoped lookups for synchronous callers.

A missing entity raises ``DependencyNotFound`` (404); an entity owned by a
different tenant raises ``AccessDenied`` (403). Nothing here is swallowed.
"""

from __future__ import annotations

from billing_sync.errors import AccessDenied, DependencyNotFound
from billing_sync.store.models import BillingCustomer, Invoice, Subscription
from billing_sync.store.repositories import Repositories


class TenantQueries:
    def __init__(self, repos: Repositories):
        self._repos = repos

    def customer_for(self, tenant_id: str) -> BillingCustomer:
        customer = self._repos.customers.find_by_tenant(tenant_id)
        if customer is None:
            raise DependencyNotFound("BillingCustomer", tenant_id)
        return customer

    def get_subscription(self, tenant_id: str, subscription_id: str) -> Subscription:
        subscription = self._repos.subscriptions.find_by_id(subscription_id)
        if subscription is None:
            raise DependencyNotFound("Subscription", subscription_id)
        customer = self._repos.customers.find_by_tenant(tenant_id)
        if customer is None or subscription.billing_customer_id != customer.id:
            raise AccessDenied("Subscription does not belong to this tenant")
        return subscription

    def list_subscriptions(self, tenant_id: str, status: str | None = None) -> list[Subscription]:
        customer = self.customer_for(tenant_id)
        return [
            s for s in self._repos.subscriptions.for_customer(customer.id)
            if status is None or s.status == status
        ]

    def get_invoice(self, tenant_id: str, invoice_id: str) -> Invoice:
        invoice = self._repos.invoices.find_by_id(invoice_id)
        if invoice is None:
            raise DependencyNotFound("Invoice", invoice_id)
        customer = self._repos.customers.find_by_tenant(tenant_id)
        if customer is None or invoice.billing_customer_id != customer.id:
            raise AccessDenied("Invoice does not belong to this tenant")
        return invoice

    def list_invoices(self, tenant_id: str, status: str | None = None) -> list[Invoice]:
        customer = self.customer_for(tenant_id)
        return self._repos.invoices.for_customer(customer.id, status)
