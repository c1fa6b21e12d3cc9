"""State store: graph persistence of customers, catalog, subscriptions, invoices and usage."""
