"""Billing provider capability: protocol, Stripe client and typed payload models."""
