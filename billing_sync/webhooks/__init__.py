"""Inbound webhook handling: signature verification, ingress receiver, HTTP routes."""
