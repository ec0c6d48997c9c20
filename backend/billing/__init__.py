"""Billing services: idempotent payment API and signed webhook delivery."""
