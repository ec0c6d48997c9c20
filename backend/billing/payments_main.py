"""ASGI entry point for the payment service."""

from billing.core.logging import setup_logging
from billing.main import create_app

setup_logging("payment-service")

app = create_app("payments")
