"""ASGI entry point for the subscription service."""

from billing.core.logging import setup_logging
from billing.main import create_app

setup_logging("subscription-service")

app = create_app("subscriptions")
