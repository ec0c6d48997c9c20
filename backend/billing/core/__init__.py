"""Infrastructure shared by the payment and subscription services."""
