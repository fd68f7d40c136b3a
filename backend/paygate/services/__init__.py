"""Application services: webhook processing and user-initiated billing sessions."""
