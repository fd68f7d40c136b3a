"""Paygate: subscription-gated access backed by an external billing provider."""
