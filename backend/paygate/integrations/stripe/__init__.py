"""Stripe-compatible billing provider integration."""
