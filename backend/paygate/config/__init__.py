"""Configuration: plan catalog and environment settings."""
