"""Shared utilities: environment config helpers, logging setup, backoff and reconnect state."""
