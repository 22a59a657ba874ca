"""Idempotent WhatsApp message-delivery pipeline."""

__version__ = "1.0.0"
