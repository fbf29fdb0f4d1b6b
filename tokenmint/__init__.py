"""Nonce-managed payment settlement and batch mint queues."""

__version__ = "0.1.0"
