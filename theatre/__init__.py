"""Consoles, RBAC helpers, label selectors, reconciliation utilities and event logging over an in-memory API client."""

__version__ = "4.0.0"