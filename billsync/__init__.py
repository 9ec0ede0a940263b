"""Billing-state reconciliation between local records and Stripe."""

__version__ = "0.1.0"
