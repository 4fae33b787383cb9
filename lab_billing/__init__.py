"""Reconciliation, renewal and webhook back office for lab memberships."""

__version__ = "0.1.0"
