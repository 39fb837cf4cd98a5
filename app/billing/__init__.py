"""Billing module - credit ledger and subscription entitlement sync."""
