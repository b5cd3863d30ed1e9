"""Pricing integrity: signed plan credentials, server-side price validation and tamper auditing."""
