"""Billing pipeline and operator services for the console API."""
