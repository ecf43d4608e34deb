"""Reconciliation, settlement, ingestion, charting, and scheduling engines."""
