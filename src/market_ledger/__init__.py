"""Reconciliation and settlement engine for a pari-mutuel prediction market."""

__version__ = "0.1.0"
