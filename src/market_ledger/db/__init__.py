"""Relational persistence for markets, bets, users, and protocols.

The database is the sole owner of durable application state. The chain is
mirrored into it, never the other way around.
"""
