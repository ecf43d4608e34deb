"""Shared configuration, models, units, and error types."""
