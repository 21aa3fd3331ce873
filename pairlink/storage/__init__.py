"""Durable and on-disk state: per-session resource directories and JSON records."""
