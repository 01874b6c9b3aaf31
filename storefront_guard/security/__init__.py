"""Inbound request protection: per-client rate limiting."""
