"""Storefront guard: webhook and outbound-call reliability for the storefront.

Inbound: Square/Shippo webhooks are rate-limited, signature-verified,
replay-checked and dispatched. Outbound: calls to the payments and shipping
APIs run behind a circuit breaker, timeout/retry wrapper and deduplicator.
"""
