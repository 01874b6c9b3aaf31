"""Webhook inbound system.

Receives webhooks from Square (orders, payments, refunds) and Shippo
(label transactions, tracking). Each webhook is rate-limited,
signature-verified, replay-checked and dispatched.
"""
