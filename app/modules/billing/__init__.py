"""Subscription billing: gateway webhooks, lifecycle, refunds."""
