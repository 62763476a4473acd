"""
Billing services: the webhook intake path, the durable event queue and its
worker, event dispatch into the subscription module, and the
administrative operations layer that owns transactions for human-triggered
writes.
"""
