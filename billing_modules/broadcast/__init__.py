"""Throttled, resumable bulk email to customer groups."""

from billing_modules.broadcast.models import BroadcastStatus, TargetGroup

__all__ = ["BroadcastStatus", "TargetGroup"]
