"""HTTP surface: processor webhooks and the admin API."""

from billing_api.app import create_app

__all__ = ["create_app"]
