"""
ORM model registry -- imports every module's ORM classes so that
``Base.metadata.create_all`` sees the complete schema.
"""


def import_all_orm_models() -> None:
    """Import all ORM model modules. Safe to call multiple times."""
    import billing_kernel.models.idempotency  # noqa: F401
    import billing_modules.allocation.orm  # noqa: F401
    import billing_modules.broadcast.orm  # noqa: F401
    import billing_modules.settlement.orm  # noqa: F401
    import billing_modules.subscriptions.orm  # noqa: F401
    import billing_services.orm  # noqa: F401
