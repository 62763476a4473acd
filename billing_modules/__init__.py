"""
Billing domain modules.

Each module follows the same layout:
- models.py  -- frozen DTOs and enums (no I/O)
- orm.py     -- SQLAlchemy persistence models (where the module persists)
- config.py  -- dataclass configuration validated in __post_init__
- service.py -- session-bound services that flush, never commit
"""
