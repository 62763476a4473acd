"""
Billing Kernel

Infrastructure shared by every billing module:
- Database base classes, engine and session scopes
- Injectable clock
- Typed exception hierarchy
- Structured JSON logging
- Idempotency guard for externally triggered operations
"""

__version__ = "0.1.0"
