"""Monthly settlement lifecycle: draft -> finalized -> paid."""
