"""API route handlers."""
from . import accounts, admin, connections

__all__ = ["accounts", "admin", "connections"]
