"""API route modules."""

from . import health, knowledge

__all__ = ["health", "knowledge"]
