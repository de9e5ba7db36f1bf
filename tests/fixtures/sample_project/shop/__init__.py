"""Sample shop package."""

from .models import Order, User

__all__ = ["Order", "User"]
