"""Order placement."""

from .models import Order, User

DEFAULT_CURRENCY = "EUR"


def validate_email(email):
    return "@" in email


def legacy_discount(order):
    return order.total() * 0.9


class OrderService:
    def place_order(self, email, items):
        if not validate_email(email):
            raise ValueError(email)
        return Order(User(email), items)
