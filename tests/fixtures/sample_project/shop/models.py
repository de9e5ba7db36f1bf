"""Domain models."""


class Entity:
    def __init__(self, ident):
        self.ident = ident


class User(Entity):
    def __init__(self, email):
        super().__init__(email)
        self.email = email


class Order(Entity):
    def __init__(self, user, items):
        super().__init__(user.email)
        self.user = user
        self.items = items

    def total(self):
        return round(sum(self.items), 2)
