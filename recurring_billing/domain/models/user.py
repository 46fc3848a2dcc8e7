"""Authenticated caller model."""

from typing import Optional


class User:
    """
    Caller identity resolved from a bearer token.

    Attributes:
        id: User identifier, matches ``SubscriptionRecord.user_id``
        role: ``admin`` or ``user``
        email: Optional e-mail claim carried by the token
    """

    ADMIN_ROLE = "admin"

    def __init__(self, id: str, role: str = "user", email: Optional[str] = None):
        self.id = id
        self.role = role
        self.email = email

    @property
    def is_admin(self) -> bool:
        return self.role == self.ADMIN_ROLE

    def __repr__(self) -> str:
        return f"<User id={self.id} role={self.role}>"
