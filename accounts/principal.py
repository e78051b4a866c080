from __future__ import annotations

from dataclasses import dataclass

from .models import User


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as seen by the booking engine: id + role."""

    id: int
    role: str

    @property
    def is_member(self) -> bool:
        return self.role == User.Role.MEMBER

    @property
    def is_admin(self) -> bool:
        return self.role == User.Role.ADMIN

    @classmethod
    def from_user(cls, user) -> Principal | None:
        if not user or not getattr(user, "is_authenticated", False):
            return None
        if not getattr(user, "is_active", True):
            return None
        return cls(id=user.pk, role=str(user.effective_role))
