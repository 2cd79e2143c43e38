from enum import Enum
from typing import Iterable, Protocol

from sqlalchemy.orm import Session

from lab_requests.models.user import User, UserPermission


class Capability(str, Enum):
    VIEW_LAB = "read:lab"
    COMPLETE_LAB = "complete:lab"
    CANCEL_LAB = "cancel:lab"


class PermissionOracle(Protocol):
    def has(self, capability: Capability) -> bool: ...


def _norm(value: str) -> str:
    return (value or "").strip().lower()


class GrantedPermissions:
    """Permission oracle over a fixed set of granted capability names."""

    def __init__(self, granted: Iterable[str | Capability] = ()):
        self._granted = frozenset(_norm(c.value if isinstance(c, Capability) else c) for c in granted)

    def has(self, capability: Capability) -> bool:
        return capability.value in self._granted

    def __repr__(self) -> str:
        return f"GrantedPermissions({sorted(self._granted)!r})"


def resolve_capabilities(oracle: PermissionOracle) -> frozenset[Capability]:
    return frozenset(capability for capability in Capability if oracle.has(capability))


def permissions_for_user(db: Session, user: User) -> GrantedPermissions:
    rows = db.query(UserPermission.capability).filter(UserPermission.user_id == user.id).all()
    return GrantedPermissions(row.capability for row in rows)


def grant(db: Session, user: User, *capabilities: Capability) -> None:
    existing = {_norm(p.capability) for p in user.permissions}
    for capability in capabilities:
        if capability.value not in existing:
            db.add(UserPermission(user_id=user.id, capability=capability.value))
    db.commit()
