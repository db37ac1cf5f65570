from dataclasses import dataclass
from typing import Protocol

import bcrypt
from sqlmodel import Session, select

from .models import Staff, StaffRole

# Roles allowed to authorise each tier of PIN-gated action
OWNER_ROLES = (StaffRole.owner,)
SUPERVISOR_ROLES = (StaffRole.owner, StaffRole.manager, StaffRole.admin)


@dataclass(frozen=True)
class StaffIdentity:
    id: int
    name: str


class PinVerifier(Protocol):
    def verify_pin(self, pin: str, allowed_roles: tuple[StaffRole, ...]) -> StaffIdentity | None: ...


def hash_pin(pin: str) -> str:
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def check_pin(plain_pin: str, pin_hash: str) -> bool:
    try:
        return bcrypt.checkpw(plain_pin.encode("utf-8"), pin_hash.encode("utf-8"))
    except (ValueError, TypeError):
        return False


class StaffPinVerifier:
    """Match a PIN against the bcrypt hashes of active staff holding one of the allowed roles."""

    def __init__(self, engine):
        self.engine = engine

    def verify_pin(self, pin: str, allowed_roles: tuple[StaffRole, ...]) -> StaffIdentity | None:
        if not pin:
            return None
        with Session(self.engine) as session:
            candidates = session.exec(
                select(Staff).where(
                    Staff.role.in_(allowed_roles),
                    Staff.is_active == True,  # noqa: E712
                    Staff.pin_hash.is_not(None),
                )
            ).all()
            for staff in candidates:
                if check_pin(pin, staff.pin_hash):
                    return StaffIdentity(id=staff.id, name=staff.name)
        return None
