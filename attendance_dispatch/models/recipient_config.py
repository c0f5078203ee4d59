from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

"""RecipientConfig model and the RecipientRole enum.

Recipient configuration is owned by the admin UI; the dispatcher only reads
it. Invariants mirrored from the store:

- unique per (role, department)
- ``department`` required iff role is HOD
- ``emails`` non-empty, lower-cased and trimmed
"""

__all__ = [
    "RecipientRole",
    "RecipientConfig",
    "InvalidRecipientConfig",
]


class RecipientRole(Enum):
    DEAN = "Dean"
    MEDICAL_SUPERINTENDENT = "Medical Superintendent"
    DEPUTY_MEDICAL_SUPERINTENDENT = "Deputy Medical Superintendent"
    MEDICAL_DIRECTOR = "Medical Director"
    MEDICAL_REPRESENTATIVE = "Medical Representative"
    HR_HEAD = "HR Head"
    HOD = "HOD"


class InvalidRecipientConfig(ValueError):
    """Raised when a recipient configuration violates its invariants."""


@dataclass(frozen=True)
class RecipientConfig:
    role: RecipientRole
    emails: tuple[str, ...]
    department: str | None = None
    is_active: bool = True

    def __post_init__(self) -> None:
        if self.role is RecipientRole.HOD and not (self.department or "").strip():
            raise InvalidRecipientConfig("HOD configuration requires a department")
        if self.role is not RecipientRole.HOD and self.department:
            raise InvalidRecipientConfig(f"department is only allowed for HOD (role={self.role.value})")
        if not self.emails:
            raise InvalidRecipientConfig(f"no emails configured for role={self.role.value}")

    @property
    def key(self) -> tuple[str, str | None]:
        return (self.role.value, self.department)

    @classmethod
    def create(
        cls,
        role: str | RecipientRole,
        emails: list[str] | tuple[str, ...],
        department: str | None = None,
        is_active: bool = True,
    ) -> RecipientConfig:
        """Build a config from loosely typed input (YAML / DB rows)."""
        try:
            role_enum = role if isinstance(role, RecipientRole) else RecipientRole(str(role).strip())
        except ValueError as e:
            raise InvalidRecipientConfig(f"unknown role: {role!r}") from e
        cleaned = tuple(e.strip().lower() for e in emails if e and e.strip())
        dept = department.strip() if isinstance(department, str) and department.strip() else None
        return cls(role=role_enum, emails=cleaned, department=dept, is_active=bool(is_active))
