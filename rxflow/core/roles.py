"""rxflow — Roles, capabilities and the acting identity.

All authorization rules of the fulfillment core are read from CAPABILITY_MATRIX.
No raw role strings in services or route files.
"""
from dataclasses import dataclass
from enum import Enum
from uuid import UUID


class Role(str, Enum):
    ADMIN = "admin"
    DOCTOR = "doctor"
    PROVIDER = "provider"
    PHARMACY = "pharmacy"
    STAFF = "staff"
    TOPLINE = "topline"
    DOWNLINE = "downline"
    PATIENT = "patient"


class Capability(str, Enum):
    CHANGE_STATUS = "orders:change_status"
    REFUND = "orders:refund"
    CANCEL_WITHOUT_WINDOW = "orders:cancel_without_window"
    MANAGE_STATUSES = "status_configs:manage"
    UPDATE_LINES = "order_lines:update"
    MANAGE_COMMISSIONS = "commissions:manage"


# ── Role → capabilities matrix ───────────────────────────────────────────────
CAPABILITY_MATRIX: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.PHARMACY: frozenset({Capability.CHANGE_STATUS, Capability.UPDATE_LINES}),
    Role.DOCTOR: frozenset({Capability.CHANGE_STATUS}),
    Role.PROVIDER: frozenset({Capability.CHANGE_STATUS}),
    Role.STAFF: frozenset(),
    Role.TOPLINE: frozenset(),
    Role.DOWNLINE: frozenset(),
    Role.PATIENT: frozenset(),
}

# Role recorded on history rows written by automatic computation
SYSTEM_ROLE = "system"


def parse_role(value: "Role | str | None") -> Role | None:
    """Resolve a role string; unknown strings resolve to None (no capabilities)."""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).lower())
    except ValueError:
        return None


def has_capability(role: "Role | str | None", capability: Capability) -> bool:
    resolved = parse_role(role)
    if resolved is None:
        return False
    return capability in CAPABILITY_MATRIX.get(resolved, frozenset())


@dataclass(frozen=True)
class Actor:
    """Effective identity performing an action.

    When an admin impersonates another user, ``user_id``/``role`` are the impersonated
    identity and ``impersonator_id`` is the admin.
    """

    user_id: UUID
    role: Role | str
    impersonator_id: UUID | None = None

    @property
    def role_value(self) -> str:
        return self.role.value if isinstance(self.role, Role) else str(self.role)

    def can(self, capability: Capability) -> bool:
        return has_capability(self.role, capability)
