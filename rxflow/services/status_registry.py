"""rxflow — Status Registry: valid order status keys and their display metadata."""
import logging
import re
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from rxflow.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from rxflow.core.roles import Actor, Capability
from rxflow.db.base import utcnow
from rxflow.models.status_config import StatusConfig

logger = logging.getLogger(__name__)

# Statuses every deployment ships with (seeded as system defaults)
DEFAULT_STATUSES: list[dict] = [
    {"status_key": "pending", "display_name": "Pending", "color_class": "bg-yellow-100 text-yellow-800", "sort_order": 10},
    {"status_key": "processing", "display_name": "Processing", "color_class": "bg-blue-100 text-blue-800", "sort_order": 20},
    {"status_key": "filled", "display_name": "Filled", "color_class": "bg-indigo-100 text-indigo-800", "sort_order": 30},
    {"status_key": "shipped", "display_name": "Shipped", "color_class": "bg-purple-100 text-purple-800", "sort_order": 40},
    {"status_key": "delivered", "display_name": "Delivered", "color_class": "bg-green-100 text-green-800", "sort_order": 50},
    {"status_key": "completed", "display_name": "Completed", "color_class": "bg-emerald-100 text-emerald-800", "sort_order": 60},
    {"status_key": "on_hold", "display_name": "On Hold", "color_class": "bg-orange-100 text-orange-800", "sort_order": 70},
    {"status_key": "change_requested", "display_name": "Change Requested", "color_class": "bg-amber-100 text-amber-800", "sort_order": 80},
    {"status_key": "denied", "display_name": "Denied", "color_class": "bg-red-100 text-red-800", "sort_order": 90},
    {"status_key": "cancelled", "display_name": "Cancelled", "color_class": "bg-destructive text-destructive-foreground", "sort_order": 100},
]

# Moving into one of these shows a warning; it is never blocked
ADVISORY_STATUSES = frozenset({"cancelled", "denied", "on_hold"})

_STATUS_KEY_RE = re.compile(r"^[a-z][a-z0-9_]{0,49}$")


@dataclass(frozen=True)
class StatusEntry:
    status_key: str
    display_name: str
    color_class: str
    sort_order: int


class StatusRegistry:
    """Read-only snapshot of the active registry, injected into state-machine calls."""

    def __init__(self, entries: list[StatusEntry]):
        self._entries = {e.status_key: e for e in entries}

    @classmethod
    def from_configs(cls, configs: list[StatusConfig]) -> "StatusRegistry":
        return cls([
            StatusEntry(c.status_key, c.display_name, c.color_class, c.sort_order)
            for c in configs
            if c.is_active
        ])

    @classmethod
    def defaults(cls) -> "StatusRegistry":
        return cls([StatusEntry(**d) for d in DEFAULT_STATUSES])

    @property
    def active_keys(self) -> frozenset[str]:
        return frozenset(self._entries)

    def is_active(self, status_key: str) -> bool:
        return status_key in self._entries

    def get(self, status_key: str) -> StatusEntry | None:
        return self._entries.get(status_key)

    def ordered(self) -> list[StatusEntry]:
        return sorted(self._entries.values(), key=lambda e: e.sort_order)


def advisory_warning(status_key: str) -> str | None:
    if status_key in ADVISORY_STATUSES:
        return "This status change may require additional action or notification to relevant parties."
    return None


class StatusRegistryService:
    """Loads the registry and administers status configs (admin only)."""

    @staticmethod
    async def load(db: AsyncSession) -> StatusRegistry:
        result = await db.execute(
            select(StatusConfig).where(StatusConfig.is_active.is_(True)).order_by(StatusConfig.sort_order)
        )
        configs = list(result.scalars().all())
        if not configs:
            # Unseeded deployment
            return StatusRegistry.defaults()
        return StatusRegistry.from_configs(configs)

    @staticmethod
    async def list_configs(db: AsyncSession, include_inactive: bool = False) -> list[StatusConfig]:
        q = select(StatusConfig)
        if not include_inactive:
            q = q.where(StatusConfig.is_active.is_(True))
        result = await db.execute(q.order_by(StatusConfig.sort_order))
        return list(result.scalars().all())

    @staticmethod
    async def seed_defaults(db: AsyncSession) -> int:
        """Insert any missing system-default statuses. Returns how many were added."""
        existing = set((await db.execute(select(StatusConfig.status_key))).scalars().all())
        added = 0
        for entry in DEFAULT_STATUSES:
            if entry["status_key"] in existing:
                continue
            db.add(StatusConfig(**entry, is_active=True, is_system_default=True))
            added += 1
        await db.flush()
        return added

    @staticmethod
    async def create_config(
        db: AsyncSession,
        actor: Actor,
        status_key: str,
        display_name: str,
        color_class: str,
        sort_order: int,
        description: str | None = None,
        is_active: bool = True,
    ) -> StatusConfig:
        _require_admin(actor)
        if not _STATUS_KEY_RE.match(status_key or ""):
            raise ValidationError(f"Invalid status key '{status_key}': use a lowercase slug")
        if not display_name or not color_class:
            raise ValidationError("display_name and color_class are required")

        config = StatusConfig(
            status_key=status_key,
            display_name=display_name,
            description=description,
            color_class=color_class,
            sort_order=sort_order,
            is_active=is_active,
            is_system_default=False,
            created_by=actor.user_id,
        )
        db.add(config)
        try:
            await db.flush()
        except IntegrityError as exc:
            raise ConflictError(f"Status key '{status_key}' already exists") from exc
        await db.refresh(config)
        logger.info("Status config %s created by %s", status_key, actor.user_id)
        return config

    @staticmethod
    async def update_config(db: AsyncSession, actor: Actor, config_id: UUID, changes: dict) -> StatusConfig:
        """Update display fields, sort order or active flag. The key itself is immutable."""
        _require_admin(actor)
        if "status_key" in changes:
            raise ValidationError("status_key cannot be changed")
        config = await db.get(StatusConfig, config_id)
        if not config:
            raise NotFoundError("Status config not found")
        if changes.get("is_active") is False and config.is_system_default:
            raise ConflictError("Cannot deactivate system default status")

        for field in ("display_name", "description", "color_class", "sort_order", "is_active"):
            if field in changes and changes[field] is not None:
                setattr(config, field, changes[field])
        config.updated_at = utcnow()
        await db.flush()
        await db.refresh(config)
        return config

    @staticmethod
    async def deactivate_config(db: AsyncSession, actor: Actor, config_id: UUID) -> StatusConfig:
        """Soft delete. System defaults can never be removed."""
        _require_admin(actor)
        config = await db.get(StatusConfig, config_id)
        if not config:
            raise NotFoundError("Status config not found")
        if config.is_system_default:
            raise ConflictError("Cannot delete system default status")
        config.is_active = False
        config.updated_at = utcnow()
        await db.flush()
        return config


def _require_admin(actor: Actor) -> None:
    if not actor.can(Capability.MANAGE_STATUSES):
        raise AuthorizationError("Admin access required")
