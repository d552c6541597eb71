"""rxflow — Routing Engine: choose the pharmacy that fulfills an order line.

``select_pharmacy`` is the pure decision over already-fetched data. ``RoutingService``
does the fetching and turns store failures into a ``failed`` outcome instead of a
silent "no pharmacy".
"""
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from rxflow.models.pharmacy import PharmacyRepAssignment, ProductPharmacy

logger = logging.getLogger(__name__)

# Eligible but ranked after every pharmacy with an explicit priority for the state
DEFAULT_UNRANKED_PRIORITY = 999

_STATE_RE = re.compile(r"^[A-Z]{2}$")


class RoutingOutcome(str, Enum):
    ROUTED = "routed"
    UNROUTABLE = "unroutable"
    FAILED = "failed"


@dataclass(frozen=True)
class PharmacyCandidate:
    id: UUID
    name: str
    active: bool
    states_serviced: tuple[str, ...]
    priority_map: Mapping | None = None


@dataclass
class RoutingResult:
    pharmacy_id: UUID | None
    reason: str
    outcome: RoutingOutcome
    priority: int | None = None
    candidates: list[dict] = field(default_factory=list)

    @property
    def routed(self) -> bool:
        return self.outcome == RoutingOutcome.ROUTED


def resolve_priority(priority_map: Mapping | None, state: str) -> int:
    """Priority for ``state``; upper- or lower-case keys, positive ints only."""
    if not isinstance(priority_map, Mapping):
        return DEFAULT_UNRANKED_PRIORITY
    value = priority_map.get(state.upper())
    if value is None:
        value = priority_map.get(state.lower())
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return DEFAULT_UNRANKED_PRIORITY
    return value


def normalize_state(destination_state: str | None) -> tuple[str | None, str | None]:
    """Return (state, None) when valid, else (None, reason)."""
    if not destination_state or not isinstance(destination_state, str):
        return None, "Invalid destination state: state is required"
    state = destination_state.strip()
    if not state:
        return None, "Invalid destination state: state cannot be empty"
    if not _STATE_RE.match(state):
        return None, f'Invalid destination state: "{state}" must be a 2-letter US state code'
    return state, None


def select_pharmacy(
    candidates: Iterable[PharmacyCandidate],
    destination_state: str,
    topline_rep_id: UUID | None = None,
    scope_assignments: Mapping[UUID, set[UUID]] | None = None,
) -> RoutingResult:
    """
    Pick the fulfilling pharmacy.

    ``candidates`` are the pharmacies assigned to the product, in fetch order.
    ``scope_assignments`` maps pharmacy id -> topline rep ids it is scoped to; pharmacies
    absent from it are visible to everyone.
    """
    candidates = list(candidates)
    state, invalid_reason = normalize_state(destination_state)
    if state is None:
        return RoutingResult(None, invalid_reason, RoutingOutcome.UNROUTABLE)

    if not candidates:
        return RoutingResult(None, "No pharmacies assigned to product", RoutingOutcome.UNROUTABLE)

    eligible = [p for p in candidates if p.active and state in (p.states_serviced or ())]
    if not eligible:
        return RoutingResult(None, f"No active pharmacies serve state: {state}", RoutingOutcome.UNROUTABLE)

    if topline_rep_id is not None:
        scopes = scope_assignments or {}
        eligible = [
            p for p in eligible
            if not scopes.get(p.id) or topline_rep_id in scopes[p.id]
        ]
        if not eligible:
            return RoutingResult(
                None,
                f"No pharmacies serving state {state} are available to this sales hierarchy",
                RoutingOutcome.UNROUTABLE,
            )

    if len(eligible) == 1:
        only = eligible[0]
        priority = resolve_priority(only.priority_map, state)
        return RoutingResult(
            only.id,
            f"Single pharmacy match: {only.name}",
            RoutingOutcome.ROUTED,
            priority=priority,
            candidates=[{"id": str(only.id), "name": only.name, "priority": priority}],
        )

    # sorted() is stable: equal priorities keep fetch order
    ranked = sorted(
        ((p, resolve_priority(p.priority_map, state)) for p in eligible),
        key=lambda pair: pair[1],
    )
    winner, priority = ranked[0]
    return RoutingResult(
        winner.id,
        f"Priority routing: {winner.name} (Priority {priority} for {state})",
        RoutingOutcome.ROUTED,
        priority=priority,
        candidates=[{"id": str(p.id), "name": p.name, "priority": prio} for p, prio in ranked],
    )


class RoutingService:
    """Fetches routing inputs from the store and delegates to ``select_pharmacy``."""

    @staticmethod
    async def route(
        db: AsyncSession,
        product_id: UUID,
        destination_state: str,
        topline_rep_id: UUID | None = None,
    ) -> RoutingResult:
        try:
            result = await db.execute(
                select(ProductPharmacy)
                .where(ProductPharmacy.product_id == product_id)
                .options(selectinload(ProductPharmacy.pharmacy))
                .order_by(ProductPharmacy.created_at, ProductPharmacy.id)
            )
            candidates = [
                PharmacyCandidate(
                    id=a.pharmacy.id,
                    name=a.pharmacy.name,
                    active=a.pharmacy.active,
                    states_serviced=tuple(a.pharmacy.states_serviced or ()),
                    priority_map=a.pharmacy.priority_map,
                )
                for a in result.scalars().all()
                if a.pharmacy is not None
            ]

            scopes: dict[UUID, set[UUID]] = {}
            if topline_rep_id is not None and candidates:
                scope_rows = await db.execute(
                    select(PharmacyRepAssignment.pharmacy_id, PharmacyRepAssignment.topline_rep_id)
                    .where(PharmacyRepAssignment.pharmacy_id.in_([c.id for c in candidates]))
                )
                for pharmacy_id, topline_id in scope_rows.all():
                    scopes.setdefault(pharmacy_id, set()).add(topline_id)
        except SQLAlchemyError as exc:
            logger.error("Routing lookup failed for product %s: %s", product_id, exc, exc_info=True)
            return RoutingResult(None, f"Routing failed: {exc.__class__.__name__}", RoutingOutcome.FAILED)

        decision = select_pharmacy(candidates, destination_state, topline_rep_id, scopes)
        logger.info(
            "Routing product %s to %s (topline %s): %s",
            product_id, destination_state, topline_rep_id or "N/A", decision.reason,
        )
        return decision
