"""State-machine helpers for orders, couriers and routes.

Pure functions: they validate or derive states, the engine applies them.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .exceptions import InvalidState
from .models import (
    COURIER_TRANSITIONS,
    ORDER_TRANSITIONS,
    Courier,
    CourierStatus,
    Order,
    OrderStatus,
    Route,
    RouteStatus,
)


@dataclass
class RouteProgress:
    status: RouteStatus
    delivered: int
    total: int

    @property
    def finished(self) -> bool:
        return self.status == "DONE"


def set_order_status(order: Order, new_status: OrderStatus) -> None:
    if new_status not in ORDER_TRANSITIONS[order.status]:
        raise InvalidState(
            f"Order {order.order_id} cannot move from {order.status} to {new_status}.",
            entity="order",
            entity_id=order.order_id,
            transition=f"{order.status}->{new_status}",
        )
    order.status = new_status


def set_courier_status(courier: Courier, new_status: CourierStatus) -> None:
    if new_status not in COURIER_TRANSITIONS[courier.status]:
        raise InvalidState(
            f"Courier {courier.courier_id} cannot move from {courier.status} to {new_status}.",
            entity="courier",
            entity_id=courier.courier_id,
            transition=f"{courier.status}->{new_status}",
        )
    courier.status = new_status


def recompute_route_status(route: Route, members: Sequence[Order]) -> RouteProgress:
    """Derive a route's status from its members and courier presence.

    Single source of truth for route status after any member changes.
    """
    total = len(members)
    delivered = sum(1 for o in members if o.status == "DELIVERED")

    if total > 0 and delivered == total:
        status: RouteStatus = "DONE"
    elif delivered > 0 or route.status == "IN_PROGRESS":
        status = "IN_PROGRESS"
    elif route.courier_id:
        status = "ASSIGNED"
    else:
        status = "AWAITING_COURIER"

    return RouteProgress(status=status, delivered=delivered, total=total)


def last_route_start(courier_id: str, routes: Iterable[Route]) -> Optional[datetime]:
    """When the courier's most recent route started, over every route ever linked to them.

    A route starts for its courier at ``assigned_at``; ``created_at`` only
    stands in when no assignment time was recorded. Creation time alone is
    deliberately not used: it would rank a courier handed an old route a
    moment ago ahead of someone who started a fresh route earlier.
    """
    starts = [r.assigned_at or r.created_at for r in routes if r.courier_id == courier_id]
    return max(starts) if starts else None


def rank_couriers(
    available: Sequence[Courier], routes: Iterable[Route]
) -> List[Tuple[Courier, Optional[datetime]]]:
    """Fairness ranking: never-served couriers first, then oldest last start.

    Stable, so input order breaks remaining ties.
    """
    routes = list(routes)
    ranked = [(c, last_route_start(c.courier_id, routes)) for c in available]
    ranked.sort(key=lambda x: (x[1] is not None, x[1] or datetime.min))
    return ranked


def fairness_reason(last_start: Optional[datetime]) -> str:
    if last_start is None:
        return "never served today"
    return f"last route started at {last_start.isoformat(timespec='minutes')}"


def active_routes_for(courier_id: str, routes: Dict[str, Route]) -> List[Route]:
    return [r for r in routes.values() if r.courier_id == courier_id and r.is_active]
