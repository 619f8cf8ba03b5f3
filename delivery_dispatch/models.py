from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Literal, Optional, Set, Tuple


OrderStatus = Literal["PENDING", "QUEUED", "ON_ROUTE", "DELIVERED"]
CourierStatus = Literal["OFFLINE", "AVAILABLE", "ASSIGNED", "ON_TRIP"]
RouteStatus = Literal["AWAITING_COURIER", "ASSIGNED", "IN_PROGRESS", "DONE"]
PricingRuleType = Literal["ZONE", "DISTANCE"]
BatchOutcome = Literal["batched", "deferred_for_cluster", "insufficient_volume"]


# Legal order transitions. PENDING is reachable from every non-delivered
# state because deleting a route sends its members back to the queue.
ORDER_TRANSITIONS: Dict[str, Set[str]] = {
    "PENDING": {"QUEUED"},
    "QUEUED": {"ON_ROUTE", "PENDING"},
    "ON_ROUTE": {"DELIVERED", "PENDING"},
    "DELIVERED": set(),
}

# ASSIGNED / ON_TRIP are only entered through route transitions.
COURIER_TRANSITIONS: Dict[str, Set[str]] = {
    "OFFLINE": {"AVAILABLE", "OFFLINE"},
    "AVAILABLE": {"ASSIGNED", "OFFLINE", "AVAILABLE"},
    "ASSIGNED": {"ON_TRIP", "AVAILABLE"},
    "ON_TRIP": {"AVAILABLE"},
}


@dataclass
class PricingRule:
    type: PricingRuleType
    label: str


@dataclass
class Order:
    order_id: str
    address: str
    lat: float
    lng: float
    created_at: datetime
    sequence: int

    status: OrderStatus = "PENDING"
    courier_id: Optional[str] = None
    route_id: Optional[str] = None

    delivery_price: Optional[float] = None
    pricing_rule: Optional[PricingRule] = None

    @property
    def loc(self) -> Tuple[float, float]:
        return (self.lat, self.lng)


@dataclass
class Courier:
    courier_id: str
    name: str
    phone: str
    status: CourierStatus = "OFFLINE"


@dataclass
class Route:
    route_id: str
    order_ids: List[str]
    created_at: datetime

    status: RouteStatus = "AWAITING_COURIER"
    courier_id: Optional[str] = None
    assigned_at: Optional[datetime] = None

    maps_url: Optional[str] = None
    total_price: float = 0.0

    @property
    def is_active(self) -> bool:
        return self.status != "DONE"


@dataclass
class DispatchState:
    """Everything the persistence provider loads and saves."""
    orders: List[Order] = field(default_factory=list)
    couriers: List[Courier] = field(default_factory=list)
    routes: List[Route] = field(default_factory=list)
    last_sequence: int = 0
