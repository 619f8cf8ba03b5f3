from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog

from .batching import BatchRun, form_batches, materialize_route
from .config import RoutingConfig, RoutingConfigProvider
from .exceptions import (
    ActiveRouteExists,
    BatchTooLarge,
    CourierUnavailable,
    EmptyRoute,
    EmptySelection,
    Forbidden,
    InvalidInput,
    InvalidState,
    NoCourierAvailable,
    NotFound,
    PersistenceFailed,
)
from .geo import build_maps_url
from .lifecycle import (
    active_routes_for,
    fairness_reason,
    rank_couriers,
    recompute_route_status,
    set_courier_status,
    set_order_status,
)
from .models import Courier, DispatchState, Order, Route
from .pricing import PricingLookup
from .storage import Storage


logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class Assignment:
    route: Route
    courier: Courier
    reason: str


@dataclass
class CourierSuggestion:
    courier: Courier
    reason: str


class DispatchEngine:
    """
    Single owner of orders, couriers and routes.

    Every public operation runs under one mutation lock and returns copies,
    so callers never hold live references. A snapshot is handed to the
    storage after every successful mutation.
    """
    def __init__(
        self,
        config: RoutingConfigProvider,
        pricing: PricingLookup,
        storage: Storage,
        clock: Clock = utc_now,
    ):
        self.config = config
        self.pricing = pricing
        self.storage = storage
        self.clock = clock

        self._lock = threading.Lock()

        self.orders: Dict[str, Order] = {}
        self.couriers: Dict[str, Courier] = {}
        self.routes: Dict[str, Route] = {}
        self.last_sequence: int = 0

        self._load()

    # ---------- persistence ----------
    def _load(self):
        state = self.storage.load_all()
        if state is None:
            return
        self.orders = {o.order_id: o for o in state.orders}
        self.couriers = {c.courier_id: c for c in state.couriers}
        self.routes = {r.route_id: r for r in state.routes}
        self.last_sequence = max([state.last_sequence] + [o.sequence for o in state.orders])
        logger.info(
            "storage.loaded",
            orders=len(self.orders),
            couriers=len(self.couriers),
            routes=len(self.routes),
        )

    def _snapshot(self) -> DispatchState:
        return DispatchState(
            orders=list(self.orders.values()),
            couriers=list(self.couriers.values()),
            routes=list(self.routes.values()),
            last_sequence=self.last_sequence,
        )

    def _persist(self):
        try:
            self.storage.save_all(self._snapshot())
        except OSError as exc:
            logger.error("storage.save_failed", error=str(exc))
            raise PersistenceFailed(f"Could not save dispatch state: {exc}") from exc

    # ---------- lookups (lock held) ----------
    def _order(self, order_id: str) -> Order:
        o = self.orders.get(order_id)
        if o is None:
            raise NotFound(f"Order {order_id} not found.", entity="order", entity_id=order_id)
        return o

    def _courier(self, courier_id: str) -> Courier:
        c = self.couriers.get(courier_id)
        if c is None:
            raise NotFound(f"Courier {courier_id} not found.", entity="courier", entity_id=courier_id)
        return c

    def _route(self, route_id: str) -> Route:
        r = self.routes.get(route_id)
        if r is None:
            raise NotFound(f"Route {route_id} not found.", entity="route", entity_id=route_id)
        return r

    def _members(self, route: Route) -> List[Order]:
        return [self.orders[oid] for oid in route.order_ids if oid in self.orders]

    def _pending_orders(self) -> List[Order]:
        pending = [o for o in self.orders.values() if o.status == "PENDING"]
        pending.sort(key=lambda o: o.sequence)
        return pending

    # ---------- batching ----------
    def _run_batching(self, now: datetime) -> BatchRun:
        return form_batches(self._pending_orders(), self.config.current(), now, _new_id)

    def _register(self, run: BatchRun):
        for r in run.routes:
            self.routes[r.route_id] = r

    def tick(self, now: Optional[datetime] = None) -> Optional[BatchRun]:
        """Timer entry point. Returns None when another mutation holds the lock."""
        if not self._lock.acquire(blocking=False):
            logger.info("ticker.skipped_overlap")
            return None
        try:
            run = self._run_batching(now or self.clock())
            self._register(run)
            if run.routes:
                self._persist()
            return copy.deepcopy(run)
        finally:
            self._lock.release()

    # ---------- orders ----------
    def create_order(self, address: str, lat: float, lng: float) -> Order:
        address = (address or "").strip()
        if not address:
            raise InvalidInput("Order address is required.", entity="order")
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise InvalidInput(f"Invalid coordinates ({lat}, {lng}).", entity="order")

        with self._lock:
            now = self.clock()
            quote = self.pricing.price_for(address, lat, lng)

            self.last_sequence += 1
            order = Order(
                order_id=_new_id(),
                address=address,
                lat=lat,
                lng=lng,
                created_at=now,
                sequence=self.last_sequence,
                delivery_price=quote.price,
                pricing_rule=quote.rule,
            )
            self.orders[order.order_id] = order
            logger.info(
                "order.created",
                order_id=order.order_id,
                sequence=order.sequence,
                price=quote.price,
                rule=quote.rule.label,
            )

            self._register(self._run_batching(now))
            self._persist()
            return copy.deepcopy(order)

    def mark_order_delivered(self, order_id: str, courier_id: Optional[str] = None) -> Order:
        """Delivery confirmation. ``courier_id`` None means an admin confirmed it."""
        with self._lock:
            order = self._order(order_id)
            if courier_id is not None and order.courier_id != courier_id:
                raise Forbidden(
                    f"Order {order_id} is not assigned to courier {courier_id}.",
                    entity="order",
                    entity_id=order_id,
                    transition="ON_ROUTE->DELIVERED",
                )
            if order.status == "DELIVERED":
                raise InvalidState(
                    f"Order {order_id} was already delivered.",
                    entity="order",
                    entity_id=order_id,
                    transition="DELIVERED->DELIVERED",
                )
            if order.status != "ON_ROUTE":
                raise InvalidState(
                    f"Order {order_id} is not out for delivery yet.",
                    entity="order",
                    entity_id=order_id,
                    transition=f"{order.status}->DELIVERED",
                )

            set_order_status(order, "DELIVERED")
            logger.info("order.delivered", order_id=order_id, courier_id=order.courier_id)

            route = self.routes.get(order.route_id) if order.route_id else None
            if route is not None:
                self._refresh_route(route)

            self._persist()
            return copy.deepcopy(order)

    def update_order(
        self,
        order_id: str,
        address: Optional[str] = None,
        lat: Optional[float] = None,
        lng: Optional[float] = None,
    ) -> Order:
        """Administrative correction of address and/or coordinates.

        Allowed in any status, DELIVERED included. A location change re-prices
        the order and refreshes the summary of the route it belongs to.
        """
        if (lat is None) != (lng is None):
            raise InvalidInput("lat and lng must be given together.", entity="order", entity_id=order_id)
        if lat is not None and not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise InvalidInput(f"Invalid coordinates ({lat}, {lng}).", entity="order", entity_id=order_id)

        with self._lock:
            order = self._order(order_id)
            changed = False
            if address is not None and address.strip():
                order.address = address.strip()
                changed = True
            if lat is not None:
                order.lat, order.lng = lat, lng
                changed = True

            if changed:
                quote = self.pricing.price_for(order.address, order.lat, order.lng)
                order.delivery_price = quote.price
                order.pricing_rule = quote.rule
                route = self.routes.get(order.route_id) if order.route_id else None
                if route is not None:
                    self._summarize_route(route)
                logger.info("order.updated", order_id=order_id, price=quote.price, rule=quote.rule.label)
                self._persist()
            return copy.deepcopy(order)

    def delete_order(self, order_id: str, force: bool = False) -> None:
        """Remove an order, detaching it from its route.

        ON_ROUTE and DELIVERED orders need ``force``. A route left without
        members is closed: with a courier it becomes DONE and the courier is
        released; a route that never had a courier is dropped.
        """
        with self._lock:
            order = self._order(order_id)
            if not force and order.status in ("ON_ROUTE", "DELIVERED"):
                raise InvalidState(
                    f"Order {order_id} is {order.status}; deleting it needs force.",
                    entity="order",
                    entity_id=order_id,
                    transition=f"{order.status}->deleted",
                )

            del self.orders[order_id]
            route = self.routes.get(order.route_id) if order.route_id else None
            if route is not None:
                route.order_ids = [oid for oid in route.order_ids if oid != order_id]
                if route.order_ids:
                    self._summarize_route(route)
                    if route.is_active:
                        self._refresh_route(route)
                elif route.courier_id is None:
                    del self.routes[route.route_id]
                    logger.info("route.deleted", route_id=route.route_id, force=force, status=route.status)
                else:
                    was_active = route.is_active
                    route.status = "DONE"
                    route.total_price = 0.0
                    route.maps_url = ""
                    courier = self.couriers.get(route.courier_id)
                    if courier is not None and was_active:
                        set_courier_status(courier, "AVAILABLE")
                    logger.info("route.done", route_id=route.route_id, courier_id=route.courier_id)

            logger.info("order.deleted", order_id=order_id, status=order.status, force=force)
            self._persist()

    # ---------- routes ----------
    def _summarize_route(self, route: Route):
        members = self._members(route)
        route.maps_url = build_maps_url(self.config.current().origin, [o.loc for o in members])
        route.total_price = float(sum(o.delivery_price or 0.0 for o in members))

    def _refresh_route(self, route: Route):
        progress = recompute_route_status(route, self._members(route))
        route.status = progress.status

        courier = self.couriers.get(route.courier_id) if route.courier_id else None
        if progress.finished:
            if courier is not None:
                set_courier_status(courier, "AVAILABLE")
            logger.info("route.done", route_id=route.route_id, courier_id=route.courier_id)
        else:
            if progress.status == "IN_PROGRESS" and courier is not None and courier.status == "ASSIGNED":
                set_courier_status(courier, "ON_TRIP")
            logger.info(
                "route.progress",
                route_id=route.route_id,
                delivered=progress.delivered,
                total=progress.total,
                status=progress.status,
            )

    def _assign(self, route: Route, courier: Courier) -> Route:
        if route.status != "AWAITING_COURIER":
            raise InvalidState(
                f"Route {route.route_id} is already {route.status}.",
                entity="route",
                entity_id=route.route_id,
                transition=f"{route.status}->ASSIGNED",
            )
        if courier.status != "AVAILABLE" or active_routes_for(courier.courier_id, self.routes):
            raise CourierUnavailable(
                f"Courier {courier.courier_id} is not available ({courier.status}).",
                entity="courier",
                entity_id=courier.courier_id,
                transition=f"{courier.status}->ASSIGNED",
            )
        members = self._members(route)
        if not members:
            raise EmptyRoute(
                f"Route {route.route_id} has no orders.",
                entity="route",
                entity_id=route.route_id,
            )

        for o in members:
            set_order_status(o, "ON_ROUTE")
            o.courier_id = courier.courier_id
            o.route_id = route.route_id

        route.courier_id = courier.courier_id
        route.assigned_at = self.clock()
        route.status = recompute_route_status(route, members).status
        set_courier_status(courier, "ASSIGNED")
        return route

    def assign_route(self, route_id: str, courier_id: str) -> Route:
        with self._lock:
            route = self._assign(self._route(route_id), self._courier(courier_id))
            logger.info("route.assigned", route_id=route_id, courier_id=courier_id)
            self._persist()
            return copy.deepcopy(route)

    def _suggest(self, route: Route) -> CourierSuggestion:
        if route.status != "AWAITING_COURIER":
            raise InvalidState(
                f"Route {route.route_id} is already {route.status}.",
                entity="route",
                entity_id=route.route_id,
                transition=f"{route.status}->ASSIGNED",
            )
        available = [c for c in self.couriers.values() if c.status == "AVAILABLE"]
        if not available:
            raise NoCourierAvailable("No courier is available.", entity="route", entity_id=route.route_id)

        courier, last_start = rank_couriers(available, self.routes.values())[0]
        return CourierSuggestion(courier=courier, reason=fairness_reason(last_start))

    def suggest_courier(self, route_id: str) -> CourierSuggestion:
        with self._lock:
            return copy.deepcopy(self._suggest(self._route(route_id)))

    def assign_route_automatically(self, route_id: str) -> Assignment:
        with self._lock:
            route = self._route(route_id)
            suggestion = self._suggest(route)
            self._assign(route, suggestion.courier)
            logger.info(
                "route.auto_assigned",
                route_id=route_id,
                courier_id=suggestion.courier.courier_id,
                reason=suggestion.reason,
            )
            self._persist()
            return copy.deepcopy(Assignment(route=route, courier=suggestion.courier, reason=suggestion.reason))

    def create_manual_route(self, order_ids: List[str]) -> Route:
        unique_ids = list(dict.fromkeys(order_ids))
        if not unique_ids:
            raise EmptySelection("Select at least one order to build a route.", entity="route")

        with self._lock:
            cfg: RoutingConfig = self.config.current()
            selected = [self._order(oid) for oid in unique_ids]
            for o in selected:
                if o.status != "PENDING":
                    raise InvalidState(
                        f"Order {o.order_id} is {o.status}; only pending orders can be grouped.",
                        entity="order",
                        entity_id=o.order_id,
                        transition=f"{o.status}->QUEUED",
                    )
            if len(selected) > cfg.max_batch:
                raise BatchTooLarge(
                    f"A manual route holds at most {cfg.max_batch} orders, got {len(selected)}.",
                    entity="route",
                )

            selected.sort(key=lambda o: o.sequence)
            route = materialize_route(selected, cfg, self.clock(), _new_id())
            self.routes[route.route_id] = route
            logger.info("route.manual_created", route_id=route.route_id, order_ids=route.order_ids)

            self._persist()
            return copy.deepcopy(route)

    def start_route(self, route_id: str, courier_id: str) -> Route:
        with self._lock:
            route = self._route(route_id)
            if route.courier_id != courier_id:
                raise Forbidden(
                    f"Courier {courier_id} is not assigned to route {route_id}.",
                    entity="route",
                    entity_id=route_id,
                    transition=f"{route.status}->IN_PROGRESS",
                )
            if route.status != "ASSIGNED":
                raise InvalidState(
                    f"Route {route_id} is already {route.status}.",
                    entity="route",
                    entity_id=route_id,
                    transition=f"{route.status}->IN_PROGRESS",
                )
            courier = self._courier(courier_id)

            route.status = "IN_PROGRESS"
            set_courier_status(courier, "ON_TRIP")
            logger.info("route.started", route_id=route_id, courier_id=courier_id)

            self._persist()
            return copy.deepcopy(route)

    def delete_route(self, route_id: str, force: bool = False) -> None:
        """Remove a route and send its undelivered members back to PENDING.

        Anything past AWAITING_COURIER needs ``force``. The courier goes back
        to AVAILABLE only while the route is still active; a DONE route
        released its courier when it finished, and that courier may hold
        another route by now.
        """
        with self._lock:
            route = self._route(route_id)
            if not force and route.status != "AWAITING_COURIER":
                raise InvalidState(
                    f"Route {route_id} is {route.status}; deleting it needs force.",
                    entity="route",
                    entity_id=route_id,
                    transition=f"{route.status}->deleted",
                )

            unlinked: List[str] = []
            for o in self._members(route):
                o.route_id = None
                if o.status == "DELIVERED":
                    # Only reachable with force; both links go so they stay paired.
                    o.courier_id = None
                    unlinked.append(o.order_id)
                else:
                    set_order_status(o, "PENDING")
                    o.courier_id = None

            if unlinked:
                logger.warning(
                    "route.delete_discarded_delivery_link",
                    route_id=route_id,
                    courier_id=route.courier_id,
                    order_ids=unlinked,
                )

            # A DONE route already released its courier, who may be on another route now.
            courier = self.couriers.get(route.courier_id) if route.courier_id else None
            if courier is not None and route.is_active:
                set_courier_status(courier, "AVAILABLE")

            del self.routes[route_id]
            logger.info("route.deleted", route_id=route_id, force=force, status=route.status)
            self._persist()

    # ---------- couriers ----------
    def create_courier(self, name: str, phone: str) -> Courier:
        name = (name or "").strip()
        phone = (phone or "").strip()
        if not name or not phone:
            raise InvalidInput("Courier name and phone are required.", entity="courier")

        with self._lock:
            if any(c.phone == phone for c in self.couriers.values()):
                raise InvalidInput(f"A courier with phone {phone} already exists.", entity="courier")
            courier = Courier(courier_id=_new_id(), name=name, phone=phone)
            self.couriers[courier.courier_id] = courier
            logger.info("courier.created", courier_id=courier.courier_id)
            self._persist()
            return copy.deepcopy(courier)

    def update_courier(self, courier_id: str, name: Optional[str] = None, phone: Optional[str] = None) -> Courier:
        """Blank or missing fields are left as they are."""
        with self._lock:
            courier = self._courier(courier_id)
            name = (name or "").strip()
            phone = (phone or "").strip()
            if phone and any(c.phone == phone and c.courier_id != courier_id for c in self.couriers.values()):
                raise InvalidInput(
                    f"A courier with phone {phone} already exists.",
                    entity="courier",
                    entity_id=courier_id,
                )
            if name:
                courier.name = name
            if phone:
                courier.phone = phone
            logger.info("courier.updated", courier_id=courier_id)
            self._persist()
            return copy.deepcopy(courier)

    def delete_courier(self, courier_id: str) -> None:
        with self._lock:
            courier = self._courier(courier_id)
            active = active_routes_for(courier_id, self.routes)
            if active or courier.status in ("ASSIGNED", "ON_TRIP"):
                raise ActiveRouteExists(
                    f"Courier {courier_id} must finish or hand over their routes before removal.",
                    entity="courier",
                    entity_id=courier_id,
                    transition=f"{courier.status}->deleted",
                )
            del self.couriers[courier_id]
            logger.info("courier.deleted", courier_id=courier_id)
            self._persist()

    def _toggle(self, courier_id: str, status: str) -> Courier:
        with self._lock:
            courier = self._courier(courier_id)
            active = active_routes_for(courier_id, self.routes)
            if active:
                raise ActiveRouteExists(
                    f"Courier {courier_id} is still on route {active[0].route_id}.",
                    entity="courier",
                    entity_id=courier_id,
                    transition=f"{courier.status}->{status}",
                )
            # No active route: an ASSIGNED/ON_TRIP leftover is released first.
            if courier.status in ("ASSIGNED", "ON_TRIP"):
                set_courier_status(courier, "AVAILABLE")
            set_courier_status(courier, status)  # type: ignore[arg-type]
            logger.info(f"courier.{status.lower()}", courier_id=courier_id)
            self._persist()
            return copy.deepcopy(courier)

    def set_courier_available(self, courier_id: str) -> Courier:
        return self._toggle(courier_id, "AVAILABLE")

    def set_courier_offline(self, courier_id: str) -> Courier:
        return self._toggle(courier_id, "OFFLINE")

    def courier_active_route(self, courier_id: str) -> Optional[Route]:
        with self._lock:
            self._courier(courier_id)
            active = active_routes_for(courier_id, self.routes)
            if not active:
                return None
            return copy.deepcopy(max(active, key=lambda r: r.created_at))

    def courier_history(self, courier_id: str, limit: int = 5) -> List[Route]:
        limit = min(max(int(limit), 1), 50)
        with self._lock:
            self._courier(courier_id)
            done = [r for r in self.routes.values() if r.courier_id == courier_id and r.status == "DONE"]
            done.sort(key=lambda r: r.created_at, reverse=True)
            return copy.deepcopy(done[:limit])

    # ---------- configuration ----------
    def update_routing_config(self, **changes: Any) -> RoutingConfig:
        with self._lock:
            cfg = self.config.update(**changes)
            logger.info("config.updated", **cfg.model_dump())
            return cfg

    # ---------- read-only views ----------
    def get_order(self, order_id: str) -> Order:
        with self._lock:
            return copy.deepcopy(self._order(order_id))

    def get_route(self, route_id: str) -> Route:
        with self._lock:
            return copy.deepcopy(self._route(route_id))

    def get_courier(self, courier_id: str) -> Courier:
        with self._lock:
            return copy.deepcopy(self._courier(courier_id))

    def list_orders(self) -> List[Order]:
        with self._lock:
            return copy.deepcopy(sorted(self.orders.values(), key=lambda o: o.sequence))

    def list_couriers(self) -> List[Courier]:
        with self._lock:
            return copy.deepcopy(list(self.couriers.values()))

    def list_routes(self) -> List[Route]:
        with self._lock:
            return copy.deepcopy(sorted(self.routes.values(), key=lambda r: r.created_at))

    def snapshot(self) -> DispatchState:
        with self._lock:
            return copy.deepcopy(self._snapshot())
