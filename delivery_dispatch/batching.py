from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Sequence

import structlog

from .config import CLUSTER_RADIUS_KM, RoutingConfig
from .geo import build_maps_url, haversine_km, nearest
from .lifecycle import set_order_status
from .models import BatchOutcome, Order, Route


logger = structlog.get_logger(__name__)


@dataclass
class BatchRun:
    outcome: BatchOutcome
    routes: List[Route] = field(default_factory=list)


def _wait_minutes(now: datetime, created_at: datetime) -> float:
    return (now - created_at).total_seconds() / 60.0


def _within_radius(a: Order, b: Order) -> bool:
    return haversine_km(a.loc, b.loc) <= CLUSTER_RADIUS_KM


# ----------------------------
# Batch selection
# ----------------------------

def _grow_cluster(seed: Order, pending: Sequence[Order], max_batch: int) -> List[Order]:
    cluster = [seed]
    taken = {seed.order_id}

    grew = True
    while grew and len(cluster) < max_batch:
        grew = False
        for o in pending:
            if o.order_id in taken:
                continue
            if any(_within_radius(o, m) for m in cluster):
                cluster.append(o)
                taken.add(o.order_id)
                grew = True
                if len(cluster) >= max_batch:
                    break
    return cluster


def find_cluster(pending: Sequence[Order], cfg: RoutingConfig) -> Optional[List[Order]]:
    """First seed (in queue order) whose radius-linked cluster reaches min_batch."""
    for seed in pending:
        cluster = _grow_cluster(seed, pending, cfg.max_batch)
        if len(cluster) >= cfg.min_batch:
            cluster.sort(key=lambda o: o.sequence)
            return cluster[: cfg.max_batch]
    return None


def greedy_batch(pending: Sequence[Order], max_batch: int) -> List[Order]:
    """Oldest order first, then nearest remaining to the last one added."""
    selected = [pending[0]]
    remaining = list(pending[1:])
    while len(selected) < max_batch and remaining:
        nxt = nearest(selected[-1].loc, remaining, lambda o: o.loc)
        selected.append(nxt)
        remaining.remove(nxt)
    return selected


def should_hold(pending: Sequence[Order], cfg: RoutingConfig, wait_min: float) -> bool:
    """Smart-batch hold: the oldest order has no companion nearby yet and the hold is still open."""
    hold = cfg.hold_minutes
    if hold is None or len(pending) < 2 or wait_min >= hold:
        return False
    oldest = pending[0]
    closest = min(haversine_km(oldest.loc, o.loc) for o in pending[1:])
    return closest >= CLUSTER_RADIUS_KM


# ----------------------------
# Route materialization
# ----------------------------

def materialize_route(
    selected: Sequence[Order],
    cfg: RoutingConfig,
    now: datetime,
    route_id: str,
) -> Route:
    route = Route(
        route_id=route_id,
        order_ids=[o.order_id for o in selected],
        created_at=now,
        maps_url=build_maps_url(cfg.origin, [o.loc for o in selected]),
        total_price=float(sum(o.delivery_price or 0.0 for o in selected)),
    )
    for o in selected:
        set_order_status(o, "QUEUED")
        o.route_id = route.route_id
        o.courier_id = None
    return route


# ----------------------------
# Main loop
# ----------------------------

def form_batches(
    pending_orders: Sequence[Order],
    cfg: RoutingConfig,
    now: datetime,
    new_route_id: Callable[[], str],
) -> BatchRun:
    """Partition the pending queue into new AWAITING_COURIER routes.

    ``pending_orders`` are the PENDING orders; they are processed in
    sequence order. Consumed orders become QUEUED with a route reference,
    the rest are left untouched. Runs to a fixed point, so several routes
    may come out of one call; deferring or doing nothing is not an error.
    """
    pending = sorted(pending_orders, key=lambda o: o.sequence)
    routes: List[Route] = []
    stop: BatchOutcome = "insufficient_volume"

    while pending:
        oldest = pending[0]
        wait_min = _wait_minutes(now, oldest.created_at)

        hold = cfg.hold_minutes
        has_min_batch = len(pending) >= cfg.min_batch
        hold_expired = hold is not None and wait_min >= hold
        has_old_order = wait_min >= cfg.max_wait_minutes or hold_expired

        cluster = find_cluster(pending, cfg)

        deferring = cluster is None and should_hold(pending, cfg, wait_min)
        if deferring and not has_old_order:
            stop = "deferred_for_cluster"
            logger.info(
                "batching.deferred_for_cluster",
                oldest_order_id=oldest.order_id,
                wait_min=round(wait_min, 2),
                pending=len(pending),
            )
            break

        if cluster is None and not has_min_batch and not has_old_order:
            stop = "insufficient_volume"
            logger.debug(
                "batching.insufficient_volume",
                pending=len(pending),
                wait_min=round(wait_min, 2),
            )
            break

        selected = cluster if cluster is not None else greedy_batch(pending, cfg.max_batch)
        route = materialize_route(selected, cfg, now, new_route_id())
        routes.append(route)

        logger.info(
            "batching.route_formed",
            route_id=route.route_id,
            order_ids=route.order_ids,
            clustered=cluster is not None,
            sla_forced=has_old_order and not has_min_batch,
        )

        taken = set(route.order_ids)
        pending = [o for o in pending if o.order_id not in taken]

    return BatchRun(outcome="batched" if routes else stop, routes=routes)
