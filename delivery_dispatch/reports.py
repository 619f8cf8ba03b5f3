from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .models import DispatchState


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # Naive bounds are read as UTC, like every stored timestamp.
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def orders_report(
    state: DispatchState,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    start, end = _aware(start), _aware(end)
    names = {c.courier_id: c.name for c in state.couriers}
    orders = [
        o for o in state.orders
        if (start is None or o.created_at >= start) and (end is None or o.created_at <= end)
    ]

    by_status: Dict[str, int] = {}
    by_day: Dict[str, Dict[str, Any]] = {}
    by_courier: Dict[str, Dict[str, Any]] = {}
    total_value = 0.0

    for o in orders:
        price = o.delivery_price or 0.0
        total_value += price
        by_status[o.status] = by_status.get(o.status, 0) + 1

        day = o.created_at.date().isoformat()
        bucket = by_day.setdefault(day, {"date": day, "count": 0, "delivered": 0, "total_value": 0.0})
        bucket["count"] += 1
        bucket["total_value"] += price
        if o.status == "DELIVERED":
            bucket["delivered"] += 1

        if o.courier_id:
            stat = by_courier.setdefault(
                o.courier_id,
                {"courier_id": o.courier_id, "courier_name": names.get(o.courier_id), "count": 0},
            )
            stat["count"] += 1

    count = len(orders)
    delivered = by_status.get("DELIVERED", 0)
    courier_stats: List[Dict[str, Any]] = sorted(by_courier.values(), key=lambda s: -s["count"])

    return {
        "totals": {
            "count": count,
            "by_status": by_status,
            "total_value": round(total_value, 2),
            "average_value": round(total_value / count, 2) if count else 0.0,
            "delivered_count": delivered,
            "delivered_rate": round(delivered / count, 3) if count else 0.0,
        },
        "by_day": [by_day[k] for k in sorted(by_day)],
        "courier_stats": courier_stats,
    }
