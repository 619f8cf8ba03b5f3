from __future__ import annotations

from typing import Any, Optional

from decouple import config
from pydantic import BaseModel, ConfigDict, Field, model_validator


# Spatial clustering radius used by batch formation (km).
CLUSTER_RADIUS_KM: float = 3.0


class RoutingConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    # Batch sizing
    min_batch: int = Field(default=2, ge=1)
    max_batch: int = Field(default=5, ge=1)

    # SLA: the oldest pending order never waits longer than this
    max_wait_minutes: float = Field(default=25, gt=0)

    # Smart-batch hold; None or 0 disables it
    smart_batch_hold_minutes: Optional[float] = Field(default=5, ge=0)

    # Dispatch origin (restaurant)
    origin_lat: float = Field(default=-3.1120367, ge=-90, le=90)
    origin_lng: float = Field(default=-60.0348224, ge=-180, le=180)
    max_radius_km: float = Field(default=15.0, gt=0)

    @model_validator(mode="after")
    def _check_batch_bounds(self) -> "RoutingConfig":
        if self.max_batch < self.min_batch:
            raise ValueError("max_batch must be greater than or equal to min_batch")
        return self

    @property
    def origin(self) -> tuple[float, float]:
        return (self.origin_lat, self.origin_lng)

    @property
    def hold_minutes(self) -> Optional[float]:
        if not self.smart_batch_hold_minutes:
            return None
        return self.smart_batch_hold_minutes


class RoutingConfigProvider:
    """Holds the restaurant's current routing configuration.

    Consumers call ``current()`` on every use; the value may change between calls.
    """

    def __init__(self, initial: Optional[RoutingConfig] = None):
        self._current = initial or RoutingConfig()

    def current(self) -> RoutingConfig:
        return self._current

    def update(self, **changes: Any) -> RoutingConfig:
        data = self._current.model_dump()
        data.update({k: v for k, v in changes.items() if v is not None})
        self._current = RoutingConfig(**data)
        return self._current


class DispatchSettings(BaseModel):
    # Batching timer
    tick_interval_sec: float = 30.0

    # Persistence ("" keeps everything in memory)
    data_file: str = ""

    # Logging
    log_json: bool = False
    log_level: str = "INFO"

    # Initial routing profile
    routing: RoutingConfig = RoutingConfig()


def load_settings() -> DispatchSettings:
    hold = config("DISPATCH_SMART_BATCH_HOLD_MINUTES", default=5, cast=float)
    routing = RoutingConfig(
        min_batch=config("DISPATCH_MIN_BATCH", default=2, cast=int),
        max_batch=config("DISPATCH_MAX_BATCH", default=5, cast=int),
        max_wait_minutes=config("DISPATCH_MAX_WAIT_MINUTES", default=25, cast=float),
        smart_batch_hold_minutes=hold or None,
        origin_lat=config("DISPATCH_ORIGIN_LAT", default=-3.1120367, cast=float),
        origin_lng=config("DISPATCH_ORIGIN_LNG", default=-60.0348224, cast=float),
        max_radius_km=config("DISPATCH_MAX_RADIUS_KM", default=15.0, cast=float),
    )
    return DispatchSettings(
        tick_interval_sec=config("DISPATCH_TICK_SECONDS", default=30.0, cast=float),
        data_file=config("DISPATCH_DATA_FILE", default=""),
        log_json=config("DISPATCH_LOG_JSON", default=False, cast=bool),
        log_level=config("LOG_LEVEL", default="INFO"),
        routing=routing,
    )
