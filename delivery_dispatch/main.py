from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from .config import DispatchSettings, RoutingConfigProvider, load_settings
from .engine import DispatchEngine
from .exceptions import DispatchError
from .logging_config import configure_logging
from .pricing import BandPricing
from .reports import orders_report
from .storage import make_storage
from .ticker import TickRunner


class CreateOrderBody(BaseModel):
    address: str
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class CreateCourierBody(BaseModel):
    name: str
    phone: str


class CourierActionBody(BaseModel):
    courier_id: str


class DeliveredBody(BaseModel):
    courier_id: Optional[str] = None


class UpdateOrderBody(BaseModel):
    address: Optional[str] = None
    lat: Optional[float] = Field(default=None, ge=-90, le=90)
    lng: Optional[float] = Field(default=None, ge=-180, le=180)


class UpdateCourierBody(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None


class ManualRouteBody(BaseModel):
    order_ids: List[str]


class RoutingConfigBody(BaseModel):
    min_batch: Optional[int] = None
    max_batch: Optional[int] = None
    max_wait_minutes: Optional[float] = None
    smart_batch_hold_minutes: Optional[float] = None
    origin_lat: Optional[float] = None
    origin_lng: Optional[float] = None
    max_radius_km: Optional[float] = None


def build_engine(settings: DispatchSettings) -> DispatchEngine:
    provider = RoutingConfigProvider(settings.routing)
    return DispatchEngine(
        config=provider,
        pricing=BandPricing(provider),
        storage=make_storage(settings),
    )


def create_app(
    engine: Optional[DispatchEngine] = None,
    settings: Optional[DispatchSettings] = None,
    start_ticker: bool = True,
) -> FastAPI:
    settings = settings or load_settings()
    configure_logging(settings)
    engine = engine or build_engine(settings)
    runner = TickRunner(engine, interval_sec=settings.tick_interval_sec)

    app = FastAPI(title="Delivery Dispatch", version="0.8.0")
    app.state.engine = engine
    app.state.runner = runner

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DispatchError)
    async def _dispatch_error(_: Request, exc: DispatchError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ValidationError)
    async def _config_error(_: Request, exc: ValidationError):
        return JSONResponse(status_code=422, content={"error": "InvalidInput", "detail": str(exc)})

    @app.on_event("startup")
    async def _startup():
        if start_ticker:
            await runner.start()

    @app.on_event("shutdown")
    async def _shutdown():
        await runner.stop()

    @app.get("/health")
    def health():
        return {"ok": True, "version": app.version}

    # ---- routing configuration ----
    @app.get("/routing-config")
    def get_routing_config():
        return engine.config.current().model_dump()

    @app.put("/routing-config")
    def put_routing_config(body: RoutingConfigBody):
        return engine.update_routing_config(**body.model_dump()).model_dump()

    # ---- orders ----
    @app.post("/orders", status_code=201)
    def create_order(body: CreateOrderBody):
        return engine.create_order(body.address, body.lat, body.lng)

    @app.get("/orders")
    def list_orders():
        return engine.list_orders()

    @app.get("/orders/{order_id}")
    def get_order(order_id: str):
        return engine.get_order(order_id)

    @app.put("/orders/{order_id}")
    def update_order(order_id: str, body: UpdateOrderBody):
        return engine.update_order(order_id, body.address, body.lat, body.lng)

    @app.delete("/orders/{order_id}", status_code=204)
    def delete_order(order_id: str, force: bool = False):
        engine.delete_order(order_id, force=force)

    @app.post("/orders/{order_id}/delivered")
    def order_delivered(order_id: str, body: DeliveredBody):
        return engine.mark_order_delivered(order_id, body.courier_id)

    # ---- couriers ----
    @app.post("/couriers", status_code=201)
    def create_courier(body: CreateCourierBody):
        return engine.create_courier(body.name, body.phone)

    @app.get("/couriers")
    def list_couriers():
        return engine.list_couriers()

    @app.put("/couriers/{courier_id}")
    def update_courier(courier_id: str, body: UpdateCourierBody):
        return engine.update_courier(courier_id, body.name, body.phone)

    @app.delete("/couriers/{courier_id}", status_code=204)
    def delete_courier(courier_id: str):
        engine.delete_courier(courier_id)

    @app.post("/couriers/{courier_id}/available")
    def courier_available(courier_id: str):
        return engine.set_courier_available(courier_id)

    @app.post("/couriers/{courier_id}/offline")
    def courier_offline(courier_id: str):
        return engine.set_courier_offline(courier_id)

    @app.get("/couriers/{courier_id}/current-route")
    def courier_current_route(courier_id: str):
        route = engine.courier_active_route(courier_id)
        if route is None:
            return JSONResponse(status_code=404, content={"error": "NotFound", "detail": "No active route for courier"})
        return route

    @app.get("/couriers/{courier_id}/history")
    def courier_history(courier_id: str, limit: int = 5):
        return {"history": engine.courier_history(courier_id, limit)}

    # ---- routes ----
    @app.get("/routes")
    def list_routes():
        return engine.list_routes()

    @app.get("/routes/{route_id}")
    def get_route(route_id: str):
        return engine.get_route(route_id)

    @app.post("/routes/manual", status_code=201)
    def manual_route(body: ManualRouteBody):
        return engine.create_manual_route(body.order_ids)

    @app.post("/routes/{route_id}/assign")
    def assign_route(route_id: str, body: CourierActionBody):
        return engine.assign_route(route_id, body.courier_id)

    @app.post("/routes/{route_id}/assign/auto")
    def assign_route_auto(route_id: str):
        return engine.assign_route_automatically(route_id)

    @app.get("/routes/{route_id}/suggest-courier")
    def suggest_courier(route_id: str):
        return engine.suggest_courier(route_id)

    @app.post("/routes/{route_id}/start")
    def start_route(route_id: str, body: CourierActionBody):
        return engine.start_route(route_id, body.courier_id)

    @app.delete("/routes/{route_id}", status_code=204)
    def delete_route(route_id: str, force: bool = False):
        engine.delete_route(route_id, force=force)

    # ---- batching / reports ----
    @app.post("/dispatch/tick")
    def dispatch_tick():
        run = engine.tick()
        if run is None:
            return {"skipped": True, "outcome": None, "routes": []}
        return {"skipped": False, "outcome": run.outcome, "routes": run.routes}

    @app.get("/reports/orders")
    def report_orders(
        start: Optional[datetime] = Query(default=None, alias="from"),
        end: Optional[datetime] = Query(default=None, alias="to"),
    ):
        return orders_report(engine.snapshot(), start, end)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
