from typing import Optional

from fastapi import FastAPI

from shared.config.database import engine, Base, ensure_schema

# IMPORTANT: import models so they register with Base
from services.order_service import models as order_models  # noqa: F401

from services.order_service.emitter import OrderEventEmitter
from services.order_service.main import order_app
from services.realtime_service.auth import JWTSessionValidator
from services.realtime_service.main import realtime_app
from services.realtime_service.service import RealtimeHub


def create_app(hub: Optional[RealtimeHub] = None) -> FastAPI:
    """Builds the cluster app; the order and realtime services share one hub."""
    hub = hub or RealtimeHub(JWTSessionValidator())
    emitter = OrderEventEmitter(hub)

    order_app.state.emitter = emitter
    order_app.state.hub = hub
    realtime_app.state.hub = hub

    app = FastAPI(title="Cookie Cutter Orders")
    app.state.hub = hub
    app.state.emitter = emitter

    @app.on_event("startup")
    async def startup_event():
        async with engine.begin() as conn:
            await ensure_schema(conn)
            await conn.run_sync(Base.metadata.create_all)

    @app.on_event("shutdown")
    async def shutdown_event():
        await hub.close_all()

    app.mount("/orders", order_app)
    app.mount("/realtime", realtime_app)
    return app


app = create_app()
