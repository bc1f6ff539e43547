from fastapi import FastAPI
from shared.observability.setup import setup_observability

from .router import router, public_router

realtime_app = FastAPI(
    title="Realtime Service",
    version="1.0.0",
    description="Role-scoped live order updates over WebSocket.",
)

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(realtime_app, "realtime_service")

realtime_app.include_router(public_router)
realtime_app.include_router(router)
