from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import structlog

from shared.errors import OrderWorkflowError
from shared.observability import setup_observability
from shared.security import limiter

from .models import Order  # noqa: F401  registers the model with Base
from .router import router, public_router

logger = structlog.get_logger(__name__)

order_app = FastAPI(
    title="Order Service",
    version="1.0.0",
    description="Cookie-cutter orders: staged review workflow and pickup scheduling.",
)

# --- OBSERVABILITY BOOTSTRAP ---
setup_observability(order_app, "order_service")

# --- SECURITY SETUP ---
order_app.state.limiter = limiter
order_app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@order_app.exception_handler(OrderWorkflowError)
async def workflow_error_handler(request: Request, exc: OrderWorkflowError):
    logger.info("order_request_refused", path=request.url.path, code=exc.code, reason=exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


order_app.include_router(public_router)
order_app.include_router(router)
