import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .db import close_pool, init_schema
from .deps import get_orchestrator
from .errors import GatewayUnavailable, InvalidRequest, InvalidTransition, PaymentDeclined, SettlementError
from .routes import checkout as checkout_router
from .routes import orders as orders_router
from .settings import settings, setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await init_schema()
    except Exception as e:
        # Don't crash; the first request will surface the database problem
        logger.warning("schema init failed (will retry lazily): %s", e)
    yield
    if get_orchestrator.cache_info().currsize:
        await get_orchestrator().drain()
    await close_pool()


app = FastAPI(title="Orderflow Checkout Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkout_router.router)
app.include_router(orders_router.router)


# ---------- Error mapping ----------

_STATUS_BY_ERROR = {
    InvalidRequest: 400,
    PaymentDeclined: 402,
    InvalidTransition: 409,
    GatewayUnavailable: 503,
}


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError):
    status = next((code for cls, code in _STATUS_BY_ERROR.items() if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=status, content={"error": exc.kind, "message": exc.message})


@app.get("/")
def root():
    return {"message": "Orderflow API is running"}
