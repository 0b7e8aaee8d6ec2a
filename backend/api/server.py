"""
Marketplace Order Server
========================
FastAPI server exposing the order pipeline:
- Order creation, listing and payment confirmation
- Stripe webhook endpoint (signature-verified)
- Admin status changes and deletion with compensation
- Receipt download
- Refund recovery loop in the background

pip install fastapi uvicorn pydantic stripe structlog asyncpg pyjwt
"""

import logging
import os
import time
import asyncio
from contextlib import asynccontextmanager
from typing import Any, Optional
from datetime import datetime, timezone
from uuid import uuid4

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn
import structlog

from api.auth import get_identity, require_admin
from pipeline.errors import OrderPipelineError
from pipeline.gateway_adapter import StripeGatewayAdapter
from pipeline.inventory import InMemoryProductStore
from pipeline.order_lifecycle import OrderLifecycleEngine
from pipeline.receipts import FileReceiptGenerator
from pipeline.repositories import InMemoryAuditLog, InMemoryOrderRepository
from schemas.order_definitions import (
    ApiResponse,
    ConfirmPaymentRequest,
    CreateOrderRequest,
    Identity,
    OrderStatus,
    UpdateStatusRequest,
)
from tasks.refund_recovery import config as refund_config, refund_recovery_loop

VERSION = "1.0.0"


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Auth
    JWT_SECRET = os.getenv("JWT_SECRET", "")

    # "memory" or "postgres"
    ORDER_STORE = os.getenv("ORDER_STORE", "memory")

    # "json" or "console"
    LOG_FORMAT = os.getenv("LOG_FORMAT", "json")


config = ServerConfig()


def configure_logging(log_format: str = config.LOG_FORMAT):
    renderer = (
        structlog.dev.ConsoleRenderer(colors=True)
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    )


configure_logging()

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# ENGINE WIRING
# =============================================================================

def build_engine(store: str = config.ORDER_STORE) -> OrderLifecycleEngine:
    """Wire the engine against the configured backing store."""
    if store == "postgres":
        from database import PostgresAuditLog, PostgresOrderRepository, PostgresProductStore

        products = PostgresProductStore()
        orders = PostgresOrderRepository()
        audit_log = PostgresAuditLog()
    else:
        products = InMemoryProductStore()
        orders = InMemoryOrderRepository()
        audit_log = InMemoryAuditLog()

    return OrderLifecycleEngine(
        orders=orders,
        catalog=products,
        inventory=products,
        gateway=StripeGatewayAdapter(),
        receipts=FileReceiptGenerator(),
        audit_log=audit_log,
    )


# =============================================================================
# RESPONSE HELPERS
# =============================================================================

def envelope(response: ApiResponse) -> JSONResponse:
    return JSONResponse(status_code=response.status_code, content=jsonable_encoder(response))


def respond(data: Any = None, message: str = "Success", status_code: int = 200) -> JSONResponse:
    return envelope(ApiResponse.ok(data=data, message=message, status_code=status_code))


def get_engine(request: Request) -> OrderLifecycleEngine:
    return request.app.state.engine


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(
    engine: Optional[OrderLifecycleEngine] = None,
    jwt_secret: Optional[str] = None,
    store: str = config.ORDER_STORE,
    refund_recovery: bool = refund_config.ENABLED,
) -> FastAPI:
    start_time = datetime.now(timezone.utc)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info("server_starting", version=VERSION, env=config.ENV, store=store)

        if store == "postgres":
            from database import Database
            await Database.initialize()

        if not app.state.jwt_secret:
            logger.warning("jwt_secret_missing")

        recovery_task = None
        if refund_recovery:
            recovery_task = asyncio.create_task(refund_recovery_loop(app.state.engine))

        yield

        # Cleanup
        logger.info("server_shutting_down")
        if recovery_task:
            recovery_task.cancel()
            try:
                await recovery_task
            except asyncio.CancelledError:
                pass

        if store == "postgres":
            from database import Database
            await Database.close()

    app = FastAPI(
        title="Marketplace Order Pipeline",
        description="Order lifecycle, payment settlement and inventory reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.engine = engine or build_engine(store)
    app.state.jwt_secret = jwt_secret if jwt_secret is not None else config.JWT_SECRET

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id

        return response

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(OrderPipelineError)
    async def handle_pipeline_error(request: Request, exc: OrderPipelineError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log("request_failed",
            path=request.url.path,
            status_code=exc.status_code,
            error=exc.message)
        return envelope(ApiResponse.fail(exc.status_code, exc.message, exc.data))

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
            for err in exc.errors()
        ]
        return envelope(ApiResponse.fail(400, "Validation failed", errors))

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        return envelope(ApiResponse.fail(exc.status_code, str(exc.detail)))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
        return envelope(ApiResponse.fail(500, "Internal server error"))

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.get("/health")
    async def health_check():
        uptime = (datetime.now(timezone.utc) - start_time).total_seconds()
        return respond({
            "status": "healthy",
            "version": VERSION,
            "uptime_seconds": uptime,
            "store": store,
        })

    # =========================================================================
    # ORDER ENDPOINTS
    # =========================================================================

    @app.post("/orders")
    async def create_order(
        body: CreateOrderRequest,
        identity: Identity = Depends(get_identity),
        engine: OrderLifecycleEngine = Depends(get_engine),
    ):
        created = await engine.create_order(
            user_id=identity.user_id,
            shipping_info=body.shipping_info,
            items=body.order_items,
            payment_method=body.payment_method,
            price=body.price_breakdown(),
        )
        return respond(created, "Order created successfully", 201)

    @app.get("/orders")
    async def list_my_orders(
        identity: Identity = Depends(get_identity),
        engine: OrderLifecycleEngine = Depends(get_engine),
    ):
        orders = await engine.list_user_orders(identity.user_id)
        return respond(orders, "Orders retrieved successfully")

    @app.post("/orders/confirm-payment")
    async def confirm_payment(
        body: ConfirmPaymentRequest,
        identity: Identity = Depends(get_identity),
        engine: OrderLifecycleEngine = Depends(get_engine),
    ):
        result = await engine.confirm_payment(identity, body.order_id, body.payment_intent_id)
        message = (
            "Payment confirmed and order updated"
            if result.settled_now
            else "Order has already been paid"
        )
        return respond(result, message)

    @app.get("/orders/receipt/{order_id}")
    async def download_receipt(
        order_id: str,
        identity: Identity = Depends(get_identity),
        engine: OrderLifecycleEngine = Depends(get_engine),
    ):
        path = await engine.get_receipt(identity, order_id)
        return FileResponse(path, media_type="text/plain", filename=path.name)

    @app.get("/orders/{order_id}")
    async def get_order(
        order_id: str,
        identity: Identity = Depends(get_identity),
        engine: OrderLifecycleEngine = Depends(get_engine),
    ):
        order = await engine.get_order(identity, order_id)
        return respond(order, "Order retrieved successfully")

    # =========================================================================
    # WEBHOOK
    # =========================================================================

    @app.post("/payments/webhook")
    async def stripe_webhook(request: Request, engine: OrderLifecycleEngine = Depends(get_engine)):
        """
        Stripe webhook handler. The raw body is needed for signature
        verification, so it is read before any parsing.
        """
        payload = await request.body()
        sig_header = request.headers.get("stripe-signature")

        result = await engine.process_webhook(payload, sig_header)
        return respond({"received": True, **result}, "Webhook processed")

    # =========================================================================
    # ADMIN ENDPOINTS
    # =========================================================================

    @app.get("/admin/orders")
    async def list_all_orders(
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=10, ge=1),
        status: Optional[OrderStatus] = Query(default=None),
        admin: Identity = Depends(require_admin),
        engine: OrderLifecycleEngine = Depends(get_engine),
    ):
        result = await engine.list_orders(page, limit, status)
        return respond(result, "Orders retrieved successfully")

    @app.put("/admin/orders/{order_id}")
    async def update_order_status(
        order_id: str,
        body: UpdateStatusRequest,
        admin: Identity = Depends(require_admin),
        engine: OrderLifecycleEngine = Depends(get_engine),
    ):
        order = await engine.update_status(order_id, body.status, actor=f"admin:{admin.user_id}")
        return respond(order, "Order status updated successfully")

    @app.delete("/admin/orders/{order_id}")
    async def delete_order(
        order_id: str,
        admin: Identity = Depends(require_admin),
        engine: OrderLifecycleEngine = Depends(get_engine),
    ):
        await engine.delete_order(order_id, actor=f"admin:{admin.user_id}")
        return respond(None, "Order deleted successfully")

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level="info",
    )
