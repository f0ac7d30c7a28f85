# api/server.py
# ============================================================================
# PORTFOLIO PAYMENTS — FASTAPI SERVER
# ============================================================================
# HTTP surface for order creation, verification polls, provider webhooks,
# receipts and operator views. All payment logic lives in PaymentGateway.
# ============================================================================

import time
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import Settings, get_settings
from logging_config import configure_logging
from pipeline.errors import NotificationError, PaymentError
from pipeline.notification_dispatcher import NotificationDispatcher
from pipeline.payment_gateway import PaymentGateway
from schemas.payment_definitions import (
    ContactRequest,
    CreatePhonePeOrderRequest,
    CreateRazorpayOrderRequest,
    Environment,
    OrderCreated,
    PaymentRecord,
    PaymentStats,
    PaymentStatus,
    ReceiptRequest,
    VerificationResponse,
    VerifyPhonePeRequest,
    VerifyRazorpayRequest,
    WebhookAck,
)
from services.email_service import EmailService
from services.phonepe_client import PhonePeClient
from services.razorpay_client import RazorpayClient
from services.sms_service import SmsService
from storage.payment_store import create_payment_store

logger = structlog.get_logger().bind(component="server")

SERVICE_NAME = "portfolio-payments"
VERSION = "1.0.0"


# ============================================================================
# RESPONSE MODELS
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: str
    service: str
    version: str
    uptime_seconds: float
    store: str


class PaymentList(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    count: int
    payments: List[PaymentRecord] = Field(default_factory=list)


# ============================================================================
# GATEWAY WIRING
# ============================================================================

async def build_gateway(settings: Settings) -> PaymentGateway:
    store = await create_payment_store(
        settings.database_url,
        min_pool_size=settings.db_min_pool_size,
        max_pool_size=settings.db_max_pool_size,
    )
    dispatcher = NotificationDispatcher(
        EmailService(settings.email),
        SmsService(settings.sms),
        default_country_code=settings.sms.default_country_code,
    )
    return PaymentGateway(
        store,
        PhonePeClient(settings.phonepe),
        RazorpayClient(settings.razorpay),
        dispatcher,
        settings,
    )


async def close_gateway(gateway: PaymentGateway):
    await gateway.phonepe.close()
    await gateway.razorpay.close()
    sms = gateway.dispatcher.sms
    if sms is not None:
        await sms.close()
    await gateway.store.close()


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway


def get_email(gateway: PaymentGateway = Depends(get_gateway)) -> EmailService:
    return gateway.dispatcher.email


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    gateway: Optional[PaymentGateway] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """Build the FastAPI app. An injected gateway skips startup wiring."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        configure_logging(settings)
        owns_gateway = getattr(app.state, "gateway", None) is None
        if owns_gateway:
            app.state.gateway = await build_gateway(settings)
        logger.info("service_started",
                    version=VERSION,
                    env=settings.env,
                    phonepe_environment=settings.phonepe.environment_label,
                    store=app.state.gateway.store.backend_name)

        yield

        logger.info("service_stopping")
        if owns_gateway:
            await close_gateway(app.state.gateway)

    app = FastAPI(
        title="Portfolio Payments",
        description="PhonePe and Razorpay payments with reconciliation and notifications",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.state.started_at = time.monotonic()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        logger.debug("request_completed",
                     method=request.method,
                     path=request.url.path,
                     status=response.status_code,
                     duration_ms=round(duration, 2))
        return response

    _register_error_handlers(app)
    _register_routes(app)
    return app


# ============================================================================
# ERROR HANDLERS
# ============================================================================

def _register_error_handlers(app: FastAPI):

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log("request_failed",
            path=request.url.path,
            error_code=exc.code,
            status=exc.status_code,
            error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
        logger.warning("request_invalid", path=request.url.path, fields=fields)
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Invalid request body",
                "errorCode": "validation_error",
                "details": {"fields": fields},
            },
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("request_crashed", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Internal server error", "errorCode": "internal_error"},
        )


# ============================================================================
# ENDPOINTS
# ============================================================================

def _register_routes(app: FastAPI):

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request, gateway: PaymentGateway = Depends(get_gateway)):
        """Health check endpoint."""
        return HealthResponse(
            status="healthy",
            service=SERVICE_NAME,
            version=VERSION,
            uptime_seconds=round(time.monotonic() - request.app.state.started_at, 3),
            store=gateway.store.backend_name,
        )

    # ------------------------------------------------------------- PhonePe

    @app.post("/api/create-phonepe-order", response_model=OrderCreated)
    async def create_phonepe_order(
        body: CreatePhonePeOrderRequest,
        gateway: PaymentGateway = Depends(get_gateway),
    ):
        return await gateway.create_phonepe_order(body)

    @app.post("/api/verify-phonepe-payment", response_model=VerificationResponse)
    async def verify_phonepe_payment(
        body: VerifyPhonePeRequest,
        gateway: PaymentGateway = Depends(get_gateway),
    ):
        return await gateway.verify_phonepe_payment(body)

    async def _webhook(request: Request, gateway: PaymentGateway, tier: Optional[Environment]):
        return await gateway.handle_phonepe_webhook(await request.body(), request.headers, tier)

    @app.post("/api/phonepe-webhook-production", response_model=WebhookAck)
    async def phonepe_webhook_production(request: Request, gateway: PaymentGateway = Depends(get_gateway)):
        return await _webhook(request, gateway, Environment.PRODUCTION)

    @app.post("/api/phonepe-webhook-sandbox", response_model=WebhookAck)
    async def phonepe_webhook_sandbox(request: Request, gateway: PaymentGateway = Depends(get_gateway)):
        return await _webhook(request, gateway, Environment.SANDBOX)

    @app.post("/api/phonepe-webhook", response_model=WebhookAck)
    async def phonepe_webhook(request: Request, gateway: PaymentGateway = Depends(get_gateway)):
        return await _webhook(request, gateway, None)

    @app.get("/api/phonepe-webhook-production")
    async def phonepe_webhook_production_status(gateway: PaymentGateway = Depends(get_gateway)):
        return gateway.webhook_status(Environment.PRODUCTION)

    @app.get("/api/phonepe-webhook-sandbox")
    async def phonepe_webhook_sandbox_status(gateway: PaymentGateway = Depends(get_gateway)):
        return gateway.webhook_status(Environment.SANDBOX)

    @app.get("/api/phonepe-webhook")
    async def phonepe_webhook_status(gateway: PaymentGateway = Depends(get_gateway)):
        return gateway.webhook_status()

    @app.post("/api/phonepe-callback")
    async def phonepe_callback(request: Request, gateway: PaymentGateway = Depends(get_gateway)):
        return await gateway.handle_phonepe_callback(await request.body(), request.headers)

    @app.get("/api/phonepe-callback")
    async def phonepe_callback_status():
        return {"message": "PhonePe Callback Endpoint", "status": "active"}

    # ------------------------------------------------------------ Razorpay

    @app.post("/api/create-order", response_model=OrderCreated)
    async def create_razorpay_order(
        body: CreateRazorpayOrderRequest,
        gateway: PaymentGateway = Depends(get_gateway),
    ):
        return await gateway.create_razorpay_order(body)

    @app.post("/api/verify-payment", response_model=VerificationResponse)
    async def verify_razorpay_payment(
        body: VerifyRazorpayRequest,
        gateway: PaymentGateway = Depends(get_gateway),
    ):
        return await gateway.verify_razorpay_payment(body)

    # ------------------------------------------------------------- contact

    @app.post("/api/send")
    async def send_contact_message(body: ContactRequest, email: EmailService = Depends(get_email)):
        try:
            await email.send_contact_message(body)
        except NotificationError as e:
            logger.error("contact_email_failed", error=e.message)
            return JSONResponse(status_code=500, content={"success": False, "error": "Failed to send email"})
        logger.info("contact_email_sent", subject=body.subject)
        return {"success": True}

    # ------------------------------------------------------------ receipts

    @app.post("/api/generate-receipt-pdf")
    async def generate_receipt_pdf(body: ReceiptRequest, gateway: PaymentGateway = Depends(get_gateway)):
        pdf_bytes, filename = await gateway.generate_receipt(body)
        return Response(
            content=pdf_bytes,
            media_type="application/pdf",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    # ------------------------------------------------------------ operator

    @app.get("/api/payments", response_model=PaymentList)
    async def list_payments(
        status: Optional[PaymentStatus] = None,
        environment: Optional[Environment] = None,
        customer_email: Optional[str] = Query(default=None, alias="customerEmail"),
        gateway: PaymentGateway = Depends(get_gateway),
    ):
        payments = await gateway.list_payments(status, environment, customer_email)
        return PaymentList(count=len(payments), payments=payments)

    @app.get("/api/payments/stats", response_model=PaymentStats)
    async def payment_stats(gateway: PaymentGateway = Depends(get_gateway)):
        return await gateway.payment_stats()


app = create_app()


# ============================================================================
# MAIN
# ============================================================================

if __name__ == "__main__":
    settings = get_settings()
    uvicorn.run(
        "api.server:app",
        host="0.0.0.0",
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )
