import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from . import config
from .auth import get_current_merchant
from .consumers import start_consumer_thread
from .database import engine, get_db
from .errors import OrderServiceError, TransientProviderError
from .messaging.producer import RabbitMQProducer
from .models import Base, Merchant
from .orders import OrderService
from .payment_service import PaymentService
from .payments.registry import GatewayRegistry, default_registry
from .refunds import RefundService
from .schemas import (
    ApprovalOut,
    CancelRequest,
    OrderDetailOut,
    OrderPage,
    OrderRequest,
    OrderStatus,
    OrderType,
    PaymentRequest,
    PaymentStatus,
    PaymentStatusOut,
    RefundOut,
    RefundRequest,
    StatusUpdateRequest,
)
from .store_status import StoreStatusService

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables on startup if they don't exist.
Base.metadata.create_all(bind=engine)


# --- Service wiring ---

@lru_cache
def get_publisher() -> Optional[RabbitMQProducer]:
    # No broker configured: events are simply not published.
    return RabbitMQProducer() if config.RABBITMQ_HOST else None


@lru_cache
def get_gateways() -> GatewayRegistry:
    return default_registry()


def get_order_service(publisher=Depends(get_publisher)) -> OrderService:
    return OrderService(status_service=StoreStatusService(), publisher=publisher)


def get_payment_service(gateways=Depends(get_gateways), publisher=Depends(get_publisher)) -> PaymentService:
    return PaymentService(gateways, publisher=publisher)


def get_refund_service(gateways=Depends(get_gateways), publisher=Depends(get_publisher)) -> RefundService:
    return RefundService(gateways, publisher=publisher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if config.RABBITMQ_HOST:
        start_consumer_thread(PaymentService(get_gateways(), publisher=get_publisher()))
    yield
    publisher = get_publisher()
    if publisher is not None:
        publisher.close()


app = FastAPI(title="Pickup Order Service", lifespan=lifespan)


@app.exception_handler(OrderServiceError)
def handle_service_error(request: Request, exc: OrderServiceError):
    body = {"error": exc.message, "reason": exc.reason, "retryable": exc.retryable}
    headers = None
    if isinstance(exc, TransientProviderError):
        body["max_attempts"] = config.CAPTURE_MAX_VERIFY_ATTEMPTS
        headers = {"Retry-After": str(config.CAPTURE_RETRY_AFTER_SECONDS)}
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


@app.get("/")
def root():
    """Health check endpoint."""
    return {"message": "Order service is running"}


# --- Checkout ---

@app.post("/api/v1/orders", response_model=OrderDetailOut, status_code=201)
def create_order(
    req: OrderRequest,
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    order = orders.create_order(db, req)
    return orders.get_order(db, order.id)


@app.get("/api/v1/orders/{order_id}", response_model=OrderDetailOut)
def get_order(order_id: str, db: Session = Depends(get_db), orders: OrderService = Depends(get_order_service)):
    return orders.get_order(db, order_id)


# --- Payments ---

@app.post("/api/v1/orders/{order_id}/payment", response_model=ApprovalOut)
def start_payment(
    order_id: str,
    req: PaymentRequest,
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    approval_url = payments.start_payment(db, order_id, str(req.return_url), str(req.cancel_url))
    return ApprovalOut(approval_url=approval_url)


@app.post("/api/v1/orders/{order_id}/payment/capture", response_model=PaymentStatusOut)
def capture_payment(order_id: str, db: Session = Depends(get_db), payments: PaymentService = Depends(get_payment_service)):
    outcome = payments.capture_payment(db, order_id)
    return PaymentStatusOut(payment_status=outcome.payment_status, success=outcome.success)


@app.get("/api/v1/orders/{order_id}/payment/verify", response_model=PaymentStatusOut)
def verify_payment(order_id: str, db: Session = Depends(get_db), payments: PaymentService = Depends(get_payment_service)):
    outcome = payments.verify_payment(db, order_id)
    return PaymentStatusOut(payment_status=outcome.payment_status, success=outcome.success)


@app.post("/api/v1/webhooks/{provider}")
async def payment_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    payments: PaymentService = Depends(get_payment_service),
):
    body = await request.body()
    logger.info("Received %s webhook (%d bytes)", provider, len(body))
    try:
        outcome = await run_in_threadpool(payments.handle_webhook, db, provider, body, request.headers)
    except TransientProviderError as exc:
        # Acknowledge anyway: the next verify, webhook or queued event reconciles again.
        logger.error("Webhook reconciliation for %s deferred: %s", provider, exc.message)
        return {"received": True, "processed": False}
    if outcome is None:
        return {"received": True, "processed": False}
    return {"received": True, "processed": True, "payment_status": outcome.payment_status}


# --- Store owner console ---

@app.get("/api/v1/stores/{store_id}/orders", response_model=OrderPage)
def list_store_orders(
    store_id: str,
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    order_type: Optional[OrderType] = None,
    limit: int = 50,
    cursor: Optional[str] = None,
    merchant: Merchant = Depends(get_current_merchant),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    page, next_cursor = orders.list_orders(
        db, store_id, merchant.id,
        status=status, payment_status=payment_status, order_type=order_type,
        limit=max(1, min(limit, 100)), cursor=cursor,
    )
    return OrderPage(orders=page, next_cursor=next_cursor)


@app.get("/api/v1/stores/{store_id}/kitchen", response_model=OrderPage)
def list_kitchen_orders(
    store_id: str,
    limit: int = 50,
    cursor: Optional[str] = None,
    merchant: Merchant = Depends(get_current_merchant),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    page, next_cursor = orders.list_kitchen_orders(db, store_id, merchant.id, limit=max(1, min(limit, 100)), cursor=cursor)
    return OrderPage(orders=page, next_cursor=next_cursor)


@app.get("/api/v1/stores/{store_id}/kitchen/done", response_model=OrderPage)
def list_completed_orders(
    store_id: str,
    limit: int = 50,
    cursor: Optional[str] = None,
    merchant: Merchant = Depends(get_current_merchant),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    page, next_cursor = orders.list_completed_orders(db, store_id, merchant.id, limit=max(1, min(limit, 100)), cursor=cursor)
    return OrderPage(orders=page, next_cursor=next_cursor)


@app.patch("/api/v1/orders/{order_id}/status", response_model=OrderDetailOut)
def update_order_status(
    order_id: str,
    req: StatusUpdateRequest,
    merchant: Merchant = Depends(get_current_merchant),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    orders.update_status(db, order_id, merchant.id, req.status)
    return orders.get_order(db, order_id)


@app.post("/api/v1/orders/{order_id}/cancel", response_model=OrderDetailOut)
def cancel_order(
    order_id: str,
    req: Optional[CancelRequest] = None,
    merchant: Merchant = Depends(get_current_merchant),
    db: Session = Depends(get_db),
    orders: OrderService = Depends(get_order_service),
):
    orders.cancel_order(db, order_id, merchant.id, reason=req.reason if req else None)
    return orders.get_order(db, order_id)


@app.post("/api/v1/orders/{order_id}/refund", response_model=RefundOut)
def refund_order(
    order_id: str,
    req: Optional[RefundRequest] = None,
    merchant: Merchant = Depends(get_current_merchant),
    db: Session = Depends(get_db),
    refunds: RefundService = Depends(get_refund_service),
):
    req = req or RefundRequest()
    outcome = refunds.issue_refund(db, order_id, merchant.id, amount=req.amount, description=req.description)
    return RefundOut(**asdict(outcome))
