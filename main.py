import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import database
from config import (
    ADMIN_HOLD_MINUTES,
    COD_CHARGE,
    FREE_SHIPPING_THRESHOLD,
    LOG_LEVEL,
    PORT,
    SHIPPING_FEE,
    TAX_RATE,
)
from errors import (
    AlreadyUsedError,
    CouponExhaustedError,
    CouponNotFoundError,
    EmptyCartError,
    InvalidTransitionError,
    OrderCancelledError,
    OrderEngineError,
    OrderNotFoundError,
    OwnershipError,
    ProductNotFoundError,
)
from schemas import Order, OrderStatus, PaymentMethod, ShippingAddress
from services import OrderService

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


app = FastAPI(title="Order Lifecycle API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ----- Models -----
class CreateOrderRequest(BaseModel):
    user_id: str
    payment_method: PaymentMethod = 'cod'
    shipping_address: Optional[ShippingAddress] = None


class PaymentRequest(BaseModel):
    user_id: str


class TrackOrderRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    email: str = Field(..., min_length=1)


class StatusUpdateRequest(BaseModel):
    order_status: OrderStatus


class OrderListResponse(BaseModel):
    orders: List[Order]
    count: int


# ----- Errors -----
ERROR_STATUS_CODES = {
    OrderNotFoundError: 404,
    ProductNotFoundError: 404,
    CouponNotFoundError: 404,
    EmptyCartError: 400,
    OwnershipError: 403,
    AlreadyUsedError: 409,
    CouponExhaustedError: 409,
    OrderCancelledError: 409,
    InvalidTransitionError: 409,
}


@app.exception_handler(OrderEngineError)
async def engine_error_handler(request: Request, exc: OrderEngineError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    if status_code == 500:
        logger.error(f"Unhandled engine error on {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


# ----- Dependencies -----

def get_db():
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return database.db


def get_service(db=Depends(get_db)) -> OrderService:
    return OrderService(db)


# ----- Routes -----
@app.get("/")
def read_root():
    return {"message": "Order Lifecycle Backend Running"}


@app.get("/api/config")
def get_config():
    return {
        "tax_rate": str(TAX_RATE),
        "free_shipping_threshold": FREE_SHIPPING_THRESHOLD,
        "shipping_fee": SHIPPING_FEE,
        "cod_charge": COD_CHARGE,
        "admin_hold_minutes": ADMIN_HOLD_MINUTES,
    }


# Orders
@app.post("/api/orders", response_model=Order, status_code=201)
def create_order(
    req: CreateOrderRequest,
    idempotency_key: Optional[str] = Header(None, alias="X-Idempotency-Key"),
    service: OrderService = Depends(get_service),
):
    return service.create_order(
        req.user_id, req.payment_method, req.shipping_address, idempotency_key
    )


@app.get("/api/orders", response_model=OrderListResponse)
def list_orders(user_id: str = Query(...), service: OrderService = Depends(get_service)):
    orders = service.list_orders(user_id)
    return OrderListResponse(orders=orders, count=len(orders))


# Registered before /api/orders/{order_id} routes so "track" isn't taken as an id.
@app.post("/api/orders/track", response_model=Order)
def track_order(req: TrackOrderRequest, service: OrderService = Depends(get_service)):
    return service.track_order(req.order_id, req.email)


@app.get("/api/orders/{order_id}", response_model=Order)
def get_order(order_id: str, user_id: str = Query(...), service: OrderService = Depends(get_service)):
    return service.get_order(order_id, user_id)


@app.post("/api/orders/{order_id}/pay", response_model=Order)
def confirm_payment(order_id: str, req: PaymentRequest, service: OrderService = Depends(get_service)):
    return service.confirm_payment(order_id, req.user_id)


@app.post("/api/orders/{order_id}/payment-failed", response_model=Order)
def payment_failed(order_id: str, req: PaymentRequest, service: OrderService = Depends(get_service)):
    return service.fail_payment(order_id, req.user_id)


# Coupons
@app.get("/api/coupons/validate/{code}")
def validate_coupon(
    code: str,
    order_value: int = Query(0, ge=0),
    service: OrderService = Depends(get_service),
):
    return service.preview_coupon(code, order_value)


# Admin
@app.get("/api/admin/orders")
def admin_list_orders(
    status: Optional[OrderStatus] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    service: OrderService = Depends(get_service),
):
    return service.list_all_orders(status, page, limit)


@app.put("/api/admin/orders/{order_id}/status", response_model=Order)
def admin_set_status(order_id: str, req: StatusUpdateRequest, service: OrderService = Depends(get_service)):
    return service.set_order_status(order_id, req.order_status)


@app.post("/api/admin/orders/{order_id}/cancel", response_model=Order)
def admin_cancel_order(order_id: str, service: OrderService = Depends(get_service)):
    return service.cancel_order(order_id)


@app.get("/api/admin/coupons/{code}/stats")
def admin_coupon_stats(code: str, service: OrderService = Depends(get_service)):
    return service.coupon_stats(code)


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    db = database.db
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"
    return response


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
