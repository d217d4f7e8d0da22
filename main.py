import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import stripe
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import database
from config import (
    DATABASE_NAME,
    DATABASE_URL,
    FRONTEND_ORIGIN,
    PORT,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
    SWEEPER_ENABLED,
    configure_logging,
)
from database import DocumentStore
from errors import (
    ConcurrentUpdateError,
    InsufficientReservedStockError,
    InsufficientStockError,
    InvalidTransitionError,
    OrderNotCancellableError,
    OrderNotFoundError,
    PaymentFailedError,
    PaymentGatewayError,
    ProductNotFoundError,
    ShopError,
    StockConfirmationFailedError,
    StockReservationFailedError,
    UserNotFoundError,
    VariantNotFoundError,
)
from notifications import LoggingNotifier, NotificationSink
from orders import ORDERS, OrderService
from payments import PaymentGateway, StripeGateway
from reservations import PRODUCTS, ReservationEngine
from schemas import Address, Product, Stock, Variant
from sweeper import ExpirationSweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    sweeper = None
    store = database.get_store()
    if store is not None and SWEEPER_ENABLED:
        sweeper = ExpirationSweeper(ReservationEngine(store))
        sweeper.start()
    yield
    if sweeper is not None:
        sweeper.stop(timeout=5)


app = FastAPI(title="TheRawKing API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


ERROR_STATUS_CODES = {
    ProductNotFoundError: 404,
    VariantNotFoundError: 404,
    UserNotFoundError: 404,
    OrderNotFoundError: 404,
    InsufficientStockError: 400,
    InsufficientReservedStockError: 400,
    StockReservationFailedError: 400,
    PaymentFailedError: 400,
    OrderNotCancellableError: 400,
    InvalidTransitionError: 400,
    ConcurrentUpdateError: 409,
    StockConfirmationFailedError: 409,
    PaymentGatewayError: 502,
}


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    """Map ShopError subclasses to HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__, **exc.to_dict()},
    )


# --- Dependencies ---


def get_store() -> DocumentStore:
    store = database.get_store()
    if store is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return store


def get_engine(store: DocumentStore = Depends(get_store)) -> ReservationEngine:
    return ReservationEngine(store)


def get_payment_gateway() -> PaymentGateway:
    if not STRIPE_SECRET_KEY:
        raise HTTPException(status_code=500, detail="Stripe not configured. Set STRIPE_SECRET_KEY.")
    return StripeGateway(STRIPE_SECRET_KEY)


def get_notifier() -> NotificationSink:
    return LoggingNotifier()


def get_order_service(
    store: DocumentStore = Depends(get_store),
    engine: ReservationEngine = Depends(get_engine),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    notifier: NotificationSink = Depends(get_notifier),
) -> OrderService:
    return OrderService(store, engine, gateway, notifier)


def serialize(doc: dict) -> dict:
    out = {k: v for k, v in doc.items() if k != database.VERSION_FIELD}
    out["id"] = str(out.pop("_id"))
    return out


@app.get("/")
def read_root():
    return {"message": "TheRawKing backend running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if DATABASE_URL else "❌ Not Set",
        "database_name": "✅ Set" if DATABASE_NAME else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
        "stripe": "✅ Configured" if STRIPE_SECRET_KEY else "⚠️ Missing STRIPE_SECRET_KEY",
    }

    try:
        if database.db is not None:
            response["database"] = "✅ Connected"
            collections = database.db.list_collection_names()
            response["collections"] = collections[:10]
            response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"⚠️ Error: {str(e)[:80]}"

    return response


# Seed products
def _sizes(sku: str, per_size: int) -> List[Variant]:
    return [
        Variant(id=f"{sku}-{size}", name="Size", value=size, stock=per_size)
        for size in ("S", "M", "L", "XL")
    ]


MOON_PRODUCTS = [
    Product(
        name="Lunar Phase Tee",
        sku="TRK-LUNAR",
        description="Premium cotton tee featuring the moon phases in subtle reflective ink.",
        price=32.0,
        images=[
            "https://images.unsplash.com/photo-1520975693411-b2f4a45f66f6?q=80&w=1200&auto=format&fit=crop",
        ],
        featured=True,
        color="Black",
        tag="New",
        stock=Stock(quantity=40, low_stock_threshold=8),
        variants=_sizes("TRK-LUNAR", 10),
    ),
    Product(
        name="Moonrise Oversized Tee",
        sku="TRK-MOONRISE",
        description="Oversized fit with gradient moonrise graphic – ultra-soft and breathable.",
        price=38.0,
        images=[
            "https://images.unsplash.com/photo-1520975655913-61e5d1e0b5f4?q=80&w=1200&auto=format&fit=crop",
        ],
        featured=True,
        color="Midnight Blue",
        tag="Limited",
        stock=Stock(quantity=12, low_stock_threshold=4),
        variants=_sizes("TRK-MOONRISE", 3),
    ),
    Product(
        name="Eclipse Minimal Tee",
        sku="TRK-ECLIPSE",
        description="Clean eclipse ring chest print. Minimal. Bold. Cosmic.",
        price=29.0,
        images=[
            "https://images.unsplash.com/photo-1491553895911-0055eca6402d?q=80&w=1200&auto=format&fit=crop",
        ],
        color="Charcoal",
        stock=Stock(quantity=60),
        variants=_sizes("TRK-ECLIPSE", 15),
    ),
]


def seed_products_if_empty(store: DocumentStore) -> None:
    if store.find(PRODUCTS, limit=1):
        return
    for p in MOON_PRODUCTS:
        store.insert(PRODUCTS, p.model_dump())
    logger.info(f"Seeded {len(MOON_PRODUCTS)} demo products")


# --- Request bodies ---


class OrderItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(ge=1, default=1)
    variant_id: Optional[str] = None


class CreateOrderRequest(BaseModel):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method_id: str
    shipping_method: str = "standard"
    notes: str = ""


class UpdateStatusRequest(BaseModel):
    status: str
    notes: str = ""


class CancelOrderRequest(BaseModel):
    reason: str = "Cancelled by customer"


class ReserveRequest(BaseModel):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    session_id: Optional[str] = None


class ReleaseItem(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)
    user_id: Optional[str] = None
    variant_id: Optional[str] = None
    reservation_id: Optional[str] = None


class ReleaseRequest(BaseModel):
    reservations: List[ReleaseItem] = Field(..., min_length=1)
    reason: str = "manual_release"


class VariantStockRequest(BaseModel):
    quantity_change: int
    reason: str = "manual_adjustment"


class BulkStockItem(BaseModel):
    product_id: str
    quantity: int = Field(ge=0)
    reason: Optional[str] = None


class BulkStockRequest(BaseModel):
    updates: List[BulkStockItem] = Field(..., min_length=1, max_length=100)


# --- Catalog ---


@app.get("/api/products")
def list_products(store: DocumentStore = Depends(get_store)):
    seed_products_if_empty(store)
    docs = [serialize(d) for d in store.find(PRODUCTS)]
    for d in docs:
        stock = Stock.model_validate(d.get("stock") or {})
        d["available"] = stock.available_quantity
        d["stock_status"] = stock.status_label
        d["stock"].pop("reservations", None)
    return {"products": docs}


# --- Orders ---


@app.post("/api/orders", status_code=201)
def create_order(
    payload: CreateOrderRequest,
    x_user_id: str = Header(...),
    service: OrderService = Depends(get_order_service),
):
    result = service.create_order(
        items=[i.model_dump() for i in payload.items],
        shipping_address=payload.shipping_address.model_dump(),
        payment_method_id=payload.payment_method_id,
        user_id=x_user_id,
        shipping_method=payload.shipping_method,
        notes=payload.notes,
        billing_address=payload.billing_address.model_dump() if payload.billing_address else None,
    )
    return {"order": serialize(result["order"]), "payment": result["payment"]}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, store: DocumentStore = Depends(get_store)):
    order = store.find_by_id(ORDERS, order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    return {"order": serialize(order)}


@app.patch("/api/orders/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: UpdateStatusRequest,
    x_user_id: Optional[str] = Header(None),
    service: OrderService = Depends(get_order_service),
):
    order = service.update_order_status(order_id, payload.status, payload.notes, x_user_id)
    return {"order": serialize(order)}


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(
    order_id: str,
    payload: Optional[CancelOrderRequest] = None,
    x_user_id: Optional[str] = Header(None),
    service: OrderService = Depends(get_order_service),
):
    reason = payload.reason if payload else CancelOrderRequest().reason
    result = service.cancel_order(order_id, reason, x_user_id)
    return {
        "order": serialize(result["order"]),
        "refund_processed": result["refund_processed"],
        "stock_restored": result["stock_restored"],
    }


# --- Stock ---


@app.get("/api/stock/status")
def stock_status(product_ids: str, engine: ReservationEngine = Depends(get_engine)):
    ids = [p.strip() for p in product_ids.split(",") if p.strip()]
    if not ids:
        raise HTTPException(status_code=400, detail="At least one product ID is required")
    products = engine.get_stock_status(ids)
    return {"products": products, "count": len(products)}


@app.get("/api/stock/{product_id}")
def stock_snapshot(product_id: str, engine: ReservationEngine = Depends(get_engine)):
    return engine.get_stock_snapshot(product_id)


@app.post("/api/stock/reserve")
def reserve_stock(
    payload: ReserveRequest,
    request: Request,
    x_user_id: str = Header(...),
    engine: ReservationEngine = Depends(get_engine),
):
    session_id = payload.session_id or request.headers.get("x-session-id") or f"session_{x_user_id}"
    return engine.reserve_stock([i.model_dump() for i in payload.items], x_user_id, session_id)


@app.post("/api/stock/release")
def release_stock(
    payload: ReleaseRequest,
    x_user_id: str = Header(...),
    engine: ReservationEngine = Depends(get_engine),
):
    reservations = [
        {**r.model_dump(), "user_id": r.user_id or x_user_id}
        for r in payload.reservations
    ]
    return engine.release_reservations(reservations, payload.reason)


@app.post("/api/stock/cleanup-expired")
def cleanup_expired(engine: ReservationEngine = Depends(get_engine)):
    return engine.cleanup_expired()


@app.put("/api/stock/variant/{product_id}/{variant_id}")
def update_variant_stock(
    product_id: str,
    variant_id: str,
    payload: VariantStockRequest,
    engine: ReservationEngine = Depends(get_engine),
):
    result = engine.update_variant_stock(product_id, variant_id, payload.quantity_change)
    return {**result, "quantity_change": payload.quantity_change, "reason": payload.reason}


@app.put("/api/stock/bulk-update")
def bulk_stock_update(payload: BulkStockRequest, engine: ReservationEngine = Depends(get_engine)):
    return engine.bulk_stock_update([u.model_dump() for u in payload.updates])


# --- Stripe ---


@app.post("/api/stripe/webhook")
async def stripe_webhook(request: Request):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not STRIPE_WEBHOOK_SECRET:
        return {"received": True, "warning": "No webhook secret set"}

    try:
        event = stripe.Webhook.construct_event(
            payload=payload, sig_header=sig_header, secret=STRIPE_WEBHOOK_SECRET
        )
    except (ValueError, stripe.SignatureVerificationError) as e:
        raise HTTPException(status_code=400, detail=f"Webhook error: {e}")

    intent = event["data"]["object"]
    if event["type"] == "payment_intent.succeeded":
        logger.info(f"Payment succeeded: {intent.get('id')} ({intent.get('amount', 0) / 100} {intent.get('currency')})")
    elif event["type"] == "payment_intent.payment_failed":
        logger.warning(f"Payment failed: {intent.get('id')}: {intent.get('last_payment_error')}")
    else:
        logger.info(f"Unhandled webhook event type {event['type']}")

    return {"received": True}


if __name__ == "__main__":
    import uvicorn
    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=PORT)
