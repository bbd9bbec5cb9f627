from fastapi import FastAPI, APIRouter, HTTPException, Depends, BackgroundTasks, Query, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
import asyncio
import logging
from typing import Optional
from datetime import datetime, timezone

from auth import get_current_user, require_admin
from cart import CartError, CartService, EmptyCartError, ProductNotFoundError, cart_summary, require_enabled_unit
from database import client, get_db, ensure_indexes, db
from midtrans_gateway import MidtransClient, MidtransError
from models import (
    CancelOrderRequest,
    CartItemInput,
    CheckoutRequest,
    ConvertRequest,
    MidtransNotification,
    QuoteRequest,
    SetQuantityRequest,
    ShipOrderRequest,
    ShippingCostRequest,
    WeightRequest,
)
from notification_service import NotificationService
from order_service import OrderNotFoundError, OrderService, OrderStateError
from payment_reconciliation import (
    PaymentReconciliationService,
    ReconciliationConflictError,
    ReconciliationOutcome,
)
from rajaongkir_client import RajaOngkirClient, RajaOngkirError, available_couriers, courier_name
from settings import (
    CORS_ORIGINS,
    MIDTRANS_CLIENT_KEY,
    MIDTRANS_IS_PRODUCTION,
    MIDTRANS_SERVER_KEY,
    RAJAONGKIR_API_KEY,
    RAJAONGKIR_PLAN,
    RESEND_API_KEY,
    SENDER_EMAIL,
    STORE_ORIGIN_CITY_ID,
)
from shipping_weight import aggregate, format_weight
from unit_conversion_engine import (
    ConversionError,
    UnitConversionEngine,
    apply_product_attributes,
    allowed_units,
    converter_available,
)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Toko Bangunan Storefront API")

# ==================== CORS CONFIGURATION (MUST BE FIRST) ====================
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Requested-With",
        "Accept",
        "Origin",
    ],
    max_age=600,  # Cache preflight for 10 minutes
)


@app.get("/api/health")
async def health_check():
    """Health check endpoint for monitoring"""
    return {
        "ok": True,
        "time": datetime.now(timezone.utc).isoformat(),
        "service": "Toko Bangunan Storefront API",
        "version": "1.0.0"
    }


api_router = APIRouter(prefix="/api")


# ==================== ERROR MAPPING ====================

@app.exception_handler(ConversionError)
async def conversion_error_handler(request: Request, exc: ConversionError):
    return JSONResponse(status_code=400, content={"detail": exc.message, **exc.to_dict()})


@app.exception_handler(CartError)
async def cart_error_handler(request: Request, exc: CartError):
    status_code = 404 if isinstance(exc, ProductNotFoundError) else 400
    return JSONResponse(status_code=status_code, content={"detail": exc.message, **exc.to_dict()})


@app.exception_handler(OrderNotFoundError)
async def order_not_found_handler(request: Request, exc: OrderNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(OrderStateError)
async def order_state_handler(request: Request, exc: OrderStateError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(MidtransError)
@app.exception_handler(RajaOngkirError)
async def remote_error_handler(request: Request, exc):
    return JSONResponse(status_code=502, content={"detail": exc.message})


# ==================== DEPENDENCIES ====================

def get_engine(db=Depends(get_db)) -> UnitConversionEngine:
    return UnitConversionEngine(db)


def get_notification_service(db=Depends(get_db)) -> NotificationService:
    return NotificationService(db, RESEND_API_KEY, SENDER_EMAIL)


def get_midtrans_client() -> Optional[MidtransClient]:
    if not MIDTRANS_SERVER_KEY:
        return None
    return MidtransClient(MIDTRANS_SERVER_KEY, MIDTRANS_CLIENT_KEY, MIDTRANS_IS_PRODUCTION)


def get_rajaongkir_client() -> RajaOngkirClient:
    return RajaOngkirClient(RAJAONGKIR_API_KEY)


def get_reconciliation_service(
    db=Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service)
) -> PaymentReconciliationService:
    return PaymentReconciliationService(db, MIDTRANS_SERVER_KEY, notifications)


def get_cart_service(db=Depends(get_db), engine: UnitConversionEngine = Depends(get_engine)) -> CartService:
    return CartService(db, engine)


def get_order_service(
    db=Depends(get_db),
    engine: UnitConversionEngine = Depends(get_engine),
    carts: CartService = Depends(get_cart_service),
    midtrans: Optional[MidtransClient] = Depends(get_midtrans_client),
    notifications: NotificationService = Depends(get_notification_service),
    reconciliation: PaymentReconciliationService = Depends(get_reconciliation_service)
) -> OrderService:
    return OrderService(db, engine, carts, midtrans, notifications, reconciliation)


# ==================== UNITS ====================

@api_router.post("/units/convert")
async def convert_units(data: ConvertRequest, engine: UnitConversionEngine = Depends(get_engine)):
    table = await engine.resolve_table(data.category)
    result = engine.try_convert(table, data.quantity, data.from_unit, data.to_unit)
    if not result.ok:
        error = result.errors[0]
        return JSONResponse(status_code=400, content={"detail": error["message"], **error})
    return result.model_dump(mode="json")


@api_router.post("/units/quote")
async def quote_units(
    data: QuoteRequest,
    db=Depends(get_db),
    engine: UnitConversionEngine = Depends(get_engine)
):
    product = await db.products.find_one({"id": data.product_id}, {"_id": 0})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    table = apply_product_attributes(await engine.resolve_table(product["category"]), product.get("attributes"))
    require_enabled_unit(table, product, data.unit)
    quote = engine.quote(
        table,
        data.quantity,
        data.unit,
        product["unit"],
        product.get("price", 0),
        product.get("stock", 0)
    )
    return quote.model_dump()


@api_router.get("/categories/{name}/units")
async def get_category_units(
    name: str,
    product_id: Optional[str] = None,
    db=Depends(get_db),
    engine: UnitConversionEngine = Depends(get_engine)
):
    table = await engine.resolve_table(name)
    if not product_id:
        return {**table.model_dump(), "converter_available": len(table.conversions) > 1}

    product = await db.products.find_one({"id": product_id}, {"_id": 0})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    table = apply_product_attributes(table, product.get("attributes"))
    units = allowed_units(table, product.get("available_units"))
    return {
        **table.model_dump(),
        "conversions": [u.model_dump() for u in units],
        "converter_available": converter_available(table, product["unit"], product.get("available_units")),
    }


# ==================== SHIPPING ====================

@api_router.post("/shipping/weight")
async def shipping_weight(data: WeightRequest):
    grams = aggregate(data.items, data.attributes_by_product_id)
    return {"total_weight_grams": grams, "formatted": format_weight(grams)}


@api_router.get("/shipping/couriers")
async def shipping_couriers(is_international: bool = False):
    codes = available_couriers(is_international, RAJAONGKIR_PLAN)
    return {"couriers": [{"code": code, "name": courier_name(code)} for code in codes]}


@api_router.post("/shipping/cost")
async def shipping_cost(
    data: ShippingCostRequest,
    current_user: dict = Depends(get_current_user),
    db=Depends(get_db),
    carts: CartService = Depends(get_cart_service),
    rajaongkir: RajaOngkirClient = Depends(get_rajaongkir_client)
):
    cart = await carts.get_cart(current_user["id"])
    if not cart.items:
        raise EmptyCartError()

    product_ids = list({item.product_id for item in cart.items})
    products = await db.products.find({"id": {"$in": product_ids}}, {"_id": 0, "id": 1, "attributes": 1}).to_list(1000)
    grams = aggregate(cart.items, {p["id"]: p.get("attributes") or {} for p in products})

    couriers = [data.courier] if data.courier else available_couriers(data.is_international, RAJAONGKIR_PLAN)
    options = await asyncio.to_thread(
        rajaongkir.calculate_multiple_couriers,
        data.origin or STORE_ORIGIN_CITY_ID,
        data.destination,
        grams,
        couriers
    )
    return {"weight_grams": grams, "formatted_weight": format_weight(grams), "options": options}


# ==================== CART ====================

@api_router.get("/cart")
async def get_cart(current_user: dict = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return cart_summary(await carts.get_cart(current_user["id"]))


@api_router.post("/cart/items")
async def add_cart_item(
    data: CartItemInput,
    current_user: dict = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service)
):
    cart = await carts.add_item(current_user["id"], data.product_id, data.quantity, data.unit)
    return cart_summary(cart)


@api_router.put("/cart/items/{product_id}")
async def set_cart_item_quantity(
    product_id: str,
    data: SetQuantityRequest,
    unit: str = Query(...),
    current_user: dict = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service)
):
    cart = await carts.set_quantity(current_user["id"], product_id, unit, data.quantity)
    return cart_summary(cart)


@api_router.delete("/cart/items/{product_id}")
async def remove_cart_item(
    product_id: str,
    unit: str = Query(...),
    current_user: dict = Depends(get_current_user),
    carts: CartService = Depends(get_cart_service)
):
    return cart_summary(await carts.remove_item(current_user["id"], product_id, unit))


@api_router.delete("/cart")
async def clear_cart(current_user: dict = Depends(get_current_user), carts: CartService = Depends(get_cart_service)):
    return cart_summary(await carts.clear(current_user["id"]))


# ==================== ORDERS ====================

@api_router.get("/payments/config")
async def payment_config():
    """Values the storefront needs to load Snap.js"""
    return {"client_key": MIDTRANS_CLIENT_KEY, "is_production": MIDTRANS_IS_PRODUCTION}


@api_router.post("/orders")
async def create_order(
    data: CheckoutRequest,
    current_user: dict = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service)
):
    return await orders.create_order(current_user, data)


@api_router.get("/orders")
async def list_orders(current_user: dict = Depends(get_current_user), orders: OrderService = Depends(get_order_service)):
    return await orders.list_orders(current_user)


@api_router.get("/orders/{order_id}")
async def get_order(
    order_id: str,
    current_user: dict = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service)
):
    return await orders.get_order(current_user, order_id)


@api_router.post("/orders/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    data: CancelOrderRequest,
    current_user: dict = Depends(get_current_user),
    orders: OrderService = Depends(get_order_service)
):
    return await orders.cancel_order(current_user, order_id, data.reason)


@api_router.post("/admin/orders/{order_id}/ship")
async def ship_order(
    order_id: str,
    data: ShipOrderRequest,
    current_user: dict = Depends(require_admin),
    orders: OrderService = Depends(get_order_service)
):
    return await orders.mark_shipped(order_id, data.courier, data.tracking_number)


@api_router.post("/admin/orders/{order_id}/sync-payment")
async def sync_order_payment(
    order_id: str,
    current_user: dict = Depends(require_admin),
    orders: OrderService = Depends(get_order_service)
):
    result = await orders.sync_payment_status(order_id)
    return result.model_dump(mode="json")


# ==================== NOTIFICATIONS ====================

@api_router.get("/notifications")
async def list_notifications(
    unread_only: bool = False,
    current_user: dict = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service)
):
    return await notifications.list_for_user(current_user["id"], unread_only)


@api_router.put("/notifications/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    current_user: dict = Depends(get_current_user),
    notifications: NotificationService = Depends(get_notification_service)
):
    if not await notifications.mark_read(current_user["id"], notification_id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"success": True}


# ==================== MIDTRANS WEBHOOK ====================

WEBHOOK_STATUS_CODES = {
    ReconciliationOutcome.INVALID_SIGNATURE: 403,
    ReconciliationOutcome.ORDER_NOT_FOUND: 404,
    ReconciliationOutcome.MISCONFIGURED: 500,
}


@api_router.post("/midtrans/webhook")
@api_router.post("/midtrans-webhook")
async def midtrans_webhook(
    notification: MidtransNotification,
    background_tasks: BackgroundTasks,
    reconciliation: PaymentReconciliationService = Depends(get_reconciliation_service)
):
    """
    Midtrans HTTP notification. Non-2xx makes Midtrans retry, so only
    failures of the order update itself are reported as errors; paid-order
    notifications run after the response is sent.
    """
    try:
        result = await reconciliation.reconcile(notification)
    except ReconciliationConflictError as e:
        logger.error(str(e))
        raise HTTPException(status_code=500, detail="Order is being updated, retry later")
    except Exception as e:
        logger.error(f"Error processing Midtrans notification for {notification.order_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    if not result.acknowledged:
        raise HTTPException(status_code=WEBHOOK_STATUS_CODES[result.outcome], detail=result.message)

    if result.notify_paid:
        background_tasks.add_task(reconciliation.dispatch_side_effects, result)

    return {
        "success": True,
        "message": result.message,
        "order_id": result.order_id,
        "outcome": result.outcome.value,
        "payment_status": result.payment_status,
        "order_status": result.order_status,
    }


app.include_router(api_router)


@app.on_event("startup")
async def startup_event():
    try:
        await ensure_indexes(db)
        logger.info("Storefront indexes ensured")
    except Exception as e:
        logger.warning(f"Failed to create indexes: {e}")
    if not MIDTRANS_SERVER_KEY:
        logger.warning("MIDTRANS_SERVER_KEY not set, webhook will reject every notification")


@app.on_event("shutdown")
async def shutdown_db_client():
    client.close()
