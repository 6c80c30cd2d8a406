from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker
import logging
import os
from typing import Any, List, Optional

from cafe_shared import (
    Lifecycle,
    RequestIDMiddleware,
    add_standard_health,
    configure_cors,
    get_request_id,
    setup_json_logging,
)

from . import inventory, orders, promos
from . import settings as app_settings
from .db import Base, DB_URL, REQUEST_TIMEOUT_SECS, deadline_after, engine, get_session, unit_of_work
from .errors import CafeError, Forbidden
from .models import Product
from .schemas import (
    CancelReq,
    ItemStatusReq,
    OrderCreate,
    OrderOut,
    OrdersPage,
    PaymentReq,
    ProductIn,
    ProductOut,
    PromoCheckReq,
    PromoIn,
    PromoOut,
    PromoQuoteOut,
    SettingIn,
    SettingOut,
    StatusReq,
    StockAdjustReq,
    SummaryOut,
    TicketOut,
)
from .tickets import current_tickets


def _env_or(key: str, default: str) -> str:
    v = os.getenv(key)
    return v if v is not None else default


def _csv(key: str) -> set:
    return set(t.strip() for t in os.getenv(key, "").split(",") if t.strip())


ROLES = ("kiosk", "kitchen", "admin")
ROLE_TOKENS = {
    "kiosk": _csv("CAFE_KIOSK_TOKENS"),
    "kitchen": _csv("CAFE_KITCHEN_TOKENS"),
    "admin": _csv("CAFE_ADMIN_TOKENS"),
}

log = logging.getLogger("cafe.gateway")

lifecycle = Lifecycle()
app = FastAPI(title="Cafe Order Gateway", version="0.1.0", lifespan=lifecycle.lifespan)
setup_json_logging(_env_or("LOG_LEVEL", "INFO"))
app.add_middleware(RequestIDMiddleware)
configure_cors(app, os.getenv("ALLOWED_ORIGINS", ""))
router = APIRouter()


def _ping_store() -> None:
    with engine.connect() as conn:
        conn.exec_driver_sql("SELECT 1")


add_standard_health(app, ping=_ping_store)


def _is_prod_env() -> bool:
    env = (os.getenv("ENV") or "dev").strip().lower()
    return env in ("prod", "production", "staging")


@app.exception_handler(CafeError)
async def _cafe_error_handler(request: Request, exc: CafeError):
    level = logging.WARNING if exc.retryable else logging.INFO
    logging.getLogger("cafe.errors").log(
        level, "%s %s rejected: %s", request.method, request.url.path, exc.detail,
        extra={"status": exc.code},
    )
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


@app.exception_handler(HTTPException)
async def _http_exception_handler(request: Request, exc: HTTPException):
    if _is_prod_env() and int(exc.status_code or 500) >= 500:
        payload: dict[str, Any] = {"detail": "internal error"}
        rid = get_request_id() or request.headers.get("X-Request-ID")
        if rid:
            payload["request_id"] = rid
        return JSONResponse(status_code=exc.status_code, content=payload)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    rid = get_request_id() or request.headers.get("X-Request-ID") or None
    logging.getLogger("cafe.errors").exception("unhandled exception")
    payload: dict[str, Any] = {"detail": "internal error" if _is_prod_env() else str(exc)}
    if rid:
        payload["request_id"] = rid
    return JSONResponse(status_code=500, content=payload)


# --- dependencies -----------------------------------------------------------

_settings_service = app_settings.SettingsService(sessionmaker(bind=engine))


def get_settings_service() -> app_settings.SettingsService:
    return _settings_service


def request_deadline() -> Optional[float]:
    return deadline_after(REQUEST_TIMEOUT_SECS)


def caller_role(request: Request) -> str:
    # Test-only shortcut: pick the surface role via header when ENV=test.
    if os.getenv("ENV") == "test":
        r = (request.headers.get("X-Test-Role") or "").strip().lower()
        if r in ROLES:
            return r
    auth = request.headers.get("Authorization") or ""
    token = auth[7:].strip() if auth[:7].lower() == "bearer " else ""
    if token:
        for role, tokens in ROLE_TOKENS.items():
            if token in tokens:
                return role
    raise HTTPException(status_code=401, detail="unauthorized", headers={"WWW-Authenticate": "Bearer"})


def require_roles(*allowed: str):
    def _dep(role: str = Depends(caller_role)) -> str:
        if role not in allowed:
            raise Forbidden(f"{role} surface may not perform this operation", surface=role)
        return role

    return _dep


kiosk_or_admin = require_roles("kiosk", "admin")
any_surface = require_roles(*ROLES)
kitchen_or_admin = require_roles("kitchen", "admin")
kitchen_only = require_roles("kitchen")
admin_only = require_roles("admin")


def _order_out(o) -> OrderOut:
    return OrderOut.model_validate(o)


# --- kiosk --------------------------------------------------------------------

@router.post("/orders", response_model=OrderOut, status_code=201)
def create_order(
    req: OrderCreate,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    role: str = Depends(kiosk_or_admin),
    deadline: Optional[float] = Depends(request_deadline),
    svc: app_settings.SettingsService = Depends(get_settings_service),
    s: Session = Depends(get_session),
):
    o = orders.create_order(
        s, req, idempotency_key=(idempotency_key or "").strip() or None, settings=svc, deadline=deadline
    )
    log.info("order submitted", extra={"order_id": o.id, "order_number": o.order_number, "surface": role})
    return _order_out(o)


@router.get("/orders/by-number/{order_number}", response_model=OrderOut)
def get_order_by_number(order_number: str, role: str = Depends(any_surface), s: Session = Depends(get_session)):
    return _order_out(orders.get_by_number(s, order_number))


@router.get("/orders/{oid}", response_model=OrderOut)
def get_order(oid: str, role: str = Depends(any_surface), s: Session = Depends(get_session)):
    return _order_out(orders.get_order(s, oid))


@router.get("/products", response_model=List[ProductOut])
def list_products(s: Session = Depends(get_session)):
    return [ProductOut.model_validate(p) for p in inventory.list_catalog(s)]


@router.get("/settings/{key}", response_model=SettingOut)
def get_setting(key: str, svc: app_settings.SettingsService = Depends(get_settings_service)):
    return SettingOut(**svc.get_public(key))


@router.post("/promo-codes/check", response_model=PromoQuoteOut)
def check_promo_code(req: PromoCheckReq, role: str = Depends(kiosk_or_admin), s: Session = Depends(get_session)):
    promo, discount = promos.evaluate(s, req.code, req.subtotal_cents)
    return PromoQuoteOut(
        code=promo.code,
        description=promo.description,
        discount_type=promo.discount_type,
        discount_value=promo.discount_value,
        discount_cents=discount,
    )


# --- kitchen ------------------------------------------------------------------

@router.get("/kitchen/tickets", response_model=List[TicketOut])
def kitchen_tickets(role: str = Depends(kitchen_or_admin), s: Session = Depends(get_session)):
    return [TicketOut.model_validate(o) for o in current_tickets(s)]


@router.post("/kitchen/orders/{oid}/status", response_model=OrderOut)
def kitchen_set_status(
    oid: str,
    req: StatusReq,
    role: str = Depends(kitchen_only),
    deadline: Optional[float] = Depends(request_deadline),
    s: Session = Depends(get_session),
):
    if (req.status or "").strip().lower() == "cancelled":
        raise Forbidden("only the admin dashboard can cancel orders", surface=role)
    o = orders.transition(s, oid, req.status, deadline=deadline)
    return _order_out(o)


@router.post("/kitchen/orders/{oid}/items/{item_id}/status", response_model=OrderOut)
def kitchen_set_item_status(
    oid: str,
    item_id: int,
    req: ItemStatusReq,
    role: str = Depends(kitchen_only),
    deadline: Optional[float] = Depends(request_deadline),
    s: Session = Depends(get_session),
):
    o = orders.update_item_kitchen_status(s, oid, item_id, req.status, deadline=deadline)
    return _order_out(o)


# --- admin --------------------------------------------------------------------

@router.post("/admin/orders/{oid}/cancel", response_model=OrderOut)
def admin_cancel(
    oid: str,
    req: Optional[CancelReq] = None,
    role: str = Depends(admin_only),
    deadline: Optional[float] = Depends(request_deadline),
    s: Session = Depends(get_session),
):
    o = orders.cancel(s, oid, reason=req.reason if req else None, deadline=deadline)
    return _order_out(o)


@router.post("/admin/orders/{oid}/payment", response_model=OrderOut)
def admin_set_payment(
    oid: str,
    req: PaymentReq,
    role: str = Depends(admin_only),
    deadline: Optional[float] = Depends(request_deadline),
    s: Session = Depends(get_session),
):
    o = orders.set_payment_status(s, oid, req.status, method=req.method, deadline=deadline)
    return _order_out(o)


@router.get("/admin/orders/summary", response_model=SummaryOut)
def admin_summary(role: str = Depends(admin_only), s: Session = Depends(get_session)):
    return SummaryOut(**orders.summary(s))


@router.get("/admin/orders", response_model=OrdersPage)
def admin_list_orders(
    limit: int = 50,
    offset: int = 0,
    status: str = "",
    role: str = Depends(admin_only),
    s: Session = Depends(get_session),
):
    rows, total = orders.admin_orders(s, limit=limit, offset=offset, status=status or None)
    return OrdersPage(
        items=[_order_out(o) for o in rows],
        total=total,
        limit=max(1, min(limit, 200)),
        offset=max(0, offset),
    )


@router.get("/admin/settings", response_model=List[SettingOut])
def admin_list_settings(role: str = Depends(admin_only), svc: app_settings.SettingsService = Depends(get_settings_service)):
    return [SettingOut(**d) for d in svc.all()]


@router.put("/admin/settings/{key}", response_model=SettingOut)
def admin_put_setting(
    key: str,
    req: SettingIn,
    role: str = Depends(admin_only),
    svc: app_settings.SettingsService = Depends(get_settings_service),
):
    out = svc.set(key, req.value, value_type=req.type, description=req.description)
    log.info("setting changed", extra={"surface": role, "status": key})
    return SettingOut(**out)


@router.post("/admin/products", response_model=ProductOut, status_code=201)
def admin_create_product(
    req: ProductIn,
    role: str = Depends(admin_only),
    s: Session = Depends(get_session),
):
    with unit_of_work(s):
        p = inventory.create_product(
            s, req.name, req.price_cents, stock=req.stock, min_stock=req.min_stock, category=req.category
        )
    return ProductOut.model_validate(p)


@router.post("/admin/products/{pid}/stock", response_model=ProductOut)
def admin_adjust_stock(
    pid: int,
    req: StockAdjustReq,
    role: str = Depends(admin_only),
    s: Session = Depends(get_session),
):
    with unit_of_work(s):
        p = inventory.adjust_stock(s, pid, req.delta)
    return ProductOut.model_validate(p)


@router.delete("/admin/products/{pid}")
def admin_delete_product(pid: int, role: str = Depends(admin_only), s: Session = Depends(get_session)):
    with unit_of_work(s):
        inventory.soft_delete(s, pid)
    return {"ok": True, "id": pid}


@router.get("/admin/inventory/low-stock", response_model=List[ProductOut])
def admin_low_stock(role: str = Depends(admin_only), s: Session = Depends(get_session)):
    return [ProductOut.model_validate(p) for p in inventory.low_stock(s)]


@router.get("/admin/promo-codes", response_model=List[PromoOut])
def admin_list_promos(role: str = Depends(admin_only), s: Session = Depends(get_session)):
    return [PromoOut.model_validate(p) for p in promos.list_promos(s)]


@router.post("/admin/promo-codes", response_model=PromoOut, status_code=201)
def admin_create_promo(req: PromoIn, role: str = Depends(admin_only), s: Session = Depends(get_session)):
    with unit_of_work(s):
        p = promos.create_promo(
            s,
            req.code,
            req.discount_type,
            req.discount_value,
            description=req.description,
            min_order_cents=req.min_order_cents,
            max_uses=req.max_uses,
            valid_from=req.valid_from,
            valid_until=req.valid_until,
        )
    return PromoOut.model_validate(p)


@router.delete("/admin/promo-codes/{promo_id}", response_model=PromoOut)
def admin_deactivate_promo(promo_id: int, role: str = Depends(admin_only), s: Session = Depends(get_session)):
    with unit_of_work(s):
        p = promos.deactivate(s, promo_id)
    return PromoOut.model_validate(p)


app.include_router(router)


# --- startup ------------------------------------------------------------------

_DEMO_PRODUCTS = [
    ("Espresso", "coffee", 250, 100, 10),
    ("Cappuccino", "coffee", 380, 80, 10),
    ("Croissant", "pastry", 220, 30, 5),
    ("Orange juice", "drinks", 400, 20, 5),
]


def _ensure_demo_products(s: Session) -> None:
    if s.execute(select(func.count()).select_from(Product)).scalar_one():
        return
    for name, category, cents, stock, min_stock in _DEMO_PRODUCTS:
        inventory.create_product(s, name, cents, stock=stock, min_stock=min_stock, category=category)


@lifecycle.on_startup
def _startup():
    Base.metadata.create_all(engine)
    with Session(engine) as s:
        with unit_of_work(s):
            app_settings.ensure_defaults(s)
            env = _env_or("ENV", "dev").lower()
            if env in ("dev", "test") and DB_URL.startswith("sqlite"):
                _ensure_demo_products(s)


@lifecycle.on_shutdown
def _shutdown():
    engine.dispose()
