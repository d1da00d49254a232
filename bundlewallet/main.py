import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from bundlewallet.cache import TTLCache
from bundlewallet.config import settings
from bundlewallet.db import SessionLocal, engine, ping_db, unit_of_work
from bundlewallet.errors import InternalError, LedgerError, TransientStoreError
from bundlewallet.metrics import metrics_asgi_app
from bundlewallet.models import Base, LedgerEntryType
from bundlewallet.schemas import (
    AccountCreate, AccountOut, CartItemCreate, CartItemOut, CartOut, DirectOrderCreate,
    GatewayOutcome, LedgerEntryOut, LoanAmount, LoanStatusUpdate, OrderItemOut, OrderLookup, OrderOut,
    ProductCreate, ProductOut, RefundCreate, StatusUpdate, SubmitCart, TopupCreate
)
from bundlewallet.services import cart, fulfillment, loans, reconciliation, settlement, topups
from bundlewallet.services.accounts import create_account, get_account
from bundlewallet.services.catalog import create_product, get_product

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # runs once at startup
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="BundleWallet Ledger", lifespan=lifespan)
app.state.read_cache = TTLCache(ttl_seconds=settings.cache_ttl_secs)

app.mount("/metrics", metrics_asgi_app)


def ok(data: Any = None, status_code: int = 200, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder({"success": True, "data": data, **extra}))


def fail(status_code: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "kind": kind, "message": message})


def get_read_cache(request: Request) -> TTLCache:
    return request.app.state.read_cache


# Error handlers

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if isinstance(exc, TransientStoreError):
        # retries already exhausted inside the service
        logger.error(f"{request.method} {request.url.path}: store contention: {exc.message}")
        message = exc.message if settings.expose_internal_errors else "Service busy, please retry"
        return fail(exc.status_code, exc.kind, message)
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.kind}: {exc.message}")
    return fail(exc.status_code, exc.kind, exc.message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first.get("loc", []))
    return fail(400, "validation", f"Validation error on field '{field}': {first.get('msg', 'invalid')}")


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path}: unexpected error")
    message = str(exc) if settings.expose_internal_errors else "An internal server error occurred"
    return fail(InternalError.status_code, InternalError.kind, message)


@app.get("/")
def root():
    return {"service": "bundlewallet", "docs": "/docs"}

@app.get("/healthz")
def healthz():
    try:
        ping_db()
        return {"ok": True, "db": "up"}
    except Exception:
        return {"ok": False, "db": "down"}


# Accounts and catalog

@app.post("/accounts", tags=["accounts"])
def create_account_route(payload: AccountCreate):
    with unit_of_work() as db:
        account = create_account(db, payload.name, payload.opening_balance)
    return ok(AccountOut.model_validate(account), status_code=201)

@app.get("/accounts/{account_id}", tags=["accounts"])
def get_account_route(account_id: int):
    with SessionLocal() as db:
        return ok(AccountOut.model_validate(get_account(db, account_id)))

@app.post("/products", tags=["catalog"])
def create_product_route(payload: ProductCreate):
    with unit_of_work() as db:
        product = create_product(db, payload.name, payload.price_cents, payload.stock)
    return ok(ProductOut.model_validate(product), status_code=201)

@app.get("/products/{product_id}", tags=["catalog"])
def get_product_route(product_id: int):
    with SessionLocal() as db:
        return ok(ProductOut.model_validate(get_product(db, product_id)))


# Cart

@app.post("/accounts/{account_id}/cart/items", tags=["cart"])
def add_cart_item(account_id: int, payload: CartItemCreate):
    item = cart.add_item(account_id, payload.product_id, payload.quantity, payload.dest_number)
    return ok(CartItemOut.model_validate(item), status_code=201)

@app.get("/accounts/{account_id}/cart", tags=["cart"])
def get_cart(account_id: int):
    with SessionLocal() as db:
        user_cart = cart.get_cart(db, account_id)
        data = CartOut.model_validate(user_cart) if user_cart else None
    return ok(data)

@app.delete("/accounts/{account_id}/cart/items/{item_id}", tags=["cart"])
def remove_cart_item(account_id: int, item_id: int):
    removed = cart.remove_item(item_id, account_id=account_id)
    return ok({"removed": removed})

@app.delete("/accounts/{account_id}/cart", tags=["cart"])
def clear_cart(account_id: int):
    return ok({"removed": cart.clear_cart(account_id)})

@app.get("/carts", tags=["cart"])
def list_carts():
    with SessionLocal() as db:
        return ok([CartOut.model_validate(c) for c in cart.list_carts(db)])


# Orders

@app.post("/accounts/{account_id}/orders", tags=["orders"])
def submit_cart(account_id: int, payload: Optional[SubmitCart] = None):
    dest_number = payload.dest_number if payload else None
    order = settlement.submit_cart(account_id, dest_number)
    return ok(OrderOut.model_validate(order), status_code=201)

@app.post("/orders/direct", tags=["orders"])
def create_direct_order(payload: DirectOrderCreate):
    lines = [settlement.OrderLine(**item.model_dump()) for item in payload.items]
    order = settlement.create_direct_order(payload.account_id, lines, payload.total_amount)
    return ok(OrderOut.model_validate(order), status_code=201)

@app.get("/orders", tags=["orders"])
def list_orders(
    status: Optional[str] = None,
    account_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=1000),
):
    status_filter = fulfillment.parse_status(status) if status else None
    with SessionLocal() as db:
        result = settlement.list_orders(db, status_filter, start, end, account_id, page, limit)
        orders = [OrderOut.model_validate(o) for o in result["data"]]
    return ok(orders, pagination=result["pagination"])

@app.post("/orders/lookup", tags=["orders"])
def lookup_orders(payload: OrderLookup):
    with SessionLocal() as db:
        return ok([OrderOut.model_validate(o) for o in settlement.get_orders_by_ids(db, payload.order_ids)])

@app.get("/orders/{order_id}", tags=["orders"])
def get_order(order_id: int):
    with SessionLocal() as db:
        return ok(OrderOut.model_validate(settlement.get_order(db, order_id)))

@app.get("/accounts/{account_id}/orders", tags=["orders"])
def order_history(account_id: int, limit: int = Query(50, ge=1, le=500)):
    with SessionLocal() as db:
        orders = settlement.get_order_history(db, account_id, limit)
        return ok([OrderOut.model_validate(o) for o in orders])


# Fulfillment

@app.patch("/order-items/{item_id}/status", tags=["fulfillment"])
def update_item_status(item_id: int, payload: StatusUpdate):
    item = fulfillment.set_item_status(item_id, payload.status)
    return ok(OrderItemOut.model_validate(item))

@app.patch("/orders/{order_id}/items/status", tags=["fulfillment"])
def update_order_items_status(order_id: int, payload: StatusUpdate):
    order, updated = fulfillment.set_order_items_status(order_id, payload.status)
    return ok(OrderOut.model_validate(order), updated_count=updated)

@app.patch("/orders/{order_id}/status", tags=["fulfillment"])
def update_order_status(order_id: int, payload: StatusUpdate):
    order = fulfillment.set_order_status(order_id, payload.status)
    return ok(OrderOut.model_validate(order))

@app.post("/order-items/complete-processing", tags=["fulfillment"])
def complete_processing():
    return ok({"completed": fulfillment.complete_processing_items()})


# Wallet credits and loans

@app.post("/accounts/{account_id}/topups", tags=["wallet"])
def credit_topup(account_id: int, payload: TopupCreate):
    entry, created = topups.credit_topup(account_id, payload.amount, payload.gateway_reference)
    return ok(LedgerEntryOut.model_validate(entry), already_processed=not created)

@app.post("/accounts/{account_id}/topups/gateway", tags=["wallet"])
def gateway_outcome(account_id: int, payload: GatewayOutcome):
    result = topups.apply_gateway_outcome(account_id, payload.amount, payload.gateway_reference, payload.outcome)
    entry = LedgerEntryOut.model_validate(result.entry) if result.entry else None
    return ok({
        "outcome": result.outcome,
        "credited": result.credited,
        "already_processed": result.already_processed,
        "entry": entry,
    })

@app.post("/accounts/{account_id}/refunds", tags=["wallet"])
def refund(account_id: int, payload: RefundCreate):
    entry, created = loans.refund_account(account_id, payload.amount, payload.reference)
    return ok(LedgerEntryOut.model_validate(entry), already_processed=not created)

def _loan_response(account, entry):
    return ok({"account": AccountOut.model_validate(account), "entry": LedgerEntryOut.model_validate(entry)})

@app.post("/accounts/{account_id}/loans/assign", tags=["loans"])
def assign_loan(account_id: int, payload: LoanAmount):
    return _loan_response(*loans.assign_loan(account_id, payload.amount, payload.reference))

@app.post("/accounts/{account_id}/loans/repay", tags=["loans"])
def repay_loan(account_id: int, payload: LoanAmount):
    return _loan_response(*loans.repay_loan(account_id, payload.amount, payload.reference))

@app.post("/accounts/{account_id}/loans/deduct", tags=["loans"])
def deduct_loan(account_id: int, payload: LoanAmount):
    return _loan_response(*loans.deduct_admin_loan(account_id, payload.amount, payload.reference))

@app.put("/accounts/{account_id}/loans/status", tags=["loans"])
def loan_status(account_id: int, payload: LoanStatusUpdate):
    return ok(AccountOut.model_validate(loans.set_loan_status(account_id, payload.has_loan)))


# Reconciliation

@app.get("/accounts/{account_id}/transactions", tags=["ledger"])
def user_transactions(
    account_id: int,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    type: Optional[LedgerEntryType] = None,
    limit: int = Query(1000, ge=1, le=5000),
    cache: TTLCache = Depends(get_read_cache),
):
    with SessionLocal() as db:
        return ok(reconciliation.get_user_transactions(db, account_id, start, end, type, limit, cache=cache))

@app.get("/accounts/{account_id}/balance-summary", tags=["ledger"])
def balance_summary(account_id: int, cache: TTLCache = Depends(get_read_cache)):
    with SessionLocal() as db:
        return ok(reconciliation.get_balance_summary(db, account_id, cache=cache))

@app.get("/accounts/{account_id}/ledger/verify", tags=["ledger"])
def verify_chain(account_id: int):
    with SessionLocal() as db:
        return ok(reconciliation.verify_ledger_chain(db, account_id))

def transaction_filters(
    account_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    type: Optional[LedgerEntryType] = None,
    search: Optional[str] = None,
    amount_filter: Optional[str] = Query(None, pattern="^(positive|negative|all)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(100, ge=1, le=1000),
) -> reconciliation.TransactionFilters:
    return reconciliation.TransactionFilters(
        account_id=account_id, start=start, end=end, type=type, search=search,
        amount_filter=amount_filter, page=page, limit=limit,
    )

@app.get("/transactions/audit-log", tags=["ledger"])
def audit_log(filters: reconciliation.TransactionFilters = Depends(transaction_filters),
              cache: TTLCache = Depends(get_read_cache)):
    with SessionLocal() as db:
        result = reconciliation.get_audit_log(db, filters, cache=cache)
    return ok(result["data"], pagination=result["pagination"])

@app.get("/transactions/stats", tags=["ledger"])
def transaction_stats(filters: reconciliation.TransactionFilters = Depends(transaction_filters),
                      cache: TTLCache = Depends(get_read_cache)):
    with SessionLocal() as db:
        return ok(reconciliation.get_transaction_statistics(db, filters, cache=cache))

@app.get("/reports/balance-sheet", tags=["ledger"])
def balance_sheet(start: Optional[datetime] = None, end: Optional[datetime] = None,
                  cache: TTLCache = Depends(get_read_cache)):
    with SessionLocal() as db:
        return ok(reconciliation.get_balance_sheet(db, start, end, cache=cache))
