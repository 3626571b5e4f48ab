import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import List, Literal, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field

import database
from database import (
    collection, create_document, get_documents, get_or_404, next_sequence, utcnow, with_id,
)
from schemas import Customer, LedgerEntry, PaymentMethod, Product, Quote, Supplier, User, Vehicle
import inventory
from inventory import ItemRequest, SaleCreate, ServiceOrderCreate, StockReceipt
import reports
from security import (
    authenticate, bootstrap_admin, check_owner, create_token, get_current_user, hash_password, is_admin,
    require_admin,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is None:
        logger.warning("DATABASE_URL not set; API will answer 500 until it is configured")
    else:
        database.ensure_indexes()
        admin_email = os.getenv("ADMIN_EMAIL")
        admin_password = os.getenv("ADMIN_PASSWORD")
        if admin_email and admin_password:
            bootstrap_admin(admin_email, admin_password, os.getenv("ADMIN_NAME", "Administrator"))
    yield


app = FastAPI(title="Workshop Manager API", version="0.2.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --------------------------- Utilities ---------------------------

def owner_filter(user: dict) -> dict:
    return {} if is_admin(user) else {"owner_id": user["id"]}


def search_filter(q: Optional[str], fields: List[str]) -> dict:
    if not q:
        return {}
    pattern = re.escape(q.strip())
    return {"$or": [{f: {"$regex": pattern, "$options": "i"}} for f in fields]}


def combine(*filters: dict) -> dict:
    parts = [f for f in filters if f]
    if not parts:
        return {}
    if len(parts) == 1:
        return parts[0]
    return {"$and": parts}


def scoped(user: dict, *filters: dict) -> dict:
    return combine(owner_filter(user), *filters)


# --------------------------- Health ---------------------------
@app.get("/")
def read_root():
    return {"message": "Workshop Manager API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "transactions": database.TRANSACTIONS_ENABLED,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:20]
        else:
            response["database"] = "❌ Not initialized"
    except Exception as e:
        logger.exception("Database health check failed")
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# --------------------------- Auth ---------------------------
class LoginRequest(BaseModel):
    email: str
    password: str


@app.post("/api/auth/login")
def login(body: LoginRequest):
    doc = authenticate(body.email, body.password)
    logger.info("User %s logged in", doc.get("email"))
    return {"access_token": create_token(doc), "token_type": "bearer", "role": doc.get("role")}


@app.get("/api/auth/me")
def me(user: dict = Depends(get_current_user)):
    return user


# --------------------------- Admin / Users ---------------------------
class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["admin", "operator"] = "operator"


class UserUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[Literal["admin", "operator"]] = None
    is_active: Optional[bool] = None


def _public(doc: dict) -> dict:
    doc = with_id(doc)
    doc.pop("password_hash", None)
    return doc


@app.post("/api/users")
def create_user(u: UserCreate, admin: dict = Depends(require_admin)):
    email = u.email.lower()
    if collection("user").find_one({"email": email}):
        raise HTTPException(status_code=409, detail="Email already in use")
    user = User(name=u.name, email=email, password_hash=hash_password(u.password), role=u.role)
    _id = create_document("user", user)
    logger.info("User %s (%s) created by %s", email, u.role, admin["email"])
    return {"id": _id}


@app.get("/api/users")
def list_users(q: Optional[str] = None, admin: dict = Depends(require_admin)):
    users = collection("user").find(search_filter(q, ["name", "email"])).sort("name", 1).limit(200)
    return [_public(u) for u in users]


@app.patch("/api/users/{user_id}")
def update_user(user_id: str, body: UserUpdate, admin: dict = Depends(require_admin)):
    update = {k: v for k, v in body.model_dump().items() if v is not None}
    if not update:
        raise HTTPException(status_code=400, detail="Nothing to update")
    doc = get_or_404("user", user_id, "User")
    collection("user").update_one({"_id": doc["_id"]}, {"$set": update})
    logger.info("User %s updated by %s: %s", doc.get("email"), admin["email"], sorted(update))
    return {"success": True}


@app.delete("/api/users/{user_id}")
def delete_user(user_id: str, admin: dict = Depends(require_admin)):
    if user_id == admin["id"]:
        raise HTTPException(status_code=400, detail="You cannot delete your own account")
    doc = get_or_404("user", user_id, "User")
    collection("user").delete_one({"_id": doc["_id"]})
    logger.info("User %s deleted by %s", doc.get("email"), admin["email"])
    return {"success": True}


# --------------------------- Customers ---------------------------
class CustomerUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    tax_id: Optional[str] = None
    email: Optional[str] = None


@app.post("/api/customers")
def create_customer(c: Customer, user: dict = Depends(get_current_user)):
    c.owner_id = user["id"]
    _id = create_document("customer", c)
    return {"id": _id}


@app.get("/api/customers")
def search_customers(q: Optional[str] = None, user: dict = Depends(get_current_user)):
    filt = scoped(user, search_filter(q, ["name", "phone", "tax_id", "email"]))
    docs = list(collection("customer").find(filt).sort("name", 1).limit(100))
    return [with_id(d) for d in docs]


@app.get("/api/customers/{customer_id}")
def get_customer(customer_id: str, user: dict = Depends(get_current_user)):
    doc = check_owner(get_or_404("customer", customer_id, "Customer"), user, "Customer")
    return with_id(doc)


@app.put("/api/customers/{customer_id}")
def update_customer(customer_id: str, body: CustomerUpdate, user: dict = Depends(get_current_user)):
    doc = check_owner(get_or_404("customer", customer_id, "Customer"), user, "Customer")
    update = {k: v for k, v in body.model_dump().items() if v is not None}
    if update:
        collection("customer").update_one({"_id": doc["_id"]}, {"$set": update})
        if "name" in update:
            collection("vehicle").update_many({"customer_id": customer_id}, {"$set": {"customer_name": update["name"]}})
    return {"success": True}


@app.delete("/api/customers/{customer_id}")
def delete_customer(customer_id: str, user: dict = Depends(get_current_user)):
    doc = check_owner(get_or_404("customer", customer_id, "Customer"), user, "Customer")
    if collection("vehicle").count_documents({"customer_id": customer_id}):
        raise HTTPException(status_code=409, detail="Customer still has vehicles registered")
    if collection("serviceorder").count_documents({"customer_id": customer_id, "status": "open"}):
        raise HTTPException(status_code=409, detail="Customer has an open service order")
    collection("customer").delete_one({"_id": doc["_id"]})
    return {"success": True}


# --------------------------- Vehicles ---------------------------
class VehicleCreate(BaseModel):
    plate: str = Field(..., min_length=3)
    model: str
    year: Optional[str] = None
    color: Optional[str] = None
    customer_id: str


@app.post("/api/vehicles")
def register_vehicle(v: VehicleCreate, user: dict = Depends(get_current_user)):
    customer = check_owner(get_or_404("customer", v.customer_id, "Customer"), user, "Customer")
    vehicle = Vehicle(
        plate=v.plate, model=v.model, year=v.year, color=v.color, customer_id=v.customer_id,
        customer_name=customer.get("name"), owner_id=user["id"]
    )
    if collection("vehicle").find_one({"plate": vehicle.plate}):
        raise HTTPException(status_code=409, detail="Plate already registered")
    _id = create_document("vehicle", vehicle)
    return {"id": _id}


@app.get("/api/vehicles")
def search_vehicles(q: Optional[str] = None, customer_id: Optional[str] = None,
                    user: dict = Depends(get_current_user)):
    by_customer = {"customer_id": customer_id} if customer_id else {}
    filt = scoped(user, by_customer, search_filter(q, ["plate", "model", "customer_name", "color"]))
    docs = list(collection("vehicle").find(filt).sort("plate", 1).limit(100))
    return [with_id(d) for d in docs]


@app.delete("/api/vehicles/{vehicle_id}")
def delete_vehicle(vehicle_id: str, user: dict = Depends(get_current_user)):
    doc = check_owner(get_or_404("vehicle", vehicle_id, "Vehicle"), user, "Vehicle")
    collection("vehicle").delete_one({"_id": doc["_id"]})
    return {"success": True}


# --------------------------- Suppliers ---------------------------
class ClaimOrphans(BaseModel):
    target_user_id: str


@app.post("/api/suppliers")
def create_supplier(s: Supplier, user: dict = Depends(get_current_user)):
    s.owner_id = user["id"]
    _id = create_document("supplier", s)
    return {"id": _id}


@app.get("/api/suppliers")
def list_suppliers(q: Optional[str] = None, user: dict = Depends(get_current_user)):
    filt = scoped(user, search_filter(q, ["name", "contact_name", "tax_id"]))
    docs = list(collection("supplier").find(filt).sort("name", 1).limit(100))
    return [with_id(d) for d in docs]


@app.post("/api/suppliers/claim-orphans")
def claim_orphan_suppliers(body: ClaimOrphans, admin: dict = Depends(require_admin)):
    get_or_404("user", body.target_user_id, "User")
    res = collection("supplier").update_many(
        {"$or": [{"owner_id": None}, {"owner_id": {"$exists": False}}]},
        {"$set": {"owner_id": body.target_user_id}},
    )
    logger.info("%d orphan suppliers assigned to %s", res.modified_count, body.target_user_id)
    return {"updated": res.modified_count}


# --------------------------- Catalog ---------------------------
class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    sku: Optional[str] = None
    description: Optional[str] = None
    cost_price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    min_stock: Optional[int] = Field(None, ge=0)
    track_stock: Optional[bool] = None


class StockAdjust(BaseModel):
    quantity: int
    reason: Optional[str] = None


@app.post("/api/products")
def create_product(p: Product, user: dict = Depends(get_current_user)):
    if p.sku and collection("product").find_one({"sku": p.sku}):
        raise HTTPException(status_code=409, detail="SKU already exists")
    if p.kind == "service":
        p.stock = 0
        p.track_stock = False
    _id = create_document("product", p)
    return {"id": _id}


@app.get("/api/products")
def search_products(q: Optional[str] = None, kind: Optional[Literal["part", "service"]] = None,
                    user: dict = Depends(get_current_user)):
    filt = combine({"kind": kind} if kind else {}, search_filter(q, ["name", "sku", "description"]))
    docs = list(collection("product").find(filt).sort("name", 1).limit(200))
    return [with_id(d) for d in docs]


@app.get("/api/products/sku/{sku}")
def product_by_sku(sku: str, user: dict = Depends(get_current_user)):
    doc = collection("product").find_one({"sku": sku.strip().upper()})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return with_id(doc)


@app.get("/api/products/{product_id}")
def get_product(product_id: str, user: dict = Depends(get_current_user)):
    return with_id(get_or_404("product", product_id, "Product"))


@app.patch("/api/products/{product_id}")
def update_product(product_id: str, body: ProductUpdate, user: dict = Depends(get_current_user)):
    doc = get_or_404("product", product_id, "Product")
    update = {k: v for k, v in body.model_dump().items() if v is not None}
    if "sku" in update:
        update["sku"] = update["sku"].strip().upper()
        clash = collection("product").find_one({"sku": update["sku"], "_id": {"$ne": doc["_id"]}})
        if clash:
            raise HTTPException(status_code=409, detail="SKU already exists")
    if update:
        collection("product").update_one({"_id": doc["_id"]}, {"$set": update})
    return {"success": True}


@app.post("/api/products/{product_id}/adjust")
def adjust_stock(product_id: str, adj: StockAdjust, admin: dict = Depends(require_admin)):
    product = inventory.adjust_stock(product_id, adj.quantity, adj.reason, admin)
    return with_id(product)


@app.get("/api/products/{product_id}/movements")
def product_movements(product_id: str, user: dict = Depends(get_current_user)):
    get_or_404("product", product_id, "Product")
    return get_documents("stockmovement", {"product_id": product_id}, limit=200, sort=[("created_at", -1)])


# --------------------------- Stock receiving ---------------------------
@app.post("/api/stock/receipts")
def receive_stock(body: StockReceipt, user: dict = Depends(get_current_user)):
    return inventory.receive_stock(body, user)


# --------------------------- Service orders ---------------------------
class CloseOrder(BaseModel):
    payment_method: PaymentMethod = "cash"


@app.post("/api/service-orders")
def open_service_order(body: ServiceOrderCreate, user: dict = Depends(get_current_user)):
    return inventory.open_service_order(body, user)


@app.get("/api/service-orders")
def list_service_orders(status: Optional[Literal["open", "closed", "cancelled"]] = None,
                        user: dict = Depends(get_current_user)):
    filt = scoped(user, {"status": status} if status else {})
    docs = list(collection("serviceorder").find(filt).sort("number", -1).limit(200))
    return [with_id(d) for d in docs]


@app.get("/api/service-orders/history")
def plate_history(plate: str = Query(..., min_length=3), user: dict = Depends(get_current_user)):
    return reports.plate_history(plate, owner_filter(user))


@app.get("/api/service-orders/{order_id}")
def get_service_order(order_id: str, user: dict = Depends(get_current_user)):
    doc = check_owner(get_or_404("serviceorder", order_id, "Service order"), user, "Service order")
    doc["warranty"] = reports.warranty_status(doc)
    return with_id(doc)


@app.post("/api/service-orders/{order_id}/close")
def close_service_order(order_id: str, body: CloseOrder, user: dict = Depends(get_current_user)):
    check_owner(get_or_404("serviceorder", order_id, "Service order"), user, "Service order")
    return with_id(inventory.close_service_order(order_id, body.payment_method, user))


@app.post("/api/service-orders/{order_id}/cancel")
def cancel_service_order(order_id: str, user: dict = Depends(get_current_user)):
    check_owner(get_or_404("serviceorder", order_id, "Service order"), user, "Service order")
    return with_id(inventory.cancel_service_order(order_id, user))


# --------------------------- Quotes ---------------------------
class QuoteCreate(BaseModel):
    customer_id: str
    vehicle_plate: str = Field(..., min_length=3)
    vehicle_model: Optional[str] = None
    description: Optional[str] = None
    valid_days: int = Field(15, ge=1)
    items: List[ItemRequest] = Field(..., min_length=1)


class QuoteStatus(BaseModel):
    status: Literal["approved", "rejected"]


def _quote_view(doc: dict) -> dict:
    created = doc.get("created_at")
    if created:
        valid_until = created + timedelta(days=int(doc.get("valid_days", 15)))
        doc["valid_until"] = valid_until
        doc["expired"] = utcnow() > valid_until
    return with_id(doc)


@app.post("/api/quotes")
def create_quote(body: QuoteCreate, user: dict = Depends(get_current_user)):
    customer = check_owner(get_or_404("customer", body.customer_id, "Customer"), user, "Customer")
    items = inventory.price_items(body.items)
    total, _ = inventory.order_totals(items)
    quote = Quote(
        number=next_sequence("quote"),
        created_at=utcnow(),
        customer_id=body.customer_id,
        customer_name=customer.get("name", ""),
        vehicle_plate=body.vehicle_plate.strip().upper(),
        vehicle_model=body.vehicle_model,
        description=body.description,
        valid_days=body.valid_days,
        items=items,
        total=total,
        owner_id=user["id"],
    )
    _id = create_document("quote", quote)
    return {"id": _id, "number": quote.number, "total": total}


@app.get("/api/quotes")
def list_quotes(status: Optional[Literal["pending", "approved", "rejected"]] = None,
                user: dict = Depends(get_current_user)):
    filt = scoped(user, {"status": status} if status else {})
    docs = list(collection("quote").find(filt).sort("number", -1).limit(200))
    return [_quote_view(d) for d in docs]


@app.get("/api/quotes/{quote_id}")
def get_quote(quote_id: str, user: dict = Depends(get_current_user)):
    return _quote_view(check_owner(get_or_404("quote", quote_id, "Quote"), user, "Quote"))


@app.post("/api/quotes/{quote_id}/status")
def set_quote_status(quote_id: str, body: QuoteStatus, user: dict = Depends(get_current_user)):
    doc = check_owner(get_or_404("quote", quote_id, "Quote"), user, "Quote")
    if doc.get("status") != "pending":
        raise inventory.InvalidTransition(f"Quote #{doc.get('number')} is already {doc.get('status')}")
    collection("quote").update_one({"_id": doc["_id"]}, {"$set": {"status": body.status}})
    return {"success": True}


@app.post("/api/quotes/{quote_id}/convert")
def convert_quote(quote_id: str, user: dict = Depends(get_current_user)):
    check_owner(get_or_404("quote", quote_id, "Quote"), user, "Quote")
    return inventory.convert_quote(quote_id, user)


@app.delete("/api/quotes/{quote_id}")
def delete_quote(quote_id: str, user: dict = Depends(get_current_user)):
    doc = check_owner(get_or_404("quote", quote_id, "Quote"), user, "Quote")
    if doc.get("service_order_id"):
        raise HTTPException(status_code=409, detail="Quote was converted into a service order")
    collection("quote").delete_one({"_id": doc["_id"]})
    return {"success": True}


# --------------------------- Point of sale ---------------------------
@app.post("/api/pos/sales")
def checkout_sale(body: SaleCreate, user: dict = Depends(get_current_user)):
    return inventory.checkout_sale(body, user)


@app.get("/api/pos/sales")
def list_sales(user: dict = Depends(get_current_user)):
    return get_documents("sale", owner_filter(user), limit=200, sort=[("date", -1)])


# --------------------------- Cash flow ---------------------------
class ExpenseCreate(BaseModel):
    description: str = Field(..., min_length=1)
    amount: float = Field(..., gt=0)
    payment_method: PaymentMethod = "cash"
    category: Optional[str] = "Expense"


@app.post("/api/ledger/expenses")
def record_expense(body: ExpenseCreate, user: dict = Depends(get_current_user)):
    entry = LedgerEntry(
        date=utcnow(), kind="out", description=body.description, amount=body.amount,
        category=body.category, payment_method=body.payment_method, owner_id=user["id"],
    )
    _id = create_document("ledgerentry", entry)
    logger.info("Expense of %.2f recorded: %s", body.amount, body.description)
    return {"id": _id}


@app.get("/api/ledger")
def list_ledger(start: Optional[date] = None, end: Optional[date] = None,
                kind: Optional[Literal["in", "out"]] = None, user: dict = Depends(get_current_user)):
    today = utcnow().date()
    start = start or today
    end = end or start
    if end < start:
        raise HTTPException(status_code=400, detail="End date is before start date")
    return reports.cash_summary(start, end, kind, owner_filter(user))["entries"]


# --------------------------- Reports ---------------------------
@app.get("/api/reports/cash")
def cash_report(start: date, end: date, admin: dict = Depends(require_admin)):
    if end < start:
        raise HTTPException(status_code=400, detail="End date is before start date")
    return reports.cash_summary(start, end)


@app.get("/api/reports/today")
def today_report(admin: dict = Depends(require_admin)):
    today = utcnow().date()
    summary = reports.cash_summary(today, today)
    summary.pop("entries")
    return summary


@app.get("/api/reports/low-stock")
def low_stock_report(threshold: Optional[int] = Query(None, ge=0), user: dict = Depends(get_current_user)):
    return reports.low_stock(threshold)


@app.get("/api/reports/summary")
def summary_report(user: dict = Depends(get_current_user)):
    return reports.dashboard_counts(owner_filter(user))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
