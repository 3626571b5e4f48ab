"""
Stock-consistent transactions.

Every flow that touches stock goes through apply_stock_changes() inside
database.run_transaction(), so the read, the validation, the stock writes and
the ledger/audit records commit together or not at all.
"""
import logging
from typing import Dict, Iterable, List, NamedTuple, Optional

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel, Field

from database import (
    collection, create_document, get_or_404, next_sequence, oid, run_transaction, utcnow,
)
from schemas import (
    LedgerEntry, OrderItem, PaymentMethod, Sale, ServiceOrder, StockMovement,
)
from security import check_owner

logger = logging.getLogger(__name__)


# --------------------------- Errors ---------------------------
class ProductNotFound(HTTPException):
    def __init__(self, name: str, product_id: str):
        self.product_id = product_id
        super().__init__(status_code=404, detail=f"Product {name} (ID: {product_id}) not found.")


class InsufficientStock(HTTPException):
    def __init__(self, name: str, product_id: str, available: int):
        self.product_id = product_id
        self.available = available
        super().__init__(status_code=409, detail=f"Insufficient stock for {name}. Only {available} left.")


class StockConflict(HTTPException):
    def __init__(self, name: str):
        super().__init__(status_code=409, detail=f"Stock for {name} changed during the operation, try again.")


class InvalidTransition(HTTPException):
    def __init__(self, detail: str):
        super().__init__(status_code=409, detail=detail)


# --------------------------- Request bodies ---------------------------
class ItemRequest(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_price: Optional[float] = Field(None, ge=0, description="Defaults to the product's sale price")


class ServiceOrderCreate(BaseModel):
    customer_id: str
    vehicle_plate: str = Field(..., min_length=3)
    vehicle_model: Optional[str] = None
    description: Optional[str] = None
    warranty_days: int = Field(0, ge=0)
    items: List[ItemRequest] = Field(..., min_length=1)


class ReceiptItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    unit_cost: float = Field(..., ge=0)


class StockReceipt(BaseModel):
    supplier_id: str
    invoice_number: Optional[str] = None
    payment_method: PaymentMethod = "cash"
    items: List[ReceiptItem] = Field(..., min_length=1)


class SaleCreate(BaseModel):
    items: List[ItemRequest] = Field(default_factory=list)
    payment_method: PaymentMethod = "cash"
    operator_name: Optional[str] = None


# --------------------------- Kernel ---------------------------
class StockChange(NamedTuple):
    product_id: str
    delta: int
    name: Optional[str] = None


def tracks_stock(product: dict) -> bool:
    return product.get("kind", "part") == "part" and product.get("track_stock", True)


def apply_stock_changes(changes: Iterable[StockChange], session=None, reference: Optional[str] = None,
                        note: Optional[str] = None, movement_type: Optional[str] = None) -> Dict[str, dict]:
    """Apply signed quantity deltas to product stock, all or nothing.

    Deltas for the same product are merged. All products are read before any
    write; the first product (in input order) whose stock would drop below
    zero aborts the whole batch. One stockmovement is appended per product
    written. Returns the product documents keyed by id, with updated stock.
    """
    merged: Dict[str, StockChange] = {}
    for change in changes:
        prev = merged.get(change.product_id)
        merged[change.product_id] = prev._replace(delta=prev.delta + change.delta) if prev else change

    products: Dict[str, dict] = {}
    for product_id, change in merged.items():
        doc = collection("product").find_one({"_id": oid(product_id)}, session=session)
        if not doc:
            raise ProductNotFound(change.name or product_id, product_id)
        products[product_id] = doc

    planned = []
    for product_id, change in merged.items():
        doc = products[product_id]
        if change.delta == 0 or not tracks_stock(doc):
            continue
        current = int(doc.get("stock", 0))
        new_stock = current + change.delta
        if new_stock < 0:
            raise InsufficientStock(doc.get("name", change.name), product_id, current)
        planned.append((doc, change, new_stock))

    for doc, change, new_stock in planned:
        # matches only the stock value that was validated
        seen = doc["stock"] if "stock" in doc else {"$exists": False}
        res = collection("product").update_one(
            {"_id": doc["_id"], "stock": seen},
            {"$set": {"stock": new_stock}},
            session=session,
        )
        if res.matched_count == 0:
            raise StockConflict(doc.get("name", change.name))
        move = StockMovement(
            product_id=str(doc["_id"]),
            product_name=doc.get("name", ""),
            movement_type=movement_type or ("in" if change.delta > 0 else "out"),
            quantity=change.delta,
            stock_after=new_stock,
            reference=reference,
            note=note,
        )
        create_document("stockmovement", move, session=session)
        doc["stock"] = new_stock
    return products


def price_items(items: Iterable[ItemRequest], session=None) -> List[OrderItem]:
    """Resolve requested items against the catalog (name, kind, cost, default price)."""
    priced = []
    for it in items:
        product = collection("product").find_one({"_id": oid(it.product_id)}, session=session)
        if not product:
            raise ProductNotFound(it.product_id, it.product_id)
        unit_price = it.unit_price if it.unit_price is not None else float(product.get("sale_price", 0))
        priced.append(OrderItem(
            product_id=it.product_id,
            name=product.get("name", ""),
            quantity=it.quantity,
            unit_cost=float(product.get("cost_price", 0)),
            unit_price=unit_price,
            kind=product.get("kind", "part"),
        ))
    return priced


def order_totals(items: Iterable[OrderItem]):
    total = 0.0
    cost_total = 0.0
    for it in items:
        total += it.unit_price * it.quantity
        cost_total += it.unit_cost * it.quantity
    return round(total, 2), round(cost_total, 2)


def _decrements(items: Iterable[OrderItem]) -> List[StockChange]:
    return [StockChange(it.product_id, -it.quantity, it.name) for it in items if it.kind == "part"]


# --------------------------- Service orders ---------------------------
def _open_order(body: ServiceOrderCreate, user: dict, session, quote_id: Optional[str] = None) -> dict:
    customer = check_owner(get_or_404("customer", body.customer_id, "Customer", session=session), user, "Customer")
    if collection("serviceorder").find_one({"customer_id": body.customer_id, "status": "open"}, session=session):
        raise HTTPException(
            status_code=409,
            detail="Customer already has an open service order. Close it before opening a new one.",
        )

    items = price_items(body.items, session=session)
    total, cost_total = order_totals(items)
    order_oid = ObjectId()
    apply_stock_changes(_decrements(items), session=session, reference=f"serviceorder:{order_oid}")

    number = next_sequence("serviceorder", session=session)
    order = ServiceOrder(
        number=number,
        opened_at=utcnow(),
        customer_id=body.customer_id,
        customer_name=customer.get("name", ""),
        vehicle_plate=body.vehicle_plate.strip().upper(),
        vehicle_model=body.vehicle_model,
        description=body.description,
        warranty_days=body.warranty_days,
        items=items,
        total=total,
        cost_total=cost_total,
        quote_id=quote_id,
        owner_id=user.get("id"),
    )
    order_id = create_document("serviceorder", {"_id": order_oid, **order.model_dump()}, session=session)
    return {"id": order_id, **order.model_dump()}


def open_service_order(body: ServiceOrderCreate, user: dict) -> dict:
    order = run_transaction(lambda s: _open_order(body, user, s))
    logger.info("Service order #%s opened for customer %s (total %.2f)", order["number"], body.customer_id, order["total"])
    return order


def close_service_order(order_id: str, payment_method: str, user: dict) -> dict:
    """Checkout: mark the order closed and book its revenue in one transaction."""
    def txn(s):
        order = get_or_404("serviceorder", order_id, "Service order", session=s)
        if order.get("status") != "open":
            raise InvalidTransition(f"Service order #{order.get('number')} is {order.get('status')}, not open.")
        closed_at = utcnow()
        res = collection("serviceorder").update_one(
            {"_id": order["_id"], "status": "open"},
            {"$set": {"status": "closed", "closed_at": closed_at, "payment_method": payment_method}},
            session=s,
        )
        if res.matched_count == 0:
            raise InvalidTransition(f"Service order #{order.get('number')} was closed concurrently.")
        entry = LedgerEntry(
            date=closed_at,
            kind="in",
            description=f"Service order #{order.get('number')}",
            amount=float(order.get("total", 0)),
            cost=float(order.get("cost_total", 0) or 0),
            category="Service",
            payment_method=payment_method,
            reference_id=order_id,
            owner_id=order.get("owner_id") or user.get("id"),
        )
        entry_id = create_document("ledgerentry", entry, session=s)
        order.update(status="closed", closed_at=closed_at, payment_method=payment_method)
        return order, entry_id

    order, entry_id = run_transaction(txn)
    logger.info("Service order #%s closed, ledger entry %s", order.get("number"), entry_id)
    order["ledger_entry_id"] = entry_id
    return order


def cancel_service_order(order_id: str, user: dict) -> dict:
    """Cancel an open order and put its parts back on the shelf."""
    def txn(s):
        order = get_or_404("serviceorder", order_id, "Service order", session=s)
        if order.get("status") != "open":
            raise InvalidTransition(f"Service order #{order.get('number')} is {order.get('status')}, not open.")
        returns = [
            StockChange(it["product_id"], int(it["quantity"]), it.get("name"))
            for it in order.get("items", []) if it.get("kind") == "part"
        ]
        apply_stock_changes(returns, session=s, reference=f"serviceorder:{order_id}",
                            note="service order cancelled")
        collection("serviceorder").update_one(
            {"_id": order["_id"]},
            {"$set": {"status": "cancelled", "cancelled_by": user.get("id")}},
            session=s,
        )
        order["status"] = "cancelled"
        return order

    order = run_transaction(txn)
    logger.info("Service order #%s cancelled by %s", order.get("number"), user.get("id"))
    return order


def convert_quote(quote_id: str, user: dict) -> dict:
    """Open a service order from a quote and mark the quote approved."""
    def txn(s):
        quote = get_or_404("quote", quote_id, "Quote", session=s)
        if quote.get("service_order_id"):
            raise InvalidTransition("Quote was already converted into a service order.")
        if quote.get("status") == "rejected":
            raise InvalidTransition("A rejected quote cannot be converted.")
        body = ServiceOrderCreate(
            customer_id=quote["customer_id"],
            vehicle_plate=quote["vehicle_plate"],
            vehicle_model=quote.get("vehicle_model"),
            description=quote.get("description"),
            items=[
                ItemRequest(product_id=it["product_id"], quantity=it["quantity"], unit_price=it.get("unit_price"))
                for it in quote.get("items", [])
            ],
        )
        order = _open_order(body, user, s, quote_id=quote_id)
        collection("quote").update_one(
            {"_id": quote["_id"]},
            {"$set": {"status": "approved", "service_order_id": order["id"]}},
            session=s,
        )
        return order

    order = run_transaction(txn)
    logger.info("Quote %s converted into service order #%s", quote_id, order["number"])
    return order


# --------------------------- Stock receiving ---------------------------
def receive_stock(body: StockReceipt, user: dict) -> dict:
    """Purchase from a supplier: stock up, refresh unit cost, book the expense."""
    def txn(s):
        supplier = check_owner(get_or_404("supplier", body.supplier_id, "Supplier", session=s), user, "Supplier")
        changes = []
        for it in body.items:
            product = collection("product").find_one({"_id": oid(it.product_id)}, session=s)
            if not product:
                raise ProductNotFound(it.product_id, it.product_id)
            if product.get("kind", "part") != "part":
                raise HTTPException(status_code=400, detail=f"{product.get('name')} is a service and holds no stock.")
            changes.append(StockChange(it.product_id, it.quantity, product.get("name")))

        invoice = body.invoice_number or "N/A"
        products = apply_stock_changes(changes, session=s, reference=f"purchase:{invoice}",
                                       note=f"supplier {supplier.get('name')}")
        for it in body.items:
            collection("product").update_one({"_id": oid(it.product_id)}, {"$set": {"cost_price": it.unit_cost}}, session=s)

        total = round(sum(it.unit_cost * it.quantity for it in body.items), 2)
        entry = LedgerEntry(
            date=utcnow(),
            kind="out",
            description=f"Purchase invoice #{invoice} - Supplier: {supplier.get('name')}",
            amount=total,
            category="Stock purchase",
            payment_method=body.payment_method,
            reference_id=body.invoice_number,
            owner_id=user.get("id"),
        )
        entry_id = create_document("ledgerentry", entry, session=s)
        stock = {pid: int(p.get("stock", 0)) for pid, p in products.items()}
        return {"ledger_entry_id": entry_id, "total": total, "stock": stock}

    result = run_transaction(txn)
    logger.info("Stock received from supplier %s, invoice %s, total %.2f",
                body.supplier_id, body.invoice_number or "N/A", result["total"])
    return result


# --------------------------- Point of sale ---------------------------
def checkout_sale(body: SaleCreate, user: dict) -> dict:
    if not body.items:
        raise HTTPException(status_code=400, detail="Cart is empty")

    def txn(s):
        items = price_items(body.items, session=s)
        total, cost_total = order_totals(items)
        sale_oid = ObjectId()
        sale_id = str(sale_oid)
        apply_stock_changes(_decrements(items), session=s, reference=f"sale:{sale_id}")

        now = utcnow()
        sale = Sale(
            date=now,
            items=items,
            total=total,
            cost_total=cost_total,
            payment_method=body.payment_method,
            operator_name=body.operator_name or user.get("name"),
            owner_id=user.get("id"),
        )
        create_document("sale", {"_id": sale_oid, **sale.model_dump()}, session=s)
        entry = LedgerEntry(
            date=now,
            kind="in",
            description=f"POS sale #{sale_id[:5].upper()}",
            amount=total,
            cost=cost_total,
            category="Parts sale",
            payment_method=body.payment_method,
            reference_id=sale_id,
            owner_id=user.get("id"),
        )
        entry_id = create_document("ledgerentry", entry, session=s)
        return {"sale_id": sale_id, "ledger_entry_id": entry_id, "total": total}

    result = run_transaction(txn)
    logger.info("POS sale %s recorded (total %.2f)", result["sale_id"], result["total"])
    return result


# --------------------------- Manual adjustment ---------------------------
def adjust_stock(product_id: str, quantity: int, reason: Optional[str], user: dict) -> dict:
    if quantity == 0:
        raise HTTPException(status_code=400, detail="Adjustment quantity must not be zero")

    def txn(s):
        product = get_or_404("product", product_id, "Product", session=s)
        if not tracks_stock(product):
            raise HTTPException(status_code=400, detail=f"{product.get('name')} does not track stock.")
        products = apply_stock_changes([StockChange(product_id, quantity)], session=s,
                                       reference=f"adjust:{user.get('id')}", note=reason, movement_type="adjust")
        return products[product_id]

    product = run_transaction(txn)
    logger.info("Stock of %s adjusted by %+d to %s", product.get("name"), quantity, product.get("stock"))
    return product
