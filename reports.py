"""Cash-flow summaries, stock alerts and service history lookups."""
import math
import os
import re
from datetime import date, datetime, time, timedelta
from typing import List, Optional

from database import collection, get_documents, utcnow

LOW_STOCK_THRESHOLD = int(os.getenv("LOW_STOCK_THRESHOLD", 3))


def day_bounds(start: date, end: date):
    return datetime.combine(start, time.min), datetime.combine(end, time.max)


def cash_summary(start: date, end: date, kind: Optional[str] = None, owner_filter: Optional[dict] = None) -> dict:
    """Revenue, cost of parts, expenses and profit over whole days [start, end]."""
    lo, hi = day_bounds(start, end)
    filt = {"date": {"$gte": lo, "$lte": hi}}
    if kind:
        filt["kind"] = kind
    if owner_filter:
        filt.update(owner_filter)
    entries = get_documents("ledgerentry", filt, sort=[("date", 1)])

    gross_revenue = 0.0
    parts_cost = 0.0
    expenses = 0.0
    for e in entries:
        amount = float(e.get("amount") or 0)
        if e.get("kind") == "in":
            gross_revenue += amount
            parts_cost += float(e.get("cost") or 0)
        elif e.get("kind") == "out":
            expenses += amount

    gross_profit = gross_revenue - parts_cost
    return {
        "start": start.isoformat(),
        "end": end.isoformat(),
        "gross_revenue": round(gross_revenue, 2),
        "parts_cost": round(parts_cost, 2),
        "gross_profit": round(gross_profit, 2),
        "expenses": round(expenses, 2),
        "net_profit": round(gross_profit - expenses, 2),
        "entries": entries,
    }


def low_stock(threshold: Optional[int] = None) -> List[dict]:
    default = LOW_STOCK_THRESHOLD if threshold is None else threshold
    out = []
    for p in get_documents("product", {"kind": "part", "track_stock": {"$ne": False}}, sort=[("stock", 1)]):
        limit = p.get("min_stock")
        if limit is None:
            limit = default
        if int(p.get("stock", 0)) <= limit:
            out.append({"id": p["id"], "name": p.get("name"), "sku": p.get("sku"),
                        "stock": p.get("stock", 0), "min_stock": limit})
    return out


def plate_variants(raw: str) -> List[str]:
    """ABC1234, ABC-1234 and whatever was typed, so old and Mercosul plates both match."""
    typed = raw.strip().upper()
    cleaned = re.sub(r"[^A-Z0-9]", "", typed)
    variants = [typed, cleaned]
    if len(cleaned) == 7:
        variants.append(f"{cleaned[:3]}-{cleaned[3:]}")
    return list(dict.fromkeys(v for v in variants if v))


def warranty_status(order: dict, now: Optional[datetime] = None) -> dict:
    status = order.get("status")
    closed_at = order.get("closed_at")
    if status != "closed" or not closed_at:
        return {"status": status}
    days = int(order.get("warranty_days") or 0)
    if days == 0:
        return {"status": "no_warranty"}
    now = now or utcnow()
    expires = closed_at + timedelta(days=days)
    if now > expires:
        return {"status": "expired", "expires_at": expires}
    remaining = math.ceil((expires - now).total_seconds() / 86400)
    return {"status": "active", "expires_at": expires, "days_remaining": remaining}


def plate_history(plate: str, owner_filter: Optional[dict] = None) -> List[dict]:
    filt = {"vehicle_plate": {"$in": plate_variants(plate)}}
    if owner_filter:
        filt.update(owner_filter)
    orders = get_documents("serviceorder", filt)
    orders.sort(key=lambda o: o.get("opened_at") or datetime.min, reverse=True)
    now = utcnow()
    for o in orders:
        o["warranty"] = warranty_status(o, now)
    return orders


def dashboard_counts(owner_filter: Optional[dict] = None) -> dict:
    scoped = owner_filter or {}
    return {
        "customers": collection("customer").count_documents(scoped),
        "vehicles": collection("vehicle").count_documents(scoped),
        "products": collection("product").count_documents({}),
        "service_orders_open": collection("serviceorder").count_documents({"status": "open", **scoped}),
        "quotes_pending": collection("quote").count_documents({"status": "pending", **scoped}),
        "low_stock": len(low_stock()),
    }
