"""
Database Schemas for the Automotive Workshop Manager

Each Pydantic model maps to a MongoDB collection. Collection name is the lowercase
class name by convention (ServiceOrder -> "serviceorder").

Covers: registry (customers, vehicles, suppliers), catalog (parts and services),
service orders, quotes, point-of-sale, cash-flow ledger, stock audit and users.
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr, field_validator
from datetime import datetime

Role = Literal["admin", "operator"]
PaymentMethod = Literal["cash", "pix", "debit_card", "credit_card", "bank_transfer"]
ProductKind = Literal["part", "service"]

# =============== ADMIN / USERS ==================
class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str
    role: Role = "operator"
    is_active: bool = True

# =============== REGISTRY ==================
class Customer(BaseModel):
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    tax_id: Optional[str] = Field(None, description="CPF or CNPJ")
    email: Optional[str] = None
    owner_id: Optional[str] = None

class Vehicle(BaseModel):
    plate: str = Field(..., min_length=3)
    model: str
    year: Optional[str] = None
    color: Optional[str] = None
    customer_id: str
    customer_name: Optional[str] = Field(None, description="Denormalized for search")
    owner_id: Optional[str] = None

    @field_validator("plate")
    @classmethod
    def upper_plate(cls, v: str) -> str:
        return v.strip().upper()

class Supplier(BaseModel):
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None
    email: Optional[str] = None
    tax_id: Optional[str] = None
    contact_name: Optional[str] = None
    owner_id: Optional[str] = None

# =============== CATALOG ==================
class Product(BaseModel):
    name: str = Field(..., min_length=1)
    sku: Optional[str] = Field(None, description="Barcode / SKU, stored upper-case")
    description: Optional[str] = None
    cost_price: float = Field(0.0, ge=0)
    sale_price: float = Field(0.0, ge=0)
    stock: int = Field(0, ge=0)
    min_stock: Optional[int] = Field(None, ge=0)
    kind: ProductKind = "part"
    track_stock: bool = True

    @field_validator("sku")
    @classmethod
    def upper_sku(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().upper()
        return v or None

# =============== SERVICE ORDERS / QUOTES ==================
class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    unit_cost: float = 0.0
    unit_price: float = 0.0
    kind: ProductKind = "part"

class ServiceOrder(BaseModel):
    number: int
    opened_at: datetime
    closed_at: Optional[datetime] = None
    customer_id: str
    customer_name: str
    vehicle_plate: str
    vehicle_model: Optional[str] = None
    status: Literal["open", "closed", "cancelled"] = "open"
    description: Optional[str] = None
    warranty_days: int = Field(0, ge=0)
    items: List[OrderItem]
    total: float
    cost_total: float = 0.0
    payment_method: Optional[PaymentMethod] = None
    quote_id: Optional[str] = None
    owner_id: Optional[str] = None

class Quote(BaseModel):
    number: int
    created_at: datetime
    status: Literal["pending", "approved", "rejected"] = "pending"
    customer_id: str
    customer_name: str
    vehicle_plate: str
    vehicle_model: Optional[str] = None
    description: Optional[str] = None
    valid_days: int = Field(15, ge=1)
    items: List[OrderItem]
    total: float
    service_order_id: Optional[str] = None
    owner_id: Optional[str] = None

# =============== POINT OF SALE ==================
class Sale(BaseModel):
    date: datetime
    items: List[OrderItem]
    total: float
    cost_total: float = 0.0
    payment_method: PaymentMethod
    operator_name: Optional[str] = None
    channel: Literal["counter"] = "counter"
    owner_id: Optional[str] = None

# =============== CASH FLOW ==================
class LedgerEntry(BaseModel):
    date: datetime
    kind: Literal["in", "out"]
    description: str
    amount: float = Field(..., ge=0)
    cost: float = Field(0.0, ge=0, description="Cost of goods behind an 'in' entry")
    category: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    reference_id: Optional[str] = None
    owner_id: Optional[str] = None

# =============== STOCK AUDIT ==================
class StockMovement(BaseModel):
    product_id: str
    product_name: str
    movement_type: Literal["in", "out", "adjust"]
    quantity: int
    stock_after: int
    reference: Optional[str] = None
    note: Optional[str] = None
