from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from bundlewallet.models import ItemStatus, LedgerEntryType, OrderSource


class AccountCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    opening_balance: Optional[int] = Field(None, ge=0, description="Minor units, credited as a top-up")

class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    loan_balance: int
    has_loan: bool
    admin_loan_balance: int
    created_at: datetime | None = None

class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    price_cents: int = Field(..., ge=0)
    stock: Optional[int] = Field(None, ge=0)

class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    price_cents: int
    stock: Optional[int] = None

class CartItemCreate(BaseModel):
    product_id: int
    # Validated again in the service so direct callers get the same error
    quantity: int
    dest_number: Optional[str] = Field(None, max_length=32)

class CartItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    cart_id: int
    product_id: int
    quantity: int
    price_cents: int
    dest_number: Optional[str] = None

class CartOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    items: List[CartItemOut] = []

class SubmitCart(BaseModel):
    dest_number: Optional[str] = Field(None, max_length=32)

class DirectOrderItem(BaseModel):
    product_id: int
    quantity: int
    dest_number: Optional[str] = Field(None, max_length=32)
    unit_price_cents: Optional[int] = Field(None, ge=0)

class DirectOrderCreate(BaseModel):
    account_id: int
    items: List[DirectOrderItem]
    total_amount: int

class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    product_id: int
    quantity: int
    dest_number: Optional[str] = None
    status: ItemStatus
    unit_price_cents: Optional[int] = None

class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    dest_number: Optional[str] = None
    status: ItemStatus
    source: OrderSource
    created_at: datetime | None = None
    items: List[OrderItemOut] = []

class OrderLookup(BaseModel):
    order_ids: List[int] = Field(..., min_length=1, max_length=500)

class StatusUpdate(BaseModel):
    # free-form so unknown values surface as InvalidStatus rather than a schema error
    status: str

class LedgerEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    amount: int
    balance: int
    previous_balance: int
    type: LedgerEntryType
    description: str
    reference: Optional[str] = None
    created_at: datetime

class LoanAmount(BaseModel):
    amount: int
    reference: Optional[str] = Field(None, max_length=200)

class LoanStatusUpdate(BaseModel):
    has_loan: bool

class RefundCreate(BaseModel):
    amount: int
    reference: str = Field(..., min_length=1, max_length=200)

class TopupCreate(BaseModel):
    amount: int
    gateway_reference: str = Field(..., min_length=1, max_length=180)

class GatewayOutcome(TopupCreate):
    outcome: Literal["success", "pending", "failed"]
