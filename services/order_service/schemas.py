import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator


class Stage(str, Enum):
    DRAFT = "Draft"
    SUBMITTED = "Submitted"
    UNDER_REVIEW = "Under Review"
    REQUIRES_APPROVAL = "Requires Approval"
    REQUESTED_CHANGES = "Requested Changes"
    READY_TO_PRODUCE = "Ready to Produce"
    IN_PRODUCTION = "In Production"
    COMPLETED = "Completed"


class ItemType(str, Enum):
    CUTTER = "Cutter"
    STAMP = "Stamp"
    STAMP_AND_CUTTER = "Stamp & Cutter"


class MeasurementUnit(str, Enum):
    CM = "cm"
    MM = "mm"


class FulfillmentMethod(str, Enum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"


class UpdateRequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# --- Line items ---

class Measurement(BaseModel):
    value: float = Field(ge=0.1, le=1000)
    unit: MeasurementUnit = MeasurementUnit.CM


class OrderItemCreate(BaseModel):
    type: ItemType
    measurement: Measurement
    notes: str = Field(default="", max_length=1000)
    inspiration_images: List[str] = []  # image-store keys
    preview_images: List[str] = []


class OrderItem(OrderItemCreate):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)


# --- Fulfillment ---

class PickupSchedule(BaseModel):
    """Raw pickup date/time as entered; parsing is left to the pickup resolver."""

    date: Optional[str] = None
    time: Optional[str] = None
    notes: Optional[str] = None


class DeliveryAddress(BaseModel):
    street: Optional[str] = Field(default=None, max_length=200)
    suburb: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    postcode: Optional[str] = Field(default=None, max_length=20)
    country: str = Field(default="Australia", max_length=100)
    instructions: Optional[str] = Field(default=None, max_length=500)


class Fulfillment(BaseModel):
    method: FulfillmentMethod
    payment_method: Optional[PaymentMethod] = None
    schedule: Optional[PickupSchedule] = None
    address: Optional[DeliveryAddress] = None
    confirmed_at: Optional[datetime] = None
    confirmed_by: Optional[str] = None


class StageHistoryEntry(BaseModel):
    stage: Stage
    changed_by: str
    changed_at: datetime
    comments: str = ""


class FulfillmentUpdateRequest(BaseModel):
    requested_by: str
    requested_at: datetime
    changes: Fulfillment
    reason: str = ""
    status: UpdateRequestStatus = UpdateRequestStatus.PENDING
    response: Optional[str] = None
    responded_by: Optional[str] = None
    responded_at: Optional[datetime] = None


# --- The order record ---

class OrderSnapshot(BaseModel):
    """Full state of one order as read from, and written to, the durable store."""

    id: str
    order_number: str
    owner_id: str
    stage: Stage = Stage.DRAFT
    items: List[OrderItem] = []
    date_required: Optional[date] = None
    price: Optional[float] = None
    fulfillment: Optional[Fulfillment] = None
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    update_request: Optional[FulfillmentUpdateRequest] = None
    stage_history: List[StageHistoryEntry] = []
    created_at: datetime
    updated_at: datetime
    version: int = 1

    class Config:
        from_attributes = True

    @field_validator("created_at", "updated_at", "approved_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # SQLite hands timestamps back without an offset; they are stored as UTC
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class OrderResponse(OrderSnapshot):
    pickup_status: Optional[str] = None


# --- Requests ---

class OrderCreate(BaseModel):
    items: List[OrderItemCreate] = []
    date_required: Optional[date] = None
    owner_id: Optional[str] = None  # approvers creating on a requester's behalf


class TransitionRequest(BaseModel):
    target: Stage
    price: Optional[float] = Field(default=None, ge=0)
    fulfillment: Optional[Fulfillment] = None
    comments: Optional[str] = Field(default=None, max_length=1000)
    version: Optional[int] = None


class PriceUpdate(BaseModel):
    price: float = Field(ge=0)
    version: Optional[int] = None


class ItemsUpdate(BaseModel):
    items: List[OrderItemCreate]
    version: Optional[int] = None


class FulfillmentUpdate(BaseModel):
    fulfillment: Fulfillment
    version: Optional[int] = None


class ConfirmDetails(BaseModel):
    version: Optional[int] = None


class UpdateRequestCreate(BaseModel):
    changes: Fulfillment
    reason: str = Field(default="", max_length=1000)
    version: Optional[int] = None


class UpdateRequestDecision(BaseModel):
    approve: bool
    response: Optional[str] = Field(default=None, max_length=1000)
    version: Optional[int] = None


class OrderFilter(BaseModel):
    stage: Optional[Stage] = None
    owner_id: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    fulfillment_method: Optional[FulfillmentMethod] = None
    payment_method: Optional[PaymentMethod] = None
    pickup_status: Optional[str] = None
    pickup_date_from: Optional[date] = None
    pickup_date_to: Optional[date] = None


class PickupSlotCheck(BaseModel):
    date: Optional[str] = None
    time: Optional[str] = None
