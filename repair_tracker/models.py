"""Domain records and the input models accepted by the repositories and API."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, validator


@dataclass
class StatusHistoryEntry:
    status: str
    date: datetime
    user: str
    cost: Optional[float] = None
    notes: Optional[str] = None
    delivery_date: Optional[datetime] = None


@dataclass
class RepairOrder:
    id: str
    row_index: int
    ro_number: str
    date_made: Optional[datetime]
    shop_name: str
    part_number: str
    serial_number: str
    part_description: str
    required_work: str
    date_dropped_off: Optional[datetime]
    estimated_cost: Optional[float]
    final_cost: Optional[float]
    terms: str
    shop_reference_number: str
    estimated_delivery_date: Optional[datetime]
    current_status: str
    current_status_date: Optional[datetime]
    genthrust_status: str
    shop_status: str
    tracking_number: str
    notes: str
    last_date_updated: Optional[datetime]
    next_date_to_update: Optional[datetime]
    checked: str
    status_history: List[StatusHistoryEntry] = field(default_factory=list)
    days_overdue: int = 0
    is_overdue: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Shop:
    """A vendor row.

    ``id`` is built from the customer number when one exists so that it
    survives renames and row moves; rows without one fall back to position.
    """

    id: str
    row_index: int
    customer_number: str
    business_name: str
    address_line1: str
    address_line2: str
    address_line3: str
    address_line4: str
    city: str
    state: str
    zip: str
    country: str
    phone: str
    toll_free: str
    fax: str
    email: str
    website: str
    contact: str
    payment_terms: str
    ils_code: str
    last_sale_date: Optional[datetime]
    ytd_sales: Optional[float]

    @property
    def shop_name(self) -> str:
        return self.business_name

    @property
    def contact_name(self) -> str:
        return self.contact

    @property
    def default_terms(self) -> str:
        return self.payment_terms

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DashboardStats:
    total_active: int = 0
    overdue: int = 0
    waiting_quote: int = 0
    approved: int = 0
    being_repaired: int = 0
    shipping: int = 0
    total_value: float = 0.0
    total_estimated_value: float = 0.0
    total_final_value: float = 0.0
    due_today: int = 0
    overdue_30_plus: int = 0
    on_track: int = 0


@dataclass
class ROReminder:
    """The To Do task and calendar event found for one RO number."""

    ro_number: str
    type: str
    todo_task: Optional[Dict[str, Any]] = None
    calendar_event: Optional[Dict[str, Any]] = None
    due_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RepairOrderInput(BaseModel):
    """User-editable RO fields, used for both creation and edits."""

    ro_number: str = Field(..., min_length=1)
    shop_name: str
    part_number: str = ""
    serial_number: str = ""
    part_description: str = ""
    required_work: str = ""
    estimated_cost: Optional[float] = Field(None, ge=0)
    terms: str = ""
    shop_reference_number: str = ""

    @validator("ro_number", "shop_name")
    def strip_required(cls, value: str) -> str:  # type: ignore[override]
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value


class StatusUpdate(BaseModel):
    status: str = Field(..., min_length=1)
    notes: Optional[str] = None
    cost: Optional[float] = Field(None, ge=0)
    delivery_date: Optional[datetime] = None
    tracking_number: Optional[str] = None


class ArchiveRequest(BaseModel):
    sheet_name: Optional[str] = None
    table_name: Optional[str] = None
    status: Optional[str] = None


class ShopInput(BaseModel):
    customer_number: str = ""
    business_name: str = Field(..., min_length=1)
    address_line1: str = ""
    address_line2: str = ""
    address_line3: str = ""
    address_line4: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = ""
    phone: str = ""
    toll_free: str = ""
    fax: str = ""
    email: str = ""
    website: str = ""
    contact: str = ""
    payment_terms: str = ""
    ils_code: str = ""
    ytd_sales: Optional[float] = None


class ReminderRequest(BaseModel):
    """Defaults to the RO's next update date when ``due_date`` is omitted."""

    due_date: Optional[datetime] = None
    todo: bool = True
    calendar: bool = True


class ReminderReschedule(BaseModel):
    due_date: datetime
