"""Positional column layouts for the workbook tables.

Graph returns table rows as bare value arrays; the order is agreed with the
header row of each table and nowhere else. Every positional access goes
through the enums below.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence

LOGGER = logging.getLogger(__name__)

# Day zero of Excel serial dates (accounts for the 1900 leap-year bug).
EXCEL_EPOCH = datetime(1899, 12, 30, tzinfo=timezone.utc)


class ROColumn(enum.IntEnum):
    RO_NUMBER = 0
    DATE_MADE = 1
    SHOP_NAME = 2
    PART_NUMBER = 3
    SERIAL_NUMBER = 4
    PART_DESCRIPTION = 5
    REQUIRED_WORK = 6
    DATE_DROPPED_OFF = 7
    ESTIMATED_COST = 8
    FINAL_COST = 9
    TERMS = 10
    SHOP_REFERENCE_NUMBER = 11
    ESTIMATED_DELIVERY_DATE = 12
    CURRENT_STATUS = 13
    CURRENT_STATUS_DATE = 14
    GENTHRUST_STATUS = 15
    SHOP_STATUS = 16
    TRACKING_NUMBER = 17
    NOTES = 18
    LAST_DATE_UPDATED = 19
    NEXT_DATE_TO_UPDATE = 20
    CHECKED = 21


class ShopColumn(enum.IntEnum):
    CUSTOMER_NUMBER = 0
    BUSINESS_NAME = 1
    ADDRESS_LINE_1 = 2
    ADDRESS_LINE_2 = 3
    ADDRESS_LINE_3 = 4
    ADDRESS_LINE_4 = 5
    CITY = 6
    STATE = 7
    ZIP = 8
    COUNTRY = 9
    PHONE = 10
    TOLL_FREE = 11
    FAX = 12
    EMAIL = 13
    WEBSITE = 14
    CONTACT = 15
    PAYMENT_TERMS = 16
    ILS_CODE = 17
    LAST_SALE_DATE = 18
    YTD_SALES = 19


RO_ROW_WIDTH = len(ROColumn)
SHOP_ROW_WIDTH = len(ShopColumn)

# Fields a user may edit directly; everything else is owned by the workflow.
RO_EDITABLE_COLUMNS = (
    ROColumn.RO_NUMBER,
    ROColumn.SHOP_NAME,
    ROColumn.PART_NUMBER,
    ROColumn.SERIAL_NUMBER,
    ROColumn.PART_DESCRIPTION,
    ROColumn.REQUIRED_WORK,
    ROColumn.ESTIMATED_COST,
    ROColumn.TERMS,
    ROColumn.SHOP_REFERENCE_NUMBER,
)


def blank_row(width: int) -> List[Any]:
    return [""] * width


def padded(values: Sequence[Any], width: int) -> List[Any]:
    """Copy of ``values`` extended with blanks to at least ``width`` cells."""

    row = list(values)
    if len(row) < width:
        row.extend([""] * (width - len(row)))
    return row


def cell(values: Sequence[Any], column: int) -> Any:
    if column < len(values):
        return values[column]
    return None


def text_cell(values: Sequence[Any], column: int) -> str:
    value = cell(values, column)
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def parse_excel_date(value: Any) -> Optional[datetime]:
    """Parse an Excel serial number or an ISO-8601 string into an aware datetime."""

    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value == 0:
            return None
        try:
            return EXCEL_EPOCH + timedelta(days=float(value))
        except (OverflowError, ValueError):
            LOGGER.debug("Date serial out of range %r", value)
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in ("%m/%d/%Y", "%m/%d/%y"):
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
            else:
                LOGGER.debug("Unparseable date cell %r", value)
                return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def parse_currency(value: Any) -> Optional[float]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = value.replace("$", "").replace(",", "").strip()
        if not cleaned:
            return None
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with a ``Z`` suffix, the form written into date cells."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def cost_cell(value: Optional[float]) -> Any:
    """Blank for missing costs; whole-dollar floats go out as ints."""

    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value
