"""Shop directory stored in its own workbook."""

from __future__ import annotations

import logging
from typing import Any, List, Sequence

from .graph_client import GraphClient
from .models import Shop, ShopInput
from .schema import (
    SHOP_ROW_WIDTH,
    ShopColumn,
    blank_row,
    cell,
    cost_cell,
    padded,
    parse_currency,
    parse_excel_date,
    text_cell,
)
from .session_manager import SessionManager
from .workbook import WorkbookLocation

LOGGER = logging.getLogger(__name__)


def shop_id(customer_number: str, index: int) -> str:
    customer_number = customer_number.strip()
    if customer_number:
        return f"shop-{customer_number}"
    return f"shop-row-{index}"


def row_to_shop(values: Sequence[Any], index: int) -> Shop:
    customer_number = text_cell(values, ShopColumn.CUSTOMER_NUMBER)
    return Shop(
        id=shop_id(customer_number, index),
        row_index=index,
        customer_number=customer_number,
        business_name=text_cell(values, ShopColumn.BUSINESS_NAME),
        address_line1=text_cell(values, ShopColumn.ADDRESS_LINE_1),
        address_line2=text_cell(values, ShopColumn.ADDRESS_LINE_2),
        address_line3=text_cell(values, ShopColumn.ADDRESS_LINE_3),
        address_line4=text_cell(values, ShopColumn.ADDRESS_LINE_4),
        city=text_cell(values, ShopColumn.CITY),
        state=text_cell(values, ShopColumn.STATE),
        zip=text_cell(values, ShopColumn.ZIP),
        country=text_cell(values, ShopColumn.COUNTRY),
        phone=text_cell(values, ShopColumn.PHONE),
        toll_free=text_cell(values, ShopColumn.TOLL_FREE),
        fax=text_cell(values, ShopColumn.FAX),
        email=text_cell(values, ShopColumn.EMAIL),
        website=text_cell(values, ShopColumn.WEBSITE),
        contact=text_cell(values, ShopColumn.CONTACT),
        payment_terms=text_cell(values, ShopColumn.PAYMENT_TERMS),
        ils_code=text_cell(values, ShopColumn.ILS_CODE),
        last_sale_date=parse_excel_date(cell(values, ShopColumn.LAST_SALE_DATE)),
        ytd_sales=parse_currency(cell(values, ShopColumn.YTD_SALES)),
    )


def _apply(values: List[Any], data: ShopInput) -> List[Any]:
    values[ShopColumn.CUSTOMER_NUMBER] = data.customer_number
    values[ShopColumn.BUSINESS_NAME] = data.business_name
    values[ShopColumn.ADDRESS_LINE_1] = data.address_line1
    values[ShopColumn.ADDRESS_LINE_2] = data.address_line2
    values[ShopColumn.ADDRESS_LINE_3] = data.address_line3
    values[ShopColumn.ADDRESS_LINE_4] = data.address_line4
    values[ShopColumn.CITY] = data.city
    values[ShopColumn.STATE] = data.state
    values[ShopColumn.ZIP] = data.zip
    values[ShopColumn.COUNTRY] = data.country
    values[ShopColumn.PHONE] = data.phone
    values[ShopColumn.TOLL_FREE] = data.toll_free
    values[ShopColumn.FAX] = data.fax
    values[ShopColumn.EMAIL] = data.email
    values[ShopColumn.WEBSITE] = data.website
    values[ShopColumn.CONTACT] = data.contact
    values[ShopColumn.PAYMENT_TERMS] = data.payment_terms
    values[ShopColumn.ILS_CODE] = data.ils_code
    values[ShopColumn.YTD_SALES] = cost_cell(data.ytd_sales)
    return values


class ShopRepository:
    def __init__(
        self,
        client: GraphClient,
        session_manager: SessionManager,
        location: WorkbookLocation,
        table_name: str,
    ):
        self.client = client
        self.session_manager = session_manager
        self.location = location
        self.table_name = table_name

    async def get_all(self) -> List[Shop]:
        response = await self.client.request(self.location.rows_url(self.table_name))
        rows = (response or {}).get("value", [])
        return [row_to_shop((row.get("values") or [[]])[0], index) for index, row in enumerate(rows)]

    async def shops_for_name(self, name: str) -> List[Shop]:
        """Shops whose business name equals ``name``, ignoring case and outer spaces.

        Repair orders only record the shop's name, so a renamed shop no longer
        matches its older orders.
        """

        wanted = name.strip().casefold()
        return [shop for shop in await self.get_all() if shop.business_name.strip().casefold() == wanted]

    async def add(self, data: ShopInput) -> Shop:
        values = _apply(blank_row(SHOP_ROW_WIDTH), data)
        values[ShopColumn.LAST_SALE_DATE] = ""

        response = await self.session_manager.with_session(
            lambda session_id: self.client.request(
                f"{self.location.rows_url(self.table_name)}/add",
                "POST",
                {"values": [values]},
                session_id,
            )
        )
        LOGGER.info("Added shop %s", data.business_name)
        index = (response or {}).get("index", -1)
        return row_to_shop(values, index if isinstance(index, int) else -1)

    async def update(self, row_index: int, data: ShopInput) -> Shop:
        url = self.location.row_url(self.table_name, row_index)

        async def edit(session_id: str) -> List[Any]:
            response = await self.client.request(url, "GET", None, session_id)
            current = padded(((response or {}).get("values") or [[]])[0], SHOP_ROW_WIDTH)
            values = _apply(current, data)
            await self.client.request(url, "PATCH", {"values": [values]}, session_id)
            return values

        values = await self.session_manager.with_session(edit)
        LOGGER.info("Updated shop at row %s", row_index)
        return row_to_shop(values, row_index)
