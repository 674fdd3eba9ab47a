"""Repair order CRUD against the workbook's repair table."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import history
from .business_rules import (
    archive_sheet_for_status,
    calculate_next_update_date,
    compute_overdue,
    dashboard_stats,
    is_terminal_status,
)
from .errors import GraphAPIError
from .graph_client import GraphClient
from .models import DashboardStats, RepairOrder, RepairOrderInput, StatusHistoryEntry
from .reminders import PaymentReminderDispatcher
from .schema import (
    RO_ROW_WIDTH,
    ROColumn,
    blank_row,
    cell,
    cost_cell,
    format_timestamp,
    padded,
    parse_currency,
    parse_excel_date,
    text_cell,
)
from .session_manager import SessionManager
from .workbook import WorkbookLocation

LOGGER = logging.getLogger(__name__)

INITIAL_STATUS = "TO SEND"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_values(response: Any) -> List[Any]:
    values = (response or {}).get("values") or [[]]
    return list(values[0])


def row_to_repair_order(values: Sequence[Any], index: int, now: datetime) -> RepairOrder:
    """Build a RepairOrder from one positional row; short rows read as blanks."""

    next_update = parse_excel_date(cell(values, ROColumn.NEXT_DATE_TO_UPDATE))
    days_overdue, is_overdue = compute_overdue(next_update, now)
    decoded = history.decode(cell(values, ROColumn.NOTES))

    return RepairOrder(
        id=f"row-{index}",
        row_index=index,
        ro_number=text_cell(values, ROColumn.RO_NUMBER),
        date_made=parse_excel_date(cell(values, ROColumn.DATE_MADE)),
        shop_name=text_cell(values, ROColumn.SHOP_NAME),
        part_number=text_cell(values, ROColumn.PART_NUMBER),
        serial_number=text_cell(values, ROColumn.SERIAL_NUMBER),
        part_description=text_cell(values, ROColumn.PART_DESCRIPTION),
        required_work=text_cell(values, ROColumn.REQUIRED_WORK),
        date_dropped_off=parse_excel_date(cell(values, ROColumn.DATE_DROPPED_OFF)),
        estimated_cost=parse_currency(cell(values, ROColumn.ESTIMATED_COST)),
        final_cost=parse_currency(cell(values, ROColumn.FINAL_COST)),
        terms=text_cell(values, ROColumn.TERMS),
        shop_reference_number=text_cell(values, ROColumn.SHOP_REFERENCE_NUMBER),
        estimated_delivery_date=parse_excel_date(cell(values, ROColumn.ESTIMATED_DELIVERY_DATE)),
        current_status=text_cell(values, ROColumn.CURRENT_STATUS),
        current_status_date=parse_excel_date(cell(values, ROColumn.CURRENT_STATUS_DATE)),
        genthrust_status=text_cell(values, ROColumn.GENTHRUST_STATUS),
        shop_status=text_cell(values, ROColumn.SHOP_STATUS),
        tracking_number=text_cell(values, ROColumn.TRACKING_NUMBER),
        notes=decoded.notes,
        last_date_updated=parse_excel_date(cell(values, ROColumn.LAST_DATE_UPDATED)),
        next_date_to_update=next_update,
        checked=text_cell(values, ROColumn.CHECKED),
        status_history=decoded.history,
        days_overdue=days_overdue,
        is_overdue=is_overdue,
    )


class _RowIdentity:
    """The RO number a row index held on the first attempt of an operation.

    Retries replay the whole operation by index. A write that landed but was
    reported as failed can shift the rows, so later attempts check that the
    index still holds the same repair order.
    """

    def __init__(self, row_index: int):
        self.row_index = row_index
        self.ro_number: Optional[str] = None

    def matches(self, values: Sequence[Any]) -> bool:
        ro_number = text_cell(values, ROColumn.RO_NUMBER)
        if self.ro_number is None:
            self.ro_number = ro_number
            return True
        return ro_number == self.ro_number

    def conflict(self, values: Sequence[Any]) -> GraphAPIError:
        return GraphAPIError(
            409,
            f"Row {self.row_index} now holds RO {text_cell(values, ROColumn.RO_NUMBER)!r}, "
            f"expected RO {self.ro_number!r}; not repeating the write",
            retryable=False,
        )


class RepairOrderRepository:
    """Reads and writes repair order rows, one workbook session per write."""

    def __init__(
        self,
        client: GraphClient,
        session_manager: SessionManager,
        location: WorkbookLocation,
        table_name: str,
        dispatcher: Optional[PaymentReminderDispatcher] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.session_manager = session_manager
        self.location = location
        self.table_name = table_name
        self.dispatcher = dispatcher
        self._now = clock

    def _row_url(self, row_index: int) -> str:
        return self.location.row_url(self.table_name, row_index)

    async def _read_row(self, row_index: int, session_id: str) -> List[Any]:
        response = await self.client.request(self._row_url(row_index), "GET", None, session_id)
        return padded(_row_values(response), RO_ROW_WIDTH)

    async def _write_row(self, row_index: int, values: List[Any], session_id: str) -> None:
        await self.client.request(
            self._row_url(row_index), "PATCH", {"values": [values]}, session_id
        )

    async def _list_rows(self, sheet: Optional[str], table: str) -> List[RepairOrder]:
        response = await self.client.request(self.location.rows_url(table, sheet))
        if not response:
            LOGGER.warning("Empty response listing rows of %s", table)
            return []
        now = self._now()
        rows = response.get("value", [])
        LOGGER.debug("Fetched %s rows from %s", len(rows), table)
        return [
            row_to_repair_order(_row_values(row), index, now) for index, row in enumerate(rows)
        ]

    async def get_all(self) -> List[RepairOrder]:
        return await self._list_rows(None, self.table_name)

    async def get_from_sheet(self, sheet_name: str, table_name: str) -> List[RepairOrder]:
        return await self._list_rows(sheet_name, table_name)

    async def get(self, row_index: int) -> RepairOrder:
        response = await self.client.request(self._row_url(row_index))
        return row_to_repair_order(_row_values(response), row_index, self._now())

    async def get_dashboard_stats(self) -> DashboardStats:
        return dashboard_stats(await self.get_all(), self._now())

    async def add(self, data: RepairOrderInput) -> RepairOrder:
        now = self._now()
        stamp = format_timestamp(now)
        next_update = calculate_next_update_date(INITIAL_STATUS, now, data.terms)

        initial_history = [
            StatusHistoryEntry(
                status=INITIAL_STATUS,
                date=now,
                user=self.client.current_user(),
                notes="Repair order created",
            )
        ]

        row = blank_row(RO_ROW_WIDTH)
        row[ROColumn.RO_NUMBER] = data.ro_number
        row[ROColumn.DATE_MADE] = stamp
        row[ROColumn.SHOP_NAME] = data.shop_name
        row[ROColumn.PART_NUMBER] = data.part_number
        row[ROColumn.SERIAL_NUMBER] = data.serial_number
        row[ROColumn.PART_DESCRIPTION] = data.part_description
        row[ROColumn.REQUIRED_WORK] = data.required_work
        row[ROColumn.ESTIMATED_COST] = cost_cell(data.estimated_cost)
        row[ROColumn.TERMS] = data.terms
        row[ROColumn.SHOP_REFERENCE_NUMBER] = data.shop_reference_number
        row[ROColumn.CURRENT_STATUS] = INITIAL_STATUS
        row[ROColumn.CURRENT_STATUS_DATE] = stamp
        row[ROColumn.NOTES] = history.encode("", initial_history)
        row[ROColumn.LAST_DATE_UPDATED] = stamp
        row[ROColumn.NEXT_DATE_TO_UPDATE] = format_timestamp(next_update) if next_update else ""

        async def append(session_id: str) -> Any:
            return await self.client.request(
                f"{self.location.rows_url(self.table_name)}/add",
                "POST",
                {"values": [row]},
                session_id,
            )

        response = await self.session_manager.with_session(append)
        LOGGER.info("Added repair order %s", data.ro_number)
        index = (response or {}).get("index", -1)
        return row_to_repair_order(row, index if isinstance(index, int) else -1, now)

    async def update(self, row_index: int, data: RepairOrderInput) -> RepairOrder:
        """Overwrite the user-editable fields, leaving every other column as stored."""

        now = self._now()

        async def edit(session_id: str) -> List[Any]:
            values = await self._read_row(row_index, session_id)
            values[ROColumn.RO_NUMBER] = data.ro_number
            values[ROColumn.SHOP_NAME] = data.shop_name
            values[ROColumn.PART_NUMBER] = data.part_number
            values[ROColumn.SERIAL_NUMBER] = data.serial_number
            values[ROColumn.PART_DESCRIPTION] = data.part_description
            values[ROColumn.REQUIRED_WORK] = data.required_work
            values[ROColumn.ESTIMATED_COST] = cost_cell(data.estimated_cost)
            values[ROColumn.TERMS] = data.terms
            values[ROColumn.SHOP_REFERENCE_NUMBER] = data.shop_reference_number
            values[ROColumn.LAST_DATE_UPDATED] = format_timestamp(now)
            await self._write_row(row_index, values, session_id)
            return values

        values = await self.session_manager.with_session(edit)
        LOGGER.info("Updated repair order at row %s", row_index)
        return row_to_repair_order(values, row_index, now)

    async def update_status(
        self,
        row_index: int,
        status: str,
        notes: Optional[str] = None,
        cost: Optional[float] = None,
        delivery_date: Optional[datetime] = None,
        tracking_number: Optional[str] = None,
    ) -> RepairOrder:
        now = self._now()
        stamp = format_timestamp(now)
        user = self.client.current_user()
        identity = _RowIdentity(row_index)
        written_notes: List[str] = []

        async def transition(session_id: str) -> List[Any]:
            values = await self._read_row(row_index, session_id)
            if not identity.matches(values):
                raise identity.conflict(values)
            if written_notes and values[ROColumn.NOTES] == written_notes[-1]:
                LOGGER.info("Status update of row %s already landed; not repeating it", row_index)
                return values

            terms = text_cell(values, ROColumn.TERMS)
            next_update = calculate_next_update_date(status, now, terms)

            decoded = history.decode(values[ROColumn.NOTES])
            entry = StatusHistoryEntry(
                status=status,
                date=now,
                user=user,
                cost=cost,
                notes=notes or None,
                delivery_date=delivery_date,
            )

            values[ROColumn.CURRENT_STATUS] = status
            values[ROColumn.CURRENT_STATUS_DATE] = stamp
            values[ROColumn.NOTES] = history.encode(decoded.notes, decoded.history + [entry])
            values[ROColumn.LAST_DATE_UPDATED] = stamp
            values[ROColumn.NEXT_DATE_TO_UPDATE] = (
                format_timestamp(next_update) if next_update else ""
            )
            if cost is not None:
                if is_terminal_status(status):
                    values[ROColumn.FINAL_COST] = cost_cell(cost)
                else:
                    values[ROColumn.ESTIMATED_COST] = cost_cell(cost)
            if tracking_number is not None:
                values[ROColumn.TRACKING_NUMBER] = tracking_number

            written_notes.append(values[ROColumn.NOTES])
            await self._write_row(row_index, values, session_id)
            return values

        values = await self.session_manager.with_session(transition)
        LOGGER.info("Row %s moved to status %s", row_index, status)

        if self.dispatcher is not None:
            self.dispatcher.dispatch(
                ro_number=text_cell(values, ROColumn.RO_NUMBER),
                shop_name=text_cell(values, ROColumn.SHOP_NAME),
                terms=text_cell(values, ROColumn.TERMS),
                status=status,
                cost=cost,
                invoice_date=now,
            )
        return row_to_repair_order(values, row_index, now)

    async def _read_for_removal(
        self, row_index: int, identity: _RowIdentity, removed: bool, session_id: str
    ) -> Optional[List[Any]]:
        """Re-read a row that an earlier attempt may already have deleted.

        Returns None when that delete evidently landed: the row is gone, or
        the index now holds a different repair order.
        """

        try:
            response = await self.client.request(
                self._row_url(row_index), "GET", None, session_id
            )
        except GraphAPIError as exc:
            if removed and exc.status_code == 404:
                return None
            raise
        values = _row_values(response)
        if identity.matches(values):
            return values
        if removed:
            return None
        raise identity.conflict(values)

    async def delete(self, row_index: int) -> None:
        """Remove a row. Indexes of every later row shift down by one."""

        identity = _RowIdentity(row_index)
        attempted: List[bool] = []

        async def remove(session_id: str) -> None:
            values = await self._read_for_removal(row_index, identity, bool(attempted), session_id)
            if values is None:
                LOGGER.info("Row %s was already deleted by an earlier attempt", row_index)
                return
            attempted.append(True)
            await self.client.request(self._row_url(row_index), "DELETE", None, session_id)

        await self.session_manager.with_session(remove)
        LOGGER.info("Deleted repair order %s at row %s", identity.ro_number, row_index)

    async def move_to_archive(self, row_index: int, target_sheet: str, target_table: str) -> None:
        """Copy the row to an archive table, then delete it from the active table.

        The delete runs last, so a failure part-way leaves a duplicate rather
        than a lost row. A retry never copies a row twice once the copy has
        been acknowledged, and never touches a row that moved into the index.
        """

        LOGGER.info(
            "Archiving row %s of %s to %s/%s",
            row_index,
            self.table_name,
            target_sheet,
            target_table,
        )
        identity = _RowIdentity(row_index)
        progress = {"copied": False, "delete_sent": False}

        async def archive(session_id: str) -> None:
            values = await self._read_for_removal(
                row_index, identity, progress["delete_sent"], session_id
            )
            if values is None:
                LOGGER.info("Row %s was already removed after its copy", row_index)
                return
            if not progress["copied"]:
                await self.client.request(
                    f"{self.location.rows_url(target_table, target_sheet)}/add",
                    "POST",
                    {"values": [values]},
                    session_id,
                )
                progress["copied"] = True
                LOGGER.debug("Row %s copied to %s/%s", row_index, target_sheet, target_table)
            progress["delete_sent"] = True
            await self.client.request(self._row_url(row_index), "DELETE", None, session_id)

        try:
            await self.session_manager.with_session(archive)
        except Exception:
            LOGGER.error(
                "Archive of row %s to %s/%s failed", row_index, target_sheet, target_table
            )
            raise
        LOGGER.info("Archived row %s to %s/%s", row_index, target_sheet, target_table)

    async def archive_for_status(self, row_index: int, status: str) -> Optional[str]:
        """Archive to the sheet that ``status`` maps to; returns its name, or None."""

        sheet = archive_sheet_for_status(status)
        if sheet is None:
            return None
        await self.move_to_archive(row_index, sheet.sheet_name, sheet.table_name)
        return sheet.sheet_name

    def pending_side_effects(self):
        return self.dispatcher.pending if self.dispatcher else set()

    async def drain_side_effects(self) -> None:
        if self.dispatcher is not None:
            await self.dispatcher.drain()
