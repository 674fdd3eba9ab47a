"""FastAPI entrypoint for the repair order tracker."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from .config import get_settings
from .context import RepairTrackerContext
from .errors import GraphAPIError
from .models import (
    ArchiveRequest,
    RepairOrderInput,
    ReminderRequest,
    ReminderReschedule,
    ShopInput,
    StatusUpdate,
)

LOGGER = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    app.state.context = await RepairTrackerContext.create(settings)
    LOGGER.info("Repair tracker ready for table %s", settings.excel_table_name)
    try:
        yield
    finally:
        await app.state.context.aclose()


app = FastAPI(title="Repair order tracker", lifespan=lifespan)


def get_context(request: Request) -> RepairTrackerContext:
    return request.app.state.context


@app.exception_handler(GraphAPIError)
async def graph_error_handler(request: Request, exc: GraphAPIError) -> JSONResponse:
    status = exc.status_code if 400 <= exc.status_code < 500 else 502
    return JSONResponse(
        status_code=status,
        content={
            "detail": str(exc),
            "upstream_status": exc.status_code,
            "retryable": exc.retryable,
            "attempts": exc.attempts,
            "body": exc.body,
        },
    )


@app.get("/healthz")
async def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/healthz/workbook")
async def workbook_health(context: RepairTrackerContext = Depends(get_context)) -> Dict[str, Any]:
    healthy = await context.repair_sessions.check_health()
    if not healthy:
        raise HTTPException(status_code=503, detail="Workbook is unreachable")
    return {"status": "ok", "session": context.repair_sessions.session_info()}


@app.get("/repair-orders")
async def list_repair_orders(
    context: RepairTrackerContext = Depends(get_context),
) -> List[Dict[str, Any]]:
    return [ro.to_dict() for ro in await context.repair_orders.get_all()]


@app.get("/repair-orders/stats")
async def repair_order_stats(context: RepairTrackerContext = Depends(get_context)) -> Dict[str, Any]:
    return asdict(await context.repair_orders.get_dashboard_stats())


@app.get("/archives/{sheet_name}/{table_name}")
async def list_archive(
    sheet_name: str, table_name: str, context: RepairTrackerContext = Depends(get_context)
) -> List[Dict[str, Any]]:
    orders = await context.repair_orders.get_from_sheet(sheet_name, table_name)
    return [ro.to_dict() for ro in orders]


@app.post("/repair-orders", status_code=201)
async def add_repair_order(
    data: RepairOrderInput, context: RepairTrackerContext = Depends(get_context)
) -> Dict[str, Any]:
    return (await context.repair_orders.add(data)).to_dict()


@app.patch("/repair-orders/{row_index}")
async def update_repair_order(
    row_index: int, data: RepairOrderInput, context: RepairTrackerContext = Depends(get_context)
) -> Dict[str, Any]:
    return (await context.repair_orders.update(row_index, data)).to_dict()


@app.post("/repair-orders/{row_index}/status")
async def update_status(
    row_index: int, update: StatusUpdate, context: RepairTrackerContext = Depends(get_context)
) -> Dict[str, Any]:
    ro = await context.repair_orders.update_status(
        row_index,
        update.status,
        notes=update.notes,
        cost=update.cost,
        delivery_date=update.delivery_date,
        tracking_number=update.tracking_number,
    )
    return ro.to_dict()


@app.delete("/repair-orders/{row_index}", status_code=204)
async def delete_repair_order(
    row_index: int, context: RepairTrackerContext = Depends(get_context)
) -> None:
    await context.repair_orders.delete(row_index)


@app.post("/repair-orders/{row_index}/archive")
async def archive_repair_order(
    row_index: int, archive: ArchiveRequest, context: RepairTrackerContext = Depends(get_context)
) -> Dict[str, str]:
    if archive.sheet_name and archive.table_name:
        await context.repair_orders.move_to_archive(
            row_index, archive.sheet_name, archive.table_name
        )
        return {"archived_to": archive.sheet_name}
    if archive.status:
        sheet = await context.repair_orders.archive_for_status(row_index, archive.status)
        if sheet is None:
            raise HTTPException(
                status_code=400, detail=f"Status {archive.status!r} has no archive sheet"
            )
        return {"archived_to": sheet}
    raise HTTPException(
        status_code=400, detail="Provide sheet_name and table_name, or a status"
    )


@app.get("/reminders")
async def search_reminders(
    ro_number: Optional[str] = None, context: RepairTrackerContext = Depends(get_context)
) -> List[Dict[str, Any]]:
    found = await context.reminders.search_ro_reminders(ro_number)
    return [reminder.to_dict() for reminder in found]


@app.post("/repair-orders/{row_index}/reminders", status_code=201)
async def create_reminders(
    row_index: int,
    reminder: ReminderRequest,
    context: RepairTrackerContext = Depends(get_context),
) -> Dict[str, Any]:
    ro = await context.repair_orders.get(row_index)
    due_date = reminder.due_date or ro.next_date_to_update
    if due_date is None:
        raise HTTPException(
            status_code=400, detail=f"RO {ro.ro_number} has no next update date; give a due_date"
        )
    created = await context.reminders.create_reminders(
        ro.ro_number,
        ro.shop_name,
        due_date,
        todo=reminder.todo,
        calendar=reminder.calendar,
    )
    return {"ro_number": ro.ro_number, "due_date": due_date, **created}


@app.patch("/repair-orders/{row_index}/reminders")
async def reschedule_reminders(
    row_index: int,
    reschedule: ReminderReschedule,
    context: RepairTrackerContext = Depends(get_context),
) -> Dict[str, Any]:
    ro = await context.repair_orders.get(row_index)
    moved = await context.reminders.update_ro_reminder_date(ro.ro_number, reschedule.due_date)
    return {"ro_number": ro.ro_number, **moved}


@app.delete("/repair-orders/{row_index}/reminders")
async def delete_reminders(
    row_index: int, context: RepairTrackerContext = Depends(get_context)
) -> Dict[str, Any]:
    ro = await context.repair_orders.get(row_index)
    deleted = await context.reminders.delete_ro_reminders(ro.ro_number)
    return {"ro_number": ro.ro_number, **deleted}


@app.get("/shops")
async def list_shops(context: RepairTrackerContext = Depends(get_context)) -> List[Dict[str, Any]]:
    return [shop.to_dict() for shop in await context.shops.get_all()]


@app.post("/shops", status_code=201)
async def add_shop(
    data: ShopInput, context: RepairTrackerContext = Depends(get_context)
) -> Dict[str, Any]:
    return (await context.shops.add(data)).to_dict()


@app.patch("/shops/{row_index}")
async def update_shop(
    row_index: int, data: ShopInput, context: RepairTrackerContext = Depends(get_context)
) -> Dict[str, Any]:
    return (await context.shops.update(row_index, data)).to_dict()
