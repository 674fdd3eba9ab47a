"""Calendar and To Do reminders created through Microsoft Graph.

Payment-due reminders are a side effect of status updates. They run as
detached tasks after the row write has committed; their failures are logged
and dropped. Follow-up reminders are created, found, moved and deleted on
request, matched to repair orders by the RO number in their title.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from .business_rules import add_business_days, extract_net_days, is_terminal_status
from .graph_client import GraphClient
from .models import ROReminder
from .schema import format_timestamp

LOGGER = logging.getLogger(__name__)

PAYMENT_REMINDER_CATEGORIES = ["Payment Due", "Repair Orders"]

RO_REFERENCE = re.compile(r"\bRO\s*#?\s*([\w-]*\d+)", re.IGNORECASE)
REMINDER_SEARCH_WINDOW = timedelta(days=183)


def format_graph_datetime(value: datetime) -> str:
    """Wall-clock time without offset; Graph pairs it with an explicit timeZone."""

    return value.replace(tzinfo=None, microsecond=0).isoformat()


def parse_graph_datetime(value: Any) -> Optional[datetime]:
    """Read a Graph ``dateTimeTimeZone`` or ISO string as UTC; the zone name is ignored."""

    if isinstance(value, dict):
        value = value.get("dateTime")
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value)[:19])
    except ValueError:
        LOGGER.debug("Unparseable Graph datetime %r", value)
        return None
    return parsed.replace(tzinfo=timezone.utc)


def _matching_reference(text: Any, ro_number: Optional[str]) -> Optional[str]:
    match = RO_REFERENCE.search(text or "")
    if match is None:
        return None
    reference = match.group(1)
    if ro_number and ro_number not in reference and reference not in ro_number:
        return None
    return reference


class ReminderService:
    """Manages reminder calendar events and To Do tasks for one mailbox."""

    def __init__(
        self,
        client: GraphClient,
        mailbox: Optional[str] = None,
        time_zone: str = "UTC",
    ):
        self.client = client
        self.owner = f"users/{mailbox}" if mailbox else "me"
        self.time_zone = time_zone
        self._todo_list_id: Optional[str] = None

    def _slot(self, day: datetime, hour: int, minutes: int) -> Dict[str, Dict[str, str]]:
        start = day.replace(hour=hour, minute=0, second=0, microsecond=0)
        end = start + timedelta(minutes=minutes)
        return {
            "start": {"dateTime": format_graph_datetime(start), "timeZone": self.time_zone},
            "end": {"dateTime": format_graph_datetime(end), "timeZone": self.time_zone},
        }

    async def create_payment_due_event(
        self,
        ro_number: str,
        shop_name: str,
        invoice_date: datetime,
        amount: float,
        net_days: int,
    ) -> Dict[str, Any]:
        due_date = add_business_days(invoice_date, net_days)
        body = {
            "subject": f"PAYMENT DUE: RO {ro_number} - {shop_name}",
            "body": {
                "contentType": "text",
                "content": (
                    f"Payment due for repair order {ro_number}\n\n"
                    f"Shop: {shop_name}\n"
                    f"Amount: ${amount:,.2f}\n"
                    f"Terms: NET {net_days} (business days)\n"
                    f"Invoice Date: {invoice_date:%m/%d/%Y}\n"
                    f"Due Date: {due_date:%m/%d/%Y}"
                ),
            },
            **self._slot(due_date, 9, 30),
            "showAs": "busy",
            "isReminderOn": True,
            "reminderMinutesBeforeStart": 1440,
            "categories": PAYMENT_REMINDER_CATEGORIES,
            "importance": "high",
        }
        event = await self.client.request(f"{self.owner}/calendar/events", "POST", body)
        LOGGER.info(
            "Created payment due event for RO %s (%s, NET %s, due %s)",
            ro_number,
            shop_name,
            net_days,
            due_date.date().isoformat(),
        )
        return event or {}

    async def create_calendar_event(
        self, ro_number: str, shop_name: str, due_date: datetime, title: Optional[str] = None
    ) -> Dict[str, Any]:
        body = {
            "subject": title or f"Follow up: RO# {ro_number} - {shop_name}",
            "body": {
                "contentType": "text",
                "content": f"Follow up with {shop_name} on repair order {ro_number}.",
            },
            **self._slot(due_date, 9, 30),
            "isReminderOn": True,
            "reminderMinutesBeforeStart": 15,
            "categories": ["Repair Orders"],
        }
        event = await self.client.request(f"{self.owner}/calendar/events", "POST", body)
        LOGGER.info("Created calendar reminder for RO %s", ro_number)
        return event or {}

    async def default_todo_list_id(self) -> str:
        if self._todo_list_id:
            return self._todo_list_id
        response = await self.client.request(f"{self.owner}/todo/lists")
        lists = (response or {}).get("value", [])
        if not lists:
            raise RuntimeError("No To Do lists found for the reminder mailbox")
        default = next(
            (item for item in lists if item.get("wellknownListName") == "defaultList"),
            lists[0],
        )
        self._todo_list_id = default["id"]
        return self._todo_list_id

    async def create_todo_task(
        self, ro_number: str, shop_name: str, due_date: datetime, title: Optional[str] = None
    ) -> Dict[str, Any]:
        list_id = await self.default_todo_list_id()
        body = {
            "title": title or f"Follow up: RO# {ro_number} - {shop_name}",
            "body": {
                "content": f"Follow up with {shop_name} on repair order {ro_number}.",
                "contentType": "text",
            },
            "dueDateTime": {
                "dateTime": format_graph_datetime(due_date.replace(hour=9, minute=0)),
                "timeZone": self.time_zone,
            },
            "isReminderOn": True,
            "reminderDateTime": {
                "dateTime": format_graph_datetime(due_date.replace(hour=9, minute=0)),
                "timeZone": self.time_zone,
            },
            "importance": "normal",
        }
        task = await self.client.request(
            f"{self.owner}/todo/lists/{list_id}/tasks", "POST", body
        )
        LOGGER.info("Created To Do reminder for RO %s", ro_number)
        return task or {}

    async def create_reminders(
        self,
        ro_number: str,
        shop_name: str,
        due_date: datetime,
        todo: bool = True,
        calendar: bool = True,
    ) -> Dict[str, bool]:
        """Create whichever reminders were asked for; one failing does not stop the other."""

        results = {"todo": False, "calendar": False}
        if todo:
            try:
                await self.create_todo_task(ro_number, shop_name, due_date)
                results["todo"] = True
            except Exception:
                LOGGER.exception("Failed to create To Do reminder for RO %s", ro_number)
        if calendar:
            try:
                await self.create_calendar_event(ro_number, shop_name, due_date)
                results["calendar"] = True
            except Exception:
                LOGGER.exception("Failed to create calendar reminder for RO %s", ro_number)
        return results

    async def _collect(self, url: str) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []
        next_url: Optional[str] = url
        while next_url:
            response = await self.client.request(next_url) or {}
            items.extend(response.get("value", []))
            next_url = response.get("@odata.nextLink")
        return items

    async def get_todo_tasks(self) -> List[Dict[str, Any]]:
        list_id = await self.default_todo_list_id()
        return await self._collect(f"{self.owner}/todo/lists/{list_id}/tasks")

    async def get_calendar_events(self, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        return await self._collect(
            f"{self.owner}/calendarView"
            f"?startDateTime={format_timestamp(start)}&endDateTime={format_timestamp(end)}"
        )

    async def search_ro_reminders(
        self, ro_number: Optional[str] = None, now: Optional[datetime] = None
    ) -> List[ROReminder]:
        """Find To Do tasks and upcoming calendar events that name an RO number.

        Titles and subjects are matched against ``RO_REFERENCE``. With
        ``ro_number`` given, an item is kept when either number contains the
        other. A task and an event for the same RO merge into one reminder of
        type ``both``; its due date comes from the task.
        """

        now = now or datetime.now(timezone.utc)
        tasks = await self.get_todo_tasks()
        events = await self.get_calendar_events(now, now + REMINDER_SEARCH_WINDOW)
        LOGGER.debug("Searching %s tasks and %s events for RO reminders", len(tasks), len(events))

        found: Dict[str, ROReminder] = {}
        for task in tasks:
            reference = _matching_reference(task.get("title"), ro_number)
            if reference is None:
                continue
            reminder = found.setdefault(reference, ROReminder(ro_number=reference, type="todo"))
            reminder.todo_task = task
            reminder.due_date = parse_graph_datetime(task.get("dueDateTime")) or parse_graph_datetime(
                task.get("createdDateTime")
            )
        for event in events:
            reference = _matching_reference(event.get("subject"), ro_number)
            if reference is None:
                continue
            reminder = found.get(reference)
            if reminder is None:
                reminder = found[reference] = ROReminder(
                    ro_number=reference,
                    type="calendar",
                    due_date=parse_graph_datetime(event.get("start")),
                )
            else:
                reminder.type = "both"
            reminder.calendar_event = event

        LOGGER.info(
            "Found %s RO reminders (filter=%s)", len(found), ro_number or "all"
        )
        return list(found.values())

    async def _find_reminder(self, ro_number: str) -> Optional[ROReminder]:
        reminders = await self.search_ro_reminders(ro_number)
        if not reminders:
            LOGGER.warning("No reminders found for RO %s", ro_number)
            return None
        exact = [reminder for reminder in reminders if reminder.ro_number == ro_number]
        return (exact or reminders)[0]

    async def delete_todo_task(self, task_id: str) -> bool:
        try:
            list_id = await self.default_todo_list_id()
            await self.client.request(
                f"{self.owner}/todo/lists/{list_id}/tasks/{task_id}", "DELETE"
            )
        except Exception:
            LOGGER.exception("Failed to delete To Do task %s", task_id)
            return False
        return True

    async def delete_calendar_event(self, event_id: str) -> bool:
        try:
            await self.client.request(f"{self.owner}/calendar/events/{event_id}", "DELETE")
        except Exception:
            LOGGER.exception("Failed to delete calendar event %s", event_id)
            return False
        return True

    async def delete_ro_reminders(self, ro_number: str) -> Dict[str, bool]:
        results = {"todo": False, "calendar": False}
        reminder = await self._find_reminder(ro_number)
        if reminder is None:
            return results
        if reminder.todo_task:
            results["todo"] = await self.delete_todo_task(reminder.todo_task["id"])
        if reminder.calendar_event:
            results["calendar"] = await self.delete_calendar_event(reminder.calendar_event["id"])
        LOGGER.info("Deleted reminders for RO %s: %s", ro_number, results)
        return results

    async def update_todo_task_date(self, task_id: str, due_date: datetime) -> bool:
        try:
            list_id = await self.default_todo_list_id()
            await self.client.request(
                f"{self.owner}/todo/lists/{list_id}/tasks/{task_id}",
                "PATCH",
                {
                    "dueDateTime": {
                        "dateTime": format_graph_datetime(due_date.replace(hour=9, minute=0)),
                        "timeZone": self.time_zone,
                    }
                },
            )
        except Exception:
            LOGGER.exception("Failed to move To Do task %s", task_id)
            return False
        return True

    async def update_calendar_event_time(self, event_id: str, due_date: datetime) -> bool:
        try:
            await self.client.request(
                f"{self.owner}/calendar/events/{event_id}", "PATCH", self._slot(due_date, 9, 30)
            )
        except Exception:
            LOGGER.exception("Failed to move calendar event %s", event_id)
            return False
        return True

    async def update_ro_reminder_date(self, ro_number: str, due_date: datetime) -> Dict[str, bool]:
        results = {"todo": False, "calendar": False}
        reminder = await self._find_reminder(ro_number)
        if reminder is None:
            return results
        if reminder.todo_task:
            results["todo"] = await self.update_todo_task_date(reminder.todo_task["id"], due_date)
        if reminder.calendar_event:
            results["calendar"] = await self.update_calendar_event_time(
                reminder.calendar_event["id"], due_date
            )
        LOGGER.info("Moved reminders for RO %s to %s: %s", ro_number, due_date.date(), results)
        return results


class PaymentReminderDispatcher:
    """Fires payment-due reminders as detached tasks."""

    def __init__(self, reminders: ReminderService):
        self.reminders = reminders
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(
        self,
        ro_number: str,
        shop_name: str,
        terms: Optional[str],
        status: str,
        cost: Optional[float],
        invoice_date: datetime,
    ) -> Optional[asyncio.Task]:
        """Schedule a reminder when the transition calls for one; never raises."""

        if cost is None or not is_terminal_status(status):
            return None
        net_days = extract_net_days(terms)
        if not net_days:
            return None

        task = asyncio.create_task(
            self._run(ro_number, shop_name, invoice_date, cost, net_days),
            name=f"payment-reminder-{ro_number}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        ro_number: str,
        shop_name: str,
        invoice_date: datetime,
        amount: float,
        net_days: int,
    ) -> bool:
        try:
            await self.reminders.create_payment_due_event(
                ro_number, shop_name, invoice_date, amount, net_days
            )
        except Exception:
            LOGGER.exception("Failed to create payment due event for RO %s", ro_number)
            return False
        return True

    @property
    def pending(self) -> Set[asyncio.Task]:
        return set(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
