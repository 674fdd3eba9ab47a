import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest

from repair_tracker.auth import StaticTokenProvider
from repair_tracker.graph_client import GraphClient
from repair_tracker.session_manager import RetryPolicy, SessionManager
from repair_tracker.workbook import WorkbookLocation

FIXED_NOW = datetime(2025, 3, 4, 15, 30, tzinfo=timezone.utc)
LOCATION = WorkbookLocation(drive_id="drive-1", item_id="item-1")

TABLE_ROWS = re.compile(r"/workbook/(?:worksheets/(?P<sheet>[^/]+)/)?tables/(?P<table>[^/]+)/rows$")
TABLE_ADD = re.compile(r"/workbook/(?:worksheets/[^/]+/)?tables/(?P<table>[^/]+)/rows/add$")
TABLE_ITEM = re.compile(
    r"/workbook/(?:worksheets/[^/]+/)?tables/(?P<table>[^/]+)/rows/itemAt\(index=(?P<index>\d+)\)$"
)
TABLE_COLUMNS = re.compile(r"/workbook/tables/(?P<table>[^/]+)/columns$")
TODO_TASK = re.compile(r"/todo/lists/[^/]+/tasks/(?P<id>[^/]+)$")
CALENDAR_EVENT = re.compile(r"/calendar/events/(?P<id>[^/]+)$")


class FakeGraph:
    """In-memory stand-in for the Graph workbook, site and calendar endpoints."""

    def __init__(self, tables: Optional[Dict[str, List[List[Any]]]] = None):
        self.tables: Dict[str, List[List[Any]]] = {
            name: [list(row) for row in rows] for name, rows in (tables or {}).items()
        }
        self.columns: Dict[str, List[str]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.failures: List[Dict[str, Any]] = []
        self.failures_after: List[Dict[str, Any]] = []
        self.session_count = 0
        self.files = {"Repairs.xlsx": "item-1", "ShopDirectory.xlsx": "item-2"}
        self.calendar_events: List[Dict[str, Any]] = []
        self.todo_tasks: List[Dict[str, Any]] = []
        self.item_count = 0

    def fail(self, method: str, fragment: str, status: int, times: int = 1, body: Any = None):
        self.failures.append(
            {"method": method, "fragment": fragment, "status": status, "times": times, "body": body}
        )

    def fail_after(self, method: str, fragment: str, status: int, times: int = 1):
        """Apply the matching request, then answer it with ``status`` anyway."""

        self.failures_after.append(
            {"method": method, "fragment": fragment, "status": status, "times": times, "body": None}
        )

    def calls_to(self, fragment: str, method: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            call
            for call in self.calls
            if fragment in call["path"] and (method is None or call["method"] == method)
        ]

    @staticmethod
    def _injected_failure(
        failures: List[Dict[str, Any]], method: str, path: str
    ) -> Optional[httpx.Response]:
        for failure in failures:
            if failure["times"] > 0 and failure["method"] == method and failure["fragment"] in path:
                failure["times"] -= 1
                body = failure["body"]
                if body is None:
                    body = {"error": {"code": "injected", "message": f"status {failure['status']}"}}
                if isinstance(body, str):
                    return httpx.Response(failure["status"], text=body)
                return httpx.Response(failure["status"], json=body)
        return None

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        body = None
        if request.content:
            body = json.loads(request.content)
        self.calls.append(
            {
                "method": method,
                "path": path,
                "session": request.headers.get("workbook-session-id"),
                "auth": request.headers.get("Authorization"),
                "body": body,
            }
        )

        injected = self._injected_failure(self.failures, method, path)
        if injected is not None:
            return injected

        response = self._route(method, path, body)
        if response.is_success:
            injected = self._injected_failure(self.failures_after, method, path)
            if injected is not None:
                return injected
        return response

    def _route(self, method: str, path: str, body: Any) -> httpx.Response:
        if path.endswith("/workbook/createSession"):
            self.session_count += 1
            return httpx.Response(201, json={"id": f"session-{self.session_count}"})
        if path.endswith("/workbook/closeSession"):
            return httpx.Response(204)

        match = TABLE_ADD.search(path)
        if match and method == "POST":
            rows = self.tables.setdefault(match["table"], [])
            for values in body["values"]:
                rows.append(list(values))
            return httpx.Response(201, json={"index": len(rows) - 1, "values": body["values"]})

        match = TABLE_ITEM.search(path)
        if match:
            rows = self.tables.setdefault(match["table"], [])
            index = int(match["index"])
            if index >= len(rows):
                return httpx.Response(404, json={"error": {"code": "ItemNotFound"}})
            if method == "GET":
                return httpx.Response(200, json={"index": index, "values": [rows[index]]})
            if method == "PATCH":
                rows[index] = list(body["values"][0])
                return httpx.Response(200, json={"index": index, "values": [rows[index]]})
            if method == "DELETE":
                del rows[index]
                return httpx.Response(204)

        match = TABLE_ROWS.search(path)
        if match and method == "GET":
            rows = self.tables.get(match["table"], [])
            return httpx.Response(
                200,
                json={"value": [{"index": i, "values": [row]} for i, row in enumerate(rows)]},
            )

        match = TABLE_COLUMNS.search(path)
        if match:
            names = self.columns.get(match["table"], [])
            return httpx.Response(200, json={"value": [{"name": name} for name in names]})

        if path.endswith("/workbook/tables"):
            return httpx.Response(200, json={"value": [{"name": name} for name in self.tables]})

        if path.endswith("/calendar/events") and method == "POST":
            self.item_count += 1
            event = {"id": f"event-{self.item_count}", **body}
            self.calendar_events.append(event)
            return httpx.Response(201, json=event)
        if path.endswith("/calendarView") and method == "GET":
            return httpx.Response(200, json={"value": self.calendar_events})
        match = CALENDAR_EVENT.search(path)
        if match:
            return self._change_item(self.calendar_events, match["id"], method, body)

        if path.endswith("/todo/lists") and method == "GET":
            return httpx.Response(
                200, json={"value": [{"id": "list-1", "wellknownListName": "defaultList"}]}
            )
        if "/todo/lists/" in path and path.endswith("/tasks"):
            if method == "POST":
                self.item_count += 1
                task = {"id": f"task-{self.item_count}", **body}
                self.todo_tasks.append(task)
                return httpx.Response(201, json=task)
            return httpx.Response(200, json={"value": self.todo_tasks})
        match = TODO_TASK.search(path)
        if match:
            return self._change_item(self.todo_tasks, match["id"], method, body)

        if path.startswith("/v1.0/sites/") and path.endswith("/drive"):
            return httpx.Response(200, json={"id": "drive-1"})
        if path.startswith("/v1.0/sites/"):
            return httpx.Response(200, json={"id": "site-1"})
        if "/root/search(" in path:
            name = re.search(r"search\(q='(.*)'\)", path).group(1)
            value = []
            if name in self.files:
                value = [{"id": self.files[name], "name": name}]
            return httpx.Response(200, json={"value": value})
        if re.fullmatch(r"/v1.0/drives/[^/]+/items/[^/]+", path):
            return httpx.Response(200, json={"id": path.rsplit("/", 1)[-1], "name": "Repairs.xlsx"})

        return httpx.Response(404, json={"error": {"code": "UnknownRoute", "message": path}})

    @staticmethod
    def _change_item(
        items: List[Dict[str, Any]], item_id: str, method: str, body: Any
    ) -> httpx.Response:
        for position, item in enumerate(items):
            if item["id"] != item_id:
                continue
            if method == "DELETE":
                del items[position]
                return httpx.Response(204)
            if method == "PATCH":
                item.update(body)
            return httpx.Response(200, json=item)
        return httpx.Response(404, json={"error": {"code": "ErrorItemNotFound"}})


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_graph():
    return FakeGraph()


def make_client(fake: FakeGraph, user: str = "Test User") -> GraphClient:
    return GraphClient(
        StaticTokenProvider("test-token", user),
        transport=httpx.MockTransport(fake.handler),
    )


def make_manager(
    client: GraphClient,
    sleep: Optional[RecordingSleep] = None,
    max_attempts: int = 3,
    **kwargs,
) -> SessionManager:
    return SessionManager(
        client,
        LOCATION,
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay=1.0),
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )
