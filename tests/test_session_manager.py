import asyncio
import random

import httpx
import pytest

from repair_tracker.auth import StaticTokenProvider
from repair_tracker.errors import GraphAPIError
from repair_tracker.graph_client import GraphClient
from repair_tracker.session_manager import RetryPolicy, SessionState

from conftest import FakeGraph, RecordingSleep, make_client, make_manager

ROWS_URL = "drives/drive-1/items/item-1/workbook/tables/Repairs/rows"


def read_rows(client):
    async def operation(session_id):
        return await client.request(ROWS_URL, "GET", None, session_id)

    return operation


@pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
def test_retryable_failures_are_retried_until_success(status):
    fake = FakeGraph({"Repairs": [["RO-1"]]})
    fake.fail("GET", "/tables/Repairs/rows", status, times=2)
    sleep = RecordingSleep()

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client, sleep)
            return await manager.with_session(read_rows(client))

    result = asyncio.run(run())
    assert result["value"][0]["values"] == [["RO-1"]]
    assert len(fake.calls_to("/tables/Repairs/rows", "GET")) == 3
    assert len(sleep.delays) == 2
    assert len(fake.calls_to("closeSession")) == 1


@pytest.mark.parametrize("status", [400, 401, 403, 404])
def test_non_retryable_failures_fail_after_one_attempt(status):
    fake = FakeGraph({"Repairs": [["RO-1"]]})
    fake.fail("GET", "/tables/Repairs/rows", status, times=5)
    sleep = RecordingSleep()

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client, sleep)
            await manager.with_session(read_rows(client))

    with pytest.raises(GraphAPIError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.status_code == status
    assert excinfo.value.attempts == 1
    assert len(fake.calls_to("/tables/Repairs/rows", "GET")) == 1
    assert sleep.delays == []


def test_exhausted_retries_surface_last_error():
    fake = FakeGraph({"Repairs": []})
    fake.fail("GET", "/tables/Repairs/rows", 503, times=10)

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client, max_attempts=3)
            await manager.with_session(read_rows(client))

    with pytest.raises(GraphAPIError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.retryable is True
    assert excinfo.value.attempts == 3
    assert len(fake.calls_to("/tables/Repairs/rows", "GET")) == 3


def test_session_created_with_persist_changes_and_header_used():
    fake = FakeGraph({"Repairs": []})

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client, persist_changes=False)
            await manager.with_session(read_rows(client))

    asyncio.run(run())
    create = fake.calls_to("createSession")[0]
    assert create["body"] == {"persistChanges": False}
    assert fake.calls_to("/tables/Repairs/rows")[0]["session"] == "session-1"
    assert fake.calls_to("closeSession")[0]["session"] == "session-1"


def test_session_creation_is_retried():
    fake = FakeGraph({"Repairs": []})
    fake.fail("POST", "createSession", 429, times=1)
    sleep = RecordingSleep()

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client, sleep)
            await manager.with_session(read_rows(client))

    asyncio.run(run())
    assert len(fake.calls_to("createSession")) == 2
    assert len(sleep.delays) == 1


def test_session_closed_once_after_success():
    fake = FakeGraph({"Repairs": []})

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client)
            await manager.with_session(read_rows(client))
            return manager

    manager = asyncio.run(run())
    assert len(fake.calls_to("closeSession")) == 1
    assert manager.state is SessionState.NO_SESSION
    assert manager.session_info()["has_session"] is False


def test_session_closed_once_when_operation_raises():
    fake = FakeGraph()

    async def failing(session_id):
        raise ValueError("bad row")

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client)
            try:
                await manager.with_session(failing)
            finally:
                assert manager.state is SessionState.NO_SESSION

    with pytest.raises(ValueError):
        asyncio.run(run())
    assert len(fake.calls_to("closeSession")) == 1


def test_close_failure_is_swallowed():
    fake = FakeGraph({"Repairs": [["RO-1"]]})
    fake.fail("POST", "closeSession", 500, times=5)

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client)
            result = await manager.with_session(read_rows(client))
            return manager, result

    manager, result = asyncio.run(run())
    assert result["value"][0]["values"] == [["RO-1"]]
    assert len(fake.calls_to("closeSession")) == 1
    assert manager.state is SessionState.NO_SESSION


def test_close_failure_does_not_mask_operation_error():
    fake = FakeGraph({"Repairs": []})
    fake.fail("GET", "/tables/Repairs/rows", 403)
    fake.fail("POST", "closeSession", 500)

    async def run():
        async with make_client(fake) as client:
            await make_manager(client).with_session(read_rows(client))

    with pytest.raises(GraphAPIError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.status_code == 403


def test_backoff_delays_grow():
    policy = RetryPolicy(max_attempts=6, base_delay=0.5, jitter_ratio=0.2)
    rng = random.Random(42)
    delays = [policy.delay_for(attempt, rng) for attempt in range(1, 6)]
    assert all(later > earlier for earlier, later in zip(delays, delays[1:]))
    for attempt, delay in enumerate(delays, start=1):
        base = 0.5 * 2 ** (attempt - 1)
        assert base <= delay <= base * 1.2


def test_backoff_without_jitter_doubles():
    policy = RetryPolicy(base_delay=1.0, jitter_ratio=0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]


def test_sleeps_between_retries_grow():
    fake = FakeGraph({"Repairs": []})
    fake.fail("GET", "/tables/Repairs/rows", 502, times=3)
    sleep = RecordingSleep()

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client, sleep, max_attempts=4, rng=random.Random(7))
            await manager.with_session(read_rows(client))

    asyncio.run(run())
    assert len(sleep.delays) == 3
    assert sleep.delays[0] < sleep.delays[1] < sleep.delays[2]


def test_concurrent_sessions_run_in_call_order():
    fake = FakeGraph({"Repairs": []})
    events = []

    def operation(name, client):
        async def run(session_id):
            events.append(f"{name} start {session_id}")
            await client.request(ROWS_URL, "GET", None, session_id)
            await asyncio.sleep(0)
            events.append(f"{name} end {session_id}")
            return name

        return run

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client)
            return await asyncio.gather(
                manager.with_session(operation("first", client)),
                manager.with_session(operation("second", client)),
            )

    assert asyncio.run(run()) == ["first", "second"]
    assert events == [
        "first start session-1",
        "first end session-1",
        "second start session-2",
        "second end session-2",
    ]
    assert len(fake.calls_to("createSession")) == 2
    assert len(fake.calls_to("closeSession")) == 2


def test_expired_session_is_replaced():
    fake = FakeGraph()
    now = [1000.0]

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client, clock=lambda: now[0], session_timeout=60)
            await manager._create_session()
            reused = await manager._acquire()
            now[0] += 61
            replaced = await manager._acquire()
            return reused, replaced

    reused, replaced = asyncio.run(run())
    assert reused.id == "session-1"
    assert replaced.id == "session-2"
    assert fake.calls_to("closeSession")[0]["session"] == "session-1"


def test_check_health_retries_and_reports():
    fake = FakeGraph()
    fake.fail("GET", "/items/item-1", 503, times=1)

    async def run():
        async with make_client(fake) as client:
            return await make_manager(client).check_health()

    assert asyncio.run(run()) is True
    assert fake.calls_to("createSession") == []


def test_check_health_false_on_permanent_error():
    fake = FakeGraph()
    fake.fail("GET", "/items/item-1", 401, times=5)

    async def run():
        async with make_client(fake) as client:
            return await make_manager(client).check_health()

    assert asyncio.run(run()) is False
    assert len(fake.calls_to("/items/item-1")) == 1


def test_execute_with_session_wraps_single_request():
    fake = FakeGraph({"Repairs": [["RO-1"], ["RO-2"]]})

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client)
            return await manager.execute_with_session(f"{ROWS_URL}/itemAt(index=1)")

    assert asyncio.run(run())["values"] == [["RO-2"]]
    assert fake.calls_to("itemAt(index=1)")[0]["session"] == "session-1"
    assert len(fake.calls_to("closeSession")) == 1


def test_session_info_and_force_close():
    fake = FakeGraph()

    async def run():
        async with make_client(fake) as client:
            manager = make_manager(client, clock=lambda: 500.0, session_timeout=100)
            await manager._create_session()
            info = manager.session_info()
            await manager.force_close()
            return info, manager.session_info()

    active, closed = asyncio.run(run())
    assert active["has_session"] is True
    assert active["session_id"] == "session-1"
    assert active["expires_at"] == 600.0
    assert active["is_valid"] is True
    assert active["state"] == "active_idle"
    assert closed == {"has_session": False, "state": "no_session"}
    assert len(fake.calls_to("closeSession")) == 1


@pytest.mark.parametrize(
    "kwargs",
    [{"max_attempts": 0}, {"max_attempts": -1}, {"base_delay": -1.0}, {"jitter_ratio": -0.1}],
)
def test_retry_policy_rejects_invalid_settings(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_connection_failure_is_retried_in_same_session():
    fake = FakeGraph({"Repairs": [["RO-1"]]})
    failed = []

    def flaky(request):
        if request.url.path.endswith("/tables/Repairs/rows") and not failed:
            failed.append(request)
            raise httpx.ConnectError("connection refused", request=request)
        return fake.handler(request)

    sleep = RecordingSleep()

    async def run():
        client = GraphClient(StaticTokenProvider("t"), transport=httpx.MockTransport(flaky))
        try:
            manager = make_manager(client, sleep)
            return await manager.with_session(read_rows(client))
        finally:
            await client.aclose()

    result = asyncio.run(run())
    assert result["value"][0]["values"] == [["RO-1"]]
    assert len(failed) == 1
    assert len(sleep.delays) == 1
    assert fake.calls_to("/tables/Repairs/rows")[0]["session"] == "session-1"
    assert len(fake.calls_to("createSession")) == 1
    assert len(fake.calls_to("closeSession")) == 1
