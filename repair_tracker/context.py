"""Per-client wiring of Graph client, workbook sessions and repositories."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from .auth import MsalTokenProvider
from .config import Settings
from .errors import ConfigurationError
from .graph_client import GraphClient
from .reminders import PaymentReminderDispatcher, ReminderService
from .repository import RepairOrderRepository
from .session_manager import RetryPolicy, SessionManager
from .shops import ShopRepository
from .workbook import WorkbookLocation, resolve_workbook

LOGGER = logging.getLogger(__name__)

REQUIRED_SETTINGS = {
    "SHAREPOINT_SITE_URL": "sharepoint_site_url",
    "EXCEL_FILE_NAME": "excel_file_name",
    "EXCEL_TABLE_NAME": "excel_table_name",
}


def check_required(settings: Settings) -> None:
    missing = [env for env, attr in REQUIRED_SETTINGS.items() if not getattr(settings, attr, None)]
    if missing:
        raise ConfigurationError(
            "Missing required configuration: " + ", ".join(missing)
        )


@dataclass
class RepairTrackerContext:
    """Everything one client needs; nothing here is shared between instances."""

    settings: Settings
    client: GraphClient
    repair_sessions: SessionManager
    shop_sessions: SessionManager
    repair_orders: RepairOrderRepository
    shops: ShopRepository
    reminders: ReminderService

    @classmethod
    def build(
        cls,
        settings: Settings,
        client: GraphClient,
        repair_location: WorkbookLocation,
        shop_location: WorkbookLocation,
    ) -> "RepairTrackerContext":
        check_required(settings)
        policy = RetryPolicy(
            max_attempts=settings.max_retries,
            base_delay=settings.retry_delay_seconds,
        )

        def session_manager(location: WorkbookLocation) -> SessionManager:
            return SessionManager(
                client,
                location,
                retry_policy=policy,
                session_timeout=settings.session_timeout_seconds,
                persist_changes=settings.persist_changes,
            )

        repair_sessions = session_manager(repair_location)
        shop_sessions = session_manager(shop_location)
        reminders = ReminderService(
            client,
            mailbox=settings.calendar_mailbox,
            time_zone=settings.calendar_timezone,
        )
        return cls(
            settings=settings,
            client=client,
            repair_sessions=repair_sessions,
            shop_sessions=shop_sessions,
            repair_orders=RepairOrderRepository(
                client,
                repair_sessions,
                repair_location,
                settings.excel_table_name,
                dispatcher=PaymentReminderDispatcher(reminders),
            ),
            shops=ShopRepository(client, shop_sessions, shop_location, settings.shop_table_name),
            reminders=reminders,
        )

    @classmethod
    async def create(
        cls,
        settings: Settings,
        token_provider=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "RepairTrackerContext":
        """Resolve both workbooks on the configured site and wire everything up."""

        check_required(settings)
        client = GraphClient(
            token_provider or MsalTokenProvider(settings),
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )
        try:
            repair_location = await resolve_workbook(
                client, settings.sharepoint_site_url, settings.excel_file_name
            )
            shop_location = await resolve_workbook(
                client, settings.sharepoint_site_url, settings.shop_file_name
            )
        except Exception:
            await client.aclose()
            raise
        return cls.build(settings, client, repair_location, shop_location)

    async def aclose(self) -> None:
        await self.repair_orders.drain_side_effects()
        await self.client.aclose()
