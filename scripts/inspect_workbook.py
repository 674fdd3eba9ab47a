"""Check connectivity to the repair workbook and list its tables and columns."""

from __future__ import annotations

import argparse
import asyncio
import logging

from repair_tracker.auth import MsalTokenProvider
from repair_tracker.config import get_settings
from repair_tracker.graph_client import GraphClient
from repair_tracker.session_manager import RetryPolicy, SessionManager
from repair_tracker.workbook import list_columns, list_tables, resolve_workbook

LOGGER = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect the repair order workbook.")
    parser.add_argument(
        "--file",
        help="Workbook file name to inspect (defaults to EXCEL_FILE_NAME).",
    )
    parser.add_argument(
        "--health-only",
        action="store_true",
        help="Only run the health check; skip table listing.",
    )
    return parser.parse_args()


async def inspect(file_name: str, health_only: bool) -> int:
    settings = get_settings()
    async with GraphClient(
        MsalTokenProvider(settings), timeout=settings.request_timeout_seconds
    ) as client:
        location = await resolve_workbook(client, settings.sharepoint_site_url, file_name)
        sessions = SessionManager(
            client,
            location,
            retry_policy=RetryPolicy(settings.max_retries, settings.retry_delay_seconds),
        )
        if not await sessions.check_health():
            LOGGER.error("Health check failed for %s", file_name)
            return 1
        LOGGER.info("Health check passed for %s", file_name)
        if health_only:
            return 0

        for table in await list_tables(client, location):
            name = table.get("name", "")
            columns = await list_columns(client, location, name)
            LOGGER.info("Table %s (%s columns)", name, len(columns))
            for index, column in enumerate(columns):
                LOGGER.info("  %2d: %s", index, column)
    return 0


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    args = parse_args()
    file_name = args.file or get_settings().excel_file_name
    raise SystemExit(asyncio.run(inspect(file_name, args.health_only)))


if __name__ == "__main__":
    main()
