"""Workbook addressing and discovery on a SharePoint site."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import urlparse

from .errors import ConfigurationError, WorkbookNotFoundError
from .graph_client import GraphClient

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkbookLocation:
    """Drive and item ids of one workbook, plus URL builders for its API."""

    drive_id: str
    item_id: str

    @property
    def item_url(self) -> str:
        return f"drives/{self.drive_id}/items/{self.item_id}"

    @property
    def workbook_url(self) -> str:
        return f"{self.item_url}/workbook"

    def table_url(self, table: str, sheet: Optional[str] = None) -> str:
        if sheet:
            return f"{self.workbook_url}/worksheets/{sheet}/tables/{table}"
        return f"{self.workbook_url}/tables/{table}"

    def rows_url(self, table: str, sheet: Optional[str] = None) -> str:
        return f"{self.table_url(table, sheet)}/rows"

    def row_url(self, table: str, row_index: int, sheet: Optional[str] = None) -> str:
        return f"{self.rows_url(table, sheet)}/itemAt(index={row_index})"


def split_site_url(site_url: str) -> tuple:
    parsed = urlparse(site_url or "")
    if not parsed.hostname:
        raise ConfigurationError(
            f"SHAREPOINT_SITE_URL must be an absolute URL, got {site_url!r}"
        )
    return parsed.hostname, parsed.path.rstrip("/")


async def resolve_workbook(client: GraphClient, site_url: str, file_name: str) -> WorkbookLocation:
    """Find ``file_name`` in the default document library of ``site_url``."""

    if not file_name:
        raise ConfigurationError("A workbook file name is required")
    hostname, site_path = split_site_url(site_url)

    site = await client.request(f"sites/{hostname}:{site_path}")
    drive = await client.request(f"sites/{site['id']}/drive")
    drive_id = drive["id"]

    search = await client.request(f"drives/{drive_id}/root/search(q='{file_name}')")
    matches = (search or {}).get("value", [])
    exact = [item for item in matches if item.get("name") == file_name]
    candidates = exact or matches
    if not candidates:
        raise WorkbookNotFoundError(f"File {file_name} not found on {site_url}")

    location = WorkbookLocation(drive_id=drive_id, item_id=candidates[0]["id"])
    LOGGER.info("Resolved %s to drive %s item %s", file_name, drive_id, location.item_id)
    return location


async def list_tables(client: GraphClient, location: WorkbookLocation) -> List[Dict]:
    response = await client.request(f"{location.workbook_url}/tables")
    return (response or {}).get("value", [])


async def list_columns(client: GraphClient, location: WorkbookLocation, table: str) -> List[str]:
    response = await client.request(f"{location.table_url(table)}/columns")
    return [column.get("name", "") for column in (response or {}).get("value", [])]
