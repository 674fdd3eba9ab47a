import asyncio

import pytest

from repair_tracker.errors import ConfigurationError, WorkbookNotFoundError
from repair_tracker.workbook import (
    WorkbookLocation,
    list_columns,
    list_tables,
    resolve_workbook,
    split_site_url,
)

from conftest import FakeGraph, make_client

SITE_URL = "https://contoso.sharepoint.com/sites/Repairs"


def run_with_client(fake, scenario):
    async def run():
        async with make_client(fake) as client:
            return await scenario(client)

    return asyncio.run(run())


def test_location_urls():
    location = WorkbookLocation("d", "i")
    assert location.rows_url("Repairs") == "drives/d/items/i/workbook/tables/Repairs/rows"
    assert location.row_url("Approved_Net", 4, sheet="NET") == (
        "drives/d/items/i/workbook/worksheets/NET/tables/Approved_Net/rows/itemAt(index=4)"
    )


def test_split_site_url():
    assert split_site_url(SITE_URL + "/") == ("contoso.sharepoint.com", "/sites/Repairs")
    with pytest.raises(ConfigurationError):
        split_site_url("sites/Repairs")


def test_resolve_workbook_walks_site_drive_and_search():
    fake = FakeGraph()

    location = run_with_client(
        fake, lambda client: resolve_workbook(client, SITE_URL, "ShopDirectory.xlsx")
    )
    assert location == WorkbookLocation(drive_id="drive-1", item_id="item-2")
    paths = [call["path"] for call in fake.calls]
    assert paths == [
        "/v1.0/sites/contoso.sharepoint.com:/sites/Repairs",
        "/v1.0/sites/site-1/drive",
        "/v1.0/drives/drive-1/root/search(q='ShopDirectory.xlsx')",
    ]


def test_resolve_workbook_missing_file():
    fake = FakeGraph()

    with pytest.raises(WorkbookNotFoundError):
        run_with_client(fake, lambda client: resolve_workbook(client, SITE_URL, "Nope.xlsx"))


def test_list_tables_and_columns():
    fake = FakeGraph({"Repairs": [], "ShopTable": []})
    fake.columns["Repairs"] = ["RO #", "DATE MADE", "SHOP NAME"]
    location = WorkbookLocation("drive-1", "item-1")

    async def scenario(client):
        return await list_tables(client, location), await list_columns(client, location, "Repairs")

    tables, columns = run_with_client(fake, scenario)
    assert [table["name"] for table in tables] == ["Repairs", "ShopTable"]
    assert columns == ["RO #", "DATE MADE", "SHOP NAME"]
