import csv
import io
from datetime import datetime, timedelta, timezone

import pytest

pytestmark = pytest.mark.asyncio


async def seed(store, count: int = 3) -> list:
    now = datetime.now(timezone.utc)
    return [
        await store.add("attendance", {
            "barcodeId": f"2025CS{n:03d}",
            "timestamp": now - timedelta(minutes=n),
            "status": "Present",
        })
        for n in range(1, count + 1)
    ]


async def test_bulk_status_update(client, admin, store):
    record_ids = await seed(store)

    response = await client.post("/api/v1/bulk/status", json={"record_ids": record_ids, "status": "Excused"}, headers=admin)

    assert response.status_code == 200
    assert response.json() == {"success": 3, "failed": 0, "errors": []}
    assert (await store.get_document("attendance", record_ids[0]))["status"] == "Excused"


async def test_bulk_status_rejects_unknown_status(client, admin, store):
    record_ids = await seed(store, 1)

    response = await client.post("/api/v1/bulk/status", json={"record_ids": record_ids, "status": "Asleep"}, headers=admin)

    assert response.status_code == 400


async def test_bulk_operations_need_permission(client, viewer, store):
    record_ids = await seed(store, 1)

    response = await client.post("/api/v1/bulk/delete", json={"record_ids": record_ids}, headers=viewer)

    assert response.status_code == 403
    assert await store.get_document("attendance", record_ids[0]) is not None


async def test_bulk_delete(client, admin, store):
    record_ids = await seed(store, 2)

    response = await client.post("/api/v1/bulk/delete", json={"record_ids": record_ids}, headers=admin)

    assert response.json()["success"] == 2
    assert await store.get_document("attendance", record_ids[1]) is None


async def test_bulk_operation_rate_limit(client, admin, store):
    """
    Scenario: an admin runs more bulk operations than the hourly policy allows.
    Expected: the sixth call inside the hour is refused with 429.
    """
    record_ids = await seed(store, 1)
    for _ in range(5):
        response = await client.post("/api/v1/bulk/status", json={"record_ids": record_ids, "status": "Late"}, headers=admin)
        assert response.status_code == 200

    response = await client.post("/api/v1/bulk/status", json={"record_ids": record_ids, "status": "Late"}, headers=admin)

    assert response.status_code == 429


async def test_csv_export(client, admin, store):
    await seed(store, 2)

    response = await client.post("/api/v1/bulk/export", json={"format": "csv", "sort_order": "asc"}, headers=admin)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert 'filename="attendance_export_' in response.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(response.text)))
    assert rows[0][:2] == ["ID", "Barcode ID"]
    assert [row[1] for row in rows[1:]] == ["2025CS002", "2025CS001"]


async def test_xlsx_export(client, admin, store):
    await seed(store, 1)

    response = await client.post("/api/v1/bulk/export", json={"format": "xlsx"}, headers=admin)

    assert response.status_code == 200
    assert response.content[:2] == b"PK"


async def test_export_unknown_format(client, admin):
    response = await client.post("/api/v1/bulk/export", json={"format": "pdf"}, headers=admin)

    assert response.status_code == 400


async def test_csv_import(client, admin, store):
    await seed(store, 1)
    today = datetime.now().astimezone().date().isoformat()
    data = "\n".join([
        "Barcode ID,Date,Time,Status",
        f"2025CS001,{today},09:00:00,Present",
        f"2025CS050,{today},09:00:00,Late",
        "2025CS051,someday,,Present",
    ])

    response = await client.post("/api/v1/bulk/import", json={"format": "csv", "data": data}, headers=admin)

    body = response.json()
    assert response.status_code == 200
    assert (body["total"], body["imported"], body["skipped"]) == (3, 1, 1)
    assert body["errors"][0]["row"] == 3


async def test_summary_report_for_viewer(client, viewer, store):
    await seed(store, 2)

    response = await client.post("/api/v1/bulk/report", json={"report_type": "summary", "group_by": "status"}, headers=viewer)

    assert response.status_code == 200
    assert response.json()["groupedData"]["Present"]["count"] == 2
