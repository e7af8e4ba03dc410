import csv
import io
import json
from datetime import datetime
from unittest.mock import ANY, AsyncMock

import pytest
import pytest_asyncio

from attendtrack.backend.db.redis_client import Query
from attendtrack.backend.models.results import BatchError, RowError
from attendtrack.backend.services.attendance_service import AttendanceService
from attendtrack.backend.services.bulk_service import (
    BulkService,
    DateRange,
    ExportOptions,
    ImportOptions,
    ReportOptions,
    format_dashboard_csv,
    parse_csv_records,
    parse_import_timestamp,
    summarize_errors,
)
from attendtrack.backend.services.errors import InvalidInputError

DAY = datetime(2025, 3, 10, 9, 0).astimezone()


@pytest.fixture
def security():
    """Audit collaborator; only the call shape matters here."""
    return AsyncMock()


@pytest_asyncio.fixture
async def seeded(store):
    """Three records on DAY: two CS students and one IT student."""
    ids = []
    for barcode_id, hour, status in (("2025CS001", 8, "Present"), ("2025CS002", 9, "Late"), ("2025IT001", 10, "Present")):
        ids.append(await store.add("attendance", {
            "barcodeId": barcode_id,
            "timestamp": DAY.replace(hour=hour),
            "status": status,
        }))
    return ids


@pytest.mark.asyncio
class TestBulkUpdates:

    async def test_status_update_across_batches(self, store, security, seeded):
        service = BulkService(store, security, batch_size=2)

        result = await service.bulk_update_status(seeded, "Excused", updated_by="admin-1")

        assert (result.success, result.failed, result.errors) == (3, 0, [])
        for record_id in seeded:
            document = await store.get_document("attendance", record_id)
            assert document["status"] == "Excused"
            assert document["updatedBy"] == "admin-1"
        security.log_bulk_operation.assert_awaited_once_with("admin-1", "BULK_STATUS_UPDATE", 3, ANY)

    async def test_failing_batch_does_not_affect_others(self, store, security, seeded):
        """Scenario: batch 1 holds a missing id and fails as a whole; batch 2 still commits."""
        service = BulkService(store, security, batch_size=2)
        record_ids = [seeded[0], "missing", seeded[1], seeded[2]]

        result = await service.bulk_update_status(record_ids, "Absent")

        assert result.success == 2
        assert result.failed == 2
        assert result.errors[0].batch == 1
        assert result.errors[0].record_ids == [seeded[0], "missing"]
        assert (await store.get_document("attendance", seeded[0]))["status"] == "Present"
        assert (await store.get_document("attendance", seeded[2]))["status"] == "Absent"

    async def test_middle_batch_failure_is_isolated(self, store, security):
        """Scenario: of three batches only the second fails; the first and third commit."""
        record_ids = [
            await store.add("attendance", {"barcodeId": f"2025CS00{n}", "timestamp": DAY, "status": "Present"})
            for n in range(1, 6)
        ]
        service = BulkService(store, security, batch_size=2)
        batches = [record_ids[0], record_ids[1], "missing", record_ids[2], record_ids[3], record_ids[4]]

        result = await service.bulk_update_status(batches, "Late")

        assert (result.success, result.failed) == (4, 2)
        assert len(result.errors) == 1
        assert result.errors[0].batch == 2
        assert result.errors[0].record_ids == ["missing", record_ids[2]]
        statuses = [(await store.get_document("attendance", record_id))["status"] for record_id in record_ids]
        assert statuses == ["Late", "Late", "Present", "Late", "Late"]

    async def test_bulk_delete_frees_the_day_for_a_new_scan(self, store, security):
        recorder = AttendanceService(store, strict_daily_uniqueness=True)
        record = await recorder.record_attendance("2025CS001")

        await BulkService(store, security).bulk_delete_records([record.id])

        assert (await recorder.record_attendance("2025CS001")).id != record.id

    async def test_update_rejects_bad_input(self, store, security):
        service = BulkService(store, security)

        with pytest.raises(InvalidInputError, match="No record IDs provided"):
            await service.bulk_update_status([], "Late")
        with pytest.raises(InvalidInputError, match="Invalid status provided"):
            await service.bulk_update_status(["a"], "Asleep")

    async def test_bulk_delete(self, store, security, seeded):
        service = BulkService(store, security, batch_size=2)

        result = await service.bulk_delete_records(seeded, deleted_by="admin-1")

        assert result.success == 3
        for record_id in seeded:
            assert await store.get_document("attendance", record_id) is None
        security.log_bulk_operation.assert_awaited_once_with("admin-1", "BULK_DELETE", 3, ANY)


@pytest.mark.asyncio
class TestExport:

    async def test_csv_export_with_filters(self, store, security, seeded):
        service = BulkService(store, security)

        content = await service.export_attendance_data(
            ExportOptions(format="csv", departments=["CS"], sort_order="asc"),
            exported_by="admin-1",
        )

        rows = list(csv.reader(io.StringIO(content)))
        assert rows[0] == ["ID", "Barcode ID", "Date", "Time", "Status", "Created At", "Updated At", "Updated By"]
        assert [row[1] for row in rows[1:]] == ["2025CS001", "2025CS002"]
        assert rows[1][2] == "2025-03-10"
        assert rows[1][3] == "08:00:00"
        assert content.startswith('"ID","Barcode ID"')
        security.log_data_export.assert_awaited_once_with("admin-1", "csv", ANY)

    async def test_csv_export_parses_back_unchanged(self, store, security):
        """Scenario: commas and quotes inside values survive an export and re-import parse."""
        await store.add("attendance", {"barcodeId": 'CS,"001"', "timestamp": DAY, "status": 'Late, "excused"'})
        service = BulkService(store, security)

        content = await service.export_attendance_data(ExportOptions(format="csv"))

        parsed = parse_csv_records(content)
        assert len(parsed) == 1
        assert parsed[0]["barcodeId"] == 'CS,"001"'
        assert parsed[0]["status"] == 'Late, "excused"'
        assert parsed[0]["date"] == "2025-03-10"

    async def test_json_export_by_status(self, store, security, seeded):
        service = BulkService(store, security)

        content = await service.export_attendance_data(ExportOptions(format="json", statuses=["Late"]))

        exported = json.loads(content)
        assert [item["barcodeId"] for item in exported] == ["2025CS002"]
        assert exported[0]["id"] == seeded[1]

    async def test_xlsx_export_is_a_workbook(self, store, security, seeded):
        service = BulkService(store, security)

        content = await service.export_attendance_data(ExportOptions(format="xlsx"))

        assert isinstance(content, bytes)
        assert content[:2] == b"PK"

    async def test_unknown_format(self, store, security):
        with pytest.raises(InvalidInputError):
            await BulkService(store, security).export_attendance_data(ExportOptions(format="pdf"))


@pytest.mark.asyncio
class TestImport:

    async def test_csv_import_skips_duplicates_and_invalid_rows(self, store, security, seeded):
        raw = "\n".join([
            "Barcode ID,Date,Time,Status",
            "2025CS001,2025-03-10,12:00:00,Present",   # already recorded that day
            "2025CS003,2025-03-10,09:15:00,Present",
            "2025CS003,2025-03-10,11:00:00,Late",      # same student twice in the file
            "2025CS004,2025-03-11,09:00:00,Absent",
            ",2025-03-10,09:00:00,Present",
            "2025CS005,not-a-date,,Present",
        ])
        service = BulkService(store, security)

        result = await service.import_attendance_data(raw, "csv", ImportOptions(imported_by="admin-1"))

        assert result.total == 6
        assert result.imported == 2
        assert result.skipped == 2
        assert [error.row for error in result.errors] == [5, 6]
        assert "Barcode ID is required" in result.errors[0].errors
        assert "Invalid date format" in result.errors[1].errors
        imported = await store.get(Query("attendance").where("recordedBy", "==", "admin-1"))
        assert sorted(doc["barcodeId"] for doc in imported) == ["2025CS003", "2025CS004"]
        security.log_bulk_operation.assert_awaited_once_with("admin-1", "BULK_IMPORT", 6, ANY)

    async def test_import_without_duplicate_skipping(self, store, security, seeded):
        raw = "Barcode ID,Date,Time\n2025CS001,2025-03-10,12:00:00\n"
        service = BulkService(store, security)

        result = await service.import_attendance_data(raw, "csv", ImportOptions(skip_duplicates=False))

        assert result.imported == 1
        assert result.skipped == 0

    async def test_json_import(self, store, security):
        payload = json.dumps([
            {"barcodeId": "2025CS001", "date": "2025-03-10T09:00:00", "status": "Present"},
            {"idNumber": "2025CS002", "date": "2025-03-10T09:05:00"},
        ])
        service = BulkService(store, security)

        result = await service.import_attendance_data(payload, "json")

        assert result.imported == 2
        assert result.errors == []

    @pytest.mark.parametrize("payload", ["{not json", '{"barcodeId": "x"}'])
    async def test_bad_json_payload(self, store, security, payload):
        with pytest.raises(InvalidInputError):
            await BulkService(store, security).import_attendance_data(payload, "json")

    async def test_unsupported_import_format(self, store, security):
        with pytest.raises(InvalidInputError):
            await BulkService(store, security).import_attendance_data("", "xml")


@pytest.mark.asyncio
class TestReports:

    async def test_summary_grouped_by_department(self, store, security, seeded):
        service = BulkService(store, security)

        report = await service.generate_attendance_report(ReportOptions(report_type="summary", group_by="department"))

        assert report["totalRecords"] == 3
        assert report["uniqueStudents"] == 3
        assert report["groupedData"]["CS"]["count"] == 2
        assert report["groupedData"]["IT"]["count"] == 1
        assert report["statusBreakdown"] == {"Present": 2, "Late": 1}

    async def test_department_report_ranks_by_count(self, store, security, seeded):
        report = await BulkService(store, security).generate_attendance_report(ReportOptions(report_type="department"))

        assert [item["department"] for item in report["departments"]] == ["CS", "IT"]

    async def test_trends_report_for_a_date_range(self, store, security, seeded):
        options = ReportOptions(
            report_type="trends",
            date_range=DateRange(start=DAY.replace(hour=0), end=DAY.replace(hour=23, minute=59)),
        )

        report = await BulkService(store, security).generate_attendance_report(options)

        assert report["totalRecords"] == 3
        assert report["dailyTrends"][0]["date"] == "2025-03-10"
        assert [h["hour"] for h in report["hourlyTrends"]] == [8, 9, 10]

    async def test_detailed_report(self, store, security, seeded):
        report = await BulkService(store, security).generate_attendance_report(ReportOptions(report_type="detailed"))

        assert report["metadata"]["totalRecords"] == 3
        assert {record["department"] for record in report["records"]} == {"CS", "IT"}

    async def test_unknown_report_type(self, store, security):
        with pytest.raises(InvalidInputError):
            await BulkService(store, security).generate_attendance_report(ReportOptions(report_type="pie"))


class TestHelpers:

    def test_dashboard_csv(self):
        content = format_dashboard_csv([{"barcodeId": "2025CS001", "timestamp": DAY.isoformat(), "status": "Late"}])

        assert content.splitlines() == ['"ID Number","Date","Time","Status"', '"2025CS001","2025-03-10","09:00:00","Late"']

    def test_embedded_quotes_are_doubled(self):
        content = format_dashboard_csv([{"barcodeId": 'say "hi"', "timestamp": DAY.isoformat()}])

        assert '"say ""hi"""' in content

    def test_summarize_errors(self):
        errors = [RowError(row=n, record={}, errors=["bad"]) for n in range(1, 8)] + [BatchError(batch=2, record_ids=[], error="boom")]

        summary = summarize_errors(errors)

        assert summary[:2] == ["Row 1: bad", "Row 2: bad"]
        assert summary[-1] == "+3 more"
        assert len(summary) == 6

    def test_parse_import_timestamp_formats(self):
        assert parse_import_timestamp("2025-03-10", "09:15") == datetime(2025, 3, 10, 9, 15).astimezone()
        assert parse_import_timestamp("03/10/2025 09:15:00") == datetime(2025, 3, 10, 9, 15).astimezone()
        assert parse_import_timestamp("") is None
        assert parse_import_timestamp("yesterday") is None

    def test_parse_csv_accepts_legacy_headers(self):
        records = parse_csv_records('"ID Number","Date","Time","Status"\n"2025CS001","2025-03-10","09:00:00","Present"\n\n')

        assert records == [{"barcodeId": "2025CS001", "date": "2025-03-10", "time": "09:00:00", "status": "Present"}]
