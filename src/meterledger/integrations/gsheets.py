"""Google Sheets integration for the energy ledger and meter catalog.

Note: The Google API Client library uses dynamic method creation at runtime.
Methods like .spreadsheets() are added to Resource objects when build() is called,
so type checkers can't detect them. We use # type: ignore[attr-defined] to
suppress these warnings where appropriate.
"""

import logging
from typing import Any

from googleapiclient.discovery import Resource, build
from googleapiclient.errors import HttpError
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from meterledger.core.merge import MeterKey, index_records, meter_key, plan_upsert
from meterledger.models import CanonicalRecord, MergeResult, MeterIdentity

logger = logging.getLogger(__name__)

ENERGY_SHEET = "EnergyData"
METERS_SHEET = "Meters"

ENERGY_HEADER = [
    "School Name",
    "Meter Number",
    "Energy Type",
    "Year",
    "Month",
    "Total kWh",
    "Total Cost",
    "MPAN",
]
METERS_HEADER = ["School Name", "Address", "MPAN", "Energy Type", "Meter Number"]


class SheetsLedgerError(Exception):
    """Raised when the ledger cannot be used as configured."""


def _is_retryable_error(exception: BaseException) -> bool:
    """Determine if an exception should trigger a retry.

    Retries on HTTP 429 (rate limit), HTTP 503 (service unavailable) and
    network errors. Client errors such as 400/403/404 are not retried.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    if isinstance(exception, ConnectionError | TimeoutError | OSError):
        return True

    if isinstance(exception, HttpError):
        return exception.resp.status in (429, 503)

    return False


_retry_policy = retry(
    retry=retry_if_exception(_is_retryable_error),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    reraise=True,
)


def record_to_sheet_row(record: CanonicalRecord) -> list[Any]:
    """Convert a CanonicalRecord to a row in ENERGY_HEADER order."""
    return [
        record.site_name,
        record.meter_number,
        record.energy_type.value,
        record.year,
        record.month,
        record.total_kwh,
        record.total_cost if record.total_cost is not None else "",
        record.mpan or "",
    ]


def sheet_row_to_record(row: list[Any]) -> CanonicalRecord:
    """Parse a ledger row back into a CanonicalRecord.

    Raises:
        ValueError: If the row is too short or holds invalid values
    """
    if len(row) < 6:
        raise ValueError(f"Expected at least 6 columns, got {len(row)}")

    padded = list(row) + [""] * (len(ENERGY_HEADER) - len(row))
    cost = padded[6]
    try:
        return CanonicalRecord(
            site_name=str(padded[0]),
            meter_number=str(padded[1]),
            energy_type=padded[2] or "Electricity",
            year=int(padded[3]),
            month=str(padded[4]),
            total_kwh=float(padded[5] or 0),
            total_cost=float(cost) if cost not in ("", None) else None,
            mpan=str(padded[7]) or None,
        )
    except ValidationError as e:
        raise ValueError(str(e)) from e


def meter_to_sheet_row(meter: MeterIdentity) -> list[Any]:
    return [
        meter.site_name,
        meter.address,
        meter.mpan,
        meter.energy_type.value,
        meter.meter_number,
    ]


class GSheetsClient:
    """Client for interacting with Google Sheets API.

    Attributes:
        spreadsheet_id: Optional Google Sheets spreadsheet ID
    """

    def __init__(self, spreadsheet_id: str | None = None):
        self._service: Resource | None = None  # Private cache for lazy initialization
        self.spreadsheet_id = spreadsheet_id

    @property
    def service(self) -> Resource:
        """Lazily initialize and return the Google Sheets service."""
        if self._service is None:
            self._service = build("sheets", "v4")
        return self._service

    def _require_id(self, operation: str) -> str:
        if not self.spreadsheet_id:
            raise ValueError(f"spreadsheet_id must be set before calling {operation}")
        return self.spreadsheet_id

    @_retry_policy
    def get_values(self, range_name: str) -> list[list[Any]]:
        """Read a range; returns an empty list when the range has no values."""
        spreadsheet_id = self._require_id("get_values")
        # Note: spreadsheets() is dynamically added by googleapiclient at runtime
        result = (
            self.service.spreadsheets()  # type: ignore[attr-defined]
            .values()
            .get(
                spreadsheetId=spreadsheet_id,
                range=range_name,
                valueRenderOption="UNFORMATTED_VALUE",
            )
            .execute()
        )
        return result.get("values", [])

    @_retry_policy
    def append_rows(
        self, rows: list[list[Any]], range_name: str = "Sheet1!A1"
    ) -> dict[str, Any]:
        """Append multiple rows to the spreadsheet in a batch operation.

        Args:
            rows: List of rows, where each row is a list of values
            range_name: The A1 notation of the range to append to

        Returns:
            The API response containing update information

        Raises:
            ValueError: If spreadsheet_id is not set
            HttpError: For non-retryable errors or after max retries
        """
        spreadsheet_id = self._require_id("append_rows")
        result = (
            self.service.spreadsheets()  # type: ignore[attr-defined]
            .values()
            .append(
                spreadsheetId=spreadsheet_id,
                range=range_name,
                valueInputOption="RAW",
                body={"values": rows},
            )
            .execute()
        )
        return result

    @_retry_policy
    def batch_update_rows(self, data: list[tuple[str, list[Any]]]) -> dict[str, Any]:
        """Overwrite several ranges in one request.

        Args:
            data: (A1 range, row values) pairs
        """
        spreadsheet_id = self._require_id("batch_update_rows")
        result = (
            self.service.spreadsheets()  # type: ignore[attr-defined]
            .values()
            .batchUpdate(
                spreadsheetId=spreadsheet_id,
                body={
                    "valueInputOption": "RAW",
                    "data": [
                        {"range": range_name, "values": [values]}
                        for range_name, values in data
                    ],
                },
            )
            .execute()
        )
        return result


class SheetsLedger:
    """Keyed energy ledger and meter catalog kept in a spreadsheet.

    Row 1 of each sheet is a header; data starts on row 2.
    """

    def __init__(self, client: GSheetsClient):
        if not client.spreadsheet_id:
            raise SheetsLedgerError("A spreadsheet id is required for the ledger")
        self.client = client

    def _read_sheet(self, sheet: str, last_column: str) -> tuple[bool, list[list[Any]]]:
        """Return (has header row, data rows)."""
        rows = self.client.get_values(f"{sheet}!A:{last_column}")
        return bool(rows), rows[1:]

    def load_records(self) -> list[CanonicalRecord]:
        """Read every parseable row of the energy sheet."""
        _, rows = self._read_sheet(ENERGY_SHEET, "H")
        records = []
        for number, row in enumerate(rows, start=2):
            try:
                records.append(sheet_row_to_record(row))
            except ValueError as e:
                logger.warning("Skipping %s row %d: %s", ENERGY_SHEET, number, e)
        return records

    def upsert_energy_records(self, records: list[CanonicalRecord]) -> MergeResult:
        """Rewrite rows whose natural key exists and append the rest.

        Updates replace the whole row. Malformed rows are never matched and
        never overwritten.
        """
        has_header, rows = self._read_sheet(ENERGY_SHEET, "H")
        existing: list[CanonicalRecord | None] = []
        for row in rows:
            try:
                existing.append(sheet_row_to_record(row))
            except ValueError:
                existing.append(None)

        updates, inserts = plan_upsert(index_records(existing), records)

        if updates:
            data = []
            for position, record in updates:
                row_number = position + 2
                data.append(
                    (
                        f"{ENERGY_SHEET}!A{row_number}:H{row_number}",
                        record_to_sheet_row(record),
                    )
                )
            self.client.batch_update_rows(data)

        if inserts:
            new_rows = [record_to_sheet_row(record) for record in inserts]
            if not has_header:
                new_rows.insert(0, ENERGY_HEADER)
            self.client.append_rows(new_rows, range_name=f"{ENERGY_SHEET}!A1")

        result = MergeResult(inserted=len(inserts), updated=len(updates))
        logger.info(
            "Ledger upsert: %d inserted, %d updated", result.inserted, result.updated
        )
        return result

    def append_meters(self, meters: list[MeterIdentity]) -> int:
        """Append meters not yet in the catalog; returns how many were added."""
        has_header, rows = self._read_sheet(METERS_SHEET, "E")
        known = set()
        for row in rows:
            padded = [str(value) for value in row] + [""] * (5 - len(row))
            known.add(MeterKey(padded[0], padded[2], padded[4]))

        new_rows = []
        for meter in meters:
            key = meter_key(meter)
            if key in known:
                continue
            known.add(key)
            new_rows.append(meter_to_sheet_row(meter))

        if new_rows:
            header = [] if has_header else [METERS_HEADER]
            self.client.append_rows(header + new_rows, range_name=f"{METERS_SHEET}!A1")
        return len(new_rows)
