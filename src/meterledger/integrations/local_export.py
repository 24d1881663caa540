"""Local CSV export of monthly energy records and import of vehicle mileage."""

import csv
import fcntl
import os
from pathlib import Path

from pydantic import ValidationError

from meterledger.integrations.gsheets import ENERGY_HEADER, record_to_sheet_row
from meterledger.models import CanonicalRecord, VehicleData

VEHICLE_HEADER = [
    "School Name",
    "Vehicle Type",
    "Fuel Type",
    "Mileage",
    "Year",
    "Month",
]


class LocalExporter:
    """Exporter for writing energy records to local CSV files.

    Rows use the same column layout as the Google Sheets ledger.
    """

    def export(
        self, records: list[CanonicalRecord], path: Path, append: bool = True
    ) -> int:
        """Write records to a CSV file, with a header when the file starts empty.

        Args:
            records: Records to write
            path: Path to the CSV file to write/append to
            append: Add to an existing file instead of replacing it

        Returns:
            Number of rows written

        Raises:
            PermissionError: If the file cannot be written due to permissions
            OSError: If there are filesystem-related errors
        """
        if not records:
            return 0

        path.parent.mkdir(parents=True, exist_ok=True)

        mode = "a" if append else "w"
        with open(path, mode=mode, encoding="utf-8", newline="") as f:
            # Lock before checking the size so concurrent writers agree on
            # which of them writes the header.
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                is_new_file = os.fstat(f.fileno()).st_size == 0
                if is_new_file:
                    f.write("\ufeff")  # UTF-8 BOM for Excel

                writer = csv.writer(f)
                if is_new_file:
                    writer.writerow(ENERGY_HEADER)

                for record in records:
                    writer.writerow(record_to_sheet_row(record))
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

        return len(records)


def read_vehicle_csv(path: Path) -> list[VehicleData]:
    """Read vehicle mileage rows laid out as ``VEHICLE_HEADER``.

    Raises:
        ValueError: If a column is missing or a row cannot be parsed
        OSError: If the file cannot be read
    """
    with open(path, encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)
        columns = reader.fieldnames or []
        missing = [name for name in VEHICLE_HEADER if name not in columns]
        if missing:
            raise ValueError(f"{path}: missing column(s) {', '.join(missing)}")

        vehicles = []
        for line, row in enumerate(reader, start=2):
            try:
                vehicles.append(
                    VehicleData(
                        site_name=row["School Name"],
                        vehicle_type=row["Vehicle Type"] or "Other",
                        fuel_type=row["Fuel Type"],
                        mileage=row["Mileage"],
                        year=row["Year"],
                        month=row["Month"],
                    )
                )
            except ValidationError as e:
                raise ValueError(f"{path}, line {line}: {e}") from e
    return vehicles
