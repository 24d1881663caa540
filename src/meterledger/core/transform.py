"""Turn a raw invoice extraction into a canonical monthly record."""

import re
from datetime import date

from meterledger.core.periods import resolve_period
from meterledger.models import (
    CanonicalRecord,
    DocumentKind,
    EnergyType,
    MeterIdentity,
    RawExtraction,
)

UNKNOWN_SITE = "Unknown Site"

# Electricity meter serials / MPAN cores are typically 11 to 13 digits long.
_ELECTRICITY_IDENTIFIER = re.compile(r"\d{11,13}")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def is_credit_note(extraction: RawExtraction) -> bool:
    """A document is a credit note if any one of three signals says so."""
    return (
        extraction.document_type == DocumentKind.CREDIT_NOTE
        or "credit" in extraction.source_file_name.lower()
        or extraction.total_amount < 0
    )


def infer_energy_type(extraction: RawExtraction) -> tuple[EnergyType, bool]:
    """Return the energy type and whether it was guessed.

    An explicit type always wins. Otherwise the guess is Gas when there is no
    meter-point reference and no serial shaped like an electricity meter, and
    Electricity in every other case. The guess is a heuristic on identifier
    shape only and is flagged as inferred.
    """
    if extraction.energy_type is not None:
        return extraction.energy_type, False

    mprn = _clean(extraction.mprn)
    serial = _clean(extraction.meter_serial)
    serial_digits = serial.replace(" ", "") if serial else ""

    if mprn is None and not _ELECTRICITY_IDENTIFIER.fullmatch(serial_digits):
        return EnergyType.GAS, True
    return EnergyType.ELECTRICITY, True


def transform_extraction(
    extraction: RawExtraction,
    site_name: str | None = None,
    today: date | None = None,
) -> tuple[CanonicalRecord, MeterIdentity]:
    """Map one extraction to a CanonicalRecord and a candidate MeterIdentity.

    Args:
        extraction: The model output for one document
        site_name: Site known from context (e.g. the Drive folder name). Used
            only when the extraction itself has no site name.
        today: Fallback date for periods that cannot be parsed

    Returns:
        Tuple of (record, meter). Never raises for missing fields.
    """
    site = _clean(extraction.site_name) or _clean(site_name) or UNKNOWN_SITE
    year, month = resolve_period(extraction.invoice_period, today=today)

    if is_credit_note(extraction):
        # Credit notes adjust money, not consumption.
        total_kwh = 0.0
        total_cost = -abs(extraction.total_amount)
    else:
        total_kwh = abs(extraction.energy_consumed)
        total_cost = extraction.total_amount

    energy_type, inferred = infer_energy_type(extraction)
    mprn = _clean(extraction.mprn)
    meter_number = _clean(extraction.meter_serial) or mprn or f"{site}-meter"

    record = CanonicalRecord(
        site_name=site,
        meter_number=meter_number,
        energy_type=energy_type,
        year=year,
        month=month,
        total_kwh=total_kwh,
        total_cost=total_cost,
        mpan=mprn,
        energy_type_inferred=inferred,
    )
    meter = MeterIdentity(
        site_name=site,
        address="",
        mpan=mprn or meter_number,
        energy_type=energy_type,
        meter_number=meter_number,
    )
    return record, meter
