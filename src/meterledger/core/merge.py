"""Deduplicate records and reconcile them with an existing snapshot."""

from collections.abc import Iterable, Sequence
from typing import NamedTuple

from meterledger.models import CanonicalRecord, EnergyType, MergeResult, MeterIdentity


class RecordKey(NamedTuple):
    """Natural key of a CanonicalRecord."""

    site_name: str
    meter_number: str
    energy_type: EnergyType
    year: int
    month: str


class MeterKey(NamedTuple):
    site_name: str
    mpan: str
    meter_number: str


def record_key(record: CanonicalRecord) -> RecordKey:
    return RecordKey(
        record.site_name,
        record.meter_number,
        record.energy_type,
        record.year,
        record.month,
    )


def meter_key(meter: MeterIdentity) -> MeterKey:
    return MeterKey(meter.site_name, meter.mpan, meter.meter_number)


def dedupe_records(records: Iterable[CanonicalRecord]) -> list[CanonicalRecord]:
    """Drop records whose natural key was already seen; the first one wins."""
    seen: set[RecordKey] = set()
    unique = []
    for record in records:
        key = record_key(record)
        if key in seen:
            continue
        seen.add(key)
        unique.append(record)
    return unique


def dedupe_meters(meters: Iterable[MeterIdentity]) -> list[MeterIdentity]:
    seen: set[MeterKey] = set()
    unique = []
    for meter in meters:
        key = meter_key(meter)
        if key in seen:
            continue
        seen.add(key)
        unique.append(meter)
    return unique


def index_records(
    records: Sequence[CanonicalRecord | None],
) -> dict[RecordKey, int]:
    """Map each natural key to the position of its first occurrence.

    ``None`` entries (rows that could not be parsed) keep their position but
    are not indexed.
    """
    index: dict[RecordKey, int] = {}
    for position, record in enumerate(records):
        if record is not None:
            index.setdefault(record_key(record), position)
    return index


def plan_upsert(
    index: dict[RecordKey, int],
    incoming: Iterable[CanonicalRecord],
) -> tuple[list[tuple[int, CanonicalRecord]], list[CanonicalRecord]]:
    """Split incoming records into in-place updates and appends.

    Args:
        index: Natural key to position in the existing collection
        incoming: Records to write; duplicates within the batch are dropped

    Returns:
        Tuple of (updates as (position, record), inserts)
    """
    updates = []
    inserts = []
    for record in dedupe_records(incoming):
        position = index.get(record_key(record))
        if position is None:
            inserts.append(record)
        else:
            updates.append((position, record))
    return updates, inserts


def upsert_records(
    existing: Sequence[CanonicalRecord],
    incoming: Iterable[CanonicalRecord],
) -> tuple[list[CanonicalRecord], MergeResult]:
    """Merge ``incoming`` into ``existing`` by natural key.

    A record whose key is already present replaces the existing one as a whole,
    otherwise it is appended. ``existing`` is not modified.

    Returns:
        Tuple of (merged records, MergeResult with inserted/updated counts)
    """
    merged = list(existing)
    updates, inserts = plan_upsert(index_records(merged), incoming)

    for position, record in updates:
        merged[position] = record
    merged.extend(inserts)

    return merged, MergeResult(inserted=len(inserts), updated=len(updates))


def merge_meters(
    existing: Sequence[MeterIdentity],
    incoming: Iterable[MeterIdentity],
) -> tuple[list[MeterIdentity], int]:
    """Append meters not already in the catalog. Existing entries are kept."""
    known = {meter_key(meter) for meter in existing}
    merged = list(existing)
    added = 0
    for meter in dedupe_meters(incoming):
        if meter_key(meter) in known:
            continue
        known.add(meter_key(meter))
        merged.append(meter)
        added += 1
    return merged, added
