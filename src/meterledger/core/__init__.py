"""Pure record normalisation, reconciliation and anomaly detection."""

from meterledger.core.anomaly import detect_usage_anomalies
from meterledger.core.merge import (
    MeterKey,
    RecordKey,
    dedupe_meters,
    dedupe_records,
    merge_meters,
    upsert_records,
)
from meterledger.core.periods import MONTHS, resolve_period
from meterledger.core.transform import UNKNOWN_SITE, transform_extraction

__all__ = [
    "MONTHS",
    "UNKNOWN_SITE",
    "MeterKey",
    "RecordKey",
    "dedupe_meters",
    "dedupe_records",
    "detect_usage_anomalies",
    "merge_meters",
    "resolve_period",
    "transform_extraction",
    "upsert_records",
]
