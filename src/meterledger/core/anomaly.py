"""Flag months whose usage or cost deviates from the meter's own history."""

import math
from collections.abc import Iterable, Sequence

from meterledger.core.periods import month_index
from meterledger.models import CanonicalRecord, EnergyType, UsageAnomaly

DEFAULT_THRESHOLD = 2.5


def calculate_stats(values: Sequence[float]) -> tuple[float, float]:
    """Population mean and standard deviation (divides by N)."""
    if not values:
        return 0.0, 0.0
    mean = sum(values) / len(values)
    variance = sum((value - mean) ** 2 for value in values) / len(values)
    return mean, math.sqrt(variance)


def _chronological(record: CanonicalRecord) -> tuple[int, int]:
    return record.year, month_index(record.month)


def group_by_meter(
    records: Iterable[CanonicalRecord],
) -> dict[tuple[str, EnergyType], list[CanonicalRecord]]:
    """Group records into (meter number, energy type) cohorts, each in date order."""
    groups: dict[tuple[str, EnergyType], list[CanonicalRecord]] = {}
    for record in records:
        groups.setdefault((record.meter_number, record.energy_type), []).append(record)
    for entries in groups.values():
        entries.sort(key=_chronological)
    return groups


def detect_usage_anomalies(
    records: Iterable[CanonicalRecord],
    threshold: float = DEFAULT_THRESHOLD,
) -> list[UsageAnomaly]:
    """Return records deviating by at least ``threshold`` standard deviations.

    Each record is compared only against other months of the same meter and
    fuel. A record is flagged when either its usage or its cost z-score
    reaches the threshold. Cohorts with constant usage produce nothing.
    Results are ordered by descending absolute usage deviation.
    """
    anomalies = []

    for (meter_number, energy_type), entries in group_by_meter(records).items():
        usage_mean, usage_std = calculate_stats([entry.total_kwh for entry in entries])
        if usage_std == 0:
            continue

        costs = [entry.total_cost for entry in entries if entry.total_cost is not None]
        cost_mean, cost_std = calculate_stats(costs) if costs else (0.0, 0.0)

        for entry in entries:
            usage_z = (entry.total_kwh - usage_mean) / usage_std

            cost_z = None
            if cost_std > 0 and entry.total_cost is not None:
                cost_z = (entry.total_cost - cost_mean) / cost_std

            is_usage_anomaly = abs(usage_z) >= threshold
            is_cost_anomaly = cost_z is not None and abs(cost_z) >= threshold
            if not (is_usage_anomaly or is_cost_anomaly):
                continue

            anomalies.append(
                UsageAnomaly(
                    id=f"{meter_number}-{entry.year}-{entry.month}",
                    site_name=entry.site_name,
                    meter_number=meter_number,
                    energy_type=energy_type,
                    year=entry.year,
                    month=entry.month,
                    total_kwh=entry.total_kwh,
                    total_cost=entry.total_cost,
                    deviation=round(usage_z, 2),
                    cost_deviation=round(cost_z, 2) if cost_z is not None else None,
                    baseline=round(usage_mean, 2),
                    direction="increase" if usage_z >= 0 else "decrease",
                )
            )

    # Ties fall back to identity so the order never depends on input order.
    anomalies.sort(
        key=lambda anomaly: (
            -abs(anomaly.deviation),
            anomaly.meter_number,
            anomaly.energy_type.value,
            anomaly.year,
            month_index(anomaly.month),
            anomaly.site_name,
        )
    )
    return anomalies
