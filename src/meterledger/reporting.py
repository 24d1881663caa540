"""Filtering, KPIs, spend and carbon reporting over canonical records."""

from collections.abc import Iterable
from typing import Literal

from pydantic import BaseModel

from meterledger.core.periods import MONTHS, month_index
from meterledger.models import CanonicalRecord, EnergyType, FuelType, VehicleData

# UK Government conversion factors, kg CO2e per kWh
EMISSION_FACTORS = {
    EnergyType.ELECTRICITY: 0.212,
    EnergyType.GAS: 0.202,
}

# kg CO2e per km driven
TRANSPORT_EMISSION_FACTORS = {
    FuelType.PETROL: 0.192,
    FuelType.DIESEL: 0.171,
    FuelType.ELECTRIC: 0.053,
    FuelType.HYBRID: 0.120,
}

KM_PER_MILE = 1.60934


class RecordFilter(BaseModel):
    """Predicate over records; every unset field matches everything.

    ``compare_month`` restricts to one calendar month across all years and
    takes precedence over the from/to range, mirroring the dashboard filter.
    """

    school: str | None = None
    meter: str | None = None
    energy_type: EnergyType | None = None
    compare_month: str | None = None
    from_year: int | None = None
    from_month: str | None = None
    to_year: int | None = None
    to_month: str | None = None

    def _in_range(self, record: CanonicalRecord) -> bool:
        position = (record.year, month_index(record.month))
        if self.from_year is not None:
            start = (self.from_year, month_index(self.from_month or MONTHS[0]))
            if position < start:
                return False
        if self.to_year is not None:
            end = (self.to_year, month_index(self.to_month or MONTHS[-1]))
            if position > end:
                return False
        return True

    def matches(self, record: CanonicalRecord) -> bool:
        if self.school is not None and record.site_name != self.school:
            return False
        if self.meter is not None and record.meter_number != self.meter:
            return False
        if self.energy_type is not None and record.energy_type != self.energy_type:
            return False
        if self.compare_month is not None:
            return record.month == self.compare_month
        return self._in_range(record)

    def apply(self, records: Iterable[CanonicalRecord]) -> list[CanonicalRecord]:
        return [record for record in records if self.matches(record)]


class KPIData(BaseModel):
    total_kwh: float
    avg_monthly_kwh: float
    active_meters: int


def calculate_kpis(records: list[CanonicalRecord]) -> KPIData:
    """Headline figures: total usage, average per calendar month, meter count."""
    monthly: dict[tuple[int, str], float] = {}
    for record in records:
        key = (record.year, record.month)
        monthly[key] = monthly.get(key, 0.0) + record.total_kwh

    return KPIData(
        total_kwh=sum(record.total_kwh for record in records),
        avg_monthly_kwh=sum(monthly.values()) / len(monthly) if monthly else 0.0,
        active_meters=len({record.meter_number for record in records}),
    )


class CarbonData(BaseModel):
    site_name: str
    year: int
    month: str
    energy_type: EnergyType | Literal["Transport"]
    consumption: float  # kWh for energy, miles for transport
    unit: Literal["kWh", "miles"] = "kWh"
    carbon_emissions: float  # kg CO2e
    emission_factor: float  # kg CO2e per unit


class YearComparison(BaseModel):
    year: int
    total_emissions: float  # kg CO2e
    percentage_change: float


class SECRReport(BaseModel):
    """Streamlined Energy and Carbon Reporting summary for one year."""

    organisation: str
    year: int
    total_electricity_kwh: float
    total_gas_kwh: float
    total_transport_miles: float
    total_carbon_emissions: float  # kg CO2e
    carbon_intensity: float  # kg CO2e per pupil, 0 when unknown
    previous_year_comparison: YearComparison | None = None


def calculate_carbon_emissions(records: Iterable[CanonicalRecord]) -> list[CarbonData]:
    results = []
    for record in records:
        factor = EMISSION_FACTORS[record.energy_type]
        results.append(
            CarbonData(
                site_name=record.site_name,
                year=record.year,
                month=record.month,
                energy_type=record.energy_type,
                consumption=record.total_kwh,
                carbon_emissions=record.total_kwh * factor,
                emission_factor=factor,
            )
        )
    return results


def calculate_vehicle_emissions(vehicles: Iterable[VehicleData]) -> list[CarbonData]:
    """Transport emissions; the factor is reported per mile."""
    results = []
    for vehicle in vehicles:
        factor_per_mile = TRANSPORT_EMISSION_FACTORS[vehicle.fuel_type] * KM_PER_MILE
        results.append(
            CarbonData(
                site_name=vehicle.site_name,
                year=vehicle.year,
                month=vehicle.month,
                energy_type="Transport",
                consumption=vehicle.mileage,
                unit="miles",
                carbon_emissions=vehicle.mileage * factor_per_mile,
                emission_factor=factor_per_mile,
            )
        )
    return results


def _total(items: Iterable[CarbonData], kind: str) -> float:
    return sum(item.consumption for item in items if item.energy_type == kind)


def generate_secr_report(
    records: Iterable[CanonicalRecord],
    year: int,
    pupil_count: int | None = None,
    organisation: str = "Academic Trust",
    vehicles: Iterable[VehicleData] = (),
) -> SECRReport:
    """Summarise one year of energy and transport emissions.

    When the data also covers the previous year and its emissions are
    non-zero, the report carries a comparison against it.
    """
    carbon = calculate_carbon_emissions(records) + calculate_vehicle_emissions(
        vehicles
    )
    year_data = [item for item in carbon if item.year == year]
    previous_data = [item for item in carbon if item.year == year - 1]
    total_emissions = sum(item.carbon_emissions for item in year_data)
    previous_emissions = sum(item.carbon_emissions for item in previous_data)

    comparison = None
    if previous_emissions:
        comparison = YearComparison(
            year=year - 1,
            total_emissions=previous_emissions,
            percentage_change=(total_emissions - previous_emissions)
            / previous_emissions
            * 100,
        )

    return SECRReport(
        organisation=organisation,
        year=year,
        total_electricity_kwh=_total(year_data, EnergyType.ELECTRICITY),
        total_gas_kwh=_total(year_data, EnergyType.GAS),
        total_transport_miles=_total(year_data, "Transport"),
        total_carbon_emissions=total_emissions,
        carbon_intensity=total_emissions / pupil_count if pupil_count else 0.0,
        previous_year_comparison=comparison,
    )


class SpendSummary(BaseModel):
    total_spend: float
    highest_spend_site: str | None = None
    highest_spend: float | None = None

    @property
    def has_cost_data(self) -> bool:
        return self.highest_spend_site is not None


def calculate_spend_summary(records: Iterable[CanonicalRecord]) -> SpendSummary:
    """Total billed cost and the site with the largest outlay.

    Records without a cost are ignored. On a tie the site seen first wins.
    """
    by_site: dict[str, float] = {}
    for record in records:
        if record.total_cost is None:
            continue
        site = record.site_name
        by_site[site] = by_site.get(site, 0.0) + record.total_cost

    if not by_site:
        return SpendSummary(total_spend=0.0)
    site, spend = max(by_site.items(), key=lambda item: item[1])
    return SpendSummary(
        total_spend=sum(by_site.values()),
        highest_spend_site=site,
        highest_spend=spend,
    )


def format_carbon_emissions(kg_co2e: float) -> str:
    if kg_co2e >= 1000:
        return f"{kg_co2e / 1000:.2f} tCO2e"
    return f"{kg_co2e:.1f} kg CO2e"


def carbon_intensity_label(intensity: float) -> str:
    if intensity < 100:
        return "Low"
    if intensity < 200:
        return "Medium"
    if intensity < 300:
        return "High"
    return "Very High"
