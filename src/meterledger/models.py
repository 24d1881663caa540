"""Data models for invoice extraction, monthly energy records and runs."""

from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DocumentKind(str, Enum):
    INVOICE = "Invoice"
    CREDIT_NOTE = "Credit Note"


class EnergyType(str, Enum):
    ELECTRICITY = "Electricity"
    GAS = "Gas"


class MeterReading(BaseModel):
    """A single meter read printed on an invoice."""

    value: str
    date: str
    type: str | None = None


class InvoiceData(BaseModel):
    """Structured billing data the model is asked to return for one document."""

    document_type: DocumentKind = DocumentKind.INVOICE
    supplier: str = ""
    invoice_period: str = ""  # free text, e.g. "01/09/2024 to 30/09/2024"
    total_amount: float = 0.0
    energy_consumed: float = 0.0  # kWh
    correction_factor: float | None = None
    calorific_value: float | None = None
    meter_serial: str | None = None
    mprn: str | None = None
    previous_read: MeterReading | None = None
    current_read: MeterReading | None = None
    site_name: str | None = None
    energy_type: EnergyType | None = None


class RawExtraction(InvoiceData):
    """Extracted invoice data tagged with the document it came from."""

    source_file_id: str = ""
    source_file_name: str = ""


class CanonicalRecord(BaseModel):
    """One normalised monthly energy/cost entry for a single meter.

    Attributes:
        site_name: School or site the meter belongs to
        meter_number: Serial, meter-point reference or a synthetic site token
        energy_type: Electricity or Gas
        year: Billing year
        month: English month name ("January" .. "December")
        total_kwh: Signed consumption in kWh
        total_cost: Signed cost, None when unknown
        mpan: Meter-point reference, if known
        energy_type_inferred: True when the energy type was guessed from
            identifier shape rather than stated on the document
    """

    model_config = ConfigDict(frozen=True)

    site_name: str
    meter_number: str
    energy_type: EnergyType
    year: int
    month: str
    total_kwh: float
    total_cost: float | None = None
    mpan: str | None = None
    energy_type_inferred: bool = False


class MeterIdentity(BaseModel):
    """Catalog entry describing a physical meter."""

    model_config = ConfigDict(frozen=True)

    site_name: str
    address: str = ""
    mpan: str
    energy_type: EnergyType
    meter_number: str


class VehicleType(str, Enum):
    CAR = "Car"
    VAN = "Van"
    BUS = "Bus"
    OTHER = "Other"


class FuelType(str, Enum):
    PETROL = "Petrol"
    DIESEL = "Diesel"
    ELECTRIC = "Electric"
    HYBRID = "Hybrid"


class VehicleData(BaseModel):
    """Mileage driven by one school vehicle in a month."""

    model_config = ConfigDict(frozen=True)

    site_name: str
    vehicle_type: VehicleType = VehicleType.OTHER
    fuel_type: FuelType
    mileage: float  # miles
    year: int
    month: str

    @field_validator("vehicle_type", "fuel_type", mode="before")
    @classmethod
    def _title_case(cls, value):
        return value.strip().title() if isinstance(value, str) else value


class FileError(BaseModel):
    """A document that could not be turned into a record."""

    file_id: str = ""
    file_name: str
    message: str


class MergeResult(BaseModel):
    inserted: int = 0
    updated: int = 0

    @property
    def written(self) -> int:
        return self.inserted + self.updated


class ExtractionRun(BaseModel):
    """Immutable snapshot produced by one batch ingestion.

    ``records`` and ``meters`` are the full merged dataset; ``extractions``
    holds only the raw invoice data read by this batch.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    created_at: datetime
    records: list[CanonicalRecord] = Field(default_factory=list)
    meters: list[MeterIdentity] = Field(default_factory=list)
    extractions: list[RawExtraction] = Field(default_factory=list)
    processed_count: int = 0
    skipped_count: int = 0
    inserted_count: int = 0
    updated_count: int = 0
    errors: list[FileError] = Field(default_factory=list)

    @property
    def record_count(self) -> int:
        return len(self.records)


class UsageAnomaly(BaseModel):
    """A monthly record whose usage or cost deviates from its meter's baseline."""

    model_config = ConfigDict(frozen=True)

    id: str
    site_name: str
    meter_number: str
    energy_type: EnergyType
    year: int
    month: str
    total_kwh: float
    total_cost: float | None = None
    deviation: float  # usage z-score
    cost_deviation: float | None = None
    baseline: float  # mean usage of the cohort
    direction: str  # "increase" | "decrease"


class ExtractionResult(BaseModel):
    """Wrapper for extraction result with metadata."""

    extraction: RawExtraction
    input_tokens: int
    output_tokens: int
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    processing_time: float  # in seconds
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ProcessingResult(BaseModel):
    """Outcome of pushing one source document through the pipeline."""

    file_id: str
    file_name: str
    site_name: str | None = None
    download_success: bool = True
    download_error: str | None = None
    extraction_result: ExtractionResult | None = None
    extraction_error: str | None = None

    @property
    def error_message(self) -> str | None:
        if not self.download_success:
            return self.download_error or "Failed to download file"
        if self.extraction_result is None:
            return self.extraction_error or "Failed to process file"
        return None


class IngestSummary(BaseModel):
    """What a batch ingestion did, returned even when some files failed."""

    run_id: str
    run_name: str
    processed: int = 0
    skipped: int = 0
    inserted: int = 0
    updated: int = 0
    meters_added: int = 0
    errors: list[FileError] = Field(default_factory=list)
