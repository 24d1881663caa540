"""External collaborators: extraction model, Google Drive and Sheets, CSV."""

from meterledger.integrations.anthropic_extractor import (
    ExtractionError,
    ExtractionIncompleteError,
    ExtractionRefusedError,
    ExtractionTimeoutError,
    InvoiceExtractor,
    UnsupportedDocumentError,
)
from meterledger.integrations.gdrive import GDriveClient
from meterledger.integrations.gsheets import GSheetsClient, SheetsLedger
from meterledger.integrations.local_export import LocalExporter

__all__ = [
    "ExtractionError",
    "ExtractionIncompleteError",
    "ExtractionRefusedError",
    "ExtractionTimeoutError",
    "GDriveClient",
    "GSheetsClient",
    "InvoiceExtractor",
    "LocalExporter",
    "SheetsLedger",
    "UnsupportedDocumentError",
]
