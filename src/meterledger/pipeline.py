"""Batch pipeline: documents -> extractions -> canonical records -> run."""

import asyncio
import logging
import mimetypes
from collections.abc import Callable, Iterable
from datetime import date
from pathlib import Path

from meterledger.core.merge import (
    dedupe_meters,
    dedupe_records,
    merge_meters,
    upsert_records,
)
from meterledger.core.transform import transform_extraction
from meterledger.integrations.anthropic_extractor import InvoiceExtractor
from meterledger.integrations.gdrive import DownloadResult
from meterledger.integrations.gsheets import SheetsLedger
from meterledger.models import FileError, IngestSummary, ProcessingResult
from meterledger.store import RunStore, RunStoreError, SnapshotWriteError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, str], None]

LOCAL_SITE_NAME = "Local Upload"


def _notify(
    on_progress: ProgressCallback | None, event_type: str, message: str
) -> None:
    logger.debug("%s: %s", event_type, message)
    if on_progress:
        on_progress(event_type, message)


def local_documents(
    paths: Iterable[Path], site_name: str | None = LOCAL_SITE_NAME
) -> list[DownloadResult]:
    """Describe local files the same way as downloaded Drive files."""
    results = []
    for path in paths:
        mime_type, _ = mimetypes.guess_type(path.name)
        error = None if path.is_file() else f"File not found: {path}"
        results.append(
            DownloadResult(
                success=error is None,
                file_id=str(path),
                dest_path=path,
                mime_type=mime_type or "application/octet-stream",
                site_name=site_name,
                error=error,
            )
        )
    return results


async def process_document(
    download_result: DownloadResult,
    extractor: InvoiceExtractor,
    timeout: float | None = None,
    on_progress: ProgressCallback | None = None,
) -> ProcessingResult:
    """Extract one document. Failures are captured on the result, never raised.

    Args:
        download_result: Where the document is and what it is
        extractor: Extractor for structured invoice data
        timeout: Per-document deadline in seconds
        on_progress: Optional callback for progress updates (event_type, message)
    """
    file_name = download_result.dest_path.name
    result = ProcessingResult(
        file_id=download_result.file_id,
        file_name=file_name,
        site_name=download_result.site_name,
        download_success=download_result.success,
        download_error=download_result.error if not download_result.success else None,
    )

    if not download_result.success:
        return result

    try:
        loop = asyncio.get_running_loop()
        content = await loop.run_in_executor(None, download_result.dest_path.read_bytes)
        extraction_result = await extractor.extract_invoice(
            content,
            download_result.mime_type,
            site_name=download_result.site_name,
            file_id=download_result.file_id,
            file_name=file_name,
            timeout=timeout,
        )
    except Exception as e:
        result.extraction_error = str(e) or type(e).__name__
        message = f"Failed to extract data from {file_name}: {e}"
        _notify(on_progress, "llm_error", message)
        return result

    result.extraction_result = extraction_result
    extraction = extraction_result.extraction
    _notify(
        on_progress,
        "llm_success",
        f"Extracted {file_name}: {extraction.document_type.value}, "
        f"{extraction.invoice_period or 'no period'}, "
        f"{extraction.energy_consumed:.1f} kWh, {extraction.total_amount:.2f}",
    )
    return result


async def run_pipeline(
    download_results: Iterable[DownloadResult],
    extractor: InvoiceExtractor,
    timeout: float | None = None,
    on_progress: ProgressCallback | None = None,
) -> list[ProcessingResult]:
    """Start extracting each document as soon as it is available.

    Args:
        download_results: Iterable (typically a generator) of DownloadResults
        extractor: Extractor for structured invoice data
        timeout: Per-document deadline in seconds
        on_progress: Optional callback for progress updates (event_type, message)

    Returns:
        One ProcessingResult per document, in arrival order
    """
    tasks = []
    for download_result in download_results:
        file_name = download_result.dest_path.name
        if download_result.success:
            _notify(on_progress, "download_success", f"Downloaded {file_name}")
        else:
            message = f"Failed to download {file_name}: {download_result.error}"
            _notify(on_progress, "download_error", message)

        task = asyncio.create_task(
            process_document(download_result, extractor, timeout, on_progress)
        )
        tasks.append(task)

    results = await asyncio.gather(*tasks)
    return list(results)


def ingest_results(
    results: list[ProcessingResult],
    store: RunStore,
    run_name: str | None = None,
    *,
    ledger: SheetsLedger | None = None,
    merge_with_current: bool = True,
    today: date | None = None,
    on_progress: ProgressCallback | None = None,
) -> IngestSummary:
    """Turn processed documents into a new run.

    Records are deduplicated by natural key (first occurrence wins), then
    upserted into the current run's records unless ``merge_with_current`` is
    False, and committed as a new current run.

    Args:
        results: Per-document outcomes, in the order they should take precedence
        store: Run store receiving the snapshot
        run_name: Display name of the run (defaults to today's date)
        ledger: Optional Google Sheets ledger mirrored with the batch
        merge_with_current: Reconcile against the current run's records
        today: Fallback date for unreadable invoice periods
        on_progress: Optional callback for progress updates (event_type, message)

    Returns:
        IngestSummary with counts and per-file errors

    Raises:
        SnapshotWriteError: If the run could not be committed or the current
            run could not be read for merging
    """
    extractions = []
    records = []
    meters = []
    errors = []

    for result in results:
        message = result.error_message
        if message is not None:
            errors.append(
                FileError(
                    file_id=result.file_id,
                    file_name=result.file_name,
                    message=message,
                )
            )
            continue
        extraction = result.extraction_result.extraction  # type: ignore[union-attr]
        extractions.append(extraction)
        record, meter = transform_extraction(
            extraction,
            site_name=result.site_name,
            today=today,
        )
        records.append(record)
        meters.append(meter)

    unique_records = dedupe_records(records)
    unique_meters = dedupe_meters(meters)
    skipped = len(records) - len(unique_records)

    existing_records = []
    existing_meters = []
    if merge_with_current:
        try:
            existing_records = store.load_current()
            existing_meters = store.load_current_meters()
        except RunStoreError as e:
            raise SnapshotWriteError(
                f"Failed to read the current run: {e}", errors=errors
            ) from e
    merged_records, merge_result = upsert_records(existing_records, unique_records)
    merged_meters, meters_added = merge_meters(existing_meters, unique_meters)

    name = run_name or f"Energy Extract {(today or date.today()).isoformat()}"
    run = store.write_run(
        name,
        merged_records,
        meters=merged_meters,
        extractions=extractions,
        processed_count=len(unique_records),
        skipped_count=skipped,
        inserted_count=merge_result.inserted,
        updated_count=merge_result.updated,
        errors=errors,
    )
    _notify(
        on_progress,
        "run_saved",
        f"Saved run '{run.name}' ({run.id}): {merge_result.inserted} inserted, "
        f"{merge_result.updated} updated, {skipped} duplicates skipped",
    )

    if ledger is not None and unique_records:
        try:
            sheet_result = ledger.upsert_energy_records(unique_records)
            added = ledger.append_meters(unique_meters)
            _notify(
                on_progress,
                "sheets_success",
                f"Spreadsheet updated: {sheet_result.inserted} inserted, "
                f"{sheet_result.updated} updated, {added} new meters",
            )
        except Exception as e:
            logger.warning("Spreadsheet update failed: %s", e)
            _notify(on_progress, "sheets_error", f"Failed to update spreadsheet: {e}")

    return IngestSummary(
        run_id=run.id,
        run_name=run.name,
        processed=len(unique_records),
        skipped=skipped,
        inserted=merge_result.inserted,
        updated=merge_result.updated,
        meters_added=meters_added,
        errors=errors,
    )
