import asyncio
import logging
import os
import tempfile
from pathlib import Path

import typer
from dotenv import load_dotenv
from pydantic import ValidationError

# Disable gRPC fork support warnings
# These warnings occur when gRPC clients (Google APIs, Anthropic SDK) are used
# with thread pools. Setting this env var disables the warnings.
os.environ.setdefault("GRPC_ENABLE_FORK_SUPPORT", "0")

from meterledger.config import Settings, get_settings
from meterledger.core.anomaly import detect_usage_anomalies
from meterledger.integrations.anthropic_extractor import InvoiceExtractor
from meterledger.integrations.gdrive import GDriveClient
from meterledger.integrations.gsheets import GSheetsClient, SheetsLedger
from meterledger.integrations.local_export import LocalExporter, read_vehicle_csv
from meterledger.models import (
    CanonicalRecord,
    EnergyType,
    IngestSummary,
    ProcessingResult,
)
from meterledger.pipeline import (
    LOCAL_SITE_NAME,
    ingest_results,
    local_documents,
    run_pipeline,
)
from meterledger.reporting import (
    RecordFilter,
    calculate_kpis,
    calculate_spend_summary,
    carbon_intensity_label,
    format_carbon_emissions,
    generate_secr_report,
)
from meterledger.store import RunStore, RunStoreError, SnapshotWriteError
from meterledger.utils.url_parser import (
    URLParserError,
    parse_folder_id,
    parse_spreadsheet_id,
)

load_dotenv()

app = typer.Typer(no_args_is_help=True)
runs_app = typer.Typer(
    no_args_is_help=True, help="Inspect and manage extraction runs."
)
app.add_typer(runs_app, name="runs")


@app.callback(invoke_without_command=True)
def callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Energy invoice ledger for a school trust."""
    try:
        settings = get_settings()
    except ValidationError as e:
        raise fail(f"Invalid configuration: {e}") from e
    level = "DEBUG" if verbose else settings.log_level
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def fail(message: str) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(code=1)


def cli_progress(event_type: str, message: str):
    """Callback to handle progress events and output to CLI."""
    if "error" in event_type:
        typer.echo(message, err=True)
    else:
        typer.echo(message)


def open_store(settings: Settings) -> RunStore:
    return RunStore(settings.runs_path, max_runs=settings.max_runs)


def build_extractor(settings: Settings) -> InvoiceExtractor:
    if not settings.anthropic_api_key:
        raise fail("ANTHROPIC_API_KEY is not configured.")
    try:
        return InvoiceExtractor(
            api_key=settings.anthropic_api_key,
            model=settings.extraction_model,
            max_tokens=settings.extraction_max_tokens,
        )
    except Exception as e:
        raise fail(f"Failed to initialize extractor: {e}") from e


def build_ledger(sheet: str | None) -> SheetsLedger | None:
    if not sheet:
        return None
    try:
        spreadsheet_id = parse_spreadsheet_id(sheet)
    except URLParserError as e:
        raise fail(f"Invalid spreadsheet: {e}") from e
    typer.echo(f"Will write results to spreadsheet: {spreadsheet_id}")
    return SheetsLedger(GSheetsClient(spreadsheet_id=spreadsheet_id))


def ingest(
    results: list[ProcessingResult],
    store: RunStore,
    name: str | None,
    ledger: SheetsLedger | None,
    fresh: bool,
) -> IngestSummary:
    try:
        summary = ingest_results(
            results,
            store,
            run_name=name,
            ledger=ledger,
            merge_with_current=not fresh,
            on_progress=cli_progress,
        )
    except SnapshotWriteError as e:
        for error in e.errors:
            typer.echo(f"  {error.file_name}: {error.message}", err=True)
        raise fail(str(e)) from e

    typer.echo(
        f"Processed {summary.processed} records "
        f"({summary.inserted} inserted, {summary.updated} updated, "
        f"{summary.skipped} duplicates skipped, {summary.meters_added} new meters)"
    )
    if summary.errors:
        typer.echo(f"{len(summary.errors)} file(s) failed:", err=True)
        for error in summary.errors:
            typer.echo(f"  {error.file_name}: {error.message}", err=True)
    return summary


def load_records(settings: Settings, run_id: str | None, sheet: str | None):
    """Records of a run, the current run, or the spreadsheet ledger."""
    if sheet:
        ledger = build_ledger(sheet)
        try:
            return ledger.load_records()  # type: ignore[union-attr]
        except Exception as e:
            raise fail(f"Failed to read spreadsheet: {e}") from e

    store = open_store(settings)
    try:
        run = store.get_run(run_id) if run_id else store.current_run()
    except RunStoreError as e:
        raise fail(str(e)) from e
    if run is None:
        raise fail(f"Run not found: {run_id}" if run_id else "No current run.")
    return list(run.records)


FRESH_OPTION = typer.Option(
    False, "--fresh", help="Start a new dataset instead of merging into the current run"
)


@app.command()
def sync(
    folder: str | None = typer.Option(
        None, "--folder", "-f", help="Google Drive root folder ID or URL"
    ),
    sheet: str | None = typer.Option(
        None, "--sheet", "-s", help="Google Sheets ledger ID or URL to mirror into"
    ),
    name: str | None = typer.Option(None, "--name", "-n", help="Run name"),
    workers: int | None = typer.Option(
        None, "--workers", "-w", help="Number of parallel download workers"
    ),
    fresh: bool = FRESH_OPTION,
):
    """Extract every invoice in a Drive folder (one sub-folder per school)."""
    settings = get_settings()
    folder = folder or settings.google_drive_folder_id
    if not folder:
        raise fail(
            "No folder given. Use --folder or set METERLEDGER_GOOGLE_DRIVE_FOLDER_ID."
        )
    try:
        folder_id = parse_folder_id(folder)
    except URLParserError as e:
        raise fail(str(e)) from e

    typer.echo(f"Processing folder: {folder_id}")

    try:
        client = GDriveClient(max_workers=workers or settings.workers)
        files = client.list_invoice_files(folder_id)
    except Exception as e:
        raise fail(f"Error communicating with Google Drive: {e}") from e

    if not files:
        typer.echo("No supported documents found in folder.")
        return

    extractor = build_extractor(settings)
    ledger = build_ledger(sheet or settings.google_sheets_id)

    async def execute_pipeline():
        with tempfile.TemporaryDirectory() as tmp_dir:
            download_results = client.download_files(files, Path(tmp_dir))
            return await run_pipeline(
                download_results,
                extractor,
                timeout=settings.extraction_timeout_seconds,
                on_progress=cli_progress,
            )

    results = asyncio.run(execute_pipeline())

    # Downloads finish in any order; precedence follows the folder listing.
    order = {file.id: position for position, file in enumerate(files)}
    results.sort(key=lambda result: order.get(result.file_id, len(order)))

    ingest(results, open_store(settings), name, ledger, fresh)


@app.command()
def extract(
    paths: list[Path] = typer.Argument(..., help="Invoice PDFs or images"),
    site: str = typer.Option(
        LOCAL_SITE_NAME, "--site", help="Site name used when a document has none"
    ),
    sheet: str | None = typer.Option(
        None, "--sheet", "-s", help="Google Sheets ledger ID or URL to mirror into"
    ),
    name: str | None = typer.Option(None, "--name", "-n", help="Run name"),
    fresh: bool = FRESH_OPTION,
):
    """Extract invoices from local files."""
    settings = get_settings()
    extractor = build_extractor(settings)
    ledger = build_ledger(sheet)

    results = asyncio.run(
        run_pipeline(
            local_documents(paths, site_name=site),
            extractor,
            timeout=settings.extraction_timeout_seconds,
            on_progress=cli_progress,
        )
    )
    ingest(results, open_store(settings), name, ledger, fresh)


@runs_app.command("list")
def list_runs():
    """List runs, newest first. The current run is marked with '*'."""
    store = open_store(get_settings())
    try:
        runs = store.list_runs()
        current = store.current_run()
    except RunStoreError as e:
        raise fail(str(e)) from e
    if not runs:
        typer.echo("No runs yet.")
        return
    for run in runs:
        marker = "*" if current and run.id == current.id else " "
        typer.echo(
            f"{marker} {run.id}  {run.created_at:%Y-%m-%d %H:%M}  "
            f"{run.record_count:>5} records  {len(run.errors)} errors  {run.name}"
        )


@runs_app.command("use")
def use_run(run_id: str = typer.Argument(..., help="Run to make current")):
    """Make a run the current one."""
    try:
        found = open_store(get_settings()).set_current(run_id)
    except RunStoreError as e:
        raise fail(str(e)) from e
    if not found:
        raise fail(f"Run not found: {run_id}")
    typer.echo(f"Current run is now {run_id}")


@runs_app.command("delete")
def delete_run(
    run_id: str = typer.Argument(..., help="Run to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete a run."""
    if not yes:
        typer.confirm(f"Delete run {run_id}?", abort=True)
    store = open_store(get_settings())
    try:
        deleted = store.delete_run(run_id)
        current = store.current_run()
    except RunStoreError as e:
        raise fail(str(e)) from e
    if not deleted:
        raise fail(f"Run not found: {run_id}")
    typer.echo(f"Deleted {run_id}. Current run: {current.id if current else 'none'}")


@runs_app.command("stats")
def run_stats():
    """Show run store statistics."""
    try:
        stats = open_store(get_settings()).stats()
    except RunStoreError as e:
        raise fail(str(e)) from e
    for key, value in stats.items():
        typer.echo(f"{key}: {value}")


@app.command()
def anomalies(
    run: str | None = typer.Option(None, "--run", help="Run ID (default: current)"),
    sheet: str | None = typer.Option(None, "--sheet", help="Read from a ledger"),
    threshold: float | None = typer.Option(
        None, "--threshold", "-t", help="Deviation threshold in standard deviations"
    ),
    school: str | None = typer.Option(None, "--school"),
    meter: str | None = typer.Option(None, "--meter"),
    energy_type: EnergyType | None = typer.Option(None, "--energy-type"),
):
    """List months whose usage or cost is unusual for the meter."""
    settings = get_settings()
    records = RecordFilter(school=school, meter=meter, energy_type=energy_type).apply(
        load_records(settings, run, sheet)
    )
    found = detect_usage_anomalies(records, threshold or settings.anomaly_threshold)
    if not found:
        typer.echo("No anomalies found.")
        return
    for anomaly in found:
        cost = (
            f", cost {anomaly.cost_deviation:+.2f}σ"
            if anomaly.cost_deviation is not None
            else ""
        )
        typer.echo(
            f"{anomaly.site_name} {anomaly.meter_number} ({anomaly.energy_type.value}) "
            f"{anomaly.month} {anomaly.year}: {anomaly.total_kwh:,.1f} kWh vs "
            f"{anomaly.baseline:,.1f} baseline, {anomaly.direction} "
            f"{anomaly.deviation:+.2f}σ{cost}"
        )


def _latest_year(records: list[CanonicalRecord]) -> int | None:
    return max((record.year for record in records), default=None)


@app.command()
def report(
    year: int | None = typer.Option(None, "--year", help="Reporting year"),
    run: str | None = typer.Option(None, "--run", help="Run ID (default: current)"),
    sheet: str | None = typer.Option(None, "--sheet", help="Read from a ledger"),
    school: str | None = typer.Option(None, "--school"),
    pupils: int | None = typer.Option(None, "--pupils", help="Pupil count"),
    vehicles_csv: Path | None = typer.Option(
        None, "--vehicles", help="CSV of vehicle mileage to include as transport"
    ),
):
    """Print consumption KPIs, spend and the carbon (SECR) summary."""
    records = RecordFilter(school=school).apply(
        load_records(get_settings(), run, sheet)
    )
    vehicles = []
    if vehicles_csv is not None:
        try:
            vehicles = read_vehicle_csv(vehicles_csv)
        except (OSError, ValueError) as e:
            raise fail(f"Failed to read vehicle data: {e}") from e
        if school:
            vehicles = [v for v in vehicles if v.site_name == school]

    year = year or _latest_year(records)
    if year is None:
        typer.echo("No records to report on.")
        return

    year_records = [record for record in records if record.year == year]
    kpis = calculate_kpis(year_records)
    spend = calculate_spend_summary(year_records)
    secr = generate_secr_report(
        records,
        year,
        pupil_count=pupils,
        organisation=school or "Academic Trust",
        vehicles=vehicles,
    )

    typer.echo(f"{secr.organisation}: {year}")
    typer.echo(f"Total consumption: {kpis.total_kwh:,.1f} kWh")
    typer.echo(f"Average monthly consumption: {kpis.avg_monthly_kwh:,.1f} kWh")
    typer.echo(f"Active meters: {kpis.active_meters}")
    if spend.has_cost_data:
        typer.echo(f"Total spend: £{spend.total_spend:,.2f}")
        typer.echo(
            f"Largest outlay: {spend.highest_spend_site} "
            f"(£{spend.highest_spend:,.2f})"
        )
    else:
        typer.echo("No cost data.")
    typer.echo(f"Electricity: {secr.total_electricity_kwh:,.1f} kWh")
    typer.echo(f"Gas: {secr.total_gas_kwh:,.1f} kWh")
    if secr.total_transport_miles:
        typer.echo(f"Transport: {secr.total_transport_miles:,.1f} miles")
    typer.echo(f"Emissions: {format_carbon_emissions(secr.total_carbon_emissions)}")
    comparison = secr.previous_year_comparison
    if comparison is not None:
        typer.echo(
            f"Change vs {comparison.year}: {comparison.percentage_change:+.1f}% "
            f"(from {format_carbon_emissions(comparison.total_emissions)})"
        )
    if pupils:
        typer.echo(
            f"Carbon intensity: {secr.carbon_intensity:.1f} kg CO2e per pupil "
            f"({carbon_intensity_label(secr.carbon_intensity)})"
        )


@app.command()
def export(
    output: Path = typer.Argument(..., help="CSV file to write"),
    run: str | None = typer.Option(None, "--run", help="Run ID (default: current)"),
    append: bool = typer.Option(
        False, "--append", help="Add rows to an existing file instead of replacing it"
    ),
):
    """Export a run's records to CSV."""
    records = load_records(get_settings(), run, None)
    try:
        count = LocalExporter().export(records, output, append=append)
    except OSError as e:
        raise fail(f"Failed to write {output}: {e}") from e
    typer.echo(f"Exported {count} records to {output}")


def main():
    app()


if __name__ == "__main__":
    main()
