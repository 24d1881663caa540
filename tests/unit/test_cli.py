import csv
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from meterledger.core.periods import MONTHS
from meterledger.integrations.gdrive import DownloadResult, DriveInvoiceFile
from meterledger.main import app
from meterledger.models import ExtractionResult
from meterledger.store import RunStore
from tests.utils import clean_cli_output, make_extraction, make_record

pytestmark = pytest.mark.unit

runner = CliRunner()

FOLDER_URL = "https://drive.google.com/drive/folders/XYZ123"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Point the run store at a temp dir and clear external configuration."""
    monkeypatch.setenv("METERLEDGER_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
    for name in (
        "METERLEDGER_ANTHROPIC_API_KEY",
        "METERLEDGER_GOOGLE_DRIVE_FOLDER_ID",
        "METERLEDGER_GOOGLE_SHEETS_ID",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def store(tmp_path):
    return RunStore(tmp_path / "data" / "extractions.json")


@pytest.fixture
def mock_gdrive_client():
    with patch("meterledger.main.GDriveClient") as mock:
        mock.return_value.list_invoice_files.return_value = []
        yield mock


@pytest.fixture
def mock_extractor():
    with patch("meterledger.main.InvoiceExtractor") as mock:
        yield mock.return_value


def extraction_result(**overrides):
    return ExtractionResult(
        extraction=make_extraction(**overrides),
        input_tokens=100,
        output_tokens=20,
        processing_time=0.1,
    )


def test_commands_are_listed():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    clean_stdout = clean_cli_output(result.output).lower()
    for command in ("sync", "extract", "runs", "anomalies", "report", "export"):
        assert command in clean_stdout


class TestSync:
    def test_folder_url_is_parsed(self, mock_gdrive_client):
        result = runner.invoke(app, ["sync", "--folder", FOLDER_URL])

        assert result.exit_code == 0
        assert "Processing folder: XYZ123" in result.output
        assert "No supported documents found" in result.output
        mock_gdrive_client.return_value.list_invoice_files.assert_called_once_with(
            "XYZ123"
        )

    def test_folder_from_environment(self, mock_gdrive_client, monkeypatch):
        monkeypatch.setenv("METERLEDGER_GOOGLE_DRIVE_FOLDER_ID", "ENV456")
        result = runner.invoke(app, ["sync"])
        assert "Processing folder: ENV456" in result.output

    def test_folder_required(self, mock_gdrive_client):
        result = runner.invoke(app, ["sync"])
        assert result.exit_code == 1
        assert "No folder given" in result.output

    def test_invalid_folder(self, mock_gdrive_client):
        result = runner.invoke(app, ["sync", "-f", "https://example.com/folders/1"])
        assert result.exit_code == 1
        assert "Unsupported URL domain" in result.output

    def test_drive_errors_exit(self, mock_gdrive_client):
        mock_gdrive_client.return_value.list_invoice_files.side_effect = RuntimeError(
            "no credentials"
        )
        result = runner.invoke(app, ["sync", "-f", "XYZ123"])
        assert result.exit_code == 1
        assert "no credentials" in result.output

    def test_missing_api_key(self, mock_gdrive_client, monkeypatch, tmp_path):
        monkeypatch.delenv("ANTHROPIC_API_KEY")
        monkeypatch.chdir(tmp_path)
        mock_gdrive_client.return_value.list_invoice_files.return_value = [
            DriveInvoiceFile(
                id="1", name="a.pdf", mime_type="application/pdf", site_name="Oak"
            )
        ]
        result = runner.invoke(app, ["sync", "-f", "XYZ123"])
        assert result.exit_code == 1
        assert "ANTHROPIC_API_KEY" in result.output

    def test_listing_order_decides_duplicates(
        self, mock_gdrive_client, mock_extractor, store, tmp_path
    ):
        files = []
        downloads = []
        for file_id in ("first", "second"):
            path = tmp_path / f"{file_id}.pdf"
            path.write_bytes(b"%PDF")
            files.append(
                DriveInvoiceFile(
                    id=file_id,
                    name=path.name,
                    mime_type="application/pdf",
                    site_name="Oakfield Primary",
                )
            )
            downloads.append(
                DownloadResult(
                    success=True,
                    file_id=file_id,
                    dest_path=path,
                    mime_type="application/pdf",
                    site_name="Oakfield Primary",
                )
            )
        client = mock_gdrive_client.return_value
        client.list_invoice_files.return_value = files
        # Second file finishes downloading first
        client.download_files.return_value = iter(reversed(downloads))

        async def extract(content, mime_type, *, file_id, **kwargs):
            amount = 100.0 if file_id == "first" else 999.0
            return extraction_result(total_amount=amount, source_file_id=file_id)

        mock_extractor.extract_invoice = AsyncMock(side_effect=extract)

        result = runner.invoke(app, ["sync", "-f", "XYZ123", "--name", "Autumn"])

        assert result.exit_code == 0, result.output
        assert "Processed 1 records" in result.output
        assert "1 duplicates skipped" in result.output
        run = store.current_run()
        assert run.name == "Autumn"
        assert [r.total_cost for r in run.records] == [100.0]


class TestExtract:
    def test_local_files(self, mock_extractor, store, tmp_path):
        invoice = tmp_path / "sep.pdf"
        invoice.write_bytes(b"%PDF")
        mock_extractor.extract_invoice = AsyncMock(
            return_value=extraction_result(site_name=None)
        )

        result = runner.invoke(
            app, ["extract", str(invoice), str(tmp_path / "missing.pdf")]
        )

        assert result.exit_code == 0, result.output
        assert "1 file(s) failed" in result.output
        assert "File not found" in result.output
        run = store.current_run()
        assert run.records[0].site_name == "Local Upload"
        assert len(run.errors) == 1

    def test_fresh_run(self, mock_extractor, store, tmp_path):
        store.write_run("old", [make_record(month="May")])
        invoice = tmp_path / "sep.pdf"
        invoice.write_bytes(b"%PDF")
        mock_extractor.extract_invoice = AsyncMock(return_value=extraction_result())

        result = runner.invoke(app, ["extract", str(invoice), "--fresh"])

        assert result.exit_code == 0, result.output
        assert [r.month for r in store.load_current()] == ["September"]


class TestRuns:
    def test_list_empty(self):
        result = runner.invoke(app, ["runs", "list"])
        assert result.exit_code == 0
        assert "No runs yet." in result.output

    def test_list_marks_current(self, store):
        old = store.write_run("Summer", [make_record()])
        store.write_run("Autumn", [make_record(), make_record(month="May")])
        store.set_current(old.id)

        result = runner.invoke(app, ["runs", "list"])

        lines = result.output.splitlines()
        assert "Autumn" in lines[0] and not lines[0].startswith("*")
        assert lines[1].startswith(f"* {old.id}")

    def test_use(self, store):
        old = store.write_run("Summer", [make_record()])
        store.write_run("Autumn", [])

        result = runner.invoke(app, ["runs", "use", old.id])

        assert result.exit_code == 0
        assert store.current_run().id == old.id

    def test_use_unknown(self):
        result = runner.invoke(app, ["runs", "use", "run_nope"])
        assert result.exit_code == 1
        assert "Run not found" in result.output

    def test_delete_current_repoints(self, store):
        older = store.write_run("Summer", [])
        newer = store.write_run("Autumn", [])

        result = runner.invoke(app, ["runs", "delete", newer.id, "--yes"])

        assert result.exit_code == 0
        assert f"Current run: {older.id}" in result.output

    def test_delete_asks_for_confirmation(self, store):
        run = store.write_run("Summer", [])
        result = runner.invoke(app, ["runs", "delete", run.id], input="n\n")
        assert result.exit_code == 1
        assert store.get_run(run.id) is not None

    def test_stats(self, store):
        store.write_run("Autumn", [make_record()])
        result = runner.invoke(app, ["runs", "stats"])
        assert "total_runs: 1" in result.output
        assert "current_run_name: Autumn" in result.output


class TestAnalysis:
    @pytest.fixture
    def seeded(self, store):
        usage = [100, 100, 100, 100, 100, 100, 100, 100, 100, 400]
        records = [
            make_record(month=MONTHS[i], total_kwh=kwh) for i, kwh in enumerate(usage)
        ]
        return store.write_run("Year", records)

    def test_anomalies(self, seeded):
        result = runner.invoke(app, ["anomalies"])
        assert result.exit_code == 0
        assert "October 2024" in result.output
        assert "increase" in result.output

    def test_anomalies_threshold_and_filter(self, seeded):
        result = runner.invoke(app, ["anomalies", "--threshold", "5"])
        assert "No anomalies found." in result.output
        result = runner.invoke(app, ["anomalies", "--energy-type", "Gas"])
        assert "No anomalies found." in result.output

    def test_anomalies_without_runs(self):
        result = runner.invoke(app, ["anomalies"])
        assert result.exit_code == 1
        assert "No current run" in result.output

    def test_report(self, seeded):
        result = runner.invoke(app, ["report", "--pupils", "10"])
        assert result.exit_code == 0, result.output
        assert "Academic Trust: 2024" in result.output
        assert "Total consumption: 1,300.0 kWh" in result.output
        assert "Emissions: 275.6 kg CO2e" in result.output
        assert "(Low)" in result.output

    def test_export(self, seeded, tmp_path):
        output = tmp_path / "energy.csv"
        result = runner.invoke(app, ["export", str(output)])
        assert result.exit_code == 0
        assert "Exported 10 records" in result.output
        with open(output, encoding="utf-8-sig", newline="") as f:
            assert len(list(csv.reader(f))) == 11

    def test_export_unknown_run(self, tmp_path):
        result = runner.invoke(app, ["export", str(tmp_path / "x.csv"), "--run", "r"])
        assert result.exit_code == 1
        assert "Run not found: r" in result.output

    def test_export_replaces_by_default(self, seeded, tmp_path):
        output = tmp_path / "energy.csv"
        runner.invoke(app, ["export", str(output)])
        result = runner.invoke(app, ["export", str(output)])
        assert result.exit_code == 0
        with open(output, encoding="utf-8-sig", newline="") as f:
            assert len(list(csv.reader(f))) == 11

    def test_export_append(self, seeded, tmp_path):
        output = tmp_path / "energy.csv"
        runner.invoke(app, ["export", str(output)])
        result = runner.invoke(app, ["export", str(output), "--append"])
        assert result.exit_code == 0
        with open(output, encoding="utf-8-sig", newline="") as f:
            assert len(list(csv.reader(f))) == 21

    def test_report_spend_summary(self, seeded):
        result = runner.invoke(app, ["report"])
        assert "Total spend: £12,504.00" in result.output
        assert "Largest outlay: Oakfield Primary (£12,504.00)" in result.output

    def test_report_without_costs(self, store):
        store.write_run("Costless", [make_record(total_cost=None)])
        result = runner.invoke(app, ["report"])
        assert "No cost data." in result.output

    def test_report_includes_vehicle_mileage(self, seeded, tmp_path):
        vehicles = tmp_path / "vehicles.csv"
        vehicles.write_text(
            "School Name,Vehicle Type,Fuel Type,Mileage,Year,Month\n"
            "Oakfield Primary,Car,petrol,100,2024,October\n"
            "Riverside Academy,Bus,Diesel,900,2024,October\n"
        )

        result = runner.invoke(
            app,
            ["report", "--vehicles", str(vehicles), "--school", "Oakfield Primary"],
        )

        assert result.exit_code == 0, result.output
        assert "Transport: 100.0 miles" in result.output
        # 1300 kWh electricity plus 100 miles by petrol car
        assert "Emissions: 306.5 kg CO2e" in result.output

    def test_report_rejects_bad_vehicle_file(self, seeded, tmp_path):
        vehicles = tmp_path / "vehicles.csv"
        vehicles.write_text("School Name,Mileage\nOakfield Primary,10\n")

        result = runner.invoke(app, ["report", "--vehicles", str(vehicles)])

        assert result.exit_code == 1
        assert "Failed to read vehicle data" in result.output
        assert "Fuel Type" in result.output

    def test_report_compares_with_previous_year(self, store):
        store.write_run(
            "Two years",
            [
                make_record(year=2023, month="January", total_kwh=1000.0),
                make_record(year=2024, month="January", total_kwh=1500.0),
            ],
        )

        result = runner.invoke(app, ["report", "--year", "2024"])

        assert "Change vs 2023: +50.0% (from 212.0 kg CO2e)" in result.output


class TestStoreFailures:
    @pytest.fixture
    def corrupt_ledger(self, store):
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text("{not json")
        return store

    @pytest.mark.parametrize(
        "args",
        [
            ["runs", "list"],
            ["runs", "use", "run_1"],
            ["runs", "delete", "run_1", "--yes"],
            ["runs", "stats"],
            ["anomalies"],
        ],
    )
    def test_corrupt_ledger_is_reported(self, corrupt_ledger, args):
        result = runner.invoke(app, args)

        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        assert "Error: Run ledger" in result.output
        assert "is corrupt" in result.output

    def test_ingest_keeps_file_errors(self, corrupt_ledger, mock_extractor, tmp_path):
        invoice = tmp_path / "sep.pdf"
        invoice.write_bytes(b"%PDF")
        mock_extractor.extract_invoice = AsyncMock(return_value=extraction_result())

        result = runner.invoke(
            app, ["extract", str(invoice), str(tmp_path / "missing.pdf")]
        )

        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        assert "missing.pdf: File not found" in result.output
        assert "Failed to read the current run" in result.output
        assert corrupt_ledger.path.read_text() == "{not json"


class TestConfiguration:
    def test_invalid_log_level(self, monkeypatch):
        monkeypatch.setenv("METERLEDGER_LOG_LEVEL", "LOUD")

        result = runner.invoke(app, ["runs", "list"])

        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        assert "Invalid configuration" in result.output

    def test_log_level_from_environment(self, monkeypatch):
        monkeypatch.setenv("METERLEDGER_LOG_LEVEL", "info")
        with patch("meterledger.main.logging.basicConfig") as basic_config:
            result = runner.invoke(app, ["runs", "list"])
        assert result.exit_code == 0
        assert basic_config.call_args.kwargs["level"] == "INFO"
