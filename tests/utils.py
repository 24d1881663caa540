import re

from meterledger.models import CanonicalRecord, EnergyType, RawExtraction


def clean_cli_output(output: str) -> str:
    """
    Remove ANSI escape codes, Rich formatting characters, whitespace, and newlines
    from CLI output to make assertions robust against terminal wrapping.
    """
    # 1. Remove ANSI escape codes
    ansi_escape = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
    output = ansi_escape.sub("", output)

    # 2. Remove:
    # \s - all whitespace (space, tab, newline, etc.)
    # │, ╭, ╮, ╰, ╯, ─ - Rich box characters
    return re.sub(r"[\s│╭╮╰╯─]", "", output)


def make_extraction(**overrides) -> RawExtraction:
    """A September 2024 electricity invoice for Oakfield Primary."""
    values = {
        "supplier": "British Gas Lite",
        "invoice_period": "01/09/2024 to 30/09/2024",
        "total_amount": 1250.40,
        "energy_consumed": 4800.0,
        "meter_serial": "K12345678",
        "mprn": "1900012345678",
        "site_name": "Oakfield Primary",
        "energy_type": EnergyType.ELECTRICITY,
        "source_file_id": "file-1",
        "source_file_name": "oakfield_sep.pdf",
    }
    values.update(overrides)
    return RawExtraction(**values)


def make_record(**overrides) -> CanonicalRecord:
    values = {
        "site_name": "Oakfield Primary",
        "meter_number": "K12345678",
        "energy_type": EnergyType.ELECTRICITY,
        "year": 2024,
        "month": "September",
        "total_kwh": 4800.0,
        "total_cost": 1250.40,
        "mpan": "1900012345678",
    }
    values.update(overrides)
    return CanonicalRecord(**values)
