import re
from urllib.parse import urlparse


class URLParserError(ValueError):
    """Raised when a URL cannot be parsed for a Google ID."""


GOOGLE_DOMAINS = ("drive.google.com", "docs.google.com")

# Google Drive folders: /drive/folders/{ID} or /drive/u/0/folders/{ID}
FOLDER_PATTERN = re.compile(r"/drive/(?:u/\d+/)?folders/([a-zA-Z0-9_-]+)")
# Google Drive files: /file/d/{ID}/view
FILE_PATTERN = re.compile(r"/file/d/([a-zA-Z0-9_-]+)")
# Google Sheets: /spreadsheets/d/{ID}/edit
SHEET_PATTERN = re.compile(r"/spreadsheets/d/([a-zA-Z0-9_-]+)")

PATTERNS = [FOLDER_PATTERN, FILE_PATTERN, SHEET_PATTERN]

# Raw Drive/Sheets ids; rejects pasted text with spaces, slashes or quotes
# before it reaches a Drive query string.
RAW_ID_PATTERN = re.compile(r"[a-zA-Z0-9_-]+")


def parse_google_id(input_str: str, patterns: list[re.Pattern] | None = None) -> str:
    """
    Parses a Google Drive or Google Sheets URL to extract the ID.
    If the input is already an ID, it returns it as-is.

    Args:
        input_str: Raw id or URL
        patterns: URL path patterns to accept (default: folders, files, sheets)
    """
    if not input_str or not input_str.strip():
        raise URLParserError("Input string cannot be empty or whitespace")

    input_str = input_str.strip()
    if not input_str.startswith("http"):
        if not RAW_ID_PATTERN.fullmatch(input_str):
            raise URLParserError(f"Not a valid Google ID: {input_str!r}")
        return input_str

    parsed = urlparse(input_str)

    if parsed.netloc not in GOOGLE_DOMAINS:
        raise URLParserError("Unsupported URL domain")

    for pattern in patterns or PATTERNS:
        match = pattern.search(parsed.path)
        if match:
            return match.group(1)

    raise URLParserError("Could not find ID in URL")


def parse_folder_id(input_str: str) -> str:
    return parse_google_id(input_str, [FOLDER_PATTERN])


def parse_spreadsheet_id(input_str: str) -> str:
    return parse_google_id(input_str, [SHEET_PATTERN])
