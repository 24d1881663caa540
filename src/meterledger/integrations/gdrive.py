"""Google Drive integration for listing and downloading invoice documents.

Note: The Google API Client library uses dynamic method creation at runtime.
Methods like .files() are added to Resource objects when build() is called,
so type checkers can't detect them. We use # type: ignore[attr-defined] to
suppress these warnings where appropriate.
"""

import io
import threading
from collections.abc import Generator
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

from googleapiclient.discovery import Resource, build
from googleapiclient.http import MediaIoBaseDownload
from pydantic import BaseModel, ConfigDict, Field

from meterledger.integrations.anthropic_extractor import SUPPORTED_MIME_TYPES

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
UNKNOWN_SITE_FOLDER = "Unknown Site"

# Thread-local storage for Google API services to avoid redundant build() calls
# while maintaining thread safety for httplib2.Http objects.
_thread_local = threading.local()


def _get_thread_service() -> Resource:
    """Get or create a thread-local Drive service."""
    if not hasattr(_thread_local, "drive_service"):
        _thread_local.drive_service = build("drive", "v3")
    return _thread_local.drive_service


class DriveInvoiceFile(BaseModel):
    """An invoice document found in a site's Drive folder."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    mime_type: str
    site_name: str
    modified_time: str | None = None


class DownloadResult(BaseModel):
    """Result from downloading a single file.

    Attributes:
        success: Whether the download succeeded
        file_id: The Google Drive file ID
        dest_path: Local path where the file was downloaded
        mime_type: MIME type reported by Drive
        site_name: Name of the site folder the file was found in
        error: Error message (only present if success=False)
    """

    model_config = ConfigDict(frozen=True)

    success: bool = Field(..., description="Whether the download succeeded")
    file_id: str = Field(..., description="The Google Drive file ID")
    dest_path: Path = Field(..., description="Local path where file was downloaded")
    mime_type: str = Field("application/octet-stream", description="File MIME type")
    site_name: str | None = Field(None, description="Site folder name")
    error: str | None = Field(
        None, description="Error message (only present if success=False)"
    )


def download_single_file(file: DriveInvoiceFile, dest_dir: Path) -> DownloadResult:
    """Download one file and report the outcome instead of raising.

    Files are stored under their id so equal names from different site
    folders cannot overwrite each other.
    """
    dest_path = dest_dir / file.id / file.name

    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        thread_service = _get_thread_service()
        # Note: files() is dynamically added by googleapiclient at runtime
        request = thread_service.files().get_media(fileId=file.id)  # type: ignore[attr-defined]
        with io.FileIO(str(dest_path), "wb") as fh:
            downloader = MediaIoBaseDownload(fh, request)
            done = False
            while done is False:
                _, done = downloader.next_chunk()

        return DownloadResult(
            success=True,
            file_id=file.id,
            dest_path=dest_path,
            mime_type=file.mime_type,
            site_name=file.site_name,
        )
    except Exception as e:
        return DownloadResult(
            success=False,
            file_id=file.id,
            dest_path=dest_path,
            mime_type=file.mime_type,
            site_name=file.site_name,
            error=str(e),
        )


class GDriveClient:
    """Client for a Drive folder laid out as one sub-folder per site."""

    def __init__(self, max_workers: int = 4):
        self._service: Resource | None = None  # Private cache for lazy initialization
        self.max_workers = max_workers

    @property
    def service(self) -> Resource:
        """Lazily initialize and return the Google Drive service."""
        if self._service is None:
            self._service = build("drive", "v3")
        return self._service

    def _list_all(self, query: str, fields: str) -> list[dict]:
        items: list[dict] = []
        page_token = None
        while True:
            # Note: files() is dynamically added by googleapiclient at runtime
            response = (
                self.service.files()  # type: ignore[attr-defined]
                .list(q=query, fields=f"nextPageToken, {fields}", pageToken=page_token)
                .execute()
            )
            items.extend(response.get("files", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return items

    def list_subfolders(self, folder_id: str) -> list[dict]:
        query = (
            f"'{folder_id}' in parents and mimeType = '{FOLDER_MIME_TYPE}' "
            "and trashed = false"
        )
        folders = self._list_all(query, "files(id, name)")
        return [
            {"id": folder["id"], "name": folder.get("name") or UNKNOWN_SITE_FOLDER}
            for folder in folders
        ]

    def list_files(self, folder_id, mime_types=None):
        query = (
            f"'{folder_id}' in parents and mimeType != '{FOLDER_MIME_TYPE}' "
            "and trashed = false"
        )
        if mime_types:
            mime_query = " or ".join([f"mimeType='{m}'" for m in sorted(mime_types)])
            query += f" and ({mime_query})"
        return self._list_all(query, "files(id, name, mimeType, modifiedTime)")

    def list_invoice_files(self, root_folder_id: str) -> list[DriveInvoiceFile]:
        """List supported documents in every site sub-folder of the root folder.

        The sub-folder name is used as the site name hint for its documents.
        """
        invoice_files = []
        for folder in self.list_subfolders(root_folder_id):
            items = self.list_files(folder["id"], mime_types=SUPPORTED_MIME_TYPES)
            for item in items:
                if item.get("mimeType") not in SUPPORTED_MIME_TYPES:
                    continue
                if not item.get("id"):
                    continue
                invoice_files.append(
                    DriveInvoiceFile(
                        id=item["id"],
                        name=item.get("name") or "Unnamed Document",
                        mime_type=item["mimeType"],
                        site_name=folder["name"],
                        modified_time=item.get("modifiedTime"),
                    )
                )
        return invoice_files

    def download_files(
        self, files: list[DriveInvoiceFile], dest_dir: Path
    ) -> "Generator[DownloadResult, None, None]":
        """Download multiple files in parallel, yielding results as they complete.

        Args:
            files: Files returned by list_invoice_files
            dest_dir: Destination directory path

        Yields:
            DownloadResult for each file, in completion order
        """
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [
                executor.submit(download_single_file, file, dest_dir) for file in files
            ]
            for future in as_completed(futures):
                yield future.result()
