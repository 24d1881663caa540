"""JSON file store for extraction runs and the current-run pointer.

The whole ledger lives in one JSON document::

    {"runs": [<newest run>, ..., <oldest run>], "current_run_id": "run_..."}

Every mutation rewrites the document through a temporary file and
``os.replace`` while holding an exclusive ``fcntl`` lock on a sidecar lock
file, so a reader never observes a half-written ledger.
"""

import fcntl
import logging
import os
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from meterledger.models import (
    CanonicalRecord,
    ExtractionRun,
    FileError,
    MeterIdentity,
    RawExtraction,
)

logger = logging.getLogger(__name__)


class RunStoreError(Exception):
    """Base exception for run store failures."""


class SnapshotWriteError(RunStoreError):
    """Raised when a run could not be committed.

    Attributes:
        errors: Per-file errors collected before the commit was attempted
    """

    def __init__(self, message: str, errors: list[FileError] | None = None):
        super().__init__(message)
        self.errors = list(errors or [])


class _Ledger(BaseModel):
    runs: list[ExtractionRun] = Field(default_factory=list)
    current_run_id: str | None = None


class RunStore:
    """Versioned snapshots of ingested records with a "current run" pointer.

    Attributes:
        path: Location of the JSON ledger
        max_runs: Number of most recent runs kept on each write
    """

    def __init__(self, path: Path, max_runs: int = 10):
        self.path = Path(path)
        self.max_runs = max_runs

    @property
    def _lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read(self) -> _Ledger:
        if not self.path.exists():
            return _Ledger()
        try:
            return _Ledger.model_validate_json(self.path.read_bytes())
        except ValidationError as e:
            raise RunStoreError(f"Run ledger {self.path} is corrupt: {e}") from e

    def _write(self, ledger: _Ledger) -> None:
        fd, tmp_name = tempfile.mkstemp(
            dir=self.path.parent, prefix=self.path.name, suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(ledger.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def write_run(
        self,
        name: str,
        records: list[CanonicalRecord],
        *,
        meters: list[MeterIdentity] | None = None,
        extractions: list[RawExtraction] | None = None,
        processed_count: int = 0,
        skipped_count: int = 0,
        inserted_count: int = 0,
        updated_count: int = 0,
        errors: list[FileError] | None = None,
        created_at: datetime | None = None,
    ) -> ExtractionRun:
        """Commit a new run and make it current.

        Either the run and the new pointer are both persisted or nothing is.

        Raises:
            SnapshotWriteError: If the ledger could not be written
        """
        run = ExtractionRun(
            id=f"run_{uuid.uuid4().hex[:12]}",
            name=name,
            created_at=created_at or datetime.now(UTC),
            records=records,
            meters=meters or [],
            extractions=extractions or [],
            processed_count=processed_count,
            skipped_count=skipped_count,
            inserted_count=inserted_count,
            updated_count=updated_count,
            errors=errors or [],
        )

        try:
            with self._locked():
                ledger = self._read()
                ledger.runs.insert(0, run)
                dropped = ledger.runs[self.max_runs :]
                ledger.runs = ledger.runs[: self.max_runs]
                ledger.current_run_id = run.id
                self._write(ledger)
        except (OSError, RunStoreError) as e:
            raise SnapshotWriteError(
                f"Failed to save run '{name}': {e}", errors=errors
            ) from e

        for old in dropped:
            logger.info("Pruned run %s (%s)", old.id, old.name)
        logger.info("Saved run %s with %d records", run.id, run.record_count)
        return run

    def list_runs(self) -> list[ExtractionRun]:
        """All runs, newest first."""
        return self._read().runs

    def get_run(self, run_id: str) -> ExtractionRun | None:
        return next((run for run in self.list_runs() if run.id == run_id), None)

    def current_run(self) -> ExtractionRun | None:
        ledger = self._read()
        if ledger.current_run_id is None:
            return None
        return next(
            (run for run in ledger.runs if run.id == ledger.current_run_id), None
        )

    def load_current(self) -> list[CanonicalRecord]:
        """Records of the current run, or an empty list if there is none."""
        run = self.current_run()
        return list(run.records) if run else []

    def load_current_meters(self) -> list[MeterIdentity]:
        run = self.current_run()
        return list(run.meters) if run else []

    def set_current(self, run_id: str) -> bool:
        """Point "current" at ``run_id``. Returns False if no such run exists."""
        with self._locked():
            ledger = self._read()
            if not any(run.id == run_id for run in ledger.runs):
                return False
            ledger.current_run_id = run_id
            self._write(ledger)
        logger.info("Current run set to %s", run_id)
        return True

    def delete_run(self, run_id: str) -> bool:
        """Delete a run. Returns False if no such run exists.

        Deleting the current run moves the pointer to the most recently
        created remaining run, or clears it when none remain.
        """
        with self._locked():
            ledger = self._read()
            remaining = [run for run in ledger.runs if run.id != run_id]
            if len(remaining) == len(ledger.runs):
                return False

            ledger.runs = remaining
            if ledger.current_run_id == run_id:
                # max() keeps the first of equal timestamps, i.e. the newer insert
                newest = max(remaining, key=lambda run: run.created_at, default=None)
                ledger.current_run_id = newest.id if newest else None
            self._write(ledger)

        logger.info("Deleted run %s; current is now %s", run_id, ledger.current_run_id)
        return True

    def stats(self) -> dict:
        ledger = self._read()
        current = next(
            (run for run in ledger.runs if run.id == ledger.current_run_id), None
        )
        return {
            "total_runs": len(ledger.runs),
            "total_records": sum(run.record_count for run in ledger.runs),
            "current_run_id": current.id if current else None,
            "current_run_name": current.name if current else None,
            "current_record_count": current.record_count if current else 0,
        }
