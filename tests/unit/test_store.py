"""Unit tests for the JSON run store."""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from meterledger.models import FileError
from meterledger.store import RunStore, RunStoreError, SnapshotWriteError
from tests.utils import make_record

pytestmark = pytest.mark.unit

T0 = datetime(2024, 10, 1, 9, 0, tzinfo=UTC)


@pytest.fixture
def store(tmp_path):
    return RunStore(tmp_path / "data" / "extractions.json")


def write(store, name, minutes=0, records=None):
    return store.write_run(
        name,
        records if records is not None else [make_record()],
        created_at=T0 + timedelta(minutes=minutes),
    )


def test_empty_store(store):
    assert store.list_runs() == []
    assert store.current_run() is None
    assert store.load_current() == []
    assert store.load_current_meters() == []
    assert store.stats() == {
        "total_runs": 0,
        "total_records": 0,
        "current_run_id": None,
        "current_run_name": None,
        "current_record_count": 0,
    }


def test_write_run_becomes_current(store):
    errors = [FileError(file_id="x", file_name="bad.pdf", message="boom")]
    run = store.write_run(
        "September", [make_record()], processed_count=1, errors=errors
    )

    assert store.current_run() == run
    assert store.load_current() == [make_record()]
    assert store.get_run(run.id).errors == errors
    assert store.path.exists()
    # No temporary files left behind
    assert sorted(p.name for p in store.path.parent.iterdir()) == [
        "extractions.json",
        "extractions.json.lock",
    ]


def test_runs_listed_newest_first(store):
    first = write(store, "one", 0)
    second = write(store, "two", 1)
    assert [r.id for r in store.list_runs()] == [second.id, first.id]


def test_old_runs_are_pruned(tmp_path):
    store = RunStore(tmp_path / "runs.json", max_runs=3)
    runs = [write(store, f"run {i}", i) for i in range(5)]

    assert [r.id for r in store.list_runs()] == [r.id for r in reversed(runs[2:])]
    assert store.current_run().id == runs[-1].id


def test_set_current(store):
    first = write(store, "one", 0)
    write(store, "two", 1)

    assert store.set_current(first.id) is True
    assert store.current_run().id == first.id
    assert store.set_current("run_missing") is False
    assert store.current_run().id == first.id


def test_deleting_current_repoints_to_newest_remaining(store):
    r1 = write(store, "R1", 0)
    r2 = write(store, "R2", 1)
    r3 = write(store, "R3", 2)

    assert store.delete_run(r3.id) is True
    assert store.current_run().id == r2.id

    assert store.delete_run(r2.id) is True
    assert store.current_run().id == r1.id

    assert store.delete_run(r1.id) is True
    assert store.current_run() is None
    assert store.stats()["current_run_id"] is None


def test_repoint_uses_creation_time_not_list_position(store):
    r1 = write(store, "R1", 0)
    r2 = write(store, "R2", 5)
    r3 = write(store, "R3", 2)  # written last but created before R2
    store.set_current(r1.id)

    store.delete_run(r1.id)

    assert store.current_run().id == r2.id
    assert r3.id in {r.id for r in store.list_runs()}


def test_deleting_other_run_keeps_current(store):
    r1 = write(store, "R1", 0)
    r2 = write(store, "R2", 1)

    assert store.delete_run(r1.id) is True
    assert store.current_run().id == r2.id
    assert store.delete_run(r1.id) is False


def test_failed_write_leaves_previous_state(store):
    previous = write(store, "before", 0)
    errors = [FileError(file_name="late.pdf", message="timeout")]

    with patch("meterledger.store.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(SnapshotWriteError) as exc_info:
            store.write_run("after", [make_record(year=2025)], errors=errors)

    assert exc_info.value.errors == errors
    assert "disk full" in str(exc_info.value)
    assert [r.id for r in store.list_runs()] == [previous.id]
    assert store.current_run().id == previous.id
    assert not list(store.path.parent.glob("*.tmp"))


def test_corrupt_ledger_raises(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text(json.dumps({"runs": [{"id": 1}]}))

    with pytest.raises(RunStoreError):
        store.list_runs()
    with pytest.raises(SnapshotWriteError):
        write(store, "new")


def test_stats(store):
    write(store, "one", 0, records=[make_record(), make_record(month="May")])
    current = write(store, "two", 1)

    assert store.stats() == {
        "total_runs": 2,
        "total_records": 3,
        "current_run_id": current.id,
        "current_run_name": "two",
        "current_record_count": 1,
    }


def test_ledger_survives_reopen(store):
    run = write(store, "persisted", 0)
    reopened = RunStore(store.path)
    assert reopened.current_run() == run
