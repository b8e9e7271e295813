"""Tests for chunkferry/ledger.py — ProgressLedger."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from chunkferry.errors import LedgerError
from chunkferry.ledger import Chunk, ProgressLedger


@pytest.fixture()
def ledger(tmp_path: Path) -> ProgressLedger:
    """Return a ProgressLedger rooted in a temporary work directory."""
    return ProgressLedger(tmp_path)


def _chunks(count: int) -> list[Chunk]:
    return [Chunk(index=i, members=(f"f{i}.bin",), cumulative_size=i + 1) for i in range(count)]


# ---------------------------------------------------------------------------
# Chunk records
# ---------------------------------------------------------------------------


class TestPlanRecords:
    def test_new_ledger_has_no_plan(self, ledger: ProgressLedger) -> None:
        assert ledger.has_plan() is False
        assert ledger.chunk_count() == 0
        assert ledger.list_chunks() == []

    def test_save_plan_round_trip(self, ledger: ProgressLedger) -> None:
        chunks = _chunks(3)
        ledger.save_plan(chunks)
        assert ledger.chunk_count() == 3
        assert ledger.list_chunks() == chunks

    def test_one_file_per_chunk_named_by_index(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(2))
        names = sorted(p.name for p in ledger.state_dir.iterdir())
        assert names == ["chunk_0.json", "chunk_1.json"]

    def test_indices_sorted_numerically(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(12))
        assert ledger.list_chunk_indices() == list(range(12))

    def test_save_plan_refuses_to_overwrite(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(1))
        with pytest.raises(LedgerError):
            ledger.save_plan(_chunks(2))
        assert ledger.chunk_count() == 1

    def test_no_partial_directory_left(self, ledger: ProgressLedger, tmp_path: Path) -> None:
        ledger.save_plan(_chunks(2))
        assert not (tmp_path / "state.partial").exists()

    def test_empty_chunk_persists(self, ledger: ProgressLedger) -> None:
        ledger.save_plan([Chunk(index=0)])
        chunk = ledger.load_chunk(0)
        assert chunk.is_empty
        assert chunk.cumulative_size == 0

    def test_corrupt_record_raises(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(1))
        (ledger.state_dir / "chunk_0.json").write_text("not json", encoding="utf-8")
        with pytest.raises(LedgerError):
            ledger.load_chunk(0)

    def test_mismatched_index_raises(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(2))
        data = json.loads((ledger.state_dir / "chunk_1.json").read_text(encoding="utf-8"))
        data["index"] = 7
        (ledger.state_dir / "chunk_1.json").write_text(json.dumps(data), encoding="utf-8")
        with pytest.raises(LedgerError, match="expected 1"):
            ledger.load_chunk(1)

    def test_unrelated_files_ignored(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(1))
        (ledger.state_dir / "notes.txt").write_text("hi", encoding="utf-8")
        assert ledger.list_chunk_indices() == [0]


# ---------------------------------------------------------------------------
# Done markers
# ---------------------------------------------------------------------------


class TestDoneMarkers:
    def test_not_done_initially(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(2))
        assert ledger.is_done(0) is False

    def test_mark_done_creates_zero_byte_marker(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(2))
        ledger.mark_done(1)
        marker = ledger.done_dir / "chunk_1.done"
        assert marker.is_file()
        assert marker.stat().st_size == 0
        assert ledger.is_done(1) is True
        assert ledger.is_done(0) is False

    def test_mark_done_leaves_no_temp_file(self, ledger: ProgressLedger) -> None:
        ledger.mark_done(0)
        assert [p.name for p in ledger.done_dir.iterdir()] == ["chunk_0.done"]

    def test_mark_done_is_idempotent(self, ledger: ProgressLedger) -> None:
        ledger.mark_done(0)
        ledger.mark_done(0)
        assert ledger.done_indices() == [0]

    def test_marker_survives_new_instance(self, tmp_path: Path) -> None:
        ProgressLedger(tmp_path).mark_done(3)
        assert ProgressLedger(tmp_path).is_done(3) is True


# ---------------------------------------------------------------------------
# Staging area
# ---------------------------------------------------------------------------


class TestStaging:
    def test_fresh_staging_is_empty(self, ledger: ProgressLedger) -> None:
        path = ledger.fresh_staging(0)
        (path / "leftover.bin").write_bytes(b"x")
        again = ledger.fresh_staging(0)
        assert again == path
        assert list(again.iterdir()) == []

    def test_discard_staging(self, ledger: ProgressLedger) -> None:
        path = ledger.fresh_staging(2)
        ledger.discard_staging(2)
        assert not path.exists()

    def test_discard_missing_staging_is_noop(self, ledger: ProgressLedger) -> None:
        ledger.discard_staging(5)


# ---------------------------------------------------------------------------
# Reset and consistency
# ---------------------------------------------------------------------------


class TestReset:
    def test_reset_removes_everything(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(3))
        ledger.mark_done(0)
        ledger.mark_done(1)
        (ledger.fresh_staging(2) / "partial.bin").write_bytes(b"x")

        ledger.reset()

        assert ledger.chunk_count() == 0
        assert ledger.done_indices() == []
        assert list(ledger.staging_dir.iterdir()) == []

    def test_plan_can_be_saved_after_reset(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(3))
        ledger.reset()
        ledger.save_plan(_chunks(1))
        assert ledger.chunk_count() == 1


class TestConsistency:
    def test_clean_ledger_has_no_problems(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(3))
        ledger.mark_done(0)
        ledger.mark_done(1)
        assert ledger.check_consistency() == []

    def test_marker_without_record(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(2))
        ledger.mark_done(5)
        problems = ledger.check_consistency()
        assert any("no chunk record" in p for p in problems)

    def test_gap_in_completed_set(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(3))
        ledger.mark_done(0)
        ledger.mark_done(2)
        problems = ledger.check_consistency()
        assert problems == ["Chunk 1 is not done although chunk 2 is"]

    def test_missing_chunk_record(self, ledger: ProgressLedger) -> None:
        ledger.save_plan(_chunks(3))
        (ledger.state_dir / "chunk_1.json").unlink()
        assert "Chunk record 1 is missing" in ledger.check_consistency()
