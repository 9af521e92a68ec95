"""Tests for the append-only merge history."""

import pytest

from press_tracker.models import Batch, BatchMergeHistory, PressRun
from press_tracker.services import merge_history_service
from press_tracker.services.database import session_scope
from press_tracker.services.exceptions import BatchNotFound


@pytest.fixture
def batches(test_db):
    """Two batches and a completed press run, returned as ids."""
    with session_scope() as session:
        target = Batch(name="2025-09-19_TK03_GRAV", initial_volume_l=300.0, current_volume_l=300.0)
        source = Batch(name="2025-09-20_TK01_GALA", initial_volume_l=100.0, current_volume_l=100.0)
        run = PressRun(name="2025-09-21-01", status="completed")
        session.add_all([target, source, run])
        session.flush()
        return {"target": target.id, "source": source.id, "press_run": run.id}


def _record(session, ids, **kwargs):
    defaults = dict(
        target_batch_id=ids["target"],
        volume_added_l=50.0,
        target_volume_before_l=300.0,
        target_volume_after_l=350.0,
    )
    defaults.update(kwargs)
    return merge_history_service.record_merge(session, **defaults)


class TestRecordMerge:
    def test_press_run_source(self, batches):
        snapshot = [{"lot_id": 1, "fraction_of_batch": 1.0}]
        with session_scope() as session:
            record = _record(
                session,
                batches,
                source_press_run_id=batches["press_run"],
                transfer_loss_l=2.5,
                composition_snapshot=snapshot,
                notes="Transfer loss 2.500L",
                actor_id="sam",
            )
            assert record.id is not None

        history = merge_history_service.get_merge_history(batches["target"])

        assert len(history) == 1
        entry = history[0]
        assert entry["source_type"] == "press_run"
        assert entry["source_press_run_id"] == batches["press_run"]
        assert entry["volume_added_l"] == 50.0
        assert entry["transfer_loss_l"] == 2.5
        assert entry["composition_snapshot"] == snapshot
        assert entry["merged_by"] == "sam"

    def test_batch_transfer_source(self, batches):
        with session_scope() as session:
            _record(session, batches, source_batch_id=batches["source"])

        entry = merge_history_service.get_merge_history(batches["target"])[0]

        assert entry["source_type"] == "batch_transfer"
        assert entry["source_batch_id"] == batches["source"]
        assert entry["source_press_run_id"] is None

    def test_history_oldest_first(self, batches):
        with session_scope() as session:
            _record(session, batches, source_press_run_id=batches["press_run"])
            _record(
                session,
                batches,
                source_batch_id=batches["source"],
                target_volume_before_l=350.0,
                target_volume_after_l=400.0,
            )

        history = merge_history_service.get_merge_history(batches["target"])

        assert [h["target_volume_after_l"] for h in history] == [350.0, 400.0]

    def test_rolled_back_with_caller(self, batches):
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                _record(session, batches, source_press_run_id=batches["press_run"])
                raise RuntimeError("abort")

        assert merge_history_service.get_merge_history(batches["target"]) == []

    def test_unknown_batch_not_found(self, batches):
        with pytest.raises(BatchNotFound):
            merge_history_service.get_merge_history(9999)


class TestPressRunLinks:
    def test_merges_from_press_run(self, batches):
        with session_scope() as session:
            _record(session, batches, source_press_run_id=batches["press_run"])
            _record(session, batches, source_batch_id=batches["source"])

        records = merge_history_service.get_merges_from_press_run(batches["press_run"])

        assert len(records) == 1
        assert records[0]["source_press_run_id"] == batches["press_run"]

    def test_detach_nulls_source_and_keeps_volumes(self, batches):
        with session_scope() as session:
            _record(session, batches, source_press_run_id=batches["press_run"])
            _record(session, batches, source_press_run_id=batches["press_run"])

        with session_scope() as session:
            count = merge_history_service.detach_press_run(session, batches["press_run"])

        assert count == 2
        assert merge_history_service.get_merges_from_press_run(batches["press_run"]) == []
        with session_scope() as session:
            rows = session.query(BatchMergeHistory).all()
            assert all(row.source_press_run_id is None for row in rows)
            assert all(row.volume_added_l == 50.0 for row in rows)

    def test_detach_nothing(self, batches):
        with session_scope() as session:
            assert merge_history_service.detach_press_run(session, batches["press_run"]) == 0
