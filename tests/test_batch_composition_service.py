"""Tests for the batch composition ledger read side and invariant checks."""

from decimal import Decimal

import pytest

from press_tracker.models import Batch, BatchComposition
from press_tracker.services import (
    batch_composition_service,
    press_completion_service,
    press_run_service,
    purchase_lot_service,
)
from press_tracker.services.allocation_engine import CompositionEntryState
from press_tracker.services.database import session_scope
from press_tracker.services.exceptions import (
    BatchNotFound,
    CompositionInvariantError,
    InternalError,
)


@pytest.fixture
def blended_batch(loaded_press_run, tank):
    """Batch of 650 L: 390 L Gravenstein, 260 L Golden Delicious."""
    result = press_completion_service.complete_press_run(
        loaded_press_run["id"], 650.0, [{"vessel_id": tank["id"], "volume_l": 650.0}]
    )
    return result["batches_created"][0]


def _entry(lot_id, volume, fraction):
    return CompositionEntryState(
        lot_id=lot_id,
        vendor_id=1,
        variety_id=1,
        input_weight_kg=0.0,
        juice_volume_l=volume,
        material_cost=Decimal("0"),
        fraction_of_batch=fraction,
    )


class TestGetComposition:
    def test_ordered_by_volume_then_lot(self, blended_batch, gravenstein_lot, golden_lot):
        entries = batch_composition_service.get_composition(blended_batch)

        assert [e["lot_id"] for e in entries] == [gravenstein_lot["id"], golden_lot["id"]]
        assert entries[0]["variety_name"] == "Gravenstein"
        assert entries[0]["vendor_name"] == "Hillside Orchard"
        assert entries[0]["lot_code"] == "HO-GRAV-01"

    def test_equal_volumes_ordered_by_lot_id(self, test_db, tank):
        lot_a = purchase_lot_service.create_lot("A Farm", "Gala", 100.0, "10")
        lot_b = purchase_lot_service.create_lot("B Farm", "Cox", 100.0, "10")
        run = press_run_service.create_press_run()
        press_run_service.add_load(run["id"], lot_b["id"], 100.0)
        press_run_service.add_load(run["id"], lot_a["id"], 100.0)
        result = press_completion_service.complete_press_run(
            run["id"], 120.0, [{"vessel_id": tank["id"], "volume_l": 120.0}]
        )

        entries = batch_composition_service.get_composition(result["batches_created"][0])

        assert [e["lot_id"] for e in entries] == sorted([lot_a["id"], lot_b["id"]])

    def test_missing_batch(self, test_db):
        with pytest.raises(BatchNotFound):
            batch_composition_service.get_composition(42)

    def test_soft_deleted_batch(self, blended_batch):
        with session_scope() as session:
            batch = session.get(Batch, blended_batch)
            batch.mark_deleted()

        with pytest.raises(BatchNotFound):
            batch_composition_service.get_composition(blended_batch)


class TestBreakdownAndCost:
    def test_variety_breakdown(self, blended_batch):
        breakdown = batch_composition_service.get_variety_breakdown(blended_batch)

        assert [row["variety_name"] for row in breakdown] == ["Gravenstein", "Golden Delicious"]
        assert breakdown[0]["fraction"] == pytest.approx(0.6)
        assert breakdown[1]["juice_volume_l"] == pytest.approx(260.0)

    def test_batch_cost(self, blended_batch):
        cost = batch_composition_service.get_batch_cost(blended_batch)

        # 420 * 0.6 + 200 * 0.4
        assert cost["material_cost"] == Decimal("332.0000")
        assert cost["cost_per_liter"] == Decimal("0.5108")

    def test_lot_usage(self, blended_batch, gravenstein_lot):
        usage = batch_composition_service.get_lot_usage(gravenstein_lot["id"])

        assert len(usage) == 1
        assert usage[0]["batch_id"] == blended_batch
        assert usage[0]["juice_volume_l"] == pytest.approx(390.0)
        assert usage[0]["batch_name"].endswith("_TK03_GRAV")


class TestInvariants:
    def test_verify_entries_accepts_consistent_ledger(self):
        batch_composition_service.verify_entries(
            1, [_entry(1, 60.0, 0.6), _entry(2, 40.0, 0.4)], 100.0
        )

    def test_fraction_sum_off(self):
        with pytest.raises(CompositionInvariantError) as exc_info:
            batch_composition_service.verify_entries(
                1, [_entry(1, 60.0, 0.6), _entry(2, 40.0, 0.39)], 100.0
            )

        assert isinstance(exc_info.value, InternalError)
        assert "fractions" in str(exc_info.value)

    def test_volume_sum_off(self):
        with pytest.raises(CompositionInvariantError) as exc_info:
            batch_composition_service.verify_entries(
                1, [_entry(1, 60.0, 0.6), _entry(2, 40.0, 0.4)], 100.01
            )

        assert "volumes" in str(exc_info.value)

    def test_empty_ledger(self):
        with pytest.raises(CompositionInvariantError):
            batch_composition_service.verify_entries(1, [], 0.0)

    def test_stored_batch_holds(self, blended_batch):
        batch_composition_service.check_composition_invariants(blended_batch)

    def test_stored_batch_drift_detected(self, blended_batch):
        with session_scope() as session:
            session.get(Batch, blended_batch).current_volume_l = 700.0

        with pytest.raises(CompositionInvariantError):
            batch_composition_service.check_composition_invariants(blended_batch)

    def test_entries_from_rows(self, blended_batch):
        with session_scope() as session:
            rows = (
                session.query(BatchComposition)
                .filter(BatchComposition.batch_id == blended_batch)
                .all()
            )
            entries = batch_composition_service.entries_from_rows(rows)

        assert {e.variety_name for e in entries} == {"Gravenstein", "Golden Delicious"}
        assert all(isinstance(e.material_cost, Decimal) for e in entries)
