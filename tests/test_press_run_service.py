"""Tests for the press run aggregate and its loads."""

from decimal import Decimal

import pytest

from press_tracker.models import Batch, BatchMergeHistory, PressRun, PressRunLoad, PurchaseLot
from press_tracker.services import (
    press_completion_service,
    press_run_service,
    purchase_lot_service,
    vessel_service,
)
from press_tracker.services.database import session_scope
from press_tracker.services.exceptions import (
    ConflictError,
    InvalidStateError,
    LoadNotFound,
    LotDepletedError,
    NotFoundError,
    PressRunNotFound,
    PressRunStatusError,
    PurchaseLotNotFound,
    ValidationError,
)


def _sequences(press_run_id):
    return [load["load_sequence"] for load in press_run_service.list_loads(press_run_id)]


# =============================================================================
# Press Runs
# =============================================================================


class TestCreateAndRead:
    def test_create_press_run(self, test_db):
        run = press_run_service.create_press_run(actor_id="sam", notes="Morning pressing")

        assert run["status"] == "in_progress"
        assert run["name"] is None
        assert run["total_input_weight_kg"] == 0.0
        assert run["allocation_mode"] == "weight"
        assert run["created_by"] == "sam"

    def test_create_sugar_mode(self, test_db):
        run = press_run_service.create_press_run(allocation_mode="sugar")
        assert run["allocation_mode"] == "sugar"

    def test_unknown_allocation_mode(self, test_db):
        with pytest.raises(ValidationError):
            press_run_service.create_press_run(allocation_mode="volume")

    def test_get_includes_loads(self, loaded_press_run):
        run = press_run_service.get_press_run(loaded_press_run["id"])

        assert len(run["loads"]) == 2
        assert run["loads"][0]["variety_name"] == "Gravenstein"

    def test_get_missing(self, test_db):
        with pytest.raises(PressRunNotFound):
            press_run_service.get_press_run(999)

    def test_list_filters_by_status(self, test_db):
        first = press_run_service.create_press_run()
        press_run_service.create_press_run()
        press_run_service.cancel_press_run(first["id"], reason="Press jammed")

        cancelled = press_run_service.list_press_runs(status="cancelled")
        in_progress = press_run_service.list_press_runs(status="in_progress")

        assert [run["id"] for run in cancelled] == [first["id"]]
        assert len(in_progress) == 1
        assert len(press_run_service.list_press_runs(limit=1)) == 1


# =============================================================================
# Loads
# =============================================================================


class TestAddLoad:
    def test_sequences_and_totals(self, test_db, gravenstein_lot, golden_lot):
        run = press_run_service.create_press_run()

        first = press_run_service.add_load(run["id"], gravenstein_lot["id"], 250.0)
        second = press_run_service.add_load(run["id"], golden_lot["id"], 150.0, brix_measured=12.5)

        assert first["load_sequence"] == 1
        assert second["load_sequence"] == 2
        assert second["brix_measured"] == 12.5
        assert press_run_service.get_press_run(run["id"])["total_input_weight_kg"] == 400.0

    def test_same_lot_twice(self, test_db, gravenstein_lot):
        run = press_run_service.create_press_run()

        press_run_service.add_load(run["id"], gravenstein_lot["id"], 100.0)
        press_run_service.add_load(run["id"], gravenstein_lot["id"], 100.0)

        assert _sequences(run["id"]) == [1, 2]

    @pytest.mark.parametrize("weight", [0, -5.0, None])
    def test_non_positive_weight(self, test_db, gravenstein_lot, weight):
        run = press_run_service.create_press_run()

        with pytest.raises(ValidationError):
            press_run_service.add_load(run["id"], gravenstein_lot["id"], weight)

    def test_brix_out_of_range(self, test_db, gravenstein_lot):
        run = press_run_service.create_press_run()

        with pytest.raises(ValidationError):
            press_run_service.add_load(run["id"], gravenstein_lot["id"], 10.0, brix_measured=55)

    def test_missing_press_run(self, test_db, gravenstein_lot):
        with pytest.raises(PressRunNotFound):
            press_run_service.add_load(404, gravenstein_lot["id"], 10.0)

    def test_missing_lot(self, test_db):
        run = press_run_service.create_press_run()

        with pytest.raises(PurchaseLotNotFound):
            press_run_service.add_load(run["id"], 404, 10.0)

    def test_soft_deleted_press_run_not_found(self, test_db, gravenstein_lot):
        run = press_run_service.create_press_run()
        press_run_service.delete_press_run(run["id"])

        with pytest.raises(NotFoundError):
            press_run_service.add_load(run["id"], gravenstein_lot["id"], 10.0)

    def test_depleted_lot_conflict(self, test_db, gravenstein_lot):
        with session_scope() as session:
            lot = purchase_lot_service.load_lot(session, gravenstein_lot["id"])
            purchase_lot_service.mark_depleted(session, lot, "sam", None)

        run = press_run_service.create_press_run()
        with pytest.raises(LotDepletedError) as exc_info:
            press_run_service.add_load(run["id"], gravenstein_lot["id"], 10.0)

        assert isinstance(exc_info.value, ConflictError)

    def test_not_in_progress(self, test_db, gravenstein_lot):
        run = press_run_service.create_press_run()
        press_run_service.cancel_press_run(run["id"])

        with pytest.raises(PressRunStatusError) as exc_info:
            press_run_service.add_load(run["id"], gravenstein_lot["id"], 10.0)

        assert isinstance(exc_info.value, InvalidStateError)
        assert exc_info.value.status == "cancelled"

    def test_failed_add_writes_nothing(self, test_db, gravenstein_lot):
        run = press_run_service.create_press_run()

        with pytest.raises(PurchaseLotNotFound):
            press_run_service.add_load(run["id"], 404, 10.0)

        with session_scope() as session:
            assert session.query(PressRunLoad).count() == 0


class TestUpdateLoad:
    def test_replace_weight_and_lot(self, loaded_press_run, gravenstein_lot):
        load = loaded_press_run["loads"][1]

        updated = press_run_service.update_load(
            load["id"], lot_id=gravenstein_lot["id"], weight_kg=100.0, actor_id="sam"
        )

        assert updated["lot_id"] == gravenstein_lot["id"]
        assert updated["input_weight_kg"] == 100.0
        assert updated["load_sequence"] == 2
        assert updated["updated_by"] == "sam"
        run = press_run_service.get_press_run(loaded_press_run["id"])
        assert run["total_input_weight_kg"] == 700.0

    def test_invalid_weight(self, loaded_press_run):
        load = loaded_press_run["loads"][0]

        with pytest.raises(ValidationError):
            press_run_service.update_load(load["id"], weight_kg=0)

    def test_depleted_replacement_lot(self, loaded_press_run):
        spent = purchase_lot_service.create_lot("Valley Fruit", "Cox", 50.0, "30")
        with session_scope() as session:
            lot = purchase_lot_service.load_lot(session, spent["id"])
            purchase_lot_service.mark_depleted(session, lot, None, None)

        with pytest.raises(LotDepletedError):
            press_run_service.update_load(loaded_press_run["loads"][0]["id"], lot_id=spent["id"])

    def test_missing_load(self, test_db):
        with pytest.raises(LoadNotFound):
            press_run_service.update_load(12345, weight_kg=10.0)


class TestDeleteLoad:
    def test_renumbers_remaining_loads(self, test_db, gravenstein_lot):
        run = press_run_service.create_press_run()
        ids = [
            press_run_service.add_load(run["id"], gravenstein_lot["id"], w)["id"]
            for w in (10.0, 20.0, 30.0, 40.0)
        ]

        remaining = press_run_service.delete_load(ids[1])

        assert [load["id"] for load in remaining] == [ids[0], ids[2], ids[3]]
        assert [load["load_sequence"] for load in remaining] == [1, 2, 3]
        assert press_run_service.get_press_run(run["id"])["total_input_weight_kg"] == 80.0

    def test_add_after_delete_continues_sequence(self, test_db, gravenstein_lot):
        run = press_run_service.create_press_run()
        first = press_run_service.add_load(run["id"], gravenstein_lot["id"], 10.0)
        press_run_service.add_load(run["id"], gravenstein_lot["id"], 20.0)

        press_run_service.delete_load(first["id"])
        added = press_run_service.add_load(run["id"], gravenstein_lot["id"], 30.0)

        assert added["load_sequence"] == 2
        assert _sequences(run["id"]) == [1, 2]

    def test_delete_twice(self, loaded_press_run):
        load_id = loaded_press_run["loads"][0]["id"]
        press_run_service.delete_load(load_id)

        with pytest.raises(LoadNotFound):
            press_run_service.delete_load(load_id)

    def test_requires_in_progress(self, loaded_press_run):
        load_id = loaded_press_run["loads"][0]["id"]
        press_run_service.cancel_press_run(loaded_press_run["id"])

        with pytest.raises(PressRunStatusError):
            press_run_service.delete_load(load_id)


# =============================================================================
# Lifecycle
# =============================================================================


class TestCancel:
    def test_cancel_releases_reservations(self, loaded_press_run, tank):
        vessel_service.reserve_for_pressing(tank["id"])

        run = press_run_service.cancel_press_run(
            loaded_press_run["id"], reason="Fruit rejected", reserved_vessel_ids=[tank["id"]]
        )

        assert run["status"] == "cancelled"
        assert run["cancelled_at"] is not None
        assert "Fruit rejected" in run["notes"]
        assert vessel_service.get_vessel(tank["id"])["reserved_for_pressing"] is False

    def test_cancel_twice(self, loaded_press_run):
        press_run_service.cancel_press_run(loaded_press_run["id"])

        with pytest.raises(PressRunStatusError):
            press_run_service.cancel_press_run(loaded_press_run["id"])


class TestDeletion:
    def _complete(self, press_run, tank):
        return press_completion_service.complete_press_run(
            press_run["id"], 650.0, [{"vessel_id": tank["id"], "volume_l": 650.0}]
        )

    def test_soft_delete_in_progress(self, loaded_press_run):
        press_run_service.delete_press_run(loaded_press_run["id"])

        with pytest.raises(PressRunNotFound):
            press_run_service.get_press_run(loaded_press_run["id"])
        assert press_run_service.list_press_runs() == []

    def test_soft_delete_refused_when_batches_exist(self, loaded_press_run, tank):
        self._complete(loaded_press_run, tank)

        with pytest.raises(InvalidStateError):
            press_run_service.delete_press_run(loaded_press_run["id"])

    def test_purge_nulls_references(self, test_db, tank):
        lot_a = purchase_lot_service.create_lot("Hillside Orchard", "Gravenstein", 300.0, "150")
        lot_b = purchase_lot_service.create_lot("Valley Fruit", "Gala", 200.0, Decimal("90"))

        first = press_run_service.create_press_run()
        press_run_service.add_load(first["id"], lot_a["id"], 300.0)
        first_result = press_completion_service.complete_press_run(
            first["id"], 200.0, [{"vessel_id": tank["id"], "volume_l": 200.0}]
        )

        second = press_run_service.create_press_run()
        press_run_service.add_load(second["id"], lot_b["id"], 200.0)
        press_completion_service.complete_press_run(
            second["id"], 100.0, [{"vessel_id": tank["id"], "volume_l": 100.0}]
        )

        counts = press_run_service.purge_press_run(second["id"], actor_id="admin")
        press_run_service.purge_press_run(first["id"], actor_id="admin")

        assert counts == {"merge_records": 1, "batches": 0, "lots": 1}
        with session_scope() as session:
            assert session.query(PressRun).count() == 0
            assert session.query(PressRunLoad).count() == 0
            history = session.query(BatchMergeHistory).one()
            assert history.source_press_run_id is None
            assert history.volume_added_l == 100.0
            batch = session.get(Batch, first_result["batches_created"][0])
            assert batch.origin_press_run_id is None
            assert batch.current_volume_l == 300.0
            lot = session.get(PurchaseLot, lot_b["id"])
            assert lot.is_depleted is True
            assert lot.depleted_in_press_run_id is None

    def test_purge_missing(self, test_db):
        with pytest.raises(PressRunNotFound):
            press_run_service.purge_press_run(77)
