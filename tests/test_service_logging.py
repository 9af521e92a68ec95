"""Tests for service layer structured logging.

These tests verify that pressing and allocation operations emit structured
log entries with appropriate context information.
"""

import logging

import pytest

from press_tracker.services import (
    batch_composition_service,
    press_completion_service,
    press_run_service,
    purchase_lot_service,
)
from press_tracker.services.database import session_scope
from press_tracker.services.exceptions import (
    CompositionInvariantError,
    LotDepletedError,
    VesselCapacityExceededError,
)
from press_tracker.services.logging_utils import (
    get_service_logger,
    log_operation,
    log_rejection,
)


def _records(caplog, operation):
    return [r for r in caplog.records if getattr(r, "operation", None) == operation]


class TestLoggingUtilities:
    """Tests for logging utility functions."""

    def test_get_service_logger_returns_logger(self):
        """get_service_logger returns a configured Logger instance."""
        logger = get_service_logger("test_module")
        assert isinstance(logger, logging.Logger)
        assert logger.name == "press_tracker.services.test_module"

    def test_get_service_logger_extracts_module_name(self):
        """get_service_logger extracts module name from full path."""
        logger = get_service_logger("press_tracker.services.press_completion_service")
        assert logger.name == "press_tracker.services.press_completion_service"

    def test_log_operation_logs_at_custom_level(self, caplog):
        """log_operation respects custom log level."""
        logger = get_service_logger("test")

        with caplog.at_level(logging.DEBUG):
            log_operation(logger, operation="debug_op", outcome="checked", level=logging.DEBUG)

        assert "debug_op: checked" in caplog.text
        assert caplog.records[0].levelno == logging.DEBUG

    def test_log_operation_includes_extra_context(self, caplog):
        """log_operation includes extra context in log records."""
        logger = get_service_logger("test")

        with caplog.at_level(logging.INFO):
            log_operation(
                logger,
                operation="context_test",
                outcome="success",
                press_run_id=42,
                juice_volume_l=650.0,
            )

        assert len(caplog.records) == 1
        record = caplog.records[0]
        assert record.operation == "context_test"
        assert record.outcome == "success"
        assert record.press_run_id == 42
        assert record.juice_volume_l == 650.0
        assert record.getMessage() == "context_test: success (press_run_id=42)"

    def test_reserved_context_keys_prefixed(self, caplog):
        """Context keys clashing with LogRecord attributes do not raise."""
        logger = get_service_logger("test")

        with caplog.at_level(logging.INFO):
            log_operation(logger, operation="create_vessel", outcome="success", name="Tank 3")

        record = caplog.records[0]
        assert record.ctx_name == "Tank 3"
        assert record.name == "press_tracker.services.test"

    def test_log_rejection(self, caplog):
        logger = get_service_logger("test")

        with caplog.at_level(logging.INFO):
            log_rejection(logger, "add_load", LotDepletedError(7), lot_id=7)

        record = caplog.records[0]
        assert record.levelno == logging.WARNING
        assert record.outcome == "rejected"
        assert record.error_type == "LotDepletedError"
        assert "already depleted" in record.error


class TestPressRunLogging:
    """Tests for press_run_service logging."""

    def test_add_load_logged(self, test_db, gravenstein_lot, caplog):
        run = press_run_service.create_press_run()

        with caplog.at_level(logging.INFO, logger="press_tracker.services"):
            press_run_service.add_load(run["id"], gravenstein_lot["id"], 120.0)

        records = _records(caplog, "add_load")
        assert len(records) == 1
        assert records[0].press_run_id == run["id"]
        assert records[0].lot_id == gravenstein_lot["id"]

    def test_depleted_lot_rejection_logged(self, test_db, gravenstein_lot, caplog):
        with session_scope() as session:
            lot = purchase_lot_service.load_lot(session, gravenstein_lot["id"])
            purchase_lot_service.mark_depleted(session, lot, None, None)
        run = press_run_service.create_press_run()

        with caplog.at_level(logging.INFO, logger="press_tracker.services"):
            with pytest.raises(LotDepletedError):
                press_run_service.add_load(run["id"], gravenstein_lot["id"], 50.0)

        records = _records(caplog, "add_load")
        assert len(records) == 1
        assert records[0].outcome == "rejected"
        assert records[0].lot_id == gravenstein_lot["id"]


class TestCompletionLogging:
    """Tests for press_completion_service logging."""

    def test_success_logged(self, loaded_press_run, tank, caplog):
        with caplog.at_level(logging.INFO, logger="press_tracker.services"):
            press_completion_service.complete_press_run(
                loaded_press_run["id"], 650.0, [{"vessel_id": tank["id"], "volume_l": 650.0}]
            )

        records = _records(caplog, "complete_press_run")
        assert len(records) == 1
        assert records[0].outcome == "success"
        assert records[0].batches_created == 1
        assert records[0].lots_depleted == 2
        assert records[0].name == "press_tracker.services.press_completion_service"

    def test_rejection_logged_as_warning(self, loaded_press_run, small_tank, caplog):
        with caplog.at_level(logging.INFO, logger="press_tracker.services"):
            with pytest.raises(VesselCapacityExceededError):
                press_completion_service.complete_press_run(
                    loaded_press_run["id"],
                    650.0,
                    [{"vessel_id": small_tank["id"], "volume_l": 400.0}],
                )

        records = _records(caplog, "complete_press_run")
        assert len(records) == 1
        assert records[0].outcome == "rejected"
        assert records[0].levelno == logging.WARNING
        assert records[0].error_type == "VesselCapacityExceededError"

    def test_merge_logged(self, loaded_press_run, tank, caplog):
        press_completion_service.complete_press_run(
            loaded_press_run["id"], 650.0, [{"vessel_id": tank["id"], "volume_l": 300.0}]
        )
        # first run depleted its lots
        fresh = purchase_lot_service.create_lot("Hillside Orchard", "Gravenstein", 200.0, 100)
        run = press_run_service.create_press_run()
        press_run_service.add_load(run["id"], fresh["id"], 200.0)

        with caplog.at_level(logging.INFO, logger="press_tracker.services"):
            press_completion_service.complete_press_run(
                run["id"], 120.0, [{"vessel_id": tank["id"], "volume_l": 120.0}]
            )

        records = _records(caplog, "record_merge")
        assert len(records) == 1
        assert records[0].volume_added_l == pytest.approx(120.0)
        assert records[0].source_press_run_id == run["id"]

    def test_apply_failure_logged_as_error(self, loaded_press_run, tank, caplog, monkeypatch):
        def drifted(batch_id, entries, current_volume_l):
            raise CompositionInvariantError(batch_id, "entry volumes sum to 640.0L")

        monkeypatch.setattr(batch_composition_service, "verify_entries", drifted)

        with caplog.at_level(logging.INFO, logger="press_tracker.services"):
            with pytest.raises(CompositionInvariantError):
                press_completion_service.complete_press_run(
                    loaded_press_run["id"], 650.0, [{"vessel_id": tank["id"], "volume_l": 650.0}]
                )

        records = _records(caplog, "complete_press_run")
        assert len(records) == 1
        assert records[0].outcome == "error"
        assert records[0].levelno == logging.ERROR
        assert records[0].error_type == "CompositionInvariantError"
