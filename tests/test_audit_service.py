"""Tests for audit event publishing."""

import logging
from datetime import datetime
from decimal import Decimal

from press_tracker.models import AuditLog, Vessel, VesselStatus
from press_tracker.services import audit_service, press_completion_service
from press_tracker.services.database import session_scope


class TestPublish:
    def test_create_update_delete_trail(self, test_db):
        with session_scope() as session:
            audit_service.publish_create(session, "vessels", 1, {"name": "Tank 1"}, "sam")
            audit_service.publish_update(
                session, "vessels", 1, {"status": "available"}, {"status": "cleaning"}, "sam"
            )
            audit_service.publish_delete(session, "vessels", 1, {"name": "Tank 1"}, "sam", "Sold")

        trail = audit_service.get_audit_trail("vessels", 1)

        assert [entry["operation"] for entry in trail] == ["create", "update", "delete"]
        assert trail[0]["old_data"] is None
        assert trail[1]["new_data"] == {"status": "cleaning"}
        assert trail[2]["new_data"] is None
        assert trail[2]["reason"] == "Sold"
        assert all(entry["changed_by"] == "sam" for entry in trail)

    def test_payload_made_json_safe(self, test_db):
        with session_scope() as session:
            audit_service.publish_create(
                session,
                "purchase_lots",
                7,
                {
                    "cost": Decimal("12.5000"),
                    "bought": datetime(2025, 9, 1, 8, 30),
                    "tags": ("a",),
                    "history": [{"status": VesselStatus.CLEANING}],
                },
            )

        entry = audit_service.get_audit_trail("purchase_lots", 7)[0]

        assert entry["new_data"] == {
            "cost": "12.5000",
            "bought": "2025-09-01T08:30:00",
            "tags": ["a"],
            "history": [{"status": "cleaning"}],
        }

    def test_failed_publish_does_not_roll_back_caller(self, test_db, caplog):
        with caplog.at_level(logging.WARNING, logger="press_tracker.services"):
            with session_scope() as session:
                vessel = Vessel(name="Tank 9", capacity_l=200.0)
                session.add(vessel)
                session.flush()
                audit_service.publish_create(session, "vessels", vessel.id, {"bad": object()})

        with session_scope() as session:
            assert session.query(Vessel).count() == 1
            assert session.query(AuditLog).count() == 0

        failures = [
            r for r in caplog.records if getattr(r, "operation", None) == "publish_audit_event"
        ]
        assert len(failures) == 1
        assert failures[0].outcome == "failed"
        assert failures[0].audit_operation == "create"


class TestCompletionAudit:
    def test_completion_writes_press_run_event(self, loaded_press_run, tank):
        press_completion_service.complete_press_run(
            loaded_press_run["id"],
            650.0,
            [{"vessel_id": tank["id"], "volume_l": 650.0}],
            actor_id="sam",
        )

        trail = audit_service.get_audit_trail("press_runs", loaded_press_run["id"])
        completion = trail[-1]

        assert completion["operation"] == "update"
        assert completion["old_data"] == {"status": "in_progress"}
        assert completion["new_data"]["status"] == "completed"
        assert len(completion["new_data"]["batches_created"]) == 1
        assert completion["changed_by"] == "sam"
