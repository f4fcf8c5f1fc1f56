"""
Unit tests for the audit trail: paging, sorting, malformed snapshots and legacy rows
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import inspect, text

from app.models.order_history import OrderHistory
from app.services.audit_trail import AuditTrail, LEGACY_HISTORY_TABLE, migrate_legacy_history
from app.services.order_store import OrderStore

START = datetime(2024, 6, 1, 9, 0, 0)


@pytest.fixture
def order_id(db, encryption):
    return asyncio.run(OrderStore(db, encryption=encryption).create_order({
        "id": "ORD-100",
        "type": "ward-stock",
        "wardId": 3,
        "medications": [{"name": "Saline 0.9%", "quantity": "10"}],
        "requester": {"name": "Nurse Jones", "role": "nurse"},
    }))


def record_entries(db, order_id, count):
    trail = AuditTrail(db)
    for i in range(count):
        trail.record(
            order_id,
            "status_change",
            f"user{i}",
            f"step {i}",
            {"status": "pending"},
            {"status": "processing"},
            timestamp=START + timedelta(minutes=i),
        )
    db.commit()


class TestHistoryReads:
    """Test cases for reading history"""

    def test_pagination(self, db, order_id):
        record_entries(db, order_id, 5)
        trail = AuditTrail(db)

        first = asyncio.run(trail.get_order_history(order_id, limit=2, offset=0))
        assert [h["reason"] for h in first["history"]] == ["step 4", "step 3"]
        assert first["pagination"] == {"total": 5, "limit": 2, "offset": 0, "hasMore": True}

        last = asyncio.run(trail.get_order_history(order_id, limit=2, offset=4))
        assert [h["reason"] for h in last["history"]] == ["step 0"]
        assert last["pagination"]["hasMore"] is False

    def test_sort_options(self, db, order_id):
        record_entries(db, order_id, 3)
        trail = AuditTrail(db)

        ascending = asyncio.run(trail.get_order_history(order_id, sort_order="asc"))
        assert [h["reason"] for h in ascending["history"]] == ["step 0", "step 1", "step 2"]

        by_user = asyncio.run(trail.get_order_history(order_id, sort_by="modifiedBy", sort_order="DESC"))
        assert [h["modifiedBy"] for h in by_user["history"]] == ["user2", "user1", "user0"]

        unknown = asyncio.run(trail.get_order_history(order_id, sort_by="DROP TABLE"))
        assert unknown["history"][0]["reason"] == "step 2"

    def test_entry_shape(self, db, order_id):
        record_entries(db, order_id, 1)
        entry = asyncio.run(AuditTrail(db).get_order_history(order_id))["history"][0]

        assert entry["orderId"] == order_id
        assert entry["actionType"] == "status_change"
        assert entry["timestamp"].startswith("2024-06-01T09:00:00")
        assert entry["schemaVersion"] == 2
        assert "parseError" not in entry

    def test_unparsable_snapshot_is_flagged(self, db, order_id):
        """Test that a corrupt snapshot marks the entry instead of failing the read"""
        db.add(OrderHistory(
            order_id=order_id,
            action_type="medications_update",
            timestamp=START,
            user_id="pharm.a",
            reason="edit",
            previous_data="{not json",
            new_data='{"medications": []}',
        ))
        db.commit()

        entry = asyncio.run(AuditTrail(db).get_order_history(order_id))["history"][0]
        assert entry["parseError"] is True
        assert entry["previousData"] is None
        assert entry["newData"] is None
        assert entry["reason"] == "edit"

    def test_unknown_order_has_empty_history(self, db):
        result = asyncio.run(AuditTrail(db).get_order_history("missing"))
        assert result["history"] == []
        assert result["pagination"]["total"] == 0

    def test_unknown_action_type_is_rejected(self, db, order_id):
        with pytest.raises(ValueError):
            AuditTrail(db).record(order_id, "deleted", "x", "r", None, None)


class TestLegacyMigration:
    """Rows in the old action_timestamp / modified_by layout are carried over"""

    def create_legacy_table(self, db, order_id):
        db.execute(text(
            f"CREATE TABLE {LEGACY_HISTORY_TABLE} ("
            "id INTEGER PRIMARY KEY, order_id TEXT, action_type TEXT, action_timestamp TEXT, "
            "modified_by TEXT, reason TEXT, previous_data TEXT, new_data TEXT)"
        ))
        db.execute(text(
            f"INSERT INTO {LEGACY_HISTORY_TABLE} VALUES "
            "(1, :order_id, 'status_change', '2023-01-05T10:00:00', 'legacy.user', 'old change', "
            "'{\"status\": \"pending\"}', '{\"status\": \"processing\"}'),"
            "(2, :order_id, 'medications_update', '2023-01-06T10:00:00', 'legacy.user', 'broken', "
            "'oops', '{}')"
        ), {"order_id": order_id})
        db.commit()

    def test_legacy_rows_are_migrated(self, db, order_id):
        self.create_legacy_table(db, order_id)

        assert migrate_legacy_history(db) == 2
        assert not inspect(db.get_bind()).has_table(LEGACY_HISTORY_TABLE)

        history = asyncio.run(AuditTrail(db).get_order_history(order_id, sort_order="ASC"))["history"]
        first, second = history
        assert first["modifiedBy"] == "legacy.user"
        assert first["schemaVersion"] == 1
        assert first["timestamp"].startswith("2023-01-05T10:00:00")
        assert first["newData"] == {"status": "processing"}
        assert second["parseError"] is True

    def test_no_legacy_table(self, db):
        assert migrate_legacy_history(db) == 0


if __name__ == "__main__":
    pytest.main([__file__])
