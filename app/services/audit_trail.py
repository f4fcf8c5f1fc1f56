"""
Audit trail service: append-only history of every order mutation
"""

import json
import logging
from datetime import datetime
from typing import Optional, Any

from sqlalchemy import inspect, text, asc, desc
from sqlalchemy.orm import Session

from app.models.order_history import OrderHistory, ACTION_TYPES, CURRENT_SCHEMA_VERSION
from app.schemas.history import HistoryEntry

logger = logging.getLogger(__name__)

LEGACY_HISTORY_TABLE = "order_history_v1"

SORT_COLUMNS = {
    "timestamp": OrderHistory.timestamp,
    "actionType": OrderHistory.action_type,
    "modifiedBy": OrderHistory.user_id,
}


def _to_json(data: Any) -> Optional[str]:
    if data is None:
        return None
    return json.dumps(data, default=str)


class AuditTrail:
    """
    Writes and reads order history entries.

    Entries are only ever added. The write path joins the caller's open
    transaction: it flushes but never commits, so the entry lands or rolls
    back together with the mutation it describes.
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        order_id: str,
        action_type: str,
        modified_by: Optional[str],
        reason: Optional[str],
        previous_data: Any,
        new_data: Any,
        timestamp: Optional[datetime] = None,
    ) -> OrderHistory:
        """Append one entry to the trail inside the current transaction"""
        if action_type not in ACTION_TYPES:
            raise ValueError(f"Unknown history action type: {action_type}")

        entry = OrderHistory(
            order_id=order_id,
            action_type=action_type,
            timestamp=timestamp or datetime.utcnow(),
            user_id=modified_by,
            reason=reason,
            previous_data=_to_json(previous_data),
            new_data=_to_json(new_data),
            schema_version=CURRENT_SCHEMA_VERSION,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    async def get_order_history(
        self,
        order_id: str,
        limit: int = 100,
        offset: int = 0,
        sort_by: str = "timestamp",
        sort_order: str = "DESC",
    ) -> dict:
        """Page through an order's history, newest first unless asked otherwise"""
        column = SORT_COLUMNS.get(sort_by, OrderHistory.timestamp)
        direction = asc if str(sort_order).upper() == "ASC" else desc

        query = self.db.query(OrderHistory).filter(OrderHistory.order_id == order_id)
        total = query.count()
        rows = (
            query.order_by(direction(column), direction(OrderHistory.id))
            .offset(offset)
            .limit(limit)
            .all()
        )

        history = [HistoryEntry.from_v2(self._row_mapping(row)).to_response() for row in rows]

        return {
            "history": history,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "hasMore": offset + limit < total,
            },
        }

    @staticmethod
    def _row_mapping(row: OrderHistory) -> dict:
        return {
            "id": row.id,
            "order_id": row.order_id,
            "action_type": row.action_type,
            "timestamp": row.timestamp,
            "user_id": row.user_id,
            "reason": row.reason,
            "previous_data": row.previous_data,
            "new_data": row.new_data,
            "schema_version": row.schema_version,
        }


def migrate_legacy_history(db: Session) -> int:
    """
    Move rows from the legacy history table (action_timestamp / modified_by layout)
    into order_history, then drop the legacy table. Returns the number of rows moved.
    """
    if not inspect(db.get_bind()).has_table(LEGACY_HISTORY_TABLE):
        return 0

    rows = db.execute(text(f"SELECT * FROM {LEGACY_HISTORY_TABLE} ORDER BY id")).mappings().all()
    try:
        for row in rows:
            entry = HistoryEntry.from_v1(row)
            db.add(OrderHistory(
                order_id=entry.order_id,
                action_type=entry.action_type,
                timestamp=entry.timestamp or datetime.utcnow(),
                user_id=entry.modified_by,
                reason=entry.reason,
                # snapshots are copied verbatim so unparsable ones stay flagged on read
                previous_data=row.get("previous_data"),
                new_data=row.get("new_data"),
                schema_version=1,
            ))
        db.execute(text(f"DROP TABLE {LEGACY_HISTORY_TABLE}"))
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Migrated {len(rows)} legacy order history rows")
    return len(rows)
