"""
Normalized audit history entries
"""

import json
import logging
from datetime import datetime
from typing import Optional, Any, Mapping

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


def _parse_snapshot(raw: Optional[str]) -> Any:
    if raw is None or raw == "":
        return None
    return json.loads(raw)


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class HistoryEntry(BaseModel):
    """One audit entry in the shape every schema generation is normalized to"""
    id: Optional[int] = None
    order_id: str = Field(..., serialization_alias="orderId")
    action_type: str = Field(..., serialization_alias="actionType")
    timestamp: Optional[datetime] = None
    modified_by: Optional[str] = Field(None, serialization_alias="modifiedBy")
    reason: Optional[str] = None
    previous_data: Any = Field(None, serialization_alias="previousData")
    new_data: Any = Field(None, serialization_alias="newData")
    schema_version: int = Field(2, serialization_alias="schemaVersion")
    parse_error: bool = Field(False, serialization_alias="parseError")

    @classmethod
    def from_v1(cls, row: Mapping[str, Any]) -> "HistoryEntry":
        """Legacy layout: action_timestamp / modified_by columns"""
        return cls._build(
            row,
            timestamp=_as_datetime(row.get("action_timestamp")),
            modified_by=row.get("modified_by"),
            schema_version=1,
        )

    @classmethod
    def from_v2(cls, row: Mapping[str, Any]) -> "HistoryEntry":
        """Current layout: timestamp / user_id columns"""
        return cls._build(
            row,
            timestamp=_as_datetime(row.get("timestamp")),
            modified_by=row.get("user_id"),
            schema_version=row.get("schema_version") or 2,
        )

    @classmethod
    def _build(cls, row: Mapping[str, Any], **fields) -> "HistoryEntry":
        entry = cls(
            id=row.get("id"),
            order_id=row["order_id"],
            action_type=row["action_type"],
            reason=row.get("reason"),
            **fields,
        )
        try:
            entry.previous_data = _parse_snapshot(row.get("previous_data"))
            entry.new_data = _parse_snapshot(row.get("new_data"))
        except (TypeError, ValueError) as e:
            logger.error(f"Error parsing JSON in history row {row.get('id')}: {e}")
            entry.previous_data = None
            entry.new_data = None
            entry.parse_error = True
        return entry

    def to_response(self) -> dict:
        data = self.model_dump(by_alias=True, mode="json")
        if not self.parse_error:
            data.pop("parseError")
        return data
