"""
Order group service: batches orders into one processing group in a single transaction
"""

import logging
from typing import Optional, List, Dict, Any

from sqlalchemy.orm import Session

from app.database import with_transaction
from app.models.order import Order
from app.models.order_group import OrderGroup
from app.services.audit_trail import AuditTrail
from app.services.order_status import GROUP_STATUSES, can_transition, is_terminal
from app.utils.error_handler import ValidationError, NotFoundError, StateConflictError

logger = logging.getLogger(__name__)

DEFAULT_GROUP_STATUS = "processing"


class OrderGroupManager:
    """Service for order group operations"""

    def __init__(self, db: Session, audit_trail: Optional[AuditTrail] = None):
        self.db = db
        self.audit_trail = audit_trail or AuditTrail(db)

    async def create_group(
        self,
        order_ids: List[str],
        group_number: str,
        notes: Optional[str] = None,
        status: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a group and move every member order into it.

        Either every order is assigned and audited, or nothing is written.
        """
        if not isinstance(order_ids, list) or not order_ids:
            raise ValidationError("Order IDs must be a non-empty array")
        if not group_number:
            raise ValidationError("Group number is required")

        status = status or DEFAULT_GROUP_STATUS
        if status not in GROUP_STATUSES:
            raise ValidationError(f"Orders cannot be grouped into status: {status}")

        order_ids = list(dict.fromkeys(order_ids))

        if self.db.query(OrderGroup).filter(OrderGroup.group_number == group_number).first():
            raise StateConflictError(f"Group number '{group_number}' already exists")

        async def assign(db: Session) -> int:
            group = OrderGroup(group_number=group_number, notes=notes or "", created_by=created_by)
            db.add(group)
            db.flush()

            for order_id in order_ids:
                order = db.get(Order, order_id)
                if order is None:
                    raise NotFoundError(f"Order {order_id} not found")

                previous_status = order.status
                if is_terminal(previous_status) or (
                    previous_status != status and not can_transition(previous_status, status)
                ):
                    raise StateConflictError(
                        f"Order {order_id} cannot move from {previous_status} to {status}"
                    )

                order.group_id = group.id
                order.status = status
                self.audit_trail.record(
                    order.id,
                    "status_change",
                    created_by,
                    f"Added to group {group_number}",
                    {"status": previous_status},
                    {"status": status, "groupId": group.id, "groupNumber": group_number},
                )
            db.flush()
            return group.id

        logger.info(f"Creating group {group_number} with {len(order_ids)} orders")
        try:
            group_id = await with_transaction(self.db, assign)
        except Exception as e:
            logger.error(f"Transaction failed when creating group {group_number}: {e}")
            raise

        logger.info(f"Successfully created group {group_number} with ID {group_id}")
        return await self.get_group_by_id(group_id)

    def _to_dict(self, group: OrderGroup) -> Dict[str, Any]:
        order_ids = [
            row.id for row in
            self.db.query(Order.id).filter(Order.group_id == group.id).order_by(Order.timestamp).all()
        ]
        return {
            "id": group.id,
            "groupNumber": group.group_number,
            "notes": group.notes,
            "createdBy": group.created_by,
            "createdAt": group.created_at.isoformat() if group.created_at else None,
            "orderIds": order_ids,
        }

    async def get_groups(self) -> List[Dict[str, Any]]:
        """All groups, newest first"""
        groups = self.db.query(OrderGroup).order_by(OrderGroup.created_at.desc(), OrderGroup.id.desc()).all()
        return [self._to_dict(group) for group in groups]

    async def get_group_by_id(self, group_id: int) -> Optional[Dict[str, Any]]:
        group = self.db.get(OrderGroup, group_id)
        if group is None:
            logger.warning(f"Group with ID {group_id} not found")
            return None
        return self._to_dict(group)

    async def delete_group(self, group_id: int) -> bool:
        """Delete the group row only; member orders keep existing with group_id cleared by the database"""
        async def remove(db: Session) -> int:
            return db.query(OrderGroup).filter(OrderGroup.id == group_id).delete(synchronize_session=False)

        deleted = await with_transaction(self.db, remove)
        if deleted:
            logger.info(f"Successfully deleted group {group_id}")
        else:
            logger.warning(f"Attempted to delete non-existent group {group_id}")
        # member rows changed underneath the session
        self.db.expire_all()
        return deleted > 0
