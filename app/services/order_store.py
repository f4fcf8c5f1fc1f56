"""
Order store: order persistence, the status state machine and medication edits
Every status and medication mutation writes its audit entry in the same transaction
"""

import uuid
import logging
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.database import with_transaction
from app.models.order import Order, OrderPatient, OrderMedication, ORDER_TYPES, URGENCY_LEVELS
from app.models.ward import Ward
from app.services.audit_trail import AuditTrail
from app.services.encryption import EncryptionGateway, get_encryption_gateway
from app.services.order_status import ORDER_STATUSES, is_terminal, can_transition
from app.utils.error_handler import (
    OperationResult, ValidationError, NotFoundError, StateConflictError
)

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = {
    "processedBy": "processed_by",
    "checkedBy": "checked_by",
    "processingNotes": "processing_notes",
}

URGENCY_RANK = case(
    (Order.urgency == "emergency", 0),
    (Order.urgency == "urgent", 1),
    (Order.urgency == "routine", 2),
    else_=3,
)


def parse_timestamp(value: Any) -> datetime:
    """Accept a datetime or ISO-8601 string and return naive UTC"""
    if value is None:
        return datetime.utcnow()
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Invalid timestamp: {value}")
    if not isinstance(value, datetime):
        raise ValidationError(f"Invalid timestamp: {value}")
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _validate_medication(med: Any) -> None:
    if not isinstance(med, dict) or not med.get("name") or not med.get("quantity"):
        raise ValidationError("Each medication must have a name and quantity")


def _new_medication(med: Dict[str, Any]) -> OrderMedication:
    return OrderMedication(
        name=str(med["name"]).strip(),
        form=med.get("form") or med.get("formulation"),
        strength=med.get("strength"),
        quantity=str(med["quantity"]),
        dose=med.get("dose"),
        notes=med.get("notes"),
    )


class OrderStore:
    """Service for medication order operations"""

    def __init__(
        self,
        db: Session,
        encryption: Optional[EncryptionGateway] = None,
        audit_trail: Optional[AuditTrail] = None,
    ):
        self.db = db
        self.encryption = encryption or get_encryption_gateway()
        self.audit_trail = audit_trail or AuditTrail(db)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def _validate_order_data(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Check required fields and normalize input; raises ValidationError"""
        if not isinstance(data, dict):
            raise ValidationError("Order data must be an object")

        order_type = data.get("type")
        if not order_type:
            raise ValidationError("Missing required field: type")
        if order_type not in ORDER_TYPES:
            raise ValidationError(f"Invalid order type: {order_type}")

        ward_id = data.get("wardId")
        if isinstance(ward_id, str) and ward_id.strip().isdigit():
            ward_id = int(ward_id)
        if isinstance(ward_id, bool) or not isinstance(ward_id, int) or ward_id <= 0:
            raise ValidationError("wardId must be a positive integer")

        medications = data.get("medications")
        if not isinstance(medications, list) or not medications:
            raise ValidationError("At least one medication is required")
        for med in medications:
            _validate_medication(med)

        requester = data.get("requester") or {}
        requester_name = requester.get("name") or data.get("requesterName")
        requester_role = requester.get("role") or data.get("requesterRole")
        if not requester_name or not requester_role:
            raise ValidationError("Requester name and role are required")

        patient = data.get("patient")
        if order_type == "patient":
            if not isinstance(patient, dict):
                raise ValidationError("Patient details are required for patient orders")
            if not patient.get("name") or not patient.get("hospitalId"):
                raise ValidationError("Patient name and hospitalId are required for patient orders")

        urgency = data.get("urgency") or "routine"
        if urgency not in URGENCY_LEVELS:
            raise ValidationError(f"Invalid urgency: {urgency}")

        return {
            "id": data.get("id") or str(uuid.uuid4()),
            "type": order_type,
            "ward_id": ward_id,
            "medications": medications,
            "requester_name": requester_name,
            "requester_role": requester_role,
            "patient": patient if order_type == "patient" else None,
            "notes": data.get("notes"),
            "urgency": urgency,
            "timestamp": parse_timestamp(data.get("timestamp")),
            "is_duplicate": bool(data.get("isDuplicate", False)),
        }

    async def create_order(self, data: Dict[str, Any]) -> str:
        """Validate and persist a new pending order; returns the order id"""
        values = self._validate_order_data(data)
        order_id = values["id"]

        if self.db.get(Order, order_id) is not None:
            raise StateConflictError(f"Order with id '{order_id}' already exists")

        patient = values["patient"]
        sensitive = self.encryption.encrypt_fields({
            "notes": values["notes"],
            "patient_name": patient["name"] if patient else None,
            "patient_dob": patient.get("dob") if patient else None,
        })

        order = Order(
            id=order_id,
            type=values["type"],
            ward_id=values["ward_id"],
            timestamp=values["timestamp"],
            status="pending",
            urgency=values["urgency"],
            requester_name=values["requester_name"],
            requester_role=values["requester_role"],
            notes=sensitive["notes"],
            is_duplicate=values["is_duplicate"],
        )

        if patient:
            order.patient = OrderPatient(
                patient_name=sensitive["patient_name"],
                patient_dob=sensitive["patient_dob"],
                patient_nhs=patient.get("nhs") or patient.get("nhsNumber"),
                patient_hospital_id=str(patient["hospitalId"]),
            )

        order.medications = [_new_medication(med) for med in values["medications"]]

        async def insert(db: Session):
            db.add(order)
            db.flush()

        await with_transaction(self.db, insert)

        logger.info(f"Created {order.type} order {order_id} with {len(order.medications)} medication(s)")
        return order_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def expand_order(self, order: Order) -> Dict[str, Any]:
        """Order as an API dict with decrypted fields, medications and ward names"""
        patient = order.patient if order.type == "patient" else None
        clear = self.encryption.decrypt_fields({
            "notes": order.notes,
            "patient_name": patient.patient_name if patient else None,
            "patient_dob": patient.patient_dob if patient else None,
        })

        result = {
            "id": order.id,
            "type": order.type,
            "wardId": order.ward_id,
            "wardName": None,
            "hospitalId": None,
            "hospitalName": None,
            "timestamp": _iso(order.timestamp),
            "status": order.status,
            "urgency": order.urgency,
            "requesterName": order.requester_name,
            "requesterRole": order.requester_role,
            "notes": clear["notes"],
            "processedBy": order.processed_by,
            "checkedBy": order.checked_by,
            "processingNotes": order.processing_notes,
            "processedAt": _iso(order.processed_at),
            "cancelledBy": order.cancelled_by,
            "cancellationReason": order.cancellation_reason,
            "cancelledAt": _iso(order.cancelled_at),
            "groupId": order.group_id,
            "isDuplicate": bool(order.is_duplicate),
            "medications": [med.to_snapshot() for med in order.medications],
        }

        ward = self.db.get(Ward, order.ward_id)
        if ward is not None:
            result["wardName"] = ward.name
            result["hospitalId"] = ward.hospital_id
            result["hospitalName"] = ward.hospital.name if ward.hospital else None

        if patient is not None:
            result["patient"] = {
                "name": clear["patient_name"],
                "dob": clear["patient_dob"],
                "nhs": patient.patient_nhs,
                "hospitalId": patient.patient_hospital_id,
            }

        return result

    async def get_order_by_id(self, order_id: str) -> Optional[Dict[str, Any]]:
        """Get an expanded order, or None if it does not exist"""
        order = self.db.get(Order, order_id)
        if order is None:
            return None
        return self.expand_order(order)

    async def get_orders(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """List orders by urgency (emergency first), then newest first"""
        filters = filters or {}
        query = self.db.query(Order)

        def wanted(key):
            value = filters.get(key)
            return value is not None and value != "" and value != "all"

        if wanted("status"):
            query = query.filter(Order.status == filters["status"])
        if wanted("type"):
            query = query.filter(Order.type == filters["type"])
        if wanted("urgency"):
            query = query.filter(Order.urgency == filters["urgency"])
        if wanted("wardId"):
            query = query.filter(Order.ward_id == int(filters["wardId"]))
        if wanted("hospitalId"):
            query = query.join(Ward, Ward.id == Order.ward_id).filter(Ward.hospital_id == int(filters["hospitalId"]))

        query = query.order_by(URGENCY_RANK.asc(), Order.timestamp.desc())
        if filters.get("limit"):
            query = query.limit(int(filters["limit"]))

        return [self.expand_order(order) for order in query.all()]

    async def search_orders_by_medication(self, term: str, limit: int = 50, offset: int = 0) -> List[Dict[str, Any]]:
        """Orders with a medication whose name contains term, newest first"""
        term = (term or "").strip().lower()
        if not term:
            return []

        orders = (
            self.db.query(Order)
            .join(OrderMedication, OrderMedication.order_id == Order.id)
            .filter(func.lower(OrderMedication.name).contains(term, autoescape=True))
            .distinct()
            .order_by(Order.timestamp.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [self.expand_order(order) for order in orders]

    async def advanced_order_search(
        self,
        query_text: str,
        ward_id: Optional[int] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """
        Every search token must appear in a medication name or the patient name.

        Patient names may be encrypted at rest, so token matching happens after
        decryption rather than in SQL.
        """
        tokens = [token for token in (query_text or "").lower().split() if token]

        query = self.db.query(Order)
        if ward_id is not None:
            query = query.filter(Order.ward_id == ward_id)

        matches = []
        for order in query.order_by(Order.timestamp.desc()).all():
            names = [med.name.lower() for med in order.medications]
            if order.patient is not None:
                patient_name = self.encryption.decrypt(order.patient.patient_name)
                if patient_name:
                    names.append(patient_name.lower())
            if all(any(token in name for name in names) for token in tokens):
                matches.append(order)

        return [self.expand_order(order) for order in matches[offset:offset + limit]]

    # ------------------------------------------------------------------
    # Status mutations
    # ------------------------------------------------------------------

    def _load_mutable(self, order_id: str, verb: str):
        """Return (order, None) when the order exists and is not terminal, else (None, failure)"""
        order = self.db.get(Order, order_id)
        if order is None:
            return None, OperationResult.failure(NotFoundError("Order not found"))
        if is_terminal(order.status):
            logger.warning(f"Rejected {verb} of order {order_id}: order is {order.status}")
            return None, OperationResult.failure(
                StateConflictError(f"Order cannot be {verb} because it is already {order.status}")
            )
        return order, None

    async def update_order(
        self,
        order_id: str,
        fields: Dict[str, Any],
        modified_by: Optional[str] = None,
    ) -> OperationResult:
        """Partial update of status and processing fields; a status change is audited"""
        status = fields.get("status")
        if status is not None and status not in ORDER_STATUSES:
            return OperationResult.failure(ValidationError(f"Invalid order status: {status}"))

        changes = {key: fields[key] for key in UPDATABLE_FIELDS if fields.get(key) is not None}
        if not status and not changes and "notes" not in fields:
            return OperationResult.failure(ValidationError("No changes supplied"))

        order, failure = self._load_mutable(order_id, "updated")
        if failure:
            return failure

        previous_status = order.status
        status_changed = bool(status) and status != previous_status
        if status_changed and not can_transition(previous_status, status):
            return OperationResult.failure(
                StateConflictError(f"Order status cannot change from {previous_status} to {status}")
            )

        async def apply(db: Session):
            for key, value in changes.items():
                setattr(order, UPDATABLE_FIELDS[key], value)
            if "notes" in fields:
                order.notes = self.encryption.encrypt(fields["notes"])

            if status_changed:
                now = datetime.utcnow()
                reason = fields.get("reason") or f"Status changed to {status}"
                order.status = status
                if status == "completed":
                    order.processed_at = now
                elif status == "cancelled":
                    order.cancelled_at = now
                    order.cancelled_by = modified_by
                    order.cancellation_reason = reason
                    order.append_processing_note(f"Cancelled: {reason}")

                new_data = {"status": status}
                if fields.get("dispensaryId") is not None:
                    new_data["dispensaryId"] = fields["dispensaryId"]
                self.audit_trail.record(
                    order.id,
                    "status_change",
                    modified_by,
                    reason,
                    {"status": previous_status},
                    new_data,
                    timestamp=now,
                )
            db.flush()

        await with_transaction(self.db, apply)

        if status_changed:
            logger.info(f"Order {order_id} status changed from {previous_status} to {status}")
        else:
            logger.info(f"Updated order {order_id}")
        return OperationResult.ok("Order updated", self.expand_order(order))

    async def cancel_order(
        self,
        order_id: str,
        reason: Optional[str],
        cancelled_by: Optional[str],
        timestamp: Any = None,
    ) -> OperationResult:
        """Cancel a non-terminal order and record why"""
        order, failure = self._load_mutable(order_id, "cancelled")
        if failure:
            return failure
        if not reason or not cancelled_by:
            return OperationResult.failure(ValidationError("Reason and cancelledBy are required"))

        try:
            cancelled_at = parse_timestamp(timestamp)
        except ValidationError as e:
            return OperationResult.failure(e)
        previous_status = order.status

        async def apply(db: Session):
            order.status = "cancelled"
            order.append_processing_note(f"Cancelled: {reason}")
            order.cancelled_by = cancelled_by
            order.cancellation_reason = reason
            order.cancelled_at = cancelled_at
            self.audit_trail.record(
                order.id,
                "status_change",
                cancelled_by,
                reason,
                {"status": previous_status},
                {"status": "cancelled"},
                timestamp=cancelled_at,
            )
            db.flush()

        await with_transaction(self.db, apply)

        logger.info(f"Order {order_id} cancelled by {cancelled_by}")
        return OperationResult.ok("Order cancelled successfully", self.expand_order(order))

    # ------------------------------------------------------------------
    # Medication mutations
    # ------------------------------------------------------------------

    async def update_order_medications(
        self,
        order_id: str,
        medications: Any,
        modified_by: Optional[str],
        reason: Optional[str],
        timestamp: Any = None,
    ) -> OperationResult:
        """Replace the whole medication list"""
        order, failure = self._load_mutable(order_id, "modified")
        if failure:
            return failure
        if not isinstance(medications, list) or not modified_by or not reason:
            return OperationResult.failure(
                ValidationError("Medications array, modifiedBy, and reason are required")
            )
        try:
            for med in medications:
                _validate_medication(med)
            modified_at = parse_timestamp(timestamp)
        except ValidationError as e:
            return OperationResult.failure(e)

        previous = [med.to_snapshot() for med in order.medications]

        async def apply(db: Session):
            order.medications.clear()
            db.flush()
            order.medications.extend(_new_medication(med) for med in medications)
            db.flush()
            self.audit_trail.record(
                order.id,
                "medications_update",
                modified_by,
                reason,
                {"medications": previous},
                {"medications": [med.to_snapshot() for med in order.medications]},
                timestamp=modified_at,
            )
            order.append_processing_note(f"Medications updated: {reason}")
            db.flush()

        await with_transaction(self.db, apply)

        logger.info(f"Replaced medications on order {order_id} ({len(previous)} -> {len(medications)})")
        return OperationResult.ok("Order medications updated successfully", self.expand_order(order))

    async def add_order_medication(
        self,
        order_id: str,
        medication: Any,
        modified_by: Optional[str],
        reason: Optional[str],
        timestamp: Any = None,
    ) -> OperationResult:
        """Add one medication line"""
        order, failure = self._load_mutable(order_id, "modified")
        if failure:
            return failure
        if not medication or not modified_by or not reason:
            return OperationResult.failure(
                ValidationError("Medication details, modifiedBy, and reason are required")
            )
        try:
            _validate_medication(medication)
            modified_at = parse_timestamp(timestamp)
        except ValidationError as e:
            return OperationResult.failure(e)

        previous = [med.to_snapshot() for med in order.medications]

        async def apply(db: Session):
            added = _new_medication(medication)
            order.medications.append(added)
            db.flush()
            self.audit_trail.record(
                order.id,
                "medication_add",
                modified_by,
                reason,
                {"medications": previous},
                {"medications": [med.to_snapshot() for med in order.medications], "added": added.to_snapshot()},
                timestamp=modified_at,
            )
            order.append_processing_note(f"Medication added: {added.name} {added.quantity} - {reason}")
            db.flush()

        await with_transaction(self.db, apply)

        logger.info(f"Added medication {medication['name']} to order {order_id}")
        return OperationResult.ok("Medication added successfully", self.expand_order(order))

    async def remove_order_medication(
        self,
        order_id: str,
        medication_id: Any,
        modified_by: Optional[str],
        reason: Optional[str],
        timestamp: Any = None,
    ) -> OperationResult:
        """Remove one medication line by its id"""
        order, failure = self._load_mutable(order_id, "modified")
        if failure:
            return failure
        if medication_id is None or not modified_by or not reason:
            return OperationResult.failure(
                ValidationError("Medication ID, modifiedBy, and reason are required")
            )
        try:
            medication_id = int(medication_id)
            modified_at = parse_timestamp(timestamp)
        except (TypeError, ValueError) as e:
            return OperationResult.failure(ValidationError(f"Invalid medication removal request: {e}"))
        except ValidationError as e:
            return OperationResult.failure(e)

        target = next((med for med in order.medications if med.id == medication_id), None)
        if target is None:
            return OperationResult.failure(NotFoundError("Medication not found in this order"))

        previous = [med.to_snapshot() for med in order.medications]
        removed = target.to_snapshot()

        async def apply(db: Session):
            order.medications.remove(target)
            db.flush()
            self.audit_trail.record(
                order.id,
                "medication_remove",
                modified_by,
                reason,
                {"medications": previous},
                {"medications": [med.to_snapshot() for med in order.medications], "removed": removed},
                timestamp=modified_at,
            )
            order.append_processing_note(f"Medication removed: {removed['name']} {removed['quantity']} - {reason}")
            db.flush()

        await with_transaction(self.db, apply)

        logger.info(f"Removed medication {medication_id} from order {order_id}")
        return OperationResult.ok("Medication removed successfully", self.expand_order(order))
