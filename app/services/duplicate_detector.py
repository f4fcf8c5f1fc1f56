"""
Recent-order duplicate detection
Advisory only: warns when the same medication was ordered recently for the same patient or ward
"""

import re
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from sqlalchemy import or_, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.order import Order, OrderPatient, OrderMedication
from app.models.ward import Ward
from app.services.encryption import EncryptionGateway, get_encryption_gateway
from app.utils.error_handler import PersistenceError

logger = logging.getLogger(__name__)

WARD_STOCK_WINDOW_DAYS = 2
PATIENT_WINDOW_DAYS = 14

WARD_MARKER = re.compile(r"^ward-(\d+)$", re.IGNORECASE)
BASE_NAME = re.compile(r"[a-z0-9]+")


def medication_search_terms(name: str) -> List[str]:
    """
    Substring terms for one requested medication: the first alphanumeric
    token of the name, plus the full name. "Saline 0.9%" gives ["saline", "saline 0.9%"].
    """
    full_name = str(name if name is not None else "").strip().lower()
    if not full_name:
        return []
    terms = []
    base = BASE_NAME.search(full_name.split()[0])
    if base:
        terms.append(base.group(0))
    if full_name not in terms:
        terms.append(full_name)
    return terms


def resolve_ward_id(identity: Dict[str, Any]) -> Optional[int]:
    """Ward id when the identity describes a ward-stock request, else None"""
    ward_id = identity.get("wardId")
    if ward_id not in (None, ""):
        try:
            return int(ward_id)
        except (TypeError, ValueError):
            return None

    hospital_number = str(identity.get("hospitalNumber") or "").strip()
    match = WARD_MARKER.match(hospital_number)
    if match:
        return int(match.group(1))
    return None


class DuplicateDetector:
    """Finds recent orders of the same medications for the same patient or ward"""

    def __init__(self, db: Session, encryption: Optional[EncryptionGateway] = None):
        self.db = db
        self.encryption = encryption or get_encryption_gateway()

    async def check_recent_medication_orders(
        self,
        identity: Dict[str, Any],
        medications: List[Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """
        Return one entry per matching (order, medication) pair inside the lookback
        window, newest first. An empty list means nothing usable to match on, or no match.
        """
        identity = identity or {}
        now = now or datetime.utcnow()

        terms = []
        for med in medications or []:
            for term in medication_search_terms(med.get("name") if isinstance(med, dict) else None):
                if term not in terms:
                    terms.append(term)
        if not terms:
            return []

        ward_id = resolve_ward_id(identity) if identity.get("type") != "patient" else None
        if ward_id is not None:
            window_days = WARD_STOCK_WINDOW_DAYS
            identity_filter = [Order.type == "ward-stock", Order.ward_id == ward_id]
        else:
            window_days = PATIENT_WINDOW_DAYS
            identity_filter = self._patient_filter(identity)
            if identity_filter is None:
                logger.info("Recent order check skipped: no usable patient identifier")
                return []

        since = now - timedelta(days=window_days)
        medication_filter = or_(
            *[func.lower(OrderMedication.name).contains(term, autoescape=True) for term in terms]
        )

        try:
            rows = (
                self.db.query(Order, OrderMedication, OrderPatient, Ward)
                .join(OrderMedication, OrderMedication.order_id == Order.id)
                .outerjoin(OrderPatient, OrderPatient.order_id == Order.id)
                .outerjoin(Ward, Ward.id == Order.ward_id)
                .filter(Order.timestamp >= since, *identity_filter)
                .filter(medication_filter)
                .order_by(Order.timestamp.desc(), OrderMedication.id)
                .all()
            )
        except SQLAlchemyError as e:
            logger.error(f"Recent order check failed: {e}")
            raise PersistenceError(f"Recent order check failed: {e}", e)

        logger.info(f"Recent order check ({window_days}-day window) found {len(rows)} match(es)")
        return [self._to_result(order, med, patient, ward) for order, med, patient, ward in rows]

    def _patient_filter(self, identity: Dict[str, Any]):
        hospital_number = identity.get("hospitalNumber") or identity.get("hospitalId")
        if hospital_number:
            return [Order.type == "patient", OrderPatient.patient_hospital_id == str(hospital_number)]

        nhs_number = identity.get("nhsNumber") or identity.get("nhs")
        if nhs_number:
            return [Order.type == "patient", OrderPatient.patient_nhs == str(nhs_number)]

        # stored names are ciphertext with a random IV once encryption is on
        patient_name = identity.get("name") or identity.get("patientName")
        if patient_name and not self.encryption.is_encryption_configured():
            return [Order.type == "patient", OrderPatient.patient_name == patient_name]

        return None

    def _to_result(self, order: Order, med: OrderMedication, patient: Optional[OrderPatient], ward: Optional[Ward]) -> Dict[str, Any]:
        return {
            "id": order.id,
            "type": order.type,
            "timestamp": order.timestamp.isoformat() if order.timestamp else None,
            "status": order.status,
            "requesterName": order.requester_name,
            "wardId": order.ward_id,
            "wardName": ward.name if ward else None,
            "patientName": self.encryption.decrypt(patient.patient_name) if patient else None,
            "hospitalNumber": patient.patient_hospital_id if patient else None,
            "nhsNumber": patient.patient_nhs if patient else None,
            "medication": {
                "id": med.id,
                "name": med.name,
                "form": med.form,
                "strength": med.strength,
                "quantity": med.quantity,
                "dose": med.dose,
            },
        }
