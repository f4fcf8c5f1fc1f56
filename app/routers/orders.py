"""
Order management endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
from typing import Optional
import logging

from app.database import get_db
from app.schemas.order import (
    OrderCreate, OrderUpdate, OrderCancel, MedicationsReplace, MedicationAdd, RecentCheckRequest
)
from app.models.order import Order
from app.services.order_store import OrderStore
from app.services.audit_trail import AuditTrail
from app.services.duplicate_detector import DuplicateDetector, WARD_STOCK_WINDOW_DAYS, PATIENT_WINDOW_DAYS
from app.auth.auth_handler import staff_required, ordering_required, pharmacy_required
from app.utils.error_handler import (
    OrderServiceError, PersistenceError, raise_for_result, status_code_for
)
from app.utils.rate_limit import limiter

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(error: OrderServiceError, fallback: str) -> HTTPException:
    status_code = status_code_for(error)
    detail = fallback if isinstance(error, PersistenceError) else error.message
    return HTTPException(status_code=status_code, detail=detail)


@router.post("/", status_code=201)
@limiter.limit("30/minute")
async def create_order(
    request: Request,
    order: OrderCreate,
    current_user: dict = Depends(ordering_required),
    db: Session = Depends(get_db)
):
    """Create a new medication order"""
    try:
        order_id = await OrderStore(db).create_order(order.to_payload())
        return {
            "success": True,
            "message": "Order created successfully",
            "orderId": order_id
        }
    except OrderServiceError as e:
        logger.error(f"Failed to create order: {e}")
        raise _http_error(e, "Failed to create order")


@router.get("/")
@limiter.limit("60/minute")
async def get_orders(
    request: Request,
    status: Optional[str] = Query(None, description="Filter by status"),
    type: Optional[str] = Query(None, description="Filter by order type"),
    ward_id: Optional[int] = Query(None, description="Filter by ward"),
    hospital_id: Optional[int] = Query(None, description="Filter by hospital"),
    urgency: Optional[str] = Query(None, description="Filter by urgency"),
    limit: Optional[int] = Query(None, ge=1, le=1000, description="Maximum number of orders"),
    current_user: dict = Depends(staff_required),
    db: Session = Depends(get_db)
):
    """List orders, most urgent first, then newest first"""
    try:
        orders = await OrderStore(db).get_orders({
            "status": status,
            "type": type,
            "wardId": ward_id,
            "hospitalId": hospital_id,
            "urgency": urgency,
            "limit": limit,
        })
        return {"success": True, "orders": orders}
    except OrderServiceError as e:
        logger.error(f"Failed to get orders: {e}")
        raise _http_error(e, "Failed to retrieve orders")


@router.get("/search/by-medication")
@limiter.limit("30/minute")
async def search_orders_by_medication(
    request: Request,
    q: str = Query(..., min_length=1, description="Medication name fragment"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(staff_required),
    db: Session = Depends(get_db)
):
    """Search orders by medication name"""
    try:
        orders = await OrderStore(db).search_orders_by_medication(q, limit=limit, offset=offset)
        return {"success": True, "orders": orders, "count": len(orders)}
    except OrderServiceError as e:
        logger.error(f"Failed to search orders: {e}")
        raise _http_error(e, "Failed to search orders")


@router.get("/search/advanced")
@limiter.limit("30/minute")
async def advanced_order_search(
    request: Request,
    q: str = Query("", description="Space separated terms matched against medication and patient names"),
    ward_id: Optional[int] = Query(None, alias="wardId", description="Restrict to one ward"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(staff_required),
    db: Session = Depends(get_db)
):
    """Search orders by medication and patient name"""
    try:
        orders = await OrderStore(db).advanced_order_search(q, ward_id=ward_id, limit=limit, offset=offset)
        return {"success": True, "orders": orders, "count": len(orders)}
    except OrderServiceError as e:
        logger.error(f"Failed to search orders: {e}")
        raise _http_error(e, "Failed to search orders")


@router.post("/recent-check")
@limiter.limit("60/minute")
async def check_recent_orders(
    request: Request,
    check: RecentCheckRequest,
    current_user: dict = Depends(ordering_required),
    db: Session = Depends(get_db)
):
    """Warn about recent orders of the same medication; never blocks ordering"""
    identity = check.patient.dict(by_alias=True, exclude_none=True)
    try:
        medications = [med.dict() for med in check.medications]
        recent_orders = await DuplicateDetector(db).check_recent_medication_orders(identity, medications)
    except OrderServiceError as e:
        logger.warning(f"Recent order check degraded to no warning: {e}")
        return {"success": True, "recentOrders": [], "warning": False}

    response = {"success": True, "recentOrders": recent_orders, "warning": bool(recent_orders)}
    if recent_orders:
        window = WARD_STOCK_WINDOW_DAYS if recent_orders[0]["type"] == "ward-stock" else PATIENT_WINDOW_DAYS
        response["warningMessage"] = (
            f"{len(recent_orders)} matching medication order(s) placed in the last {window} days"
        )
    return response


@router.get("/{order_id}")
@limiter.limit("60/minute")
async def get_order(
    request: Request,
    order_id: str,
    current_user: dict = Depends(staff_required),
    db: Session = Depends(get_db)
):
    """Get a specific order by ID"""
    try:
        order = await OrderStore(db).get_order_by_id(order_id)
    except OrderServiceError as e:
        logger.error(f"Failed to get order {order_id}: {e}")
        raise _http_error(e, "Failed to retrieve order")

    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"success": True, "order": order}


@router.put("/{order_id}")
@limiter.limit("30/minute")
async def update_order(
    request: Request,
    order_id: str,
    order_update: OrderUpdate,
    current_user: dict = Depends(pharmacy_required),
    db: Session = Depends(get_db)
):
    """Update an order's status or processing details"""
    try:
        result = await OrderStore(db).update_order(
            order_id,
            order_update.to_payload(),
            modified_by=current_user["username"],
        )
    except OrderServiceError as e:
        logger.error(f"Failed to update order {order_id}: {e}")
        raise _http_error(e, "Failed to update order")

    return raise_for_result(result).to_dict()


@router.put("/{order_id}/cancel")
@limiter.limit("30/minute")
async def cancel_order(
    request: Request,
    order_id: str,
    cancel: OrderCancel,
    current_user: dict = Depends(staff_required),
    db: Session = Depends(get_db)
):
    """Cancel an order with a reason"""
    try:
        result = await OrderStore(db).cancel_order(
            order_id,
            reason=cancel.reason,
            cancelled_by=cancel.cancelled_by or current_user["username"],
            timestamp=cancel.timestamp,
        )
    except OrderServiceError as e:
        logger.error(f"Failed to cancel order {order_id}: {e}")
        raise _http_error(e, "Failed to cancel order")

    return raise_for_result(result).to_dict()


@router.put("/{order_id}/medications")
@limiter.limit("30/minute")
async def update_order_medications(
    request: Request,
    order_id: str,
    update: MedicationsReplace,
    current_user: dict = Depends(staff_required),
    db: Session = Depends(get_db)
):
    """Replace every medication on an order"""
    try:
        result = await OrderStore(db).update_order_medications(
            order_id,
            [med.dict(exclude_none=True) for med in update.medications],
            modified_by=update.modified_by or current_user["username"],
            reason=update.reason,
            timestamp=update.timestamp,
        )
    except OrderServiceError as e:
        logger.error(f"Failed to update medications for order {order_id}: {e}")
        raise _http_error(e, "Failed to update order medications")

    return raise_for_result(result).to_dict()


@router.post("/{order_id}/medications", status_code=201)
@limiter.limit("30/minute")
async def add_order_medication(
    request: Request,
    order_id: str,
    addition: MedicationAdd,
    current_user: dict = Depends(staff_required),
    db: Session = Depends(get_db)
):
    """Add one medication to an order"""
    try:
        result = await OrderStore(db).add_order_medication(
            order_id,
            addition.medication.dict(exclude_none=True),
            modified_by=addition.modified_by or current_user["username"],
            reason=addition.reason,
            timestamp=addition.timestamp,
        )
    except OrderServiceError as e:
        logger.error(f"Failed to add medication to order {order_id}: {e}")
        raise _http_error(e, "Failed to add medication")

    return raise_for_result(result).to_dict()


@router.delete("/{order_id}/medications/{medication_id}")
@limiter.limit("30/minute")
async def remove_order_medication(
    request: Request,
    order_id: str,
    medication_id: int,
    reason: str = Query(..., min_length=1, description="Why the medication is removed"),
    modified_by: Optional[str] = Query(None, alias="modifiedBy"),
    current_user: dict = Depends(staff_required),
    db: Session = Depends(get_db)
):
    """Remove one medication from an order"""
    try:
        result = await OrderStore(db).remove_order_medication(
            order_id,
            medication_id,
            modified_by=modified_by or current_user["username"],
            reason=reason,
        )
    except OrderServiceError as e:
        logger.error(f"Failed to remove medication {medication_id} from order {order_id}: {e}")
        raise _http_error(e, "Failed to remove medication")

    return raise_for_result(result).to_dict()


@router.get("/{order_id}/history")
@limiter.limit("30/minute")
async def get_order_history(
    request: Request,
    order_id: str,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    sort_by: str = Query("timestamp", alias="sortBy"),
    sort_order: str = Query("DESC", alias="sortOrder"),
    current_user: dict = Depends(pharmacy_required),
    db: Session = Depends(get_db)
):
    """Audit trail for an order"""
    try:
        if db.get(Order, order_id) is None:
            raise HTTPException(status_code=404, detail="Order not found")

        history = await AuditTrail(db).get_order_history(
            order_id, limit=limit, offset=offset, sort_by=sort_by, sort_order=sort_order
        )
        return {"success": True, **history}
    except OrderServiceError as e:
        logger.error(f"Failed to get history for order {order_id}: {e}")
        raise _http_error(e, "Failed to retrieve order history")
