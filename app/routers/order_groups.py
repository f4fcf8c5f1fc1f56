"""
Order group endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session
import logging

from app.database import get_db
from app.schemas.order import OrderGroupCreate
from app.services.order_group_manager import OrderGroupManager
from app.auth.auth_handler import staff_required, pharmacy_required
from app.utils.error_handler import OrderServiceError, PersistenceError, status_code_for
from app.utils.rate_limit import limiter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
@limiter.limit("60/minute")
async def get_order_groups(
    request: Request,
    current_user: dict = Depends(staff_required),
    db: Session = Depends(get_db)
):
    """List order groups, newest first"""
    groups = await OrderGroupManager(db).get_groups()
    return {"success": True, "groups": groups}


@router.get("/{group_id}")
@limiter.limit("60/minute")
async def get_order_group(
    request: Request,
    group_id: int,
    current_user: dict = Depends(staff_required),
    db: Session = Depends(get_db)
):
    group = await OrderGroupManager(db).get_group_by_id(group_id)
    if not group:
        raise HTTPException(status_code=404, detail="Order group not found")
    return {"success": True, "group": group}


@router.post("/", status_code=201)
@limiter.limit("20/minute")
async def create_order_group(
    request: Request,
    group: OrderGroupCreate,
    current_user: dict = Depends(pharmacy_required),
    db: Session = Depends(get_db)
):
    """Group orders for processing; all orders are assigned or none are"""
    try:
        created = await OrderGroupManager(db).create_group(
            group.order_ids,
            group.group_number,
            notes=group.notes,
            status=group.status,
            created_by=current_user["username"],
        )
    except OrderServiceError as e:
        logger.error(f"Failed to create order group {group.group_number}: {e}")
        detail = "Failed to create order group" if isinstance(e, PersistenceError) else e.message
        raise HTTPException(status_code=status_code_for(e), detail=detail)

    return {"success": True, "group": created}


@router.delete("/{group_id}", status_code=204)
@limiter.limit("20/minute")
async def delete_order_group(
    request: Request,
    group_id: int,
    current_user: dict = Depends(pharmacy_required),
    db: Session = Depends(get_db)
):
    """Delete a group; member orders are kept"""
    if not await OrderGroupManager(db).delete_group(group_id):
        raise HTTPException(status_code=404, detail="Order group not found")
    return Response(status_code=204)
