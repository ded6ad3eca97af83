from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.api.deps import get_db
from storefront.api.schemas import ActivityIn
from storefront.core.auth import get_current_identity, require_admin
from storefront.core.errors import NotFoundError, ValidationError
from storefront.db.models import Product, User
from storefront.store import activity_store

router = APIRouter()


@router.post("")
def record_activity(payload: ActivityIn, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    if not payload.user_id or payload.product_ids is None or not payload.current_step:
        raise ValidationError("Missing required fields: user_id, product_ids, current_step")
    if db.get(User, payload.user_id) is None:
        raise NotFoundError(f"User with ID {payload.user_id} not found. Cannot record activity.")
    created = activity_store.upsert_activity(payload.user_id, payload.product_ids, payload.current_step)
    message = "Activity created successfully" if created else "Activity updated successfully"
    return JSONResponse(
        status_code=201 if created else 200,
        content={"success": True, "message": message, "user_id": payload.user_id},
    )


@router.get("")
def list_activity(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    identity: dict = Depends(require_admin),
    db: Session = Depends(get_db),
):
    total = activity_store.count_activities()
    items = activity_store.list_activities((page - 1) * limit, limit)

    user_ids = {a["user_id"] for a in items}
    product_ids = {pid for a in items for pid in a["product_ids"]}
    users = {u.id: u for u in db.execute(select(User).where(User.id.in_(user_ids))).scalars()} if user_ids else {}
    products = {
        p.id: p for p in db.execute(select(Product).where(Product.id.in_(product_ids))).scalars()
    } if product_ids else {}

    data = []
    for a in items:
        user = users.get(a["user_id"])
        data.append({
            "user_id": a["user_id"],
            "user_name": user.name if user else None,
            "user_email": user.email if user else None,
            "user_mobile": user.mobile if user else None,
            "current_step": a["current_step"],
            "created_at": a["created_at"],
            "updated_at": a["updated_at"],
            "products": [{"id": pid, "name": products[pid].name} for pid in a["product_ids"] if pid in products],
        })

    return {
        "success": True,
        "data": data,
        "page": page,
        "limit": limit,
        "total_pages": (total + limit - 1) // limit,
        "total_records": total,
    }
