import math
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from microdonate.core.errors import NotFound, ValidationFailed
from microdonate.core.redact import public_user
from microdonate.core.security import require_admin
from microdonate.deps import get_repo
from microdonate.schemas import CauseIn, CauseUpdate, RoleIn
from microdonate.services import audit, causes, stats
from microdonate.services.expiry import expire_causes

router = APIRouter(prefix="/api/admin", tags=["admin"], dependencies=[Depends(require_admin)])


# ---------- Causes ----------
@router.get("/causes")
async def list_causes(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    category: Optional[str] = None,
    status: Optional[str] = None,
    repo=Depends(get_repo),
):
    statuses = causes.status_filter(status)
    category = None if category in (None, "", "all") else category.lower()
    search = (search or "").strip() or None

    total = await repo.count_causes(statuses=statuses, category=category, search=search)
    docs = await repo.list_causes(statuses=statuses, category=category, search=search,
                                  skip=(page - 1) * limit, limit=limit)
    return {
        "causes": [causes.public_cause(c, include_owner=True) for c in docs],
        "count": len(docs),
        "total": total,
        "page": page,
        "total_pages": math.ceil(total / limit),
    }


@router.post("/causes", status_code=201)
async def create_cause(body: CauseIn, request: Request, admin=Depends(require_admin), repo=Depends(get_repo)):
    cause = await causes.create_cause(repo, body.model_dump(), admin["_id"])
    await audit.cause_created(repo, request, admin, cause)
    return {"message": "Cause created successfully", "cause": causes.public_cause(cause, include_owner=True)}


@router.post("/causes/expire")
async def run_expiry(request: Request, admin=Depends(require_admin), repo=Depends(get_repo)):
    result = await expire_causes(repo)
    await audit.admin_action(repo, request, admin, "Ran cause expiry sweep",
                             {"matched_count": result.matched_count, "modified_count": result.modified_count})
    return {"matched_count": result.matched_count, "modified_count": result.modified_count}


@router.get("/causes/{cause_id}")
async def get_cause(cause_id: str, repo=Depends(get_repo)):
    return causes.public_cause(await causes.get_cause(repo, cause_id), include_owner=True)


@router.put("/causes/{cause_id}")
async def update_cause(cause_id: str, body: CauseUpdate, request: Request,
                       admin=Depends(require_admin), repo=Depends(get_repo)):
    # an explicit null only clears end_date
    changes = {k: v for k, v in body.model_dump(exclude_unset=True).items() if v is not None or k == "end_date"}
    if not changes:
        raise ValidationFailed("No fields to update")
    cause = await causes.update_cause(repo, cause_id, changes)
    await audit.cause_updated(repo, request, admin, cause, changes)
    return {"message": "Cause updated successfully", "cause": causes.public_cause(cause, include_owner=True)}


@router.delete("/causes/{cause_id}")
async def delete_cause(cause_id: str, request: Request, admin=Depends(require_admin), repo=Depends(get_repo)):
    cause = await causes.delete_cause(repo, cause_id)
    await audit.cause_deleted(repo, request, admin, cause)
    return {"message": "Cause deleted successfully"}


@router.patch("/causes/{cause_id}/archive")
async def archive_cause(cause_id: str, request: Request, admin=Depends(require_admin), repo=Depends(get_repo)):
    cause = await causes.toggle_archive(repo, cause_id)
    await audit.cause_archived(repo, request, admin, cause)
    verb = "archived" if cause["status"] == "archived" else "restored"
    return {"message": f"Cause {verb} successfully", "cause": causes.public_cause(cause, include_owner=True)}


# ---------- Users ----------
@router.get("/users")
async def list_users(repo=Depends(get_repo)):
    users = await repo.list_users()
    return {"users": [public_user(u) for u in users], "count": len(users)}


@router.get("/users/{user_id}")
async def get_user(user_id: str, repo=Depends(get_repo)):
    user = await repo.find_user(user_id)
    if not user:
        raise NotFound("User not found")
    return public_user(user)


@router.put("/users/{user_id}/role")
async def change_role(user_id: str, body: RoleIn, request: Request,
                      admin=Depends(require_admin), repo=Depends(get_repo)):
    if user_id == admin["_id"]:
        raise ValidationFailed("You cannot change your own role")
    target = await repo.find_user(user_id)
    if not target:
        raise NotFound("User not found")
    old_role = target.get("role", "donor")
    updated = await repo.update_user(user_id, {"role": body.role})
    await audit.role_changed(repo, request, admin, updated, old_role, body.role)
    return {"message": f"User role updated to {body.role}", "user": public_user(updated)}


# ---------- Dashboard ----------
@router.get("/dashboard/stats")
async def dashboard_stats(repo=Depends(get_repo)):
    return await stats.admin_overview(repo)
