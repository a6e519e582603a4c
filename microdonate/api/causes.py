from typing import Optional

from fastapi import APIRouter, Depends

from microdonate.core.errors import NotFound
from microdonate.core.states import CATEGORIES
from microdonate.deps import get_repo
from microdonate.services.causes import public_cause

router = APIRouter(prefix="/api/causes", tags=["causes"])


@router.get("")
async def list_active(search: Optional[str] = None, category: Optional[str] = None, repo=Depends(get_repo)):
    category = None if category in (None, "", "all") else category
    causes = await repo.list_causes(statuses=["active"], category=category, search=search)
    return {"causes": [public_cause(c) for c in causes], "count": len(causes)}


@router.get("/categories/list")
async def categories():
    return {"categories": [{"value": v, "label": label} for v, label in CATEGORIES]}


@router.get("/{cause_id}")
async def get_one(cause_id: str, repo=Depends(get_repo)):
    cause = await repo.find_cause(cause_id)
    if not cause:
        raise NotFound("Cause not found")
    return public_cause(cause)
