from fastapi import APIRouter, Depends, Request

from microdonate.core.errors import ValidationFailed
from microdonate.core.security import require_admin
from microdonate.deps import get_repo
from microdonate.schemas import ConfigUpdate
from microdonate.services import audit, platform_config

router = APIRouter(prefix="/api/config", tags=["config"])


@router.get("")
async def read_config(repo=Depends(get_repo)):
    return platform_config.public_view(await platform_config.get_config(repo))


@router.get("/currency-presets")
async def currency_presets():
    return {"presets": platform_config.CURRENCY_PRESETS}


@router.put("")
async def update_config(body: ConfigUpdate, request: Request, admin=Depends(require_admin), repo=Depends(get_repo)):
    updates = body.model_dump(exclude_none=True)
    updates = {k: v for k, v in updates.items() if v}
    if not updates:
        raise ValidationFailed("No configuration changes supplied")
    doc = await platform_config.update_config(repo, updates, admin["_id"])
    await audit.config_updated(repo, request, admin, updates)
    return {"message": "Platform configuration updated successfully", "config": platform_config.public_view(doc)}
