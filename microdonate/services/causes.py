# microdonate/services/causes.py
import math
from typing import List, Optional

from pymongo.errors import DuplicateKeyError

from microdonate.core.errors import Conflict, NotFound, ValidationFailed
from microdonate.core.security import utcnow
from microdonate.core.states import CAUSE_STATES, archive_target


def percentage(current: float, target: float, places: int = 0) -> float:
    if not target:
        return 0
    pct = current / target * 100
    if places:
        return round(pct, places)
    # half-up, not banker's rounding
    return int(math.floor(pct + 0.5))


def public_cause(doc: Optional[dict], include_owner: bool = False) -> dict:
    if not doc:
        return {}
    out = {
        "id": str(doc["_id"]),
        "name": doc["name"],
        "description": doc.get("description", ""),
        "category": doc.get("category", "other"),
        "image_url": doc.get("image_url", ""),
        "target_amount": doc["target_amount"],
        "current_amount": doc.get("current_amount", 0),
        "donor_count": doc.get("donor_count", 0),
        "status": doc.get("status", "active"),
        "start_date": doc.get("start_date"),
        "end_date": doc.get("end_date"),
        "created_at": doc.get("created_at"),
        "updated_at": doc.get("updated_at"),
        "percentage_achieved": percentage(doc.get("current_amount", 0), doc["target_amount"]),
    }
    if include_owner:
        out["created_by"] = doc.get("created_by")
    return out


def status_filter(status: Optional[str]) -> Optional[List[str]]:
    """Admin list filter: '' or 'all' disables it."""
    if not status or status == "all":
        return None
    if status not in CAUSE_STATES:
        raise ValidationFailed(f"Status must be one of: {', '.join(CAUSE_STATES)}")
    return [status]


async def get_cause(repo, cause_id: str) -> dict:
    cause = await repo.find_cause(cause_id)
    if not cause:
        raise NotFound("Cause not found")
    return cause


async def create_cause(repo, data: dict, admin_id: str) -> dict:
    now = utcnow()
    doc = {
        "name": data["name"].strip(),
        "description": data["description"],
        "category": data.get("category") or "other",
        "target_amount": data["target_amount"],
        "current_amount": 0,
        "donor_count": 0,
        "status": "active",
        "image_url": data.get("image_url") or "",
        "start_date": now,
        "end_date": data.get("end_date"),
        "created_by": admin_id,
        "created_at": now,
        "updated_at": now,
    }
    try:
        return await repo.create_cause(doc)
    except DuplicateKeyError:
        raise Conflict("A cause with this name already exists")


async def update_cause(repo, cause_id: str, changes: dict) -> dict:
    await get_cause(repo, cause_id)
    fields = dict(changes)
    if "name" in fields:
        fields["name"] = fields["name"].strip()
    fields["updated_at"] = utcnow()
    try:
        updated = await repo.update_cause(cause_id, fields)
    except DuplicateKeyError:
        raise Conflict("A cause with this name already exists")
    if not updated:
        raise NotFound("Cause not found")
    return updated


FUNDED_DELETE_MSG = "Cannot delete a cause that has received donations. Consider archiving it instead."


async def delete_cause(repo, cause_id: str) -> dict:
    cause = await get_cause(repo, cause_id)
    if cause.get("current_amount", 0) > 0 or await repo.count_donations(cause_id=cause_id):
        raise ValidationFailed(FUNDED_DELETE_MSG)
    # the store re-checks, a donation may have landed since the read
    if not await repo.delete_cause(cause_id):
        await get_cause(repo, cause_id)
        raise ValidationFailed(FUNDED_DELETE_MSG)
    return cause


async def toggle_archive(repo, cause_id: str) -> dict:
    cause = await get_cause(repo, cause_id)
    target = archive_target(cause.get("status", "active"))
    return await repo.update_cause(cause_id, {"status": target, "updated_at": utcnow()})
