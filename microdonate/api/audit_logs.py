import math
from collections import Counter
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from microdonate.core.errors import NotFound, ValidationFailed
from microdonate.core.security import require_admin
from microdonate.deps import get_repo
from microdonate.schemas import as_utc
from microdonate.services import audit

router = APIRouter(prefix="/api/admin/audit-logs", tags=["audit-logs"], dependencies=[Depends(require_admin)])


def public_log(doc: dict) -> dict:
    out = {k: v for k, v in doc.items() if k != "_id"}
    out["id"] = str(doc["_id"])
    return out


@router.get("")
async def list_logs(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    event_type: Optional[str] = None,
    severity: Optional[str] = None,
    user_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    search: Optional[str] = None,
    admin=Depends(require_admin),
    repo=Depends(get_repo),
):
    if event_type and event_type not in audit.EVENT_TYPES:
        raise ValidationFailed(f"Unknown event type: {event_type}")
    if severity and severity not in audit.SEVERITIES:
        raise ValidationFailed(f"Severity must be one of: {', '.join(audit.SEVERITIES)}")

    filters = {
        "event_type": event_type,
        "severity": severity,
        "user_id": user_id,
        "start": as_utc(start_date),
        "end": as_utc(end_date),
        "search": (search or "").strip() or None,
    }
    total = await repo.count_audit_logs(filters)
    logs = await repo.list_audit_logs(filters, skip=(page - 1) * limit, limit=limit)

    applied = {k: v for k, v in filters.items() if v is not None}
    await audit.admin_action(repo, request, admin, "Viewed audit logs",
                             {"filters": applied, "page": page, "limit": limit})
    return {
        "logs": [public_log(log) for log in logs],
        "pagination": {
            "current_page": page,
            "total_pages": math.ceil(total / limit),
            "total_count": total,
            "limit": limit,
        },
    }


@router.get("/stats")
async def log_stats(repo=Depends(get_repo)):
    logs = await repo.list_audit_logs()
    by_type = Counter(log["event_type"] for log in logs)
    by_severity = Counter(log["severity"] for log in logs)
    return {
        "total_logs": len(logs),
        "by_event_type": [{"event_type": k, "count": n} for k, n in by_type.most_common()],
        "by_severity": [{"severity": k, "count": n} for k, n in by_severity.most_common()],
        "recent_activity": [public_log(log) for log in logs[:10]],
    }


@router.get("/{log_id}")
async def get_log(log_id: str, repo=Depends(get_repo)):
    log = await repo.find_audit_log(log_id)
    if not log:
        raise NotFound("Audit log not found")
    return public_log(log)
