# microdonate/services/stats.py
import math
from collections import defaultdict
from datetime import datetime, timezone
from io import BytesIO
from typing import Optional

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from microdonate.core.errors import ValidationFailed
from microdonate.core.security import utcnow
from microdonate.services.causes import percentage

SORT_FIELDS = {"current_amount", "target_amount", "donor_count", "percentage_achieved",
               "average_donation", "created_at", "name"}
TOP_METRICS = {"current_amount", "donor_count", "percentage_achieved"}
PERIOD_FORMATS = {"daily": "%Y-%m-%d", "weekly": "%G-W%V", "monthly": "%Y-%m"}


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _sortable(value):
    # None sorts below everything
    return (value is not None, value)


async def admin_overview(repo) -> dict:
    """Counts for the admin landing page."""
    causes = await repo.list_causes()
    by_status = defaultdict(int)
    for c in causes:
        by_status[c.get("status", "active")] += 1
    return {
        "users": {
            "total": await repo.count_users(),
            "donors": await repo.count_users("donor"),
            "admins": await repo.count_users("admin"),
        },
        "causes": {
            "total": len(causes),
            "active": by_status["active"],
            "completed": by_status["completed"],
            "archived": by_status["archived"],
        },
        "donations": {
            "total_amount": sum(c.get("current_amount", 0) for c in causes),
            "target_amount": sum(c.get("target_amount", 0) for c in causes),
            "total_donors": sum(c.get("donor_count", 0) for c in causes),
            "donation_count": await repo.count_donations(),
        },
    }


def _cause_metrics(c: dict, now: datetime) -> dict:
    current = c.get("current_amount", 0)
    target = c.get("target_amount", 0)
    donors = c.get("donor_count", 0)
    end = c.get("end_date")
    return {
        "id": c["_id"],
        "name": c["name"],
        "category": c.get("category"),
        "status": c.get("status"),
        "current_amount": current,
        "target_amount": target,
        "donor_count": donors,
        "end_date": end,
        "created_at": c.get("created_at"),
        "percentage_achieved": percentage(current, target, places=2),
        "remaining_amount": max(target - current, 0),
        "days_remaining": round((_aware(end) - now).total_seconds() / 86400) if end else None,
        "average_donation": round(current / donors, 2) if donors else 0,
    }


async def aggregated_donations(repo, status: Optional[str] = None, category: Optional[str] = None,
                               sort_by: str = "current_amount", order: str = "desc") -> dict:
    if sort_by not in SORT_FIELDS:
        raise ValidationFailed(f"sort_by must be one of: {', '.join(sorted(SORT_FIELDS))}")
    category = None if category in (None, "", "all") else category
    statuses = None if status in (None, "", "all") else [status]

    now = utcnow()
    rows = [_cause_metrics(c, now) for c in await repo.list_causes(statuses=statuses, category=category)]
    rows.sort(key=lambda r: _sortable(r[sort_by]), reverse=(order != "asc"))

    n = len(rows)
    return {
        "causes": rows,
        "statistics": {
            "total_causes": n,
            "total_donations_collected": sum(r["current_amount"] for r in rows),
            "total_target_amount": sum(r["target_amount"] for r in rows),
            "total_donors": sum(r["donor_count"] for r in rows),
            "active_causes": sum(1 for r in rows if r["status"] == "active"),
            "completed_causes": sum(1 for r in rows if r["status"] == "completed"),
            "average_completion_rate": round(sum(r["percentage_achieved"] for r in rows) / n, 2) if n else 0,
        },
        "filters": {"status": status or "all", "category": category or "all", "sort_by": sort_by, "order": order},
    }


async def donation_trends(repo, period: str = "daily", limit: int = 30) -> dict:
    fmt = PERIOD_FORMATS.get(period)
    if fmt is None:
        raise ValidationFailed(f"period must be one of: {', '.join(PERIOD_FORMATS)}")

    buckets = defaultdict(lambda: {"total_amount": 0, "donation_count": 0, "donors": set()})
    for d in await repo.list_donations():
        b = buckets[_aware(d["created_at"]).strftime(fmt)]
        b["total_amount"] += d.get("amount", 0)
        b["donation_count"] += 1
        b["donors"].add(d.get("donor_id"))

    # most recent `limit` periods, oldest first
    keys = sorted(buckets)[-limit:] if limit > 0 else []
    trends = [
        {
            "period": k,
            "total_amount": buckets[k]["total_amount"],
            "donation_count": buckets[k]["donation_count"],
            "unique_donor_count": len(buckets[k]["donors"]),
        }
        for k in keys
    ]
    return {"trends": trends, "period": period, "limit": limit}


async def category_breakdown(repo) -> list:
    groups = defaultdict(lambda: {"total_causes": 0, "total_donations": 0, "total_target": 0,
                                  "total_donors": 0, "active_causes": 0, "completed_causes": 0})
    for c in await repo.list_causes():
        g = groups[c.get("category", "other")]
        g["total_causes"] += 1
        g["total_donations"] += c.get("current_amount", 0)
        g["total_target"] += c.get("target_amount", 0)
        g["total_donors"] += c.get("donor_count", 0)
        g["active_causes"] += c.get("status") == "active"
        g["completed_causes"] += c.get("status") == "completed"

    out = [
        {"category": cat, **g, "average_completion": percentage(g["total_donations"], g["total_target"], places=2)}
        for cat, g in groups.items()
    ]
    out.sort(key=lambda r: r["total_donations"], reverse=True)
    return out


async def top_causes(repo, metric: str = "current_amount", limit: int = 10) -> dict:
    if metric not in TOP_METRICS:
        raise ValidationFailed(f"metric must be one of: {', '.join(sorted(TOP_METRICS))}")
    now = utcnow()
    rows = [_cause_metrics(c, now) for c in await repo.list_causes(statuses=["active", "completed"])]
    rows.sort(key=lambda r: r[metric], reverse=True)
    return {"top_causes": rows[:limit], "metric": metric, "limit": limit}


async def donor_insights(repo, limit: int = 50) -> dict:
    donors = {u["_id"]: u for u in await repo.list_users() if u.get("role") == "donor"}
    per = {uid: {"total_donations": 0, "total_donated": 0, "last_donation": None} for uid in donors}
    for d in await repo.list_donations():
        row = per.get(d.get("donor_id"))
        if row is None:
            continue
        row["total_donations"] += 1
        row["total_donated"] += d.get("amount", 0)
        if row["last_donation"] is None or d["created_at"] > row["last_donation"]:
            row["last_donation"] = d["created_at"]

    rows = [
        {
            "id": uid,
            "first_name": donors[uid].get("first_name"),
            "last_name": donors[uid].get("last_name"),
            "email": donors[uid].get("email"),
            **row,
        }
        for uid, row in per.items()
    ]
    rows.sort(key=lambda r: r["total_donated"], reverse=True)
    top = rows[:limit]
    n = len(top)
    return {
        "top_donors": top,
        "statistics": {
            "total_donors": len(donors),
            "active_donors": sum(1 for r in top if r["total_donations"] > 0),
            "average_donations_per_donor": round(sum(r["total_donations"] for r in top) / n, 2) if n else 0,
            "average_amount_per_donor": round(sum(r["total_donated"] for r in top) / n, 2) if n else 0,
        },
    }


async def plot_top_causes_png(repo, limit: int = 10):
    """
    Horizontal bar chart of raised vs. target for the top causes.
    Returns a BytesIO PNG buffer.
    """
    top = (await top_causes(repo, "current_amount", limit))["top_causes"]
    labels = [t["name"] for t in top] or ["No data"]
    raised = [t["current_amount"] for t in top] or [0]
    target = [t["target_amount"] for t in top] or [0]

    fig = plt.figure(figsize=(8, max(3, math.ceil(len(labels) * 0.5))))
    plt.barh(labels, target, color="#d0d7de", label="Target")
    plt.barh(labels, raised, color="#2da44e", label="Raised")
    plt.gca().invert_yaxis()
    plt.title("Top Causes by Amount Raised")
    plt.legend()
    plt.tight_layout()

    buf = BytesIO()
    fig.savefig(buf, format="png")
    plt.close(fig)
    buf.seek(0)
    return buf
