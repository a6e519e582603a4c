from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from microdonate.core.security import get_current_user, require_admin
from microdonate.deps import get_repo
from microdonate.services import stats

router = APIRouter(prefix="/api/dashboard", tags=["dashboard"], dependencies=[Depends(get_current_user)])


@router.get("/aggregated-donations")
async def aggregated_donations(
    status: Optional[str] = None,
    category: Optional[str] = None,
    sort_by: str = "current_amount",
    order: str = Query("desc", pattern="^(asc|desc)$"),
    repo=Depends(get_repo),
):
    return await stats.aggregated_donations(repo, status, category, sort_by, order)


@router.get("/donation-trends")
async def donation_trends(period: str = "daily", limit: int = Query(30, ge=1, le=365), repo=Depends(get_repo)):
    return await stats.donation_trends(repo, period, limit)


@router.get("/category-breakdown")
async def category_breakdown(repo=Depends(get_repo)):
    return {"categories": await stats.category_breakdown(repo)}


@router.get("/top-causes")
async def top_causes(metric: str = "current_amount", limit: int = Query(10, ge=1, le=100), repo=Depends(get_repo)):
    return await stats.top_causes(repo, metric, limit)


@router.get("/donor-insights", dependencies=[Depends(require_admin)])
async def donor_insights(repo=Depends(get_repo)):
    return await stats.donor_insights(repo)


@router.get("/plots/top_causes.png")
async def top_causes_png(repo=Depends(get_repo)):
    buf = await stats.plot_top_causes_png(repo)
    return StreamingResponse(buf, media_type="image/png")
