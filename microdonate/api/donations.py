from typing import Optional

from fastapi import APIRouter, Depends, Request

from microdonate.core.config import settings
from microdonate.core.security import get_current_user
from microdonate.deps import get_repo
from microdonate.schemas import DonationIn, MultiDonationIn
from microdonate.services import donations
from microdonate.services.causes import get_cause, public_cause

router = APIRouter(prefix="/api/donate", tags=["donations"])


def _fault(flag: bool):
    # the request flag only has teeth when fault injection is switched on
    if flag and settings.enable_fault_injection:
        return donations.simulated_failure
    return None


@router.post("", status_code=201)
async def donate(body: DonationIn, request: Request, user=Depends(get_current_user), repo=Depends(get_repo)):
    receipt = await donations.record_donation(
        repo,
        user,
        body.cause_id,
        body.amount,
        payment_id=body.payment_id,
        payment_method=body.payment_method,
        fault=_fault(body.simulate_failure),
        request=request,
    )
    return {"message": "Donation successful", "donation": receipt.model_dump()}


@router.post("/multi", status_code=201)
async def donate_multi(body: MultiDonationIn, request: Request, user=Depends(get_current_user),
                       repo=Depends(get_repo)):
    receipt = await donations.record_multi_donation(
        repo,
        user,
        [(a.cause_id, a.amount) for a in body.causes],
        body.total_amount,
        payment_id=body.payment_id,
        payment_method=body.payment_method,
        fault=_fault(body.simulate_failure),
        request=request,
    )
    return {"message": "Multi-cause donation successful", "donation": receipt.model_dump()}


@router.get("/history")
async def history(user=Depends(get_current_user), repo=Depends(get_repo)):
    return await donations.donation_history(repo, user["_id"])


@router.get("/stats")
async def stats(user=Depends(get_current_user), repo=Depends(get_repo)):
    return await donations.donor_stats(repo, user["_id"])


@router.get("/categories")
async def categories(user=Depends(get_current_user), repo=Depends(get_repo)):
    return {"categories": await repo.distinct_categories()}


@router.get("/causes")
async def browse(search: Optional[str] = None, category: Optional[str] = None,
                 user=Depends(get_current_user), repo=Depends(get_repo)):
    category = None if category in (None, "", "all") else category
    causes = await repo.list_causes(statuses=["active"], category=category, search=search)
    return {"causes": [public_cause(c) for c in causes], "count": len(causes)}


@router.get("/causes/{cause_id}")
async def cause_detail(cause_id: str, user=Depends(get_current_user), repo=Depends(get_repo)):
    return public_cause(await get_cause(repo, cause_id))
