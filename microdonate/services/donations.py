"""Donation recording.

A donation is one unit of work: the cause's running total is incremented by
the store and the donation document is inserted inside the same repository
transaction. Either both are committed or neither is visible.
"""
import inspect
import logging
import math
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from microdonate.core.errors import DonationFailed, NotFound, ValidationFailed
from microdonate.core.security import utcnow
from microdonate.services import audit
from microdonate.services.causes import percentage
from microdonate.services.platform_config import get_config

logger = logging.getLogger(__name__)

# called inside the transaction after every write; raising aborts it
FaultHook = Callable[[], Any]


class SimulatedFailure(RuntimeError):
    pass


def simulated_failure():
    raise SimulatedFailure("Simulated database failure for testing")


class CauseStatus(BaseModel):
    current_amount: float
    target_amount: float
    percentage_achieved: float
    status: str


class DonationReceipt(BaseModel):
    donation_id: str
    payment_id: str
    payment_method: str
    amount: float
    cause_id: str
    cause_name: str
    created_at: datetime
    cause_status: CauseStatus


class MultiDonationReceipt(BaseModel):
    payment_id: str
    payment_method: str
    total_amount: float
    donations: List[DonationReceipt]
    created_at: datetime


# ---------- validation ----------
def _is_positive_number(value) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


async def _minimum(repo) -> Optional[float]:
    cfg = await get_config(repo)
    rule = cfg.get("minimum_donation") or {}
    return rule.get("amount") if rule.get("enabled") else None


def _check_amount(amount, minimum: Optional[float], label: str = "Donation amount"):
    if not _is_positive_number(amount):
        raise ValidationFailed(f"{label} must be greater than 0")
    if minimum is not None and amount < minimum:
        raise ValidationFailed(f"{label} must be at least {minimum}")


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _has_ended(cause: dict, now: datetime) -> bool:
    end = cause.get("end_date")
    return end is not None and _aware(end) < now


def _check_open(cause: dict, now: datetime):
    if cause.get("status") != "active":
        raise ValidationFailed(f"This cause is currently {cause.get('status')} and not accepting donations")
    if _has_ended(cause, now):
        raise ValidationFailed("This cause has ended and is no longer accepting donations")


async def _run_fault(fault: Optional[FaultHook]):
    if fault is None:
        return
    res = fault()
    if inspect.isawaitable(res):
        await res


def _cause_status(cause: dict) -> CauseStatus:
    return CauseStatus(
        current_amount=cause["current_amount"],
        target_amount=cause["target_amount"],
        percentage_achieved=percentage(cause["current_amount"], cause["target_amount"]),
        status=cause["status"],
    )


class _CauseClosed(RuntimeError):
    pass


# ---------- unit of work ----------
async def _commit(repo, donor: dict, allocations, causes_by_id, payment_id, payment_method,
                  now, fault, multi: bool) -> List[DonationReceipt]:
    receipts: List[DonationReceipt] = []
    async with repo.transaction() as tx:
        for cause_id, amount in allocations:
            updated = await tx.increment_cause(cause_id, amount, now)
            if updated is None:
                # status changed between validation and the write
                raise _CauseClosed(f"Cause {cause_id} is no longer accepting donations")
            doc = await tx.insert_donation({
                "cause_id": cause_id,
                "cause_name": causes_by_id[cause_id]["name"],
                "donor_id": donor["_id"],
                "amount": amount,
                "payment_id": payment_id,
                "payment_method": payment_method,
                "status": "completed",
                "is_multi_cause": multi,
                "created_at": now,
            })
            receipts.append(DonationReceipt(
                donation_id=str(doc["_id"]),
                payment_id=payment_id,
                payment_method=payment_method,
                amount=amount,
                cause_id=cause_id,
                cause_name=doc["cause_name"],
                created_at=now,
                cause_status=_cause_status(updated),
            ))
        await _run_fault(fault)
    return receipts


async def record_donation(
    repo,
    donor: dict,
    cause_id: str,
    amount: float,
    payment_id: Optional[str] = None,
    payment_method: Optional[str] = None,
    fault: Optional[FaultHook] = None,
    request=None,
) -> DonationReceipt:
    _check_amount(amount, await _minimum(repo))
    cause = await repo.find_cause(cause_id)
    if not cause:
        raise NotFound("Cause not found")
    now = utcnow()
    _check_open(cause, now)

    payment_id = payment_id or str(uuid.uuid4())
    payment_method = payment_method or "manual"
    logger.info("Payment stub: payment_id=%s amount=%s method=%s", payment_id, amount, payment_method)

    try:
        receipts = await _commit(repo, donor, [(cause_id, amount)], {cause_id: cause},
                                 payment_id, payment_method, now, fault, multi=False)
    except Exception as exc:
        logger.exception(
            "Donation rolled back: donor=%s cause=%s payment_id=%s amount=%s",
            donor["_id"], cause_id, payment_id, amount,
        )
        await audit.donation_failed(repo, request, donor, amount, [cause["name"]], str(exc))
        raise DonationFailed() from exc

    receipt = receipts[0]
    logger.info("Donation recorded: payment_id=%s donor=%s cause=%s amount=%s",
                payment_id, donor["_id"], cause_id, amount)
    await audit.donation_created(repo, request, donor, receipt)
    return receipt


async def record_multi_donation(
    repo,
    donor: dict,
    allocations: Sequence[Tuple[str, float]],
    total_amount: float,
    payment_id: Optional[str] = None,
    payment_method: Optional[str] = None,
    fault: Optional[FaultHook] = None,
    request=None,
) -> MultiDonationReceipt:
    if not allocations:
        raise ValidationFailed("At least one cause must be selected")
    if not _is_positive_number(total_amount):
        raise ValidationFailed("Total donation amount must be greater than 0")

    minimum = await _minimum(repo)
    for cause_id, amount in allocations:
        if not cause_id:
            raise ValidationFailed("Each cause must have a valid ID and amount")
        _check_amount(amount, minimum, "Each cause allocation")

    ids = [cause_id for cause_id, _ in allocations]
    if len(set(ids)) != len(ids):
        raise ValidationFailed("Each cause may only be selected once")

    allocated = sum(amount for _, amount in allocations)
    if abs(allocated - total_amount) > 0.01:
        raise ValidationFailed(f"Allocated amounts ({allocated}) must equal total amount ({total_amount})")

    causes = await repo.find_causes(ids)
    if len(causes) != len(ids):
        raise NotFound("One or more causes not found")
    causes_by_id = {c["_id"]: c for c in causes}

    now = utcnow()
    inactive = [c["name"] for c in causes if c.get("status") != "active"]
    if inactive:
        raise ValidationFailed(f"Some causes are not active: {', '.join(inactive)}")
    ended = [c["name"] for c in causes if _has_ended(c, now)]
    if ended:
        raise ValidationFailed(f"Some causes have ended: {', '.join(ended)}")

    payment_id = payment_id or str(uuid.uuid4())
    payment_method = payment_method or "manual"
    logger.info("Multi-cause payment stub: payment_id=%s total=%s causes=%d",
                payment_id, total_amount, len(allocations))

    try:
        receipts = await _commit(repo, donor, list(allocations), causes_by_id,
                                 payment_id, payment_method, now, fault, multi=True)
    except Exception as exc:
        logger.exception("Multi-cause donation rolled back: donor=%s payment_id=%s", donor["_id"], payment_id)
        await audit.donation_failed(repo, request, donor, total_amount,
                                    [c["name"] for c in causes], str(exc))
        raise DonationFailed() from exc

    logger.info("Multi-cause donation recorded: payment_id=%s donor=%s total=%s",
                payment_id, donor["_id"], total_amount)
    for receipt in receipts:
        await audit.donation_created(repo, request, donor, receipt)
    return MultiDonationReceipt(
        payment_id=payment_id,
        payment_method=payment_method,
        total_amount=total_amount,
        donations=receipts,
        created_at=now,
    )


# ---------- read side ----------
def public_donation(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "cause_id": doc.get("cause_id"),
        "cause_name": doc.get("cause_name"),
        "amount": doc.get("amount", 0),
        "payment_id": doc.get("payment_id"),
        "payment_method": doc.get("payment_method"),
        "status": doc.get("status", "completed"),
        "is_multi_cause": doc.get("is_multi_cause", False),
        "created_at": doc.get("created_at"),
    }


async def donation_history(repo, donor_id: str) -> dict:
    docs = await repo.list_donations(donor_id=donor_id)
    return {
        "donations": [public_donation(d) for d in docs],
        "summary": {
            "total_donated": sum(d.get("amount", 0) for d in docs),
            "donation_count": len(docs),
        },
    }


async def donor_stats(repo, donor_id: str) -> dict:
    docs = await repo.list_donations(donor_id=donor_id)
    total = sum(d.get("amount", 0) for d in docs)
    count = len(docs)

    by_cause: Dict[str, dict] = defaultdict(lambda: {"cause": None, "total_amount": 0, "count": 0})
    for d in docs:
        row = by_cause[d.get("cause_id")]
        row["cause"] = d.get("cause_name")
        row["cause_id"] = d.get("cause_id")
        row["total_amount"] += d.get("amount", 0)
        row["count"] += 1
    rows = sorted(by_cause.values(), key=lambda r: r["total_amount"], reverse=True)

    return {
        "total_donated": total,
        "donation_count": count,
        "average_donation": round(total / count, 2) if count else 0,
        "most_supported_cause": rows[0] if rows else None,
        "donations_by_cause": rows,
    }
