import logging
from datetime import timedelta

import pytest

from microdonate.core.security import utcnow
from microdonate.repos.inmemory import InMemoryRepo
from microdonate.services.expiry import CauseExpiryScheduler, SweepResult, expire_causes

pytestmark = pytest.mark.anyio


class BrokenRepo(InMemoryRepo):
    async def complete_expired_causes(self, now):
        raise ConnectionError("store unavailable")


async def test_sweep_completes_only_expired_active_causes(repo, make_cause):
    now = utcnow()
    past = now - timedelta(days=1)
    expired = await make_cause(end_date=past)
    future = await make_cause(end_date=now + timedelta(days=1))
    open_ended = await make_cause(end_date=None)
    archived = await make_cause(status="archived", end_date=past)
    completed = await make_cause(status="completed", end_date=past)

    result = await expire_causes(repo, now)
    assert result == SweepResult(matched_count=1, modified_count=1)

    assert (await repo.find_cause(expired["_id"]))["status"] == "completed"
    assert (await repo.find_cause(future["_id"]))["status"] == "active"
    assert (await repo.find_cause(open_ended["_id"]))["status"] == "active"
    assert (await repo.find_cause(archived["_id"]))["status"] == "archived"
    assert (await repo.find_cause(completed["_id"]))["status"] == "completed"


async def test_sweep_is_idempotent(repo, make_cause, events):
    await make_cause(end_date=utcnow() - timedelta(hours=1))
    first = await expire_causes(repo)
    second = await expire_causes(repo)
    assert first.modified_count == 1
    assert second == SweepResult(0, 0)
    assert events().count("CAUSES_EXPIRED") == 1


async def test_sweep_leaves_running_totals_alone(repo, make_cause):
    cause = await make_cause(current_amount=420, end_date=utcnow() - timedelta(minutes=5))
    await expire_causes(repo)
    stored = await repo.find_cause(cause["_id"])
    assert stored["current_amount"] == 420
    assert stored["status"] == "completed"


async def test_store_errors_propagate():
    with pytest.raises(ConnectionError):
        await expire_causes(BrokenRepo())


async def test_scheduled_run_logs_and_reraises(caplog):
    scheduler = CauseExpiryScheduler(BrokenRepo())
    with caplog.at_level(logging.ERROR, logger="microdonate.services.expiry"):
        with pytest.raises(ConnectionError):
            await scheduler._scheduled_run()
    assert "Scheduled cause expiry sweep failed" in caplog.text


async def test_scheduler_start_stop_are_idempotent(repo, make_cause):
    scheduler = CauseExpiryScheduler(repo, hour=0, minute=0)
    assert scheduler.next_run_time() is None

    scheduler.start()
    scheduler.start()
    try:
        assert scheduler.running
        nxt = scheduler.next_run_time()
        assert nxt is not None
        assert (nxt.hour, nxt.minute) == (0, 0)
        assert nxt > utcnow()
    finally:
        scheduler.stop()
        scheduler.stop()
    assert not scheduler.running


async def test_run_now_invokes_the_sweep(repo, make_cause):
    await make_cause(end_date=utcnow() - timedelta(days=3))
    scheduler = CauseExpiryScheduler(repo)
    result = await scheduler.run_now()
    assert result.modified_count == 1


async def test_expired_cause_stops_accepting_donations(client, repo, donor_headers, make_cause):
    cause = await make_cause(end_date=utcnow() - timedelta(days=1))
    await expire_causes(repo)
    r = await client.post("/api/donate", headers=donor_headers, json={"cause_id": cause["_id"], "amount": 10})
    assert r.status_code == 400
    assert r.json()["detail"] == "This cause is currently completed and not accepting donations"


async def test_admin_can_trigger_sweep(client, admin_headers, donor_headers, make_cause):
    await make_cause(end_date=utcnow() - timedelta(days=1))
    await make_cause(end_date=utcnow() - timedelta(days=2))

    r = await client.post("/api/admin/causes/expire", headers=donor_headers)
    assert r.status_code == 403

    r = await client.post("/api/admin/causes/expire", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"matched_count": 2, "modified_count": 2}
