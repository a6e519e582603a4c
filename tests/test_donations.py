import asyncio
from datetime import timedelta

import pytest

from microdonate.core.config import settings
from microdonate.core.errors import DonationFailed, ValidationFailed
from microdonate.core.security import utcnow
from microdonate.services import donations

pytestmark = pytest.mark.anyio

ROLLBACK_MSG = "Failed to process donation. No charges were made. Please try again."


async def test_donation_increments_cause_and_records_donation(client, repo, donor, donor_headers, make_cause, events):
    cause = await make_cause(current_amount=500, target_amount=1000, donor_count=3)
    r = await client.post("/api/donate", headers=donor_headers, json={"cause_id": cause["_id"], "amount": 100})
    assert r.status_code == 201, r.text
    data = r.json()["donation"]
    assert data["amount"] == 100
    assert data["cause_name"] == cause["name"]
    assert data["payment_method"] == "manual"
    assert data["payment_id"]
    assert data["cause_status"] == {
        "current_amount": 600,
        "target_amount": 1000,
        "percentage_achieved": 60,
        "status": "active",
    }

    stored = await repo.find_cause(cause["_id"])
    assert stored["current_amount"] == 600
    assert stored["donor_count"] == 4
    [doc] = await repo.list_donations(donor_id=donor["_id"])
    assert doc["_id"] == data["donation_id"]
    assert doc["cause_id"] == cause["_id"]
    assert doc["is_multi_cause"] is False
    assert "DONATION_CREATED" in events()


async def test_simulated_failure_rolls_back_everything(client, repo, donor_headers, make_cause, events):
    cause = await make_cause(current_amount=500, donor_count=3)
    r = await client.post("/api/donate", headers=donor_headers,
                          json={"cause_id": cause["_id"], "amount": 100, "simulate_failure": True})
    assert r.status_code == 500
    assert r.json()["detail"] == ROLLBACK_MSG

    stored = await repo.find_cause(cause["_id"])
    assert stored["current_amount"] == 500
    assert stored["donor_count"] == 3
    assert await repo.count_donations() == 0
    assert "DONATION_FAILED" in events()
    assert "DONATION_CREATED" not in events()


async def test_simulate_flag_ignored_when_fault_injection_off(client, repo, donor_headers, make_cause, monkeypatch):
    monkeypatch.setattr(settings, "enable_fault_injection", False)
    cause = await make_cause()
    r = await client.post("/api/donate", headers=donor_headers,
                          json={"cause_id": cause["_id"], "amount": 10, "simulate_failure": True})
    assert r.status_code == 201, r.text
    assert await repo.count_donations() == 1


async def test_async_fault_hook_aborts_transaction(repo, donor, make_cause):
    cause = await make_cause(current_amount=50)

    async def boom():
        raise ConnectionError("primary stepped down")

    with pytest.raises(DonationFailed) as exc:
        await donations.record_donation(repo, donor, cause["_id"], 25, fault=boom)
    assert isinstance(exc.value.__cause__, ConnectionError)
    assert (await repo.find_cause(cause["_id"]))["current_amount"] == 50
    assert await repo.count_donations() == 0


async def test_concurrent_donations_sum_exactly(repo, donor, make_cause):
    cause = await make_cause(current_amount=500, target_amount=10000)
    await asyncio.gather(*[
        donations.record_donation(repo, donor, cause["_id"], 5) for _ in range(20)
    ])
    stored = await repo.find_cause(cause["_id"])
    assert stored["current_amount"] == 600
    assert stored["donor_count"] == 20
    assert await repo.count_donations(cause_id=cause["_id"]) == 20


async def test_reaching_target_does_not_complete_cause(client, repo, donor_headers, make_cause):
    cause = await make_cause(current_amount=900, target_amount=1000)
    r = await client.post("/api/donate", headers=donor_headers, json={"cause_id": cause["_id"], "amount": 150})
    assert r.status_code == 201
    status = r.json()["donation"]["cause_status"]
    assert status["status"] == "active"
    assert status["percentage_achieved"] == 105
    assert (await repo.find_cause(cause["_id"]))["status"] == "active"


@pytest.mark.parametrize("amount,message", [
    (0, "Donation amount must be greater than 0"),
    (-5, "Donation amount must be greater than 0"),
    (0.5, "Donation amount must be at least 1.0"),
])
async def test_invalid_amounts_rejected_before_any_write(client, repo, donor_headers, make_cause, amount, message):
    cause = await make_cause(current_amount=500)
    r = await client.post("/api/donate", headers=donor_headers, json={"cause_id": cause["_id"], "amount": amount})
    assert r.status_code == 400
    assert r.json()["detail"] == message
    assert (await repo.find_cause(cause["_id"]))["current_amount"] == 500
    assert await repo.count_donations() == 0


async def test_unknown_cause_is_404(client, donor_headers):
    r = await client.post("/api/donate", headers=donor_headers, json={"cause_id": "0" * 24, "amount": 10})
    assert r.status_code == 404
    assert r.json()["detail"] == "Cause not found"


async def test_closed_causes_refuse_donations(client, repo, donor_headers, make_cause):
    archived = await make_cause(status="archived")
    ended = await make_cause(end_date=utcnow() - timedelta(days=1))

    r = await client.post("/api/donate", headers=donor_headers, json={"cause_id": archived["_id"], "amount": 10})
    assert r.status_code == 400
    assert r.json()["detail"] == "This cause is currently archived and not accepting donations"

    r = await client.post("/api/donate", headers=donor_headers, json={"cause_id": ended["_id"], "amount": 10})
    assert r.status_code == 400
    assert r.json()["detail"] == "This cause has ended and is no longer accepting donations"
    assert await repo.count_donations() == 0


async def test_donation_requires_login(client, make_cause):
    cause = await make_cause()
    r = await client.post("/api/donate", json={"cause_id": cause["_id"], "amount": 10})
    assert r.status_code == 401


async def test_minimum_can_be_disabled(repo, donor, make_cause):
    from microdonate.services.platform_config import update_config

    await update_config(repo, {"minimum_donation": {"enabled": False}}, "admin")
    cause = await make_cause()
    receipt = await donations.record_donation(repo, donor, cause["_id"], 0.25)
    assert receipt.amount == 0.25


# ---------- multi-cause ----------
async def test_multi_donation_updates_every_cause(client, repo, donor, donor_headers, make_cause):
    a = await make_cause(current_amount=100)
    b = await make_cause(current_amount=0)
    r = await client.post("/api/donate/multi", headers=donor_headers, json={
        "causes": [{"cause_id": a["_id"], "amount": 30}, {"cause_id": b["_id"], "amount": 20}],
        "total_amount": 50,
        "payment_method": "card",
    })
    assert r.status_code == 201, r.text
    body = r.json()["donation"]
    assert body["total_amount"] == 50
    assert len(body["donations"]) == 2

    assert (await repo.find_cause(a["_id"]))["current_amount"] == 130
    assert (await repo.find_cause(b["_id"]))["current_amount"] == 20
    docs = await repo.list_donations(donor_id=donor["_id"])
    assert len(docs) == 2
    assert {d["payment_id"] for d in docs} == {body["payment_id"]}
    assert all(d["is_multi_cause"] for d in docs)


async def test_multi_donation_total_mismatch_writes_nothing(client, repo, donor_headers, make_cause):
    a = await make_cause()
    b = await make_cause()
    r = await client.post("/api/donate/multi", headers=donor_headers, json={
        "causes": [{"cause_id": a["_id"], "amount": 30}, {"cause_id": b["_id"], "amount": 20}],
        "total_amount": 60,
    })
    assert r.status_code == 400
    assert "must equal total amount" in r.json()["detail"]
    assert await repo.count_donations() == 0


async def test_multi_donation_failure_leaves_all_causes_unchanged(client, repo, donor_headers, make_cause):
    a = await make_cause(current_amount=10)
    b = await make_cause(current_amount=20)
    r = await client.post("/api/donate/multi", headers=donor_headers, json={
        "causes": [{"cause_id": a["_id"], "amount": 5}, {"cause_id": b["_id"], "amount": 5}],
        "total_amount": 10,
        "simulate_failure": True,
    })
    assert r.status_code == 500
    assert (await repo.find_cause(a["_id"]))["current_amount"] == 10
    assert (await repo.find_cause(b["_id"]))["current_amount"] == 20
    assert await repo.count_donations() == 0


async def test_multi_donation_rejects_unknown_and_repeated_causes(repo, donor, make_cause):
    a = await make_cause()
    with pytest.raises(ValidationFailed, match="only be selected once"):
        await donations.record_multi_donation(repo, donor, [(a["_id"], 5), (a["_id"], 5)], 10)

    from microdonate.core.errors import NotFound
    with pytest.raises(NotFound, match="One or more causes not found"):
        await donations.record_multi_donation(repo, donor, [(a["_id"], 5), ("f" * 24, 5)], 10)

    with pytest.raises(ValidationFailed, match="At least one cause"):
        await donations.record_multi_donation(repo, donor, [], 10)


# ---------- read side ----------
async def test_history_and_stats(client, repo, donor, donor_headers, make_cause):
    a = await make_cause(name="Books")
    b = await make_cause(name="Wells")
    await donations.record_donation(repo, donor, a["_id"], 10)
    await donations.record_donation(repo, donor, b["_id"], 40)
    await donations.record_donation(repo, donor, a["_id"], 20)

    r = await client.get("/api/donate/history", headers=donor_headers)
    assert r.status_code == 200
    hist = r.json()
    assert hist["summary"] == {"total_donated": 70, "donation_count": 3}
    assert [d["amount"] for d in hist["donations"]] == [20, 40, 10]

    r = await client.get("/api/donate/stats", headers=donor_headers)
    stats = r.json()
    assert stats["total_donated"] == 70
    assert stats["average_donation"] == 23.33
    assert stats["most_supported_cause"]["cause"] == "Wells"
    assert [row["total_amount"] for row in stats["donations_by_cause"]] == [40, 30]


async def test_donor_browse_lists_active_causes_only(client, donor_headers, make_cause):
    await make_cause(name="Open")
    await make_cause(name="Shut", status="archived")
    r = await client.get("/api/donate/causes", headers=donor_headers)
    assert [c["name"] for c in r.json()["causes"]] == ["Open"]

    r = await client.get("/api/donate/categories", headers=donor_headers)
    assert r.json()["categories"] == ["education"]


async def test_idempotency_key_prevents_double_donation(client, repo, donor_headers, make_cause):
    cause = await make_cause()
    headers = {**donor_headers, "Idempotency-Key": "retry-123"}
    body = {"cause_id": cause["_id"], "amount": 10}

    first = await client.post("/api/donate", headers=headers, json=body)
    second = await client.post("/api/donate", headers=headers, json=body)
    assert first.status_code == second.status_code == 201
    assert first.json() == second.json()
    assert second.headers.get("idempotent-replayed") == "true"
    assert await repo.count_donations() == 1
    assert (await repo.find_cause(cause["_id"]))["current_amount"] == 10


async def test_idempotency_key_is_scoped_to_the_caller(client, repo, admin, donor, admin_headers, donor_headers,
                                                       make_cause):
    cause = await make_cause()
    body = {"cause_id": cause["_id"], "amount": 10}

    first = await client.post("/api/donate", headers={**admin_headers, "Idempotency-Key": "k"}, json=body)
    second = await client.post("/api/donate", headers={**donor_headers, "Idempotency-Key": "k"}, json=body)
    assert first.status_code == second.status_code == 201
    assert "idempotent-replayed" not in second.headers
    assert first.json()["donation"]["donation_id"] != second.json()["donation"]["donation_id"]
    assert len(await repo.list_donations(donor_id=donor["_id"])) == 1
    assert len(await repo.list_donations(donor_id=admin["_id"])) == 1
    assert (await repo.find_cause(cause["_id"]))["current_amount"] == 20


async def test_idempotency_key_ignored_outside_donation_writes(client, repo, admin, donor, password):
    r = await client.post("/api/auth/login", headers={"Idempotency-Key": "1"},
                          json={"email": admin["email"], "password": password})
    assert r.status_code == 200
    assert r.json()["role"] == "admin"

    r = await client.post("/api/auth/login", headers={"Idempotency-Key": "1"},
                          json={"email": donor["email"], "password": "wrong-password"})
    assert r.status_code == 401
    assert "access_token" not in r.json()
    assert repo.idempotency == {}


async def test_idempotency_key_without_token_is_not_stored(client, repo, make_cause):
    cause = await make_cause()
    r = await client.post("/api/donate", headers={"Idempotency-Key": "anon"},
                          json={"cause_id": cause["_id"], "amount": 10})
    assert r.status_code == 401
    assert repo.idempotency == {}


async def test_readers_never_see_an_uncommitted_donation(repo, donor, make_cause):
    cause = await make_cause(current_amount=500, donor_count=3)
    inside = asyncio.Event()

    async def slow_gateway_failure():
        inside.set()
        await asyncio.sleep(0.01)
        raise RuntimeError("payment gateway timeout")

    task = asyncio.create_task(
        donations.record_donation(repo, donor, cause["_id"], 100, fault=slow_gateway_failure)
    )
    await inside.wait()
    seen = await repo.find_cause(cause["_id"])
    assert seen["current_amount"] == 500
    assert seen["donor_count"] == 3
    assert await repo.count_donations() == 0

    with pytest.raises(DonationFailed):
        await task
    assert (await repo.find_cause(cause["_id"]))["current_amount"] == 500
