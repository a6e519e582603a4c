import pytest

from microdonate.services import audit

pytestmark = pytest.mark.anyio


async def test_default_config_is_created_on_first_read(client, repo):
    assert repo.platform_config is None
    r = await client.get("/api/config")
    assert r.status_code == 200
    assert r.json()["minimum_donation"] == {"amount": 1.0, "enabled": True}
    assert r.json()["currency"]["code"] == "USD"
    assert repo.platform_config is not None


async def test_currency_presets(client):
    r = await client.get("/api/config/currency-presets")
    codes = [p["code"] for p in r.json()["presets"]]
    assert codes == ["USD", "EUR", "GBP", "INR", "CAD", "AUD", "JPY"]


async def test_admin_updates_config(client, repo, admin, admin_headers, donor_headers, make_cause, events):
    r = await client.put("/api/config", headers=donor_headers, json={"minimum_donation": {"amount": 5}})
    assert r.status_code == 403

    r = await client.put("/api/config", headers=admin_headers, json={
        "minimum_donation": {"amount": 5},
        "currency": {"code": "EUR", "symbol": "€"},
    })
    assert r.status_code == 200, r.text
    cfg = r.json()["config"]
    assert cfg["minimum_donation"] == {"amount": 5, "enabled": True}
    assert cfg["currency"]["code"] == "EUR"
    assert cfg["currency"]["decimal_places"] == 2
    assert repo.platform_config["updated_by"] == admin["_id"]
    assert "PLATFORM_CONFIG_UPDATED" in events()

    cause = await make_cause()
    r = await client.post("/api/donate", headers=donor_headers, json={"cause_id": cause["_id"], "amount": 4})
    assert r.status_code == 400
    assert r.json()["detail"] == "Donation amount must be at least 5.0"


@pytest.mark.parametrize("body", [
    {"minimum_donation": {"amount": 0}},
    {"currency": {"decimal_places": 7}},
    {"currency": {"position": "middle"}},
    {"currency": {"code": "XYZ"}},
])
async def test_config_validation(client, admin_headers, body):
    r = await client.put("/api/config", headers=admin_headers, json=body)
    assert r.status_code == 422


async def test_empty_config_update_rejected(client, admin_headers):
    r = await client.put("/api/config", headers=admin_headers, json={})
    assert r.status_code == 400


async def test_audit_metadata_is_scrubbed(repo, donor):
    doc = await audit.record(repo, "SYSTEM_EVENT", "check", user=donor, metadata={
        "password": "hunter22",
        "nested": {"token": "abc", "two_factor_secret": "S3CRET", "kept": 1},
        "items": [{"backup_codes": ["X"], "ok": True}],
    })
    assert doc["metadata"] == {"nested": {"kept": 1}, "items": [{"ok": True}]}


async def test_audit_write_failure_does_not_break_caller(repo, caplog):
    async def broken(doc):
        raise ConnectionError("audit store down")

    repo.insert_audit_log = broken
    assert await audit.record(repo, "SYSTEM_EVENT", "still fine") is None
    assert "Failed to write audit log SYSTEM_EVENT" in caplog.text


async def _seed_logs(repo, donor, admin):
    await audit.login_succeeded(repo, None, donor)
    await audit.login_failed(repo, None, "mallory@example.com", "Invalid credentials")
    await audit.login_failed(repo, None, "mallory@example.com", "Invalid credentials")
    await audit.admin_action(repo, None, admin, "Exported report")


async def test_list_audit_logs_with_filters(client, repo, admin, donor, admin_headers):
    await _seed_logs(repo, donor, admin)

    r = await client.get("/api/admin/audit-logs", headers=admin_headers, params={"severity": "WARNING"})
    assert r.status_code == 200
    body = r.json()
    assert body["pagination"]["total_count"] == 2
    assert all(log["event_type"] == "USER_LOGIN_FAILED" for log in body["logs"])

    r = await client.get("/api/admin/audit-logs", headers=admin_headers, params={"search": "MALLORY"})
    assert r.json()["pagination"]["total_count"] == 2

    r = await client.get("/api/admin/audit-logs", headers=admin_headers, params={"user_id": donor["_id"]})
    assert [log["event_type"] for log in r.json()["logs"]] == ["USER_LOGIN_SUCCESS"]

    r = await client.get("/api/admin/audit-logs", headers=admin_headers, params={"limit": 2, "page": 1})
    page = r.json()
    assert len(page["logs"]) == 2
    assert page["pagination"]["total_pages"] >= 3
    # newest first
    stamps = [log["created_at"] for log in page["logs"]]
    assert stamps == sorted(stamps, reverse=True)


async def test_viewing_logs_is_itself_audited(client, repo, admin_headers):
    await client.get("/api/admin/audit-logs", headers=admin_headers)
    [log] = await repo.list_audit_logs({"event_type": "ADMIN_ACTION"})
    assert log["metadata"]["action"] == "Viewed audit logs"


async def test_audit_log_stats_and_detail(client, repo, admin, donor, admin_headers):
    await _seed_logs(repo, donor, admin)
    r = await client.get("/api/admin/audit-logs/stats", headers=admin_headers)
    stats = r.json()
    assert stats["total_logs"] == 4
    assert {"event_type": "USER_LOGIN_FAILED", "count": 2} in stats["by_event_type"]
    assert {"severity": "WARNING", "count": 2} in stats["by_severity"]
    assert len(stats["recent_activity"]) == 4

    log_id = stats["recent_activity"][0]["id"]
    r = await client.get(f"/api/admin/audit-logs/{log_id}", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["id"] == log_id

    r = await client.get("/api/admin/audit-logs/" + "0" * 24, headers=admin_headers)
    assert r.status_code == 404


async def test_unknown_audit_filters_rejected(client, admin_headers):
    r = await client.get("/api/admin/audit-logs", headers=admin_headers, params={"event_type": "NOPE"})
    assert r.status_code == 400
    r = await client.get("/api/admin/audit-logs", headers=admin_headers, params={"severity": "LOUD"})
    assert r.status_code == 400
