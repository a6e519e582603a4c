"""Audit log writers.

Every event lands in the ``audit_logs`` collection. Writing an audit entry
must never break the flow that triggered it, so failures are logged with
their traceback and the caller carries on.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import Request

from microdonate.core.redact import scrub
from microdonate.core.security import utcnow

logger = logging.getLogger(__name__)

EVENT_TYPES = [
    "USER_REGISTRATION",
    "USER_LOGIN_SUCCESS",
    "USER_LOGIN_FAILED",
    "USER_LOGOUT",
    "USER_EMAIL_VERIFIED",
    "USER_2FA_ENABLED",
    "USER_2FA_DISABLED",
    "DONATION_CREATED",
    "DONATION_FAILED",
    "CAUSE_CREATED",
    "CAUSE_UPDATED",
    "CAUSE_DELETED",
    "CAUSE_ARCHIVED",
    "CAUSES_EXPIRED",
    "USER_ROLE_CHANGED",
    "PLATFORM_CONFIG_UPDATED",
    "ADMIN_ACTION",
    "SYSTEM_EVENT",
]
SEVERITIES = ["INFO", "WARNING", "ERROR", "CRITICAL"]


def _client_info(request: Optional[Request]):
    if request is None:
        return None, None
    ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else None)
    return ip, request.headers.get("user-agent")


async def record(
    repo,
    event_type: str,
    description: str,
    request: Optional[Request] = None,
    user: Optional[dict] = None,
    user_email: Optional[str] = None,
    severity: str = "INFO",
    metadata: Optional[Dict[str, Any]] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
) -> Optional[dict]:
    ip, ua = _client_info(request)
    doc = {
        "event_type": event_type,
        "description": description[:500],
        "user_id": user["_id"] if user else None,
        "user_email": user_email or (user or {}).get("email"),
        "ip_address": ip,
        "user_agent": ua,
        "severity": severity,
        "metadata": scrub(metadata or {}),
        "resource_type": resource_type,
        "resource_id": resource_id,
        "created_at": utcnow(),
    }
    try:
        return await repo.insert_audit_log(doc)
    except Exception:
        logger.exception("Failed to write audit log %s", event_type)
        return None


# ---------- Users ----------
async def user_registered(repo, request, user):
    await record(repo, "USER_REGISTRATION", f"New user registered: {user['email']}",
                 request, user=user, resource_type="USER", resource_id=user["_id"])


async def login_succeeded(repo, request, user):
    await record(repo, "USER_LOGIN_SUCCESS", f"User logged in successfully: {user['email']}",
                 request, user=user, resource_type="USER", resource_id=user["_id"])


async def login_failed(repo, request, email: str, reason: str):
    await record(repo, "USER_LOGIN_FAILED", f"Login failed for {email}: {reason}",
                 request, user_email=email, severity="WARNING",
                 metadata={"reason": reason}, resource_type="USER")


async def user_logged_out(repo, request, user):
    await record(repo, "USER_LOGOUT", f"User logged out: {user['email']}",
                 request, user=user, resource_type="USER", resource_id=user["_id"])


async def email_verified(repo, request, user):
    await record(repo, "USER_EMAIL_VERIFIED", f"Email verified for user: {user['email']}",
                 request, user=user, resource_type="USER", resource_id=user["_id"])


async def two_factor_changed(repo, request, user, enabled: bool):
    event = "USER_2FA_ENABLED" if enabled else "USER_2FA_DISABLED"
    verb = "enabled" if enabled else "disabled"
    await record(repo, event, f"Two-factor authentication {verb} for {user['email']}",
                 request, user=user, severity="INFO" if enabled else "WARNING",
                 resource_type="USER", resource_id=user["_id"])


async def role_changed(repo, request, admin, target, old_role: str, new_role: str):
    await record(repo, "USER_ROLE_CHANGED",
                 f"User role changed for {target['email']}: {old_role} -> {new_role}",
                 request, user=admin, severity="WARNING",
                 metadata={"target_user_id": target["_id"], "old_role": old_role, "new_role": new_role},
                 resource_type="USER", resource_id=target["_id"])


# ---------- Donations ----------
async def donation_created(repo, request, user, receipt):
    await record(repo, "DONATION_CREATED",
                 f"Donation of {receipt.amount} made by {user['email']} to {receipt.cause_name}",
                 request, user=user,
                 metadata={"amount": receipt.amount, "cause_id": receipt.cause_id,
                           "cause_name": receipt.cause_name, "payment_id": receipt.payment_id},
                 resource_type="DONATION", resource_id=receipt.donation_id)


async def donation_failed(repo, request, user, amount, cause_names, reason: str):
    await record(repo, "DONATION_FAILED",
                 f"Donation failed for {user['email']}: {reason}",
                 request, user=user, severity="ERROR",
                 metadata={"reason": reason, "amount": amount, "causes": cause_names},
                 resource_type="DONATION")


# ---------- Causes ----------
async def cause_created(repo, request, admin, cause):
    await record(repo, "CAUSE_CREATED", f"New cause created: {cause['name']}",
                 request, user=admin,
                 metadata={"cause_name": cause["name"], "target_amount": cause["target_amount"],
                           "category": cause.get("category")},
                 resource_type="CAUSE", resource_id=cause["_id"])


async def cause_updated(repo, request, admin, cause, changes: dict):
    await record(repo, "CAUSE_UPDATED", f"Cause updated: {cause['name']}",
                 request, user=admin, metadata={"cause_name": cause["name"], "changes": changes},
                 resource_type="CAUSE", resource_id=cause["_id"])


async def cause_deleted(repo, request, admin, cause):
    await record(repo, "CAUSE_DELETED", f"Cause deleted: {cause['name']}",
                 request, user=admin, severity="WARNING", metadata={"cause_name": cause["name"]},
                 resource_type="CAUSE", resource_id=cause["_id"])


async def cause_archived(repo, request, admin, cause):
    await record(repo, "CAUSE_ARCHIVED", f"Cause archived: {cause['name']}",
                 request, user=admin, metadata={"cause_name": cause["name"], "status": cause["status"]},
                 resource_type="CAUSE", resource_id=cause["_id"])


async def causes_expired(repo, matched: int, modified: int):
    await record(repo, "CAUSES_EXPIRED", f"Auto-completed {modified} expired cause(s)",
                 metadata={"matched_count": matched, "modified_count": modified},
                 resource_type="SYSTEM")


# ---------- Admin / config ----------
async def admin_action(repo, request, admin, action: str, details: Optional[dict] = None):
    await record(repo, "ADMIN_ACTION", f"Admin action: {action}",
                 request, user=admin, metadata={"action": action, "details": details or {}})


async def config_updated(repo, request, admin, updates: dict):
    await record(repo, "PLATFORM_CONFIG_UPDATED", "Platform configuration updated by admin",
                 request, user=admin, metadata={"updates": updates}, resource_type="CONFIG")
