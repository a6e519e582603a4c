"""Redaction applied before user documents or audit metadata leave the service."""
from typing import Any, Dict

SENSITIVE_KEYS = {
    "password",
    "password_hash",
    "confirm_password",
    "token",
    "access_token",
    "refresh_token",
    "secret",
    "two_factor_secret",
    "backup_codes",
    "backup_code",
    "two_factor_code",
    "token_blacklist",
    "verification_token",
}

USER_PUBLIC_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "age",
    "gender",
    "role",
    "verified",
    "profile",
    "two_factor_enabled",
    "last_activity",
    "created_at",
)


def scrub(data: Any) -> Any:
    """Drop sensitive keys from a (possibly nested) mapping."""
    if isinstance(data, dict):
        return {k: scrub(v) for k, v in data.items() if k not in SENSITIVE_KEYS}
    if isinstance(data, list):
        return [scrub(v) for v in data]
    return data


def public_user(doc: Dict[str, Any] | None) -> Dict[str, Any]:
    if not doc:
        return {}
    out = {"id": str(doc["_id"])}
    for key in USER_PUBLIC_FIELDS:
        if key == "two_factor_enabled":
            out[key] = bool(doc.get(key, False))
        elif key in doc:
            out[key] = doc[key]
    return out
