"""Two-factor authentication for admin accounts.

A user moves from *disabled* to *secret issued* (``issue_secret``) to
*enabled* (``enable``, after proving possession of the secret with a TOTP
code). Disabling needs the account password again and wipes the secret and
every backup code.
"""
import logging
import secrets
from datetime import datetime, timezone
from typing import List, Optional

import pyotp
from pyotp.utils import strings_equal

from microdonate.core.config import settings
from microdonate.core.errors import AuthFailed, ValidationFailed
from microdonate.core.security import verify_password

logger = logging.getLogger(__name__)


def generate_backup_codes(count: Optional[int] = None) -> List[str]:
    """``count`` distinct codes of 8 uppercase hex characters."""
    count = count or settings.backup_code_count
    codes: List[str] = []
    while len(codes) < count:
        code = secrets.token_hex(4).upper()
        if code not in codes:
            codes.append(code)
    return codes


def _normalize(code: str) -> str:
    return (code or "").strip().replace(" ", "")


def matching_step(secret: Optional[str], code: str) -> Optional[int]:
    """Time step within the accepted window whose code equals ``code``, or None."""
    code = _normalize(code)
    if not secret or not code.isdigit():
        return None
    totp = pyotp.TOTP(secret)
    for_time = datetime.now(timezone.utc)
    window = settings.totp_valid_window
    for offset in range(-window, window + 1):
        if strings_equal(code, totp.at(for_time, offset)):
            return totp.timecode(for_time) + offset
    return None


async def accept_totp(repo, user: dict, code: str) -> bool:
    """Check a TOTP code and burn its time step; a code is good once."""
    step = matching_step(user.get("two_factor_secret"), code)
    if step is None:
        return False
    return await repo.advance_totp_step(user["_id"], step)


async def issue_secret(repo, user: dict) -> dict:
    if user.get("two_factor_enabled"):
        raise ValidationFailed("2FA is already enabled for your account")
    secret = pyotp.random_base32()
    await repo.update_user(user["_id"], {"two_factor_secret": secret, "two_factor_enabled": False},
                           unset=("two_factor_last_step",))
    uri = pyotp.TOTP(secret).provisioning_uri(name=user["email"], issuer_name=settings.totp_issuer)
    return {"secret": secret, "otpauth_url": uri}


async def enable(repo, user: dict, code: str) -> List[str]:
    """Turn 2FA on and return the plaintext backup codes; they are not shown again."""
    if user.get("two_factor_enabled"):
        raise ValidationFailed("2FA is already enabled for your account")
    if not user.get("two_factor_secret"):
        raise ValidationFailed("Please generate a 2FA secret first")
    if not await accept_totp(repo, user, code):
        raise ValidationFailed("Invalid verification code. Please try again.")

    codes = generate_backup_codes()
    await repo.update_user(user["_id"], {
        "two_factor_enabled": True,
        "backup_codes": [{"code": c, "used": False} for c in codes],
    })
    logger.info("2FA enabled for user %s", user["_id"])
    return codes


async def consume_backup_code(repo, user_id: str, code: str) -> bool:
    code = _normalize(code).upper()
    if not code:
        return False
    return await repo.consume_backup_code(user_id, code)


async def verify(repo, user_id: str, code: str) -> bool:
    """Accept a current TOTP code or, failing that, an unused backup code."""
    user = await repo.find_user(user_id)
    if not user or not user.get("two_factor_enabled"):
        return False
    if await accept_totp(repo, user, code):
        return True
    return await consume_backup_code(repo, user_id, code)


async def disable(repo, user: dict, password: str):
    if not user.get("two_factor_enabled"):
        raise ValidationFailed("2FA is not enabled")
    if not verify_password(password, user.get("password_hash")):
        raise AuthFailed("Invalid password")
    await repo.update_user(
        user["_id"],
        {"two_factor_enabled": False},
        unset=("two_factor_secret", "backup_codes", "two_factor_last_step"),
    )
    logger.info("2FA disabled for user %s", user["_id"])


def status(user: dict) -> dict:
    remaining = sum(1 for c in user.get("backup_codes", []) if not c.get("used"))
    return {
        "two_factor_enabled": bool(user.get("two_factor_enabled")),
        "backup_codes_remaining": remaining,
    }
