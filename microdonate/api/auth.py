import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError

from microdonate.core.errors import AuthFailed, NotFound, ValidationFailed
from microdonate.core.redact import public_user
from microdonate.core.security import (
    create_access_token,
    create_verification_token,
    decode_token,
    get_current_user,
    hash_password,
    utcnow,
    verify_password,
)
from microdonate.deps import get_repo
from microdonate.schemas import LoginIn, ProfileIn, RegisterIn, ResendVerificationIn
from microdonate.services import audit, two_factor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

MIN_PASSWORD_LEN = 8


@router.post("/register", status_code=201)
async def register(body: RegisterIn, request: Request, repo=Depends(get_repo)):
    if body.password != body.confirm_password:
        raise ValidationFailed("Passwords do not match")
    if len(body.password) < MIN_PASSWORD_LEN:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LEN} characters")
    if await repo.find_user_by_email(body.email):
        raise ValidationFailed("Email already registered")

    token = create_verification_token(body.email.lower())
    try:
        user = await repo.create_user({
            "first_name": body.first_name,
            "last_name": body.last_name,
            "age": body.age,
            "gender": body.gender,
            "email": body.email,
            "password_hash": hash_password(body.password),
            "role": "donor",
            "verified": False,
            "verification_token": token,
            "profile": {},
            "token_blacklist": [],
            "two_factor_enabled": False,
            "created_at": utcnow(),
        })
    except DuplicateKeyError:
        raise ValidationFailed("Email already registered")

    logger.info("Registered user %s", user["_id"])
    await audit.user_registered(repo, request, user)
    # no mail delivery: the token is handed back for manual verification
    return {
        "message": "Registration successful. Use the verification token to verify your account.",
        "verification_token": token,
        "user": public_user(user),
    }


async def _verify(token: str, request: Request, repo) -> dict:
    try:
        claims = decode_token(token)
    except AuthFailed:
        raise ValidationFailed("Invalid or expired token")
    if claims.get("purpose") != "verify":
        raise ValidationFailed("Invalid or expired token")

    user = await repo.find_user_by_email(claims.get("sub"))
    if not user:
        raise NotFound("User not found")
    if user.get("verified"):
        return {"message": "Email already verified. You can now login."}

    user = await repo.update_user(user["_id"], {"verified": True}, unset=("verification_token",))
    await audit.email_verified(repo, request, user)
    return {"message": "Email verified successfully. You can now login."}


@router.get("/verify")
async def verify_email(token: str, request: Request, repo=Depends(get_repo)):
    return await _verify(token, request, repo)


@router.get("/verify/{token}")
async def verify_email_link(token: str, request: Request, repo=Depends(get_repo)):
    return await _verify(token, request, repo)


@router.post("/resend-verification")
async def resend_verification(body: ResendVerificationIn, repo=Depends(get_repo)):
    user = await repo.find_user_by_email(body.email)
    if not user:
        raise NotFound("User not found")
    if user.get("verified"):
        raise ValidationFailed("Account is already verified")

    token = create_verification_token(user["email"])
    await repo.update_user(user["_id"], {"verification_token": token})
    logger.info("Issued a new verification token for user %s", user["_id"])
    return {
        "message": "A new verification token has been issued. Use it to verify your account.",
        "verification_token": token,
    }


@router.post("/login")
async def login(body: LoginIn, request: Request, repo=Depends(get_repo)):
    user = await repo.find_user_by_email(body.email)
    if not user or not verify_password(body.password, user.get("password_hash")):
        await audit.login_failed(repo, request, body.email, "Invalid credentials")
        raise AuthFailed("Invalid credentials")

    if not user.get("verified"):
        token = create_verification_token(user["email"])
        await repo.update_user(user["_id"], {"verification_token": token})
        return JSONResponse(status_code=403, content={
            "detail": "Please verify your email to login. Use this token to verify manually.",
            "verification_token": token,
        })

    if user.get("role") == "admin" and user.get("two_factor_enabled"):
        if not body.two_factor_code and not body.backup_code:
            return {"requires_two_factor": True, "message": "Please enter your 2FA code", "user_id": user["_id"]}
        if body.backup_code:
            if not await two_factor.consume_backup_code(repo, user["_id"], body.backup_code):
                await audit.login_failed(repo, request, user["email"], "Invalid backup code")
                raise AuthFailed("Invalid or already used backup code")
        elif not await two_factor.accept_totp(repo, user, body.two_factor_code):
            await audit.login_failed(repo, request, user["email"], "Invalid 2FA code")
            raise AuthFailed("Invalid 2FA code")

    user = await repo.update_user(user["_id"], {"last_activity": utcnow()})
    await audit.login_succeeded(repo, request, user)
    return {
        "message": "Login successful",
        "access_token": create_access_token(user),
        "token_type": "bearer",
        "role": user.get("role", "donor"),
        "user": public_user(user),
    }


@router.post("/logout")
async def logout(request: Request, user=Depends(get_current_user), repo=Depends(get_repo)):
    claims = request.state.token_claims
    jti = claims.get("jti")
    if not jti:
        raise HTTPException(400, "Token cannot be invalidated")
    expires_at = datetime.fromtimestamp(claims["exp"], tz=timezone.utc)
    await repo.blacklist_token(user["_id"], jti, expires_at, utcnow())
    await audit.user_logged_out(repo, request, user)
    return {"message": "Logged out successfully"}


@router.get("/profile")
async def get_profile(user=Depends(get_current_user)):
    return public_user(user)


@router.put("/profile")
async def update_profile(body: ProfileIn, user=Depends(get_current_user), repo=Depends(get_repo)):
    fields = body.model_dump(exclude_none=True, exclude={"profile"})
    if body.profile is not None:
        fields["profile"] = {**(user.get("profile") or {}), **body.profile.model_dump(exclude_none=True)}
    if fields:
        user = await repo.update_user(user["_id"], fields)
    return {"message": "Profile updated successfully", "user": public_user(user)}
