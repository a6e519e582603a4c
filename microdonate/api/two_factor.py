from fastapi import APIRouter, Depends, Request

from microdonate.core.security import require_admin
from microdonate.deps import get_repo
from microdonate.schemas import PasswordIn, TwoFactorCodeIn
from microdonate.services import audit, two_factor

router = APIRouter(prefix="/api/2fa", tags=["2fa"])


@router.post("/setup")
async def setup(admin=Depends(require_admin), repo=Depends(get_repo)):
    issued = await two_factor.issue_secret(repo, admin)
    return {"message": "Add this secret to your authenticator app", **issued}


@router.post("/verify-setup")
async def verify_setup(body: TwoFactorCodeIn, request: Request, admin=Depends(require_admin),
                       repo=Depends(get_repo)):
    codes = await two_factor.enable(repo, admin, body.code)
    await audit.two_factor_changed(repo, request, admin, enabled=True)
    return {
        "message": "2FA enabled successfully! Save these backup codes in a safe place.",
        "backup_codes": codes,
    }


@router.post("/disable")
async def disable(body: PasswordIn, request: Request, admin=Depends(require_admin), repo=Depends(get_repo)):
    await two_factor.disable(repo, admin, body.password)
    await audit.two_factor_changed(repo, request, admin, enabled=False)
    return {"message": "2FA has been disabled for your account"}


@router.get("/status")
async def status(admin=Depends(require_admin)):
    return two_factor.status(admin)
