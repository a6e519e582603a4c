import hashlib
import json
import logging
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from microdonate.core.errors import AuthFailed
from microdonate.core.security import decode_token, utcnow
from microdonate.deps import get_repo

logger = logging.getLogger(__name__)

# only donation writes are replayable; auth and 2fa responses carry credentials
REPLAYABLE = {
    ("POST", "/api/donate"),
    ("POST", "/api/donate/multi"),
}


def _repo_for(request: Request):
    # honour test overrides of the repository dependency
    provider = request.app.dependency_overrides.get(get_repo, get_repo)
    return provider()


def _caller_id(request: Request) -> Optional[str]:
    """Subject of a valid access token, or None."""
    authorization = request.headers.get("Authorization") or ""
    if not authorization.lower().startswith("bearer "):
        return None
    try:
        claims = decode_token(authorization.split(" ", 1)[1])
    except AuthFailed:
        return None
    if claims.get("purpose"):
        return None
    return claims.get("sub")


class IdempotencyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        key = request.headers.get("Idempotency-Key")
        if not key or (request.method, request.url.path.rstrip("/")) not in REPLAYABLE:
            return await call_next(request)

        caller = _caller_id(request)
        if caller is None:
            # the route rejects it; nothing to scope the key to
            return await call_next(request)

        scope_key = f"{caller}:{request.method}:{request.url.path}:{key}"
        digest = hashlib.sha256(scope_key.encode()).hexdigest()

        repo = _repo_for(request)
        found = await repo.find_idempotent(digest)
        if found:
            if found.get("user_id") != caller:
                logger.warning("Idempotency key reused by another caller on %s", request.url.path)
                return JSONResponse({"detail": "Idempotency-Key belongs to another request"}, status_code=409)
            logger.info("Replaying stored response for %s %s", request.method, request.url.path)
            return JSONResponse(found["resp"], status_code=found["status"],
                                headers={"Idempotent-Replayed": "true"})

        response = await call_next(request)
        content = b"".join([chunk async for chunk in response.body_iterator])
        replay = Response(
            content=content,
            status_code=response.status_code,
            headers=dict(response.headers),
            media_type=response.media_type,
        )

        # only successful JSON responses are stored
        if 200 <= response.status_code < 300:
            try:
                payload = json.loads(content.decode() or "null")
            except ValueError:
                logger.warning("Not storing non-JSON response for %s %s", request.method, request.url.path)
                return replay
            await repo.save_idempotent(digest, {
                "status": response.status_code,
                "resp": payload,
                "user_id": caller,
                "path": request.url.path,
                "method": request.method,
                "created_at": utcnow(),
            })
        return replay
