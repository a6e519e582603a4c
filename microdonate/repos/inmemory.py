# microdonate/repos/inmemory.py
import asyncio
import copy
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from microdonate.core.states import SWEEP_TRANSITION


def _id() -> str:
    return str(ObjectId())


def _copy(doc: Optional[dict]) -> Optional[dict]:
    return copy.deepcopy(doc) if doc is not None else None


def _newest_first(docs, field: str = "created_at", descending: bool = True) -> List[dict]:
    # docs without the field sort last in either direction
    present = [d for d in docs if d.get(field) is not None]
    missing = [d for d in docs if d.get(field) is None]
    return sorted(present, key=lambda d: d[field], reverse=descending) + missing


def _contains(value, needle: str) -> bool:
    return isinstance(value, str) and needle.lower() in value.lower()


class _MemoryTx:
    """Writes staged by `InMemoryRepo.transaction()`; applied only on a clean exit."""

    def __init__(self, repo: "InMemoryRepo"):
        self._repo = repo
        self._causes: Dict[str, dict] = {}
        self._donations: Dict[str, dict] = {}

    async def increment_cause(self, cause_id: str, amount: float, now: datetime) -> Optional[dict]:
        cause = self._causes.get(cause_id) or _copy(self._repo.causes.get(cause_id))
        if not cause or cause.get("status") != "active":
            return None
        cause["current_amount"] = cause.get("current_amount", 0) + amount
        cause["donor_count"] = cause.get("donor_count", 0) + 1
        cause["updated_at"] = now
        self._causes[cause_id] = cause
        return _copy(cause)

    async def insert_donation(self, doc: dict) -> dict:
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", _id())
        self._donations[doc["_id"]] = doc
        return _copy(doc)

    def commit(self):
        self._repo.causes.update(self._causes)
        self._repo.donations.update(self._donations)


class InMemoryRepo:
    def __init__(self):
        self.users: Dict[str, dict] = {}
        self.users_by_email: Dict[str, str] = {}
        self.causes: Dict[str, dict] = {}
        self.donations: Dict[str, dict] = {}
        self.audit_logs: Dict[str, dict] = {}
        self.platform_config: Optional[dict] = None
        self.idempotency: Dict[str, dict] = {}
        # serializes every unit of work touching cause totals or status
        self._tx_lock = asyncio.Lock()

    async def ping(self) -> bool:
        return True

    @asynccontextmanager
    async def transaction(self):
        async with self._tx_lock:
            tx = _MemoryTx(self)
            # an exception at the yield skips the commit and drops the staged writes
            yield tx
            tx.commit()

    # Users
    async def create_user(self, doc: dict) -> dict:
        email = doc["email"].lower()
        if email in self.users_by_email:
            raise DuplicateKeyError("Email exists")
        doc = copy.deepcopy(doc)
        doc["email"] = email
        doc.setdefault("_id", _id())
        self.users[doc["_id"]] = doc
        self.users_by_email[email] = doc["_id"]
        return _copy(doc)

    async def find_user(self, user_id: str) -> Optional[dict]:
        return _copy(self.users.get(user_id))

    async def find_user_by_email(self, email: str) -> Optional[dict]:
        uid = self.users_by_email.get((email or "").lower())
        return _copy(self.users.get(uid)) if uid else None

    async def list_users(self) -> List[dict]:
        return [_copy(u) for u in _newest_first(self.users.values())]

    async def count_users(self, role: Optional[str] = None) -> int:
        return sum(1 for u in self.users.values() if role is None or u.get("role") == role)

    async def update_user(self, user_id: str, fields: dict, unset: Tuple[str, ...] = ()) -> Optional[dict]:
        user = self.users.get(user_id)
        if not user:
            return None
        user.update(copy.deepcopy(fields))
        for key in unset:
            user.pop(key, None)
        return _copy(user)

    async def blacklist_token(self, user_id: str, jti: str, expires_at: datetime, now: datetime) -> None:
        user = self.users.get(user_id)
        if not user:
            return
        kept = [t for t in user.get("token_blacklist", []) if t["expires_at"] > now]
        kept.append({"jti": jti, "expires_at": expires_at})
        user["token_blacklist"] = kept

    async def consume_backup_code(self, user_id: str, code: str) -> bool:
        user = self.users.get(user_id)
        if not user or not user.get("two_factor_enabled"):
            return False
        for entry in user.get("backup_codes", []):
            if entry["code"] == code and not entry["used"]:
                entry["used"] = True
                return True
        return False

    async def advance_totp_step(self, user_id: str, step: int) -> bool:
        """Record ``step`` as the last accepted TOTP step unless one at or after it was used."""
        user = self.users.get(user_id)
        if not user:
            return False
        last = user.get("two_factor_last_step")
        if last is not None and last >= step:
            return False
        user["two_factor_last_step"] = step
        return True

    # Causes
    async def create_cause(self, doc: dict) -> dict:
        name = doc["name"].lower()
        if any(c["name"].lower() == name for c in self.causes.values()):
            raise DuplicateKeyError("Cause name exists")
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", _id())
        self.causes[doc["_id"]] = doc
        return _copy(doc)

    async def find_cause(self, cause_id: str) -> Optional[dict]:
        return _copy(self.causes.get(cause_id))

    async def find_causes(self, cause_ids: List[str]) -> List[dict]:
        return [_copy(self.causes[c]) for c in cause_ids if c in self.causes]

    def _cause_matches(self, c: dict, statuses, category, search) -> bool:
        if statuses is not None and c.get("status") not in statuses:
            return False
        if category is not None and c.get("category") != category:
            return False
        if search and not (_contains(c.get("name"), search) or _contains(c.get("description"), search)):
            return False
        return True

    async def list_causes(
        self,
        statuses: Optional[List[str]] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 0,
        sort_field: str = "created_at",
        descending: bool = True,
    ) -> List[dict]:
        hits = [c for c in self.causes.values() if self._cause_matches(c, statuses, category, search)]
        hits = _newest_first(hits, sort_field, descending)[skip:]
        if limit:
            hits = hits[:limit]
        return [_copy(c) for c in hits]

    async def count_causes(self, statuses=None, category=None, search=None) -> int:
        return sum(1 for c in self.causes.values() if self._cause_matches(c, statuses, category, search))

    async def update_cause(self, cause_id: str, fields: dict) -> Optional[dict]:
        async with self._tx_lock:
            cause = self.causes.get(cause_id)
            if not cause:
                return None
            if "name" in fields:
                name = fields["name"].lower()
                if any(c["name"].lower() == name and k != cause_id for k, c in self.causes.items()):
                    raise DuplicateKeyError("Cause name exists")
            cause.update(copy.deepcopy(fields))
            return _copy(cause)

    async def delete_cause(self, cause_id: str) -> bool:
        """Delete an unfunded cause; False when it is missing or has donations."""
        async with self._tx_lock:
            cause = self.causes.get(cause_id)
            if not cause or cause.get("current_amount", 0) or cause.get("donor_count", 0):
                return False
            if any(d.get("cause_id") == cause_id for d in self.donations.values()):
                return False
            del self.causes[cause_id]
            return True

    async def distinct_categories(self) -> List[str]:
        return sorted({c.get("category") for c in self.causes.values() if c.get("category")})

    async def complete_expired_causes(self, now: datetime) -> Tuple[int, int]:
        src, dst = SWEEP_TRANSITION
        async with self._tx_lock:
            matched = 0
            for c in self.causes.values():
                end = c.get("end_date")
                if c.get("status") == src and end is not None and end < now:
                    c["status"] = dst
                    c["updated_at"] = now
                    matched += 1
            # every match flips active -> completed, so matched == modified
            return matched, matched

    # Donations
    async def list_donations(self, donor_id: Optional[str] = None, cause_id: Optional[str] = None) -> List[dict]:
        hits = [
            d for d in self.donations.values()
            if (donor_id is None or d.get("donor_id") == donor_id)
            and (cause_id is None or d.get("cause_id") == cause_id)
        ]
        return [_copy(d) for d in _newest_first(hits)]

    async def count_donations(self, cause_id: Optional[str] = None) -> int:
        return sum(1 for d in self.donations.values() if cause_id is None or d.get("cause_id") == cause_id)

    # Audit logs
    async def insert_audit_log(self, doc: dict) -> dict:
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", _id())
        self.audit_logs[doc["_id"]] = doc
        return _copy(doc)

    async def find_audit_log(self, log_id: str) -> Optional[dict]:
        return _copy(self.audit_logs.get(log_id))

    def _log_matches(self, log: dict, f: dict) -> bool:
        if f.get("event_type") and log.get("event_type") != f["event_type"]:
            return False
        if f.get("severity") and log.get("severity") != f["severity"]:
            return False
        if f.get("user_id") and log.get("user_id") != f["user_id"]:
            return False
        if f.get("start") and log["created_at"] < f["start"]:
            return False
        if f.get("end") and log["created_at"] > f["end"]:
            return False
        if f.get("search") and not (
            _contains(log.get("description"), f["search"]) or _contains(log.get("user_email"), f["search"])
        ):
            return False
        return True

    async def list_audit_logs(self, filters: Optional[dict] = None, skip: int = 0, limit: int = 0) -> List[dict]:
        filters = filters or {}
        hits = [log for log in self.audit_logs.values() if self._log_matches(log, filters)]
        hits = _newest_first(hits)[skip:]
        if limit:
            hits = hits[:limit]
        return [_copy(log) for log in hits]

    async def count_audit_logs(self, filters: Optional[dict] = None) -> int:
        filters = filters or {}
        return sum(1 for log in self.audit_logs.values() if self._log_matches(log, filters))

    # Platform config
    async def get_platform_config(self) -> Optional[dict]:
        return _copy(self.platform_config)

    async def save_platform_config(self, doc: dict) -> dict:
        self.platform_config = copy.deepcopy(doc)
        return _copy(self.platform_config)

    # Idempotency
    async def find_idempotent(self, key: str) -> Optional[dict]:
        return _copy(self.idempotency.get(key))

    async def save_idempotent(self, key: str, record: dict) -> None:
        self.idempotency.setdefault(key, copy.deepcopy(record))
